#!/usr/bin/env python3
"""
CLI Client for Interest-Matched Encrypted Chat

Provides a command-line interface for:
- Announcing an interest and waiting for a stranger with the same one
- ECDH key exchange and AES-GCM encrypted messaging through the relay
- Typing indicators and automatic re-matching when the partner leaves
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional

import httpx
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

import config
from client.session import (
    SessionConfigError,
    SessionListener,
    SessionNotReady,
    SessionProtocol,
    SessionState,
)
from client.transport import TransportClosed, WebSocketTransport
from crypto.primitives import CryptoError, EntropyFailure, InvalidPeerKey

HELP_TEXT = """Commands:
  /status - Show relay statistics
  /typing - Tell your partner you are typing
  /quit - Quit application
  /help - Show this help"""


class ConsoleListener(SessionListener):
    """Prints session events to the terminal"""

    def __init__(self, client: "ChatClient"):
        self.client = client

    def on_state(self, state: SessionState):
        if state == SessionState.AWAITING_PARTNER:
            print(f"[Waiting for someone interested in '{self.client.interest}'...]")

    def on_paired(self, peer: str, display_name: Optional[str]):
        print(f"[Matched with {display_name or 'a stranger'}, exchanging keys...]")

    def on_secure(self):
        print("[Secure session established. Say hi!]")

    def on_message(self, text: str):
        timestamp = datetime.now().strftime("%H:%M")
        print(f"[{timestamp}] {self.client.partner_label}: {text}")

    def on_message_failed(self, error: CryptoError):
        print(f"[{self.client.partner_label}: unreadable message]")

    def on_typing(self, typing: bool):
        if typing:
            print(f"[{self.client.partner_label} is typing...]")

    def on_partner_left(self):
        print("[Your partner left. Looking for someone new...]")

    def on_error(self, error: Exception):
        if isinstance(error, EntropyFailure):
            print(f"[Could not create encryption keys: {error}. Restart to try again.]")
        elif isinstance(error, InvalidPeerKey):
            print("[Handshake failed. Reconnecting...]")
        else:
            print(f"[Error: {error}]")


class ChatClient:
    """
    Interest-matched encrypted chat client.
    """

    def __init__(self, interest: str, display_name: Optional[str] = None,
                 server_url: str = config.SERVER_URL):
        """
        Initialize chat client.

        Args:
            interest: Topic to be matched on
            display_name: Optional name shown to partners
            server_url: Base URL of the relay
        """
        self.interest = interest
        self.server_url = server_url
        self.protocol = SessionProtocol(
            interest=interest,
            connect=self._connect,
            display_name=display_name,
            listener=ConsoleListener(self)
        )
        self.http_client = httpx.AsyncClient()

    @property
    def partner_label(self) -> str:
        return self.protocol.peer_name or "Stranger"

    async def _connect(self) -> WebSocketTransport:
        return await WebSocketTransport.connect(self.server_url)

    async def show_status(self):
        """Print aggregate relay statistics"""
        try:
            response = await self.http_client.get(f"{self.server_url}/api/stats")
            if response.status_code == 200:
                stats = response.json()
                print(f"Relay: {stats['connections']} connected, "
                      f"{stats['waiting']} waiting, {stats['sessions']} chatting")
            else:
                print(f"Status request failed: HTTP {response.status_code}")
        except httpx.HTTPError as e:
            print(f"Failed to get status: {e}")
        print(f"You: {self.protocol.state.value}")

    async def send_message(self, message: str):
        try:
            await self.protocol.send_message(message)
        except SessionNotReady:
            print("[Not connected to a partner yet]")
        except TransportClosed:
            print("[Message not sent, connection lost]")

    async def run_interactive(self):
        """Run interactive chat session"""
        session_task = asyncio.create_task(self.protocol.run())
        prompt = PromptSession()

        print(HELP_TEXT)
        print()

        try:
            while not session_task.done():
                try:
                    with patch_stdout():
                        user_input = await prompt.prompt_async("> ")
                except (KeyboardInterrupt, EOFError):
                    break

                if not user_input:
                    continue

                if user_input.startswith("/"):
                    if not await self._handle_command(user_input):
                        break
                else:
                    await self.send_message(user_input)

        finally:
            await self.protocol.stop()
            await session_task
            await self.http_client.aclose()

    async def _handle_command(self, command: str) -> bool:
        """Handle slash commands; returns False to quit"""
        cmd = command.split(maxsplit=1)[0].lower()

        if cmd == "/quit":
            return False
        elif cmd == "/status":
            await self.show_status()
        elif cmd == "/typing":
            try:
                if not await self.protocol.send_typing(True):
                    print("[Not connected to a partner yet]")
            except TransportClosed:
                print("[Connection lost]")
        elif cmd == "/help":
            print(HELP_TEXT)
        else:
            print("Unknown command. Type /help for help.")
        return True


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Chat with a stranger who shares your interest")
    parser.add_argument("--interest", help="Topic to be matched on")
    parser.add_argument("--name", default=None, help="Display name shown to your partner")
    parser.add_argument("--server", default=config.SERVER_URL, help="Relay base URL")
    return parser.parse_args(argv)


async def main():
    """Main entry point"""
    args = parse_args()
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s - %(message)s")

    print("=" * 50)
    print("Interest Chat")
    print("=" * 50)
    print()

    interest = args.interest
    while not interest or not interest.strip():
        interest = input("What do you want to talk about? ").strip()

    try:
        client = ChatClient(interest.strip(), display_name=args.name, server_url=args.server)
    except SessionConfigError as e:
        print(f"[Cannot start: {e}]")
        return
    await client.run_interactive()

    print("\nGoodbye!")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nInterrupted")
        sys.exit(0)
