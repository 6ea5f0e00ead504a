"""
Client-side session protocol.

One SessionProtocol drives a connection through

    CONNECTING -> AWAITING_PARTNER -> KEY_EXCHANGE -> SECURE -> ENDED

and then starts over on the same interest. Key material lives only for the
duration of one pairing and is dropped as soon as that pairing ends.

Ordering rules:
- A partner's public key that arrives before we have reached KEY_EXCHANGE
  is buffered and consumed once our own key pair exists.
- Chat messages that arrive before SECURE are dropped and counted; the relay
  does not queue or replay them.
- The handshake is confirmed implicitly by the first message that decrypts.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError

import config
from common.protocol import Announce, ChatMessage, PublicKey, Typing
from crypto.primitives import (
    AuthenticationFailure,
    CryptoError,
    EntropyFailure,
    InvalidPeerKey,
    KeyPair,
    decrypt,
    derive_shared_key,
    encrypt,
    generate_key_pair,
)
from .transport import TransportClosed

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_PARTNER = "awaiting_partner"
    KEY_EXCHANGE = "key_exchange"
    SECURE = "secure"
    ENDED = "ended"


class HandshakeStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"


class SessionNotReady(Exception):
    """Raised when sending before the session key is established"""
    pass


class RelayError(Exception):
    """Error event reported by the relay"""
    pass


class SessionConfigError(ValueError):
    """Raised when the interest or display name cannot be announced"""
    pass


class SessionListener:
    """
    Callbacks for a front-end. Every hook is optional; override what you need.
    """

    def on_state(self, state: SessionState):
        pass

    def on_paired(self, peer: str, display_name: Optional[str]):
        pass

    def on_secure(self):
        pass

    def on_message(self, text: str):
        pass

    def on_message_failed(self, error: CryptoError):
        pass

    def on_typing(self, typing: bool):
        pass

    def on_partner_left(self):
        pass

    def on_error(self, error: Exception):
        pass


class SessionProtocol:
    """
    Matches on an interest, runs the key exchange and carries encrypted chat.

    Args:
        interest: Interest to announce (re-announced after every reconnect)
        connect: Coroutine factory returning a connected transport
        display_name: Optional name shown to partners
        listener: Front-end callbacks
        reconnect_delay: Pause before reconnecting after a lost connection
    """

    def __init__(self, interest: str, connect: Callable[[], Awaitable],
                 display_name: Optional[str] = None,
                 listener: Optional[SessionListener] = None,
                 reconnect_delay: float = config.RECONNECT_DELAY):
        if not interest or not interest.strip():
            raise SessionConfigError("Interest must not be empty")
        try:
            self._announce = Announce(interest=interest, display_name=display_name).model_dump()
        except ValidationError as e:
            err = e.errors()[0]
            raise SessionConfigError(f"Invalid {err['loc'][0]}: {err['msg']}") from e

        self.interest = interest
        self.display_name = display_name
        self.listener = listener or SessionListener()
        self.reconnect_delay = reconnect_delay
        self._connect = connect
        self._transport = None
        self._running = False

        self.state = SessionState.ENDED
        self.handshake = HandshakeStatus.PENDING
        self.peer: Optional[str] = None
        self.peer_name: Optional[str] = None
        self.dropped_messages = 0

        self._key_pair: Optional[KeyPair] = None
        self._session_key: Optional[bytes] = None
        self._pending_peer_key: Optional[str] = None

    @property
    def is_secure(self) -> bool:
        return self.state == SessionState.SECURE

    async def run(self):
        """
        Run until stop() is called or key generation fails.

        Lost connections and rejected peer keys lead to a reconnect and a
        fresh announce; there is no timeout while waiting for a partner.
        """
        self._running = True
        while self._running:
            self._set_state(SessionState.CONNECTING)
            try:
                self._transport = await self._connect()
                await self._transport.send(self._announce)
                self._set_state(SessionState.AWAITING_PARTNER)

                while self._running:
                    event = await self._transport.recv()
                    await self.handle_event(event)

            except TransportClosed as e:
                logger.info("Connection to relay lost: %s", e)
            except InvalidPeerKey as e:
                logger.warning("Aborting session, partner key rejected: %s", e)
                self.listener.on_error(e)
            except EntropyFailure as e:
                logger.error("Key generation failed, giving up: %s", e)
                self.listener.on_error(e)
                self._running = False
            finally:
                self._end_session()
                await self._close_transport()

            if self._running:
                await asyncio.sleep(self.reconnect_delay)

        self._set_state(SessionState.ENDED)

    async def stop(self):
        """Leave the current session and stop reconnecting"""
        self._running = False
        await self._close_transport()

    async def send_message(self, text: str):
        """
        Encrypt and send a chat message to the partner.

        Raises:
            SessionNotReady: If the session key has not been derived yet
        """
        if not self.is_secure:
            raise SessionNotReady(f"Cannot send while {self.state.value}")
        ciphertext, tag = encrypt(self._session_key, text.encode("utf-8"))
        await self._transport.send(ChatMessage(ciphertext=ciphertext.hex(), tag=tag.hex()).model_dump())

    async def send_typing(self, typing: bool) -> bool:
        """Send a typing indicator; ignored unless the session is secure"""
        if not self.is_secure:
            return False
        await self._transport.send(Typing(typing=typing).model_dump())
        return True

    async def handle_event(self, event: dict):
        """Apply one relay event to the state machine"""
        kind = event.get("type")

        if kind == "paired":
            await self._on_paired(event)
        elif kind == "public_key":
            self._on_public_key(event.get("key", ""))
        elif kind == "message":
            self._on_message(event)
        elif kind == "typing":
            if self.is_secure:
                self.listener.on_typing(bool(event.get("typing")))
        elif kind == "partner_left":
            self._on_partner_left()
        elif kind == "error":
            logger.warning("Relay error: %s", event.get("message"))
            self.listener.on_error(RelayError(event.get("message", "unknown error")))
        elif kind != "pong":
            logger.debug("Ignoring unknown event type %r", kind)

    # --- transitions ---

    async def _on_paired(self, event: dict):
        if self.state != SessionState.AWAITING_PARTNER:
            logger.warning("Unexpected pairing while %s", self.state.value)
            return

        self.peer = event.get("peer")
        self.peer_name = event.get("display_name")
        self.listener.on_paired(self.peer, self.peer_name)

        self._key_pair = generate_key_pair()
        await self._transport.send(PublicKey(key=self._key_pair.public_bytes().hex()).model_dump())
        self._set_state(SessionState.KEY_EXCHANGE)

        if self._pending_peer_key is not None:
            key, self._pending_peer_key = self._pending_peer_key, None
            self._on_public_key(key)

    def _on_public_key(self, key_hex: str):
        if self.state == SessionState.AWAITING_PARTNER:
            self._pending_peer_key = key_hex
            return
        if self.state != SessionState.KEY_EXCHANGE:
            logger.debug("Ignoring public key while %s", self.state.value)
            return

        try:
            peer_key = bytes.fromhex(key_hex)
        except ValueError as e:
            raise InvalidPeerKey("Public key is not hex encoded") from e
        self._session_key = derive_shared_key(self._key_pair.private_key, peer_key)
        self.handshake = HandshakeStatus.PENDING
        self._set_state(SessionState.SECURE)
        self.listener.on_secure()

    def _on_message(self, event: dict):
        if not self.is_secure:
            self.dropped_messages += 1
            logger.info("Dropped message received while %s", self.state.value)
            return

        try:
            ciphertext = bytes.fromhex(event.get("ciphertext", ""))
            tag = bytes.fromhex(event.get("tag", ""))
        except ValueError:
            self.listener.on_message_failed(AuthenticationFailure("Malformed message encoding"))
            return

        try:
            plaintext = decrypt(self._session_key, ciphertext, tag)
        except AuthenticationFailure as e:
            logger.warning("Message from partner failed authentication")
            self.listener.on_message_failed(e)
            return

        if self.handshake == HandshakeStatus.PENDING:
            self.handshake = HandshakeStatus.CONFIRMED
            logger.debug("Handshake confirmed by first readable message")
        self.listener.on_message(plaintext.decode("utf-8", errors="replace"))

    def _on_partner_left(self):
        self._end_session()
        self.listener.on_partner_left()
        # The relay has already queued us again on the same interest
        self._set_state(SessionState.AWAITING_PARTNER)

    # --- helpers ---

    def _end_session(self):
        if self.state in (SessionState.KEY_EXCHANGE, SessionState.SECURE):
            self._set_state(SessionState.ENDED)
        self._key_pair = None
        self._session_key = None
        self._pending_peer_key = None
        self.peer = None
        self.peer_name = None
        self.handshake = HandshakeStatus.PENDING

    async def _close_transport(self):
        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except TransportClosed:
                pass

    def _set_state(self, state: SessionState):
        if state != self.state:
            logger.debug("Session state %s -> %s", self.state.value, state.value)
            self.state = state
            self.listener.on_state(state)
