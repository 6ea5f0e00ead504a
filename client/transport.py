"""
WebSocket transport used by the session protocol.

Frames are JSON objects; a closed socket surfaces as TransportClosed so the
session protocol can treat every kind of disconnect the same way.
"""

import asyncio
import json

import websockets
import websockets.exceptions


class TransportClosed(Exception):
    """The connection to the relay is gone"""
    pass


def ws_url(server_url: str) -> str:
    """Map the relay's HTTP base URL to its WebSocket endpoint"""
    return server_url.replace("http", "ws", 1).rstrip("/") + "/ws"


class WebSocketTransport:
    """JSON event transport over a websockets client connection"""

    def __init__(self, websocket):
        self.websocket = websocket

    @classmethod
    async def connect(cls, server_url: str) -> "WebSocketTransport":
        try:
            websocket = await websockets.connect(ws_url(server_url))
        except (OSError, asyncio.TimeoutError, websockets.exceptions.InvalidHandshake) as e:
            raise TransportClosed(f"Cannot reach relay: {e}") from e
        return cls(websocket)

    async def send(self, event: dict):
        try:
            await self.websocket.send(json.dumps(event))
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportClosed(str(e)) from e

    async def recv(self) -> dict:
        try:
            raw = await self.websocket.recv()
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportClosed(str(e)) from e
        return json.loads(raw)

    async def close(self):
        await self.websocket.close()
