"""
Shared fixtures: an in-process relay and transports that talk to it directly.
"""

import json
import uuid

import pytest

from client.transport import TransportClosed
from relay.dispatcher import RelayDispatcher

_CLOSED = object()


class LocalTransport:
    """Client transport wired straight into a RelayDispatcher"""

    def __init__(self, dispatcher: RelayDispatcher):
        self.dispatcher = dispatcher
        self.conn_id = uuid.uuid4().hex
        self.queue = dispatcher.register(self.conn_id)
        self.sent = []
        self.closed = False

    async def send(self, event: dict):
        if self.closed:
            raise TransportClosed("closed")
        # Round-trip through JSON like a real socket would
        event = json.loads(json.dumps(event))
        self.sent.append(event)
        self.dispatcher.dispatch(self.conn_id, event)

    async def recv(self) -> dict:
        event = await self.queue.get()
        if event is _CLOSED:
            raise TransportClosed("closed")
        return event

    async def close(self):
        if not self.closed:
            self.closed = True
            self.dispatcher.disconnect(self.conn_id)
            self.queue.put_nowait(_CLOSED)


@pytest.fixture
def dispatcher():
    return RelayDispatcher()


@pytest.fixture
def connector(dispatcher):
    """
    Factory for connect() coroutines; every transport it opens is recorded
    on the returned function's ``transports`` list.
    """
    def make():
        transports = []

        async def connect():
            transport = LocalTransport(dispatcher)
            transports.append(transport)
            return transport

        connect.transports = transports
        return connect

    return make
