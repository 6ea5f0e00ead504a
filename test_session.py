"""
Tests for the client session protocol, including full runs through an
in-process relay.
"""

import asyncio
import json
from unittest import mock

import pytest

from client.session import (
    HandshakeStatus,
    SessionConfigError,
    SessionListener,
    SessionNotReady,
    SessionProtocol,
    SessionState,
)
from crypto.primitives import (
    EntropyFailure,
    InvalidPeerKey,
    derive_shared_key,
    encrypt,
    generate_key_pair,
)
from relay.matching import ConnectionState


class RecordingListener(SessionListener):
    def __init__(self):
        self.states = []
        self.messages = []
        self.failed = []
        self.typing = []
        self.errors = []
        self.partner_left = 0

    def on_state(self, state):
        self.states.append(state)

    def on_message(self, text):
        self.messages.append(text)

    def on_message_failed(self, error):
        self.failed.append(error)

    def on_typing(self, typing):
        self.typing.append(typing)

    def on_partner_left(self):
        self.partner_left += 1

    def on_error(self, error):
        self.errors.append(error)


class FakeTransport:
    def __init__(self):
        self.sent = []

    async def send(self, event):
        self.sent.append(event)

    async def close(self):
        pass


async def until(predicate, timeout=5.0):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(poll(), timeout)


def make_protocol(state=SessionState.AWAITING_PARTNER):
    listener = RecordingListener()
    protocol = SessionProtocol("chess", connect=None, listener=listener)
    protocol._transport = FakeTransport()
    protocol.state = state
    return protocol, listener


def secure_pair():
    """A protocol already in SECURE plus the partner's session key"""
    protocol, listener = make_protocol()
    partner = generate_key_pair()

    async def handshake():
        await protocol.handle_event({"type": "paired", "peer": "p"})
        await protocol.handle_event({"type": "public_key", "key": partner.public_bytes().hex()})

    asyncio.run(handshake())
    own_public = bytes.fromhex(protocol._transport.sent[0]["key"])
    return protocol, listener, derive_shared_key(partner.private_key, own_public)


@pytest.mark.parametrize("interest, display_name", [
    ("chess", "N" * 33),
    ("x" * 65, None),
    ("   ", None),
])
def test_unannounceable_settings_rejected_up_front(interest, display_name):
    connect = mock.AsyncMock()
    with pytest.raises(SessionConfigError):
        SessionProtocol(interest, connect, display_name=display_name)
    connect.assert_not_called()


def test_longest_allowed_settings_accepted():
    protocol = SessionProtocol("x" * 64, connect=None, display_name="N" * 32)
    assert protocol.display_name == "N" * 32


def test_paired_sends_public_key():
    protocol, _ = make_protocol()
    asyncio.run(protocol.handle_event({"type": "paired", "peer": "p", "display_name": "Pat"}))

    [event] = protocol._transport.sent
    assert event["type"] == "public_key"
    assert len(bytes.fromhex(event["key"])) == 65
    assert protocol.state == SessionState.KEY_EXCHANGE
    assert protocol.peer_name == "Pat"


def test_early_public_key_is_buffered():
    protocol, _ = make_protocol()
    partner = generate_key_pair()

    async def scenario():
        await protocol.handle_event({"type": "public_key", "key": partner.public_bytes().hex()})
        assert protocol.state == SessionState.AWAITING_PARTNER
        await protocol.handle_event({"type": "paired", "peer": "p"})

    asyncio.run(scenario())

    assert protocol.state == SessionState.SECURE
    own_public = bytes.fromhex(protocol._transport.sent[0]["key"])
    assert protocol._session_key == derive_shared_key(partner.private_key, own_public)


def test_message_before_secure_is_dropped():
    protocol, listener = make_protocol()
    asyncio.run(protocol.handle_event({"type": "paired", "peer": "p"}))

    asyncio.run(protocol.handle_event({"type": "message", "ciphertext": "00", "tag": "00" * 16}))

    assert protocol.dropped_messages == 1
    assert protocol.state == SessionState.KEY_EXCHANGE
    assert listener.messages == [] and listener.failed == []


def test_invalid_peer_key_raises():
    protocol, _ = make_protocol()

    async def scenario():
        await protocol.handle_event({"type": "paired", "peer": "p"})
        await protocol.handle_event({"type": "public_key", "key": "04" + "00" * 64})

    with pytest.raises(InvalidPeerKey):
        asyncio.run(scenario())
    assert protocol.state == SessionState.KEY_EXCHANGE


def test_decrypt_confirms_handshake():
    protocol, listener, partner_key = secure_pair()
    assert protocol.handshake == HandshakeStatus.PENDING

    ciphertext, tag = encrypt(partner_key, "hi there".encode())
    asyncio.run(protocol.handle_event({"type": "message", "ciphertext": ciphertext.hex(), "tag": tag.hex()}))

    assert listener.messages == ["hi there"]
    assert protocol.handshake == HandshakeStatus.CONFIRMED


def test_unreadable_message_keeps_session():
    protocol, listener, partner_key = secure_pair()
    ciphertext, tag = encrypt(partner_key, b"hello")
    forged = bytes([tag[0] ^ 1]) + tag[1:]

    asyncio.run(protocol.handle_event({"type": "message", "ciphertext": ciphertext.hex(), "tag": forged.hex()}))

    assert len(listener.failed) == 1
    assert listener.messages == []
    assert protocol.state == SessionState.SECURE
    assert protocol.handshake == HandshakeStatus.PENDING

    asyncio.run(protocol.handle_event({"type": "message", "ciphertext": ciphertext.hex(), "tag": tag.hex()}))
    assert listener.messages == ["hello"]


def test_typing_only_when_secure():
    protocol, listener = make_protocol()
    asyncio.run(protocol.handle_event({"type": "typing", "typing": True}))
    assert listener.typing == []
    assert asyncio.run(protocol.send_typing(True)) is False

    protocol, listener, _ = secure_pair()
    asyncio.run(protocol.handle_event({"type": "typing", "typing": True}))
    assert listener.typing == [True]
    assert asyncio.run(protocol.send_typing(False)) is True
    assert protocol._transport.sent[-1] == {"type": "typing", "typing": False}


def test_send_before_secure():
    protocol, _ = make_protocol(SessionState.KEY_EXCHANGE)
    with pytest.raises(SessionNotReady):
        asyncio.run(protocol.send_message("too early"))


def test_partner_left_wipes_keys():
    protocol, listener, _ = secure_pair()

    asyncio.run(protocol.handle_event({"type": "partner_left"}))

    assert listener.partner_left == 1
    assert listener.states[-2:] == [SessionState.ENDED, SessionState.AWAITING_PARTNER]
    assert protocol._session_key is None
    assert protocol._key_pair is None
    assert protocol.peer is None


def test_end_to_end_chess(dispatcher, connector):
    """A and B meet on "chess", exchange a message, then B leaves"""
    async def scenario():
        a_connect, b_connect = connector(), connector()
        a_listener, b_listener = RecordingListener(), RecordingListener()
        a = SessionProtocol("chess", a_connect, listener=a_listener, reconnect_delay=0)
        b = SessionProtocol("chess", b_connect, display_name="Bee", listener=b_listener, reconnect_delay=0)

        a_task = asyncio.create_task(a.run())
        await until(lambda: a.state == SessionState.AWAITING_PARTNER)
        b_task = asyncio.create_task(b.run())
        await until(lambda: a.is_secure and b.is_secure)

        assert a._session_key == b._session_key
        assert a.peer_name == "Bee"

        await a.send_message("hello")
        await until(lambda: b_listener.messages)
        assert b_listener.messages == ["hello"]
        assert b.handshake == HandshakeStatus.CONFIRMED
        assert "hello" not in json.dumps(a_connect.transports[0].sent)

        await b.stop()
        await b_task
        await until(lambda: a_listener.partner_left == 1)

        a_conn = a_connect.transports[0].conn_id
        assert a.state == SessionState.AWAITING_PARTNER
        assert a._session_key is None
        assert dispatcher.engine.state_of(a_conn) == ConnectionState.WAITING
        assert b.state == SessionState.ENDED

        await a.stop()
        await a_task
        assert dispatcher.stats() == {"connections": 0, "waiting": 0, "sessions": 0}

    asyncio.run(scenario())


def test_survivor_meets_new_partner(dispatcher, connector):
    async def scenario():
        a_listener = RecordingListener()
        a = SessionProtocol("chess", connector(), listener=a_listener, reconnect_delay=0)
        b = SessionProtocol("chess", connector(), reconnect_delay=0)
        c = SessionProtocol("chess", connector(), reconnect_delay=0)

        tasks = [asyncio.create_task(a.run())]
        await until(lambda: a.state == SessionState.AWAITING_PARTNER)
        tasks.append(asyncio.create_task(b.run()))
        await until(lambda: a.is_secure and b.is_secure)
        tasks.append(asyncio.create_task(c.run()))
        await until(lambda: c.state == SessionState.AWAITING_PARTNER)

        await b.stop()
        await until(lambda: a.is_secure and c.is_secure)
        assert a._session_key == c._session_key

        await c.send_message("hi, I'm new")
        await until(lambda: a_listener.messages)
        assert a_listener.messages == ["hi, I'm new"]
        assert a_listener.partner_left == 1

        await a.stop()
        await c.stop()
        await asyncio.gather(*tasks)

    asyncio.run(scenario())


def test_invalid_key_from_partner_triggers_reconnect(dispatcher, connector):
    async def scenario():
        connect = connector()
        listener = RecordingListener()
        protocol = SessionProtocol("chess", connect, listener=listener, reconnect_delay=0)
        task = asyncio.create_task(protocol.run())
        await until(lambda: protocol.state == SessionState.AWAITING_PARTNER)

        rogue = await connector()()
        await rogue.send({"type": "announce", "interest": "chess"})
        await rogue.send({"type": "public_key", "key": "04" + "00" * 64})

        await until(lambda: len(connect.transports) == 2)
        assert any(isinstance(e, InvalidPeerKey) for e in listener.errors)
        assert connect.transports[0].closed

        events = []
        while not rogue.queue.empty():
            events.append(rogue.queue.get_nowait()["type"])
        assert "partner_left" in events

        await until(lambda: protocol.state == SessionState.KEY_EXCHANGE)
        await protocol.stop()
        await rogue.close()
        await task

    asyncio.run(scenario())


def test_reconnects_after_connection_loss(dispatcher, connector):
    async def scenario():
        connect = connector()
        protocol = SessionProtocol("chess", connect, reconnect_delay=0)
        task = asyncio.create_task(protocol.run())
        await until(lambda: protocol.state == SessionState.AWAITING_PARTNER)

        await connect.transports[0].close()
        await until(lambda: len(connect.transports) == 2
                    and protocol.state == SessionState.AWAITING_PARTNER)

        assert connect.transports[1].sent[0] == {"type": "announce", "interest": "chess", "display_name": None}
        assert dispatcher.stats()["waiting"] == 1

        await protocol.stop()
        await task

    asyncio.run(scenario())


def test_entropy_failure_is_fatal(dispatcher, connector):
    async def scenario():
        connect = connector()
        listener = RecordingListener()
        protocol = SessionProtocol("chess", connect, listener=listener, reconnect_delay=0)
        partner = SessionProtocol("chess", connector(), reconnect_delay=0)

        with mock.patch("client.session.generate_key_pair", side_effect=EntropyFailure("no rng")):
            task = asyncio.create_task(protocol.run())
            await until(lambda: protocol.state == SessionState.AWAITING_PARTNER)
            partner_task = asyncio.create_task(partner.run())
            await asyncio.wait_for(task, 5)

        assert protocol.state == SessionState.ENDED
        assert len(connect.transports) == 1
        assert isinstance(listener.errors[0], EntropyFailure)

        await partner.stop()
        await partner_task

    asyncio.run(scenario())
