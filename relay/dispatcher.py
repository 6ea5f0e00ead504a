"""
Event routing between relay connections.

The dispatcher owns one outbound queue per connection. Matching decisions
are delegated to the MatchingEngine; forwarded events only need a peer
lookup and a non-blocking enqueue. Payload fields (keys, ciphertext, tags)
and interests are never logged.
"""

import asyncio
import logging
from typing import Dict, Optional

from pydantic import ValidationError

from common.protocol import (
    FORWARDED_TYPES,
    Announce,
    Error,
    Paired,
    PartnerLeft,
    Ping,
    Pong,
    parse_client_event,
)
from .matching import DisconnectResult, MatchingEngine, MatchingError, Session

logger = logging.getLogger(__name__)


class RelayDispatcher:
    """Routes client events to the matching engine or to the paired peer"""

    def __init__(self, engine: Optional[MatchingEngine] = None):
        self.engine = engine or MatchingEngine()
        self.engine.on_repair = self._notify_unpaired
        self.outbound: Dict[str, asyncio.Queue] = {}

    def register(self, conn_id: str) -> asyncio.Queue:
        """Create the outbound queue for a new connection"""
        queue: asyncio.Queue = asyncio.Queue()
        self.outbound[conn_id] = queue
        logger.info("Connection %s opened (%d live)", conn_id, len(self.outbound))
        return queue

    def send(self, conn_id: str, event: dict) -> bool:
        """Enqueue an event for a connection; False if it is gone"""
        queue = self.outbound.get(conn_id)
        if queue is None:
            return False
        queue.put_nowait(event)
        return True

    def dispatch(self, conn_id: str, data: dict):
        """Handle one frame received from a connection"""
        try:
            event = parse_client_event(data)
        except ValidationError as e:
            logger.warning("Malformed event from %s (%d errors)", conn_id, e.error_count())
            self.send(conn_id, Error(message="Invalid event").model_dump())
            return

        if isinstance(event, Announce):
            self._announce(conn_id, event)
        elif isinstance(event, Ping):
            self.send(conn_id, Pong().model_dump())
        elif event.type in FORWARDED_TYPES:
            self._forward(conn_id, event.model_dump())

    def disconnect(self, conn_id: str):
        """Purge a closed connection and notify its partner"""
        result = self.engine.disconnect(conn_id)
        self.outbound.pop(conn_id, None)
        self._notify_unpaired(result)
        logger.info("Connection %s closed (%d live)", conn_id, len(self.outbound))

    def stats(self) -> dict:
        return self.engine.stats()

    def _notify_unpaired(self, result: DisconnectResult):
        if result.survivor is not None:
            self.send(result.survivor, PartnerLeft().model_dump())
        if result.rematch is not None:
            self._notify_paired(result.rematch)

    def _announce(self, conn_id: str, event: Announce):
        try:
            session = self.engine.announce(conn_id, event.interest, event.display_name)
        except MatchingError as e:
            logger.info("Announce from %s rejected: %s", conn_id, type(e).__name__)
            self.send(conn_id, Error(message=str(e)).model_dump())
            return
        if session is not None:
            self._notify_paired(session)

    def _notify_paired(self, session: Session):
        for member in session.members:
            peer = session.peer_of(member)
            self.send(member, Paired(
                peer=peer,
                display_name=self.engine.display_name_of(peer)
            ).model_dump())

    def _forward(self, conn_id: str, event: dict):
        peer = self.engine.peer_of(conn_id)
        if peer is None:
            # Partner just left; nothing to deliver to
            logger.debug("Dropped %s from unpaired %s", event["type"], conn_id)
            return
        event["from"] = conn_id
        self.send(peer, event)
