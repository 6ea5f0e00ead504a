"""
Interest matching and session bookkeeping for the relay.

The MatchingEngine is the single authority over the waiting pool and the
session table. Every read and write goes through one lock, so concurrent
announce/disconnect events from many connections are applied one at a time.
"""

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Deque, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class MatchingError(Exception):
    """Base exception for rejected matching requests"""
    pass


class InvalidInterest(MatchingError):
    """The interest is empty or whitespace-only"""
    pass


class AlreadyPaired(MatchingError):
    """The connection is already a member of a session"""
    pass


class PoolInvariantViolation(MatchingError):
    """A connection was found in inconsistent pool/session state"""

    def __init__(self, conn_id: str, reason: str):
        super().__init__(f"{conn_id}: {reason}")
        self.conn_id = conn_id
        self.reason = reason


class ConnectionState(str, Enum):
    IDLE = "idle"
    WAITING = "waiting"
    PAIRED = "paired"
    CLOSED = "closed"


@dataclass
class Session:
    """One paired conversation between exactly two connections"""
    session_id: str
    members: Tuple[str, str]
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def peer_of(self, conn_id: str) -> str:
        """Return the other member of the session"""
        first, second = self.members
        if conn_id == first:
            return second
        if conn_id == second:
            return first
        raise KeyError(conn_id)


@dataclass
class Participant:
    """What the engine remembers about one live connection"""
    conn_id: str
    state: ConnectionState = ConnectionState.IDLE
    interest: Optional[str] = None
    display_name: Optional[str] = None
    session_id: Optional[str] = None


@dataclass
class DisconnectResult:
    """
    Outcome of a disconnect.

    Attributes:
        survivor: Partner of the departed connection, if it was paired
        rematch: Session created when the survivor was re-queued and
            immediately found another waiter
    """
    survivor: Optional[str] = None
    rematch: Optional[Session] = None


def normalize_interest(interest: str) -> str:
    """
    Trim surrounding whitespace from an interest; case is preserved.

    Raises:
        InvalidInterest: If nothing is left after trimming
    """
    key = (interest or "").strip()
    if not key:
        raise InvalidInterest("Interest must not be empty")
    return key


class MatchingEngine:
    """
    Pairs connections that announce the same interest, FIFO per interest.

    Args:
        on_repair: Called, outside the lock, with the outcome of purging a
            connection found in inconsistent state, so its former partner
            can be told and matched again
    """

    def __init__(self, on_repair: Optional[Callable[[DisconnectResult], None]] = None):
        self.on_repair = on_repair
        self._lock = threading.Lock()
        self._pool: Dict[str, Deque[str]] = {}
        self._sessions: Dict[str, Session] = {}
        self._participants: Dict[str, Participant] = {}

    # --- mutations ---

    def announce(self, conn_id: str, interest: str,
                 display_name: Optional[str] = None) -> Optional[Session]:
        """
        Queue a connection under an interest and pair it if possible.

        Args:
            conn_id: Announcing connection
            interest: Raw interest string
            display_name: Optional name shown to the partner

        Returns:
            The new Session if a waiter was found, otherwise None

        Raises:
            InvalidInterest: If the interest is empty after trimming
            AlreadyPaired: If the connection is already in a session
        """
        key = normalize_interest(interest)
        repaired = None

        try:
            with self._lock:
                participant = self._participants.setdefault(conn_id, Participant(conn_id))
                try:
                    self._check(participant)
                except PoolInvariantViolation as e:
                    logger.error("Invariant violation on announce, purging connection: %s", e)
                    repaired = self._purge(participant)

                if participant.state == ConnectionState.PAIRED:
                    raise AlreadyPaired(f"{conn_id} is already paired")

                if participant.state == ConnectionState.WAITING:
                    self._remove_from_pool(participant)

                participant.interest = key
                participant.display_name = display_name
                return self._enqueue(participant)
        finally:
            if repaired is not None and repaired.survivor is not None and self.on_repair:
                self.on_repair(repaired)

    def disconnect(self, conn_id: str) -> DisconnectResult:
        """
        Remove a connection from all matching state.

        A waiting connection simply leaves its pool. A paired connection
        destroys its session and its partner is re-queued on the same
        interest, which may pair it straight away.
        """
        with self._lock:
            participant = self._participants.pop(conn_id, None)
            if participant is None:
                return DisconnectResult()

            result = DisconnectResult()
            if participant.state == ConnectionState.WAITING:
                self._remove_from_pool(participant)
            elif participant.state == ConnectionState.PAIRED:
                result = self._end_session(participant)

            participant.state = ConnectionState.CLOSED
            participant.session_id = None
            return result

    # --- lookups ---

    def session_of(self, conn_id: str) -> Optional[Session]:
        with self._lock:
            participant = self._participants.get(conn_id)
            if participant is None or participant.session_id is None:
                return None
            return self._sessions.get(participant.session_id)

    def peer_of(self, conn_id: str) -> Optional[str]:
        """Partner of a paired connection, or None"""
        session = self.session_of(conn_id)
        return session.peer_of(conn_id) if session else None

    def state_of(self, conn_id: str) -> ConnectionState:
        with self._lock:
            participant = self._participants.get(conn_id)
            return participant.state if participant else ConnectionState.IDLE

    def display_name_of(self, conn_id: str) -> Optional[str]:
        with self._lock:
            participant = self._participants.get(conn_id)
            return participant.display_name if participant else None

    def stats(self) -> Dict[str, int]:
        """Aggregate counts; interest strings are never exposed"""
        with self._lock:
            return {
                "connections": len(self._participants),
                "waiting": sum(len(queue) for queue in self._pool.values()),
                "sessions": len(self._sessions),
            }

    def check_invariants(self):
        """
        Scan the whole pool and session table.

        This walks all matching state, so it is meant for tests and
        diagnostics rather than the request path.

        Raises:
            PoolInvariantViolation: On the first inconsistency found
        """
        with self._lock:
            queued: Dict[str, int] = {}
            for queue in self._pool.values():
                for conn_id in queue:
                    queued[conn_id] = queued.get(conn_id, 0) + 1
            memberships: Dict[str, int] = {}
            for session in self._sessions.values():
                for conn_id in session.members:
                    memberships[conn_id] = memberships.get(conn_id, 0) + 1

            for conn_id in set(queued) | set(memberships):
                if queued.get(conn_id, 0) > 1:
                    raise PoolInvariantViolation(conn_id, f"queued {queued[conn_id]} times")
                if memberships.get(conn_id, 0) > 1:
                    raise PoolInvariantViolation(conn_id, f"member of {memberships[conn_id]} sessions")
                if conn_id in queued and conn_id in memberships:
                    raise PoolInvariantViolation(conn_id, "queued while paired")
                if conn_id not in self._participants:
                    raise PoolInvariantViolation(conn_id, "unknown connection holds state")

            for participant in self._participants.values():
                self._check(participant)

    # --- internals (lock held) ---

    def _check(self, participant: Participant):
        """Constant-time consistency check of one participant record"""
        conn_id = participant.conn_id
        if participant.state == ConnectionState.PAIRED:
            session = self._sessions.get(participant.session_id)
            if session is None or conn_id not in session.members:
                raise PoolInvariantViolation(conn_id, "paired without a matching session")
        elif participant.state == ConnectionState.WAITING:
            queue = self._pool.get(participant.interest)
            if not queue or conn_id not in queue:
                raise PoolInvariantViolation(conn_id, "waiting outside its interest queue")
        elif participant.session_id is not None:
            raise PoolInvariantViolation(conn_id, "idle but bound to a session")

    def _enqueue(self, participant: Participant) -> Optional[Session]:
        key = participant.interest
        queue = self._pool.get(key)
        while queue:
            candidate = self._participants.get(queue.popleft())
            if (candidate is None or candidate is participant
                    or candidate.state != ConnectionState.WAITING or candidate.interest != key):
                logger.warning("Dropped stale pool entry")
                continue
            if not queue:
                del self._pool[key]
            return self._pair(candidate, participant)

        queue = self._pool.setdefault(key, deque())
        queue.append(participant.conn_id)
        participant.state = ConnectionState.WAITING
        logger.debug("%s waiting (%d in pool)", participant.conn_id, len(queue))
        return None

    def _pair(self, first: Participant, second: Participant) -> Session:
        session = Session(session_id=uuid.uuid4().hex, members=(first.conn_id, second.conn_id))
        self._sessions[session.session_id] = session
        for participant in (first, second):
            participant.state = ConnectionState.PAIRED
            participant.session_id = session.session_id
        logger.info("Session %s created for %s and %s",
                    session.session_id, first.conn_id, second.conn_id)
        return session

    def _end_session(self, participant: Participant) -> DisconnectResult:
        """Destroy the participant's session and re-queue its partner"""
        result = DisconnectResult()
        session = self._sessions.pop(participant.session_id, None)
        participant.session_id = None
        if session is None or participant.conn_id not in session.members:
            return result

        survivor = self._participants.get(session.peer_of(participant.conn_id))
        if survivor is not None and survivor.session_id == session.session_id:
            result.survivor = survivor.conn_id
            survivor.state = ConnectionState.IDLE
            survivor.session_id = None
            result.rematch = self._enqueue(survivor)
        logger.info("Session %s ended by %s", session.session_id, participant.conn_id)
        return result

    def _remove_from_pool(self, participant: Participant):
        queue = self._pool.get(participant.interest)
        if queue and participant.conn_id in queue:
            queue.remove(participant.conn_id)
            if not queue:
                del self._pool[participant.interest]
        participant.state = ConnectionState.IDLE

    def _purge(self, participant: Participant) -> DisconnectResult:
        """Force a connection back to IDLE; its partner, if any, is re-queued"""
        self._remove_from_pool(participant)
        result = self._end_session(participant)
        participant.state = ConnectionState.IDLE
        return result
