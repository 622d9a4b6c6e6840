"""
Connection sessions - per-socket lifecycle + admission control

Every accepted socket gets a Session. The SessionManager is the only thing
that mutates the registry and the connection total, and it does so from
exactly two places: admit() and release().
"""
import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from aiohttp import WSCloseCode, web

from .registry import RoomRegistry

logger = logging.getLogger("yjs_relay")

CLOSE_GOING_AWAY = WSCloseCode.GOING_AWAY          # 1001
CLOSE_SETUP_FAILED = WSCloseCode.INTERNAL_ERROR    # 1011
CLOSE_OVERLOADED = WSCloseCode.TRY_AGAIN_LATER     # 1013


class SessionState(Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass(eq=False)
class Session:
    connection_id: int
    room: str
    ws: web.WebSocketResponse
    state: SessionState = SessionState.CONNECTING
    created_at: float = field(default_factory=time.time)
    frames_received: int = 0
    bytes_received: int = 0
    close_code: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.state is not SessionState.CLOSED

    def record_frame(self, nbytes: int) -> None:
        self.frames_received += 1
        self.bytes_received += nbytes
        logger.debug("📦 [%d] %r frame: %d bytes", self.connection_id, self.room, nbytes)

    async def close(self, code: int, message: bytes = b"") -> bool:
        """
        Ask the socket to close. Safe on sockets that are already closed or
        still mid-handshake (the upgrade handler closes those itself).
        """
        if self.close_code is None:
            self.close_code = code
        if not self.is_open or not self.ws.prepared or self.ws.closed:
            return False
        return await self.ws.close(code=code, message=message)


class AdmissionRejected(Exception):
    """Raised by SessionManager.admit() when a connection cannot be accepted"""

    def __init__(self, reason: str, close_code: int):
        super().__init__(reason)
        self.reason = reason
        self.close_code = close_code


class SessionManager:
    """Admission controller + session bookkeeping for one relay instance"""

    def __init__(self, registry: RoomRegistry, max_connections: int):
        self.registry = registry
        self.max_connections = max_connections
        self.accepting = True
        self._sessions: Dict[int, Session] = {}
        self._ids = itertools.count(1)
        self._drained = asyncio.Event()
        self._drained.set()

    @property
    def total_connections(self) -> int:
        return len(self._sessions)

    def sessions(self) -> List[Session]:
        return list(self._sessions.values())

    def get(self, connection_id: int) -> Optional[Session]:
        return self._sessions.get(connection_id)

    def admit(self, room: str, ws: web.WebSocketResponse) -> Session:
        """
        Single admission decision point. Runs without awaiting, so the
        capacity check and the increment can't interleave with another
        connection's admission.
        """
        if not self.accepting:
            raise AdmissionRejected("server shutting down", CLOSE_GOING_AWAY)
        if self.total_connections >= self.max_connections:
            raise AdmissionRejected(
                f"connection limit reached ({self.max_connections})", CLOSE_OVERLOADED
            )

        session = Session(connection_id=next(self._ids), room=room, ws=ws)
        self._sessions[session.connection_id] = session
        self._drained.clear()
        self.registry.join(room)

        logger.info(
            "🔌 [%d] Connecting to %r (total: %d/%d)",
            session.connection_id, room, self.total_connections, self.max_connections
        )
        return session

    def activate(self, session: Session) -> None:
        if session.state is not SessionState.CONNECTING:
            raise RuntimeError(
                f"session {session.connection_id} cannot become active from {session.state.value}"
            )
        session.state = SessionState.ACTIVE
        logger.info(
            "✅ [%d] Active in %r (room: %d, total: %d)",
            session.connection_id, session.room,
            self.registry.count(session.room), self.total_connections
        )

    def release(self, session: Session, reason: str = "closed") -> bool:
        """
        Terminal transition. Compensates the admission-time join exactly once;
        later calls for the same session are no-ops and return False.
        """
        if session.state is SessionState.CLOSED:
            return False

        previous = session.state
        session.state = SessionState.CLOSED
        self._sessions.pop(session.connection_id, None)
        self.registry.leave(session.room)
        if not self._sessions:
            self._drained.set()

        logger.info(
            "👋 [%d] Left %r from %s: %s (total: %d)",
            session.connection_id, session.room, previous.value, reason, self.total_connections
        )
        return True

    def stop_accepting(self) -> None:
        self.accepting = False

    async def wait_drained(self) -> None:
        await self._drained.wait()
