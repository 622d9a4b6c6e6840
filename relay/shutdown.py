"""
Shutdown coordinator - drains sessions in bounded time
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .session import CLOSE_GOING_AWAY, SessionManager

logger = logging.getLogger("yjs_relay")


class ShutdownCoordinator:
    """
    Runs the drain sequence once: stop admitting, close every open session
    with 1001, close the listener, then wait for sessions to finish, bounded
    by `grace_period`. Repeated calls share the first run's result.
    """

    def __init__(
        self,
        sessions: SessionManager,
        grace_period: float = 10.0,
        close_listener: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.sessions = sessions
        self.grace_period = grace_period
        self.close_listener = close_listener
        self._task: Optional[asyncio.Task] = None

    @property
    def started(self) -> bool:
        return self._task is not None

    def request(self, reason: str = "shutdown requested") -> asyncio.Task:
        """Start the drain (idempotent). Safe to call from a signal handler."""
        if self._task is None:
            logger.info("🛑 Shutdown requested: %s", reason)
            self._task = asyncio.get_running_loop().create_task(self._drain())
        else:
            logger.info("Shutdown already in progress, ignoring: %s", reason)
        return self._task

    async def shutdown(self, reason: str = "shutdown requested") -> bool:
        """Drain and return True if every session closed inside the grace period"""
        return await asyncio.shield(self.request(reason))

    async def _drain(self) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.grace_period

        self.sessions.stop_accepting()

        open_sessions = [s for s in self.sessions.sessions() if s.is_open]
        logger.info("📴 Closing %d session(s)", len(open_sessions))
        close_tasks = [
            loop.create_task(s.close(CLOSE_GOING_AWAY, b"Server shutting down"))
            for s in open_sessions
        ]

        if self.close_listener is not None:
            try:
                await asyncio.wait_for(self.close_listener(), timeout=max(0.0, deadline - loop.time()))
            except asyncio.TimeoutError:
                logger.warning("Listener did not close within the grace period")
            except Exception as e:
                logger.error("Error closing listener: %s", e, exc_info=True)

        if close_tasks:
            done, pending = await asyncio.wait(close_tasks, timeout=max(0.0, deadline - loop.time()))
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    logger.debug("Error closing session: %s", task.exception())
            if pending:
                # A socket still in its close handshake is not closed yet
                for task in pending:
                    task.cancel()
                logger.warning(
                    "⏱️ Grace period of %.1fs elapsed with %d close handshake(s) unfinished",
                    self.grace_period, len(pending)
                )
                return False

        if self.sessions.total_connections:
            try:
                await asyncio.wait_for(
                    self.sessions.wait_drained(), timeout=max(0.0, deadline - loop.time())
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "⏱️ Grace period of %.1fs elapsed with %d session(s) still open",
                    self.grace_period, self.sessions.total_connections
                )
                return False

        logger.info("✅ All sessions drained")
        return True
