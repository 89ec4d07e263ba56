"""Background sweeps: idle session eviction and expired token cleanup."""

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable

from live_proxy.clock import Clock, utcnow
from live_proxy.ledger import UsageLedger
from live_proxy.logging import get_logger
from live_proxy.sessions import SessionRegistry

logger = get_logger("reaper")

DEFAULT_IDLE_TIMEOUT_SECONDS = 15 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 5 * 60
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60 * 60


class PeriodicTask:
    """Runs an async action every ``interval_seconds`` until stopped."""

    def __init__(
        self,
        name: str,
        interval_seconds: float,
        action: Callable[[], Awaitable[Any]],
    ):
        self.name = name
        self._interval = interval_seconds
        self._action = action
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._action()
            except Exception:
                logger.exception(f"{self.name} sweep failed")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None


class InactivityReaper:
    """Closes sessions that have been idle longer than the timeout."""

    def __init__(
        self,
        registry: SessionRegistry,
        idle_timeout_seconds: int = DEFAULT_IDLE_TIMEOUT_SECONDS,
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
        clock: Clock = utcnow,
    ):
        self._registry = registry
        self._idle_timeout = timedelta(seconds=idle_timeout_seconds)
        self._clock = clock
        self._task = PeriodicTask("session reaper", interval_seconds, self.sweep)

    async def sweep(self) -> list[str]:
        """Evict idle sessions and return their ids.

        A failure closing one session is logged and the sweep moves on.
        """
        cutoff = self._clock() - self._idle_timeout
        evicted = []

        for session_id in self._registry.idle_sessions(cutoff):
            logger.info(f"[{session_id}] Cleaning up inactive session")
            try:
                await self._registry.close_session(session_id)
            except Exception as e:
                logger.error(f"[{session_id}] Error closing connection during cleanup: {e}")
            evicted.append(session_id)

        return evicted

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()


class TokenSweeper:
    """Periodically deletes expired and deactivated token records."""

    def __init__(self, ledger: UsageLedger, interval_seconds: float = DEFAULT_CLEANUP_INTERVAL_SECONDS):
        self._ledger = ledger
        self._task = PeriodicTask("token cleanup", interval_seconds, ledger.cleanup_expired)

    def start(self) -> None:
        self._task.start()

    async def stop(self) -> None:
        await self._task.stop()
