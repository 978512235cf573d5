"""Graceful shutdown of the worker pool on SIGINT/SIGTERM.

The pool moves RUNNING -> DRAINING -> STOPPED.  The first signal wins the
RUNNING -> DRAINING transition and runs the shutdown sequence; any signal
arriving afterwards is ignored.  In-flight solver processes are never killed,
the drain only waits for them up to a deadline.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
import threading
from collections.abc import Awaitable, Callable

from issue_queue import IssueQueue

log = logging.getLogger(__name__)

SIGNAL_LABELS = {
    signal.SIGINT: "interrupt",
    signal.SIGTERM: "termination",
}


class PoolState(enum.Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ShutdownCoordinator:
    def __init__(
        self,
        queue: IssueQueue,
        stop_pool: Callable[[], None],
        cleanup: Callable[[], object] | None = None,
        timeout: float = 10.0,
        poll_interval: float = 0.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.stop_pool = stop_pool
        self.cleanup = cleanup
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.sleep = sleep
        self.stopped = asyncio.Event()
        self._state = PoolState.RUNNING
        self._lock = threading.Lock()
        self._task: asyncio.Task | None = None

    @property
    def state(self) -> PoolState:
        with self._lock:
            return self._state

    @property
    def running(self) -> bool:
        return self.state is PoolState.RUNNING

    def install(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum, label in SIGNAL_LABELS.items():
            loop.add_signal_handler(signum, self.handle_signal, label)

    def uninstall(self, loop: asyncio.AbstractEventLoop) -> None:
        for signum in SIGNAL_LABELS:
            loop.remove_signal_handler(signum)

    def handle_signal(self, label: str) -> None:
        """Signal handler; must be called from the event loop thread."""
        if not self._begin_draining():
            log.debug("Ignoring %s signal: shutdown already in progress", label)
            return
        log.info("Received %s signal, shutting down gracefully...", label)
        self._task = asyncio.get_running_loop().create_task(self._drain())

    async def shutdown(self) -> bool:
        """Run the shutdown sequence unless one is already underway.

        Returns True if this call ran it.  Either way, returns only once the
        pool is STOPPED.
        """
        if not self._begin_draining():
            await self.stopped.wait()
            return False
        log.info("Shutting down gracefully...")
        await self._drain()
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _begin_draining(self) -> bool:
        with self._lock:
            if self._state is not PoolState.RUNNING:
                return False
            self._state = PoolState.DRAINING
            return True

    async def _drain(self) -> None:
        self.stop_pool()

        waited = 0.0
        while self.queue.stats().processing > 0 and waited < self.timeout:
            await self.sleep(self.poll_interval)
            waited += self.poll_interval

        stats = self.queue.stats()
        if stats.processing:
            log.warning(
                "%d issue(s) still processing after %.0fs; their solvers keep running",
                stats.processing, self.timeout,
            )

        if self.cleanup is not None and stats.completed > 0:
            log.info("Running cleanup after %d completed issue(s)", stats.completed)
            try:
                await asyncio.get_running_loop().run_in_executor(None, self.cleanup)
            except Exception as exc:
                log.error("Cleanup failed: %s", exc)

        with self._lock:
            self._state = PoolState.STOPPED
        log.info("Shutdown complete")
        self.stopped.set()
