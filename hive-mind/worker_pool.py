"""Bounded pool of asyncio workers draining the issue queue.

Each worker takes one issue at a time, so the number of issues in processing
never exceeds the pool size.  What "processing" means is pluggable: the
default :class:`SolveCommandProcessor` runs the ``solve`` entry point as a
child process and streams its output into this process's log.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
import shutil
import sys
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from host_cli import stream_command
from issue_queue import IssueQueue

log = logging.getLogger(__name__)

# (issue_url, worker_id) -> True when the attempt succeeded
IssueProcessor = Callable[[str, str], Awaitable[bool]]


@dataclass
class WorkerSlot:
    slot_id: str
    issue_url: str | None = None
    started_at: datetime | None = None
    attempt: int = 0

    @property
    def busy(self) -> bool:
        return self.issue_url is not None


class WorkerPool:
    def __init__(
        self,
        queue: IssueQueue,
        processor: IssueProcessor,
        concurrency: int = 2,
        pull_requests_per_issue: int = 1,
        idle_interval: float = 5.0,
        pull_request_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if pull_requests_per_issue < 1:
            raise ValueError("pull_requests_per_issue must be at least 1")
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.pull_requests_per_issue = pull_requests_per_issue
        self.idle_interval = idle_interval
        self.pull_request_delay = pull_request_delay
        self.sleep = sleep
        self.slots = [WorkerSlot(f"worker-{n}") for n in range(1, concurrency + 1)]
        self._running = False
        self._wakeup: asyncio.Event | None = None
        self._tasks: list[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        return sum(1 for slot in self.slots if slot.busy)

    def start(self) -> None:
        """Spawn the worker tasks; must be called with a running event loop."""
        self._running = True
        self._wakeup = asyncio.Event()
        self._tasks = [
            asyncio.create_task(self._worker(slot), name=slot.slot_id) for slot in self.slots
        ]
        log.info("Started %d workers", self.concurrency)

    def stop(self) -> None:
        """Stop taking new issues; workers finish their current issue and exit."""
        if self._running:
            log.info("Stopping worker pool: no new issues will be started")
        self._running = False
        if self._wakeup is not None:
            self._wakeup.set()

    def notify_work(self) -> None:
        """Wake idle workers early after new issues were enqueued."""
        if self._wakeup is not None:
            self._wakeup.set()

    async def join(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _worker(self, slot: WorkerSlot) -> None:
        log.debug("%s started", slot.slot_id)
        while self._running:
            issue_url = self.queue.dequeue()
            if issue_url is None:
                await self._idle_wait()
                continue
            await self._process(slot, issue_url)
        log.debug("%s stopped", slot.slot_id)

    async def _idle_wait(self) -> None:
        assert self._wakeup is not None
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=self.idle_interval)
        except asyncio.TimeoutError:
            pass
        if self._running:
            self._wakeup.clear()

    async def _process(self, slot: WorkerSlot, issue_url: str) -> None:
        slot.issue_url = issue_url
        slot.started_at = datetime.now(timezone.utc)
        log.info("[%s] Processing %s", slot.slot_id, issue_url)

        failed = False
        for attempt in range(1, self.pull_requests_per_issue + 1):
            slot.attempt = attempt
            if self.pull_requests_per_issue > 1:
                log.info("[%s] Pull request %d/%d for %s",
                         slot.slot_id, attempt, self.pull_requests_per_issue, issue_url)
            try:
                ok = await self.processor(issue_url, slot.slot_id)
            except Exception as exc:
                log.error("[%s] Unexpected error processing %s: %s", slot.slot_id, issue_url, exc)
                ok = False
            if not ok:
                failed = True
                break
            if attempt < self.pull_requests_per_issue:
                await self.sleep(self.pull_request_delay)

        if failed:
            self.queue.mark_failed(issue_url)
            log.error("[%s] Failed %s", slot.slot_id, issue_url)
        else:
            self.queue.mark_completed(issue_url)
            log.info("[%s] Completed %s", slot.slot_id, issue_url)
        slot.issue_url = None
        slot.started_at = None
        slot.attempt = 0
        log.info("Queue: %s", self.queue.stats())


# ---------------------------------------------------------------------------
# Default processor: run `solve` as a child process
# ---------------------------------------------------------------------------

def resolve_solve_command() -> list[str]:
    """The installed ``solve`` script, else ``hive_solve.py`` beside this module."""
    path = shutil.which("solve")
    if path:
        return [path]
    return [sys.executable, str(Path(__file__).resolve().parent / "hive_solve.py")]


class SolveCommandProcessor:
    """Process one issue by running ``solve <issue-url>`` and checking its exit code."""

    def __init__(
        self,
        model: str = "sonnet",
        tool: str = "claude",
        fork: bool = False,
        auto_continue: bool = False,
        verbose: bool = False,
        log_dir: str | Path | None = None,
        extra_args: Sequence[str] = (),
        dry_run: bool = False,
        dry_run_delay: float = 2.0,
        solve_command: Sequence[str] | None = None,
        streamer: Callable[..., Awaitable[int]] = stream_command,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.model = model
        self.tool = tool
        self.fork = fork
        self.auto_continue = auto_continue
        self.verbose = verbose
        self.log_dir = log_dir
        self.extra_args = list(extra_args)
        self.dry_run = dry_run
        self.dry_run_delay = dry_run_delay
        self.solve_command = list(solve_command) if solve_command else resolve_solve_command()
        self.streamer = streamer
        self.sleep = sleep

    def build_command(self, issue_url: str) -> list[str]:
        cmd = [*self.solve_command, issue_url, "--model", self.model, "--tool", self.tool]
        if self.fork:
            cmd.append("--fork")
        if self.auto_continue:
            cmd.append("--auto-continue")
        if self.verbose:
            cmd.append("--verbose")
        if self.log_dir:
            cmd += ["--log-dir", str(self.log_dir)]
        return cmd + self.extra_args

    async def __call__(self, issue_url: str, worker_id: str) -> bool:
        cmd = self.build_command(issue_url)
        command_line = " ".join(shlex.quote(part) for part in cmd)
        if self.dry_run:
            log.info("[%s] Dry run, would execute: %s", worker_id, command_line)
            await self.sleep(self.dry_run_delay)
            return True

        log.info("[%s] Executing: %s", worker_id, command_line)
        try:
            exit_code = await self.streamer(
                cmd,
                lambda line: log.info("[solve %s] %s", worker_id, line),
                lambda line: log.warning("[solve %s] %s", worker_id, line),
            )
        except OSError as exc:
            log.error("[%s] Could not start solve: %s", worker_id, exc)
            return False
        if exit_code != 0:
            log.error("[%s] solve exited with code %d for %s", worker_id, exit_code, issue_url)
            return False
        return True
