"""Run the external AI solver inside a prepared working copy."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from host_cli import stream_command
from retry_policy import RetryPolicy
from solver_output import (
    PlainOutput,
    RateLimitMarker,
    SessionMarker,
    SolverOutcome,
    classify_line,
    classify_outcome,
    extract_reset_hint,
    is_overload_text,
    is_rate_limit_text,
)

log = logging.getLogger(__name__)

TOOLS = ("claude", "copilot", "qwen")

_COPILOT_MODELS = {
    "sonnet": "claude-sonnet-4.5",
    "sonnet-4": "claude-sonnet-4",
    "sonnet-4.5": "claude-sonnet-4.5",
    "gpt5": "gpt-5",
}

PROMPT_TEMPLATE = """\
Issue to solve: {issue_url}
Your prepared branch: {branch}
Your prepared working directory: {workdir}
{fork_note}
Read the issue and all of its comments with gh before changing anything.
Commit your work to the prepared branch and push it, then open a pull request
that references the issue. If the issue is unclear, ask a clarifying question
as a comment on the issue instead of guessing.
"""


class SolverError(Exception):
    """Raised when the solver executable cannot be started."""


Streamer = Callable[..., Awaitable[int]]


@dataclass
class SolverRun:
    tool: str
    command: list[str]
    exit_code: int | None = None
    session_id: str | None = None
    rate_limit: RateLimitMarker | None = None
    overloaded: bool = False
    message_count: int = 0
    tool_use_count: int = 0
    started_at: datetime | None = None
    finished_at: datetime | None = None
    attempts: int = 1

    @property
    def outcome(self) -> SolverOutcome:
        return classify_outcome(
            self.exit_code if self.exit_code is not None else 1,
            self.rate_limit,
            self.session_id,
        )

    @property
    def elapsed_seconds(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0


def build_prompt(issue_url: str, branch: str, workdir: str | Path, fork: str | None = None) -> str:
    fork_note = f"Your fork: {fork} (push there, open the pull request against upstream)\n" if fork else ""
    return PROMPT_TEMPLATE.format(issue_url=issue_url, branch=branch, workdir=workdir, fork_note=fork_note)


def build_solver_command(
    tool: str,
    prompt: str,
    model: str,
    resume_token: str | None = None,
) -> tuple[list[str], str | None]:
    """Return ``(argv, stdin_text)`` for *tool*."""
    if tool == "claude":
        cmd = ["claude"]
        if resume_token:
            cmd += ["--resume", resume_token]
        cmd += [
            "--output-format", "stream-json",
            "--verbose",
            "--dangerously-skip-permissions",
            "--model", model,
            "-p", prompt,
        ]
        return cmd, None
    if tool == "copilot":
        cmd = ["copilot"]
        if resume_token:
            cmd += ["--resume", resume_token]
        cmd += [
            "--allow-all-tools",
            "--model", _COPILOT_MODELS.get(model, model),
            "--no-color",
            "-p", prompt,
        ]
        return cmd, None
    if tool == "qwen":
        if resume_token:
            log.warning("qwen does not support resuming; starting a new session")
        return ["qwen"], prompt
    raise ValueError(f"Unknown solver tool: {tool!r} (expected one of {', '.join(TOOLS)})")


def solver_env() -> dict[str, str]:
    """Return a copy of os.environ without the CLAUDECODE variable."""
    return {k: v for k, v in os.environ.items() if k != "CLAUDECODE"}


class SolverRunner:
    """Spawn the solver, stream its output and collect session markers.

    Runs that fail with an API overload error are repeated with exponential
    backoff (``overload_policy``); everything else is reported as-is.
    """

    def __init__(
        self,
        tool: str = "claude",
        overload_policy: RetryPolicy | None = None,
        streamer: Streamer = stream_command,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if tool not in TOOLS:
            raise ValueError(f"Unknown solver tool: {tool!r}")
        self.tool = tool
        self.overload_policy = overload_policy or RetryPolicy(max_attempts=4, base_delay=5.0)
        self.streamer = streamer
        self.sleep = sleep

    async def run(
        self,
        working_dir: str | Path,
        prompt: str,
        model: str,
        resume_token: str | None = None,
    ) -> SolverRun:
        attempt = 1
        while True:
            run = await self._run_once(working_dir, prompt, model, resume_token)
            run.attempts = attempt
            if not (run.overloaded and run.rate_limit is None and run.exit_code != 0):
                return run
            if attempt >= self.overload_policy.max_attempts:
                log.error("API overload persisted after %d attempts", attempt)
                return run
            delay = self.overload_policy.delay_for(attempt)
            log.warning("API overload detected; retrying %s in %.0fs", self.tool, delay)
            await self.sleep(delay)
            attempt += 1

    async def _run_once(
        self,
        working_dir: str | Path,
        prompt: str,
        model: str,
        resume_token: str | None,
    ) -> SolverRun:
        cmd, stdin_text = build_solver_command(self.tool, prompt, model, resume_token)
        run = SolverRun(tool=self.tool, command=cmd, started_at=datetime.now(timezone.utc))

        def note_rate_limit(marker: RateLimitMarker) -> None:
            if run.rate_limit is None or (marker.reset_hint and not run.rate_limit.reset_hint):
                run.rate_limit = marker

        def on_stdout(line: str) -> None:
            if not line.strip():
                return
            log.info("[%s] %s", self.tool, line)
            marker = classify_line(line)
            if isinstance(marker, SessionMarker):
                if run.session_id is None:
                    run.session_id = marker.session_id
                    log.info("Session ID: %s", marker.session_id)
            elif isinstance(marker, RateLimitMarker):
                note_rate_limit(marker)
            elif isinstance(marker, PlainOutput) and marker.event is not None:
                event_type = marker.event.get("type")
                if event_type in ("assistant", "message"):
                    run.message_count += 1
                elif event_type == "tool_use":
                    run.tool_use_count += 1
            if is_overload_text(line):
                run.overloaded = True

        def on_stderr(line: str) -> None:
            if not line.strip():
                return
            log.warning("[%s stderr] %s", self.tool, line)
            if is_rate_limit_text(line):
                note_rate_limit(RateLimitMarker(extract_reset_hint(line), line))
            if is_overload_text(line):
                run.overloaded = True

        log.info("Running %s (model=%s%s) in %s", self.tool, model,
                 f", resume={resume_token}" if resume_token else "", working_dir)
        try:
            run.exit_code = await self.streamer(
                cmd,
                on_stdout,
                on_stderr,
                cwd=working_dir,
                env=solver_env(),
                stdin_text=stdin_text,
            )
        except OSError as exc:
            raise SolverError(f"Could not start {cmd[0]}: {exc}") from exc
        finally:
            run.finished_at = datetime.now(timezone.utc)

        log.info(
            "%s exited with code %s after %.0fs (messages=%d, tool uses=%d)",
            self.tool, run.exit_code, run.elapsed_seconds, run.message_count, run.tool_use_count,
        )
        return run
