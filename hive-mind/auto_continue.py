"""Wait out a solver usage limit, then resume the same session."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from solver_output import RateLimited, SolverOutcome

log = logging.getLogger(__name__)

LONG_WAIT_SECONDS = 30 * 60
LONG_WAIT_REPORT_INTERVAL = 30 * 60
SHORT_WAIT_REPORT_INTERVAL = 60

_RESET_TIME = re.compile(r"^\s*(\d{1,2})(?::(\d{2}))?\s*([ap]m)\s*$", re.IGNORECASE)


@dataclass
class Session:
    issue_url: str
    session_id: str | None = None
    reset_hint: str | None = None
    attempts: int = 0


def parse_reset_time(text: str) -> tuple[int, int]:
    """Convert ``"11:45pm"`` or ``"3am"`` to a 24-hour ``(hour, minute)``."""
    match = _RESET_TIME.match(text)
    if not match:
        raise ValueError(f"Invalid reset time: {text!r}")
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    if not 1 <= hour <= 12 or minute > 59:
        raise ValueError(f"Invalid reset time: {text!r}")
    meridiem = match.group(3).lower()
    if meridiem == "pm" and hour != 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    return hour, minute


def calculate_wait(reset_hint: str, now: datetime | None = None) -> timedelta:
    """Time until the next occurrence of *reset_hint*; tomorrow if it has passed."""
    now = now or datetime.now()
    hour, minute = parse_reset_time(reset_hint)
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= now:
        target += timedelta(days=1)
    return target - now


def format_wait(seconds: float) -> str:
    minutes = int(seconds // 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    return f"{minutes}m"


class AutoContinueScheduler:
    """Sleep until the limit resets and re-enter the solver with the stored session.

    Each rate-limit event gets at most one continuation; *max_continuations*
    caps the total so a session that is limited again on every resume cannot
    loop forever.
    """

    def __init__(
        self,
        max_continuations: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.max_continuations = max_continuations
        self.sleep = sleep
        self.now = now

    async def wait_until_reset(self, reset_hint: str) -> None:
        wait = calculate_wait(reset_hint, self.now())
        remaining = wait.total_seconds()
        interval = LONG_WAIT_REPORT_INTERVAL if remaining > LONG_WAIT_SECONDS else SHORT_WAIT_REPORT_INTERVAL
        log.info("Waiting %s until %s for the usage limit to reset", format_wait(remaining), reset_hint)
        while remaining > 0:
            step = min(interval, remaining)
            await self.sleep(step)
            remaining -= step
            if remaining > 0:
                log.info("%s remaining until %s", format_wait(remaining), reset_hint)
        log.info("Usage limit should have reset; continuing")

    async def run(
        self,
        session: Session,
        outcome: SolverOutcome,
        resume: Callable[[str], Awaitable[SolverOutcome]],
    ) -> SolverOutcome:
        """Resume *session* for as long as it keeps hitting the limit, within the cap.

        Returns the last outcome, which is still :class:`RateLimited` when no
        continuation was possible.
        """
        while isinstance(outcome, RateLimited):
            session.session_id = outcome.session_id or session.session_id
            session.reset_hint = outcome.reset_hint
            if not session.session_id:
                log.error("Usage limit reached but no session ID was captured; cannot resume")
                return outcome
            if not session.reset_hint:
                log.error("Usage limit reached but the reset time is unknown; cannot schedule")
                return outcome
            if session.attempts >= self.max_continuations:
                log.error("Giving up after %d continuations of session %s",
                          session.attempts, session.session_id)
                return outcome

            await self.wait_until_reset(session.reset_hint)
            session.attempts += 1
            log.info("Resuming session %s (continuation %d/%d)",
                     session.session_id, session.attempts, self.max_continuations)
            outcome = await resume(session.session_id)
        return outcome
