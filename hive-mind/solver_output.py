"""Classify solver output lines and whole solver runs.

Every stdout line goes through :func:`classify_line`, which turns it into one
of three markers.  After the process exits, :func:`classify_outcome` combines
what was seen with the exit code.

Rate-limit detection only looks at plain (non-JSON) lines and at JSON
``result``/``error`` events.  Assistant messages and tool output are never
inspected, so a solver that merely *talks* about rate limits while working on
an issue does not trip the scheduler.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field

_RATE_LIMIT_PATTERNS = [
    re.compile(r"rate_limit_exceeded"),
    re.compile(r"you have exceeded your rate limit", re.IGNORECASE),
    re.compile(r"\brate limit\b", re.IGNORECASE),
    re.compile(r"usage limit", re.IGNORECASE),
    re.compile(r"\blimit reached\b", re.IGNORECASE),
]
_RESET_HINT = re.compile(
    r"resets?\s+(?:at\s+)?(\d{1,2}(?::\d{2})?\s*[ap]m)", re.IGNORECASE
)
_OVERLOAD_PATTERNS = [
    re.compile(r"API Error: 5\d\d.*Overloaded", re.IGNORECASE),
    re.compile(r"overloaded_error"),
]

_TERMINAL_EVENT_TYPES = {"result", "error"}


# ---------------------------------------------------------------------------
# Line markers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SessionMarker:
    session_id: str


@dataclass(frozen=True)
class RateLimitMarker:
    reset_hint: str | None = None
    text: str = ""


@dataclass(frozen=True)
class PlainOutput:
    text: str
    event: dict | None = field(default=None, compare=False)


LineMarker = SessionMarker | RateLimitMarker | PlainOutput


def is_rate_limit_text(text: str) -> bool:
    return any(p.search(text) for p in _RATE_LIMIT_PATTERNS)


def is_overload_text(text: str) -> bool:
    return any(p.search(text) for p in _OVERLOAD_PATTERNS)


def extract_reset_hint(text: str) -> str | None:
    """Return a wall-clock hint such as ``"11:45pm"`` or ``"3am"``, if present."""
    match = _RESET_HINT.search(text)
    if not match:
        return None
    return re.sub(r"\s+", "", match.group(1)).lower()


def _event_text(event: dict) -> str:
    parts = []
    for key in ("result", "error", "message"):
        value = event.get(key)
        if isinstance(value, str):
            parts.append(value)
        elif isinstance(value, dict):
            parts.append(json.dumps(value))
    return " ".join(parts)


def classify_line(line: str) -> LineMarker:
    text = line.strip()
    event = None
    if text.startswith("{"):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            event = parsed

    if event is None:
        if is_rate_limit_text(text):
            return RateLimitMarker(extract_reset_hint(text), text)
        return PlainOutput(line)

    if event.get("type") in _TERMINAL_EVENT_TYPES or event.get("is_error"):
        detail = _event_text(event)
        if is_rate_limit_text(detail):
            return RateLimitMarker(extract_reset_hint(detail), detail)

    session_id = event.get("session_id")
    if isinstance(session_id, str) and session_id:
        return SessionMarker(session_id)
    return PlainOutput(line, event)


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Succeeded:
    session_id: str | None = None


@dataclass(frozen=True)
class Failed:
    exit_code: int
    session_id: str | None = None


@dataclass(frozen=True)
class RateLimited:
    reset_hint: str | None = None
    session_id: str | None = None


SolverOutcome = Succeeded | Failed | RateLimited


def classify_outcome(
    exit_code: int,
    rate_limit: RateLimitMarker | None,
    session_id: str | None,
) -> SolverOutcome:
    """A rate-limit marker wins over a non-zero exit, which wins over success."""
    if rate_limit is not None:
        return RateLimited(rate_limit.reset_hint, session_id)
    if exit_code != 0:
        return Failed(exit_code, session_id)
    return Succeeded(session_id)
