"""Tests for solver output line and outcome classification."""

import json

import pytest

from solver_output import (
    Failed,
    PlainOutput,
    RateLimited,
    RateLimitMarker,
    SessionMarker,
    Succeeded,
    classify_line,
    classify_outcome,
    extract_reset_hint,
    is_overload_text,
)


def test_session_marker_from_init_event() -> None:
    line = json.dumps({"type": "system", "subtype": "init", "session_id": "abc-123"})
    assert classify_line(line) == SessionMarker("abc-123")


def test_plain_text_line() -> None:
    marker = classify_line("Cloning repository...")
    assert marker == PlainOutput("Cloning repository...")


def test_plain_rate_limit_line_with_hint() -> None:
    marker = classify_line("Claude AI usage limit reached. Your limit resets 11:45pm (UTC)")
    assert isinstance(marker, RateLimitMarker)
    assert marker.reset_hint == "11:45pm"


def test_rate_limit_in_result_event() -> None:
    line = json.dumps({
        "type": "result",
        "is_error": True,
        "result": "5-hour limit reached ∙ resets 3am",
        "session_id": "abc-123",
    })
    marker = classify_line(line)
    assert isinstance(marker, RateLimitMarker)
    assert marker.reset_hint == "3am"


def test_assistant_message_mentioning_rate_limit_is_not_a_marker() -> None:
    line = json.dumps({
        "type": "assistant",
        "session_id": "abc-123",
        "message": {"content": [{"type": "text", "text": "I'll add a rate limit to the API"}]},
    })
    assert classify_line(line) == SessionMarker("abc-123")


def test_json_without_session_is_plain_output() -> None:
    line = json.dumps({"type": "tool_use", "name": "Bash"})
    marker = classify_line(line)
    assert isinstance(marker, PlainOutput)
    assert marker.event == {"type": "tool_use", "name": "Bash"}


def test_malformed_json_is_plain_output() -> None:
    assert isinstance(classify_line("{not json"), PlainOutput)


@pytest.mark.parametrize("text, expected", [
    ("resets at 5:30am", "5:30am"),
    ("Resets 11 PM", "11pm"),
    ("rate limit exceeded", None),
])
def test_extract_reset_hint(text: str, expected) -> None:
    assert extract_reset_hint(text) == expected


def test_overload_detection() -> None:
    assert is_overload_text('API Error: 500 {"type":"error","error":{"type":"api_error","message":"Overloaded"}}')
    assert not is_overload_text("All tests pass")


def test_outcome_priority() -> None:
    marker = RateLimitMarker("3am")
    assert classify_outcome(1, marker, "s1") == RateLimited("3am", "s1")
    assert classify_outcome(0, marker, None) == RateLimited("3am", None)
    assert classify_outcome(2, None, "s1") == Failed(2, "s1")
    assert classify_outcome(0, None, "s1") == Succeeded("s1")
