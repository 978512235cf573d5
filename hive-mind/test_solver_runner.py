"""Tests for solver command building and output handling."""

import asyncio
import json

import pytest

from solver_output import Failed, RateLimited, Succeeded
from solver_runner import SolverError, SolverRunner, build_prompt, build_solver_command

INIT = json.dumps({"type": "system", "subtype": "init", "session_id": "s1"})
OVERLOAD = 'API Error: 529 {"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}'


def scripted_streamer(runs: list[tuple[list[str], list[str], int]], calls: list[dict]):
    """Replay one (stdout, stderr, exit_code) triple per invocation."""
    async def streamer(cmd, on_stdout, on_stderr, cwd=None, env=None, stdin_text=None):
        stdout, stderr, exit_code = runs[len(calls)]
        calls.append({"cmd": cmd, "cwd": cwd, "env": env, "stdin": stdin_text})
        for line in stdout:
            on_stdout(line)
        for line in stderr:
            on_stderr(line)
        return exit_code

    return streamer


async def no_sleep(delay: float) -> None:
    return None


def test_claude_command_with_resume() -> None:
    cmd, stdin_text = build_solver_command("claude", "do it", "opus", resume_token="s1")
    assert cmd[:3] == ["claude", "--resume", "s1"]
    assert cmd[-4:] == ["--model", "opus", "-p", "do it"]
    assert "--dangerously-skip-permissions" in cmd
    assert stdin_text is None


def test_copilot_command_maps_model_alias() -> None:
    cmd, _ = build_solver_command("copilot", "do it", "sonnet")
    assert cmd[:4] == ["copilot", "--allow-all-tools", "--model", "claude-sonnet-4.5"]


def test_qwen_reads_prompt_from_stdin() -> None:
    assert build_solver_command("qwen", "do it", "sonnet") == (["qwen"], "do it")


def test_unknown_tool_rejected() -> None:
    with pytest.raises(ValueError):
        build_solver_command("emacs", "do it", "sonnet")
    with pytest.raises(ValueError):
        SolverRunner(tool="emacs")


def test_prompt_mentions_issue_branch_and_fork() -> None:
    prompt = build_prompt("https://github.com/acme/widgets/issues/1", "issue-1-abcd1234", "/tmp/x", "alice/widgets")
    assert "issues/1" in prompt
    assert "issue-1-abcd1234" in prompt
    assert "alice/widgets" in prompt


def test_successful_run_captures_session(monkeypatch) -> None:
    monkeypatch.setenv("CLAUDECODE", "1")
    calls: list[dict] = []
    runner = SolverRunner(streamer=scripted_streamer([([INIT, "working..."], [], 0)], calls))

    run = asyncio.run(runner.run("/tmp/work", "prompt", "sonnet"))

    assert run.outcome == Succeeded("s1")
    assert calls[0]["cwd"] == "/tmp/work"
    assert "CLAUDECODE" not in calls[0]["env"]


def test_nonzero_exit_without_marker_fails() -> None:
    calls: list[dict] = []
    runner = SolverRunner(streamer=scripted_streamer([([INIT], ["boom"], 3)], calls))
    run = asyncio.run(runner.run("/tmp/work", "prompt", "sonnet"))
    assert run.outcome == Failed(3, "s1")


def test_rate_limit_on_stderr_beats_exit_code() -> None:
    calls: list[dict] = []
    stderr = ["Error: rate limit exceeded, resets at 11:45pm"]
    runner = SolverRunner(streamer=scripted_streamer([([INIT], stderr, 1)], calls))
    run = asyncio.run(runner.run("/tmp/work", "prompt", "sonnet"))
    assert run.outcome == RateLimited("11:45pm", "s1")


def test_overload_is_retried_with_backoff() -> None:
    calls: list[dict] = []
    sleeps: list[float] = []

    async def record_sleep(delay: float) -> None:
        sleeps.append(delay)

    runner = SolverRunner(
        streamer=scripted_streamer([([INIT, OVERLOAD], [], 1), ([INIT], [], 0)], calls),
        sleep=record_sleep,
    )
    run = asyncio.run(runner.run("/tmp/work", "prompt", "sonnet"))

    assert run.outcome == Succeeded("s1")
    assert run.attempts == 2
    assert sleeps == [5.0]


def test_spawn_failure_raises_solver_error() -> None:
    async def missing(cmd, on_stdout, on_stderr, **kwargs):
        raise FileNotFoundError(cmd[0])

    runner = SolverRunner(streamer=missing, sleep=no_sleep)
    with pytest.raises(SolverError):
        asyncio.run(runner.run("/tmp/work", "prompt", "sonnet"))
