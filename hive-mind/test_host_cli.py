"""Tests for the gh/git wrappers and streaming subprocess helper."""

import asyncio
import subprocess
import sys
from unittest.mock import patch

import pytest

from host_cli import CommandResult, HostCLI, HostCLIError, stream_command


@patch("host_cli.subprocess.run")
def test_gh_prefixes_command_and_captures_output(mock_run) -> None:
    mock_run.return_value = subprocess.CompletedProcess([], 0, "alice\n", "")
    result = HostCLI().gh(["api", "user"], cwd="/tmp")
    assert result == CommandResult(["gh", "api", "user"], 0, "alice\n", "")
    args, kwargs = mock_run.call_args
    assert args[0] == ["gh", "api", "user"]
    assert kwargs["cwd"] == "/tmp"
    assert kwargs["timeout"] == 120


@patch("host_cli.subprocess.run")
def test_check_raises_with_stderr(mock_run) -> None:
    mock_run.return_value = subprocess.CompletedProcess([], 128, "", "fatal: not a git repository")
    with pytest.raises(HostCLIError) as excinfo:
        HostCLI().git(["status"], cwd="/tmp", check=True)
    assert "fatal: not a git repository" in str(excinfo.value)
    assert excinfo.value.result.returncode == 128


@patch("host_cli.subprocess.run")
def test_timeout_becomes_host_cli_error(mock_run) -> None:
    mock_run.side_effect = subprocess.TimeoutExpired(cmd="gh", timeout=5)
    with pytest.raises(HostCLIError, match="timed out after 5s"):
        HostCLI().gh(["repo", "view"], timeout=5)


@patch("host_cli.subprocess.run")
def test_missing_executable_becomes_host_cli_error(mock_run) -> None:
    mock_run.side_effect = FileNotFoundError("gh")
    with pytest.raises(HostCLIError, match="could not run gh"):
        HostCLI().gh(["auth", "status"])


def test_output_joins_both_streams() -> None:
    assert CommandResult(["gh"], 1, "out", "err").output == "out\nerr"
    assert CommandResult(["gh"], 0, "", "err").output == "err"


def test_stream_command_delivers_lines_and_exit_code() -> None:
    script = "import sys\nprint('one')\nprint('two')\nprint('oops', file=sys.stderr)\nsys.exit(3)"
    out: list[str] = []
    err: list[str] = []
    code = asyncio.run(stream_command([sys.executable, "-c", script], out.append, err.append))
    assert code == 3
    assert out == ["one", "two"]
    assert err == ["oops"]


def test_stream_command_feeds_stdin() -> None:
    script = "import sys\nprint(sys.stdin.read().upper())"
    out: list[str] = []
    code = asyncio.run(stream_command([sys.executable, "-c", script], out.append, lambda line: None,
                                      stdin_text="hello"))
    assert code == 0
    assert out == ["HELLO"]
