"""Thin wrappers around the ``gh`` and ``git`` command-line tools.

Everything the hive does against GitHub goes through the host CLIs; nothing
speaks the REST API directly.  :class:`HostCLI` is the blocking interface used
from executor threads, :func:`stream_command` the async one used for long
running child processes whose output must be logged as it arrives.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120

# stream-json events from the solver can be far larger than asyncio's 64 KiB
# default line limit.
_STREAM_LINE_LIMIT = 16 * 1024 * 1024


class HostCLIError(Exception):
    """Raised when a host command times out, cannot start, or fails under check=True."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass
class CommandResult:
    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """stdout and stderr joined, for matching messages gh prints on either."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class HostCLI:
    """Run ``gh``/``git`` commands and capture their output."""

    def __init__(self, default_timeout: int = DEFAULT_TIMEOUT) -> None:
        self.default_timeout = default_timeout

    def run(
        self,
        cmd: Sequence[str],
        cwd: str | Path | None = None,
        timeout: int | None = None,
        input_text: str | None = None,
        check: bool = False,
    ) -> CommandResult:
        cmd = list(cmd)
        timeout = timeout or self.default_timeout
        log.debug("$ %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=timeout,
                input=input_text,
            )
        except subprocess.TimeoutExpired as exc:
            raise HostCLIError(
                f"command timed out after {timeout}s: {' '.join(cmd)}"
            ) from exc
        except OSError as exc:
            raise HostCLIError(f"could not run {cmd[0]}: {exc}") from exc
        result = CommandResult(cmd, proc.returncode, proc.stdout or "", proc.stderr or "")
        if check and not result.ok:
            raise HostCLIError(
                f"command failed ({result.returncode}): "
                f"{' '.join(cmd)}\n{result.stderr.strip()}",
                result,
            )
        return result

    def gh(
        self,
        args: Sequence[str],
        cwd: str | Path | None = None,
        timeout: int | None = None,
        check: bool = False,
    ) -> CommandResult:
        return self.run(["gh", *args], cwd=cwd, timeout=timeout, check=check)

    def git(
        self,
        args: Sequence[str],
        cwd: str | Path,
        timeout: int | None = None,
        check: bool = False,
    ) -> CommandResult:
        return self.run(["git", *args], cwd=cwd, timeout=timeout, check=check)


async def stream_command(
    cmd: Sequence[str],
    on_stdout: Callable[[str], None],
    on_stderr: Callable[[str], None],
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    stdin_text: str | None = None,
) -> int:
    """Run *cmd*, feeding each output line to the callbacks; return the exit code.

    Both pipes are read concurrently so a chatty stderr cannot block stdout.
    Raises OSError if the executable cannot be started.
    """
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        limit=_STREAM_LINE_LIMIT,
    )
    if stdin_text is not None:
        assert proc.stdin is not None
        proc.stdin.write(stdin_text.encode("utf-8"))
        await proc.stdin.drain()
        proc.stdin.close()

    async def pump(stream: asyncio.StreamReader, callback: Callable[[str], None]) -> None:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            callback(raw.decode("utf-8", errors="replace").rstrip("\r\n"))

    assert proc.stdout is not None and proc.stderr is not None
    await asyncio.gather(pump(proc.stdout, on_stdout), pump(proc.stderr, on_stderr))
    return await proc.wait()
