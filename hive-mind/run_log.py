"""Per-run log file plus console logging."""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(message)s"

_file_handler: logging.FileHandler | None = None


def log_file_name(prefix: str, now: datetime | None = None, pid: int | None = None) -> str:
    now = now or datetime.now()
    pid = os.getpid() if pid is None else pid
    return f"{prefix}-{now.strftime('%Y-%m-%dT%H-%M-%S')}-{pid}.log"


def _create_log_file(directory: Path, prefix: str) -> Path:
    """Create a log file that no other run writes to and return its path."""
    stem = log_file_name(prefix)[: -len(".log")]
    candidate = directory / f"{stem}.log"
    counter = 1
    while True:
        try:
            with open(candidate, "x", encoding="utf-8") as f:
                f.write(f"# {prefix} log started {datetime.now().isoformat(timespec='seconds')}\n")
        except FileExistsError:
            counter += 1
            candidate = directory / f"{stem}-{counter}.log"
            continue
        return candidate.resolve()


def configure_logging(log_dir: str | Path = ".", prefix: str = "hive", verbose: bool = False) -> Path:
    """Log to the console and to a fresh append-only file; return the file's path."""
    global _file_handler

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")

    directory = Path(log_dir)
    fallback_reason = None
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        fallback_reason = str(exc)
        directory = Path.cwd()
    path = _create_log_file(directory, prefix)

    shutdown_file_logging()
    _file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    _file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root = logging.getLogger()
    root.addHandler(_file_handler)
    root.setLevel(level)

    if fallback_reason:
        logging.getLogger(__name__).warning(
            "Could not create log directory %s (%s); logging to %s", log_dir, fallback_reason, path
        )
    return path


def shutdown_file_logging() -> None:
    global _file_handler
    if _file_handler is not None:
        logging.getLogger().removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None
