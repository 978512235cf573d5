"""Tests for run log file setup."""

import logging
from datetime import datetime
from pathlib import Path

from run_log import configure_logging, log_file_name, shutdown_file_logging


def test_log_file_name_is_timestamped_per_process() -> None:
    assert log_file_name("hive", datetime(2024, 5, 1, 9, 8, 7), pid=4242) == "hive-2024-05-01T09-08-07-4242.log"


def test_configure_logging_writes_header_and_records(tmp_path: Path) -> None:
    path = configure_logging(tmp_path / "logs", prefix="solve")
    try:
        logging.getLogger("hive_solve").info("cloning acme/widgets")
    finally:
        shutdown_file_logging()

    assert path.parent == (tmp_path / "logs").resolve()
    assert path.name.startswith("solve-")
    lines = path.read_text().splitlines()
    assert lines[0].startswith("# solve log started ")
    assert any("[hive_solve] INFO cloning acme/widgets" in line for line in lines)


def test_runs_started_together_get_separate_files(tmp_path: Path) -> None:
    first = configure_logging(tmp_path, prefix="solve")
    second = configure_logging(tmp_path, prefix="solve")
    try:
        logging.getLogger("hive_solve").info("second run")
    finally:
        shutdown_file_logging()

    assert first != second
    assert "second run" not in first.read_text()
    assert "second run" in second.read_text()
    assert len(list(tmp_path.glob("solve-*.log"))) == 2


def test_reconfiguring_replaces_file_handler(tmp_path: Path) -> None:
    root = logging.getLogger()
    before = len(root.handlers)
    configure_logging(tmp_path, prefix="a")
    configure_logging(tmp_path, prefix="b")
    try:
        assert len(root.handlers) == before + 1
    finally:
        shutdown_file_logging()
    assert len(root.handlers) == before
