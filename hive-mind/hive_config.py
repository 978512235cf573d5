"""Configuration for the ``monitor`` and ``solve`` entry points.

Defaults live on the dataclasses below.  An optional YAML file may override
them, and explicit command-line flags override the file::

    monitor:
      concurrency: 4
      monitor_tag: "good first issue"
    solve:
      model: opus
      fork: true
    retry:
      max_attempts: 5
      base_delay: 2
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from retry_policy import RetryPolicy
from solver_runner import TOOLS


@dataclass
class RetrySettings:
    max_attempts: int = 5
    base_delay: float = 2.0
    backoff_multiplier: float = 2.0

    def policy(self) -> RetryPolicy:
        return RetryPolicy(self.max_attempts, self.base_delay, self.backoff_multiplier)


@dataclass
class SolveConfig:
    model: str = "sonnet"
    tool: str = "claude"
    fork: bool = False
    auto_continue: bool = False
    max_continuations: int = 3
    auto_cleanup: bool = False
    fork_settle_delay: float = 3.0
    verbose: bool = False
    log_dir: str = "."


@dataclass
class MonitorConfig:
    concurrency: int = 2
    interval: float = 300.0
    idle_interval: float = 5.0
    once: bool = False
    dry_run: bool = False
    monitor_tag: str = "help wanted"
    all_issues: bool = False
    skip_issues_with_prs: bool = False
    pull_requests_per_issue: int = 1
    pull_request_delay: float = 10.0
    max_issues: int = 0
    auto_cleanup: bool = False
    shutdown_timeout: float = 10.0
    page_delay: float = 5.0


@dataclass
class HiveConfig:
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    solve: SolveConfig = field(default_factory=SolveConfig)
    retry: RetrySettings = field(default_factory=RetrySettings)

    def validate(self) -> None:
        if self.monitor.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.monitor.pull_requests_per_issue < 1:
            raise ValueError("pull_requests_per_issue must be at least 1")
        if self.monitor.interval <= 0:
            raise ValueError("interval must be positive")
        if self.monitor.max_issues < 0:
            raise ValueError("max_issues must not be negative")
        if self.solve.tool not in TOOLS:
            raise ValueError(f"tool must be one of {', '.join(TOOLS)}, got {self.solve.tool!r}")
        if self.retry.max_attempts < 1:
            raise ValueError("retry.max_attempts must be at least 1")


def _update(section: Any, values: dict, where: str) -> None:
    known = {f.name for f in dataclasses.fields(section)}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"Unknown setting {where}.{key}")
        setattr(section, key, value)


def load_config(path: str | Path | None = None) -> HiveConfig:
    """Return the defaults, overlaid with the YAML file at *path* if given.

    Raises ValueError for unknown sections or keys.
    """
    config = HiveConfig()
    if path is None:
        return config
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    for section_name, values in data.items():
        if section_name not in ("monitor", "solve", "retry"):
            raise ValueError(f"Unknown config section {section_name!r} in {path}")
        if not isinstance(values, dict):
            raise ValueError(f"Config section {section_name!r} must be a mapping")
        _update(getattr(config, section_name), values, section_name)
    return config


def apply_overrides(section: Any, overrides: dict[str, Any]) -> None:
    """Copy command-line values onto *section*, skipping flags left unset (None)."""
    known = {f.name for f in dataclasses.fields(section)}
    for key, value in overrides.items():
        if value is not None and key in known:
            setattr(section, key, value)
