"""Parse the GitHub URLs accepted on the command line."""

from __future__ import annotations

import re
from dataclasses import dataclass

_ISSUE_URL = re.compile(
    r"^https://github\.com/([A-Za-z0-9_.-]+)/([A-Za-z0-9_.-]+)/(issues|pull)/(\d+)/?$"
)
_TARGET_URL = re.compile(r"^https://github\.com/([A-Za-z0-9_.-]+)(?:/([A-Za-z0-9_.-]+))?/?$")


@dataclass(frozen=True)
class IssueRef:
    owner: str
    repo: str
    number: int
    is_pull_request: bool = False

    @property
    def owner_repo(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def url(self) -> str:
        kind = "pull" if self.is_pull_request else "issues"
        return f"https://github.com/{self.owner}/{self.repo}/{kind}/{self.number}"


@dataclass(frozen=True)
class MonitorTarget:
    """A repository (``repo`` set) or an organization/user (``repo`` is None)."""

    owner: str
    repo: str | None = None

    @property
    def owner_repo(self) -> str | None:
        return f"{self.owner}/{self.repo}" if self.repo else None

    @property
    def url(self) -> str:
        if self.repo:
            return f"https://github.com/{self.owner}/{self.repo}"
        return f"https://github.com/{self.owner}"


def parse_issue_url(url: str) -> IssueRef:
    """Parse ``https://github.com/o/r/issues/N`` (or ``/pull/N``).

    Raises ValueError for anything else.
    """
    match = _ISSUE_URL.match(url.strip())
    if not match:
        raise ValueError(
            f"Invalid GitHub issue or pull request URL: {url!r} "
            "(expected https://github.com/owner/repo/issues/123)"
        )
    owner, repo, kind, number = match.groups()
    return IssueRef(owner, repo, int(number), is_pull_request=kind == "pull")


def parse_target_url(url: str) -> MonitorTarget:
    """Parse ``https://github.com/owner`` or ``https://github.com/owner/repo``."""
    match = _TARGET_URL.match(url.strip())
    if not match:
        raise ValueError(
            f"Invalid GitHub URL: {url!r} "
            "(expected https://github.com/owner or https://github.com/owner/repo)"
        )
    owner, repo = match.groups()
    return MonitorTarget(owner, repo)
