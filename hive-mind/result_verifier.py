"""Decide whether a solver session actually produced something on GitHub.

A reference timestamp is captured *before* the solver starts.  Afterwards only
pull requests and comments strictly newer than that timestamp count as this
session's result; anything older belongs to an earlier run.
"""

from __future__ import annotations

import enum
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from host_cli import HostCLI, HostCLIError

log = logging.getLogger(__name__)

NO_RESULT_MESSAGE = "No new pull request or comment was created."


class VerificationStatus(enum.Enum):
    PULL_REQUEST = "pull_request"
    COMMENT = "comment"
    NO_RESULT = "no_result"


@dataclass
class VerificationResult:
    status: VerificationStatus
    url: str | None = None
    number: int | None = None
    message: str = ""

    @property
    def found(self) -> bool:
        return self.status is not VerificationStatus.NO_RESULT


def parse_timestamp(value: str) -> datetime | None:
    value = value.strip()
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def has_issue_link(body: str, owner_repo: str, issue_number: int) -> bool:
    refs = rf"(?:#|{re.escape(owner_repo)}#|https://github\.com/{re.escape(owner_repo)}/issues/)"
    pattern = rf"\b(?:close[sd]?|fix(?:e[sd])?|resolve[sd]?)\s*:?\s+{refs}{issue_number}\b"
    return re.search(pattern, body, re.IGNORECASE) is not None


class ResultVerifier:
    def __init__(self, cli: HostCLI | None = None) -> None:
        self.cli = cli or HostCLI()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def capture_reference_time(self, owner_repo: str, issue_number: int) -> datetime:
        """Latest of issue update, last comment and newest PR; now() if none are known."""
        candidates = [
            self._gh_text(["api", f"repos/{owner_repo}/issues/{issue_number}", "--jq", ".updated_at"]),
            self._gh_text([
                "api", f"repos/{owner_repo}/issues/{issue_number}/comments",
                "--paginate", "--jq", ".[-1].created_at // empty",
            ]),
            self._gh_text([
                "pr", "list", "--repo", owner_repo, "--limit", "1",
                "--json", "createdAt", "--jq", ".[0].createdAt // empty",
            ]),
        ]
        stamps: list[datetime] = []
        for text in candidates:
            # --paginate prints one value per page; the last page holds the newest.
            parsed = parse_timestamp(text.splitlines()[-1]) if text else None
            if parsed is not None:
                stamps.append(parsed)
        if not stamps:
            now = datetime.now(timezone.utc)
            log.warning("Could not determine reference time for %s#%d; using now", owner_repo, issue_number)
            return now
        reference = max(stamps)
        log.info("Reference time for %s#%d: %s", owner_repo, issue_number, reference.isoformat())
        return reference

    def verify_results(
        self,
        owner_repo: str,
        issue_number: int,
        branch: str,
        reference_time: datetime,
        user: str | None = None,
        fork_mode: bool = False,
        link_issue: bool = True,
    ) -> VerificationResult:
        """Find this session's pull request (preferred) or issue comment.

        With *link_issue* a found pull request gets a closing reference to the
        issue if it lacks one.
        """
        pr = self._find_session_pull_request(owner_repo, branch, reference_time)
        if pr is not None:
            number = int(pr["number"])
            if link_issue:
                self._ensure_issue_link(owner_repo, number, issue_number, pr.get("body") or "", fork_mode)
            if pr.get("isDraft"):
                self._mark_ready(owner_repo, number)
            log.info("Session produced pull request #%d: %s", number, pr.get("url"))
            return VerificationResult(
                VerificationStatus.PULL_REQUEST, pr.get("url"), number,
                f"Pull request #{number} created or updated",
            )

        if user:
            comment_url = self._find_session_comment(owner_repo, issue_number, user, reference_time)
            if comment_url:
                log.info("Session produced comment: %s", comment_url)
                return VerificationResult(
                    VerificationStatus.COMMENT, comment_url, message="Comment posted on the issue"
                )

        log.warning(NO_RESULT_MESSAGE)
        return VerificationResult(VerificationStatus.NO_RESULT, message=NO_RESULT_MESSAGE)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _gh_text(self, args: list[str]) -> str:
        try:
            result = self.cli.gh(args)
        except HostCLIError as exc:
            log.warning("gh %s failed: %s", args[0], exc)
            return ""
        if not result.ok:
            log.debug("gh %s failed: %s", " ".join(args[:2]), result.stderr.strip())
            return ""
        return result.stdout.strip()

    def _find_session_pull_request(
        self, owner_repo: str, branch: str, reference_time: datetime
    ) -> dict | None:
        text = self._gh_text([
            "pr", "list", "--repo", owner_repo, "--head", branch, "--state", "all",
            "--json", "number,url,createdAt,updatedAt,isDraft,title,state,body",
        ])
        if not text:
            return None
        try:
            prs = json.loads(text)
        except json.JSONDecodeError:
            log.warning("Could not parse gh pr list output for %s", branch)
            return None
        for pr in prs:
            created = parse_timestamp(pr.get("createdAt") or "")
            updated = parse_timestamp(pr.get("updatedAt") or "")
            if (created and created > reference_time) or (updated and updated > reference_time):
                return pr
            log.info("Ignoring pull request #%s: not newer than %s", pr.get("number"), reference_time.isoformat())
        return None

    def _find_session_comment(
        self, owner_repo: str, issue_number: int, user: str, reference_time: datetime
    ) -> str | None:
        text = self._gh_text([
            "api", f"repos/{owner_repo}/issues/{issue_number}/comments", "--paginate",
            "--jq", ".[] | [.user.login, .created_at, .html_url] | @tsv",
        ])
        newest: tuple[datetime, str] | None = None
        for line in text.splitlines():
            parts = line.split("\t")
            if len(parts) != 3 or parts[0].lower() != user.lower():
                continue
            created = parse_timestamp(parts[1])
            if created is None or created <= reference_time:
                continue
            if newest is None or created > newest[0]:
                newest = (created, parts[2])
        return newest[1] if newest else None

    def _ensure_issue_link(
        self, owner_repo: str, pr_number: int, issue_number: int, body: str, fork_mode: bool
    ) -> None:
        if has_issue_link(body, owner_repo, issue_number):
            return
        ref = f"{owner_repo}#{issue_number}" if fork_mode else f"#{issue_number}"
        new_body = f"{body.rstrip()}\n\nFixes {ref}".lstrip()
        try:
            result = self.cli.gh(["pr", "edit", str(pr_number), "--repo", owner_repo, "--body", new_body])
        except HostCLIError as exc:
            log.warning("Could not add issue link to #%d: %s", pr_number, exc)
            return
        if result.ok:
            log.info("Linked pull request #%d to issue with 'Fixes %s'", pr_number, ref)
        else:
            log.warning("Could not add issue link to #%d: %s", pr_number, result.stderr.strip())

    def _mark_ready(self, owner_repo: str, pr_number: int) -> None:
        try:
            result = self.cli.gh(["pr", "ready", str(pr_number), "--repo", owner_repo])
        except HostCLIError as exc:
            log.warning("Could not mark #%d ready: %s", pr_number, exc)
            return
        if result.ok:
            log.info("Marked pull request #%d ready for review", pr_number)
        else:
            log.warning("Could not mark #%d ready: %s", pr_number, result.stderr.strip())
