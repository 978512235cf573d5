"""Discover open GitHub issues for the monitor to enqueue.

A monitor target is either a single repository or an organization/user.
Repositories are listed with ``gh issue list``; organizations and users with
``gh search issues``.  Both are filtered by label unless ``all_issues`` is
set.

GitHub's search API is aggressively rate limited, so every listing call is
surrounded by a short pause.  When an owner-wide search is rate limited the
source falls back to listing each of the owner's repositories in turn.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import re
import time
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass

from github_urls import MonitorTarget, parse_issue_url
from host_cli import HostCLI, HostCLIError
from retry_policy import RetryExhausted, RetryPolicy

log = logging.getLogger(__name__)

LIST_PAGE_SIZE = 1000
SEARCH_PAGE_SIZE = 100
FALLBACK_PAGE_SIZE = 100
PR_CHECK_BATCH_SIZE = 50

_RATE_LIMIT_ERROR = re.compile(
    r"rate limit|secondary rate limit|exceeded.*limit|too many requests|"
    r"abuse detection|wait a few minutes|http 403.*rate|api rate limit exceeded",
    re.IGNORECASE,
)


class IssueSourceError(Exception):
    """The target cannot be resolved or listed at all."""


@dataclass(frozen=True)
class Issue:
    url: str
    title: str
    number: int
    repository: str


def is_rate_limit_error(message: str) -> bool:
    return bool(_RATE_LIMIT_ERROR.search(message))


def _issues_from_json(rows: list[dict]) -> list[Issue]:
    issues: list[Issue] = []
    for row in rows:
        url = row.get("url", "")
        try:
            ref = parse_issue_url(url)
        except ValueError:
            log.warning("Skipping unrecognised issue URL from gh: %r", url)
            continue
        issues.append(Issue(ref.url, row.get("title", ""), ref.number, ref.owner_repo))
    return issues


# ---------------------------------------------------------------------------
# IssueSource
# ---------------------------------------------------------------------------

class IssueSource:
    """List open issues for a monitor target.

    Parameters
    ----------
    target:
        Repository or owner to watch.
    label:
        Only issues carrying this label are listed, unless *all_issues*.
    skip_issues_with_prs:
        Drop issues that already have an open pull request referencing them.
    max_issues:
        Cap on the number of issues returned per listing; 0 means no cap.
    """

    def __init__(
        self,
        target: MonitorTarget,
        cli: HostCLI | None = None,
        label: str = "help wanted",
        all_issues: bool = False,
        skip_issues_with_prs: bool = False,
        max_issues: int = 0,
        page_delay: float = 5.0,
        repo_delay: float = 1.0,
        fetch_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.target = target
        self.cli = cli or HostCLI()
        self.label = label
        self.all_issues = all_issues
        self.skip_issues_with_prs = skip_issues_with_prs
        self.max_issues = max_issues
        self.page_delay = page_delay
        self.repo_delay = repo_delay
        self.fetch_policy = fetch_policy or RetryPolicy(max_attempts=3, base_delay=30.0)
        self.sleep = sleep
        self._scope: str | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve_scope(self) -> str:
        """Return ``repository``, ``organization`` or ``user``.

        Raises IssueSourceError when the target does not exist or gh cannot
        reach it; callers treat this as fatal at startup.
        """
        if self._scope is not None:
            return self._scope
        if self.target.repo:
            result = self.cli.gh(["repo", "view", self.target.owner_repo, "--json", "name"])
            if not result.ok:
                raise IssueSourceError(
                    f"Repository {self.target.owner_repo} is not accessible: {result.stderr.strip()}"
                )
            self._scope = "repository"
        else:
            result = self.cli.gh(["api", f"users/{self.target.owner}", "--jq", ".type"])
            if not result.ok:
                raise IssueSourceError(
                    f"Owner {self.target.owner} is not accessible: {result.stderr.strip()}"
                )
            self._scope = "organization" if result.stdout.strip() == "Organization" else "user"
        log.info("Monitoring %s %s", self._scope, self.target.url)
        return self._scope

    def list_issues(self) -> list[Issue]:
        scope = self.resolve_scope()
        if scope == "repository":
            issues = self._list_repository(self.target.owner_repo)
        else:
            issues = self._search_owner(scope)

        if self.skip_issues_with_prs and issues:
            issues = self._drop_issues_with_open_prs(issues)
        if self.max_issues > 0 and len(issues) > self.max_issues:
            log.info("Limiting to the first %d of %d issues", self.max_issues, len(issues))
            issues = issues[: self.max_issues]
        return issues

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _fetch_json(self, args: list[str], page_size: int) -> list[dict]:
        """Run a listing command between two pauses and decode its JSON rows."""
        self.sleep(self.page_delay)
        try:
            result = self.cli.gh(args + ["--limit", str(page_size)], timeout=300, check=True)
        finally:
            self.sleep(self.page_delay)
        try:
            rows = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise HostCLIError(f"gh returned invalid JSON: {exc}") from exc
        if len(rows) >= page_size:
            log.warning("Listing returned a full page of %d issues; some may be missing", page_size)
        return rows

    def _fetch_with_fallback(self, args: list[str], page_size: int) -> list[dict]:
        try:
            return self._fetch_json(args, page_size)
        except HostCLIError as exc:
            if is_rate_limit_error(str(exc)):
                raise
            log.warning("Listing failed (%s); retrying with --limit %d", exc, FALLBACK_PAGE_SIZE)
            return self._fetch_json(args, FALLBACK_PAGE_SIZE)

    def _issue_list_args(self, owner_repo: str) -> list[str]:
        args = ["issue", "list", "--repo", owner_repo, "--state", "open"]
        if not self.all_issues:
            args += ["--label", self.label]
        return args + ["--json", "url,title,number"]

    def _list_repository(self, owner_repo: str) -> list[Issue]:
        policy = dataclasses.replace(
            self.fetch_policy,
            retryable=lambda exc: isinstance(exc, HostCLIError) and is_rate_limit_error(str(exc)),
        )
        try:
            rows = policy.run(
                lambda attempt: self._fetch_with_fallback(self._issue_list_args(owner_repo), LIST_PAGE_SIZE),
                description=f"list issues of {owner_repo}",
                sleep=self.sleep,
            )
        except (RetryExhausted, HostCLIError) as exc:
            raise IssueSourceError(f"Could not list issues of {owner_repo}: {exc}") from exc
        issues = _issues_from_json(rows)
        log.info("Found %d open issues in %s", len(issues), owner_repo)
        return issues

    def _search_owner(self, scope: str) -> list[Issue]:
        qualifier = "org" if scope == "organization" else "user"
        query = f"{qualifier}:{self.target.owner} is:issue is:open"
        if not self.all_issues:
            query += f' label:"{self.label}"'
        args = ["search", "issues", query, "--json", "url,title,number,repository"]
        try:
            rows = self._fetch_with_fallback(args, SEARCH_PAGE_SIZE)
        except HostCLIError as exc:
            if not is_rate_limit_error(str(exc)):
                raise IssueSourceError(f"Could not search issues of {self.target.owner}: {exc}") from exc
            log.warning("Search API rate limited; listing repositories of %s one by one", self.target.owner)
            return self._list_owner_repositories()
        issues = _issues_from_json(rows)
        log.info("Found %d open issues across %s", len(issues), self.target.owner)
        return issues

    def _list_owner_repositories(self) -> list[Issue]:
        result = self.cli.gh(
            ["repo", "list", self.target.owner, "--limit", "1000", "--no-archived", "--json", "name,owner"],
            timeout=300,
        )
        if not result.ok:
            raise IssueSourceError(
                f"Could not list repositories of {self.target.owner}: {result.stderr.strip()}"
            )
        issues: list[Issue] = []
        for repo in json.loads(result.stdout or "[]"):
            owner_repo = f"{repo['owner']['login']}/{repo['name']}"
            self.sleep(self.repo_delay)
            listed = self.cli.gh(self._issue_list_args(owner_repo) + ["--limit", str(FALLBACK_PAGE_SIZE)])
            if not listed.ok:
                log.warning("Skipping %s: %s", owner_repo, listed.stderr.strip())
                continue
            issues.extend(_issues_from_json(json.loads(listed.stdout or "[]")))
        log.info("Found %d open issues across %s (per repository)", len(issues), self.target.owner)
        return issues

    # ------------------------------------------------------------------
    # Pull request filter
    # ------------------------------------------------------------------

    def _drop_issues_with_open_prs(self, issues: list[Issue]) -> list[Issue]:
        by_repo: dict[str, list[Issue]] = defaultdict(list)
        for issue in issues:
            by_repo[issue.repository].append(issue)

        with_prs: set[str] = set()
        for owner_repo, repo_issues in by_repo.items():
            numbers = [i.number for i in repo_issues]
            linked = self._issues_with_open_prs(owner_repo, numbers)
            with_prs.update(i.url for i in repo_issues if i.number in linked)

        kept = [i for i in issues if i.url not in with_prs]
        if with_prs:
            log.info("Skipping %d issues that already have open pull requests", len(with_prs))
        return kept

    def _issues_with_open_prs(self, owner_repo: str, numbers: list[int]) -> set[int]:
        """Issue numbers in *numbers* cross-referenced by an open pull request."""
        owner, name = owner_repo.split("/", 1)
        linked: set[int] = set()
        for start in range(0, len(numbers), PR_CHECK_BATCH_SIZE):
            batch = numbers[start:start + PR_CHECK_BATCH_SIZE]
            fields = "\n".join(
                f"issue{n}: issue(number: {n}) {{ number timelineItems(first: 100, "
                f"itemTypes: [CROSS_REFERENCED_EVENT]) {{ nodes {{ ... on CrossReferencedEvent "
                f"{{ source {{ ... on PullRequest {{ number state }} }} }} }} }} }}"
                for n in batch
            )
            query = f'query {{ repository(owner: "{owner}", name: "{name}") {{ {fields} }} }}'
            result = self.cli.gh(["api", "graphql", "-f", f"query={query}"], timeout=120)
            if not result.ok:
                log.warning("Could not check pull requests for %s: %s", owner_repo, result.stderr.strip())
                continue
            try:
                repository = json.loads(result.stdout)["data"]["repository"] or {}
            except (json.JSONDecodeError, KeyError, TypeError):
                log.warning("Unexpected GraphQL response while checking pull requests for %s", owner_repo)
                continue
            for node in repository.values():
                if not node:
                    continue
                sources = [
                    (item or {}).get("source") or {}
                    for item in node.get("timelineItems", {}).get("nodes", [])
                ]
                if any(src.get("state") == "OPEN" for src in sources):
                    linked.add(int(node["number"]))
        return linked
