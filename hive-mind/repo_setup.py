"""Prepare an isolated working copy of a repository for one solver run.

The setup is idempotent under contention: several workers may target the same
upstream at once, and forking, verifying and reusing the fork must converge
on a single fork no matter how the calls interleave.

Steps, in order:

1. Resolve the clone source (upstream, or the acting user's fork).
2. Probe ``user/repo`` then ``user/owner-repo`` for an existing fork.
3. Create the fork if none exists; "already exists" counts as success.
4. Verify the fork is reachable (GitHub creates forks asynchronously).
5. Clone into a fresh temp dir that is never reused.
6. Point ``upstream`` at the original repo and sync the fork's default branch.
7. Create ``issue-<n>-<8 hex>`` and confirm it is checked out.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import secrets
import shutil
import tempfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from host_cli import CommandResult, HostCLI, HostCLIError
from retry_policy import RetryExhausted, RetryPolicy

log = logging.getLogger(__name__)

TEMP_DIR_PREFIX = "gh-issue-solver-"

# gh prints one of these when the fork is already there, which for us is success.
_FORK_EXISTS_MARKERS = ("already exists", "Name already exists", "fork of", "HTTP 422")
_FORK_NAME = re.compile(r"(?:github\.com/|^|\s)([A-Za-z0-9_-]+/[A-Za-z0-9_.-]+)", re.MULTILINE)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class RepositorySetupError(Exception):
    """Setup of a working copy failed; fatal for the issue being processed."""

    def __init__(
        self,
        message: str,
        *,
        repository: str,
        operation: str,
        branch: str | None = None,
        workdir: str | Path | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.repository = repository
        self.operation = operation
        self.branch = branch
        self.workdir = str(workdir) if workdir is not None else None
        self.output = output

    def context(self) -> str:
        return (
            f"repository={self.repository} branch={self.branch or '-'} "
            f"workdir={self.workdir or '-'} operation={self.operation}"
        )


class TransientForkRace(RepositorySetupError):
    """Fork creation failed in a way another attempt may fix."""


class ForkVerificationTimeout(RepositorySetupError):
    """The fork never became reachable within the retry budget."""


class CloneFailure(RepositorySetupError):
    pass


class UpstreamSyncPushFailure(RepositorySetupError):
    """Pushing the synced default branch to the fork was rejected."""


class BranchVerificationMismatch(RepositorySetupError):
    pass


# ---------------------------------------------------------------------------
# Data
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RepositoryFork:
    owner_repo: str
    fork_owner_repo: str | None = None
    upstream_remote: str | None = None
    verified: bool = False


@dataclass
class Workspace:
    temp_dir: Path
    branch: str
    fork: RepositoryFork
    clone_source: str
    default_branch: str | None = None

    def cleanup(self) -> None:
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class ForkRegistry:
    """Process-wide record of verified forks, keyed by upstream ``owner/repo``.

    Also hands out one creation lock per upstream so that concurrent workers
    in this process issue a single ``gh repo fork`` between them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._forks: dict[str, RepositoryFork] = {}
        self._creation_locks: dict[str, threading.Lock] = {}

    def get(self, owner_repo: str) -> RepositoryFork | None:
        with self._lock:
            return self._forks.get(owner_repo)

    def record(self, fork: RepositoryFork) -> None:
        with self._lock:
            self._forks[fork.owner_repo] = fork

    def creation_lock(self, owner_repo: str) -> threading.Lock:
        with self._lock:
            return self._creation_locks.setdefault(owner_repo, threading.Lock())

    def clear(self) -> None:
        with self._lock:
            self._forks.clear()
            self._creation_locks.clear()


FORK_REGISTRY = ForkRegistry()


def parse_fork_name(output: str, user: str) -> str | None:
    """Return the ``user/name`` fork reference mentioned in gh output, if any."""
    for match in _FORK_NAME.finditer(output):
        candidate = match.group(1)
        if candidate.split("/", 1)[0].lower() == user.lower():
            return candidate
    return None


def cleanup_solver_temp_dirs(temp_root: str | Path | None = None) -> int:
    """Delete leftover ``gh-issue-solver-*`` working copies; return how many."""
    root = Path(temp_root or tempfile.gettempdir())
    removed = 0
    for path in root.glob(f"{TEMP_DIR_PREFIX}*"):
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
            removed += 1
    log.info("Removed %d solver working copies from %s", removed, root)
    return removed


# ---------------------------------------------------------------------------
# RepositorySetup
# ---------------------------------------------------------------------------

class RepositorySetup:
    """Run the setup steps against the host CLIs.

    Blocking; call it from an executor thread when running inside asyncio.
    """

    def __init__(
        self,
        cli: HostCLI | None = None,
        registry: ForkRegistry | None = None,
        create_policy: RetryPolicy | None = None,
        verify_policy: RetryPolicy | None = None,
        settle_delay: float = 3.0,
        sleep: Callable[[float], None] = time.sleep,
        temp_root: str | Path | None = None,
    ) -> None:
        self.cli = cli or HostCLI()
        self.registry = registry if registry is not None else FORK_REGISTRY
        self.create_policy = dataclasses.replace(
            create_policy or RetryPolicy(),
            retryable=lambda exc: isinstance(exc, (TransientForkRace, HostCLIError)),
        )
        self.verify_policy = dataclasses.replace(
            verify_policy or RetryPolicy(),
            retryable=lambda exc: isinstance(exc, HostCLIError),
        )
        self.settle_delay = settle_delay
        self.sleep = sleep
        self.temp_root = temp_root
        self._user: str | None = None
        self._user_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def current_user(self) -> str:
        with self._user_lock:
            if self._user is None:
                result = self.cli.gh(["api", "user", "--jq", ".login"], check=True)
                self._user = result.stdout.strip()
            return self._user

    def prepare(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        fork: bool = False,
        pr_fork_owner: str | None = None,
        existing_branch: str | None = None,
    ) -> Workspace:
        """Return a working copy checked out on the branch for *issue_number*.

        With *existing_branch* (continuing a pull request) that branch is
        checked out instead of creating a new one.
        """
        upstream = f"{owner}/{repo}"
        if fork:
            repo_fork = self.ensure_fork(owner, repo)
        elif pr_fork_owner and pr_fork_owner.lower() != owner.lower():
            fork_name = f"{pr_fork_owner}/{repo}"
            self._verify_fork(fork_name, upstream)
            repo_fork = RepositoryFork(
                upstream, fork_name, _remote_url(upstream), verified=True
            )
        else:
            repo_fork = RepositoryFork(upstream)
        clone_source = repo_fork.fork_owner_repo or upstream

        temp_dir = self._make_temp_dir()
        try:
            log.info("Cloning %s into %s", clone_source, temp_dir)
            self._clone(clone_source, temp_dir, upstream)
            self._configure_remotes(temp_dir, clone_source, repo_fork)

            # Only the acting user's own fork is synced, never a contributor's.
            default_branch = None
            if fork:
                default_branch = self._sync_upstream(temp_dir, upstream)

            if existing_branch:
                branch = self.checkout_branch(temp_dir, existing_branch, upstream)
            else:
                branch = self.create_branch(temp_dir, issue_number, upstream)
        except (RepositorySetupError, HostCLIError):
            shutil.rmtree(temp_dir, ignore_errors=True)
            raise
        return Workspace(temp_dir, branch, repo_fork, clone_source, default_branch)

    def ensure_fork(self, owner: str, repo: str) -> RepositoryFork:
        """Find or create the acting user's fork of ``owner/repo`` and verify it."""
        upstream = f"{owner}/{repo}"
        cached = self.registry.get(upstream)
        if cached is not None and cached.verified:
            log.info("Reusing verified fork %s of %s", cached.fork_owner_repo, upstream)
            return cached

        with self.registry.creation_lock(upstream):
            cached = self.registry.get(upstream)
            if cached is not None and cached.verified:
                log.info("Reusing verified fork %s of %s", cached.fork_owner_repo, upstream)
                return cached

            user = self.current_user()
            fork_name = self._probe_fork(user, owner, repo)
            created = False
            if fork_name:
                log.info("Found existing fork %s", fork_name)
            else:
                log.info("Creating fork of %s", upstream)
                try:
                    fork_name = self.create_policy.run(
                        lambda attempt: self._create_fork(upstream, user, owner, repo),
                        description=f"fork {upstream}",
                        between_attempts=lambda attempt: self._probe_fork(user, owner, repo),
                        sleep=self.sleep,
                    )
                except RetryExhausted as exc:
                    raise RepositorySetupError(
                        f"Could not fork {upstream} after {exc.attempts} attempts: {exc.last_error}",
                        repository=upstream,
                        operation="gh repo fork",
                    ) from exc
                created = True

            self._verify_fork(fork_name, upstream)
            if created:
                log.info("Fork %s created; waiting %.0fs for it to settle", fork_name, self.settle_delay)
                self.sleep(self.settle_delay)

            repo_fork = RepositoryFork(upstream, fork_name, _remote_url(upstream), verified=True)
            self.registry.record(repo_fork)
            return repo_fork

    def create_branch(self, workdir: Path, issue_number: int, repository: str) -> str:
        branch = f"issue-{issue_number}-{secrets.token_hex(4)}"
        result = self.cli.git(["checkout", "-b", branch], cwd=workdir)
        if not result.ok:
            raise RepositorySetupError(
                f"Could not create branch {branch}: {result.stderr.strip()}",
                repository=repository,
                operation="git checkout -b",
                branch=branch,
                workdir=workdir,
                output=result.output,
            )
        self._verify_branch(workdir, branch, repository)
        log.info("Created branch %s", branch)
        return branch

    def checkout_branch(self, workdir: Path, branch: str, repository: str) -> str:
        result = self.cli.git(["checkout", branch], cwd=workdir)
        if not result.ok:
            raise RepositorySetupError(
                f"Could not check out {branch}: {result.stderr.strip()}",
                repository=repository,
                operation="git checkout",
                branch=branch,
                workdir=workdir,
                output=result.output,
            )
        self._verify_branch(workdir, branch, repository)
        log.info("Checked out existing branch %s", branch)
        return branch

    def default_branch(self, owner_repo: str) -> str | None:
        result = self.cli.gh(["api", f"repos/{owner_repo}", "--jq", ".default_branch"])
        name = result.stdout.strip()
        return name if result.ok and name else None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _probe_fork(self, user: str, owner: str, repo: str) -> str | None:
        for candidate in (f"{user}/{repo}", f"{user}/{owner}-{repo}"):
            try:
                result = self.cli.gh(["repo", "view", candidate, "--json", "name"])
            except HostCLIError as exc:
                log.warning("Probe of %s failed: %s", candidate, exc)
                continue
            if result.ok:
                return candidate
        return None

    def _create_fork(self, upstream: str, user: str, owner: str, repo: str) -> str:
        result = self.cli.gh(["repo", "fork", upstream, "--clone=false"], timeout=180)
        text = result.output
        exists = any(marker in text for marker in _FORK_EXISTS_MARKERS)
        if not result.ok and not exists:
            raise TransientForkRace(
                f"gh repo fork failed ({result.returncode}): {text.strip()}",
                repository=upstream,
                operation="gh repo fork",
                output=text,
            )
        if exists:
            log.info("Fork of %s already exists", upstream)
        name = parse_fork_name(text, user) or self._probe_fork(user, owner, repo)
        return name or f"{user}/{repo}"

    def _verify_fork(self, fork_name: str, upstream: str) -> None:
        def check(attempt: int) -> None:
            result = self.cli.gh(["repo", "view", fork_name, "--json", "name"])
            if not result.ok:
                raise HostCLIError(
                    f"fork {fork_name} not reachable yet: {result.stderr.strip()}", result
                )

        try:
            self.verify_policy.run(check, description=f"verify fork {fork_name}", sleep=self.sleep)
        except RetryExhausted as exc:
            raise ForkVerificationTimeout(
                f"Fork {fork_name} was not reachable after {exc.attempts} attempts",
                repository=upstream,
                operation="gh repo view",
            ) from exc
        log.info("Fork %s verified", fork_name)

    def _make_temp_dir(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        return Path(tempfile.mkdtemp(prefix=f"{TEMP_DIR_PREFIX}{stamp}-", dir=self.temp_root))

    def _clone(self, source: str, temp_dir: Path, upstream: str) -> None:
        result: CommandResult | None = None
        try:
            result = self.cli.gh(["repo", "clone", source, str(temp_dir)], timeout=600)
        except HostCLIError as exc:
            failure = str(exc)
        else:
            if result.ok:
                return
            failure = result.output.strip() or f"exit code {result.returncode}"
        log.error("Failed to clone %s: %s", source, failure)
        log.error("  Check that the repository exists and is visible to you: gh repo view %s", source)
        log.error("  Check GitHub authentication: gh auth status")
        log.error("  Check network access to github.com and retry")
        raise CloneFailure(
            f"Failed to clone {source}",
            repository=upstream,
            operation="gh repo clone",
            workdir=temp_dir,
            output=result.output if result is not None else failure,
        )

    def _configure_remotes(self, workdir: Path, clone_source: str, repo_fork: RepositoryFork) -> None:
        remotes = self.cli.git(["remote"], cwd=workdir).stdout.split()
        if "origin" not in remotes:
            log.warning("Clone has no origin remote; adding %s", clone_source)
            self.cli.git(["remote", "add", "origin", _remote_url(clone_source)], cwd=workdir)
        if repo_fork.upstream_remote and "upstream" not in remotes:
            self.cli.git(["remote", "add", "upstream", repo_fork.upstream_remote], cwd=workdir)

    def _sync_upstream(self, workdir: Path, upstream: str) -> str | None:
        """Reset the fork's default branch to upstream and force-push it; return the branch name."""
        fetch = self.cli.git(["fetch", "upstream"], cwd=workdir, timeout=300)
        if not fetch.ok:
            log.warning("git fetch upstream failed, fork may be stale: %s", fetch.stderr.strip())
            return None

        default = self.default_branch(upstream)
        if not default:
            log.warning("Could not determine default branch of %s; skipping sync", upstream)
            return None

        current = self.cli.git(["branch", "--show-current"], cwd=workdir).stdout.strip()
        if current != default:
            checkout = self.cli.git(["checkout", default], cwd=workdir)
            if not checkout.ok:
                log.warning("Could not check out %s: %s", default, checkout.stderr.strip())
                return default

        reset = self.cli.git(["reset", "--hard", f"upstream/{default}"], cwd=workdir)
        if not reset.ok:
            log.warning("Could not reset %s to upstream: %s", default, reset.stderr.strip())
        else:
            push = self.cli.git(["push", "--force", "origin", default], cwd=workdir, timeout=300)
            if not push.ok:
                raise UpstreamSyncPushFailure(
                    f"Pushing synced {default} to the fork was rejected: {push.stderr.strip()}",
                    repository=upstream,
                    operation="git push --force origin",
                    branch=default,
                    workdir=workdir,
                    output=push.output,
                )
            log.info("Synced fork %s with upstream", default)

        if current and current != default:
            self.cli.git(["checkout", current], cwd=workdir)
        return default

    def _verify_branch(self, workdir: Path, branch: str, repository: str) -> None:
        current = self.cli.git(["branch", "--show-current"], cwd=workdir).stdout.strip()
        if current != branch:
            raise BranchVerificationMismatch(
                f"Expected to be on {branch} but git reports {current or '(detached)'}",
                repository=repository,
                operation="git branch --show-current",
                branch=branch,
                workdir=workdir,
            )


def _remote_url(owner_repo: str) -> str:
    return f"https://github.com/{owner_repo}.git"
