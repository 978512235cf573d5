"""solve: work one GitHub issue (or pull request) end to end.

Prepares a working copy, runs the AI solver in it, and checks that the run
left a pull request or comment behind.  Exit codes:

    0  solved, or the solver finished without producing anything new
    1  setup or solver failure
    2  bad arguments
    3  usage limit reached and not auto-continued
"""

import argparse
import asyncio
import functools
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from auto_continue import AutoContinueScheduler, Session
from github_urls import IssueRef, parse_issue_url
from hive_config import HiveConfig, apply_overrides, load_config
from host_cli import HostCLI, HostCLIError
from repo_setup import RepositorySetup, RepositorySetupError, Workspace
from result_verifier import ResultVerifier
from run_log import configure_logging, shutdown_file_logging
from solver_output import Failed, RateLimited, SolverOutcome
from solver_runner import TOOLS, SolverError, SolverRunner, build_prompt

from rich.console import Console

log = logging.getLogger("solve")
console = Console(stderr=True)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_RATE_LIMITED = 3


def pull_request_head(cli: HostCLI, ref: IssueRef) -> tuple[str, str]:
    """Return ``(head branch, head repository owner)`` of a pull request."""
    result = cli.gh(
        ["pr", "view", str(ref.number), "--repo", ref.owner_repo,
         "--json", "headRefName,headRepositoryOwner",
         "--jq", '.headRefName + " " + .headRepositoryOwner.login'],
        check=True,
    )
    branch, _, owner = result.stdout.strip().partition(" ")
    return branch, owner or ref.owner


def _log_setup_failure(exc: RepositorySetupError) -> None:
    log.error("Repository setup failed: %s", exc)
    log.error("  %s", exc.context())
    if exc.output:
        log.debug("  output: %s", exc.output.strip())


def _report_outcome(outcome: SolverOutcome, ref: IssueRef, workspace: Workspace) -> int:
    if isinstance(outcome, RateLimited):
        log.warning("Usage limit reached%s", f"; resets at {outcome.reset_hint}" if outcome.reset_hint else "")
        if outcome.session_id:
            log.warning("To resume this session later, run:")
            log.warning("  solve %s --resume %s", ref.url, outcome.session_id)
            log.warning("or let it wait for the reset:")
            log.warning("  solve %s --resume %s --auto-continue", ref.url, outcome.session_id)
        log.info("Working copy kept at %s", workspace.temp_dir)
        return EXIT_RATE_LIMITED
    if isinstance(outcome, Failed):
        log.error(
            "Solver failed with exit code %d (repository=%s branch=%s workdir=%s)",
            outcome.exit_code, ref.owner_repo, workspace.branch, workspace.temp_dir,
        )
        if outcome.session_id:
            log.error("To resume this session, run: solve %s --resume %s", ref.url, outcome.session_id)
        return EXIT_FAILURE
    return EXIT_SUCCESS


async def solve(
    issue_url: str,
    config: HiveConfig,
    resume: str | None = None,
    cli: HostCLI | None = None,
    setup: RepositorySetup | None = None,
    runner: SolverRunner | None = None,
    verifier: ResultVerifier | None = None,
    scheduler: AutoContinueScheduler | None = None,
) -> int:
    try:
        ref = parse_issue_url(issue_url)
    except ValueError as exc:
        log.error("%s", exc)
        return EXIT_USAGE

    cli = cli or HostCLI()
    setup = setup or RepositorySetup(
        cli,
        create_policy=config.retry.policy(),
        verify_policy=config.retry.policy(),
        settle_delay=config.solve.fork_settle_delay,
    )
    runner = runner or SolverRunner(config.solve.tool)
    verifier = verifier or ResultVerifier(cli)
    scheduler = scheduler or AutoContinueScheduler(config.solve.max_continuations)
    loop = asyncio.get_running_loop()

    log.info("Solving %s with %s (model=%s)", ref.url, config.solve.tool, config.solve.model)
    existing_branch = None
    pr_fork_owner = None
    try:
        if ref.is_pull_request:
            existing_branch, pr_fork_owner = await loop.run_in_executor(None, pull_request_head, cli, ref)
            log.info("Continuing pull request #%d on branch %s", ref.number, existing_branch)
        workspace = await loop.run_in_executor(None, functools.partial(
            setup.prepare,
            ref.owner,
            ref.repo,
            ref.number,
            fork=config.solve.fork,
            pr_fork_owner=pr_fork_owner,
            existing_branch=existing_branch,
        ))
    except RepositorySetupError as exc:
        _log_setup_failure(exc)
        return EXIT_FAILURE
    except HostCLIError as exc:
        log.error("Could not prepare %s: %s", ref.owner_repo, exc)
        return EXIT_FAILURE

    reference_time = await loop.run_in_executor(
        None, verifier.capture_reference_time, ref.owner_repo, ref.number
    )
    prompt = build_prompt(ref.url, workspace.branch, workspace.temp_dir, workspace.fork.fork_owner_repo)

    async def run_solver(token: str | None) -> SolverOutcome:
        run = await runner.run(workspace.temp_dir, prompt, config.solve.model, resume_token=token)
        return run.outcome

    try:
        outcome = await run_solver(resume)
        if isinstance(outcome, RateLimited) and config.solve.auto_continue:
            outcome = await scheduler.run(Session(ref.url, session_id=resume), outcome, run_solver)
    except SolverError as exc:
        log.error("%s (repository=%s branch=%s workdir=%s)",
                  exc, ref.owner_repo, workspace.branch, workspace.temp_dir)
        return EXIT_FAILURE

    code = _report_outcome(outcome, ref, workspace)
    if code != EXIT_SUCCESS:
        return code

    try:
        user = await loop.run_in_executor(None, setup.current_user)
    except HostCLIError as exc:
        log.warning("Could not determine acting user: %s", exc)
        user = None
    try:
        result = await loop.run_in_executor(None, functools.partial(
            verifier.verify_results,
            ref.owner_repo,
            ref.number,
            workspace.branch,
            reference_time,
            user=user,
            fork_mode=workspace.fork.fork_owner_repo is not None,
            link_issue=not ref.is_pull_request,
        ))
    except HostCLIError as exc:
        log.warning("Could not verify results: %s", exc)
        log.info("Working copy kept at %s", workspace.temp_dir)
        return EXIT_SUCCESS
    if result.found:
        console.print(f"[green]{result.message}:[/green] {result.url}")
        if config.solve.auto_cleanup:
            workspace.cleanup()
            log.info("Removed working copy %s", workspace.temp_dir)
    else:
        console.print(f"[yellow]No result this session:[/yellow] {result.message}")
        log.info("Working copy kept at %s", workspace.temp_dir)
    return EXIT_SUCCESS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="solve", description="Solve a GitHub issue with an AI solver")
    parser.add_argument("issue_url", help="https://github.com/owner/repo/issues/N (or /pull/N)")
    parser.add_argument("--resume", default=None, help="Resume an earlier solver session by ID")
    parser.add_argument("--fork", action=argparse.BooleanOptionalAction, default=None,
                        help="Work in your fork instead of the upstream repository")
    parser.add_argument("--model", default=None, help="Solver model (default: sonnet)")
    parser.add_argument("--tool", choices=TOOLS, default=None, help="Solver to run (default: claude)")
    parser.add_argument("--auto-continue", action=argparse.BooleanOptionalAction, default=None,
                        help="Wait for the usage limit to reset and resume automatically")
    parser.add_argument("--auto-cleanup", action=argparse.BooleanOptionalAction, default=None,
                        help="Delete the working copy after a successful run")
    parser.add_argument("--log-dir", default=None, help="Directory for the run log (default: cwd)")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--verbose", action="store_true", default=None, help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        config = load_config(args.config)
        apply_overrides(config.solve, vars(args))
        config.validate()
    except (OSError, ValueError) as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {exc}")
        sys.exit(EXIT_USAGE)

    log_path = configure_logging(config.solve.log_dir, prefix="solve", verbose=config.solve.verbose)
    log.info("Log file: %s", log_path)
    try:
        code = asyncio.run(solve(args.issue_url, config, resume=args.resume))
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red]")
        log.warning("KeyboardInterrupt, exiting")
        code = 130
    if code != EXIT_SUCCESS:
        console.print(f"Full log: {log_path}")
    shutdown_file_logging()
    sys.exit(code)


if __name__ == "__main__":
    main()
