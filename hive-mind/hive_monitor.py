"""monitor: watch a GitHub repository, organization or user for issues and
solve them with a bounded pool of workers.

Each poll lists matching open issues, enqueues the ones not seen before in
this run, and lets the workers drain the queue.  SIGINT/SIGTERM stop the pool
from taking new issues and give the running ones a grace period.
"""

import argparse
import asyncio
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from github_urls import MonitorTarget, parse_target_url
from hive_config import HiveConfig, apply_overrides, load_config
from host_cli import HostCLI, HostCLIError
from issue_queue import IssueQueue
from issue_source import Issue, IssueSource, IssueSourceError
from repo_setup import cleanup_solver_temp_dirs
from run_log import configure_logging, shutdown_file_logging
from shutdown_coordinator import ShutdownCoordinator
from solver_runner import TOOLS
from worker_pool import IssueProcessor, SolveCommandProcessor, WorkerPool

from rich.console import Console
from rich.table import Table

log = logging.getLogger("monitor")
console = Console()

EXIT_SUCCESS = 0
EXIT_FATAL = 1


# ---------------------------------------------------------------------------
# Status rendering
# ---------------------------------------------------------------------------

def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.0f}s"
    mins = int(seconds // 60)
    secs = int(seconds % 60)
    if mins < 60:
        return f"{mins}m {secs:02d}s"
    return f"{mins // 60}h {mins % 60:02d}m"


def build_table(queue: IssueQueue, pool: WorkerPool) -> Table:
    now = datetime.now(timezone.utc)
    stats = queue.stats()

    table = Table(title="Hive Status", expand=True)
    table.add_column("Worker", style="cyan", no_wrap=True)
    table.add_column("Issue", style="white")
    table.add_column("Attempt", justify="center")
    table.add_column("Duration", justify="right")

    for slot in pool.slots:
        if slot.busy:
            elapsed = (now - slot.started_at).total_seconds() if slot.started_at else 0.0
            attempt = f"{slot.attempt}/{pool.pull_requests_per_issue}"
            table.add_row(slot.slot_id, slot.issue_url, attempt, f"[yellow]{_format_duration(elapsed)}[/yellow]")
        else:
            table.add_row(slot.slot_id, "[dim]idle[/dim]", "", "")

    table.caption = (
        f"queued [dim]{stats.queued}[/dim]  processing [yellow]{stats.processing}[/yellow]  "
        f"completed [green]{stats.completed}[/green]  failed [red]{stats.failed}[/red]"
    )
    return table


def print_issue_list(issues: list[Issue]) -> None:
    table = Table(title="Issues that would be processed")
    table.add_column("#", justify="right", style="cyan")
    table.add_column("Repository")
    table.add_column("Title", style="white")
    for issue in issues:
        table.add_row(str(issue.number), issue.repository, issue.title)
    console.print(table)


# ---------------------------------------------------------------------------
# Monitor loop
# ---------------------------------------------------------------------------

def check_gh_auth(cli: HostCLI) -> bool:
    try:
        result = cli.gh(["auth", "status"], timeout=30)
    except HostCLIError as exc:
        log.error("Could not run gh: %s", exc)
        return False
    if not result.ok:
        log.error("gh is not authenticated: %s", result.output.strip())
        log.error("Run 'gh auth login' and try again")
        return False
    return True


async def poll_once(source: IssueSource, queue: IssueQueue, pool: WorkerPool, dry_run: bool = False) -> int:
    """List issues once and enqueue the new ones; return how many were added."""
    loop = asyncio.get_running_loop()
    try:
        issues = await loop.run_in_executor(None, source.list_issues)
    except (IssueSourceError, HostCLIError) as exc:
        log.error("Could not list issues: %s", exc)
        return 0

    added = [issue for issue in issues if queue.enqueue(issue.url)]
    log.info("Found %d issue(s), %d new", len(issues), len(added))
    if added:
        if dry_run:
            print_issue_list(added)
        pool.notify_work()
    log.info("Queue: %s", queue.stats())
    return len(added)


async def _wait_until_drained(
    queue: IssueQueue, coordinator: ShutdownCoordinator, poll_interval: float
) -> None:
    while coordinator.running:
        stats = queue.stats()
        if stats.queued == 0 and stats.processing == 0:
            log.info("All issues processed")
            return
        try:
            await asyncio.wait_for(coordinator.stopped.wait(), timeout=poll_interval)
        except asyncio.TimeoutError:
            pass


async def monitor(
    target: MonitorTarget,
    config: HiveConfig,
    cli: HostCLI | None = None,
    source: IssueSource | None = None,
    processor: IssueProcessor | None = None,
    extra_args: list[str] | None = None,
    install_signals: bool = True,
) -> int:
    settings = config.monitor
    cli = cli or HostCLI()
    loop = asyncio.get_running_loop()

    if not await loop.run_in_executor(None, check_gh_auth, cli):
        return EXIT_FATAL

    source = source or IssueSource(
        target,
        cli,
        label=settings.monitor_tag,
        all_issues=settings.all_issues,
        skip_issues_with_prs=settings.skip_issues_with_prs,
        max_issues=settings.max_issues,
        page_delay=settings.page_delay,
    )
    try:
        scope = await loop.run_in_executor(None, source.resolve_scope)
    except (IssueSourceError, HostCLIError) as exc:
        log.error("%s", exc)
        return EXIT_FATAL

    processor = processor or SolveCommandProcessor(
        model=config.solve.model,
        tool=config.solve.tool,
        fork=config.solve.fork,
        auto_continue=config.solve.auto_continue,
        verbose=config.solve.verbose,
        log_dir=config.solve.log_dir,
        extra_args=extra_args or (),
        dry_run=settings.dry_run,
    )
    queue = IssueQueue()
    pool = WorkerPool(
        queue,
        processor,
        concurrency=settings.concurrency,
        pull_requests_per_issue=settings.pull_requests_per_issue,
        idle_interval=settings.idle_interval,
        pull_request_delay=settings.pull_request_delay,
    )
    coordinator = ShutdownCoordinator(
        queue,
        pool.stop,
        cleanup=cleanup_solver_temp_dirs if settings.auto_cleanup else None,
        timeout=settings.shutdown_timeout,
    )
    if install_signals:
        coordinator.install(loop)

    log.info(
        "Monitoring %s (%s) with %d worker(s), tag=%s%s",
        target.url, scope, settings.concurrency,
        "<all issues>" if settings.all_issues else settings.monitor_tag,
        ", dry run" if settings.dry_run else "",
    )
    pool.start()
    try:
        while coordinator.running:
            await poll_once(source, queue, pool, dry_run=settings.dry_run)
            console.print(build_table(queue, pool))
            if settings.once:
                await _wait_until_drained(queue, coordinator, settings.idle_interval)
                break
            try:
                await asyncio.wait_for(coordinator.stopped.wait(), timeout=settings.interval)
            except asyncio.TimeoutError:
                pass
        await coordinator.shutdown()
        # The coordinator already spent the grace period on in-flight issues.
        if queue.stats().processing:
            log.warning("Leaving %d worker(s) running at exit", pool.in_flight)
        else:
            await pool.join()
    finally:
        if install_signals:
            coordinator.uninstall(loop)

    stats = queue.stats()
    console.print(
        f"[bold]Done.[/bold] completed [green]{stats.completed}[/green], "
        f"failed [red]{stats.failed}[/red], still queued {stats.queued}"
    )
    return EXIT_SUCCESS


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="monitor", description="Watch GitHub issues and solve them in parallel")
    parser.add_argument("target", help="https://github.com/owner or https://github.com/owner/repo")
    parser.add_argument("--concurrency", type=int, default=None, help="Parallel workers (default: 2)")
    parser.add_argument("--once", action="store_true", default=None,
                        help="Poll once, process what was found, then exit")
    parser.add_argument("--dry-run", action="store_true", default=None,
                        help="List issues and log solve commands without running them")
    parser.add_argument("--fork", action=argparse.BooleanOptionalAction, default=None,
                        help="Have solve work in forks")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between polls (default: 300)")
    parser.add_argument("--monitor-tag", default=None, help="Issue label to watch (default: 'help wanted')")
    parser.add_argument("--all-issues", action="store_true", default=None, help="Ignore the label filter")
    parser.add_argument("--skip-issues-with-prs", action="store_true", default=None,
                        help="Skip issues that already have an open pull request")
    parser.add_argument("--pull-requests-per-issue", type=int, default=None,
                        help="Solve attempts per issue (default: 1)")
    parser.add_argument("--model", default=None, help="Solver model (default: sonnet)")
    parser.add_argument("--tool", choices=TOOLS, default=None, help="Solver to run (default: claude)")
    parser.add_argument("--max-issues", type=int, default=None, help="Cap on issues per poll (default: no cap)")
    parser.add_argument("--auto-cleanup", action=argparse.BooleanOptionalAction, default=None,
                        help="Remove solver working copies on shutdown")
    parser.add_argument("--auto-continue", action=argparse.BooleanOptionalAction, default=None,
                        help="Let solve wait out usage limits and resume")
    parser.add_argument("--log-dir", default=None, help="Directory for log files (default: cwd)")
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--verbose", action="store_true", default=None, help="Debug logging")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        target = parse_target_url(args.target)
        config = load_config(args.config)
        overrides = vars(args)
        apply_overrides(config.monitor, overrides)
        apply_overrides(config.solve, overrides)
        config.validate()
    except (OSError, ValueError) as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(2)

    log_path = configure_logging(config.solve.log_dir, prefix="hive", verbose=config.solve.verbose)
    console.print(f"Log file: {log_path}")
    extra_args = ["--config", str(Path(args.config).resolve())] if args.config else []

    try:
        code = asyncio.run(monitor(target, config, extra_args=extra_args))
    except KeyboardInterrupt:
        console.print("\n[bold red]Interrupted![/bold red] Leaving running solvers to finish on their own")
        log.warning("KeyboardInterrupt, exiting")
        code = 130
    if code == EXIT_FATAL:
        console.print(f"Full log: {log_path}")
    shutdown_file_logging()
    sys.exit(code)


if __name__ == "__main__":
    main()
