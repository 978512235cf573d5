"""Tests for the graceful shutdown state machine."""

import asyncio
import signal
from unittest.mock import MagicMock

from issue_queue import IssueQueue
from shutdown_coordinator import PoolState, ShutdownCoordinator

URL = "https://github.com/acme/widgets/issues/1"


def test_two_signals_run_one_shutdown_sequence(caplog) -> None:
    queue = IssueQueue()
    stop_pool = MagicMock()
    cleanup = MagicMock()

    async def scenario() -> ShutdownCoordinator:
        coordinator = ShutdownCoordinator(queue, stop_pool, cleanup, poll_interval=0.01)
        coordinator.handle_signal("interrupt")
        coordinator.handle_signal("termination")
        await asyncio.wait_for(coordinator.stopped.wait(), timeout=5)
        return coordinator

    with caplog.at_level("INFO"):
        coordinator = asyncio.run(scenario())

    assert caplog.text.count("shutting down gracefully") == 1
    assert caplog.text.count("Shutdown complete") == 1
    assert "Received interrupt signal" in caplog.text
    stop_pool.assert_called_once()
    cleanup.assert_not_called()
    assert coordinator.state is PoolState.STOPPED


def test_drain_waits_for_in_flight_issue_then_cleans_up() -> None:
    queue = IssueQueue()
    queue.enqueue(URL)
    queue.dequeue()
    cleanup = MagicMock()

    async def finish_later() -> None:
        await asyncio.sleep(0.05)
        queue.mark_completed(URL)

    async def scenario() -> None:
        coordinator = ShutdownCoordinator(queue, MagicMock(), cleanup, timeout=5, poll_interval=0.01)
        finisher = asyncio.create_task(finish_later())
        assert await coordinator.shutdown() is True
        await finisher

    asyncio.run(scenario())
    cleanup.assert_called_once()
    assert queue.stats().completed == 1


def test_drain_gives_up_after_timeout(caplog) -> None:
    queue = IssueQueue()
    queue.enqueue(URL)
    queue.dequeue()
    sleeps: list[float] = []

    async def fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    coordinator = ShutdownCoordinator(queue, MagicMock(), MagicMock(), timeout=10, poll_interval=0.5, sleep=fake_sleep)
    with caplog.at_level("WARNING"):
        asyncio.run(coordinator.shutdown())

    assert len(sleeps) == 20
    assert "still processing" in caplog.text
    assert coordinator.state is PoolState.STOPPED
    coordinator.cleanup.assert_not_called()


def test_second_shutdown_call_waits_for_first() -> None:
    queue = IssueQueue()
    stop_pool = MagicMock()

    async def scenario() -> list[bool]:
        coordinator = ShutdownCoordinator(queue, stop_pool, poll_interval=0.01)
        return list(await asyncio.gather(coordinator.shutdown(), coordinator.shutdown()))

    assert sorted(asyncio.run(scenario())) == [False, True]
    stop_pool.assert_called_once()


def test_cleanup_failure_is_logged_not_raised(caplog) -> None:
    queue = IssueQueue()
    queue.enqueue(URL)
    queue.mark_completed(queue.dequeue())
    cleanup = MagicMock(side_effect=OSError("busy"))
    coordinator = ShutdownCoordinator(queue, MagicMock(), cleanup)

    with caplog.at_level("ERROR"):
        asyncio.run(coordinator.shutdown())

    assert "Cleanup failed: busy" in caplog.text
    assert coordinator.state is PoolState.STOPPED


def test_install_registers_sigint_and_sigterm() -> None:
    coordinator = ShutdownCoordinator(IssueQueue(), MagicMock())
    loop = MagicMock()
    coordinator.install(loop)
    registered = {c.args[0]: c.args[2] for c in loop.add_signal_handler.call_args_list}
    assert registered == {signal.SIGINT: "interrupt", signal.SIGTERM: "termination"}
