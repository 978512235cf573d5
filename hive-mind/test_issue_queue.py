"""Tests for the dedup issue queue."""

import threading

from issue_queue import IssueQueue, IssueState, QueueStats

URL_1 = "https://github.com/acme/widgets/issues/1"
URL_2 = "https://github.com/acme/widgets/issues/2"
URL_3 = "https://github.com/acme/widgets/issues/3"


def test_enqueue_twice_while_queued_is_noop() -> None:
    queue = IssueQueue()
    assert queue.enqueue(URL_1) is True
    assert queue.enqueue(URL_1) is False
    assert queue.stats() == QueueStats(queued=1)


def test_dequeue_is_fifo_and_moves_to_processing() -> None:
    queue = IssueQueue()
    queue.enqueue(URL_1)
    queue.enqueue(URL_2)
    assert queue.dequeue() == URL_1
    assert queue.state_of(URL_1) is IssueState.PROCESSING
    assert queue.state_of(URL_2) is IssueState.QUEUED
    assert queue.stats() == QueueStats(queued=1, processing=1)


def test_enqueue_while_processing_is_noop() -> None:
    queue = IssueQueue()
    queue.enqueue(URL_1)
    queue.dequeue()
    assert queue.enqueue(URL_1) is False
    assert queue.dequeue() is None


def test_completed_and_failed_are_terminal() -> None:
    queue = IssueQueue()
    queue.enqueue(URL_1)
    queue.enqueue(URL_2)
    queue.mark_completed(queue.dequeue())
    queue.mark_failed(queue.dequeue())
    assert queue.enqueue(URL_1) is False
    assert queue.enqueue(URL_2) is False
    assert queue.stats() == QueueStats(completed=1, failed=1)
    assert queue.state_of(URL_1) is IssueState.COMPLETED
    assert queue.state_of(URL_2) is IssueState.FAILED


def test_dequeue_empty_returns_none() -> None:
    assert IssueQueue().dequeue() is None


def test_mark_unknown_issue_logs_warning(caplog) -> None:
    queue = IssueQueue()
    with caplog.at_level("WARNING"):
        queue.mark_failed(URL_3)
    assert "was not processing" in caplog.text
    assert queue.state_of(URL_3) is IssueState.FAILED


def test_mark_queued_issue_removes_it_from_fifo() -> None:
    queue = IssueQueue()
    queue.enqueue(URL_1)
    queue.mark_completed(URL_1)
    assert queue.dequeue() is None
    assert queue.stats() == QueueStats(completed=1)


def test_stats_str_and_dict() -> None:
    stats = QueueStats(queued=1, processing=2, completed=3, failed=4)
    assert str(stats) == "queued=1 processing=2 completed=3 failed=4"
    assert stats.as_dict() == {"queued": 1, "processing": 2, "completed": 3, "failed": 4}


def test_concurrent_dequeue_never_hands_out_same_issue() -> None:
    queue = IssueQueue()
    urls = [f"https://github.com/acme/widgets/issues/{n}" for n in range(200)]
    for url in urls:
        queue.enqueue(url)

    taken: list[str] = []
    taken_lock = threading.Lock()

    def drain() -> None:
        while (url := queue.dequeue()) is not None:
            with taken_lock:
                taken.append(url)

    threads = [threading.Thread(target=drain) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(taken) == sorted(urls)
    assert queue.stats() == QueueStats(processing=200)
