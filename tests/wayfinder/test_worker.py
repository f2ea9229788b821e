"""Unit tests for wayfinder.worker."""

from __future__ import annotations

import threading
from typing import Iterator

import pytest

from wayfinder.worker import RouteWorker


@pytest.fixture()
def worker() -> Iterator[RouteWorker]:
    pool = RouteWorker(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


def test_current_ticket_returns_value(worker: RouteWorker) -> None:
    """The latest submission on a channel delivers its result."""
    ticket = worker.submit("kiosk-1", lambda a, b: a + b, 2, b=3)
    assert worker.is_current(ticket)
    assert worker.result(ticket) == 5
    assert not worker.is_current(ticket)
    assert worker.result(ticket) is None


def test_superseded_ticket_is_discarded(worker: RouteWorker) -> None:
    """Older work on the same channel finishes but yields None."""
    release = threading.Event()
    first = worker.submit("kiosk-1", lambda: release.wait(5.0) and "old")
    second = worker.submit("kiosk-1", lambda: "new")
    release.set()

    assert worker.result(first) is None
    assert worker.result(second) == "new"


def test_channels_are_independent(worker: RouteWorker) -> None:
    """A submission only supersedes work on its own channel."""
    a = worker.submit("kiosk-1", lambda: "a")
    b = worker.submit("kiosk-2", lambda: "b")
    assert worker.result(a) == "a"
    assert worker.result(b) == "b"


def test_collected_channels_are_released(worker: RouteWorker) -> None:
    """One-off channels are forgotten once their results are collected."""
    for i in range(50):
        ticket = worker.submit(f"session-{i}", lambda n=i: n * 2)
        assert worker.result(ticket) == i * 2
    assert worker.pending_channels() == 0

    def boom() -> None:
        raise ValueError("bad endpoint")

    with pytest.raises(ValueError):
        worker.result(worker.submit("session-x", boom))
    assert worker.pending_channels() == 0


def test_generations_are_not_reused_after_release(worker: RouteWorker) -> None:
    """A stale ticket stays stale after its channel is released and reused."""
    release = threading.Event()
    stale = worker.submit("kiosk-1", lambda: release.wait(5.0) and "old")
    fresh = worker.submit("kiosk-1", lambda: "new")
    assert worker.result(fresh) == "new"

    newest = worker.submit("kiosk-1", lambda: "newest")
    release.set()
    assert worker.result(stale) is None
    assert worker.result(newest) == "newest"
    assert newest.generation > fresh.generation > stale.generation


def test_result_times_out(worker: RouteWorker) -> None:
    """Slow searches raise TimeoutError instead of blocking forever."""
    release = threading.Event()
    ticket = worker.submit("kiosk-1", release.wait, 5.0)
    try:
        with pytest.raises(TimeoutError):
            worker.result(ticket, timeout=0.05)
    finally:
        release.set()


def test_search_errors_propagate(worker: RouteWorker) -> None:
    """Exceptions raised by the search reach the caller."""

    def boom() -> None:
        raise ValueError("bad endpoint")

    ticket = worker.submit("kiosk-1", boom)
    with pytest.raises(ValueError, match="bad endpoint"):
        worker.result(ticket)


def test_shutdown_rejects_new_work() -> None:
    """Submitting after shutdown is an error."""
    pool = RouteWorker(max_workers=1)
    pool.shutdown()
    with pytest.raises(RuntimeError):
        pool.submit("kiosk-1", lambda: None)


def test_worker_needs_a_thread() -> None:
    """At least one worker thread is required."""
    with pytest.raises(ValueError):
        RouteWorker(max_workers=0)
