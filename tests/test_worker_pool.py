import logging
import threading
import time

import pytest

from politecrawl.crawler.worker_pool import WorkerPool, WorkerState, WorkItem


class RecordingItem(WorkItem):
    def __init__(self, name, log, gate=None, started=None):
        self.name = name
        self.log = log
        self.gate = gate
        self.started = started

    def run(self):
        if self.started:
            self.started.set()
        if self.gate:
            self.gate.wait(5)
        self.log.append(self.name)

    def describe(self):
        return self.name


class FailingItem(WorkItem):
    def run(self):
        raise RuntimeError("boom")


@pytest.fixture
def pool():
    p = WorkerPool(1, 2, name="test")
    yield p
    p.shutdown(wait=True)


def test_invalid_sizes_rejected():
    with pytest.raises(ValueError):
        WorkerPool(0, 1)
    with pytest.raises(ValueError):
        WorkerPool(1, 0)


def test_runs_every_item_once():
    log = []
    with WorkerPool(4, 10) as pool:
        for i in range(20):
            assert pool.submit(RecordingItem(i, log))
        assert pool.wait(5)
    assert sorted(log) == list(range(20))


def test_submit_blocks_when_queue_full(pool):
    log = []
    gate = threading.Event()
    started = threading.Event()
    pool.submit(RecordingItem("busy", log, gate=gate, started=started))
    assert started.wait(5)

    # Worker is occupied; fill the queue to capacity
    assert pool.submit(RecordingItem("q1", log))
    assert pool.submit(RecordingItem("q2", log))
    assert pool.queue_depth() == 2

    submitted = threading.Event()

    def producer():
        pool.submit(RecordingItem("overflow", log))
        submitted.set()

    thread = threading.Thread(target=producer)
    thread.start()
    assert not submitted.wait(0.3)

    gate.set()
    assert submitted.wait(5)
    thread.join(5)
    assert pool.wait(5)
    assert log == ["busy", "q1", "q2", "overflow"]


def test_submit_timeout_returns_false(pool):
    gate = threading.Event()
    started = threading.Event()
    pool.submit(RecordingItem("busy", [], gate=gate, started=started))
    assert started.wait(5)
    pool.submit(RecordingItem("q1", []))
    pool.submit(RecordingItem("q2", []))

    start = time.monotonic()
    assert pool.submit(RecordingItem("late", []), timeout=0.1) is False
    assert time.monotonic() - start >= 0.09
    gate.set()


def test_failing_item_does_not_kill_worker(caplog):
    log = []
    with caplog.at_level(logging.ERROR):
        with WorkerPool(1, 5) as pool:
            pool.submit(FailingItem())
            pool.submit(RecordingItem("after", log))
            assert pool.wait(5)
    assert log == ["after"]
    assert "FailingItem raised" in caplog.text


def test_shutdown_finishes_current_item_only():
    log = []
    gate = threading.Event()
    started = threading.Event()
    pool = WorkerPool(1, 10)
    pool.submit(RecordingItem("current", log, gate=gate, started=started))
    assert started.wait(5)
    queued = [RecordingItem(f"queued{i}", log) for i in range(5)]
    for item in queued:
        assert pool.submit(item)

    threading.Timer(0.1, gate.set).start()
    discarded = pool.shutdown(wait=True)

    assert log == ["current"]
    assert discarded == queued
    assert pool.queue_depth() == 0
    assert pool.is_idle()
    assert pool.submit(RecordingItem("rejected", log)) is False
    assert all(state == WorkerState.EXITED for state in pool.worker_states().values())
    # Idempotent
    assert pool.shutdown(wait=True) == []


def test_shutdown_wakes_blocked_submitter(pool):
    gate = threading.Event()
    started = threading.Event()
    pool.submit(RecordingItem("busy", [], gate=gate, started=started))
    assert started.wait(5)
    pool.submit(RecordingItem("q1", []))
    pool.submit(RecordingItem("q2", []))

    results = []
    thread = threading.Thread(target=lambda: results.append(pool.submit(RecordingItem("late", []))))
    thread.start()
    threading.Timer(0.1, gate.set).start()
    assert len(pool.shutdown(wait=True)) == 2
    thread.join(5)
    assert results == [False]


def test_wait_and_idle():
    with WorkerPool(2, 5) as pool:
        assert pool.is_idle()
        gate = threading.Event()
        started = threading.Event()
        pool.submit(RecordingItem("busy", [], gate=gate, started=started))
        assert started.wait(5)
        assert pool.active_count() == 1
        assert pool.wait(0.05) is False
        gate.set()
        assert pool.wait(5)
        assert pool.is_idle()
