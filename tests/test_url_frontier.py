import threading

import pytest

from politecrawl.crawler.url_frontier import URLFrontier, URLTask, get_domain


@pytest.fixture
def frontier(backend):
    return URLFrontier(backend)


def test_priority_then_fifo_order(frontier):
    frontier.enqueue("a", 1)
    frontier.enqueue("b", 5)
    frontier.enqueue("c", 1)

    assert [frontier.dequeue().url for _ in range(3)] == ["a", "c", "b"]
    assert frontier.dequeue() is None


def test_visited_url_is_not_requeued(frontier):
    frontier.mark_visited_bulk(["https://example.com/page"])

    for priority in (0, 3, 10):
        assert frontier.enqueue("https://example.com/page", priority) is False
    assert frontier.is_empty()


def test_force_overrides_visited(frontier):
    frontier.mark_visited("https://example.com/page")
    assert frontier.enqueue("https://example.com/page", force=True) is True
    assert frontier.dequeue().url == "https://example.com/page"


def test_frontier_wide_force_rescrape(backend):
    frontier = URLFrontier(backend, force_rescrape=True)
    frontier.mark_visited("https://example.com/")
    assert frontier.enqueue("https://example.com/") is True
    # Per-call override wins
    frontier.dequeue()
    assert frontier.enqueue("https://example.com/", force=False) is False


def test_pending_duplicate_keeps_original_position(frontier):
    assert frontier.enqueue("a", 1) is True
    frontier.enqueue("b", 1)
    assert frontier.enqueue("a", 0) is False

    assert frontier.dequeue().url == "a"
    assert frontier.dequeue().url == "b"


def test_mark_visited_drops_pending_entry(frontier):
    frontier.enqueue("a", 1)
    frontier.enqueue("b", 2)
    frontier.mark_visited_bulk(["a"])

    assert frontier.get_stats() == {'total_queued': 1, 'total_visited': 1}
    assert frontier.dequeue().url == "b"
    assert frontier.dequeue() is None


def test_task_fields_survive_queue(frontier):
    frontier.enqueue("https://example.com/child", priority=2, depth=2,
                     parent_url="https://example.com/")
    task = frontier.dequeue()

    assert task.depth == 2
    assert task.priority == 2
    assert task.parent_url == "https://example.com/"
    assert task.domain == "example.com"


def test_corrupt_payload_falls_back_to_defaults(backend, frontier):
    backend.enqueue_if_unvisited("https://example.com/x", 0, "{not json")
    task = frontier.dequeue()
    assert task.url == "https://example.com/x"
    assert task.depth == 0


def test_invalid_tasks_rejected(frontier):
    with pytest.raises(ValueError):
        frontier.enqueue("")
    with pytest.raises(ValueError):
        frontier.enqueue("   ")
    with pytest.raises(ValueError):
        URLTask(url="https://example.com", depth=-1)


def test_enqueue_many_counts_new_tasks(frontier):
    frontier.mark_visited("https://example.com/old")
    tasks = [URLTask(url=u) for u in ("https://example.com/old",
                                       "https://example.com/new",
                                       "https://example.com/new")]
    assert frontier.enqueue_many(tasks) == 1


def test_concurrent_enqueue_is_deduplicated(frontier):
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        added = frontier.enqueue("https://example.com/same", 1)
        with lock:
            results.append(added)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 1
    assert frontier.get_stats()['total_queued'] == 1


def test_get_domain_lowercases_host():
    assert get_domain("https://Example.COM:8080/path") == "example.com:8080"
