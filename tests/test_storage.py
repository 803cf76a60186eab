import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from politecrawl.storage.backend import (
    QUEUE_KEY,
    MemoryBackend,
    RedisBackend,
    StorageError,
    create_backend,
    queue_score,
)
from politecrawl.storage.content_cache import ContentCache
from politecrawl.utils.config import RedisConfig, StorageConfig


def test_queue_score_orders_priority_before_sequence():
    assert queue_score(0, 10 ** 6) < queue_score(1, 1)
    assert queue_score(1, 1) < queue_score(1, 2)


def test_robots_records_expire(backend, clock):
    backend.store_robots("example.com", ["/a"], ["/b"], 2.0, clock(), ttl=10)
    record = backend.load_robots("example.com")
    assert record == {'allow': ['/a'], 'disallow': ['/b'], 'crawl_delay': 2.0,
                      'fetched_at': clock()}

    clock.advance(10)
    assert backend.load_robots("example.com") is None


def test_clear_removes_everything(backend):
    backend.enqueue_if_unvisited("a", 0, "")
    backend.mark_visited(["b"])
    backend.store_cache_entry("c", {'type': 'text/html'}, ttl=10)
    backend.clear()

    assert backend.queue_size() == 0
    assert backend.visited_count() == 0
    assert backend.load_cache_entry("c") is None


def test_content_cache_round_trip(backend):
    cache = ContentCache(backend, ttl=60)
    cache.store("https://example.com", "<html></html>", "text/html", 200, title="Home")

    entry = cache.get("https://example.com")
    assert entry.content == "<html></html>"
    assert entry.content_type == "text/html"
    assert entry.status_code == 200
    assert entry.size == len("<html></html>")
    assert entry.title == "Home"
    assert cache.content_type("https://example.com") == "text/html"
    assert cache.get("https://example.com/missing") is None


def test_content_cache_skips_large_bodies(backend):
    cache = ContentCache(backend, max_body_size=10)
    entry = cache.store("https://example.com/big", "x" * 100, "text/plain", 200)

    assert entry.content == ""
    assert cache.get("https://example.com/big").size == 100


def test_content_cache_expires(backend, clock):
    cache = ContentCache(backend, ttl=5)
    cache.store("https://example.com", "body", "text/html", 200)
    clock.advance(5)
    assert not cache.has("https://example.com")


def test_create_memory_backend():
    backend = create_backend(StorageConfig(backend="memory"), RedisConfig())
    assert isinstance(backend, MemoryBackend)


def test_create_unknown_backend_fails():
    with pytest.raises(StorageError):
        create_backend(StorageConfig(backend="cassandra"), RedisConfig())


@pytest.fixture(params=["fakeredis", "server"])
def redis_backend(request):
    if request.param == "fakeredis":
        backend = RedisBackend(RedisConfig(), client=fakeredis.FakeRedis(decode_responses=True))
    else:
        backend = RedisBackend(RedisConfig(db=15, max_retries=0, socket_timeout=1.0), pool_size=4)
        try:
            backend.ping()
        except StorageError:
            pytest.skip("Redis server not reachable")
    backend.clear()
    yield backend
    backend.clear()
    backend.close()


def test_redis_queue_order_and_dedup(redis_backend):
    assert redis_backend.enqueue_if_unvisited("a", 1, '{"url": "a"}')
    assert redis_backend.enqueue_if_unvisited("b", 5, "")
    assert redis_backend.enqueue_if_unvisited("c", 1, "")
    assert not redis_backend.enqueue_if_unvisited("a", 0, "")

    assert redis_backend.pop_next() == ("a", '{"url": "a"}')
    redis_backend.mark_visited(["c"])
    assert redis_backend.pop_next() == ("b", "")
    assert redis_backend.pop_next() is None

    assert not redis_backend.enqueue_if_unvisited("c", 0, "")
    assert redis_backend.enqueue_if_unvisited("c", 0, "", force=True)


def test_redis_robots_and_cache(redis_backend):
    redis_backend.store_robots("example.com", ["/public"], ["/private", "/tmp"], None, 1000.0, 60)
    record = redis_backend.load_robots("example.com")
    assert record['allow'] == ["/public"]
    assert record['disallow'] == ["/private", "/tmp"]
    assert record['crawl_delay'] is None
    assert record['fetched_at'] == 1000.0

    redis_backend.store_cache_entry("https://example.com", {'type': 'text/html', 'status': '200'}, 60)
    assert redis_backend.load_cache_entry("https://example.com")['type'] == 'text/html'


def test_redis_queue_score_is_priority_then_sequence(redis_backend):
    redis_backend.enqueue_if_unvisited("first", 2, "")
    redis_backend.enqueue_if_unvisited("second", 2, "")
    redis_backend.enqueue_if_unvisited("urgent", 0, "")

    assert redis_backend.client.zscore(QUEUE_KEY, "first") == queue_score(2, 1)
    assert redis_backend.client.zscore(QUEUE_KEY, "second") == queue_score(2, 2)
    assert redis_backend.client.zscore(QUEUE_KEY, "urgent") == queue_score(0, 3)
    assert [redis_backend.pop_next()[0] for _ in range(3)] == ["urgent", "first", "second"]


def test_redis_mark_visited_removes_pending_entries(redis_backend):
    redis_backend.enqueue_if_unvisited("a", 0, '{"url": "a"}')
    redis_backend.enqueue_if_unvisited("b", 0, "")
    redis_backend.mark_visited(["a", "c"])

    assert redis_backend.is_visited("a")
    assert redis_backend.is_visited("c")
    assert redis_backend.visited_count() == 2
    assert redis_backend.queue_size() == 1
    assert redis_backend.pop_next() == ("b", "")


class UnreachableClient:
    """Stands in for a redis client whose server has gone away."""

    def register_script(self, script):
        def call(keys=None, args=None):
            raise RedisConnectionError("Error 111 connecting to localhost:6379")
        return call

    def ping(self):
        raise RedisConnectionError("Error 111 connecting to localhost:6379")

    def sismember(self, key, member):
        raise RedisConnectionError("Error 111 connecting to localhost:6379")

    def close(self):
        pass


def test_redis_errors_become_storage_errors():
    backend = RedisBackend(RedisConfig(), client=UnreachableClient())

    with pytest.raises(StorageError):
        backend.ping()
    with pytest.raises(StorageError):
        backend.enqueue_if_unvisited("https://example.com", 0, "")
    with pytest.raises(StorageError):
        backend.pop_next()
    with pytest.raises(StorageError):
        backend.is_visited("https://example.com")
