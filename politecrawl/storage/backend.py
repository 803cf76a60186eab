"""
Backing store for crawl state.
Supports Redis (durable, shared) and an in-process memory store.
"""

import heapq
import logging
import threading
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

import redis
from redis.backoff import ConstantBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from ..utils.config import RedisConfig, StorageConfig


# Redis key schema
VISITED_KEY = "visited_urls"
QUEUE_KEY = "url_queue"
QUEUE_SEQ_KEY = "url_queue:seq"
TASKS_KEY = "url_tasks"
ROBOTS_PREFIX = "robots:"
CACHE_PREFIX = "cache:"

# Queue score is priority * SEQ_SPAN + insertion sequence
SEQ_SPAN = 2 ** 32


class StorageError(Exception):
    """Raised when the backing store cannot complete an operation."""
    pass


def queue_score(priority: int, seq: int) -> float:
    """Composite sort key giving priority-then-FIFO order."""
    return float(priority * SEQ_SPAN + seq)


class StorageBackend:
    """Abstract base class for crawl-state backends."""

    def ping(self) -> bool:
        """Check that the store is reachable."""
        raise NotImplementedError

    def enqueue_if_unvisited(self, url: str, priority: int, payload: str,
                             force: bool = False) -> bool:
        """Add url to the pending queue unless it was visited or is already pending."""
        raise NotImplementedError

    def pop_next(self) -> Optional[Tuple[str, str]]:
        """Remove and return (url, payload) with the lowest score."""
        raise NotImplementedError

    def mark_visited(self, urls: List[str]):
        """Add urls to the visited set and drop their pending entries, atomically."""
        raise NotImplementedError

    def is_visited(self, url: str) -> bool:
        raise NotImplementedError

    def queue_size(self) -> int:
        raise NotImplementedError

    def visited_count(self) -> int:
        raise NotImplementedError

    def store_robots(self, domain: str, allow: List[str], disallow: List[str],
                     crawl_delay: Optional[float], fetched_at: float, ttl: int):
        """Replace the cached robots rules for a domain."""
        raise NotImplementedError

    def load_robots(self, domain: str) -> Optional[Dict]:
        """Return cached robots rules or None if missing or expired."""
        raise NotImplementedError

    def store_cache_entry(self, url: str, mapping: Dict[str, str], ttl: int):
        raise NotImplementedError

    def load_cache_entry(self, url: str) -> Optional[Dict[str, str]]:
        raise NotImplementedError

    def clear(self):
        """Remove all crawl state."""
        raise NotImplementedError

    def close(self):
        raise NotImplementedError


_ENQUEUE_SCRIPT = """
if ARGV[4] ~= '1' and redis.call('SISMEMBER', KEYS[1], ARGV[1]) == 1 then
    return 0
end
if redis.call('ZSCORE', KEYS[2], ARGV[1]) then
    return 0
end
local seq = redis.call('INCR', KEYS[3])
local score = tonumber(ARGV[2]) * tonumber(ARGV[5]) + seq
redis.call('ZADD', KEYS[2], string.format('%.0f', score), ARGV[1])
redis.call('HSET', KEYS[4], ARGV[1], ARGV[3])
return 1
"""

_POP_SCRIPT = """
local popped = redis.call('ZPOPMIN', KEYS[1])
if #popped == 0 then
    return false
end
local url = popped[1]
local payload = redis.call('HGET', KEYS[2], url)
redis.call('HDEL', KEYS[2], url)
return {url, payload or ''}
"""


class RedisBackend(StorageBackend):
    """
    Redis backend.
    Check-and-enqueue and pop run as Lua scripts so they are atomic on the
    server; multi-key writes use MULTI/EXEC pipelines.
    """

    def __init__(self, config: RedisConfig, pool_size: int = 10,
                 client: Optional[redis.Redis] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        if client is None:
            retry = Retry(ConstantBackoff(config.retry_delay), config.max_retries)
            pool = redis.BlockingConnectionPool(
                host=config.host,
                port=config.port,
                db=config.db,
                password=config.password,
                max_connections=pool_size,
                timeout=config.pool_timeout,
                socket_timeout=config.socket_timeout,
                decode_responses=True,
                retry=retry,
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
            )
            client = redis.Redis(connection_pool=pool)

        self.client = client
        self._enqueue = self.client.register_script(_ENQUEUE_SCRIPT)
        self._pop = self.client.register_script(_POP_SCRIPT)

    def _run(self, operation: str, func: Callable, *args, **kwargs):
        """Run a Redis call, converting library errors into StorageError."""
        try:
            return func(*args, **kwargs)
        except RedisError as e:
            self.logger.error(f"Redis {operation} failed: {e}")
            raise StorageError(f"{operation} failed: {e}") from e

    @staticmethod
    def _robots_keys(domain: str) -> Tuple[str, str, str]:
        base = f"{ROBOTS_PREFIX}{domain}"
        return f"{base}:allow", f"{base}:disallow", f"{base}:meta"

    def ping(self) -> bool:
        return bool(self._run("PING", self.client.ping))

    def enqueue_if_unvisited(self, url: str, priority: int, payload: str,
                             force: bool = False) -> bool:
        added = self._run(
            "enqueue", self._enqueue,
            keys=[VISITED_KEY, QUEUE_KEY, QUEUE_SEQ_KEY, TASKS_KEY],
            args=[url, int(priority), payload, '1' if force else '0', SEQ_SPAN],
        )
        return int(added) == 1

    def pop_next(self) -> Optional[Tuple[str, str]]:
        result = self._run("dequeue", self._pop, keys=[QUEUE_KEY, TASKS_KEY])
        if not result:
            return None
        url, payload = result
        return url, payload

    def mark_visited(self, urls: List[str]):
        if not urls:
            return

        def _commit():
            pipe = self.client.pipeline(transaction=True)
            pipe.sadd(VISITED_KEY, *urls)
            pipe.zrem(QUEUE_KEY, *urls)
            pipe.hdel(TASKS_KEY, *urls)
            pipe.execute()

        self._run("mark_visited", _commit)

    def is_visited(self, url: str) -> bool:
        return bool(self._run("SISMEMBER", self.client.sismember, VISITED_KEY, url))

    def queue_size(self) -> int:
        return int(self._run("ZCARD", self.client.zcard, QUEUE_KEY))

    def visited_count(self) -> int:
        return int(self._run("SCARD", self.client.scard, VISITED_KEY))

    def store_robots(self, domain: str, allow: List[str], disallow: List[str],
                     crawl_delay: Optional[float], fetched_at: float, ttl: int):
        allow_key, disallow_key, meta_key = self._robots_keys(domain)

        def _commit():
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(allow_key, disallow_key, meta_key)
            if allow:
                pipe.rpush(allow_key, *allow)
                pipe.expire(allow_key, ttl)
            if disallow:
                pipe.rpush(disallow_key, *disallow)
                pipe.expire(disallow_key, ttl)
            pipe.hset(meta_key, mapping={
                'fetched_at': repr(fetched_at),
                'crawl_delay': '' if crawl_delay is None else repr(crawl_delay),
            })
            pipe.expire(meta_key, ttl)
            pipe.execute()

        self._run("store_robots", _commit)

    def load_robots(self, domain: str) -> Optional[Dict]:
        allow_key, disallow_key, meta_key = self._robots_keys(domain)

        def _load():
            pipe = self.client.pipeline(transaction=False)
            pipe.hgetall(meta_key)
            pipe.lrange(allow_key, 0, -1)
            pipe.lrange(disallow_key, 0, -1)
            return pipe.execute()

        meta, allow, disallow = self._run("load_robots", _load)
        if not meta:
            return None

        crawl_delay = meta.get('crawl_delay')
        return {
            'allow': list(allow),
            'disallow': list(disallow),
            'crawl_delay': float(crawl_delay) if crawl_delay else None,
            'fetched_at': float(meta.get('fetched_at', 0.0)),
        }

    def store_cache_entry(self, url: str, mapping: Dict[str, str], ttl: int):
        key = f"{CACHE_PREFIX}{url}"

        def _commit():
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping=mapping)
            pipe.expire(key, ttl)
            pipe.execute()

        self._run("store_cache_entry", _commit)

    def load_cache_entry(self, url: str) -> Optional[Dict[str, str]]:
        entry = self._run("HGETALL", self.client.hgetall, f"{CACHE_PREFIX}{url}")
        return entry or None

    def clear(self):
        def _clear():
            keys = [VISITED_KEY, QUEUE_KEY, QUEUE_SEQ_KEY, TASKS_KEY]
            for pattern in (f"{ROBOTS_PREFIX}*", f"{CACHE_PREFIX}*"):
                keys.extend(self.client.scan_iter(match=pattern))
            self.client.delete(*keys)

        self._run("clear", _clear)
        self.logger.info("Cleared crawl state from Redis")

    def close(self):
        try:
            self.client.close()
            self.client.connection_pool.disconnect()
            self.logger.info("Redis connections closed")
        except RedisError as e:
            self.logger.error(f"Error closing Redis connections: {e}")


class MemoryBackend(StorageBackend):
    """
    In-process backend for development, dry runs and tests.
    One lock guards all state; expiry is checked against an injectable clock.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()
        self._visited: Set[str] = set()
        self._heap: List[Tuple[float, str]] = []
        self._pending: Dict[str, Tuple[float, str]] = {}
        self._seq = 0
        self._robots: Dict[str, Tuple[Dict, float]] = {}
        self._cache: Dict[str, Tuple[Dict[str, str], float]] = {}

    def ping(self) -> bool:
        return True

    def enqueue_if_unvisited(self, url: str, priority: int, payload: str,
                             force: bool = False) -> bool:
        with self._lock:
            if not force and url in self._visited:
                return False
            if url in self._pending:
                return False
            self._seq += 1
            score = queue_score(priority, self._seq)
            self._pending[url] = (score, payload)
            heapq.heappush(self._heap, (score, url))
            return True

    def pop_next(self) -> Optional[Tuple[str, str]]:
        with self._lock:
            while self._heap:
                score, url = heapq.heappop(self._heap)
                entry = self._pending.get(url)
                # Entries removed by mark_visited or re-added with a new score are stale
                if entry is None or entry[0] != score:
                    continue
                del self._pending[url]
                return url, entry[1]
            return None

    def mark_visited(self, urls: List[str]):
        with self._lock:
            for url in urls:
                self._visited.add(url)
                self._pending.pop(url, None)

    def is_visited(self, url: str) -> bool:
        with self._lock:
            return url in self._visited

    def queue_size(self) -> int:
        with self._lock:
            return len(self._pending)

    def visited_count(self) -> int:
        with self._lock:
            return len(self._visited)

    def store_robots(self, domain: str, allow: List[str], disallow: List[str],
                     crawl_delay: Optional[float], fetched_at: float, ttl: int):
        record = {
            'allow': list(allow),
            'disallow': list(disallow),
            'crawl_delay': crawl_delay,
            'fetched_at': fetched_at,
        }
        with self._lock:
            self._robots[domain] = (record, self.clock() + ttl)

    def load_robots(self, domain: str) -> Optional[Dict]:
        with self._lock:
            return self._get_live(self._robots, domain)

    def store_cache_entry(self, url: str, mapping: Dict[str, str], ttl: int):
        with self._lock:
            self._cache[url] = (dict(mapping), self.clock() + ttl)

    def load_cache_entry(self, url: str) -> Optional[Dict[str, str]]:
        with self._lock:
            return self._get_live(self._cache, url)

    def _get_live(self, table: Dict[str, Tuple[Dict, float]], key: str) -> Optional[Dict]:
        """Return a copy of an unexpired record, dropping it once expired."""
        item = table.get(key)
        if item is None:
            return None
        record, expires_at = item
        if self.clock() >= expires_at:
            del table[key]
            return None
        return dict(record)

    def clear(self):
        with self._lock:
            self._visited.clear()
            self._heap.clear()
            self._pending.clear()
            self._robots.clear()
            self._cache.clear()
            self._seq = 0

    def close(self):
        pass


def create_backend(storage_config: StorageConfig, redis_config: RedisConfig,
                   pool_size: int = 10) -> StorageBackend:
    """Create and verify the configured backend. Raises StorageError if unreachable."""
    logger = logging.getLogger(__name__)
    backend_type = storage_config.backend.lower()

    if backend_type == 'redis':
        backend: StorageBackend = RedisBackend(redis_config, pool_size=pool_size)
    elif backend_type == 'memory':
        backend = MemoryBackend()
    else:
        raise StorageError(f"Unknown storage backend: {backend_type}")

    backend.ping()
    logger.info(f"Storage initialized with {backend_type} backend")
    return backend
