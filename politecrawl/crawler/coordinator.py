"""
Crawl coordinator: drives the fetch cycle for each dequeued URL and feeds
the worker pool from the frontier.
"""

import logging
import threading
import time
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlparse

from .fetcher import FetchResult, WebFetcher
from .parser import ContentParser
from .rate_limiter import FETCH_ERROR_STATUS, RateLimiter
from .robots import RobotsCache
from .url_frontier import URLFrontier, URLTask, get_domain
from .worker_pool import WorkerPool, WorkItem
from ..storage.backend import StorageBackend, StorageError
from ..storage.content_cache import ContentCache
from ..utils.config import Config
from ..utils.logger import CrawlerLogAdapter, get_crawler_logger
from ..utils.monitoring import CrawlerMonitor, MetricsCollector


@dataclass
class CrawlSettings:
    """Runtime-adjustable crawl limits."""
    max_depth: int = 3
    max_pages: Optional[int] = 1000
    respect_robots: bool = True
    force_rescrape: bool = False


class CrawlOutcome(Enum):
    """What happened to one processed task."""
    CRAWLED = "crawled"
    SKIPPED_VISITED = "skipped_visited"
    SKIPPED_DEPTH = "skipped_depth"
    DISALLOWED = "disallowed"
    FETCH_FAILED = "fetch_failed"
    STORAGE_FAILED = "storage_failed"


class CrawlWorkItem(WorkItem):
    """Pool work item that runs one crawl cycle for a task."""

    def __init__(self, coordinator: 'CrawlCoordinator', task: URLTask):
        self.coordinator = coordinator
        self.task = task

    def run(self):
        try:
            self.coordinator.process(self.task)
        finally:
            self.coordinator._task_finished()

    def describe(self) -> str:
        return f"crawl {self.task.url}"


def _is_html(content_type: Optional[str]) -> bool:
    return not content_type or 'html' in content_type


def _url_path(url: str) -> str:
    return urlparse(url).path or '/'


class CrawlCoordinator:
    """
    Coordinates the frontier, politeness engine, fetcher and worker pool.

    One crawl cycle (process):
      1. skip if the URL was already visited, unless force-rescrape applies
      2. wait for the domain's politeness delay
      3. fetch robots.txt rules if needed and skip disallowed paths
      4. fetch and parse the page
      5. feed the response timing and status back to the rate limiter
      6. cache the content and mark the URL visited
      7. enqueue discovered links one level deeper
    """

    def __init__(self, frontier: URLFrontier, rate_limiter: RateLimiter,
                 robots: RobotsCache, fetcher: WebFetcher, parser: ContentParser,
                 pool: WorkerPool, content_cache: Optional[ContentCache] = None,
                 settings: Optional[CrawlSettings] = None,
                 monitor: Optional[CrawlerMonitor] = None,
                 poll_interval: float = 0.1, max_backoff: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.frontier = frontier
        self.rate_limiter = rate_limiter
        self.robots = robots
        self.fetcher = fetcher
        self.parser = parser
        self.pool = pool
        self.content_cache = content_cache
        self.settings = settings or CrawlSettings()
        self.monitor = monitor or CrawlerMonitor()
        self.poll_interval = poll_interval
        self.max_backoff = max_backoff
        self._sleep = sleep
        self.logger = logging.getLogger(__name__)

        self._lock = threading.Lock()
        self._in_flight = 0
        self._crawled_urls: Set[str] = set()
        self._stop_event = threading.Event()
        self._closed = False

    @classmethod
    def from_config(cls, config: Config, backend: StorageBackend,
                    monitor: Optional[CrawlerMonitor] = None) -> 'CrawlCoordinator':
        """Build a coordinator and all of its components from configuration."""
        crawler = config.crawler
        rate_limiter = RateLimiter.from_config(config.politeness)
        fetcher = WebFetcher(
            user_agent=crawler.user_agent,
            request_timeout=crawler.request_timeout,
            pool_size=config.pool.workers,
        )
        robots = RobotsCache(
            backend,
            fetcher.fetch,
            rate_limiter=rate_limiter,
            user_agent=crawler.user_agent,
            ttl=config.politeness.robots_ttl,
        )
        parser = ContentParser(
            allowed_domains=crawler.allowed_domains,
            blocked_domains=crawler.blocked_domains,
        )
        pool = WorkerPool(config.pool.workers, config.pool.queue_capacity)
        settings = CrawlSettings(
            max_depth=crawler.max_depth,
            max_pages=crawler.max_pages,
            respect_robots=crawler.respect_robots_txt,
            force_rescrape=crawler.force_rescrape,
        )
        if monitor is None:
            monitor = CrawlerMonitor(MetricsCollector(
                enable_prometheus=config.monitoring.metrics_enabled,
                prometheus_port=config.monitoring.prometheus_port,
            ))

        return cls(
            frontier=URLFrontier(backend, force_rescrape=crawler.force_rescrape),
            rate_limiter=rate_limiter,
            robots=robots,
            fetcher=fetcher,
            parser=parser,
            pool=pool,
            content_cache=ContentCache(backend, ttl=config.storage.cache_ttl),
            settings=settings,
            monitor=monitor,
        )

    def configure(self, **changes) -> CrawlSettings:
        """Update crawl settings (max_depth, max_pages, respect_robots, force_rescrape)."""
        known = {f.name for f in fields(CrawlSettings)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown crawl settings: {', '.join(sorted(unknown))}")
        if 'max_depth' in changes:
            max_depth = changes['max_depth']
            if not isinstance(max_depth, int) or isinstance(max_depth, bool) or max_depth < 0:
                raise ValueError(f"max_depth must be a non-negative integer, got {max_depth!r}")

        with self._lock:
            self.settings = replace(self.settings, **changes)
            settings = self.settings
        self.frontier.force_rescrape = settings.force_rescrape
        self.logger.info(f"Crawl settings updated: {settings}")
        return settings

    def submit_seed(self, url: str, priority: int = 0) -> bool:
        """Queue a depth-0 seed URL. Returns True if it was queued."""
        added = self.frontier.enqueue(url, priority=priority, depth=0,
                                      force=self.settings.force_rescrape)
        if added:
            self.logger.info(f"Seed URL queued: {url}")
        else:
            self.logger.info(f"Seed URL already visited or pending: {url}")
        return added

    # Crawl cycle

    def process(self, task: URLTask) -> CrawlOutcome:
        """
        Run one crawl cycle for a task and report the outcome.
        Storage failures are logged and reported as STORAGE_FAILED. The task
        is dropped, not retried; a URL that was not yet marked visited can be
        queued again by a later seed or link.
        """
        log = get_crawler_logger(__name__, url=task.url, domain=task.domain, depth=task.depth)
        size = 0
        try:
            outcome, size = self._crawl(task, log)
        except StorageError as e:
            log.error(f"Storage failure while processing {task.url}: {e}")
            outcome = CrawlOutcome.STORAGE_FAILED

        self.monitor.record_outcome(outcome.value, size)
        return outcome

    def _crawl(self, task: URLTask, log: CrawlerLogAdapter):
        settings = self.settings
        url = task.url

        if task.depth > settings.max_depth:
            log.info(f"Skipping {url}: depth {task.depth} exceeds max depth {settings.max_depth}")
            return CrawlOutcome.SKIPPED_DEPTH, 0

        force = settings.force_rescrape and not self._was_crawled(url)
        if self.frontier.is_visited(url):
            if not force:
                cached_type = self.content_cache.content_type(url) if self.content_cache else None
                suffix = f" (cached content type: {cached_type})" if cached_type else ""
                log.info(f"Skipping already visited URL {url}{suffix}")
                return CrawlOutcome.SKIPPED_VISITED, 0
            log.info(f"Force re-scraping already visited URL {url}")

        domain = task.domain
        waited = self.rate_limiter.wait(domain)
        self.monitor.record_wait(waited)

        if settings.respect_robots:
            self.robots.ensure_fetched(domain)
            if not self.robots.is_allowed(domain, _url_path(url)):
                log.info(f"URL not allowed by robots.txt: {url}")
                return CrawlOutcome.DISALLOWED, 0

        result = self.fetcher.fetch(url)
        if result.status_code == 0:
            self.rate_limiter.update(domain, result.fetch_time, FETCH_ERROR_STATUS)
            log.warning(f"Failed to fetch {url}: {result.error}")
            return CrawlOutcome.FETCH_FAILED, 0

        self.rate_limiter.update(domain, result.fetch_time, result.status_code)
        self.monitor.record_response(result.status_code, result.fetch_time)

        links = self._record_page(task, result)
        self.frontier.mark_visited(url)
        self._mark_crawled(url)
        log.info(f"Crawled {url} ({result.status_code}, {result.size} bytes, "
                 f"{result.fetch_time:.2f}s)")

        if links:
            self._enqueue_children(task, links, log)
        return CrawlOutcome.CRAWLED, result.size

    def _record_page(self, task: URLTask, result: FetchResult) -> List[str]:
        """Parse and cache a fetched page. Returns the links found in it."""
        title = description = keywords = None
        links: List[str] = []
        if result.ok and result.content and _is_html(result.content_type):
            parsed = self.parser.parse(task.url, result.content)
            title = parsed.title
            description = parsed.meta_description
            keywords = parsed.meta_keywords
            links = parsed.links

        if self.content_cache:
            self.content_cache.store(task.url, result.content, result.content_type,
                                     result.status_code, title=title,
                                     description=description, keywords=keywords)
        return links

    def _enqueue_children(self, task: URLTask, links: List[str], log: CrawlerLogAdapter):
        settings = self.settings
        child_depth = task.depth + 1
        if child_depth > settings.max_depth:
            log.debug(f"Not following {len(links)} links from {task.url}: max depth reached")
            self.monitor.record_links(len(links), 0)
            return

        enqueued = 0
        for link in links:
            if settings.respect_robots and \
                    not self.robots.is_allowed(get_domain(link), _url_path(link)):
                log.log_url_event(logging.INFO, link, "Discovered link disallowed by robots.txt",
                                  extra={'parent_url': task.url})
                continue
            force = settings.force_rescrape and not self._was_crawled(link)
            if self.frontier.enqueue(link, priority=child_depth, depth=child_depth,
                                     parent_url=task.url, force=force):
                enqueued += 1

        self.monitor.record_links(len(links), enqueued)
        log.debug(f"Queued {enqueued} of {len(links)} links from {task.url}")

    def _was_crawled(self, url: str) -> bool:
        with self._lock:
            return url in self._crawled_urls

    def _mark_crawled(self, url: str):
        with self._lock:
            self._crawled_urls.add(url)

    # Dispatch loop

    def _in_flight_count(self) -> int:
        with self._lock:
            return self._in_flight

    def _task_finished(self):
        with self._lock:
            self._in_flight -= 1

    def _dispatch(self, task: URLTask) -> bool:
        with self._lock:
            self._in_flight += 1
        if self.pool.submit(CrawlWorkItem(self, task)):
            return True

        # Pool is shutting down; put the task back for a later run
        with self._lock:
            self._in_flight -= 1
        self.frontier.enqueue_task(task)
        return False

    def _requeue(self, items: List[WorkItem]):
        """Return tasks the pool dropped on shutdown to the frontier."""
        requeued = 0
        for item in items:
            if not isinstance(item, CrawlWorkItem):
                continue
            with self._lock:
                self._in_flight -= 1
            try:
                if self.frontier.enqueue_task(item.task):
                    requeued += 1
            except StorageError as e:
                self.logger.error(f"Could not return {item.task.url} to the frontier: {e}")
        if requeued:
            self.logger.info(f"Returned {requeued} pending tasks to the frontier")

    def _update_gauges(self):
        self.monitor.update_queue_size(self.frontier.get_stats()['total_queued'])
        self.monitor.update_active_workers(self.pool.active_count())

    def run(self, max_pages: Optional[int] = None,
            max_duration: Optional[float] = None) -> Dict[str, Any]:
        """
        Dispatch frontier tasks to the pool until the frontier is empty and
        the pool idle, a limit is reached or stop() is called.

        Args:
            max_pages: Pages to crawl (defaults to settings.max_pages; 0 or None is unlimited)
            max_duration: Seconds to run (None is unlimited)

        Returns:
            Crawl statistics snapshot
        """
        if max_pages is None:
            max_pages = self.settings.max_pages
        return self._dispatch_loop(max_pages, max_duration)

    def drain(self) -> Dict[str, Any]:
        """Crawl until the frontier is empty and the pool is idle."""
        return self._dispatch_loop(None, None)

    def _dispatch_loop(self, max_pages: Optional[int],
                       max_duration: Optional[float]) -> Dict[str, Any]:
        start = time.monotonic()
        backoff = self.poll_interval
        last_gauge_update = 0.0
        self.logger.info(f"Crawl started (max pages {max_pages or 'unlimited'}, "
                         f"max duration {max_duration or 'unlimited'})")

        while not self._stop_event.is_set():
            now = time.monotonic()
            if now - last_gauge_update >= 1.0:
                self._update_gauges()
                last_gauge_update = now

            crawled = self.monitor.stats.count(CrawlOutcome.CRAWLED.value)
            if max_pages and crawled >= max_pages:
                self.logger.info(f"Reached max pages limit: {max_pages}")
                break
            if max_duration and now - start >= max_duration:
                self.logger.info(f"Reached max duration: {max_duration} seconds")
                break
            if max_pages and crawled + self._in_flight_count() >= max_pages:
                # Enough work in flight to reach the limit
                self._sleep(self.poll_interval)
                continue

            try:
                task = self.frontier.dequeue()
            except StorageError as e:
                self.logger.error(f"Could not dequeue from frontier: {e}")
                self._sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
                continue

            if task is None:
                # Finished tasks enqueue their children before leaving flight,
                # so the frontier must be re-checked once nothing is in flight
                if self._in_flight_count() == 0 and self.frontier.is_empty():
                    self.logger.info("Frontier is empty and all workers are idle")
                    break
                self._sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
                continue

            backoff = self.poll_interval
            if not self._dispatch(task):
                self.logger.warning("Worker pool is shut down, stopping dispatch")
                break

        if self._stop_event.is_set():
            self.logger.info("Crawl stopped on request")
        self._update_gauges()
        return self.monitor.get_summary()

    def stop(self):
        """
        Ask the dispatch loop to stop. Tasks already in the pool still run;
        later run() or drain() calls return without dispatching.
        """
        self._stop_event.set()

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Wait for dispatched tasks to finish."""
        return self.pool.wait(timeout)

    def close(self):
        """Stop dispatching, let running work finish and release connections. Idempotent."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.stop()
        pending = self.pool.shutdown(wait=True)
        self._requeue(pending)
        self.fetcher.close()
        self.logger.info("Crawl coordinator closed")

    def get_stats(self) -> Dict[str, Any]:
        stats = self.monitor.get_summary()
        stats.update(self.frontier.get_stats())
        stats['in_flight'] = self._in_flight_count()
        return stats
