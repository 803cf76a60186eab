"""
Monitoring and metrics collection for the crawler.
"""

import time
import logging
import threading
from typing import Dict, Optional, Any

import psutil
from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, generate_latest
from prometheus_client import start_http_server


# Outcome names counted by CrawlStats, matching CrawlOutcome values
OUTCOMES = (
    'crawled',
    'skipped_visited',
    'skipped_depth',
    'disallowed',
    'fetch_failed',
    'storage_failed',
)


class CrawlStats:
    """Thread-safe crawl counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self.start_time = time.time()
        self.processed = 0
        self.outcomes: Dict[str, int] = {name: 0 for name in OUTCOMES}
        self.bytes_downloaded = 0
        self.links_discovered = 0
        self.links_enqueued = 0
        self._process = psutil.Process()

    def record(self, outcome: str, bytes_downloaded: int = 0):
        with self._lock:
            self.processed += 1
            self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1
            self.bytes_downloaded += bytes_downloaded

    def record_links(self, discovered: int, enqueued: int):
        with self._lock:
            self.links_discovered += discovered
            self.links_enqueued += enqueued

    def count(self, outcome: str) -> int:
        with self._lock:
            return self.outcomes.get(outcome, 0)

    def memory_mb(self) -> float:
        """Resident memory of this process in MB."""
        return self._process.memory_info().rss / 1024 ** 2

    def snapshot(self) -> Dict[str, Any]:
        """Consistent copy of all counters plus derived rates."""
        with self._lock:
            elapsed = time.time() - self.start_time
            data = {
                'elapsed_seconds': elapsed,
                'processed': self.processed,
                'bytes_downloaded': self.bytes_downloaded,
                'links_discovered': self.links_discovered,
                'links_enqueued': self.links_enqueued,
            }
            data.update(self.outcomes)

        data['pages_per_second'] = data['crawled'] / elapsed if elapsed > 0 else 0.0
        data['memory_mb'] = self.memory_mb()
        return data


class MetricsCollector:
    """Prometheus metrics on a private registry."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000):
        self.logger = logging.getLogger(__name__)
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()

        self.outcomes_total = Counter(
            'crawler_outcomes_total',
            'Processed crawl tasks by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.http_responses_total = Counter(
            'crawler_http_responses_total',
            'HTTP responses by status code',
            ['status_code'],
            registry=self.registry
        )
        self.bytes_downloaded_total = Counter(
            'crawler_bytes_downloaded_total',
            'Total bytes downloaded',
            registry=self.registry
        )
        self.response_time_seconds = Histogram(
            'crawler_response_time_seconds',
            'Response time for HTTP requests',
            registry=self.registry
        )
        self.politeness_wait_seconds = Histogram(
            'crawler_politeness_wait_seconds',
            'Time spent waiting on per-domain delays',
            registry=self.registry
        )
        self.queue_size = Gauge(
            'crawler_queue_size',
            'Number of URLs pending in the frontier',
            registry=self.registry
        )
        self.active_workers = Gauge(
            'crawler_active_workers',
            'Number of workers executing a task',
            registry=self.registry
        )

    def start_server(self):
        """Serve the registry over HTTP if enabled."""
        if not self.enable_prometheus:
            return
        start_http_server(self.prometheus_port, registry=self.registry)
        self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")

    def export(self) -> bytes:
        """Current metrics in the Prometheus text format."""
        return generate_latest(self.registry)


class CrawlerMonitor:
    """High-level monitoring interface for the crawler."""

    def __init__(self, metrics: Optional[MetricsCollector] = None,
                 stats: Optional[CrawlStats] = None):
        self.metrics = metrics or MetricsCollector()
        self.stats = stats or CrawlStats()
        self.logger = logging.getLogger(__name__)

    def record_outcome(self, outcome: str, bytes_downloaded: int = 0):
        self.stats.record(outcome, bytes_downloaded)
        self.metrics.outcomes_total.labels(outcome=outcome).inc()
        if bytes_downloaded:
            self.metrics.bytes_downloaded_total.inc(bytes_downloaded)

    def record_response(self, status_code: int, response_time: float):
        self.metrics.http_responses_total.labels(status_code=str(status_code)).inc()
        self.metrics.response_time_seconds.observe(response_time)

    def record_wait(self, seconds: float):
        self.metrics.politeness_wait_seconds.observe(seconds)

    def record_links(self, discovered: int, enqueued: int):
        self.stats.record_links(discovered, enqueued)

    def update_queue_size(self, size: int):
        self.metrics.queue_size.set(size)

    def update_active_workers(self, count: int):
        self.metrics.active_workers.set(count)

    def get_summary(self) -> Dict[str, Any]:
        return self.stats.snapshot()


class StatsReporter(threading.Thread):
    """Background thread that logs a progress line every interval seconds."""

    def __init__(self, monitor: CrawlerMonitor, interval: float = 60.0):
        super().__init__(name="stats-reporter", daemon=True)
        self.monitor = monitor
        self.interval = interval
        self.logger = logging.getLogger(__name__)
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            self.log_summary()

    def log_summary(self):
        s = self.monitor.get_summary()
        self.logger.info(
            f"Progress: {s['processed']} processed, {s['crawled']} crawled, "
            f"{s['skipped_visited'] + s['skipped_depth']} skipped, {s['disallowed']} disallowed, "
            f"{s['fetch_failed']} fetch errors, {s['storage_failed']} storage errors, "
            f"{s['pages_per_second']:.2f} pages/s, {s['memory_mb']:.1f} MB"
        )

    def stop(self):
        self._stop_event.set()
