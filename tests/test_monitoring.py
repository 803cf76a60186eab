import json
import logging

from politecrawl.utils.config import LoggingConfig
from politecrawl.utils.logger import JSONFormatter, get_crawler_logger, setup_logging
from politecrawl.utils.monitoring import CrawlerMonitor, CrawlStats, StatsReporter


def test_crawl_stats_snapshot():
    stats = CrawlStats()
    stats.record("crawled", 100)
    stats.record("crawled", 50)
    stats.record("disallowed")
    stats.record_links(10, 4)

    snapshot = stats.snapshot()
    assert snapshot['processed'] == 3
    assert snapshot['crawled'] == 2
    assert snapshot['disallowed'] == 1
    assert snapshot['bytes_downloaded'] == 150
    assert snapshot['links_enqueued'] == 4
    assert snapshot['memory_mb'] > 0


def test_monitor_publishes_prometheus_metrics():
    monitor = CrawlerMonitor()
    monitor.record_outcome("crawled", 2048)
    monitor.record_response(200, 0.3)
    monitor.update_queue_size(7)

    text = monitor.metrics.export().decode()
    assert 'crawler_outcomes_total{outcome="crawled"} 1.0' in text
    assert 'crawler_http_responses_total{status_code="200"} 1.0' in text
    assert 'crawler_queue_size 7.0' in text


def test_stats_reporter_logs_progress(caplog):
    monitor = CrawlerMonitor()
    monitor.record_outcome("crawled")
    reporter = StatsReporter(monitor, interval=60)

    with caplog.at_level(logging.INFO, logger="politecrawl.utils.monitoring"):
        reporter.log_summary()
    assert "1 crawled" in caplog.text


def test_json_formatter_includes_adapter_context():
    record = logging.LogRecord("politecrawl", logging.INFO, __file__, 1, "fetched", None, None)
    record.extra_fields = {'url': 'https://example.com', 'depth': 0}

    entry = json.loads(JSONFormatter().format(record))
    assert entry['message'] == "fetched"
    assert entry['url'] == 'https://example.com'
    assert entry['level'] == "INFO"


def test_crawler_logger_attaches_context(caplog):
    log = get_crawler_logger("politecrawl.test", domain="example.com")
    with caplog.at_level(logging.INFO, logger="politecrawl.test"):
        log.info("hello", extra={'depth': 2})
        log.log_url_event(logging.INFO, "https://example.com/a", "skipped")

    assert caplog.records[0].extra_fields == {'domain': 'example.com', 'depth': 2}
    assert caplog.records[1].extra_fields == {'domain': 'example.com', 'url': 'https://example.com/a',
                                              'event_type': 'url_event'}


def test_setup_logging_writes_files(tmp_path):
    root = logging.getLogger()
    saved_handlers = list(root.handlers)
    saved_level = root.level
    try:
        setup_logging(LoggingConfig(file=str(tmp_path / "logs" / "crawler.log")))
        logging.getLogger("politecrawl.test").error("something failed")
        for handler in root.handlers:
            handler.flush()
        assert (tmp_path / "logs" / "errors.log").read_text().count("something failed") == 1
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)
