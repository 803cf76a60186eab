#!/usr/bin/env python3
"""
Main entry point for the polite web crawler.
"""

import argparse
import logging
import signal
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from politecrawl import __version__
from politecrawl.crawler.coordinator import CrawlCoordinator
from politecrawl.crawler.fetcher import WebFetcher
from politecrawl.storage.backend import StorageError, create_backend
from politecrawl.utils.config import Config, load_config, validate_config
from politecrawl.utils.logger import log_system_info, setup_logging
from politecrawl.utils.monitoring import CrawlerMonitor, MetricsCollector, StatsReporter


class CrawlerApp:
    """Main application class for the web crawler."""

    def __init__(self):
        self.coordinator: Optional[CrawlCoordinator] = None
        self.logger = logging.getLogger(__name__)

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            if self.coordinator:
                self.coordinator.stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def run(self, config: Config, max_pages: Optional[int] = None,
            max_duration: Optional[int] = None, dry_run: bool = False) -> int:
        """Run the web crawler."""
        setup_logging(config.logging)
        log_system_info()

        self.logger.info("=== WEB CRAWLER STARTING ===")
        self.logger.info(f"Seed URLs: {config.crawler.seed_urls}")
        self.logger.info(f"Max depth: {config.crawler.max_depth}")
        self.logger.info(f"Workers: {config.pool.workers}")
        self.logger.info(f"Storage backend: {config.storage.backend}")

        backend = None
        reporter = None
        try:
            backend = create_backend(config.storage, config.redis,
                                     pool_size=config.pool.workers + 2)

            if dry_run:
                self.logger.info("DRY RUN MODE: No actual crawling will be performed")
                self._dry_run(config)
                return 0

            monitor = CrawlerMonitor(MetricsCollector(
                enable_prometheus=config.monitoring.metrics_enabled,
                prometheus_port=config.monitoring.prometheus_port,
            ))
            monitor.metrics.start_server()

            self.coordinator = CrawlCoordinator.from_config(config, backend, monitor=monitor)
            self.setup_signal_handlers()

            for url in config.crawler.seed_urls:
                self.coordinator.submit_seed(url)

            reporter = StatsReporter(monitor, config.monitoring.stats_interval)
            reporter.start()

            self.coordinator.run(max_pages=max_pages, max_duration=max_duration)
            self.coordinator.close()
            self._log_final_stats()

        except (StorageError, ValueError, OSError) as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            if reporter:
                reporter.stop()
            if self.coordinator:
                self.coordinator.close()
            if backend:
                backend.close()
            self.logger.info("=== WEB CRAWLER FINISHED ===")

        return 0

    def _dry_run(self, config: Config):
        """Check the store connection and fetch the first seed once."""
        self.logger.info("✓ Storage connection successful")

        if not config.crawler.seed_urls:
            self.logger.info("No seed URLs configured, skipping test fetch")
            return

        with WebFetcher(user_agent=config.crawler.user_agent,
                        request_timeout=config.crawler.request_timeout) as fetcher:
            test_url = config.crawler.seed_urls[0]
            result = fetcher.fetch(test_url)
            if result.error:
                self.logger.warning(f"✗ Test fetch failed: {result.error}")
            else:
                self.logger.info(f"✓ Test fetch successful: {result.status_code} "
                                 f"({result.size} bytes in {result.fetch_time:.2f}s)")

        self.logger.info("Dry run completed")

    def _log_final_stats(self):
        stats = self.coordinator.get_stats()
        self.logger.info("=== CRAWL COMPLETED ===")
        self.logger.info(f"Pages crawled: {stats['crawled']}")
        self.logger.info(f"Skipped (visited/depth): {stats['skipped_visited']}/{stats['skipped_depth']}")
        self.logger.info(f"Disallowed by robots.txt: {stats['disallowed']}")
        self.logger.info(f"Fetch errors: {stats['fetch_failed']}")
        self.logger.info(f"Storage errors: {stats['storage_failed']}")
        self.logger.info(f"Total time: {stats['elapsed_seconds']:.2f} seconds")
        self.logger.info(f"Data downloaded: {stats['bytes_downloaded'] / 1024 / 1024:.1f} MB")
        self.logger.info(f"URLs remaining in queue: {stats['total_queued']}")
        self.logger.info(f"URLs visited: {stats['total_visited']}")


def build_config(args: argparse.Namespace) -> Config:
    """Load the config file and apply command-line overrides."""
    config_path = Path(args.config)
    if config_path.exists():
        config = load_config(str(config_path))
    elif args.config != 'config.yaml':
        raise FileNotFoundError(f"Configuration file not found: {config_path}")
    else:
        config = Config()

    crawler_changes = {}
    if args.urls:
        crawler_changes['seed_urls'] = list(args.urls)
    if args.max_depth is not None:
        crawler_changes['max_depth'] = args.max_depth
    if args.max_pages is not None:
        crawler_changes['max_pages'] = args.max_pages
    if args.force:
        crawler_changes['force_rescrape'] = True
    if args.no_robots:
        crawler_changes['respect_robots_txt'] = False
    if crawler_changes:
        config.crawler = replace(config.crawler, **crawler_changes)

    if args.workers is not None:
        config.pool = replace(config.pool, workers=args.workers)
    if args.memory:
        config.storage = replace(config.storage, backend='memory')

    validate_config(config)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Polite concurrent web crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py https://example.com          # Crawl a site with config.yaml defaults
  python main.py --config my_config.yaml      # Run with custom config
  python main.py --max-pages 1000             # Limit to 1000 pages
  python main.py --max-duration 3600          # Run for 1 hour max
  python main.py --memory --no-robots URL     # In-process store, ignore robots.txt
  python main.py --dry-run                    # Test configuration only
        """
    )

    parser.add_argument('urls', nargs='*', metavar='URL',
                        help='Seed URLs (override crawler.seed_urls)')
    parser.add_argument('--config', default='config.yaml',
                        help='Path to configuration file (default: config.yaml)')
    parser.add_argument('--max-pages', type=int,
                        help='Maximum number of pages to crawl')
    parser.add_argument('--max-depth', type=int,
                        help='Maximum link depth from the seeds')
    parser.add_argument('--max-duration', type=int,
                        help='Maximum crawl duration in seconds')
    parser.add_argument('--workers', type=int,
                        help='Number of worker threads')
    parser.add_argument('--force', action='store_true',
                        help='Re-crawl URLs that were already visited')
    parser.add_argument('--no-robots', action='store_true',
                        help='Do not fetch or honour robots.txt')
    parser.add_argument('--memory', action='store_true',
                        help='Use the in-process store instead of Redis')
    parser.add_argument('--dry-run', action='store_true',
                        help='Test configuration without actually crawling')
    parser.add_argument('--version', action='version',
                        version=f'politecrawl {__version__}')

    args = parser.parse_args(argv)

    try:
        config = build_config(args)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    app = CrawlerApp()
    return app.run(config, max_pages=args.max_pages,
                   max_duration=args.max_duration, dry_run=args.dry_run)


if __name__ == '__main__':
    sys.exit(main())
