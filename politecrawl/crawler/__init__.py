"""
Web crawler core components.
"""

from .worker_pool import WorkerPool, WorkItem, WorkerState, PoolError
from .url_frontier import URLFrontier, URLTask
from .rate_limiter import RateLimiter, DomainRateState
from .robots import RobotsCache, RobotsRuleSet, parse_robots_txt
from .fetcher import WebFetcher, FetchResult
from .parser import ContentParser, ParsedContent
from .coordinator import CrawlCoordinator, CrawlSettings, CrawlOutcome, CrawlWorkItem

__all__ = [
    'WorkerPool', 'WorkItem', 'WorkerState', 'PoolError',
    'URLFrontier', 'URLTask',
    'RateLimiter', 'DomainRateState',
    'RobotsCache', 'RobotsRuleSet', 'parse_robots_txt',
    'WebFetcher', 'FetchResult',
    'ContentParser', 'ParsedContent',
    'CrawlCoordinator', 'CrawlSettings', 'CrawlOutcome', 'CrawlWorkItem'
]
