"""
URL Frontier: the pending priority queue plus the visited set.
Lower priority values are crawled first; ties are served in insertion order.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

from ..storage.backend import StorageBackend


@dataclass
class URLTask:
    """Represents a URL crawling task."""
    url: str
    priority: int = 0
    depth: int = 0
    parent_url: Optional[str] = None
    discovered_time: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.url or not self.url.strip():
            raise ValueError("URLTask url must be non-empty")
        if self.depth < 0:
            raise ValueError("URLTask depth must be non-negative")

    @property
    def domain(self) -> str:
        return get_domain(self.url)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'url': self.url,
            'priority': self.priority,
            'depth': self.depth,
            'parent_url': self.parent_url,
            'discovered_time': self.discovered_time,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'URLTask':
        """Create URLTask from dictionary."""
        return cls(
            url=data['url'],
            priority=data.get('priority', 0),
            depth=data.get('depth', 0),
            parent_url=data.get('parent_url'),
            discovered_time=data.get('discovered_time', time.time()),
        )


def get_domain(url: str) -> str:
    """Extract the lower-cased host[:port] from a URL."""
    return urlparse(url).netloc.lower()


class URLFrontier:
    """
    Single source of truth for what to crawl next and what was crawled.

    Check-and-enqueue, dequeue and visited marking are delegated to the
    backend, which performs each as one atomic operation.
    """

    def __init__(self, backend: StorageBackend, force_rescrape: bool = False):
        self.backend = backend
        self.force_rescrape = force_rescrape
        self.logger = logging.getLogger(__name__)

    def enqueue(self, url: str, priority: int = 0, depth: int = 0,
                parent_url: Optional[str] = None, force: Optional[bool] = None) -> bool:
        """
        Add a URL to the frontier.
        Returns True if it was queued, False if already visited or already pending.

        force overrides the frontier-wide force_rescrape setting for this call.
        """
        return self.enqueue_task(URLTask(url=url, priority=priority, depth=depth,
                                         parent_url=parent_url), force=force)

    def enqueue_task(self, task: URLTask, force: Optional[bool] = None) -> bool:
        if force is None:
            force = self.force_rescrape
        added = self.backend.enqueue_if_unvisited(
            task.url, task.priority, json.dumps(task.to_dict()), force=force,
        )
        if added:
            self.logger.debug(f"Added URL to frontier: {task.url} (priority {task.priority})")
        else:
            self.logger.debug(f"Frontier skipped known URL: {task.url}")
        return added

    def enqueue_many(self, tasks: List[URLTask]) -> int:
        """Add multiple tasks. Returns the count actually queued."""
        return sum(1 for task in tasks if self.enqueue_task(task))

    def dequeue(self) -> Optional[URLTask]:
        """Remove and return the most urgent task, or None when nothing is pending."""
        item = self.backend.pop_next()
        if item is None:
            return None

        url, payload = item
        if not payload:
            return URLTask(url=url)
        try:
            return URLTask.from_dict(json.loads(payload))
        except (ValueError, KeyError) as e:
            self.logger.warning(f"Corrupt task payload for {url}, using defaults: {e}")
            return URLTask(url=url)

    def mark_visited_bulk(self, urls: List[str]):
        """Add a batch of URLs to the visited set as one all-or-nothing operation."""
        self.backend.mark_visited(list(urls))
        self.logger.debug(f"Marked {len(urls)} URL(s) as visited")

    def mark_visited(self, url: str):
        self.mark_visited_bulk([url])

    def is_visited(self, url: str) -> bool:
        return self.backend.is_visited(url)

    def is_empty(self) -> bool:
        return self.backend.queue_size() == 0

    def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        return {
            'total_queued': self.backend.queue_size(),
            'total_visited': self.backend.visited_count(),
        }
