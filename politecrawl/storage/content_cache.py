"""
Cache of fetched page content, stored under cache:{url} with a TTL.
"""

import logging
import time
from dataclasses import dataclass
from typing import Dict, Optional

from .backend import StorageBackend


CACHE_TTL = 86400  # 24 hours
MAX_CACHED_BODY = 1_000_000  # 1MB


@dataclass
class CacheEntry:
    """A cached fetch result."""
    url: str
    content: str = ""
    content_type: str = ""
    status_code: int = 0
    size: int = 0
    timestamp: float = 0.0
    title: str = ""
    description: str = ""
    keywords: str = ""

    def to_dict(self) -> Dict[str, str]:
        """Flatten to the string hash stored in the backend."""
        return {
            'content': self.content,
            'type': self.content_type,
            'status': str(self.status_code),
            'size': str(self.size),
            'timestamp': repr(self.timestamp),
            'title': self.title,
            'description': self.description,
            'keywords': self.keywords,
        }

    @classmethod
    def from_dict(cls, url: str, data: Dict[str, str]) -> 'CacheEntry':
        return cls(
            url=url,
            content=data.get('content', ''),
            content_type=data.get('type', ''),
            status_code=int(data.get('status') or 0),
            size=int(data.get('size') or 0),
            timestamp=float(data.get('timestamp') or 0.0),
            title=data.get('title', ''),
            description=data.get('description', ''),
            keywords=data.get('keywords', ''),
        )


class ContentCache:
    """Reads and writes CacheEntry records through a StorageBackend."""

    def __init__(self, backend: StorageBackend, ttl: int = CACHE_TTL,
                 max_body_size: int = MAX_CACHED_BODY):
        self.backend = backend
        self.ttl = ttl
        self.max_body_size = max_body_size
        self.logger = logging.getLogger(__name__)

    def store(self, url: str, content: Optional[str], content_type: Optional[str],
              status_code: int, title: Optional[str] = None,
              description: Optional[str] = None, keywords: Optional[str] = None) -> CacheEntry:
        """
        Cache a fetch result. Bodies larger than max_body_size are recorded
        without their content. Raises StorageError on backend failure.
        """
        body = content or ""
        size = len(body.encode('utf-8'))
        if size > self.max_body_size:
            self.logger.debug(f"Body of {url} too large to cache ({size} bytes)")
            body = ""

        entry = CacheEntry(
            url=url,
            content=body,
            content_type=content_type or "",
            status_code=status_code,
            size=size,
            timestamp=time.time(),
            title=title or "",
            description=description or "",
            keywords=keywords or "",
        )
        self.backend.store_cache_entry(url, entry.to_dict(), self.ttl)
        return entry

    def get(self, url: str) -> Optional[CacheEntry]:
        data = self.backend.load_cache_entry(url)
        if not data:
            return None
        try:
            return CacheEntry.from_dict(url, data)
        except ValueError as e:
            self.logger.warning(f"Corrupt cache entry for {url}: {e}")
            return None

    def content_type(self, url: str) -> Optional[str]:
        """Cached content type for url, if any."""
        entry = self.get(url)
        return entry.content_type if entry and entry.content_type else None

    def has(self, url: str) -> bool:
        return self.backend.load_cache_entry(url) is not None
