"""
Storage layer for the crawler.
"""

from .backend import StorageBackend, RedisBackend, MemoryBackend, StorageError, create_backend
from .content_cache import ContentCache, CacheEntry

__all__ = [
    'StorageBackend', 'RedisBackend', 'MemoryBackend', 'StorageError', 'create_backend',
    'ContentCache', 'CacheEntry'
]
