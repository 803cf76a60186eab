"""
Web page fetcher used by crawl workers.
Each worker thread gets its own requests session.
"""

import logging
import threading
import time
from typing import Dict, Optional
from dataclasses import dataclass

import requests
from requests.adapters import HTTPAdapter


MAX_CONTENT_SIZE = 10 * 1024 * 1024  # 10MB


def declared_charset(content_type: str) -> Optional[str]:
    """Charset parameter of a Content-Type header, or None."""
    for param in content_type.split(';')[1:]:
        key, _, value = param.partition('=')
        if key.strip().lower() == 'charset' and value.strip():
            return value.strip().strip('"\'').lower()
    return None


@dataclass
class FetchResult:
    """Result of a fetch operation."""
    url: str
    status_code: int
    content: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    error: Optional[str] = None
    fetch_time: float = 0.0
    content_type: Optional[str] = None
    encoding: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and 0 < self.status_code < 400

    @property
    def size(self) -> int:
        return len(self.content.encode('utf-8')) if self.content else 0


class WebFetcher:
    """
    Fetches web pages with size limits and error handling.
    Failures are returned as FetchResult(status_code=0, error=...), never raised.
    """

    def __init__(self, user_agent: str, request_timeout: int = 30,
                 max_content_size: int = MAX_CONTENT_SIZE, pool_size: int = 10):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_content_size = max_content_size
        self.pool_size = pool_size

        self.logger = logging.getLogger(__name__)
        self._local = threading.local()
        self._sessions = []
        self._sessions_lock = threading.Lock()

        # Statistics
        self._stats_lock = threading.Lock()
        self.stats = {
            'total_requests': 0,
            'successful_requests': 0,
            'failed_requests': 0,
            'total_bytes_downloaded': 0
        }

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    def _session(self) -> requests.Session:
        session = getattr(self._local, 'session', None)
        if session is None:
            session = requests.Session()
            session.headers.update({'User-Agent': self.user_agent})
            adapter = HTTPAdapter(pool_connections=self.pool_size, pool_maxsize=self.pool_size)
            session.mount('http://', adapter)
            session.mount('https://', adapter)
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _count(self, key: str, amount: int = 1):
        with self._stats_lock:
            self.stats[key] += amount

    def close(self):
        """Close every session opened by worker threads."""
        with self._sessions_lock:
            for session in self._sessions:
                session.close()
            self._sessions.clear()
        self.logger.info("WebFetcher sessions closed")

    def fetch(self, url: str) -> FetchResult:
        """
        Fetch a single URL.

        Args:
            url: The URL to fetch

        Returns:
            FetchResult object containing the response data or error information
        """
        start_time = time.time()
        self._count('total_requests')

        try:
            with self._session().get(url, timeout=self.request_timeout, stream=True) as response:
                fetch_time = time.time() - start_time
                headers = dict(response.headers)
                content_type = response.headers.get('content-type', '').lower()

                if not self._is_text_content(content_type):
                    self.logger.debug(f"Skipping non-text content: {url} ({content_type})")
                    return FetchResult(
                        url=url,
                        status_code=response.status_code,
                        headers=headers,
                        content_type=content_type,
                        fetch_time=fetch_time
                    )

                content = self._read_content_safely(response)
                fetch_time = time.time() - start_time

                if content is not None:
                    self._count('total_bytes_downloaded', len(content))
                    self._count('successful_requests')

                self.logger.debug(f"Fetched {url}: {response.status_code} "
                                  f"({len(content) if content else 0} bytes)")
                return FetchResult(
                    url=url,
                    status_code=response.status_code,
                    content=content,
                    headers=headers,
                    content_type=content_type,
                    encoding=declared_charset(response.headers.get('content-type', '')),
                    fetch_time=fetch_time
                )

        except requests.Timeout:
            error_msg = "Request timeout"
            self.logger.warning(f"Timeout fetching {url}")

        except requests.RequestException as e:
            error_msg = f"Client error: {e}"
            self.logger.warning(f"Client error fetching {url}: {e}")

        self._count('failed_requests')
        return FetchResult(
            url=url,
            status_code=0,
            error=error_msg,
            fetch_time=time.time() - start_time
        )

    def _is_text_content(self, content_type: str) -> bool:
        """Check if content type is text-based."""
        if not content_type:
            return True

        text_types = [
            'text/html',
            'text/plain',
            'text/xml',
            'application/xml',
            'application/xhtml+xml',
            'application/json',
            'application/ld+json'
        ]

        return any(text_type in content_type for text_type in text_types)

    def _read_content_safely(self, response: requests.Response) -> Optional[str]:
        """Read the body up to max_content_size. Returns None if it is larger."""
        content_length = response.headers.get('content-length')
        if content_length and content_length.isdigit() and int(content_length) > self.max_content_size:
            self.logger.warning(f"Content too large ({content_length} bytes): {response.url}")
            return None

        chunks = []
        size = 0
        for chunk in response.iter_content(chunk_size=8192):
            size += len(chunk)
            if size > self.max_content_size:
                self.logger.warning(f"Content exceeded size limit during reading: {response.url}")
                return None
            chunks.append(chunk)
        content_bytes = b''.join(chunks)

        # requests reports ISO-8859-1 for text/* without a charset
        encoding = declared_charset(response.headers.get('content-type', '')) or 'utf-8'
        try:
            return content_bytes.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            for fallback_encoding in ('utf-8', 'cp1252'):
                try:
                    return content_bytes.decode(fallback_encoding)
                except UnicodeDecodeError:
                    continue
            return content_bytes.decode('latin-1')

    def get_stats(self) -> Dict[str, int]:
        """Get fetcher statistics."""
        with self._stats_lock:
            return self.stats.copy()
