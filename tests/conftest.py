"""Shared fixtures: in-process store, controllable clock and a scripted fetcher."""

import threading
from typing import Dict, List, Optional

import pytest

from politecrawl.crawler.fetcher import FetchResult
from politecrawl.storage.backend import MemoryBackend


class FakeClock:
    """Manually advanced clock; sleep() advances time instead of blocking."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self._lock = threading.Lock()
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def advance(self, seconds: float):
        with self._lock:
            self.now += seconds

    def sleep(self, seconds: float):
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


class ScriptedFetcher:
    """Returns canned responses by URL. Unknown URLs answer 404."""

    def __init__(self):
        self.responses: Dict[str, FetchResult] = {}
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def add(self, url: str, body: str = "", status: int = 200,
            content_type: Optional[str] = "text/html", fetch_time: float = 0.1,
            error: Optional[str] = None):
        self.responses[url] = FetchResult(
            url=url,
            status_code=status,
            content=body,
            content_type=content_type,
            error=error,
            fetch_time=fetch_time,
        )

    def fail(self, url: str, error: str = "Client error: connection refused"):
        self.add(url, body=None, status=0, content_type=None, error=error)

    def fetch(self, url: str) -> FetchResult:
        with self._lock:
            self.calls.append(url)
        result = self.responses.get(url)
        if result is None:
            return FetchResult(url=url, status_code=404, content="",
                               content_type="text/html", fetch_time=0.01)
        return result

    def close(self):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return MemoryBackend(clock=clock)


@pytest.fixture
def fetcher():
    return ScriptedFetcher()
