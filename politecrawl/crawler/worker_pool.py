"""
Bounded worker pool that executes crawl work items on OS threads.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from enum import Enum
from typing import Deque, Dict, List, Optional


class PoolError(Exception):
    """Raised when the pool cannot be started."""
    pass


class WorkerState(Enum):
    """Lifecycle of a single worker thread."""
    IDLE = "idle"
    RUNNING = "running"
    EXITED = "exited"


class WorkItem(ABC):
    """A unit of work executed exactly once by one worker."""

    @abstractmethod
    def run(self):
        """Execute the work. Implementations handle their own failures."""

    def describe(self) -> str:
        return self.__class__.__name__


class WorkerPool:
    """
    Fixed set of worker threads pulling from one bounded FIFO queue.

    submit() blocks while the queue is full. After shutdown() no new work is
    accepted; workers finish their current item and exit. Items still queued
    are not run and are handed back to the caller.
    """

    def __init__(self, worker_count: int, queue_capacity: int, name: str = "crawler"):
        if worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if queue_capacity < 1:
            raise ValueError("queue_capacity must be at least 1")

        self.worker_count = worker_count
        self.queue_capacity = queue_capacity
        self.name = name
        self.logger = logging.getLogger(__name__)

        self._queue: Deque[WorkItem] = deque()
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._not_full = threading.Condition(self._lock)
        self._all_done = threading.Condition(self._lock)
        self._active = 0
        self._shutdown = False
        self._states: Dict[str, WorkerState] = {}
        self._threads: List[threading.Thread] = []

        for i in range(worker_count):
            thread_name = f"{name}-worker-{i}"
            thread = threading.Thread(target=self._worker, args=(thread_name,),
                                      name=thread_name, daemon=True)
            self._states[thread_name] = WorkerState.IDLE
            try:
                thread.start()
            except RuntimeError as e:
                self.shutdown(wait=True)
                raise PoolError(f"Failed to start worker {thread_name}: {e}") from e
            self._threads.append(thread)

        self.logger.info(f"Worker pool '{name}' started with {worker_count} workers, "
                         f"queue capacity {queue_capacity}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown(wait=True)

    def _worker(self, thread_name: str):
        while True:
            with self._lock:
                while not self._queue and not self._shutdown:
                    self._not_empty.wait()

                if self._shutdown:
                    self._states[thread_name] = WorkerState.EXITED
                    self._all_done.notify_all()
                    return

                item = self._queue.popleft()
                self._active += 1
                self._states[thread_name] = WorkerState.RUNNING
                self._not_full.notify()

            try:
                item.run()
            except Exception:
                self.logger.exception(f"{thread_name}: work item {item.describe()} raised")
            finally:
                with self._lock:
                    self._active -= 1
                    self._states[thread_name] = WorkerState.IDLE
                    if not self._queue and self._active == 0:
                        self._all_done.notify_all()

    def submit(self, item: WorkItem, timeout: Optional[float] = None) -> bool:
        """
        Queue a work item, blocking while the queue is full.

        Returns False if the pool is shutting down or the timeout expired.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            while len(self._queue) >= self.queue_capacity and not self._shutdown:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                self._not_full.wait(remaining)

            if self._shutdown:
                self.logger.debug(f"Rejected {item.describe()}: pool is shutting down")
                return False

            self._queue.append(item)
            self._not_empty.notify()
            return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue is empty and no worker is mid-execution."""
        with self._lock:
            return self._all_done.wait_for(
                lambda: not self._queue and self._active == 0, timeout)

    def queue_depth(self) -> int:
        """Number of queued items. Lock-free snapshot used for backpressure hints."""
        return len(self._queue)

    def active_count(self) -> int:
        with self._lock:
            return self._active

    def is_idle(self) -> bool:
        with self._lock:
            return not self._queue and self._active == 0

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def worker_states(self) -> Dict[str, WorkerState]:
        with self._lock:
            return dict(self._states)

    def shutdown(self, wait: bool = True) -> List[WorkItem]:
        """
        Stop accepting work and wake every blocked worker and submitter.

        Running items finish; queued items are removed and returned so the
        caller can put them back. Idempotent: later calls return an empty list.
        """
        with self._lock:
            first_call = not self._shutdown
            self._shutdown = True
            discarded = list(self._queue)
            self._queue.clear()
            if self._active == 0:
                self._all_done.notify_all()
            self._not_empty.notify_all()
            self._not_full.notify_all()

        if first_call:
            self.logger.info(f"Worker pool '{self.name}' shutting down")

        if wait:
            current = threading.current_thread()
            for thread in self._threads:
                if thread is not current:
                    thread.join()

        if discarded:
            self.logger.warning(f"Worker pool '{self.name}' returned {len(discarded)} pending work items")
        return discarded
