"""
Per-domain adaptive rate limiter.

Each domain keeps its own delay, grown when the server is slow or erroring
and decayed back towards the domain minimum when it responds quickly.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


MIN_DELAY = 1.0   # Global floor, seconds
MAX_DELAY = 60.0  # Global ceiling, seconds
ERROR_PENALTY = 2.0
MAX_CONSECUTIVE_ERRORS = 3
GROWTH_FACTOR = 1.5
DECAY_FACTOR = 0.8

# Status reported to update() when the transport failed before any response
FETCH_ERROR_STATUS = 599


@dataclass
class DomainRateState:
    """Rate state for one domain. current_delay is only mutated under lock."""
    domain: str
    min_delay: float
    current_delay: float
    last_request_time: Optional[float] = None
    consecutive_errors: int = 0
    max_errors: int = MAX_CONSECUTIVE_ERRORS
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    wait_lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def copy(self) -> 'DomainRateState':
        return DomainRateState(
            domain=self.domain,
            min_delay=self.min_delay,
            current_delay=self.current_delay,
            last_request_time=self.last_request_time,
            consecutive_errors=self.consecutive_errors,
            max_errors=self.max_errors,
        )


class RateLimiter:
    """
    Thread-safe per-domain rate limiter.

    The domain registry lock is held only to look up or create a state;
    waiting and updating use the domain's own locks, so unrelated domains
    never block each other.
    """

    def __init__(self, min_delay: float = MIN_DELAY, max_delay: float = MAX_DELAY,
                 error_penalty: float = ERROR_PENALTY,
                 max_errors: int = MAX_CONSECUTIVE_ERRORS,
                 growth_factor: float = GROWTH_FACTOR, decay_factor: float = DECAY_FACTOR,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep) -> None:
        if max_delay < min_delay:
            raise ValueError("max_delay must not be below min_delay")
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.error_penalty = error_penalty
        self.max_errors = max_errors
        self.growth_factor = growth_factor
        self.decay_factor = decay_factor
        self._clock = clock
        self._sleep = sleep
        self._domains: Dict[str, DomainRateState] = {}
        self._registry_lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config) -> 'RateLimiter':
        """Build from a PolitenessConfig."""
        return cls(
            min_delay=config.min_delay,
            max_delay=config.max_delay,
            error_penalty=config.error_penalty,
            max_errors=config.max_errors,
            growth_factor=config.growth_factor,
            decay_factor=config.decay_factor,
        )

    def _get_state(self, domain: str) -> DomainRateState:
        with self._registry_lock:
            state = self._domains.get(domain)
            if state is None:
                state = DomainRateState(
                    domain=domain,
                    min_delay=self.min_delay,
                    current_delay=self.min_delay,
                    max_errors=self.max_errors,
                )
                self._domains[domain] = state
            return state

    def wait(self, domain: str) -> float:
        """
        Block until current_delay has elapsed since the domain's last request,
        then record this request. Returns the time slept in seconds.
        """
        state = self._get_state(domain)
        slept = 0.0
        with state.wait_lock:
            while True:
                with state.lock:
                    now = self._clock()
                    if state.last_request_time is None:
                        remaining = 0.0
                    else:
                        remaining = state.current_delay - (now - state.last_request_time)
                    if remaining <= 0:
                        state.last_request_time = now
                        break
                # The delay may change while sleeping, so re-check afterwards
                self._sleep(remaining)
                slept += remaining

        if slept:
            self.logger.debug(f"Waited {slept:.2f}s for {domain}")
        return slept

    def update(self, domain: str, response_time: float, status_code: int):
        """Adjust the domain delay after a fetch completes."""
        state = self._get_state(domain)
        with state.lock:
            previous = state.current_delay
            if status_code >= 400:
                state.consecutive_errors += 1
                if state.consecutive_errors >= state.max_errors:
                    state.current_delay = min(state.current_delay * self.error_penalty,
                                              self.max_delay)
                    state.consecutive_errors = 0
            else:
                state.consecutive_errors = 0
                if response_time > state.current_delay:
                    # Server is slow
                    state.current_delay = min(state.current_delay * self.growth_factor,
                                              self.max_delay)
                elif response_time < state.current_delay / 2:
                    # Server is fast
                    state.current_delay = max(state.current_delay * self.decay_factor,
                                              state.min_delay)
            current = state.current_delay

        if current != previous:
            self.logger.info(f"Delay for {domain} changed {previous:.2f}s -> {current:.2f}s "
                             f"(status {status_code}, response {response_time:.2f}s)")

    def set_crawl_delay(self, domain: str, delay: float):
        """
        Apply a robots.txt Crawl-delay: raises min_delay (and current_delay if
        lower). Never drops below the global floor or rises above the ceiling.
        """
        state = self._get_state(domain)
        with state.lock:
            state.min_delay = min(max(delay, self.min_delay), self.max_delay)
            state.current_delay = max(state.current_delay, state.min_delay)
            current = state.current_delay
        self.logger.info(f"Crawl-delay for {domain} set to {delay}s (current delay {current:.2f}s)")

    def snapshot(self, domain: str) -> DomainRateState:
        """Return a copy of a domain's state, creating it if unseen."""
        state = self._get_state(domain)
        with state.lock:
            return state.copy()

    def domains(self) -> List[str]:
        with self._registry_lock:
            return list(self._domains)
