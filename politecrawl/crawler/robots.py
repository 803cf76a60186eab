"""
robots.txt rule cache.

Rules are fetched once per domain, normalized, sorted most-specific-first and
cached both in-process and in the backing store until their TTL expires.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..storage.backend import StorageBackend
from .fetcher import FetchResult
from .rate_limiter import RateLimiter


ROBOTS_TTL = 86400  # 24 hours


def normalize_path(path: str) -> str:
    """Strip query string, fragment and trailing slashes from a path."""
    for marker in ('?', '#'):
        index = path.find(marker)
        if index != -1:
            path = path[:index]
    return path.rstrip('/')


def rule_sort_key(rule: str) -> Tuple[int, str]:
    """Longer rules first, then lexicographic."""
    return -len(rule), rule


def path_matches_rule(path: str, rule: str) -> bool:
    """
    Match a normalized path against a rule.

    prefix*  -> path starts with prefix
    *suffix  -> path ends with suffix
    a*b      -> path starts with a and the remainder contains b
    no '*'   -> exact equality
    """
    if '*' not in rule:
        return path == rule

    if rule.endswith('*'):
        return path.startswith(rule[:rule.index('*')])

    if rule.startswith('*'):
        return path.endswith(rule[1:])

    head, _, rest = rule.partition('*')
    # Only the first non-empty segment after the wildcard is significant
    tail = next(part for part in rest.split('*') if part)
    if not path.startswith(head):
        return False
    return tail in path[len(head):]


@dataclass(frozen=True)
class RobotsRuleSet:
    """Immutable, sorted rules for one domain."""
    domain: str
    allow: Tuple[str, ...] = ()
    disallow: Tuple[str, ...] = ()
    crawl_delay: Optional[float] = None
    fetched_at: float = 0.0
    expires_at: float = 0.0

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def longest_match(self, rules: Tuple[str, ...], path: str) -> Optional[str]:
        # Sorted longest-first, so the first hit is the most specific
        for rule in rules:
            if path_matches_rule(path, rule):
                return rule
        return None

    def is_allowed(self, path: str) -> bool:
        """
        The longest matching rule across both lists wins; an allow and a
        disallow rule of equal length resolve to disallow. No match allows.
        """
        normalized = normalize_path(path)
        allow_rule = self.longest_match(self.allow, normalized)
        disallow_rule = self.longest_match(self.disallow, normalized)

        if disallow_rule is None:
            return True
        if allow_rule is None:
            return False
        return len(allow_rule) > len(disallow_rule)


@dataclass
class ParsedRobots:
    """Result of parsing a robots.txt body."""
    allow: List[str]
    disallow: List[str]
    crawl_delay: Optional[float] = None


def _agent_token(user_agent: str) -> str:
    """Product token of a User-Agent string, e.g. 'politecrawl' for 'politecrawl/1.0 (...)'."""
    return user_agent.split('/', 1)[0].split()[0].lower() if user_agent.strip() else ''


def parse_robots_txt(content: str, user_agent: str = '*') -> ParsedRobots:
    """
    Parse Allow/Disallow/Crawl-delay lines that apply to user_agent.

    Groups for '*' or the crawler's own token apply, as do rules that appear
    before any User-agent line. Paths are normalized and both lists are sorted
    most-specific-first.
    """
    token = _agent_token(user_agent)
    allow: List[str] = []
    disallow: List[str] = []
    crawl_delay: Optional[float] = None

    applies = True
    in_agent_block = False

    for raw_line in content.splitlines():
        line = raw_line.split('#', 1)[0].strip()
        if ':' not in line:
            continue
        directive, _, value = line.partition(':')
        directive = directive.strip().lower()
        value = value.strip()

        if directive == 'user-agent':
            agent = value.lower()
            matched = agent == '*' or bool(token and token in agent)
            # Consecutive User-agent lines share one group
            applies = (applies and in_agent_block) or matched
            in_agent_block = True
            continue

        in_agent_block = False
        if not applies:
            continue

        if directive in ('allow', 'disallow'):
            if not value:
                continue
            normalized = normalize_path(value)
            (allow if directive == 'allow' else disallow).append(normalized)
        elif directive == 'crawl-delay':
            try:
                delay = float(value)
            except ValueError:
                continue
            if delay >= 0:
                crawl_delay = delay if crawl_delay is None else max(crawl_delay, delay)

    allow = sorted(set(allow), key=rule_sort_key)
    disallow = sorted(set(disallow), key=rule_sort_key)
    return ParsedRobots(allow=allow, disallow=disallow, crawl_delay=crawl_delay)


class RobotsCache:
    """
    Fetches, parses and caches robots.txt rules per domain.

    A per-domain lock makes sure only one worker fetches a given domain;
    fetch failures fail open and cache nothing.
    """

    def __init__(self, backend: StorageBackend, fetch: Callable[[str], FetchResult],
                 rate_limiter: Optional[RateLimiter] = None, user_agent: str = '*',
                 ttl: int = ROBOTS_TTL, scheme: str = 'https',
                 clock: Callable[[], float] = time.time):
        self.backend = backend
        self.fetch = fetch
        self.rate_limiter = rate_limiter
        self.user_agent = user_agent
        self.ttl = ttl
        self.scheme = scheme
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self._rules: Dict[str, RobotsRuleSet] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _domain_lock(self, domain: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(domain)
            if lock is None:
                lock = threading.Lock()
                self._locks[domain] = lock
            return lock

    def _cached(self, domain: str) -> Optional[RobotsRuleSet]:
        with self._registry_lock:
            rules = self._rules.get(domain)
        if rules is not None and not rules.is_expired(self.clock()):
            return rules
        return None

    def _install(self, rules: RobotsRuleSet):
        with self._registry_lock:
            self._rules[rules.domain] = rules
        if self.rate_limiter and rules.crawl_delay is not None:
            self.rate_limiter.set_crawl_delay(rules.domain, rules.crawl_delay)

    def get_rules(self, domain: str) -> Optional[RobotsRuleSet]:
        """Return the unexpired in-process rule set for a domain, if any."""
        return self._cached(domain)

    def ensure_fetched(self, domain: str) -> bool:
        """
        Make sure an unexpired rule set exists for domain.
        Returns False if robots.txt could not be fetched (no rules cached).
        """
        if self._cached(domain) is not None:
            return True

        with self._domain_lock(domain):
            if self._cached(domain) is not None:
                return True

            stored = self.backend.load_robots(domain)
            if stored is not None:
                self._install(self._from_store(domain, stored))
                self.logger.debug(f"Loaded robots.txt rules for {domain} from store")
                return True

            return self._fetch_and_store(domain)

    def _from_store(self, domain: str, stored: Dict) -> RobotsRuleSet:
        fetched_at = stored.get('fetched_at') or self.clock()
        return RobotsRuleSet(
            domain=domain,
            allow=tuple(stored['allow']),
            disallow=tuple(stored['disallow']),
            crawl_delay=stored.get('crawl_delay'),
            fetched_at=fetched_at,
            expires_at=fetched_at + self.ttl,
        )

    def _fetch_and_store(self, domain: str) -> bool:
        robots_url = f"{self.scheme}://{domain}/robots.txt"
        result = self.fetch(robots_url)

        if result.error or result.status_code == 0 or result.status_code >= 500:
            self.logger.warning(f"Could not fetch {robots_url} "
                                f"({result.error or result.status_code}); allowing all paths")
            return False

        if result.status_code >= 400:
            # No robots.txt published: nothing is restricted
            parsed = ParsedRobots(allow=[], disallow=[])
        else:
            parsed = parse_robots_txt(result.content or '', self.user_agent)

        now = self.clock()
        rules = RobotsRuleSet(
            domain=domain,
            allow=tuple(parsed.allow),
            disallow=tuple(parsed.disallow),
            crawl_delay=parsed.crawl_delay,
            fetched_at=now,
            expires_at=now + self.ttl,
        )
        self.backend.store_robots(domain, parsed.allow, parsed.disallow,
                                  parsed.crawl_delay, now, self.ttl)
        self._install(rules)
        self.logger.info(f"Cached robots.txt for {domain}: {len(rules.allow)} allow, "
                         f"{len(rules.disallow)} disallow rules")
        return True

    def is_allowed(self, domain: str, path: str) -> bool:
        """Check a path against the cached rules. Unknown domains are allowed."""
        rules = self._cached(domain)
        if rules is None:
            stored = self.backend.load_robots(domain)
            if stored is None:
                return True
            rules = self._from_store(domain, stored)
            self._install(rules)
        return rules.is_allowed(path)
