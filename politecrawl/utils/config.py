"""
Configuration management for the crawler.
"""

import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field, fields


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    seed_urls: List[str] = field(default_factory=list)
    max_depth: int = 3
    max_pages: int = 1000
    respect_robots_txt: bool = True
    force_rescrape: bool = False
    user_agent: str = "politecrawl/1.0 (+https://github.com/politecrawl)"
    request_timeout: int = 30
    allowed_domains: List[str] = field(default_factory=list)
    blocked_domains: List[str] = field(default_factory=list)


@dataclass
class PoolConfig:
    """Configuration for the worker pool."""
    workers: int = 8
    queue_capacity: int = 1000


@dataclass
class PolitenessConfig:
    """Configuration for per-domain rate limiting and robots.txt caching."""
    min_delay: float = 1.0
    max_delay: float = 60.0
    error_penalty: float = 2.0
    max_errors: int = 3
    growth_factor: float = 1.5
    decay_factor: float = 0.8
    robots_ttl: int = 86400


@dataclass
class StorageConfig:
    """Configuration for the backing store."""
    backend: str = "redis"
    cache_ttl: int = 86400


@dataclass
class RedisConfig:
    """Configuration for Redis."""
    host: str = "127.0.0.1"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    max_retries: int = 3
    retry_delay: float = 1.0
    socket_timeout: float = 5.0
    pool_timeout: float = 10.0


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str = "INFO"
    file: str = "logs/crawler.log"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    json: bool = False


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int = 8000
    metrics_enabled: bool = False
    stats_interval: int = 60


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig = field(default_factory=CrawlerConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    politeness: PolitenessConfig = field(default_factory=PolitenessConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    redis: RedisConfig = field(default_factory=RedisConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)


_SECTIONS = {
    'crawler': CrawlerConfig,
    'pool': PoolConfig,
    'politeness': PolitenessConfig,
    'storage': StorageConfig,
    'redis': RedisConfig,
    'logging': LoggingConfig,
    'monitoring': MonitoringConfig,
}


def _build_section(name: str, section_cls, data: Optional[Dict[str, Any]]):
    """Build a config section, rejecting keys the dataclass does not define."""
    data = data or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config section '{name}' must be a mapping")

    known = {f.name for f in fields(section_cls)}
    unknown = set(data) - known
    if unknown:
        raise ValueError(f"Unknown keys in '{name}' section: {', '.join(sorted(unknown))}")
    return section_cls(**data)


def config_from_dict(config_data: Optional[Dict[str, Any]]) -> Config:
    """Create a Config from parsed YAML; missing sections fall back to defaults."""
    config_data = config_data or {}
    unknown = set(config_data) - set(_SECTIONS)
    if unknown:
        raise ValueError(f"Unknown config sections: {', '.join(sorted(unknown))}")

    sections = {
        name: _build_section(name, section_cls, config_data.get(name))
        for name, section_cls in _SECTIONS.items()
    }
    return Config(**sections)


def validate_config(config: Config):
    """Validate configuration values."""
    crawler = config.crawler
    if crawler.max_depth < 0:
        raise ValueError("max_depth must be non-negative")

    if crawler.max_pages < 1:
        raise ValueError("max_pages must be at least 1")

    if crawler.request_timeout <= 0:
        raise ValueError("request_timeout must be positive")

    if config.pool.workers < 1:
        raise ValueError("pool.workers must be at least 1")

    if config.pool.queue_capacity < 1:
        raise ValueError("pool.queue_capacity must be at least 1")

    politeness = config.politeness
    if politeness.min_delay < 0:
        raise ValueError("politeness.min_delay must be non-negative")

    if politeness.max_delay < politeness.min_delay:
        raise ValueError("politeness.max_delay must not be below min_delay")

    if politeness.max_errors < 1:
        raise ValueError("politeness.max_errors must be at least 1")

    if politeness.error_penalty < 1 or politeness.growth_factor < 1:
        raise ValueError("error_penalty and growth_factor must be at least 1")

    if not 0 < politeness.decay_factor <= 1:
        raise ValueError("decay_factor must be in (0, 1]")

    if politeness.robots_ttl <= 0 or config.storage.cache_ttl <= 0:
        raise ValueError("TTL values must be positive")

    if config.storage.backend not in ['redis', 'memory']:
        raise ValueError("Storage backend must be 'redis' or 'memory'")

    if config.redis.max_retries < 0 or config.redis.retry_delay < 0:
        raise ValueError("Redis retry settings must be non-negative")


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: str = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: Optional[Config] = None

    def load_config(self) -> Config:
        """Load configuration from YAML file."""
        if not self.config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")

        with open(self.config_path, 'r') as file:
            config_data = yaml.safe_load(file)

        self._config = config_from_dict(config_data)
        self._validate_config()
        return self._config

    def _validate_config(self):
        """Validate configuration values."""
        if not self._config:
            raise ValueError("Configuration not loaded")

        validate_config(self._config)
        logging.getLogger(__name__).debug("Configuration validation passed")

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ValueError("Configuration not loaded. Call load_config() first.")
        return self._config


def load_config(config_path: str = "config.yaml") -> Config:
    """Load configuration from file."""
    return ConfigManager(config_path).load_config()
