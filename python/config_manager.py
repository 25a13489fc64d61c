"""
Configuration Management Module
Loads and validates configuration from config.yaml, then applies
INGEST_* environment overrides to the crawl section
"""

import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

STOP_GRANULARITIES = ("page", "record")


@dataclass
class CrawlConfig:
    """Crawl pacing and stop limits"""
    adapter: str = "hse_cases"
    agency_code: str = "hse"
    base_url: Optional[str] = None
    endpoint_path: Optional[str] = None
    database: str = "convictions"
    country: str = "England"
    fetch_details: bool = True
    requests_per_minute: Optional[int] = None
    pause_between_pages_ms: int = 3000
    network_timeout_ms: int = 30000
    fetch_max_attempts: int = 3
    consecutive_existing_threshold: int = 10
    consecutive_existing_pages: int = 1
    stop_granularity: str = "page"
    max_pages_per_session: int = 100
    max_consecutive_errors: int = 3
    page_retry_limit: int = 3
    batch_size: int = 50


@dataclass
class MatchingConfig:
    """Offender matching parameters"""
    threshold: float = 0.7
    require_postcode_agreement: bool = True


@dataclass
class PerformanceConfig:
    """Performance configuration"""
    max_workers: int = 4
    batch_size: int = 50
    progress_queue_size: int = 1000
    slow_operation_threshold_ms: float = 1000.0


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    file: str = "logs/ingest.log"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    event_log_dir: str = "logs"
    event_log_enabled: bool = True


@dataclass
class DatabaseConfig:
    """Database configuration"""
    host: str = "localhost"
    port: int = 5432
    user: str = "ingest_user"
    password: str = "ingest_password"
    name: str = "enforcement"
    url: Optional[str] = None
    pool_size: int = 5
    echo: bool = False


@dataclass
class ApiConfig:
    """HTTP API configuration"""
    host: str = "0.0.0.0"
    port: int = 8000


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


def _to_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _to_optional_int(value: str) -> Optional[int]:
    value = value.strip()
    return int(value) if value and value.lower() != "none" else None


# (environment variable, crawl attribute, converter)
ENV_OVERRIDES: List[tuple] = [
    ("INGEST_BASE_URL", "base_url", str),
    ("INGEST_ENDPOINT_PATH", "endpoint_path", str),
    ("INGEST_REQUESTS_PER_MINUTE", "requests_per_minute", _to_optional_int),
    ("INGEST_PAUSE_BETWEEN_PAGES_MS", "pause_between_pages_ms", int),
    ("INGEST_NETWORK_TIMEOUT_MS", "network_timeout_ms", int),
    ("INGEST_CONSECUTIVE_EXISTING_THRESHOLD", "consecutive_existing_threshold", int),
    ("INGEST_CONSECUTIVE_EXISTING_PAGES", "consecutive_existing_pages", int),
    ("INGEST_STOP_GRANULARITY", "stop_granularity", str),
    ("INGEST_MAX_PAGES_PER_SESSION", "max_pages_per_session", int),
    ("INGEST_MAX_CONSECUTIVE_ERRORS", "max_consecutive_errors", int),
    ("INGEST_BATCH_SIZE", "batch_size", int),
    ("INGEST_FETCH_DETAILS", "fetch_details", _to_bool),
]


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None, environ: Optional[Dict[str, str]] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
            environ: Environment mapping for overrides (defaults to os.environ)
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._environ = os.environ if environ is None else environ
        self._raw_config: Dict[str, Any] = {}
        self.crawl: CrawlConfig = CrawlConfig()
        self.matching: MatchingConfig = MatchingConfig()
        self.performance: PerformanceConfig = PerformanceConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.database: DatabaseConfig = DatabaseConfig()
        self.api: ApiConfig = ApiConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")
            self._apply_env_overrides()
            self._validate()

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        if not isinstance(self._raw_config, dict):
            raise ConfigurationError(f"Config file must contain a mapping: {self.config_path}")

        self.crawl = self._parse_section('crawl', CrawlConfig)
        self.matching = self._parse_section('matching', MatchingConfig)
        self.performance = self._parse_section('performance', PerformanceConfig)
        self.logging = self._parse_section('logging', LoggingConfig)
        self.database = self._parse_section('database', DatabaseConfig)
        self.api = self._parse_section('api', ApiConfig)
        self._apply_env_overrides()
        self._validate()

    def _parse_section(self, name: str, section_cls: Callable[..., Any]) -> Any:
        """Build a section dataclass; unknown keys are logged and ignored"""
        cfg = self._raw_config.get(name) or {}
        if not isinstance(cfg, dict):
            raise ConfigurationError(f"Section '{name}' must be a mapping")
        known = section_cls.__dataclass_fields__
        unknown = sorted(k for k in cfg if k not in known)
        if unknown:
            logger.warning(f"Ignoring unknown {name} settings: {', '.join(unknown)}")
        return section_cls(**{k: v for k, v in cfg.items() if k in known})

    def _apply_env_overrides(self) -> None:
        """Apply INGEST_* environment variables on top of the crawl section"""
        for env_name, attr, convert in ENV_OVERRIDES:
            value = self._environ.get(env_name)
            if value is None:
                continue
            try:
                setattr(self.crawl, attr, convert(value))
            except ValueError as e:
                raise ConfigurationError(f"Invalid value for {env_name}: {value!r} ({e})")
            logger.debug(f"Config override from {env_name}")

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary (database password masked)"""
        database = asdict(self.database)
        database['password'] = '***' if database['password'] else ''
        return {
            'crawl': asdict(self.crawl),
            'matching': asdict(self.matching),
            'performance': asdict(self.performance),
            'logging': asdict(self.logging),
            'database': database,
            'api': asdict(self.api),
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: On the first invalid value
        """
        crawl = self.crawl
        positive = {
            'crawl.network_timeout_ms': crawl.network_timeout_ms,
            'crawl.fetch_max_attempts': crawl.fetch_max_attempts,
            'crawl.consecutive_existing_threshold': crawl.consecutive_existing_threshold,
            'crawl.consecutive_existing_pages': crawl.consecutive_existing_pages,
            'crawl.max_pages_per_session': crawl.max_pages_per_session,
            'crawl.max_consecutive_errors': crawl.max_consecutive_errors,
            'crawl.batch_size': crawl.batch_size,
            'performance.max_workers': self.performance.max_workers,
            'performance.batch_size': self.performance.batch_size,
            'performance.progress_queue_size': self.performance.progress_queue_size,
        }
        for name, value in positive.items():
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        if crawl.pause_between_pages_ms < 0 or crawl.page_retry_limit < 0:
            raise ConfigurationError("crawl.pause_between_pages_ms and crawl.page_retry_limit must be >= 0")
        if crawl.requests_per_minute is not None and crawl.requests_per_minute < 0:
            raise ConfigurationError("crawl.requests_per_minute must be >= 0")
        if crawl.stop_granularity not in STOP_GRANULARITIES:
            raise ConfigurationError(
                f"crawl.stop_granularity must be one of {STOP_GRANULARITIES}, got {crawl.stop_granularity!r}"
            )
        if not 0 < self.matching.threshold <= 1:
            raise ConfigurationError(f"matching.threshold must be in (0, 1], got {self.matching.threshold}")
        if self.logging.level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError(f"logging.level is not a logging level: {self.logging.level}")


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
