"""
Source adapter interface

An adapter knows one agency's listing: how to fetch a page of raw records
and how to transform a raw record into a CanonicalRecord. The coordinator
and tracker only ever talk to this interface.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Type

from database.models import SyncType
from ingestion.fetcher import SourceFetcher
from ingestion.rate_limiter import RateLimiter
from ingestion.transformer import CanonicalRecord

logger = logging.getLogger(__name__)


@dataclass
class SourceConfig:
    """Which source to crawl and how to reach it"""
    adapter: str = "hse_cases"
    agency_code: str = "hse"
    base_url: Optional[str] = None
    endpoint_path: Optional[str] = None
    database: str = "convictions"
    country: str = "England"
    fetch_details: bool = True
    network_timeout_ms: int = 30000
    fetch_max_attempts: int = 3
    requests_per_minute: Optional[int] = None
    options: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceConfig':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        extra = {k: v for k, v in data.items() if k not in cls.__dataclass_fields__}
        config = cls(**known)
        config.options.update(extra)
        return config


class NaturalKey(NamedTuple):
    regulator_id: str
    agency_code: str


@dataclass
class FetchedPage:
    """Raw records of one listing page"""
    page: int
    records: List[Dict[str, Any]]
    url: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.records


class Adapter(ABC):
    """Capability interface of a listing source"""

    name: str = ""
    agency_code: str = ""
    agency_name: str = ""
    sync_type: SyncType = SyncType.CUSTOM
    target_model: Type = None

    def __init__(
        self,
        config: SourceConfig,
        fetcher: Optional[SourceFetcher] = None,
        rate_limiter: Optional[RateLimiter] = None
    ):
        self.config = config
        self.fetcher = fetcher or SourceFetcher(
            base_url=config.base_url or self.default_base_url(),
            timeout=config.network_timeout_ms / 1000,
            max_attempts=config.fetch_max_attempts
        )
        self.rate_limiter = rate_limiter or RateLimiter(config.requests_per_minute)

    @property
    def target_resource(self) -> str:
        return self.target_model.__name__

    def default_base_url(self) -> str:
        raise NotImplementedError(f"{type(self).__name__} needs an explicit base_url")

    @abstractmethod
    def fetch(self, page: int) -> FetchedPage:
        """
        Fetch one listing page.

        Raises:
            FetchError subclasses or PageParseError
        """

    @abstractmethod
    def transform(self, raw: Dict[str, Any]) -> CanonicalRecord:
        """
        Transform one raw record.

        Raises:
            RecordValidationError: If no natural key can be determined
        """

    def target_key(self, record: CanonicalRecord) -> NaturalKey:
        return NaturalKey(record.regulator_id, record.agency_code)

    def close(self) -> None:
        self.fetcher.session.close()


# ============================================
# REGISTRY
# ============================================

_ADAPTERS: Dict[str, Type[Adapter]] = {}


def register_adapter(name: str) -> Callable[[Type[Adapter]], Type[Adapter]]:
    """Class decorator registering an adapter under a name."""
    def decorator(cls: Type[Adapter]) -> Type[Adapter]:
        cls.name = name
        _ADAPTERS[name] = cls
        return cls
    return decorator


def available_adapters() -> List[str]:
    return sorted(_ADAPTERS)


def build_adapter(
    config: SourceConfig,
    fetcher: Optional[SourceFetcher] = None,
    rate_limiter: Optional[RateLimiter] = None
) -> Adapter:
    """
    Instantiate the adapter named by config.adapter.

    Raises:
        ValueError: Unknown adapter name
    """
    try:
        adapter_cls = _ADAPTERS[config.adapter]
    except KeyError:
        raise ValueError(
            f"Unknown adapter '{config.adapter}'. Available: {', '.join(available_adapters())}"
        ) from None
    logger.debug(f"Building adapter {config.adapter} for {config.agency_code}")
    return adapter_cls(config, fetcher=fetcher, rate_limiter=rate_limiter)
