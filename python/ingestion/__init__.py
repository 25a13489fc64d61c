"""
Enforcement record ingestion pipeline

This package provides:
- Source adapters (HSE cases and notices) behind a registry
- Record transformation into canonical form
- Offender matching and record upsert
- Session/batch/log tracking with explicit state machines
- The crawl coordinator and the service that starts it
"""

from ingestion.errors import (
    IngestionError,
    FetchError,
    TransientFetchError,
    FetchTimeoutError,
    PermanentFetchError,
    PageParseError,
    RecordParseError,
    RecordValidationError,
    ConflictError,
    FatalIngestionError,
)
from ingestion.adapters import (
    Adapter,
    FetchedPage,
    SourceConfig,
    available_adapters,
    build_adapter,
    register_adapter,
)
from ingestion.coordinator import (
    CrawlCoordinator,
    CrawlLimits,
    CrawlResult,
    ExistingRunDetector,
    StopReason,
)
from ingestion.tracker import (
    SessionTracker,
    SessionSummary,
    BatchSummary,
    TrackerError,
    SessionNotFoundError,
    InvalidTransitionError,
    TerminalStateError,
    RetryLimitExceededError,
)
from ingestion.service import IngestionService

__all__ = [
    # Errors
    'IngestionError',
    'FetchError',
    'TransientFetchError',
    'FetchTimeoutError',
    'PermanentFetchError',
    'PageParseError',
    'RecordParseError',
    'RecordValidationError',
    'ConflictError',
    'FatalIngestionError',
    # Adapters
    'Adapter',
    'FetchedPage',
    'SourceConfig',
    'available_adapters',
    'build_adapter',
    'register_adapter',
    # Crawl
    'CrawlCoordinator',
    'CrawlLimits',
    'CrawlResult',
    'ExistingRunDetector',
    'StopReason',
    # Tracking
    'SessionTracker',
    'SessionSummary',
    'BatchSummary',
    'TrackerError',
    'SessionNotFoundError',
    'InvalidTransitionError',
    'TerminalStateError',
    'RetryLimitExceededError',
    # Service
    'IngestionService',
]
