"""
Database Package for the Enforcement Ingest pipeline

This package provides:
- SQLAlchemy ORM models for agencies, offenders and enforcement records
- Ingestion session, batch and log tables
- Session provider with explicit transaction scopes
- Repository pattern for data access
"""

from database.models import (
    Base,
    Agency,
    Offender,
    EnforcementCase,
    EnforcementNotice,
    IngestionSession,
    IngestionBatch,
    IngestionLog,
    SyncType,
    SessionStatus,
    BatchStatus,
    LogLevel,
    EventType,
    BusinessType,
    ImmutableLogError,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    get_db_provider,
    # Initialization
    init_db,
    close_db,
    # Testing support
    create_sqlite_engine,
    create_test_provider,
)
from database.repositories import (
    AgencyRepository,
    OffenderRepository,
    EnforcementRecordRepository,
    IngestionSessionRepository,
    IngestionBatchRepository,
    IngestionLogRepository,
    RepositoryError,
    EntityNotFoundError,
    DuplicateEntityError,
)

__all__ = [
    # Base
    'Base',
    # Domain models
    'Agency',
    'Offender',
    'EnforcementCase',
    'EnforcementNotice',
    # Ingestion models
    'IngestionSession',
    'IngestionBatch',
    'IngestionLog',
    # Enums
    'SyncType',
    'SessionStatus',
    'BatchStatus',
    'LogLevel',
    'EventType',
    'BusinessType',
    'ImmutableLogError',
    # Provider
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'get_db_provider',
    'init_db',
    'close_db',
    'create_sqlite_engine',
    'create_test_provider',
    # Repositories
    'AgencyRepository',
    'OffenderRepository',
    'EnforcementRecordRepository',
    'IngestionSessionRepository',
    'IngestionBatchRepository',
    'IngestionLogRepository',
    'RepositoryError',
    'EntityNotFoundError',
    'DuplicateEntityError',
]
