"""
SQLAlchemy ORM Models for the Enforcement Ingest pipeline

This module defines the database schema for crawled enforcement records and
the audit trail of the runs that produced them:
- Natural-key uniqueness enforced at the storage layer (dedup backstop)
- Generic column types so the same schema runs on PostgreSQL and SQLite
- UUID primary keys
- Timestamps for all mutable records (created_at, updated_at)
- Append-only ingestion log

Tables:
1. agencies - Source agencies (HSE, EA, ...)
2. offenders - Deduplicated parties referenced by enforcement records
3. enforcement_cases - Court cases keyed by (regulator_id, agency)
4. enforcement_notices - Enforcement notices keyed by (regulator_id, agency)
5. ingestion_sessions - One row per ingestion run
6. ingestion_batches - One row per page processed within a run
7. ingestion_logs - Structured, immutable events for audit and recovery
"""

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    String, Integer, BigInteger, Boolean, Date, DateTime, Text, Numeric,
    ForeignKey, Index, CheckConstraint, UniqueConstraint, JSON, Uuid, event
)
from sqlalchemy.orm import relationship, declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware current time used for Python-side timestamps."""
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

class SyncType(str, PyEnum):
    """Kind of ingestion run. Stored as a plain string so new kinds can be added."""
    HSE_CASES = "hse_cases"
    HSE_NOTICES = "hse_notices"
    EA_CASES = "ea_cases"
    EA_NOTICES = "ea_notices"
    CUSTOM = "custom"


class SessionStatus(str, PyEnum):
    """Lifecycle of an ingestion session"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"


class BatchStatus(str, PyEnum):
    """Lifecycle of a single batch (page)"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"


class LogLevel(str, PyEnum):
    """Severity of an ingestion log entry"""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class EventType(str, PyEnum):
    """Event tags for ingestion log entries"""
    # Session lifecycle
    SESSION_STARTED = "session_started"
    SESSION_COMPLETED = "session_completed"
    SESSION_FAILED = "session_failed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_PAUSED = "session_paused"
    SESSION_RESUMED = "session_resumed"
    SESSION_RETRIED = "session_retried"
    # Batch lifecycle
    BATCH_STARTED = "batch_started"
    BATCH_COMPLETED = "batch_completed"
    BATCH_FAILED = "batch_failed"
    BATCH_RETRIED = "batch_retried"
    # Records
    RECORD_PROCESSED = "record_processed"
    RECORD_CREATED = "record_created"
    RECORD_UPDATED = "record_updated"
    RECORD_FAILED = "record_failed"
    # Errors
    PROCESSING_ERROR = "processing_error"
    VALIDATION_ERROR = "validation_error"
    CONNECTION_ERROR = "connection_error"
    TIMEOUT_ERROR = "timeout_error"
    # System
    PERFORMANCE_METRIC = "performance_metric"
    SYSTEM_EVENT = "system_event"
    CUSTOM_EVENT = "custom_event"


class BusinessType(str, PyEnum):
    """Legal form of an offender, detected from its name"""
    LIMITED_COMPANY = "limited_company"
    PLC = "plc"
    PARTNERSHIP = "partnership"
    INDIVIDUAL = "individual"
    OTHER = "other"


TERMINAL_SESSION_STATUSES = frozenset({
    SessionStatus.COMPLETED.value,
    SessionStatus.FAILED.value,
    SessionStatus.CANCELLED.value,
})

TERMINAL_BATCH_STATUSES = frozenset({
    BatchStatus.COMPLETED.value,
    BatchStatus.CANCELLED.value,
})

MAX_LOG_MESSAGE_LENGTH = 2000


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


# ============================================
# DOMAIN TABLES
# ============================================

class Agency(Base, TimestampMixin):
    """A regulator whose listings are ingested."""
    __tablename__ = "agencies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(20), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Agency(code='{self.code}', name='{self.name}')>"


class Offender(Base, TimestampMixin):
    """
    Deduplicated real-world party (company or individual).

    identity_key is normalized_name + postcode joined with '|'. Postcodes may
    be null, and NULLs never collide under a composite unique constraint, so
    the joined key is what the database enforces.
    """
    __tablename__ = "offenders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    name: Mapped[str] = mapped_column(String(500), nullable=False)
    normalized_name: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    postcode: Mapped[Optional[str]] = mapped_column(String(10), nullable=True, index=True)
    identity_key: Mapped[str] = mapped_column(String(520), nullable=False, unique=True)

    # Address fragments
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    town: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    county: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    local_authority: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Business information
    main_activity: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    industry: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    registration_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    business_type: Mapped[str] = mapped_column(
        String(30), nullable=False, default=BusinessType.OTHER.value
    )

    # Running statistics
    first_seen_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    last_seen_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    total_cases: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_notices: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_fines: Mapped[Decimal] = mapped_column(
        Numeric(14, 2), default=Decimal("0"), nullable=False
    )

    cases: Mapped[List["EnforcementCase"]] = relationship(
        "EnforcementCase", back_populates="offender"
    )
    notices: Mapped[List["EnforcementNotice"]] = relationship(
        "EnforcementNotice", back_populates="offender"
    )

    __table_args__ = (
        CheckConstraint('total_cases >= 0', name='check_offender_total_cases'),
        CheckConstraint('total_notices >= 0', name='check_offender_total_notices'),
    )

    def __repr__(self) -> str:
        return f"<Offender(id={self.id}, name='{self.name}', postcode='{self.postcode}')>"


class EnforcementCase(Base, TimestampMixin):
    """
    A prosecution outcome scraped from a regulator's case database.

    The natural key (regulator_id, agency_id) is unique; a case is created once
    and only ever updated field by field afterwards.
    """
    __tablename__ = "enforcement_cases"

    # Compared by the upsert engine when a known case is seen again
    COMPARED_FIELDS = (
        "offence_action_date",
        "offence_hearing_date",
        "offence_result",
        "offence_fine",
        "offence_costs",
        "offence_breaches",
        "offence_breaches_count",
        "regulator_function",
        "related_cases",
        "offence_action_type",
        "source_url",
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    regulator_id: Mapped[str] = mapped_column(String(100), nullable=False)
    agency_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agencies.id"), nullable=False, index=True
    )
    offender_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offenders.id"), nullable=False, index=True
    )

    offence_action_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    offence_action_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    offence_hearing_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    offence_result: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    offence_fine: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    offence_costs: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    offence_breaches: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    offence_breaches_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    regulator_function: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    related_cases: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    agency: Mapped["Agency"] = relationship("Agency")
    offender: Mapped["Offender"] = relationship("Offender", back_populates="cases")

    __table_args__ = (
        UniqueConstraint('regulator_id', 'agency_id', name='uq_case_natural_key'),
        Index('ix_case_agency_date', 'agency_id', 'offence_action_date'),
    )

    def __repr__(self) -> str:
        return f"<EnforcementCase(regulator_id='{self.regulator_id}', offender_id={self.offender_id})>"


class EnforcementNotice(Base, TimestampMixin):
    """An improvement or prohibition notice scraped from a notice database."""
    __tablename__ = "enforcement_notices"

    COMPARED_FIELDS = (
        "offence_action_type",
        "offence_action_date",
        "notice_date",
        "operative_date",
        "compliance_date",
        "revised_compliance_date",
        "notice_body",
        "offence_breaches",
        "regulator_function",
        "source_url",
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    regulator_id: Mapped[str] = mapped_column(String(100), nullable=False)
    agency_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agencies.id"), nullable=False, index=True
    )
    offender_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("offenders.id"), nullable=False, index=True
    )

    offence_action_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    offence_action_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    notice_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    operative_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    compliance_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    revised_compliance_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    notice_body: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    offence_breaches: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    regulator_function: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    source_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    agency: Mapped["Agency"] = relationship("Agency")
    offender: Mapped["Offender"] = relationship("Offender", back_populates="notices")

    __table_args__ = (
        UniqueConstraint('regulator_id', 'agency_id', name='uq_notice_natural_key'),
        Index('ix_notice_agency_date', 'agency_id', 'offence_action_date'),
    )

    def __repr__(self) -> str:
        return f"<EnforcementNotice(regulator_id='{self.regulator_id}', offender_id={self.offender_id})>"


# ============================================
# INGESTION TRACKING TABLES
# ============================================

class IngestionSession(Base, TimestampMixin):
    """
    One end-to-end ingestion run.

    Counters are only ever changed with UPDATE ... SET col = col + :delta so
    concurrent batch completions never lose an increment.
    """
    __tablename__ = "ingestion_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)

    sync_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_resource: Mapped[str] = mapped_column(String(100), nullable=False)
    source_adapter: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    initiated_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    estimated_total: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SessionStatus.PENDING.value
    )
    stop_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Progress counters
    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_existing: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    pages_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_page: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Logical clock for log entries of this session
    log_sequence: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)

    error_info: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    session_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_transition_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_time_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    batches: Mapped[List["IngestionBatch"]] = relationship(
        "IngestionBatch",
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="IngestionBatch.batch_number"
    )

    __table_args__ = (
        Index('ix_ingestion_session_status', 'status'),
        Index('ix_ingestion_session_type_date', 'sync_type', 'created_at'),
        CheckConstraint('records_processed >= 0', name='check_session_processed_positive'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def __repr__(self) -> str:
        return f"<IngestionSession(session_id='{self.session_id}', status='{self.status}')>"


class IngestionBatch(Base, TimestampMixin):
    """One page (or fixed-size chunk) of records processed within a session."""
    __tablename__ = "ingestion_batches"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("ingestion_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    batch_number: Mapped[int] = mapped_column(Integer, nullable=False)
    page_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    batch_size: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BatchStatus.PENDING.value
    )

    records_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_created: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_updated: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_existing: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    records_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    source_ids: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    session: Mapped["IngestionSession"] = relationship(
        "IngestionSession",
        back_populates="batches"
    )

    __table_args__ = (
        UniqueConstraint('session_id', 'batch_number', name='uq_batch_session_number'),
        CheckConstraint('batch_number >= 1', name='check_batch_number_positive'),
        CheckConstraint(
            "status != 'completed' OR records_processed = "
            "records_created + records_updated + records_existing + records_failed",
            name='check_batch_counters_balance'
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<IngestionBatch(session_id={self.session_id}, "
            f"batch_number={self.batch_number}, status='{self.status}')>"
        )


class IngestionLog(Base):
    """
    Immutable structured event of an ingestion session.

    Entries are ordered by sequence, a per-session logical clock, rather than
    by logged_at, which depends on the writer's wall clock.
    """
    __tablename__ = "ingestion_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("ingestion_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    batch_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid,
        ForeignKey("ingestion_batches.id", ondelete="SET NULL"),
        nullable=True
    )
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)

    level: Mapped[str] = mapped_column(String(10), nullable=False, default=LogLevel.INFO.value)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(String(MAX_LOG_MESSAGE_LENGTH), nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_category: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    source_module: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    origin: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    logged_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint('session_id', 'sequence', name='uq_log_session_sequence'),
        Index('ix_ingestion_log_level', 'level'),
        Index('ix_ingestion_log_event_type', 'event_type'),
    )

    def __repr__(self) -> str:
        return f"<IngestionLog(sequence={self.sequence}, event_type='{self.event_type}')>"


class ImmutableLogError(Exception):
    """Raised when code attempts to modify a persisted log entry."""
    pass


@event.listens_for(IngestionLog, "before_update")
def _reject_log_update(mapper, connection, target):
    raise ImmutableLogError(f"Ingestion log entries are append-only: {target!r}")


# ============================================
# HELPER FUNCTIONS
# ============================================

def build_identity_key(normalized_name: str, postcode: Optional[str]) -> str:
    """
    Build the unique identity key of an offender.

    Args:
        normalized_name: Normalized party name
        postcode: Normalized postcode (can be None)

    Returns:
        'normalized_name|postcode' with an empty postcode segment when absent
    """
    return f"{normalized_name or ''}|{postcode or ''}"
