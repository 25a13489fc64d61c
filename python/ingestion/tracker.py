"""
Session/Batch/Log Tracker

Persists the lifecycle of ingestion sessions and their batches:
- Status changes follow explicit transition tables and are applied as
  compare-and-set UPDATEs, so two writers can never both win an edge
- Counters are applied as SQL deltas and refused once a session is terminal
- Every lifecycle change writes an IngestionLog entry ordered by the
  session's logical clock, mirrored to the JSON event log

Each public method runs in its own transaction; callers must not hold an
open session_scope while calling into the tracker.
"""

import logging
import os
import secrets
import socket
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from database.connection import DatabaseSessionProvider
from database.models import (
    BatchStatus,
    EventType,
    IngestionBatch,
    IngestionSession,
    LogLevel,
    SessionStatus,
    TERMINAL_SESSION_STATUSES,
    utcnow,
)
from database.repositories import (
    DuplicateEntityError,
    IngestionBatchRepository,
    IngestionLogRepository,
    IngestionSessionRepository,
    RepositoryError,
)
from ingestion.errors import IngestionError
from ingestion.event_log import IngestionEvent, IngestionEventLogger
from ingestion.metrics import active_sessions

logger = logging.getLogger(__name__)

MAX_BATCH_RETRIES = 3

S = SessionStatus
B = BatchStatus

SESSION_TRANSITIONS: Dict[str, frozenset] = {
    S.PENDING.value: frozenset({S.RUNNING.value, S.FAILED.value, S.CANCELLED.value}),
    S.RUNNING.value: frozenset({S.PAUSED.value, S.COMPLETED.value, S.FAILED.value, S.CANCELLED.value}),
    S.PAUSED.value: frozenset({S.RUNNING.value, S.FAILED.value, S.CANCELLED.value}),
    S.FAILED.value: frozenset({S.RETRYING.value}),
    S.RETRYING.value: frozenset({S.RUNNING.value, S.FAILED.value, S.CANCELLED.value}),
    S.COMPLETED.value: frozenset(),
    S.CANCELLED.value: frozenset(),
}

BATCH_TRANSITIONS: Dict[str, frozenset] = {
    B.PENDING.value: frozenset({B.PROCESSING.value, B.CANCELLED.value}),
    B.PROCESSING.value: frozenset({B.COMPLETED.value, B.FAILED.value, B.CANCELLED.value}),
    B.FAILED.value: frozenset({B.RETRYING.value}),
    B.RETRYING.value: frozenset({B.PROCESSING.value, B.FAILED.value, B.CANCELLED.value}),
    B.COMPLETED.value: frozenset(),
    B.CANCELLED.value: frozenset(),
}


def _sources(table: Dict[str, frozenset], to_status: str) -> List[str]:
    return [status for status, targets in table.items() if to_status in targets]


def _value(item: Union[str, Enum, None]) -> Optional[str]:
    return item.value if isinstance(item, Enum) else item


def _aware(moment: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone-aware columns
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def default_origin() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def generate_session_id() -> str:
    return secrets.token_hex(8)


# ============================================
# ERRORS
# ============================================

class TrackerError(RepositoryError):
    """Base exception for tracker errors."""
    pass


class SessionNotFoundError(TrackerError):
    """No session has the given id."""
    pass


class BatchNotFoundError(TrackerError):
    """No batch has the given id."""
    pass


class InvalidTransitionError(TrackerError):
    """The requested status change is not an edge of the state machine."""
    pass


class TerminalStateError(TrackerError):
    """The session is terminal and accepts no further updates."""
    pass


class RetryLimitExceededError(TrackerError):
    """The batch has used all of its retries."""
    pass


# ============================================
# SUMMARIES
# ============================================

@dataclass
class SessionSummary:
    """Snapshot of a session with derived progress metrics"""
    session_id: str
    status: str
    sync_type: str
    target_resource: str
    source_adapter: Optional[str] = None
    initiated_by: Optional[str] = None
    correlation_id: Optional[str] = None
    stop_reason: Optional[str] = None
    estimated_total: Optional[int] = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_existing: int = 0
    records_failed: int = 0
    error_count: int = 0
    pages_processed: int = 0
    current_page: Optional[int] = None
    error_info: Optional[Dict[str, Any]] = None
    config: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_transition_at: Optional[datetime] = None
    processing_time_ms: Optional[int] = None
    pk: Optional[UUID] = None

    @classmethod
    def from_model(cls, row: IngestionSession) -> 'SessionSummary':
        return cls(
            session_id=row.session_id,
            status=row.status,
            sync_type=row.sync_type,
            target_resource=row.target_resource,
            source_adapter=row.source_adapter,
            initiated_by=row.initiated_by,
            correlation_id=row.correlation_id,
            stop_reason=row.stop_reason,
            estimated_total=row.estimated_total,
            records_processed=row.records_processed,
            records_created=row.records_created,
            records_updated=row.records_updated,
            records_existing=row.records_existing,
            records_failed=row.records_failed,
            error_count=row.error_count,
            pages_processed=row.pages_processed,
            current_page=row.current_page,
            error_info=row.error_info,
            config=row.config,
            metadata=row.session_metadata,
            created_at=_aware(row.created_at),
            started_at=_aware(row.started_at),
            completed_at=_aware(row.completed_at),
            last_transition_at=_aware(row.last_transition_at),
            processing_time_ms=row.processing_time_ms,
            pk=row.id,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def duration_seconds(self, now: Optional[datetime] = None) -> float:
        """Seconds from start to the terminal transition, or to now while active"""
        start = self.started_at or self.created_at
        if start is None:
            return 0.0
        if self.is_terminal and self.last_transition_at:
            end = self.last_transition_at
        else:
            end = now or datetime.now(timezone.utc)
        return max((end - start).total_seconds(), 0.0)

    def completion_percentage(self) -> Optional[float]:
        if self.status == S.COMPLETED.value:
            return 100.0
        if not self.estimated_total:
            return None
        return round(min(self.records_processed / self.estimated_total * 100, 100.0), 2)

    def success_rate(self) -> float:
        if self.records_processed == 0:
            return 0.0
        ok = self.records_processed - self.records_failed
        return round(ok / self.records_processed * 100, 2)

    def error_rate(self) -> float:
        if self.records_processed == 0:
            return 0.0
        return round(self.records_failed / self.records_processed * 100, 2)

    def processing_speed(self, now: Optional[datetime] = None) -> float:
        """Records per second"""
        seconds = self.duration_seconds(now)
        if seconds <= 0:
            return 0.0
        return round(self.records_processed / seconds, 3)

    def to_dict(self) -> Dict[str, Any]:
        def iso(moment):
            return moment.isoformat() if moment else None

        return {
            'session_id': self.session_id,
            'status': self.status,
            'sync_type': self.sync_type,
            'target_resource': self.target_resource,
            'source_adapter': self.source_adapter,
            'initiated_by': self.initiated_by,
            'stop_reason': self.stop_reason,
            'estimated_total': self.estimated_total,
            'records_processed': self.records_processed,
            'records_created': self.records_created,
            'records_updated': self.records_updated,
            'records_existing': self.records_existing,
            'records_failed': self.records_failed,
            'error_count': self.error_count,
            'pages_processed': self.pages_processed,
            'current_page': self.current_page,
            'error_info': self.error_info,
            'created_at': iso(self.created_at),
            'started_at': iso(self.started_at),
            'completed_at': iso(self.completed_at),
            'duration_seconds': round(self.duration_seconds(), 3),
            'completion_percentage': self.completion_percentage(),
            'success_rate': self.success_rate(),
            'error_rate': self.error_rate(),
            'processing_speed': self.processing_speed(),
        }


@dataclass
class BatchSummary:
    """Snapshot of a batch"""
    batch_id: UUID
    batch_number: int
    status: str
    page_number: Optional[int] = None
    batch_size: int = 0
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_existing: int = 0
    records_failed: int = 0
    retry_count: int = 0
    source_ids: List[str] = field(default_factory=list)
    error_details: Optional[Dict[str, Any]] = None
    processing_time_ms: Optional[int] = None

    @classmethod
    def from_model(cls, row: IngestionBatch) -> 'BatchSummary':
        return cls(
            batch_id=row.id,
            batch_number=row.batch_number,
            status=row.status,
            page_number=row.page_number,
            batch_size=row.batch_size,
            records_processed=row.records_processed,
            records_created=row.records_created,
            records_updated=row.records_updated,
            records_existing=row.records_existing,
            records_failed=row.records_failed,
            retry_count=row.retry_count,
            source_ids=list(row.source_ids or []),
            error_details=row.error_details,
            processing_time_ms=row.processing_time_ms,
        )

    def is_balanced(self) -> bool:
        return self.records_processed == (
            self.records_created + self.records_updated
            + self.records_existing + self.records_failed
        )

    def success_rate(self) -> float:
        if self.records_processed == 0:
            return 0.0
        return round((self.records_processed - self.records_failed) / self.records_processed * 100, 2)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'batch_id': str(self.batch_id),
            'batch_number': self.batch_number,
            'page_number': self.page_number,
            'status': self.status,
            'records_processed': self.records_processed,
            'records_created': self.records_created,
            'records_updated': self.records_updated,
            'records_existing': self.records_existing,
            'records_failed': self.records_failed,
            'retry_count': self.retry_count,
            'success_rate': self.success_rate(),
            'processing_time_ms': self.processing_time_ms,
        }


# ============================================
# TRACKER
# ============================================

class SessionTracker:
    """Durable lifecycle, counters and logs of ingestion sessions"""

    def __init__(
        self,
        provider: DatabaseSessionProvider,
        origin: Optional[str] = None,
        event_logger: Optional[IngestionEventLogger] = None
    ):
        """
        Args:
            provider: Database session provider
            origin: Writer identity stamped on log entries (host:pid by default)
            event_logger: Optional JSON-lines mirror of persisted log entries
        """
        self.provider = provider
        self.origin = origin or default_origin()
        self.event_logger = event_logger

    # ---------- sessions ----------

    def create_session(
        self,
        sync_type: Union[str, Enum],
        target_resource: str,
        session_id: Optional[str] = None,
        source_adapter: Optional[str] = None,
        initiated_by: Optional[str] = None,
        correlation_id: Optional[str] = None,
        estimated_total: Optional[int] = None,
        config: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Tuple[SessionSummary, bool]:
        """
        Create a pending session.

        Idempotent on a caller-supplied session_id: the existing session is
        returned unchanged.

        Returns:
            Tuple of (summary, created)
        """
        with self.provider.session_scope() as db:
            repo = IngestionSessionRepository(db)
            if session_id:
                existing = repo.get_by_session_id(session_id)
                if existing is not None:
                    return SessionSummary.from_model(existing), False

            data = {
                'session_id': session_id or generate_session_id(),
                'sync_type': _value(sync_type),
                'target_resource': target_resource,
                'source_adapter': source_adapter,
                'initiated_by': initiated_by,
                'correlation_id': correlation_id,
                'estimated_total': estimated_total,
                'config': config,
                'session_metadata': metadata,
                'status': S.PENDING.value,
                'last_transition_at': utcnow(),
            }
            try:
                row = repo.create(data)
            except DuplicateEntityError:
                # Lost a creation race on the same caller-supplied id
                return SessionSummary.from_model(repo.require(data['session_id'])), False

            self._append_log(
                db, row, EventType.SYSTEM_EVENT,
                f"Session created for {target_resource}",
                data={'sync_type': data['sync_type'], 'config': config or {}}
            )
            logger.info(f"✓ Created session {row.session_id} ({data['sync_type']})")
            return SessionSummary.from_model(row), True

    def mark_running(self, session_id: str) -> SessionSummary:
        """pending/retrying → running"""
        return self._transition(
            session_id, S.RUNNING.value, EventType.SESSION_STARTED, "Session started",
            from_statuses=[S.PENDING.value, S.RETRYING.value],
            started_at=func.coalesce(IngestionSession.started_at, utcnow())
        )

    def pause(self, session_id: str) -> SessionSummary:
        return self._transition(
            session_id, S.PAUSED.value, EventType.SESSION_PAUSED, "Session paused",
            from_statuses=[S.RUNNING.value]
        )

    def resume(self, session_id: str) -> SessionSummary:
        return self._transition(
            session_id, S.RUNNING.value, EventType.SESSION_RESUMED, "Session resumed",
            from_statuses=[S.PAUSED.value]
        )

    def complete(
        self,
        session_id: str,
        stop_reason: Optional[str] = None,
        processing_time_ms: Optional[int] = None
    ) -> SessionSummary:
        return self._transition(
            session_id, S.COMPLETED.value, EventType.SESSION_COMPLETED,
            f"Session completed ({stop_reason or 'done'})",
            data={'stop_reason': stop_reason},
            stop_reason=stop_reason,
            processing_time_ms=processing_time_ms
        )

    def fail(
        self,
        session_id: str,
        error: Union[Exception, Dict[str, Any]],
        stop_reason: str = "fatal_error",
        processing_time_ms: Optional[int] = None
    ) -> SessionSummary:
        """Move a session to failed, keeping full error context in error_info."""
        details, _ = self._error_details(error)
        return self._transition(
            session_id, S.FAILED.value, EventType.SESSION_FAILED,
            f"Session failed: {details.get('message')}",
            level=LogLevel.FATAL, error=error,
            error_info=details,
            stop_reason=stop_reason,
            processing_time_ms=processing_time_ms
        )

    def cancel(self, session_id: str, reason: Optional[str] = None) -> SessionSummary:
        return self._transition(
            session_id, S.CANCELLED.value, EventType.SESSION_CANCELLED,
            f"Session cancelled{': ' + reason if reason else ''}",
            level=LogLevel.WARN,
            stop_reason="cancelled"
        )

    def retry(self, session_id: str) -> SessionSummary:
        """failed → retrying"""
        return self._transition(
            session_id, S.RETRYING.value, EventType.SESSION_RETRIED, "Session retry requested",
            stop_reason=None
        )

    def increment(
        self,
        session_id: str,
        deltas: Dict[str, int],
        current_page: Optional[int] = None
    ) -> None:
        """
        Add deltas to session counters.

        Raises:
            TerminalStateError: If the session is terminal
        """
        with self.provider.session_scope() as db:
            repo = IngestionSessionRepository(db)
            row = self._require(repo, session_id)
            if not repo.increment_counters(row.id, deltas, current_page):
                raise TerminalStateError(
                    f"Session {session_id} is {row.status}; counters are frozen"
                )

    # ---------- batches ----------

    def start_batch(self, session_id: str, page_number: Optional[int], batch_size: int = 0) -> BatchSummary:
        """
        Open the next batch of a running session and move it to processing.

        Raises:
            TerminalStateError: Session is terminal
            InvalidTransitionError: Session is not running
        """
        with self.provider.session_scope() as db:
            repo = IngestionSessionRepository(db)
            row = self._require(repo, session_id)
            if row.is_terminal:
                raise TerminalStateError(f"Session {session_id} is {row.status}")
            if row.status != S.RUNNING.value:
                raise InvalidTransitionError(
                    f"Cannot start a batch while session {session_id} is {row.status}"
                )

            batches = IngestionBatchRepository(db)
            batch = batches.create({
                'session_id': row.id,
                'batch_number': batches.next_batch_number(row.id),
                'page_number': page_number,
                'batch_size': batch_size,
                'status': B.PENDING.value,
            })
            batches.transition(batch.id, [B.PENDING.value], B.PROCESSING.value, started_at=utcnow())
            batch = batches.get_by_id(batch.id)

            self._append_log(
                db, row, EventType.BATCH_STARTED,
                f"Batch {batch.batch_number} started (page {page_number})",
                batch=batch, level=LogLevel.DEBUG
            )
            return BatchSummary.from_model(batch)

    def complete_batch(
        self,
        batch_id: UUID,
        processed: int,
        created: int = 0,
        updated: int = 0,
        existing: int = 0,
        failed: int = 0,
        source_ids: Optional[List[str]] = None,
        processing_time_ms: Optional[int] = None
    ) -> BatchSummary:
        """
        Complete a batch and fold its counters into the session atomically.

        Raises:
            TrackerError: Counters do not balance
            InvalidTransitionError: Batch is not processing
        """
        if processed != created + updated + existing + failed:
            raise TrackerError(
                f"Batch counters do not balance: processed={processed}, "
                f"created={created}, updated={updated}, existing={existing}, failed={failed}"
            )

        with self.provider.session_scope() as db:
            batches = IngestionBatchRepository(db)
            batch = self._require_batch(batches, batch_id)
            counts = {
                'records_processed': processed,
                'records_created': created,
                'records_updated': updated,
                'records_existing': existing,
                'records_failed': failed,
            }
            changed = batches.transition(
                batch_id, [B.PROCESSING.value], B.COMPLETED.value,
                completed_at=utcnow(),
                processing_time_ms=processing_time_ms,
                source_ids=list(source_ids or []),
                **counts
            )
            if not changed:
                raise InvalidTransitionError(
                    f"Batch {batch.batch_number} is {batch.status}, not processing"
                )

            sessions = IngestionSessionRepository(db)
            deltas = dict(counts, pages_processed=1)
            if not sessions.increment_counters(batch.session_id, deltas, batch.page_number):
                logger.warning(
                    f"Session of batch {batch.batch_number} is terminal; counters not applied"
                )

            row = db.get(IngestionSession, batch.session_id)
            self._append_log(
                db, row, EventType.BATCH_COMPLETED,
                f"Batch {batch.batch_number} completed: {processed} processed, "
                f"{created} created, {updated} updated, {existing} existing, {failed} failed",
                batch=batch, data=counts, duration_ms=processing_time_ms
            )
            return BatchSummary.from_model(batches.get_by_id(batch_id))

    def fail_batch(self, batch_id: UUID, error: Union[Exception, Dict[str, Any]]) -> BatchSummary:
        """processing/retrying → failed"""
        details, category = self._error_details(error)
        with self.provider.session_scope() as db:
            batches = IngestionBatchRepository(db)
            batch = self._require_batch(batches, batch_id)
            changed = batches.transition(
                batch_id, _sources(BATCH_TRANSITIONS, B.FAILED.value), B.FAILED.value,
                error_details=details
            )
            if not changed:
                raise InvalidTransitionError(f"Batch {batch.batch_number} cannot fail from {batch.status}")

            row = db.get(IngestionSession, batch.session_id)
            self._append_log(
                db, row, EventType.BATCH_FAILED,
                f"Batch {batch.batch_number} failed: {details.get('message')}",
                batch=batch, level=LogLevel.ERROR, error=error
            )
            return BatchSummary.from_model(batches.get_by_id(batch_id))

    def retry_batch(self, batch_id: UUID, max_retries: int = MAX_BATCH_RETRIES) -> BatchSummary:
        """
        failed → retrying, consuming one retry.

        Raises:
            RetryLimitExceededError: retry_count reached max_retries; the batch
                stays failed and the session's error_count goes up by one
        """
        exhausted = False
        with self.provider.session_scope() as db:
            batches = IngestionBatchRepository(db)
            batch = self._require_batch(batches, batch_id)
            if batch.status != B.FAILED.value:
                raise InvalidTransitionError(
                    f"Batch {batch.batch_number} is {batch.status}, only failed batches retry"
                )

            row = db.get(IngestionSession, batch.session_id)
            changed = batches.transition(
                batch_id, [B.FAILED.value], B.RETRYING.value,
                max_retry_count=max_retries,
                retry_count=IngestionBatch.retry_count + 1
            )
            if changed:
                batch = batches.get_by_id(batch_id)
                self._append_log(
                    db, row, EventType.BATCH_RETRIED,
                    f"Batch {batch.batch_number} retry {batch.retry_count}/{max_retries}",
                    batch=batch, level=LogLevel.WARN
                )
                return BatchSummary.from_model(batch)

            exhausted = True
            IngestionSessionRepository(db).increment_counters(row.id, {'error_count': 1})
            self._append_log(
                db, row, EventType.PROCESSING_ERROR,
                f"Batch {batch.batch_number} exhausted {max_retries} retries",
                batch=batch, level=LogLevel.ERROR
            )

        if exhausted:
            raise RetryLimitExceededError(f"Batch {batch_id} exhausted {max_retries} retries")

    def resume_batch(self, batch_id: UUID) -> BatchSummary:
        """retrying → processing"""
        with self.provider.session_scope() as db:
            batches = IngestionBatchRepository(db)
            batch = self._require_batch(batches, batch_id)
            if not batches.transition(batch_id, [B.RETRYING.value], B.PROCESSING.value):
                raise InvalidTransitionError(f"Batch {batch.batch_number} is {batch.status}, not retrying")
            return BatchSummary.from_model(batches.get_by_id(batch_id))

    def cancel_batch(self, batch_id: UUID) -> BatchSummary:
        with self.provider.session_scope() as db:
            batches = IngestionBatchRepository(db)
            batch = self._require_batch(batches, batch_id)
            allowed = _sources(BATCH_TRANSITIONS, B.CANCELLED.value)
            if not batches.transition(batch_id, allowed, B.CANCELLED.value, completed_at=utcnow()):
                raise InvalidTransitionError(f"Batch {batch.batch_number} cannot be cancelled from {batch.status}")
            return BatchSummary.from_model(batches.get_by_id(batch_id))

    # ---------- logs and reads ----------

    def log(
        self,
        session_id: str,
        event_type: Union[str, Enum],
        message: str,
        level: Union[str, Enum] = LogLevel.INFO,
        batch_id: Optional[UUID] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Union[Exception, Dict[str, Any], None] = None,
        duration_ms: Optional[int] = None,
        source_module: Optional[str] = None
    ) -> int:
        """
        Append a log entry to a session.

        Returns:
            The entry's sequence number
        """
        with self.provider.session_scope() as db:
            row = self._require(IngestionSessionRepository(db), session_id)
            batch = IngestionBatchRepository(db).get_by_id(batch_id) if batch_id else None
            return self._append_log(
                db, row, event_type, message,
                level=level, batch=batch, data=data, error=error,
                duration_ms=duration_ms, source_module=source_module
            )

    def summary(self, session_id: str) -> SessionSummary:
        with self.provider.session_scope() as db:
            return SessionSummary.from_model(self._require(IngestionSessionRepository(db), session_id))

    def get_status(self, session_id: str) -> str:
        return self.summary(session_id).status

    def list_sessions(self, status: Optional[str] = None, limit: int = 50) -> List[SessionSummary]:
        """Most recently created sessions first."""
        with self.provider.session_scope() as db:
            rows = IngestionSessionRepository(db).list_recent(limit=limit, status=status)
            return [SessionSummary.from_model(row) for row in rows]

    def list_batches(self, session_id: str) -> List[BatchSummary]:
        with self.provider.session_scope() as db:
            row = self._require(IngestionSessionRepository(db), session_id)
            return [BatchSummary.from_model(b) for b in IngestionBatchRepository(db).list_for_session(row.id)]

    def list_logs(
        self,
        session_id: str,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        """Log entries of a session in sequence order, as dictionaries."""
        with self.provider.session_scope() as db:
            row = self._require(IngestionSessionRepository(db), session_id)
            entries = IngestionLogRepository(db).list_for_session(
                row.id, level=_value(level), event_type=_value(event_type), limit=limit
            )
            return [
                {
                    'sequence': e.sequence,
                    'level': e.level,
                    'event_type': e.event_type,
                    'message': e.message,
                    'data': e.data,
                    'error_details': e.error_details,
                    'error_category': e.error_category,
                    'batch_id': str(e.batch_id) if e.batch_id else None,
                    'origin': e.origin,
                    'logged_at': _aware(e.logged_at).isoformat() if e.logged_at else None,
                }
                for e in entries
            ]

    # ---------- internals ----------

    def _require(self, repo: IngestionSessionRepository, session_id: str) -> IngestionSession:
        row = repo.get_by_session_id(session_id)
        if row is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return row

    def _require_batch(self, repo: IngestionBatchRepository, batch_id: UUID) -> IngestionBatch:
        batch = repo.get_by_id(batch_id)
        if batch is None:
            raise BatchNotFoundError(f"Batch not found: {batch_id}")
        return batch

    def _transition(
        self,
        session_id: str,
        to_status: str,
        event_type: EventType,
        message: str,
        level: Union[str, Enum] = LogLevel.INFO,
        from_statuses: Optional[List[str]] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Union[Exception, Dict[str, Any], None] = None,
        **values: Any
    ) -> SessionSummary:
        allowed = from_statuses or _sources(SESSION_TRANSITIONS, to_status)
        with self.provider.session_scope() as db:
            repo = IngestionSessionRepository(db)
            row = self._require(repo, session_id)
            previous = row.status
            if previous not in allowed:
                raise InvalidTransitionError(
                    f"Session {session_id}: {previous} → {to_status} is not allowed"
                )

            terminal = to_status in TERMINAL_SESSION_STATUSES
            if not repo.transition(row.id, [previous], to_status, terminal=terminal, **values):
                current = repo.get_by_session_id(session_id).status
                raise InvalidTransitionError(
                    f"Session {session_id} changed to {current} concurrently; {to_status} refused"
                )

            row = repo.get_by_session_id(session_id)
            self._append_log(db, row, event_type, message, level=level, data=data, error=error)
            self._track_active(previous, to_status)

        logger.info(f"✓ Session {session_id}: {previous} → {to_status}")
        return SessionSummary.from_model(row)

    @staticmethod
    def _track_active(previous: str, to_status: str) -> None:
        if to_status == S.RUNNING.value and previous != S.RUNNING.value:
            active_sessions.inc()
        elif previous == S.RUNNING.value and to_status != S.RUNNING.value:
            active_sessions.dec()

    @staticmethod
    def _error_details(error: Union[Exception, Dict[str, Any], None]) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        if error is None:
            return None, None
        if isinstance(error, dict):
            details = dict(error)
            return details, details.get('category')
        if isinstance(error, IngestionError):
            details = error.to_dict()
        else:
            details = {'type': type(error).__name__, 'category': 'processing', 'message': str(error)}
        if error.__traceback__ is not None:
            stack = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
            details['stack'] = stack[-4000:]
        return details, details.get('category')

    def _append_log(
        self,
        db: Session,
        row: IngestionSession,
        event_type: Union[str, Enum],
        message: str,
        level: Union[str, Enum] = LogLevel.INFO,
        batch: Optional[IngestionBatch] = None,
        data: Optional[Dict[str, Any]] = None,
        error: Union[Exception, Dict[str, Any], None] = None,
        duration_ms: Optional[int] = None,
        source_module: Optional[str] = None
    ) -> int:
        sequence = IngestionSessionRepository(db).next_log_sequence(row.id)
        error_details, category = self._error_details(error)
        entry = {
            'session_id': row.id,
            'batch_id': batch.id if batch is not None else None,
            'sequence': sequence,
            'level': _value(level),
            'event_type': _value(event_type),
            'message': message,
            'data': data,
            'error_details': error_details,
            'error_category': category,
            'duration_ms': duration_ms,
            'source_module': source_module or __name__,
            'correlation_id': row.correlation_id,
            'origin': self.origin,
        }
        IngestionLogRepository(db).append(entry)

        if self.event_logger is not None:
            self.event_logger.emit(IngestionEvent(
                session_id=row.session_id,
                sequence=sequence,
                event_type=entry['event_type'],
                level=entry['level'],
                message=message,
                batch_number=batch.batch_number if batch is not None else None,
                error_category=category,
                duration_ms=duration_ms,
                source_module=entry['source_module'],
                correlation_id=row.correlation_id or "",
                origin=self.origin,
                data=dict(data or {}),
            ))
        return sequence
