"""
Repository Pattern for Enforcement Ingest Database Operations

Provides clean data access layer with proper typing and error handling.
State changes on sessions and batches are compare-and-set UPDATEs and all
counters are applied as SQL deltas, so concurrent writers never overwrite
each other with stale in-memory values.
"""

import logging
from typing import List, Optional, Dict, Any, Iterable, Tuple, Type, Union
from uuid import UUID
from datetime import date
from decimal import Decimal

from sqlalchemy import select, update, func, and_, case
from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError

from database.models import (
    Agency,
    Offender,
    EnforcementCase,
    EnforcementNotice,
    IngestionSession,
    IngestionBatch,
    IngestionLog,
    TERMINAL_SESSION_STATUSES,
    MAX_LOG_MESSAGE_LENGTH,
    build_identity_key,
    utcnow,
)

logger = logging.getLogger(__name__)

EnforcementRecord = Union[EnforcementCase, EnforcementNotice]

SESSION_COUNTERS = (
    'records_processed',
    'records_created',
    'records_updated',
    'records_existing',
    'records_failed',
    'error_count',
    'pages_processed',
)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""
    pass


class DuplicateEntityError(RepositoryError):
    """Raised when attempting to create a duplicate entity."""
    pass


# ============================================
# AGENCY REPOSITORY
# ============================================

class AgencyRepository:
    """Repository for source agencies."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_code(self, code: str) -> Optional[Agency]:
        query = select(Agency).where(Agency.code == code)
        return self.session.execute(query).scalar_one_or_none()

    def get_or_create(
        self,
        code: str,
        name: Optional[str] = None,
        base_url: Optional[str] = None
    ) -> Agency:
        """
        Get an agency by code, creating it on first use.

        Args:
            code: Short agency code (e.g. 'hse')
            name: Display name used when creating
            base_url: Listing base URL used when creating

        Returns:
            Agency instance
        """
        agency = self.get_by_code(code)
        if agency:
            return agency

        agency = Agency(code=code, name=name or code.upper(), base_url=base_url)
        try:
            with self.session.begin_nested():
                self.session.add(agency)
                self.session.flush()
        except IntegrityError:
            # Another writer created it first
            agency = self.get_by_code(code)
            if agency is None:
                raise
        return agency


# ============================================
# OFFENDER REPOSITORY
# ============================================

class OffenderRepository:
    """Repository for deduplicated offenders."""

    def __init__(self, session: Session):
        self.session = session

    def get_by_id(self, offender_id: UUID) -> Optional[Offender]:
        return self.session.get(Offender, offender_id)

    def get_by_identity(
        self,
        normalized_name: str,
        postcode: Optional[str]
    ) -> Optional[Offender]:
        """
        Exact lookup on the (normalized name, postcode) pair.

        Args:
            normalized_name: Normalized party name
            postcode: Normalized postcode or None

        Returns:
            Offender or None
        """
        key = build_identity_key(normalized_name, postcode)
        query = select(Offender).where(Offender.identity_key == key)
        return self.session.execute(query).scalar_one_or_none()

    def list_match_candidates(self) -> List[Tuple[UUID, str, Optional[str]]]:
        """
        Lightweight projection used by fuzzy matching.

        Returns:
            List of (id, normalized_name, postcode) tuples
        """
        query = select(
            Offender.id,
            Offender.normalized_name,
            Offender.postcode
        ).order_by(Offender.created_at)
        return [tuple(row) for row in self.session.execute(query).all()]

    def create(self, offender_data: Dict[str, Any]) -> Offender:
        """
        Create a new offender.

        Args:
            offender_data: Dictionary containing offender fields; must include
                normalized_name, postcode may be None

        Returns:
            Created Offender instance

        Raises:
            DuplicateEntityError: If an offender with the same identity exists
        """
        offender_data = dict(offender_data)
        offender_data['identity_key'] = build_identity_key(
            offender_data.get('normalized_name', ''),
            offender_data.get('postcode')
        )
        offender = Offender(**offender_data)
        try:
            with self.session.begin_nested():
                self.session.add(offender)
                self.session.flush()
        except IntegrityError as e:
            raise DuplicateEntityError(f"Offender already exists: {offender_data['identity_key']}") from e

        logger.debug(f"Created offender: {offender.id} ({offender.name})")
        return offender

    def apply_statistics(
        self,
        offender_id: UUID,
        cases: int = 0,
        notices: int = 0,
        fines: Decimal = Decimal("0"),
        seen_on: Optional[date] = None
    ) -> None:
        """
        Apply statistic deltas to an offender in a single atomic UPDATE.

        Args:
            offender_id: Offender to update
            cases: Delta for total_cases
            notices: Delta for total_notices
            fines: Delta for total_fines
            seen_on: Action date extending first/last seen dates
        """
        values: Dict[str, Any] = {
            'total_cases': Offender.total_cases + cases,
            'total_notices': Offender.total_notices + notices,
            'total_fines': Offender.total_fines + (fines or Decimal("0")),
            'updated_at': utcnow(),
        }
        if seen_on is not None:
            values['first_seen_date'] = case(
                (Offender.first_seen_date.is_(None), seen_on),
                (Offender.first_seen_date > seen_on, seen_on),
                else_=Offender.first_seen_date
            )
            values['last_seen_date'] = case(
                (Offender.last_seen_date.is_(None), seen_on),
                (Offender.last_seen_date < seen_on, seen_on),
                else_=Offender.last_seen_date
            )

        stmt = (
            update(Offender)
            .where(Offender.id == offender_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        self.session.execute(stmt)


# ============================================
# ENFORCEMENT RECORD REPOSITORY
# ============================================

class EnforcementRecordRepository:
    """Repository for cases and notices, keyed by (regulator_id, agency)."""

    def __init__(self, session: Session, model: Type[EnforcementRecord] = EnforcementCase):
        self.session = session
        self.model = model

    def get_by_natural_key(self, regulator_id: str, agency_id: UUID) -> Optional[EnforcementRecord]:
        """
        Get a record by its natural key.

        Args:
            regulator_id: Source record id
            agency_id: Owning agency

        Returns:
            Record or None
        """
        query = select(self.model).where(
            and_(
                self.model.regulator_id == regulator_id,
                self.model.agency_id == agency_id
            )
        )
        return self.session.execute(query).scalar_one_or_none()

    def create(self, record_data: Dict[str, Any]) -> EnforcementRecord:
        """
        Create a new record.

        Raises:
            DuplicateEntityError: If the natural key already exists
        """
        record = self.model(**record_data)
        try:
            with self.session.begin_nested():
                self.session.add(record)
                self.session.flush()
            return record
        except IntegrityError as e:
            raise DuplicateEntityError(
                f"{self.model.__name__} already exists: {record_data.get('regulator_id')}"
            ) from e

    def update_fields(self, record: EnforcementRecord, changes: Dict[str, Any]) -> EnforcementRecord:
        """
        Write only the given fields and bump updated_at.

        Args:
            record: Persisted record
            changes: Field name to new value

        Returns:
            Updated record
        """
        for key, value in changes.items():
            setattr(record, key, value)
        record.updated_at = utcnow()
        self.session.flush()
        return record

    def count_by_agency(self, agency_id: UUID) -> int:
        query = select(func.count()).select_from(self.model).where(
            self.model.agency_id == agency_id
        )
        return self.session.execute(query).scalar_one()


# ============================================
# INGESTION SESSION REPOSITORY
# ============================================

class IngestionSessionRepository:
    """Repository for ingestion sessions."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, session_data: Dict[str, Any]) -> IngestionSession:
        """
        Create a new ingestion session.

        Raises:
            DuplicateEntityError: If the session_id is already taken
        """
        ingestion_session = IngestionSession(**session_data)
        try:
            with self.session.begin_nested():
                self.session.add(ingestion_session)
                self.session.flush()
            return ingestion_session
        except IntegrityError as e:
            raise DuplicateEntityError(
                f"Session already exists: {session_data.get('session_id')}"
            ) from e

    def get_by_session_id(self, session_id: str) -> Optional[IngestionSession]:
        query = select(IngestionSession).where(
            IngestionSession.session_id == session_id
        ).execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    def require(self, session_id: str) -> IngestionSession:
        """
        Get a session or raise.

        Raises:
            EntityNotFoundError: If no session has this id
        """
        ingestion_session = self.get_by_session_id(session_id)
        if ingestion_session is None:
            raise EntityNotFoundError(f"Session not found: {session_id}")
        return ingestion_session

    def transition(
        self,
        session_pk: UUID,
        allowed_from: Iterable[str],
        to_status: str,
        terminal: bool = False,
        **values: Any
    ) -> bool:
        """
        Compare-and-set status change.

        Args:
            session_pk: Surrogate id of the session
            allowed_from: Statuses the row must currently have
            to_status: New status
            terminal: If True, set completed_at unless it is already set
            **values: Extra columns to write

        Returns:
            True if the row changed, False if its status was not in allowed_from
        """
        now = utcnow()
        values['status'] = to_status
        values['last_transition_at'] = now
        values['updated_at'] = now
        if terminal:
            values['completed_at'] = func.coalesce(IngestionSession.completed_at, now)

        stmt = (
            update(IngestionSession)
            .where(
                and_(
                    IngestionSession.id == session_pk,
                    IngestionSession.status.in_(list(allowed_from))
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def increment_counters(
        self,
        session_pk: UUID,
        deltas: Dict[str, int],
        current_page: Optional[int] = None
    ) -> bool:
        """
        Atomically add deltas to session counters.

        Terminal sessions are excluded by the WHERE clause.

        Args:
            session_pk: Surrogate id of the session
            deltas: Counter name to increment
            current_page: Page number to record, if any

        Returns:
            True if the counters were applied
        """
        values: Dict[str, Any] = {}
        for name, delta in deltas.items():
            if name not in SESSION_COUNTERS:
                raise RepositoryError(f"Unknown session counter: {name}")
            if delta:
                values[name] = getattr(IngestionSession, name) + delta
        if current_page is not None:
            values['current_page'] = current_page
        if not values:
            return True
        values['updated_at'] = utcnow()

        stmt = (
            update(IngestionSession)
            .where(
                and_(
                    IngestionSession.id == session_pk,
                    IngestionSession.status.not_in(list(TERMINAL_SESSION_STATUSES))
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def next_log_sequence(self, session_pk: UUID) -> int:
        """Advance and return the session's logical clock."""
        stmt = (
            update(IngestionSession)
            .where(IngestionSession.id == session_pk)
            .values(log_sequence=IngestionSession.log_sequence + 1)
            .returning(IngestionSession.log_sequence)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).scalar_one()

    def list_recent(self, limit: int = 50, status: Optional[str] = None) -> List[IngestionSession]:
        query = select(IngestionSession).order_by(IngestionSession.created_at.desc())
        if status:
            query = query.where(IngestionSession.status == status)
        return list(self.session.execute(query.limit(limit)).scalars().all())


# ============================================
# INGESTION BATCH REPOSITORY
# ============================================

class IngestionBatchRepository:
    """Repository for per-page batches."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, batch_data: Dict[str, Any]) -> IngestionBatch:
        """
        Create a new batch.

        Raises:
            DuplicateEntityError: If the batch number is already used in the session
        """
        batch = IngestionBatch(**batch_data)
        try:
            with self.session.begin_nested():
                self.session.add(batch)
                self.session.flush()
            return batch
        except IntegrityError as e:
            raise DuplicateEntityError(
                f"Batch {batch_data.get('batch_number')} already exists"
            ) from e

    def get_by_id(self, batch_id: UUID) -> Optional[IngestionBatch]:
        query = select(IngestionBatch).where(
            IngestionBatch.id == batch_id
        ).execution_options(populate_existing=True)
        return self.session.execute(query).scalar_one_or_none()

    def next_batch_number(self, session_pk: UUID) -> int:
        query = select(func.max(IngestionBatch.batch_number)).where(
            IngestionBatch.session_id == session_pk
        )
        current = self.session.execute(query).scalar_one_or_none()
        return (current or 0) + 1

    def transition(
        self,
        batch_id: UUID,
        allowed_from: Iterable[str],
        to_status: str,
        max_retry_count: Optional[int] = None,
        **values: Any
    ) -> bool:
        """
        Compare-and-set status change for a batch.

        Args:
            batch_id: Batch to change
            allowed_from: Statuses the row must currently have
            to_status: New status
            max_retry_count: If given, the row must also have retry_count below it
            **values: Extra columns to write

        Returns:
            True if the row changed
        """
        conditions = [
            IngestionBatch.id == batch_id,
            IngestionBatch.status.in_(list(allowed_from)),
        ]
        if max_retry_count is not None:
            conditions.append(IngestionBatch.retry_count < max_retry_count)

        values['status'] = to_status
        values['updated_at'] = utcnow()
        stmt = (
            update(IngestionBatch)
            .where(and_(*conditions))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.session.execute(stmt).rowcount == 1

    def list_for_session(self, session_pk: UUID) -> List[IngestionBatch]:
        query = select(IngestionBatch).where(
            IngestionBatch.session_id == session_pk
        ).order_by(IngestionBatch.batch_number)
        return list(self.session.execute(query).scalars().all())


# ============================================
# INGESTION LOG REPOSITORY
# ============================================

class IngestionLogRepository:
    """Append-only repository for ingestion log entries."""

    def __init__(self, session: Session):
        self.session = session

    def append(self, log_data: Dict[str, Any]) -> IngestionLog:
        """
        Append a log entry.

        The message is truncated to the column length.

        Args:
            log_data: Log entry fields including session_id and sequence

        Returns:
            Created IngestionLog
        """
        log_data = dict(log_data)
        message = log_data.get('message') or ''
        log_data['message'] = message[:MAX_LOG_MESSAGE_LENGTH]

        entry = IngestionLog(**log_data)
        self.session.add(entry)
        self.session.flush()
        return entry

    def list_for_session(
        self,
        session_pk: UUID,
        level: Optional[str] = None,
        event_type: Optional[str] = None,
        limit: int = 500
    ) -> List[IngestionLog]:
        """
        List a session's log entries in logical-clock order.

        Args:
            session_pk: Surrogate id of the session
            level: Optional level filter
            event_type: Optional event type filter
            limit: Maximum entries

        Returns:
            Entries ordered by sequence
        """
        conditions = [IngestionLog.session_id == session_pk]
        if level:
            conditions.append(IngestionLog.level == level)
        if event_type:
            conditions.append(IngestionLog.event_type == event_type)

        query = select(IngestionLog).where(
            and_(*conditions)
        ).order_by(IngestionLog.sequence).limit(limit)
        return list(self.session.execute(query).scalars().all())
