"""
Crawl Coordinator

Drives one ingestion session page by page:
fetch → transform → match → upsert per record → tally → complete batch →
progress event → stop checks.

Stop checks run after every page, in priority order:
1. max_pages (or an explicit end_page) reached
2. enough consecutive saturated pages of already-known records
3. max_consecutive_errors page failures in a row (fatal)

An empty listing page ends the crawl normally. Cancellation and pause are
read from the persisted session between pages; an in-flight page always
finishes.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from database.connection import DatabaseSessionProvider
from database.models import Agency, EventType, LogLevel, SessionStatus
from database.repositories import AgencyRepository
from ingestion.adapters.base import Adapter
from ingestion.errors import (
    ConflictError,
    FatalIngestionError,
    FetchError,
    IngestionError,
    PageParseError,
    RecordParseError,
)
from ingestion.matcher import DEFAULT_THRESHOLD, EntityMatcher
from ingestion.metrics import record_outcome, record_page, timed
from ingestion.progress import NullPublisher, ProgressEvent
from ingestion.tracker import (
    InvalidTransitionError,
    RetryLimitExceededError,
    SessionSummary,
    SessionTracker,
    TerminalStateError,
)
from ingestion.upsert import UpsertEngine, UpsertOutcome

logger = logging.getLogger(__name__)

STOP_GRANULARITIES = ("page", "record")

ERROR_EVENTS = {
    'connection': EventType.CONNECTION_ERROR,
    'timeout': EventType.TIMEOUT_ERROR,
    'validation': EventType.VALIDATION_ERROR,
}


class StopReason(str, Enum):
    MAX_PAGES = "max_pages_reached"
    EXISTING_RECORDS = "existing_records_threshold"
    NO_MORE_RECORDS = "no_more_records"
    ERROR_CEILING = "max_consecutive_errors"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    CANCELLED = "cancelled"
    PAUSED = "paused"


@dataclass
class CrawlLimits:
    """Bounds and pacing of one crawl"""
    start_page: int = 1
    max_pages: int = 100
    end_page: Optional[int] = None
    consecutive_existing_threshold: int = 10
    consecutive_existing_pages: int = 1
    stop_granularity: str = "page"
    stop_on_existing: bool = True
    max_consecutive_errors: int = 3
    page_retry_limit: int = 3
    pause_between_pages_ms: int = 3000
    max_workers: int = 4
    match_threshold: float = DEFAULT_THRESHOLD
    require_postcode_agreement: bool = True
    options: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> 'CrawlLimits':
        """
        Raises:
            ValueError: If any limit is out of range
        """
        for name in ('start_page', 'max_pages', 'consecutive_existing_threshold',
                     'consecutive_existing_pages', 'max_consecutive_errors', 'max_workers'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.end_page is not None and self.end_page < self.start_page:
            raise ValueError("end_page must not be before start_page")
        if self.page_retry_limit < 0 or self.pause_between_pages_ms < 0:
            raise ValueError("page_retry_limit and pause_between_pages_ms must be >= 0")
        if self.stop_granularity not in STOP_GRANULARITIES:
            raise ValueError(f"stop_granularity must be one of {STOP_GRANULARITIES}")
        if not 0 < self.match_threshold <= 1:
            raise ValueError("match_threshold must be in (0, 1]")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlLimits':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    @classmethod
    def from_config(cls, config: Any, **overrides: Any) -> 'CrawlLimits':
        """Build limits from a ConfigManager's crawl, matching and performance sections."""
        crawl = config.crawl
        values = {
            'max_pages': crawl.max_pages_per_session,
            'consecutive_existing_threshold': crawl.consecutive_existing_threshold,
            'consecutive_existing_pages': crawl.consecutive_existing_pages,
            'stop_granularity': crawl.stop_granularity,
            'max_consecutive_errors': crawl.max_consecutive_errors,
            'page_retry_limit': crawl.page_retry_limit,
            'pause_between_pages_ms': crawl.pause_between_pages_ms,
            'max_workers': config.performance.max_workers,
            'match_threshold': config.matching.threshold,
            'require_postcode_agreement': config.matching.require_postcode_agreement,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls.from_dict(values)


@dataclass
class RecordResult:
    """What happened to one raw record"""
    regulator_id: Optional[str]
    outcome: Optional[UpsertOutcome] = None
    error: Optional[IngestionError] = None
    changed_fields: List[str] = field(default_factory=list)

    @property
    def existed(self) -> Optional[bool]:
        """True for known records, False for new ones, None when it failed"""
        if self.error is not None:
            return None
        return self.outcome != UpsertOutcome.CREATED


@dataclass
class PageStats:
    """Tally of one processed page"""
    page: int
    processed: int = 0
    created: int = 0
    updated: int = 0
    existing: int = 0
    failed: int = 0
    source_ids: List[str] = field(default_factory=list)
    existence: List[Optional[bool]] = field(default_factory=list)
    results: List[RecordResult] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return self.processed == 0

    def add(self, result: RecordResult) -> None:
        self.processed += 1
        self.results.append(result)
        self.existence.append(result.existed)
        if result.regulator_id:
            self.source_ids.append(result.regulator_id)
        if result.error is not None:
            self.failed += 1
        elif result.outcome == UpsertOutcome.CREATED:
            self.created += 1
        elif result.outcome == UpsertOutcome.UPDATED:
            self.updated += 1
        else:
            self.existing += 1

    def counters(self) -> Dict[str, int]:
        return {
            'processed': self.processed,
            'created': self.created,
            'updated': self.updated,
            'existing': self.existing,
            'failed': self.failed,
        }


@dataclass
class CrawlResult:
    """Outcome of CrawlCoordinator.run"""
    session_id: str
    status: str
    stop_reason: Optional[str]
    pages_processed: int
    last_page: Optional[int]
    summary: Optional[SessionSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'status': self.status,
            'stop_reason': self.stop_reason,
            'pages_processed': self.pages_processed,
            'last_page': self.last_page,
            'summary': self.summary.to_dict() if self.summary else None,
        }


# ============================================
# STOP HEURISTIC
# ============================================

class ExistingRunDetector:
    """
    Decides when a crawl has reached records it already holds.

    page granularity: a page is saturated when every record on it that was
    processed already existed. Stop after pages_required saturated pages in
    a row; a page with a created record or a failed page restarts the count.

    record granularity: one run counter spans page boundaries and the crawl
    stops as soon as it reaches the threshold.
    """

    def __init__(self, threshold: int, pages_required: int = 1, granularity: str = "page"):
        self.threshold = threshold
        self.pages_required = pages_required
        self.granularity = granularity
        self.run = 0
        self.saturated_pages = 0

    def page_saturated(self, existence: List[Optional[bool]]) -> bool:
        known = [e for e in existence if e is not None]
        return bool(known) and all(known)

    def observe(self, existence: List[Optional[bool]]) -> bool:
        """
        Feed one page's existence flags in listing order.

        Returns:
            True when the crawl should stop
        """
        if self.granularity == "record":
            reached = False
            for existed in existence:
                if existed is None:
                    continue
                self.run = self.run + 1 if existed else 0
                reached = reached or self.run >= self.threshold
            return reached

        if self.page_saturated(existence):
            self.saturated_pages += 1
        else:
            self.saturated_pages = 0
        return self.saturated_pages >= self.pages_required

    def page_failed(self) -> None:
        """A page that could not be fetched breaks both kinds of run."""
        self.run = 0
        self.saturated_pages = 0


# ============================================
# COORDINATOR
# ============================================

class CrawlCoordinator:
    """Runs one session's crawl against an adapter"""

    def __init__(
        self,
        adapter: Adapter,
        tracker: SessionTracker,
        provider: DatabaseSessionProvider,
        limits: Optional[CrawlLimits] = None,
        publisher: Any = None,
        sleep: Callable[[float], None] = time.sleep
    ):
        """
        Args:
            adapter: Source adapter
            tracker: Session tracker
            provider: Database session provider for record transactions
            limits: Crawl limits (defaults when omitted)
            publisher: Progress publisher; events are discarded when omitted
            sleep: Sleep function between pages (injectable for tests)
        """
        self.adapter = adapter
        self.tracker = tracker
        self.provider = provider
        self.limits = (limits or CrawlLimits()).validate()
        self.publisher = publisher or NullPublisher()
        self.sleep = sleep

    def run(self, session_id: str) -> CrawlResult:
        """
        Crawl until a stop condition, cancellation or pause.

        Returns:
            CrawlResult with the final session summary

        Raises:
            FatalIngestionError: Storage became unavailable
        """
        limits = self.limits
        started = time.perf_counter()

        status = self.tracker.get_status(session_id)
        if status in (SessionStatus.PENDING.value, SessionStatus.RETRYING.value):
            self.tracker.mark_running(session_id)
        elif status != SessionStatus.RUNNING.value:
            raise InvalidTransitionError(f"Session {session_id} is {status}; cannot crawl")

        detector = ExistingRunDetector(
            limits.consecutive_existing_threshold,
            limits.consecutive_existing_pages,
            limits.stop_granularity
        )
        page = limits.start_page
        pages_done = 0
        last_page = None
        consecutive_errors = 0
        reason: Optional[StopReason] = None

        try:
            agency = self._ensure_agency()
            while reason is None:
                status = self.tracker.get_status(session_id)
                if status != SessionStatus.RUNNING.value:
                    reason = StopReason.PAUSED if status == SessionStatus.PAUSED.value else StopReason.CANCELLED
                    break
                if pages_done:
                    self.sleep(limits.pause_between_pages_ms / 1000)

                try:
                    stats = self._process_page(session_id, agency, page)
                except (TerminalStateError, InvalidTransitionError):
                    # Cancelled or paused between the status check and the batch
                    if self.tracker.get_status(session_id) == SessionStatus.RUNNING.value:
                        raise
                    continue

                pages_done += 1
                last_page = page
                consecutive_errors = 0 if stats is not None else consecutive_errors + 1
                if stats is None:
                    detector.page_failed()
                saturated = (
                    stats is not None and not stats.is_empty
                    and limits.stop_on_existing and detector.observe(stats.existence)
                )

                if pages_done >= limits.max_pages or (limits.end_page is not None and page >= limits.end_page):
                    reason = StopReason.MAX_PAGES
                elif stats is not None and stats.is_empty:
                    reason = StopReason.NO_MORE_RECORDS
                elif saturated:
                    reason = StopReason.EXISTING_RECORDS
                elif consecutive_errors >= limits.max_consecutive_errors:
                    raise FatalIngestionError(
                        f"{consecutive_errors} consecutive page failures (last page {page})",
                        context={'page': page, 'max_consecutive_errors': limits.max_consecutive_errors}
                    )
                page += 1

        except FatalIngestionError as e:
            return self._fail(session_id, e, StopReason.ERROR_CEILING, started, pages_done, last_page)
        except OperationalError as e:
            fatal = FatalIngestionError(
                f"Storage unavailable: {e.orig if e.orig is not None else e}",
                context={'page': page}
            )
            self._fail(session_id, fatal, StopReason.STORAGE_UNAVAILABLE, started, pages_done, last_page)
            raise fatal from e

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if reason in (StopReason.CANCELLED, StopReason.PAUSED):
            summary = self.tracker.summary(session_id)
        else:
            try:
                summary = self.tracker.complete(session_id, reason.value, processing_time_ms=elapsed_ms)
            except InvalidTransitionError:
                summary = self.tracker.summary(session_id)
                reason = StopReason.CANCELLED

        self._publish(session_id, f"session_{summary.status}", last_page, summary=summary)
        logger.info(
            f"✓ Session {session_id} {summary.status} after {pages_done} pages "
            f"({reason.value}): {summary.records_created} created, "
            f"{summary.records_updated} updated, {summary.records_failed} failed"
        )
        return CrawlResult(
            session_id=session_id,
            status=summary.status,
            stop_reason=reason.value,
            pages_processed=pages_done,
            last_page=last_page,
            summary=summary,
        )

    # ---------- pages ----------

    def _process_page(self, session_id: str, agency: Agency, page: int) -> Optional[PageStats]:
        """
        Process one listing page inside its own batch.

        Returns:
            PageStats, or None when the page could not be fetched
        """
        page_start = time.perf_counter()
        batch = self.tracker.start_batch(session_id, page)

        while True:
            try:
                with timed("fetch_page"):
                    fetched = self.adapter.fetch(page)
                break
            except (FetchError, PageParseError) as e:
                self.tracker.fail_batch(batch.batch_id, e)
                try:
                    self.tracker.retry_batch(batch.batch_id, max_retries=self.limits.page_retry_limit)
                except RetryLimitExceededError:
                    record_page(self.adapter.agency_code, "failed")
                    self.tracker.log(
                        session_id, ERROR_EVENTS.get(e.category, EventType.PROCESSING_ERROR),
                        f"Page {page} failed after {self.limits.page_retry_limit} retries: {e}",
                        level=LogLevel.ERROR, batch_id=batch.batch_id, error=e,
                        source_module=__name__
                    )
                    self._publish(session_id, "page_failed", page, message=str(e))
                    return None
                self.tracker.resume_batch(batch.batch_id)
                logger.warning(f"✗ Page {page} failed ({e}); retrying")

        stats = PageStats(page=page)
        if fetched.records:
            with ThreadPoolExecutor(max_workers=self.limits.max_workers) as pool:
                for result in pool.map(lambda raw: self._process_record(agency, raw), fetched.records):
                    stats.add(result)

        self._log_record_outcomes(session_id, batch.batch_id, stats)

        elapsed_ms = int((time.perf_counter() - page_start) * 1000)
        self.tracker.complete_batch(
            batch.batch_id,
            processed=stats.processed,
            created=stats.created,
            updated=stats.updated,
            existing=stats.existing,
            failed=stats.failed,
            source_ids=stats.source_ids,
            processing_time_ms=elapsed_ms
        )
        record_page(self.adapter.agency_code, "completed")
        self._publish(session_id, "page_completed", page, counters=stats.counters())
        return stats

    def _process_record(self, agency: Agency, raw: Dict[str, Any]) -> RecordResult:
        """Transform, match and upsert one raw record in its own transaction."""
        regulator_id = raw.get('regulator_id')
        try:
            record = self.adapter.transform(raw)
        except IngestionError as e:
            return RecordResult(regulator_id, error=e)
        except (ValueError, TypeError, KeyError) as e:
            return RecordResult(regulator_id, error=RecordParseError(
                f"Could not transform record: {e}", context={'regulator_id': regulator_id}
            ))

        party = record.party
        details = {
            k: v for k, v in party.to_dict().items()
            if k not in ('name', 'address', 'postcode')
        }
        try:
            with self.provider.session_scope() as db:
                with timed("process_record"):
                    matcher = EntityMatcher(
                        db,
                        threshold=self.limits.match_threshold,
                        require_postcode_agreement=self.limits.require_postcode_agreement
                    )
                    match = matcher.resolve(
                        party.name, address=party.address, postcode=party.postcode, **details
                    )
                    result = UpsertEngine(db).upsert(
                        record, match.offender, agency, key=self.adapter.target_key(record)
                    )
        except ConflictError as e:
            return RecordResult(record.regulator_id, error=e)
        except OperationalError:
            raise
        except SQLAlchemyError as e:
            return RecordResult(record.regulator_id, error=IngestionError(
                f"Persistence error: {e}", context={'regulator_id': record.regulator_id}
            ))

        record_outcome(self.adapter.agency_code, result.outcome.value)
        return RecordResult(
            result.regulator_id,
            outcome=result.outcome,
            changed_fields=sorted(result.changed_fields)
        )

    def _log_record_outcomes(self, session_id: str, batch_id, stats: PageStats) -> None:
        for result in stats.results:
            error = result.error
            if error is not None:
                level = LogLevel.WARN if error.category == 'validation' else LogLevel.ERROR
                self.tracker.log(
                    session_id,
                    ERROR_EVENTS.get(error.category, EventType.RECORD_FAILED),
                    f"Record {result.regulator_id or '<no id>'} failed: {error}",
                    level=level, batch_id=batch_id, error=error,
                    data={'regulator_id': result.regulator_id},
                    source_module=__name__
                )
            elif result.outcome == UpsertOutcome.CREATED:
                self.tracker.log(
                    session_id, EventType.RECORD_CREATED, f"Created {result.regulator_id}",
                    level=LogLevel.DEBUG, batch_id=batch_id,
                    data={'regulator_id': result.regulator_id},
                    source_module=__name__
                )
            elif result.outcome == UpsertOutcome.UPDATED:
                self.tracker.log(
                    session_id, EventType.RECORD_UPDATED,
                    f"Updated {result.regulator_id}: {', '.join(result.changed_fields)}",
                    batch_id=batch_id,
                    data={'regulator_id': result.regulator_id, 'changed_fields': result.changed_fields},
                    source_module=__name__
                )

    # ---------- helpers ----------

    def _ensure_agency(self) -> Agency:
        with self.provider.session_scope() as db:
            return AgencyRepository(db).get_or_create(
                self.adapter.agency_code,
                name=self.adapter.agency_name,
                base_url=self.adapter.fetcher.base_url
            )

    def _fail(
        self,
        session_id: str,
        error: FatalIngestionError,
        reason: StopReason,
        started: float,
        pages_done: int,
        last_page: Optional[int]
    ) -> CrawlResult:
        logger.error(f"✗ Session {session_id} failed: {error}")
        elapsed_ms = int((time.perf_counter() - started) * 1000)
        summary = None
        try:
            summary = self.tracker.fail(
                session_id, error, stop_reason=reason.value, processing_time_ms=elapsed_ms
            )
        except SQLAlchemyError as e:
            logger.error(f"✗ Could not record failure of session {session_id}: {e}")
        except InvalidTransitionError as e:
            logger.warning(f"Session {session_id} already left running: {e}")
        self._publish(session_id, "session_failed", last_page, message=str(error), summary=summary)
        return CrawlResult(
            session_id=session_id,
            status=summary.status if summary else SessionStatus.FAILED.value,
            stop_reason=reason.value,
            pages_processed=pages_done,
            last_page=last_page,
            summary=summary,
        )

    def _publish(
        self,
        session_id: str,
        event: str,
        page: Optional[int],
        counters: Optional[Dict[str, int]] = None,
        message: str = "",
        summary: Optional[SessionSummary] = None
    ) -> None:
        if summary is not None and counters is None:
            counters = {
                'processed': summary.records_processed,
                'created': summary.records_created,
                'updated': summary.records_updated,
                'existing': summary.records_existing,
                'failed': summary.records_failed,
            }
        self.publisher.publish(ProgressEvent(
            session_id=session_id,
            event=event,
            page=page,
            counters=counters or {},
            message=message,
        ))
