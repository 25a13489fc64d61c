"""
Ingestion Service

Entry point for starting and steering ingestion sessions. Crawls run on a
small thread pool so callers (the HTTP API in particular) get the session
id back immediately; wait() blocks on a crawl started by this process.

Usage:
    service = IngestionService(get_db_provider(), get_config())
    session_id = service.start_session(SourceConfig(adapter="hse_notices"))
    service.get_session(session_id).to_dict()
    service.cancel_session(session_id)
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from database.connection import DatabaseSessionProvider
from ingestion.adapters import Adapter, SourceConfig, build_adapter
from ingestion.coordinator import CrawlCoordinator, CrawlLimits, CrawlResult
from ingestion.errors import FatalIngestionError
from ingestion.event_log import IngestionEventLogger
from ingestion.progress import NullPublisher
from ingestion.tracker import (
    BatchSummary,
    InvalidTransitionError,
    SessionSummary,
    SessionTracker,
    TerminalStateError,
)

logger = logging.getLogger(__name__)


class IngestionService:
    """Starts, inspects and steers ingestion sessions"""

    def __init__(
        self,
        provider: DatabaseSessionProvider,
        config: Optional[Any] = None,
        publisher: Any = None,
        tracker: Optional[SessionTracker] = None,
        adapter_factory: Callable[[SourceConfig], Adapter] = build_adapter,
        event_logger: Optional[IngestionEventLogger] = None,
        max_concurrent_sessions: int = 2,
        sleep: Optional[Callable[[float], None]] = None
    ):
        """
        Args:
            provider: Database session provider
            config: ConfigManager supplying default source and limits
            publisher: Progress publisher shared by every crawl
            tracker: Session tracker (built from provider when omitted)
            adapter_factory: Builds an adapter from a SourceConfig
            event_logger: JSON event log mirror for the default tracker
            max_concurrent_sessions: Crawls allowed to run at once
            sleep: Sleep between pages (injectable for tests)
        """
        self.provider = provider
        self.config = config
        self.publisher = publisher or NullPublisher()
        self.tracker = tracker or SessionTracker(provider, event_logger=event_logger)
        self.adapter_factory = adapter_factory
        self.sleep = sleep
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_sessions, thread_name_prefix="ingest-session"
        )
        self._futures: Dict[str, Future] = {}
        self._lock = threading.Lock()

    # ---------- defaults ----------

    def default_source_config(self, **overrides: Any) -> SourceConfig:
        """Source settings from the crawl section of the configuration"""
        values: Dict[str, Any] = {}
        if self.config is not None:
            crawl = self.config.crawl
            values = {
                'adapter': crawl.adapter,
                'agency_code': crawl.agency_code,
                'base_url': crawl.base_url,
                'endpoint_path': crawl.endpoint_path,
                'database': crawl.database,
                'country': crawl.country,
                'fetch_details': crawl.fetch_details,
                'network_timeout_ms': crawl.network_timeout_ms,
                'fetch_max_attempts': crawl.fetch_max_attempts,
                'requests_per_minute': crawl.requests_per_minute,
            }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return SourceConfig.from_dict(values)

    def default_limits(self, **overrides: Any) -> CrawlLimits:
        if self.config is None:
            return CrawlLimits.from_dict({k: v for k, v in overrides.items() if v is not None})
        return CrawlLimits.from_config(self.config, **overrides)

    # ---------- exposed operations ----------

    def start_session(
        self,
        source_config: Optional[SourceConfig] = None,
        limits: Optional[CrawlLimits] = None,
        session_id: Optional[str] = None,
        initiated_by: Optional[str] = None,
        correlation_id: Optional[str] = None,
        wait: bool = False
    ) -> str:
        """
        Create a session and start crawling it.

        Idempotent when session_id is supplied: an existing session is
        returned without starting a second crawl.

        Raises:
            ValueError: Unknown adapter or invalid limits
        """
        source_config = source_config or self.default_source_config()
        limits = (limits or self.default_limits()).validate()
        adapter = self.adapter_factory(source_config)

        summary, created = self.tracker.create_session(
            sync_type=adapter.sync_type,
            target_resource=adapter.target_resource,
            session_id=session_id,
            source_adapter=adapter.name,
            initiated_by=initiated_by,
            correlation_id=correlation_id,
            config={'source': source_config.to_dict(), 'limits': limits.to_dict()},
        )
        if not created:
            adapter.close()
            logger.info(f"Session {summary.session_id} already exists ({summary.status}); not restarted")
            return summary.session_id

        self._submit(summary.session_id, adapter, limits, wait)
        return summary.session_id

    def get_session(self, session_id: str) -> SessionSummary:
        """
        Raises:
            SessionNotFoundError: Unknown session id
        """
        return self.tracker.summary(session_id)

    def cancel_session(self, session_id: str, reason: Optional[str] = None) -> bool:
        """
        Cancel a pending, running, paused or retrying session. The page in
        flight finishes; no new page starts.

        Raises:
            SessionNotFoundError: Unknown session id
            InvalidTransitionError: Session is already terminal
        """
        self.tracker.cancel(session_id, reason)
        return True

    # ---------- supplemented operations ----------

    def scrape_page_range(
        self,
        source_config: Optional[SourceConfig],
        start_page: int,
        end_page: int,
        session_id: Optional[str] = None,
        wait: bool = False
    ) -> str:
        """Crawl an explicit page range; the existing-records stop is disabled."""
        if end_page < start_page:
            raise ValueError("end_page must not be before start_page")
        limits = self.default_limits(
            start_page=start_page,
            end_page=end_page,
            max_pages=end_page - start_page + 1,
            stop_on_existing=False,
        )
        return self.start_session(source_config, limits, session_id=session_id, wait=wait)

    def pause_session(self, session_id: str) -> SessionSummary:
        """running → paused; the crawl returns after its current page."""
        return self.tracker.pause(session_id)

    def resume_session(self, session_id: str, wait: bool = False) -> SessionSummary:
        """paused → running, continuing after the last processed page."""
        self._ensure_idle(session_id)
        summary = self.tracker.resume(session_id)
        self._restart(summary, wait)
        return self.tracker.summary(session_id) if wait else summary

    def retry_session(self, session_id: str, wait: bool = False) -> SessionSummary:
        """failed → retrying → running, continuing after the last processed page."""
        self._ensure_idle(session_id)
        summary = self.tracker.retry(session_id)
        self._restart(summary, wait)
        return self.tracker.summary(session_id) if wait else summary

    def list_sessions(self, status: Optional[str] = None, limit: int = 50) -> List[SessionSummary]:
        return self.tracker.list_sessions(status=status, limit=limit)

    def list_batches(self, session_id: str) -> List[BatchSummary]:
        return self.tracker.list_batches(session_id)

    def list_logs(self, session_id: str, **filters: Any) -> List[Dict[str, Any]]:
        return self.tracker.list_logs(session_id, **filters)

    def wait(self, session_id: str, timeout: Optional[float] = None) -> Optional[CrawlResult]:
        """
        Block until this process's crawl of the session finishes.

        Returns:
            The crawl result, or None when no crawl of the session is in flight
        """
        with self._lock:
            future = self._futures.get(session_id)
        if future is None:
            return None
        try:
            return future.result(timeout=timeout)
        finally:
            if future.done():
                self._forget(session_id, future)

    def is_active(self, session_id: str) -> bool:
        with self._lock:
            future = self._futures.get(session_id)
        return future is not None and not future.done()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        self.publisher.close()

    # ---------- internals ----------

    def _restart(self, summary: SessionSummary, wait: bool) -> None:
        stored = summary.config or {}
        source_config = SourceConfig.from_dict(stored.get('source') or {})
        limits = CrawlLimits.from_dict(stored.get('limits') or {})

        if summary.current_page is not None:
            limits.start_page = summary.current_page + 1
        if limits.end_page is not None and limits.start_page > limits.end_page:
            limits.end_page = limits.start_page
        limits.max_pages = max(limits.max_pages - summary.pages_processed, 1)

        logger.info(f"Restarting session {summary.session_id} from page {limits.start_page}")
        self._submit(summary.session_id, self.adapter_factory(source_config), limits.validate(), wait)

    def _ensure_idle(self, session_id: str) -> None:
        if self.is_active(session_id):
            raise InvalidTransitionError(f"Session {session_id} still has a crawl in progress")

    def _submit(self, session_id: str, adapter: Adapter, limits: CrawlLimits, wait: bool) -> None:
        kwargs = {'sleep': self.sleep} if self.sleep is not None else {}
        coordinator = CrawlCoordinator(
            adapter, self.tracker, self.provider, limits, publisher=self.publisher, **kwargs
        )
        future = self._executor.submit(self._run, coordinator, session_id)
        with self._lock:
            self._futures[session_id] = future
        future.add_done_callback(lambda done: self._forget(session_id, done))
        if wait:
            try:
                future.result()
            finally:
                self._forget(session_id, future)

    def _forget(self, session_id: str, future: Future) -> None:
        with self._lock:
            if self._futures.get(session_id) is future:
                del self._futures[session_id]

    @staticmethod
    def _run(coordinator: CrawlCoordinator, session_id: str) -> CrawlResult:
        try:
            return coordinator.run(session_id)
        except FatalIngestionError as e:
            logger.error(f"✗ Session {session_id} stopped: {e}")
            raise
        except (InvalidTransitionError, TerminalStateError) as e:
            logger.warning(f"Session {session_id} was not crawled: {e}")
            raise
        except Exception as e:
            logger.error(f"✗ Session {session_id} crawl failed: {type(e).__name__}: {e}")
            raise
        finally:
            coordinator.adapter.close()
