"""
Progress publishing

The crawl publishes one ProgressEvent per page (plus lifecycle events) onto
a bounded queue drained by a daemon thread that fans events out to
subscribers. publish() never blocks; when the queue is full the event is
dropped and counted, so a slow consumer can never stall ingestion.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

_STOP = object()


@dataclass
class ProgressEvent:
    """A progress notification for UI or monitoring consumers"""
    session_id: str
    event: str  # page_completed, page_failed, session_completed, ...
    page: Optional[int] = None
    counters: Dict[str, int] = field(default_factory=dict)
    message: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'session_id': self.session_id,
            'event': self.event,
            'page': self.page,
            'counters': dict(self.counters),
            'message': self.message,
            'timestamp': self.timestamp,
        }


class ProgressPublisher:
    """Bounded, non-blocking fan-out of progress events"""

    def __init__(self, maxsize: int = 1000):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._subscribers: List[Callable[[ProgressEvent], None]] = []
        self._lock = threading.Lock()
        self.dropped = 0
        self._worker = threading.Thread(target=self._drain, name="progress-publisher", daemon=True)
        self._worker.start()

    def subscribe(self, callback: Callable[[ProgressEvent], None]) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event: ProgressEvent) -> bool:
        """
        Enqueue an event without blocking.

        Returns:
            True if queued, False if dropped because the queue was full
        """
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            logger.debug(f"Progress queue full; dropped {event.event} for {event.session_id}")
            return False

    def flush(self) -> None:
        """Block until every queued event has been delivered."""
        self._queue.join()

    def close(self, timeout: float = 5.0) -> None:
        self._queue.put(_STOP)
        self._worker.join(timeout)

    def _drain(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                with self._lock:
                    subscribers = list(self._subscribers)
                for callback in subscribers:
                    try:
                        callback(item)
                    except Exception as e:
                        logger.warning(f"✗ Progress subscriber failed: {e}")
            finally:
                self._queue.task_done()


class NullPublisher:
    """Publisher that discards everything"""

    dropped = 0

    def subscribe(self, callback: Callable[[ProgressEvent], None]) -> None:
        pass

    def publish(self, event: ProgressEvent) -> bool:
        return True

    def flush(self) -> None:
        pass

    def close(self, timeout: float = 5.0) -> None:
        pass
