"""
Ingestion Metrics

This module provides:
- Prometheus counters for pages, records and fetches
- A timing context manager for slow-operation detection
- Thread-safe per-operation statistics for the health endpoint

Usage:
    from ingestion.metrics import timed, get_ingest_metrics

    with timed("fuzzy_match"):
        candidates = repo.list_match_candidates()
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Dict, Any

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class MonitoringConfig:
    """Configuration for ingestion monitoring."""
    slow_operation_threshold_ms: float = 1000.0
    warning_threshold_ms: float = 500.0
    enable_logging: bool = True


_config = MonitoringConfig()


def configure_monitoring(
    slow_operation_threshold_ms: float = 1000.0,
    warning_threshold_ms: float = 500.0,
    enable_logging: bool = True
) -> None:
    """
    Configure monitoring settings.

    Args:
        slow_operation_threshold_ms: Warn about operations slower than this (ms)
        warning_threshold_ms: Log operations slower than this at INFO (ms)
        enable_logging: Enable slow-operation logging
    """
    global _config
    _config = MonitoringConfig(
        slow_operation_threshold_ms=slow_operation_threshold_ms,
        warning_threshold_ms=warning_threshold_ms,
        enable_logging=enable_logging
    )


# ============================================
# PROMETHEUS METRICS
# ============================================

pages_total = Counter(
    'enforcement_ingest_pages_total',
    'Listing pages processed',
    ['agency', 'status']
)

records_total = Counter(
    'enforcement_ingest_records_total',
    'Records processed by outcome',
    ['agency', 'outcome']
)

fetch_duration = Histogram(
    'enforcement_ingest_fetch_duration_seconds',
    'HTTP fetch duration in seconds',
    ['status'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0)
)

operation_duration = Histogram(
    'enforcement_ingest_operation_duration_seconds',
    'Duration of timed pipeline operations',
    ['operation', 'status']
)

active_sessions = Gauge(
    'enforcement_ingest_active_sessions',
    'Ingestion sessions currently running'
)


def record_fetch(status: str, duration_seconds: float) -> None:
    fetch_duration.labels(status=status).observe(duration_seconds)


def record_page(agency: str, status: str) -> None:
    pages_total.labels(agency=agency, status=status).inc()


def record_outcome(agency: str, outcome: str) -> None:
    records_total.labels(agency=agency, outcome=outcome).inc()


# ============================================
# OPERATION STATS TRACKING
# ============================================

@dataclass
class OperationStats:
    """Statistics for a single operation type."""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    max_time_ms: float = 0.0
    errors: int = 0
    slow: int = 0
    last_executed: Optional[datetime] = None

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.last_executed = datetime.now()
        if error:
            self.errors += 1
        if slow:
            self.slow += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow': self.slow,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


class OperationStatsCollector:
    """Thread-safe collector for operation statistics."""

    def __init__(self):
        self._stats: Dict[str, OperationStats] = {}
        self._lock = threading.Lock()
        self._start_time = datetime.now()

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            if operation not in self._stats:
                self._stats[operation] = OperationStats(operation=operation)
            self._stats[operation].record(duration_ms, error, slow)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'uptime_seconds': (datetime.now() - self._start_time).total_seconds(),
                'operations': {
                    op: stats.to_dict() for op, stats in self._stats.items()
                }
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now()


_stats_collector = OperationStatsCollector()


def get_ingest_metrics() -> Dict[str, Any]:
    """
    Get current operation statistics.

    Returns:
        Dictionary with per-operation statistics
    """
    return _stats_collector.get_stats()


def reset_metrics() -> None:
    """Reset collected operation statistics."""
    _stats_collector.reset()


# ============================================
# TIMER
# ============================================

@contextmanager
def timed(operation: str):
    """
    Time an operation, record its statistics and log it when slow.

    Args:
        operation: Name of the operation (e.g. 'process_page', 'fuzzy_match')
    """
    start_time = time.perf_counter()
    error_occurred = False

    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration = time.perf_counter() - start_time
        duration_ms = duration * 1000
        is_slow = duration_ms > _config.slow_operation_threshold_ms

        _stats_collector.record(operation, duration_ms, error=error_occurred, slow=is_slow)

        status = "error" if error_occurred else "success"
        operation_duration.labels(operation=operation, status=status).observe(duration)

        if _config.enable_logging:
            if is_slow:
                logger.warning(
                    f"SLOW OPERATION: {operation} took {duration_ms:.2f}ms "
                    f"(threshold: {_config.slow_operation_threshold_ms}ms)"
                )
            elif duration_ms > _config.warning_threshold_ms and not error_occurred:
                logger.info(f"Operation {operation} took {duration_ms:.2f}ms")
