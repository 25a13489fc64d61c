"""
Ingestion Event Logging Module

Provides structured logging for ingestion sessions:
- Root logging setup from LoggingConfig (console + file)
- A dedicated 'ingestion' logger writing one JSON line per persisted event
- Sanitization of remote text before it reaches any log sink

Every IngestionLog row written by the tracker is mirrored here, so the
event stream can be tailed or shipped without querying the database.
"""

import logging
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field

from ingestion.html_utils import sanitize_for_logging

LEVEL_MAP = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'error': logging.ERROR,
    'fatal': logging.CRITICAL,
}


@dataclass
class IngestionEvent:
    """Structured ingestion event for logging"""
    session_id: str
    sequence: int
    event_type: str  # e.g., session_started, batch_completed, record_failed
    level: str  # debug, info, warn, error, fatal
    message: str
    batch_number: Optional[int] = None
    error_category: Optional[str] = None
    duration_ms: Optional[int] = None
    source_module: str = ""
    correlation_id: str = ""
    origin: str = ""
    data: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            'timestamp': self.timestamp,
            'session_id': self.session_id,
            'sequence': self.sequence,
            'event_type': self.event_type,
            'level': self.level,
            'message': self.message,
            'batch_number': self.batch_number,
            'error_category': self.error_category,
            'duration_ms': self.duration_ms,
            'source_module': self.source_module,
            'correlation_id': self.correlation_id,
            'origin': self.origin,
            'data': self.data,
        }

    def to_json(self) -> str:
        """Convert to JSON string"""
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)


class IngestionEventLogger:
    """Writes ingestion events as JSON lines

    Features:
    - Separate ingestion.log file
    - JSON-formatted events for easy parsing
    - Sanitization of scraped text in messages and context
    """

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """Initialize event logger

        Args:
            log_dir: Directory for log files
            log_level: Minimum log level to record
            enable_console: Also output to console
            enable_file: Write to ingestion.log file
        """
        self.log_dir = Path(log_dir)

        self.logger = logging.getLogger('ingestion.events')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()
        self.logger.propagate = False

        formatter = logging.Formatter('%(asctime)s - INGEST - %(levelname)s - %(message)s')

        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_dir / "ingestion.log", encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Sanitize string values of a context dictionary, recursing into dicts and lists"""
        if not context:
            return {}

        sanitized = {}
        for key, value in context.items():
            safe_key = sanitize_for_logging(str(key)) or "unknown"
            if value is None or isinstance(value, (bool, int, float)):
                sanitized[safe_key] = value
            elif isinstance(value, dict):
                sanitized[safe_key] = self._sanitize_context(value)
            elif isinstance(value, (list, tuple)):
                sanitized[safe_key] = [
                    item if isinstance(item, (bool, int, float, type(None)))
                    else sanitize_for_logging(str(item))
                    for item in value
                ]
            else:
                sanitized[safe_key] = sanitize_for_logging(str(value))
        return sanitized

    def emit(self, event: IngestionEvent) -> None:
        """Write one event at the logging level matching its ingestion level"""
        event.message = sanitize_for_logging(event.message)
        event.data = self._sanitize_context(event.data)
        self.logger.log(LEVEL_MAP.get(event.level, logging.INFO), event.to_json())


def setup_logging(config: Any) -> None:
    """
    Configure root logging from a LoggingConfig.

    Args:
        config: Object with level, file, console and format attributes
    """
    level = getattr(logging, str(config.level).upper(), logging.INFO)
    formatter = logging.Formatter(config.format)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.console:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)

    if config.file:
        log_path = Path(config.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


# Global event logger instance
_event_logger: Optional[IngestionEventLogger] = None


def get_event_logger(log_dir: str = "logs", enable_console: bool = False) -> IngestionEventLogger:
    """Get or create the global event logger instance

    Args:
        log_dir: Directory for log files
        enable_console: Also output to console

    Returns:
        IngestionEventLogger instance
    """
    global _event_logger
    if _event_logger is None:
        _event_logger = IngestionEventLogger(log_dir=log_dir, enable_console=enable_console)
    return _event_logger


def reset_event_logger() -> None:
    """Reset the global event logger (for testing)"""
    global _event_logger
    _event_logger = None
