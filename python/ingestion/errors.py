"""
Error taxonomy for the ingestion pipeline

- transient: network timeout, connection reset, 429/5xx; retried with backoff
- parse: malformed page or record; logged and skipped
- validation: required canonical field missing; logged and skipped
- conflict: uniqueness violation that a re-read did not resolve
- fatal: error ceiling exceeded or storage unavailable; fails the session
"""

from typing import Any, Dict, Optional


class IngestionError(Exception):
    """Base exception for ingestion errors."""

    category = "processing"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serializable error details for session error_info and log entries."""
        return {
            'type': type(self).__name__,
            'category': self.category,
            'message': str(self),
            'context': self.context,
        }


# ============================================
# FETCH ERRORS
# ============================================

class FetchError(IngestionError):
    """Base class for fetch failures."""

    category = "connection"

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, context)
        self.url = url
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        details = super().to_dict()
        details['url'] = self.url
        details['status_code'] = self.status_code
        return details


class TransientFetchError(FetchError):
    """Network hiccup worth retrying (connection reset, 429, 5xx)."""
    pass


class FetchTimeoutError(TransientFetchError):
    """The request did not complete within the network timeout."""

    category = "timeout"


class PermanentFetchError(FetchError):
    """Non-transient failure (404, other 4xx); never retried."""
    pass


# ============================================
# RECORD ERRORS
# ============================================

class PageParseError(IngestionError):
    """A page's markup could not be parsed at all."""

    category = "parse"


class RecordParseError(IngestionError):
    """A single record could not be parsed."""

    category = "parse"


class RecordValidationError(IngestionError):
    """A required canonical field is missing or invalid."""

    category = "validation"


class ConflictError(IngestionError):
    """A uniqueness violation persisted after one re-read."""

    category = "conflict"


class FatalIngestionError(IngestionError):
    """Aborts the session into the failed state."""

    category = "fatal"
