"""
Source Fetcher

Issues HTTP requests against a listing site and returns page markup or table
rows. Transient failures (timeouts, connection resets, 429, 5xx) are retried
with exponential backoff; anything else raises immediately.

The fetcher is stateless apart from its requests.Session: it never sleeps
between requests and never touches the database. Pacing is the caller's job.
"""

import logging
import time
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import requests
from tenacity import (
    Retrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from ingestion.errors import (
    FetchTimeoutError,
    PageParseError,
    PermanentFetchError,
    TransientFetchError,
)
from ingestion.html_utils import TableRow, extract_rows, sanitize_for_logging
from ingestion.metrics import record_fetch

logger = logging.getLogger(__name__)

DEFAULT_HEADERS = {
    'User-Agent': 'enforcement-ingest/1.0 (+regulatory research)',
    'Accept': 'text/html,application/xhtml+xml',
}

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class SourceFetcher:
    """Fetches pages from one base URL with retry on transient errors"""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        max_attempts: int = 3,
        min_wait: float = 1.0,
        max_wait: float = 10.0,
        session: Optional[requests.Session] = None,
        headers: Optional[Dict[str, str]] = None
    ):
        """Initialize fetcher

        Args:
            base_url: Base URL relative paths are resolved against
            timeout: Network timeout per request in seconds
            max_attempts: Attempt ceiling for transient errors
            min_wait: Minimum backoff between attempts (seconds)
            max_wait: Maximum backoff between attempts (seconds)
            session: Optional pre-built requests session
            headers: Extra request headers
        """
        self.base_url = base_url if base_url.endswith('/') else base_url + '/'
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.session = session or requests.Session()
        self.session.headers.update(DEFAULT_HEADERS)
        if headers:
            self.session.headers.update(headers)

    def build_url(self, path_or_url: str) -> str:
        """Resolve a path against the base URL; absolute URLs pass through."""
        return urljoin(self.base_url, path_or_url.lstrip('/'))

    def get(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> str:
        """
        Fetch a page body, retrying transient failures.

        Args:
            path_or_url: Path relative to the base URL, or an absolute URL
            params: Optional query parameters

        Returns:
            Response text

        Raises:
            TransientFetchError: Still failing after max_attempts
            FetchTimeoutError: Timed out on the last attempt
            PermanentFetchError: Non-retryable failure
        """
        url = self.build_url(path_or_url)
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.min_wait, min=self.min_wait, max=self.max_wait),
            retry=retry_if_exception_type(TransientFetchError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        for attempt in retrying:
            with attempt:
                return self._get_once(url, params)

    def fetch_rows(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> List[TableRow]:
        """
        Fetch a page and extract its table rows.

        Raises:
            PageParseError: If the body cannot be parsed as markup
        """
        body = self.get(path_or_url, params)
        try:
            return extract_rows(body)
        except (ValueError, TypeError) as e:
            raise PageParseError(
                f"Could not parse page {path_or_url}: {e}",
                context={'url': self.build_url(path_or_url)}
            ) from e

    def _get_once(self, url: str, params: Optional[Dict[str, Any]]) -> str:
        """Single request with error classification."""
        start = time.perf_counter()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            record_fetch("timeout", time.perf_counter() - start)
            raise FetchTimeoutError(f"Timed out after {self.timeout}s", url=url) from e
        except requests.ConnectionError as e:
            record_fetch("connection_error", time.perf_counter() - start)
            raise TransientFetchError(
                f"Connection error: {sanitize_for_logging(str(e))}", url=url
            ) from e
        except requests.RequestException as e:
            record_fetch("error", time.perf_counter() - start)
            raise PermanentFetchError(
                f"Request failed: {sanitize_for_logging(str(e))}", url=url
            ) from e

        code = response.status_code
        if code in RETRYABLE_STATUS_CODES:
            record_fetch("retryable_status", time.perf_counter() - start)
            raise TransientFetchError(f"HTTP {code}", url=url, status_code=code)
        if code >= 400:
            record_fetch("http_error", time.perf_counter() - start)
            raise PermanentFetchError(f"HTTP {code}", url=url, status_code=code)

        record_fetch("ok", time.perf_counter() - start)
        logger.debug(f"✓ Fetched {url} ({code}, {len(response.text)} chars)")
        return response.text
