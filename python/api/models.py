"""
Pydantic request/response schemas for the Enforcement Ingest API

Mirrors SourceConfig, CrawlLimits and SessionSummary for HTTP validation.
"""

import re
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator, model_validator

SESSION_ID_PATTERN = re.compile(r'^[A-Za-z0-9_.:-]{1,64}$')


class StartSessionRequest(BaseModel):
    """Request schema for starting an ingestion session.

    Omitted fields fall back to the crawl section of config.yaml.
    """
    adapter: Optional[str] = Field(
        default=None,
        description="Registered adapter name (e.g. 'hse_cases', 'hse_notices')"
    )
    agency_code: Optional[str] = Field(default=None, max_length=32)
    base_url: Optional[str] = Field(default=None, description="Override the adapter's base URL")
    endpoint_path: Optional[str] = Field(
        default=None,
        description="Listing path template; '{page}' is replaced by the page number"
    )
    database: Optional[str] = Field(
        default=None,
        description="HSE case database: 'convictions' or 'convictions-history'"
    )
    country: Optional[str] = Field(default=None, description="Country filter for notices")
    fetch_details: Optional[bool] = Field(default=None)
    requests_per_minute: Optional[int] = Field(default=None, ge=0)

    session_id: Optional[str] = Field(
        default=None,
        description="Caller-supplied id; repeating a request with the same id is a no-op"
    )
    initiated_by: Optional[str] = Field(default=None, max_length=128)

    start_page: Optional[int] = Field(default=None, ge=1)
    end_page: Optional[int] = Field(default=None, ge=1)
    max_pages: Optional[int] = Field(default=None, ge=1)
    consecutive_existing_threshold: Optional[int] = Field(default=None, ge=1)
    consecutive_existing_pages: Optional[int] = Field(default=None, ge=1)
    stop_granularity: Optional[str] = Field(default=None)
    stop_on_existing: Optional[bool] = Field(default=None)
    pause_between_pages_ms: Optional[int] = Field(default=None, ge=0)

    @field_validator('session_id')
    @classmethod
    def validate_session_id(cls, v: Optional[str]) -> Optional[str]:
        """Session ids are short tokens safe for URLs and logs."""
        if v is not None and not SESSION_ID_PATTERN.match(v):
            raise ValueError("session_id may only contain letters, digits and _ . : -")
        return v

    @field_validator('stop_granularity')
    @classmethod
    def validate_granularity(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("page", "record"):
            raise ValueError("stop_granularity must be 'page' or 'record'")
        return v

    @model_validator(mode='after')
    def validate_page_range(self) -> 'StartSessionRequest':
        if self.start_page and self.end_page and self.end_page < self.start_page:
            raise ValueError("end_page must not be before start_page")
        return self

    def source_overrides(self) -> Dict[str, Any]:
        fields = (
            'adapter', 'agency_code', 'base_url', 'endpoint_path', 'database',
            'country', 'fetch_details', 'requests_per_minute',
        )
        return {name: getattr(self, name) for name in fields}

    def limit_overrides(self) -> Dict[str, Any]:
        fields = (
            'start_page', 'end_page', 'max_pages', 'consecutive_existing_threshold',
            'consecutive_existing_pages', 'stop_granularity', 'stop_on_existing',
            'pause_between_pages_ms',
        )
        return {name: getattr(self, name) for name in fields}


class SessionResponse(BaseModel):
    """Session status with partial counters and derived metrics."""
    session_id: str
    status: str
    sync_type: str
    target_resource: str
    source_adapter: Optional[str] = None
    initiated_by: Optional[str] = None
    stop_reason: Optional[str] = None
    estimated_total: Optional[int] = None
    records_processed: int = Field(default=0, ge=0)
    records_created: int = Field(default=0, ge=0)
    records_updated: int = Field(default=0, ge=0)
    records_existing: int = Field(default=0, ge=0)
    records_failed: int = Field(default=0, ge=0)
    error_count: int = Field(default=0, ge=0)
    pages_processed: int = Field(default=0, ge=0)
    current_page: Optional[int] = None
    error_info: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_seconds: float = Field(default=0.0, description="Seconds since start (or until finish)")
    completion_percentage: Optional[float] = Field(
        default=None,
        description="Percent of the estimated total processed; null without an estimate"
    )
    success_rate: float = Field(default=0.0, description="Percent of processed records that did not fail")
    error_rate: float = Field(default=0.0, description="Percent of processed records that failed")
    processing_speed: float = Field(default=0.0, description="Records per second")


class StartSessionResponse(BaseModel):
    """Response schema for session creation."""
    session_id: str
    status: str
    links: Dict[str, str] = Field(default_factory=dict)


class CancelResponse(BaseModel):
    """Response schema for cancellation."""
    session_id: str
    cancelled: bool
    status: str


class BatchResponse(BaseModel):
    """One page batch of a session."""
    batch_id: str
    batch_number: int
    page_number: Optional[int] = None
    status: str
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_existing: int = 0
    records_failed: int = 0
    retry_count: int = 0
    processing_time_ms: Optional[int] = None


class LogEntryResponse(BaseModel):
    """One ingestion log entry."""
    sequence: int
    level: str
    event_type: str
    message: str
    data: Optional[Dict[str, Any]] = None
    error_details: Optional[Dict[str, Any]] = None
    error_category: Optional[str] = None
    batch_id: Optional[str] = None
    origin: Optional[str] = None
    logged_at: Optional[str] = None


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: str = Field(default="unknown", description="Database connectivity: ok, unavailable")
    adapters: List[str] = Field(default_factory=list, description="Registered source adapters")
    memory_usage_mb: Optional[float] = Field(
        default=None,
        description="Current memory usage in MB"
    )
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    operations: Dict[str, Any] = Field(
        default_factory=dict,
        description="Timing statistics per crawl operation"
    )
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
