"""
Source adapters

Importing this package registers the shipped adapters.
"""

from ingestion.adapters.base import (
    Adapter,
    FetchedPage,
    NaturalKey,
    SourceConfig,
    available_adapters,
    build_adapter,
    register_adapter,
)
from ingestion.adapters.hse import HseCaseAdapter, HseNoticeAdapter

__all__ = [
    'Adapter',
    'FetchedPage',
    'NaturalKey',
    'SourceConfig',
    'available_adapters',
    'build_adapter',
    'register_adapter',
    'HseCaseAdapter',
    'HseNoticeAdapter',
]
