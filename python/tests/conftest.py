"""
Shared fixtures for the ingestion test-suite.

Database tests run against in-memory SQLite (StaticPool, one shared
connection); crawl tests drive a scripted adapter instead of the network.
"""

import sys
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
from unittest.mock import MagicMock

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from database.connection import create_test_provider
from database.models import EnforcementCase, SyncType
from database.repositories import AgencyRepository
from ingestion.adapters.base import Adapter, FetchedPage, SourceConfig
from ingestion.coordinator import CrawlLimits
from ingestion.errors import TransientFetchError
from ingestion.matcher import EntityMatcher
from ingestion.tracker import SessionTracker
from ingestion.transformer import CanonicalRecord, transform_case
from ingestion.upsert import UpsertEngine


def make_raw(regulator_id: Optional[str], name: Optional[str] = None, **fields: Any) -> Dict[str, Any]:
    """Raw case dictionary as an HSE listing+detail scrape produces it."""
    raw = {
        'regulator_id': regulator_id,
        'offender_name': name if name is not None else f"Company {regulator_id} Limited",
        'offender_address': "1 High Street, Leeds LS1 4AP",
        'offence_action_date': "15/03/2024",
        'offence_fine': "£1,000.00",
        'offence_breaches': ["Health and Safety at Work Act 1974 s.2(1)"],
    }
    raw.update(fields)
    return raw


class ScriptedAdapter(Adapter):
    """Adapter serving canned pages.

    pages maps page number to raw records; missing pages are empty.
    failures maps page number to how many fetch attempts fail first.
    on_fetch is called with the page number before each successful fetch.
    """

    name = "scripted"
    agency_code = "hse"
    agency_name = "Health and Safety Executive"
    sync_type = SyncType.HSE_CASES
    target_model = EnforcementCase

    def __init__(
        self,
        pages: Dict[int, List[Dict[str, Any]]],
        failures: Optional[Dict[int, Union[int, float]]] = None,
        on_fetch: Optional[Callable[[int], None]] = None
    ):
        fetcher = MagicMock()
        fetcher.base_url = "https://resources.hse.gov.uk/convictions/case/"
        super().__init__(SourceConfig(), fetcher=fetcher)
        self.pages = pages
        self.failures = dict(failures or {})
        self.on_fetch = on_fetch
        self.fetched: List[int] = []

    def fetch(self, page: int) -> FetchedPage:
        self.fetched.append(page)
        if self.failures.get(page, 0) > 0:
            self.failures[page] -= 1
            raise TransientFetchError(f"HTTP 503 on page {page}", status_code=503)
        if self.on_fetch is not None:
            self.on_fetch(page)
        return FetchedPage(page=page, records=[dict(r) for r in self.pages.get(page, [])])

    def transform(self, raw: Dict[str, Any]) -> CanonicalRecord:
        return transform_case(raw, self.agency_code)


@pytest.fixture
def provider():
    """Fresh in-memory database per test."""
    db_provider = create_test_provider()
    yield db_provider
    db_provider.close()


@pytest.fixture
def tracker(provider):
    return SessionTracker(provider, origin="test-host:1")


@pytest.fixture
def limits():
    """Fast, single-worker limits for deterministic crawls."""
    return CrawlLimits(pause_between_pages_ms=0, max_workers=1)


@pytest.fixture
def no_sleep():
    return lambda seconds: None


@pytest.fixture
def seed(provider):
    """Persist raw case records directly, bypassing the crawl."""
    def _seed(*raws: Dict[str, Any]) -> None:
        with provider.session_scope() as db:
            agency = AgencyRepository(db).get_or_create("hse", name="Health and Safety Executive")
            for raw in raws:
                record = transform_case(raw, "hse")
                party = record.party
                match = EntityMatcher(db).resolve(party.name, address=party.address, postcode=party.postcode)
                UpsertEngine(db).upsert(record, match.offender, agency)
    return _seed


@pytest.fixture
def new_session(tracker):
    """Create a pending session for the scripted adapter and return its id."""
    def _create(session_id: Optional[str] = None) -> str:
        summary, _ = tracker.create_session(
            SyncType.HSE_CASES, "EnforcementCase", session_id=session_id, source_adapter="scripted"
        )
        return summary.session_id
    return _create
