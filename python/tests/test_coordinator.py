"""
Tests for the crawl coordinator.

Crawls run against a scripted adapter and in-memory SQLite with a single
record worker, so record order within a page is deterministic.
"""

import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import patch

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from conftest import ScriptedAdapter, make_raw
from database.models import EnforcementCase
from ingestion.adapters.base import NaturalKey
from ingestion.coordinator import (
    CrawlCoordinator,
    CrawlLimits,
    ExistingRunDetector,
    StopReason,
)
from ingestion.errors import FatalIngestionError
from ingestion.tracker import InvalidTransitionError
from ingestion.upsert import UpsertEngine


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)
        return True


class PrefixedKeyAdapter(ScriptedAdapter):
    """Stores records under a source-qualified regulator id."""

    def target_key(self, record):
        return NaturalKey(f"HSE-{record.regulator_id}", record.agency_code)


def crawl(adapter, tracker, provider, session_id, limits, **kwargs):
    coordinator = CrawlCoordinator(adapter, tracker, provider, limits=limits,
                                   sleep=lambda seconds: None, **kwargs)
    return coordinator.run(session_id)


def count_cases(provider):
    with provider.session_scope() as db:
        return db.execute(select(func.count()).select_from(EnforcementCase)).scalar_one()


class TestExistingRunDetector:
    """Unit tests for the stop heuristic."""

    def test_failed_records_are_skipped(self):
        """Failed records neither saturate nor break a page of known records."""
        detector = ExistingRunDetector(threshold=3)
        assert detector.page_saturated([True, None, True]) is True
        assert detector.page_saturated([]) is False

    def test_created_record_blocks_saturation(self):
        """A run of known records does not saturate a page that also created one."""
        detector = ExistingRunDetector(threshold=3)
        assert detector.page_saturated([False, True, True, True]) is False
        assert detector.page_saturated([True, True, False, True]) is False

        assert detector.observe([False, True, True, True]) is False
        assert detector.saturated_pages == 0

    def test_short_page_saturated_when_all_known(self):
        """Pages shorter than the threshold count when every record was known."""
        detector = ExistingRunDetector(threshold=10)
        assert detector.page_saturated([True, True, True]) is True
        assert detector.page_saturated([True, False, True]) is False
        assert detector.page_saturated([None, None]) is False

    def test_failed_page_resets_counts(self):
        """Saturated pages on either side of a failed page are not consecutive."""
        detector = ExistingRunDetector(threshold=3, pages_required=2)
        assert detector.observe([True, True]) is False
        detector.page_failed()
        assert detector.saturated_pages == 0
        assert detector.observe([True, True]) is False
        assert detector.observe([True, True]) is True

    def test_page_count_required(self):
        """Two saturated pages in a row are needed when pages_required is 2."""
        detector = ExistingRunDetector(threshold=10, pages_required=2)
        assert detector.observe([True, True, True]) is False
        assert detector.observe([True, True, True]) is True

    def test_created_record_resets_pages(self):
        """A page with a new record restarts the saturated page count."""
        detector = ExistingRunDetector(threshold=10, pages_required=2)
        detector.observe([True, True, True])
        assert detector.observe([True, False, True]) is False
        assert detector.observe([True, True, True]) is False
        assert detector.observe([True, True, True]) is True

    def test_two_small_pages_do_not_reach_record_threshold(self):
        """Six known records never reach a record-level threshold of 10."""
        detector = ExistingRunDetector(threshold=10, granularity="record")
        assert detector.observe([True, True, True]) is False
        assert detector.observe([True, True, True]) is False
        assert detector.run == 6

    def test_two_small_pages_with_page_granularity(self):
        """The same two pages stop a page-level crawl once enough pages are saturated."""
        detector = ExistingRunDetector(threshold=10, pages_required=2, granularity="page")
        assert detector.observe([True, True, True]) is False
        assert detector.observe([True, True, True]) is True

    def test_record_run_spans_pages(self):
        """The record-level run carries across a page boundary."""
        detector = ExistingRunDetector(threshold=3, granularity="record")
        assert detector.observe([False, True, True]) is False
        assert detector.observe([True, True, False]) is True


class TestStopConditions:
    """End-to-end stop conditions."""

    PAGES = {
        1: [make_raw("1001"), make_raw("1002"), make_raw("1003")],
        2: [make_raw("1004"), make_raw("1005"), make_raw("1006")],
    }

    def test_record_granularity_stops_on_run(self, provider, tracker, new_session, seed, limits):
        """Known records 1002-1005 form a run of 4 across pages 1 and 2."""
        seed(make_raw("1002"), make_raw("1003"), make_raw("1004"), make_raw("1005"))
        limits.consecutive_existing_threshold = 3
        limits.stop_granularity = "record"
        adapter = ScriptedAdapter(self.PAGES)
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.EXISTING_RECORDS.value
        assert result.status == "completed"
        assert adapter.fetched == [1, 2]
        assert result.summary.records_created == 2
        assert result.summary.records_existing == 4

    def test_page_granularity_continues(self, provider, tracker, new_session, seed, limits):
        """No single page holds a run of 3, so the crawl runs to the empty page."""
        seed(make_raw("1002"), make_raw("1003"), make_raw("1004"), make_raw("1005"))
        limits.consecutive_existing_threshold = 3
        adapter = ScriptedAdapter(self.PAGES)
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.NO_MORE_RECORDS.value
        assert adapter.fetched == [1, 2, 3]
        assert result.pages_processed == 3
        assert result.summary.pages_processed == 3

    def test_saturated_page_stops(self, provider, tracker, new_session, seed, limits):
        """A page made only of known records stops the crawl."""
        seed(make_raw("2001"), make_raw("2002"))
        adapter = ScriptedAdapter({
            1: [make_raw("2000")],
            2: [make_raw("2001"), make_raw("2002")],
            3: [make_raw("2003")],
        })
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.EXISTING_RECORDS.value
        assert adapter.fetched == [1, 2]

    def test_page_with_created_record_does_not_stop(self, provider, tracker, new_session, seed, limits):
        """Known records after a new one on the same page do not end the crawl."""
        seed(make_raw("9002"), make_raw("9003"), make_raw("9004"))
        limits.consecutive_existing_threshold = 3
        adapter = ScriptedAdapter({
            1: [make_raw("9001"), make_raw("9002"), make_raw("9003"), make_raw("9004")],
            2: [make_raw("9005")],
        })
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.NO_MORE_RECORDS.value
        assert adapter.fetched == [1, 2, 3]
        assert result.summary.records_created == 2
        assert result.summary.records_existing == 3

    def test_failed_page_breaks_saturated_pages(self, provider, tracker, new_session, seed, limits):
        """A failed page between two known pages restarts the saturated page count."""
        seed(make_raw("7001"), make_raw("7003"), make_raw("7004"))
        limits.consecutive_existing_pages = 2
        limits.page_retry_limit = 0
        adapter = ScriptedAdapter({
            1: [make_raw("7001")],
            2: [make_raw("7002")],
            3: [make_raw("7003")],
            4: [make_raw("7004")],
            5: [make_raw("7005")],
        }, failures={2: 1})
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.EXISTING_RECORDS.value
        assert adapter.fetched == [1, 2, 3, 4]
        assert result.summary.error_count == 1

    def test_stop_on_existing_disabled(self, provider, tracker, new_session, seed, limits):
        """With stop_on_existing off, known pages are crawled through."""
        seed(make_raw("2001"), make_raw("2002"))
        limits.stop_on_existing = False
        adapter = ScriptedAdapter({1: [make_raw("2001")], 2: [make_raw("2002")]})
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.NO_MORE_RECORDS.value
        assert adapter.fetched == [1, 2, 3]

    def test_failed_record_is_neutral(self, provider, tracker, new_session, seed, limits):
        """A record that fails validation does not keep a page of known records from counting."""
        seed(make_raw("3001"), make_raw("3002"), make_raw("3003"))
        limits.consecutive_existing_threshold = 3
        adapter = ScriptedAdapter({
            1: [make_raw("3001"), {'regulator_id': None, 'offence_fine': "£5"},
                make_raw("3002"), make_raw("3003")],
            2: [make_raw("3004")],
        })
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.EXISTING_RECORDS.value
        assert adapter.fetched == [1]
        assert result.summary.records_failed == 1
        assert result.summary.records_processed == 4

        errors = tracker.list_logs(sid, event_type="validation_error")
        assert len(errors) == 1
        assert errors[0]['level'] == "warn"

    def test_max_pages(self, provider, tracker, new_session, limits):
        """max_pages bounds the crawl even when every page is new."""
        limits.max_pages = 2
        adapter = ScriptedAdapter({n: [make_raw(str(4000 + n))] for n in range(1, 6)})
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.MAX_PAGES.value
        assert adapter.fetched == [1, 2]

    def test_page_range(self, provider, tracker, new_session, limits):
        """start_page and end_page select an explicit range."""
        limits.start_page = 2
        limits.end_page = 3
        adapter = ScriptedAdapter({n: [make_raw(str(4100 + n))] for n in range(1, 6)})
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert adapter.fetched == [2, 3]
        assert result.last_page == 3
        assert result.stop_reason == StopReason.MAX_PAGES.value


class TestErrors:
    """Page failures, retries and fatal errors."""

    def test_error_ceiling_fails_session(self, provider, tracker, new_session, limits):
        """Consecutive page failures past the ceiling fail the session."""
        limits.page_retry_limit = 0
        limits.max_consecutive_errors = 2
        adapter = ScriptedAdapter({}, failures={1: float("inf"), 2: float("inf")})
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.status == "failed"
        assert result.stop_reason == StopReason.ERROR_CEILING.value
        summary = tracker.summary(sid)
        assert summary.status == "failed"
        assert summary.error_count == 2
        assert summary.error_info['category'] == "fatal"
        assert tracker.list_logs(sid, event_type="session_failed")[0]['level'] == "fatal"

    def test_single_failure_below_ceiling(self, provider, tracker, new_session, limits):
        """One failed page is counted and the crawl moves on."""
        limits.page_retry_limit = 0
        adapter = ScriptedAdapter({2: [make_raw("5001")]}, failures={1: 1})
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.status == "completed"
        assert result.summary.error_count == 1
        assert result.summary.records_created == 1
        assert [b.status for b in tracker.list_batches(sid)] == ["failed", "completed", "completed"]

    def test_page_retry_succeeds(self, provider, tracker, new_session, limits):
        """A transient failure is retried within the same batch."""
        adapter = ScriptedAdapter({1: [make_raw("5101")]}, failures={1: 1})
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.status == "completed"
        assert adapter.fetched == [1, 1, 2]
        first = tracker.list_batches(sid)[0]
        assert first.status == "completed"
        assert first.retry_count == 1
        assert result.summary.error_count == 0

    def test_storage_unavailable(self, provider, tracker, new_session, limits):
        """A lost database fails the session and surfaces a fatal error."""
        adapter = ScriptedAdapter({1: [make_raw("5201")]})
        sid = new_session()
        lost = OperationalError("INSERT", {}, Exception("disk I/O error"))

        with patch.object(UpsertEngine, 'upsert', side_effect=lost):
            with pytest.raises(FatalIngestionError):
                crawl(adapter, tracker, provider, sid, limits)

        summary = tracker.summary(sid)
        assert summary.status == "failed"
        assert summary.stop_reason == StopReason.STORAGE_UNAVAILABLE.value

    def test_run_refuses_terminal_session(self, provider, tracker, new_session, limits):
        sid = new_session()
        tracker.cancel(sid)
        with pytest.raises(InvalidTransitionError):
            crawl(ScriptedAdapter({}), tracker, provider, sid, limits)


class TestControl:
    """Cancellation, pause and progress."""

    def test_cancel_mid_crawl(self, provider, tracker, new_session, limits):
        """Cancelling during page 2 stops the crawl; counters stay frozen at page 1."""
        sid = new_session()

        def cancel_on_second(page):
            if page == 2:
                tracker.cancel(sid, reason="operator")

        adapter = ScriptedAdapter(
            {n: [make_raw(str(6000 + n))] for n in range(1, 5)},
            on_fetch=cancel_on_second
        )
        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.CANCELLED.value
        assert result.status == "cancelled"
        assert adapter.fetched == [1, 2]
        summary = tracker.summary(sid)
        assert summary.pages_processed == 1
        assert summary.records_created == 1

    def test_pause_mid_crawl(self, provider, tracker, new_session, limits):
        """A paused session stops after the in-flight page and stays paused."""
        sid = new_session()

        def pause_on_first(page):
            if page == 1:
                tracker.pause(sid)

        adapter = ScriptedAdapter({1: [make_raw("6101")], 2: [make_raw("6102")]}, on_fetch=pause_on_first)
        result = crawl(adapter, tracker, provider, sid, limits)

        assert result.stop_reason == StopReason.PAUSED.value
        assert result.status == "paused"
        assert adapter.fetched == [1]

    def test_progress_events(self, provider, tracker, new_session, limits):
        """One event per page plus a final session event."""
        publisher = RecordingPublisher()
        adapter = ScriptedAdapter({1: [make_raw("6201"), make_raw("6202")]})
        sid = new_session()

        crawl(adapter, tracker, provider, sid, limits, publisher=publisher)

        events = [e.event for e in publisher.events]
        assert events == ["page_completed", "page_completed", "session_completed"]
        assert publisher.events[0].counters['created'] == 2
        assert publisher.events[-1].counters['processed'] == 2


class TestCounters:
    """Counter invariants and idempotence."""

    def test_counters_balance(self, provider, tracker, new_session, seed, limits):
        """Session counters equal the sum of their outcomes and of their batches."""
        seed(make_raw("7002", offence_fine="£10"), make_raw("7003"))
        adapter = ScriptedAdapter({
            1: [make_raw("7001"), make_raw("7002", offence_fine="£20"), make_raw("7003"),
                {'regulator_id': None}],
        })
        sid = new_session()

        result = crawl(adapter, tracker, provider, sid, limits)
        summary = result.summary

        assert summary.records_created == 1
        assert summary.records_updated == 1
        assert summary.records_existing == 1
        assert summary.records_failed == 1
        assert summary.records_processed == (
            summary.records_created + summary.records_updated
            + summary.records_existing + summary.records_failed
        )
        batches = tracker.list_batches(sid)
        assert all(b.is_balanced() for b in batches)
        assert sum(b.records_processed for b in batches) == summary.records_processed

        updates = tracker.list_logs(sid, event_type="record_updated")
        assert updates[0]['data']['changed_fields'] == ["offence_fine"]

    def test_records_stored_under_adapter_key(self, provider, tracker, new_session, limits):
        """The adapter's natural key decides where a record is stored and matched."""
        pages = {1: [make_raw("8101"), make_raw("8102")]}

        first = crawl(PrefixedKeyAdapter(pages), tracker, provider, new_session(), limits)
        second = crawl(PrefixedKeyAdapter(pages), tracker, provider, new_session(), limits)

        with provider.session_scope() as db:
            stored = db.execute(select(EnforcementCase.regulator_id)).scalars().all()
        assert sorted(stored) == ["HSE-8101", "HSE-8102"]
        assert first.summary.records_created == 2
        assert second.summary.records_existing == 2
        assert tracker.list_logs(first.session_id, event_type="record_created")[0]['data'] == {
            'regulator_id': "HSE-8101"
        }

    def test_rerun_is_idempotent(self, provider, tracker, new_session, limits):
        """Crawling the same pages again creates nothing."""
        pages = {1: [make_raw("8001"), make_raw("8002")], 2: [make_raw("8003")]}

        first = crawl(ScriptedAdapter(pages), tracker, provider, new_session(), limits)
        second = crawl(ScriptedAdapter(pages), tracker, provider, new_session(), limits)

        assert first.summary.records_created == 3
        assert second.summary.records_created == 0
        assert second.summary.records_updated == 0
        assert count_cases(provider) == 3


class TestCrawlLimits:
    """Tests for limit validation and construction."""

    @pytest.mark.parametrize("overrides", [
        {'start_page': 0},
        {'max_pages': 0},
        {'consecutive_existing_threshold': 0},
        {'start_page': 5, 'end_page': 4},
        {'page_retry_limit': -1},
        {'stop_granularity': "window"},
        {'match_threshold': 0},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ValueError):
            CrawlLimits(**overrides).validate()

    def test_from_config(self):
        """Config sections feed the limits; explicit overrides win."""
        config = SimpleNamespace(
            crawl=SimpleNamespace(
                max_pages_per_session=50, consecutive_existing_threshold=5,
                consecutive_existing_pages=2, stop_granularity="record",
                max_consecutive_errors=4, page_retry_limit=1, pause_between_pages_ms=100,
            ),
            performance=SimpleNamespace(max_workers=2),
            matching=SimpleNamespace(threshold=0.8, require_postcode_agreement=False),
        )
        limits = CrawlLimits.from_config(config, max_pages=7, end_page=None)

        assert limits.max_pages == 7
        assert limits.end_page is None
        assert limits.consecutive_existing_threshold == 5
        assert limits.stop_granularity == "record"
        assert limits.max_workers == 2
        assert limits.match_threshold == 0.8
        assert limits.require_postcode_agreement is False

    def test_round_trip_dict(self):
        limits = CrawlLimits(start_page=3, options={'region': "north"})
        assert CrawlLimits.from_dict(dict(limits.to_dict(), unknown=1)) == limits
