"""
Tests for the duplicate/upsert engine.

Idempotence, update-on-change, distinct keys and offender statistics,
against in-memory SQLite.
"""

import sys
import time
from datetime import date
from decimal import Decimal
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import func, select

from conftest import make_raw
from database.models import EnforcementCase, EnforcementNotice, Offender
from database.repositories import AgencyRepository
from ingestion.matcher import EntityMatcher
from ingestion.transformer import transform_case, transform_notice
from ingestion.upsert import UpsertEngine, UpsertOutcome


def upsert_raw(provider, raw, transform=transform_case):
    with provider.session_scope() as db:
        agency = AgencyRepository(db).get_or_create("hse", name="Health and Safety Executive")
        record = transform(raw, "hse")
        party = record.party
        match = EntityMatcher(db).resolve(party.name, address=party.address, postcode=party.postcode)
        return UpsertEngine(db).upsert(record, match.offender, agency), match.offender_id


def stored_case(provider, regulator_id):
    """(id, updated_at) of the stored case row."""
    with provider.session_scope() as db:
        case = db.execute(
            select(EnforcementCase).where(EnforcementCase.regulator_id == regulator_id)
        ).scalar_one()
        return case.id, case.updated_at


class TestUpsert:
    """Tests for create / unchanged / updated outcomes."""

    def test_create_then_unchanged(self, provider):
        """Ingesting the same record twice writes it once."""
        first, _ = upsert_raw(provider, make_raw("4480001"))
        _, written_at = stored_case(provider, "4480001")
        time.sleep(0.02)
        second, _ = upsert_raw(provider, make_raw("4480001"))

        assert first.outcome == UpsertOutcome.CREATED
        assert first.is_new
        assert second.outcome == UpsertOutcome.UNCHANGED
        assert second.is_existing
        assert second.record_id == first.record_id
        assert stored_case(provider, "4480001") == (first.record_id, written_at)

        with provider.session_scope() as db:
            assert db.execute(select(func.count()).select_from(EnforcementCase)).scalar_one() == 1

    def test_update_on_change(self, provider):
        """A changed fine is written and reported as a field diff."""
        first, _ = upsert_raw(provider, make_raw("4480002", offence_fine="£1,000"))
        _, written_at = stored_case(provider, "4480002")
        time.sleep(0.02)
        result, _ = upsert_raw(provider, make_raw("4480002", offence_fine="£2,500"))

        assert result.outcome == UpsertOutcome.UPDATED
        assert result.record_id == first.record_id
        assert set(result.changed_fields) == {'offence_fine'}
        assert result.changed_fields['offence_fine'] == (Decimal("1000.00"), Decimal("2500.00"))

        record_id, updated_at = stored_case(provider, "4480002")
        assert record_id == first.record_id
        assert updated_at > written_at

        with provider.session_scope() as db:
            case = db.execute(select(EnforcementCase)).scalar_one()
            assert case.offence_fine == Decimal("2500.00")

    def test_replay_after_update_keeps_timestamp(self, provider):
        """Replaying the updated record changes nothing, not even updated_at."""
        upsert_raw(provider, make_raw("4480006", offence_fine="£2,000"))
        upsert_raw(provider, make_raw("4480006", offence_fine="£5,000"))
        after_update = stored_case(provider, "4480006")
        time.sleep(0.02)
        replay, _ = upsert_raw(provider, make_raw("4480006", offence_fine="£5,000"))

        assert replay.outcome == UpsertOutcome.UNCHANGED
        assert stored_case(provider, "4480006") == after_update

    def test_missing_value_does_not_erase(self, provider):
        """A re-sighting without a field keeps the stored value."""
        upsert_raw(provider, make_raw("4480003", offence_result="Guilty"))
        result, _ = upsert_raw(provider, make_raw("4480003", offence_result=None))

        assert result.outcome == UpsertOutcome.UNCHANGED
        with provider.session_scope() as db:
            case = db.execute(select(EnforcementCase)).scalar_one()
            assert case.offence_result == "Guilty"

    def test_distinct_keys_do_not_collide(self, provider):
        """Different regulator ids are different records even for the same offender."""
        a, offender_a = upsert_raw(provider, make_raw("4480004", name="Acme Ltd"))
        b, offender_b = upsert_raw(provider, make_raw("4480005", name="Acme Ltd"))

        assert a.is_new and b.is_new
        assert a.record_id != b.record_id
        assert offender_a == offender_b

    def test_cases_and_notices_are_separate(self, provider):
        """The same id as a case and as a notice are two records."""
        case, _ = upsert_raw(provider, make_raw("777"))
        notice, _ = upsert_raw(provider, make_raw("777", offence_action_type="Improvement Notice"),
                               transform=transform_notice)

        assert case.is_new and notice.is_new
        with provider.session_scope() as db:
            assert db.execute(select(func.count()).select_from(EnforcementNotice)).scalar_one() == 1


class TestOffenderStatistics:
    """Tests for offender statistics maintained by the engine."""

    def test_statistics_on_create(self, provider):
        """New cases bump totals and seen dates."""
        upsert_raw(provider, make_raw("5001", name="Acme Ltd", offence_fine="£1,000",
                                      offence_action_date="01/01/2023"))
        _, offender_id = upsert_raw(provider, make_raw("5002", name="Acme Ltd", offence_fine="£500",
                                                       offence_action_date="01/06/2024"))

        with provider.session_scope() as db:
            offender = db.get(Offender, offender_id)
            assert offender.total_cases == 2
            assert offender.total_notices == 0
            assert offender.total_fines == Decimal("1500.00")
            assert offender.first_seen_date == date(2023, 1, 1)
            assert offender.last_seen_date == date(2024, 6, 1)

    def test_statistics_on_fine_change(self, provider):
        """A changed fine adjusts total_fines by the difference only."""
        upsert_raw(provider, make_raw("5003", name="Beta Ltd", offence_fine="£1,000"))
        _, offender_id = upsert_raw(provider, make_raw("5003", name="Beta Ltd", offence_fine="£1,200"))

        with provider.session_scope() as db:
            offender = db.get(Offender, offender_id)
            assert offender.total_cases == 1
            assert offender.total_fines == Decimal("1200.00")

    def test_unchanged_leaves_statistics(self, provider):
        """Re-sighting an unchanged case does not count it again."""
        upsert_raw(provider, make_raw("5004", name="Gamma Ltd"))
        _, offender_id = upsert_raw(provider, make_raw("5004", name="Gamma Ltd"))

        with provider.session_scope() as db:
            assert db.get(Offender, offender_id).total_cases == 1


class TestDiff:
    """Tests for the field-level diff."""

    def test_diff_skips_none_and_equal(self):
        """Only known, differing values are reported."""
        class Stored:
            offence_fine = Decimal("100.00")
            offence_result = "Guilty"
            offence_costs = None

        changes = UpsertEngine.diff(Stored(), {
            'offence_fine': Decimal("100.0"),
            'offence_result': None,
            'offence_costs': Decimal("50.00"),
        })
        assert changes == {'offence_costs': (None, Decimal("50.00"))}
