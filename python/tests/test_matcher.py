"""
Tests for offender matching.

Normalization and postcode extraction are pure; resolution runs against
in-memory SQLite.
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from database.models import Offender
from ingestion.matcher import (
    UNKNOWN_PARTY_NAME,
    EntityMatcher,
    extract_postcode,
    jaccard_similarity,
    normalize_party_name,
)


class TestNormalization:
    """Tests for party name normalization."""

    def test_whitespace_and_suffix(self):
        """Spacing and Ltd/Limited differences normalize away."""
        assert normalize_party_name("Test   Company    Limited") == normalize_party_name("Test Company Ltd")
        assert normalize_party_name("Test Company Ltd.") == "test company limited"

    def test_plc_variants(self):
        """P.L.C. and Public Limited Company become plc."""
        assert normalize_party_name("Acme P.L.C.") == "acme plc"
        assert normalize_party_name("Acme Public Limited Company") == "acme plc"

    def test_punctuation_removed(self):
        """Punctuation other than ampersands is dropped."""
        assert normalize_party_name("O'Neill & Sons, Ltd") == "oneill & sons limited"

    def test_missing_name(self):
        """Missing names normalize to the placeholder."""
        assert normalize_party_name(None) == normalize_party_name(UNKNOWN_PARTY_NAME)
        assert normalize_party_name("   ") == "unknown company"


class TestPostcodes:
    """Tests for postcode extraction."""

    def test_extract_from_address(self):
        """A postcode is found inside free text and normalized."""
        assert extract_postcode("1 High Street, Leeds, ls1 4ap") == "LS14AP"

    def test_extract_last_postcode(self):
        """When several postcodes appear the last one wins."""
        assert extract_postcode("Formerly of M1 1AA, now SW1A 1AA") == "SW1A1AA"

    def test_no_postcode(self):
        """Null-safe: None, empty and postcode-free text give None."""
        assert extract_postcode(None) is None
        assert extract_postcode("") is None
        assert extract_postcode("Unit 4, Industrial Estate") is None


class TestJaccard:
    """Tests for the character-set similarity."""

    def test_identical(self):
        assert jaccard_similarity("acme", "acme") == 1.0

    def test_half_overlap(self):
        """{a,b,c} vs {b,c,d} share 2 of 4 characters."""
        assert jaccard_similarity("abc", "bcd") == 0.5

    def test_empty(self):
        assert jaccard_similarity("", "") == 0.0

    def test_whitespace_ignored(self):
        assert jaccard_similarity("a b", "ab") == 1.0


class TestEntityMatcher:
    """Tests for EntityMatcher.resolve against SQLite."""

    def test_creates_then_matches_exactly(self, provider):
        """The second sighting of the same party reuses the offender."""
        with provider.session_scope() as db:
            first = EntityMatcher(db).resolve("Test   Company    Limited", address="Leeds LS1 4AP")
        with provider.session_scope() as db:
            second = EntityMatcher(db).resolve("Test Company Ltd", address="1 High St, Leeds LS1 4AP")

        assert first.created is True
        assert second.created is False
        assert second.method == "exact"
        assert second.offender_id == first.offender_id

    def test_low_similarity_creates_new(self, provider):
        """A candidate below the threshold is not merged."""
        with provider.session_scope() as db:
            first = EntityMatcher(db).resolve("abc")
        with provider.session_scope() as db:
            second = EntityMatcher(db).resolve("bcd")

        assert jaccard_similarity("abc", "bcd") == 0.5
        assert second.created is True
        assert second.offender_id != first.offender_id

    def test_fuzzy_match_above_threshold(self, provider):
        """A close variant of a known name matches fuzzily."""
        with provider.session_scope() as db:
            first = EntityMatcher(db).resolve("Northern Steel Fabrications Limited", postcode="S1 2AB")
        with provider.session_scope() as db:
            second = EntityMatcher(db).resolve("Northern Steel Fabrication Limited", postcode="S1 2AB")

        assert second.method == "fuzzy"
        assert second.offender_id == first.offender_id
        assert second.score >= 0.7

    def test_postcode_disagreement_blocks_fuzzy(self, provider):
        """Similar names at different postcodes stay separate."""
        with provider.session_scope() as db:
            first = EntityMatcher(db).resolve("Northern Steel Fabrications Limited", postcode="S1 2AB")
        with provider.session_scope() as db:
            second = EntityMatcher(db).resolve("Northern Steel Fabrication Limited", postcode="M1 1AA")

        assert second.created is True
        assert second.offender_id != first.offender_id

    def test_postcode_agreement_optional(self, provider):
        """With agreement not required, postcodes only break ties."""
        with provider.session_scope() as db:
            first = EntityMatcher(db).resolve("Northern Steel Fabrications Limited", postcode="S1 2AB")
        with provider.session_scope() as db:
            matcher = EntityMatcher(db, require_postcode_agreement=False)
            second = matcher.resolve("Northern Steel Fabrication Limited", postcode="M1 1AA")

        assert second.method == "fuzzy"
        assert second.offender_id == first.offender_id

    def test_deterministic_choice(self, provider):
        """Repeated resolution of the same input picks the same offender."""
        with provider.session_scope() as db:
            matcher = EntityMatcher(db)
            matcher.resolve("Alpha Building Services Limited")
            matcher.resolve("Alpha Building Service Limited", postcode="LS1 4AP")

        chosen = set()
        for _ in range(3):
            with provider.session_scope() as db:
                chosen.add(EntityMatcher(db).resolve("Alpha Buildings Services Limited").offender_id)
        assert len(chosen) == 1

    def test_missing_name_uses_placeholder(self, provider):
        """A record without a party name gets the placeholder offender."""
        with provider.session_scope() as db:
            outcome = EntityMatcher(db).resolve(None)
            assert outcome.offender.name == UNKNOWN_PARTY_NAME

    def test_details_stored_on_creation(self, provider):
        """Extra details and business type are stored on a new offender."""
        with provider.session_scope() as db:
            outcome = EntityMatcher(db).resolve(
                "Acme PLC", address="1 Dock Road, Hull HU1 1AA",
                local_authority="Hull", main_activity="Shipping", unknown_field="ignored"
            )
            offender_id = outcome.offender_id

        with provider.session_scope() as db:
            offender = db.get(Offender, offender_id)
            assert offender.postcode == "HU11AA"
            assert offender.local_authority == "Hull"
            assert offender.main_activity == "Shipping"
            assert offender.business_type == "plc"
            assert offender.normalized_name == "acme plc"

    def test_invalid_threshold_rejected_by_limits(self):
        """Thresholds outside (0, 1] are rejected by crawl limits."""
        from ingestion.coordinator import CrawlLimits
        with pytest.raises(ValueError):
            CrawlLimits(match_threshold=1.5).validate()
