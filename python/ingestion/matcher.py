"""
Entity Matcher

Resolves the party named on a record to one Offender row:
1. Normalize the name and postcode
2. Exact lookup on (normalized name, postcode)
3. Fuzzy lookup: Jaccard similarity over character sets
4. Create, re-reading once if a concurrent writer won the race

Fuzzy ties are broken by postcode agreement, then by rapidfuzz's ratio, then
by age of the candidate, so the same inputs always pick the same offender.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from uuid import UUID

from rapidfuzz import fuzz
from sqlalchemy.orm import Session

from database.models import Offender
from database.repositories import DuplicateEntityError, OffenderRepository
from ingestion.errors import ConflictError
from ingestion.metrics import timed
from ingestion.transformer import clean_text, detect_business_type

logger = logging.getLogger(__name__)

UNKNOWN_PARTY_NAME = "Unknown Company"

DEFAULT_THRESHOLD = 0.7

POSTCODE_PATTERN = re.compile(r'\b([A-Z]{1,2}\d[A-Z\d]?)\s*(\d[A-Z]{2})\b', re.IGNORECASE)

LEGAL_SUFFIXES = (
    (re.compile(r'\bpublic limited company\b'), 'plc'),
    (re.compile(r'\bp\.\s?l\.\s?c\b\.?'), 'plc'),
    (re.compile(r'\bl\.\s?l\.\s?p\b\.?'), 'llp'),
    (re.compile(r'\bltd\b\.?'), 'limited'),
)

OFFENDER_DETAIL_FIELDS = (
    'town',
    'county',
    'local_authority',
    'country',
    'main_activity',
    'industry',
    'registration_number',
    'business_type',
)


@dataclass
class MatchOutcome:
    """Result of resolving a party"""
    offender: Offender
    created: bool
    method: str  # exact, fuzzy, created, reread
    score: Optional[float] = None

    @property
    def offender_id(self) -> UUID:
        return self.offender.id


# ============================================
# NORMALIZATION
# ============================================

def normalize_party_name(name: Any) -> str:
    """
    Normalize a party name for matching.

    'Test   Company    Limited' and 'Test Company Ltd.' both become
    'test company limited'. Missing names become the placeholder's form.
    """
    text = clean_text(name) or UNKNOWN_PARTY_NAME
    text = text.casefold()
    for pattern, replacement in LEGAL_SUFFIXES:
        text = pattern.sub(replacement, text)
    text = re.sub(r'[^\w\s&]|_', '', text)
    return re.sub(r'\s+', ' ', text).strip()


def extract_postcode(text: Any) -> Optional[str]:
    """
    Find a UK postcode in free text.

    Returns:
        The last postcode in the text, upper case without spaces, or None
    """
    if text is None:
        return None
    matches = POSTCODE_PATTERN.findall(str(text))
    if not matches:
        return None
    outward, inward = matches[-1]
    return f"{outward}{inward}".upper()


def normalize_postcode(value: Any) -> Optional[str]:
    """Normalize an explicit postcode field; values that are not postcodes yield None."""
    return extract_postcode(value)


def jaccard_similarity(a: str, b: str) -> float:
    """
    Jaccard ratio of the character sets of two strings, whitespace excluded.

    Returns:
        |A ∩ B| / |A ∪ B|, 0.0 when both are empty
    """
    set_a = {c for c in a if not c.isspace()}
    set_b = {c for c in b if not c.isspace()}
    union = set_a | set_b
    if not union:
        return 0.0
    return len(set_a & set_b) / len(union)


# ============================================
# MATCHER
# ============================================

class EntityMatcher:
    """Finds or creates the Offender for a party name and address"""

    def __init__(
        self,
        session: Session,
        threshold: float = DEFAULT_THRESHOLD,
        require_postcode_agreement: bool = True
    ):
        self.session = session
        self.threshold = threshold
        self.require_postcode_agreement = require_postcode_agreement
        self.repo = OffenderRepository(session)

    def resolve(
        self,
        name: Optional[str],
        address: Optional[str] = None,
        postcode: Optional[str] = None,
        **details: Any
    ) -> MatchOutcome:
        """
        Resolve a party to an Offender, creating it when unknown.

        Args:
            name: Party name as scraped (may be None)
            address: Free-text address (may be None)
            postcode: Explicit postcode field, preferred over the address
            **details: Extra offender attributes used on creation

        Returns:
            MatchOutcome

        Raises:
            ConflictError: Creation collided and the re-read still missed
        """
        display_name = clean_text(name) or UNKNOWN_PARTY_NAME
        normalized = normalize_party_name(display_name)
        code = normalize_postcode(postcode) or extract_postcode(address)

        offender = self.repo.get_by_identity(normalized, code)
        if offender is not None:
            return MatchOutcome(offender=offender, created=False, method="exact", score=1.0)

        candidate = self._best_candidate(normalized, code)
        if candidate is not None:
            offender_id, score = candidate
            offender = self.repo.get_by_id(offender_id)
            logger.debug(f"Fuzzy matched '{normalized}' to {offender_id} ({score:.2f})")
            return MatchOutcome(offender=offender, created=False, method="fuzzy", score=score)

        data: Dict[str, Any] = {
            key: value for key, value in details.items()
            if key in OFFENDER_DETAIL_FIELDS and value is not None
        }
        data.setdefault('business_type', detect_business_type(display_name))
        data.update({
            'name': display_name,
            'normalized_name': normalized,
            'postcode': code,
            'address': clean_text(address),
        })

        try:
            offender = self.repo.create(data)
        except DuplicateEntityError as e:
            offender = self.repo.get_by_identity(normalized, code)
            if offender is None:
                raise ConflictError(
                    f"Offender creation conflicted and re-read found nothing: {normalized}",
                    context={'normalized_name': normalized, 'postcode': code}
                ) from e
            return MatchOutcome(offender=offender, created=False, method="reread", score=1.0)

        return MatchOutcome(offender=offender, created=True, method="created")

    def _best_candidate(self, normalized: str, code: Optional[str]) -> Optional[Tuple[UUID, float]]:
        with timed("fuzzy_match"):
            best = None
            best_key = None
            for offender_id, candidate_name, candidate_code in self.repo.list_match_candidates():
                score = jaccard_similarity(normalized, candidate_name)
                if score < self.threshold:
                    continue
                postcode_match = bool(code and candidate_code and code == candidate_code)
                if (self.require_postcode_agreement and code and candidate_code
                        and not postcode_match):
                    continue
                key = (score, postcode_match, fuzz.ratio(normalized, candidate_name))
                # Strict comparison keeps the oldest candidate on a full tie
                if best_key is None or key > best_key:
                    best, best_key = (offender_id, score), key
            return best
