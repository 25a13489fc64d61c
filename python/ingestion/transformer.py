"""
Record Transformer

Pure functions turning raw field dictionaries (as scraped) into canonical
attributes. Every parser accepts None or empty input and returns None rather
than raising, so one sloppy field never costs a whole record.

Natural keys are deterministic: an explicit source reference wins, otherwise
a synthetic id is derived from stable fields so re-scraping the same source
record always yields the same key.
"""

import hashlib
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Union

from database.models import BusinessType
from ingestion.errors import RecordValidationError

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")

SYNTHETIC_ID_LENGTH = 16

MONEY_STRIP_PATTERN = re.compile(r'[£$,\s]')

ACTION_TYPES = (
    ("court", "Court Case"),
    ("prosecution", "Court Case"),
    ("improvement", "Improvement Notice"),
    ("prohibition", "Prohibition Notice"),
    ("caution", "Formal Caution"),
)

CASE = "case"
NOTICE = "notice"


@dataclass
class PartyDetails:
    """Party (offender) attributes as found in the source record"""
    name: Optional[str] = None
    address: Optional[str] = None
    postcode: Optional[str] = None
    town: Optional[str] = None
    county: Optional[str] = None
    local_authority: Optional[str] = None
    country: Optional[str] = None
    main_activity: Optional[str] = None
    industry: Optional[str] = None
    registration_number: Optional[str] = None
    business_type: str = BusinessType.OTHER.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'address': self.address,
            'postcode': self.postcode,
            'town': self.town,
            'county': self.county,
            'local_authority': self.local_authority,
            'country': self.country,
            'main_activity': self.main_activity,
            'industry': self.industry,
            'registration_number': self.registration_number,
            'business_type': self.business_type,
        }


@dataclass
class CanonicalRecord:
    """A source record after normalization, ready for matching and upsert"""
    regulator_id: str
    agency_code: str
    kind: str
    party: PartyDetails
    fields: Dict[str, Any] = field(default_factory=dict)
    synthetic_id: bool = False

    @property
    def action_date(self) -> Optional[date]:
        return self.fields.get('offence_action_date')

    @property
    def fine(self) -> Optional[Decimal]:
        return self.fields.get('offence_fine')

    def to_dict(self) -> Dict[str, Any]:
        return {
            'regulator_id': self.regulator_id,
            'agency_code': self.agency_code,
            'kind': self.kind,
            'synthetic_id': self.synthetic_id,
            'party': self.party.to_dict(),
            'fields': {
                k: (v.isoformat() if isinstance(v, date) else str(v) if isinstance(v, Decimal) else v)
                for k, v in self.fields.items()
            },
        }


# ============================================
# TEXT
# ============================================

def clean_text(value: Any) -> Optional[str]:
    """
    Trim and collapse whitespace.

    Returns:
        Cleaned string, or None for None/empty/whitespace-only input
    """
    if value is None:
        return None
    text = re.sub(r'\s+', ' ', str(value).replace('\xa0', ' ')).strip()
    return text or None


def normalize_address(value: Any) -> Optional[str]:
    """Collapse whitespace and repeated commas in an address."""
    text = clean_text(value)
    if text is None:
        return None
    text = re.sub(r'\s*,\s*', ', ', text)
    text = re.sub(r'(,\s*)+', ', ', text)
    return text.strip(' ,') or None


def normalize_regulator_function(value: Any) -> Optional[str]:
    """'FIELD OPERATIONS DIRECTORATE' -> 'Field Operations Directorate'."""
    text = clean_text(value)
    if text is None:
        return None
    if text.isupper():
        return ' '.join(word.capitalize() for word in text.split(' '))
    return text


def normalize_action_type(value: Any) -> Optional[str]:
    """
    Map a free-text action type onto the canonical set.

    Returns:
        'Court Case', 'Improvement Notice', 'Prohibition Notice',
        'Formal Caution', 'Other', or None for empty input
    """
    text = clean_text(value)
    if text is None:
        return None
    lowered = text.lower()
    for marker, canonical in ACTION_TYPES:
        if marker in lowered:
            return canonical
    return "Other"


def detect_business_type(name: Any) -> str:
    """
    Detect the legal form of a party from its name.

    Returns:
        BusinessType value; 'other' when nothing matches or name is empty
    """
    text = clean_text(name)
    if text is None:
        return BusinessType.OTHER.value
    if re.search(r'\bP\.?L\.?C\.?$|\bPLC\b', text, re.IGNORECASE):
        return BusinessType.PLC.value
    if re.search(r'\bLLP\b', text, re.IGNORECASE):
        return BusinessType.PARTNERSHIP.value
    if re.search(r'\b(limited|ltd)\b', text, re.IGNORECASE):
        return BusinessType.LIMITED_COMPANY.value
    if re.match(r'^(mr|mrs|ms|miss|dr)\.?\s', text, re.IGNORECASE):
        return BusinessType.INDIVIDUAL.value
    return BusinessType.OTHER.value


# ============================================
# DATES AND MONEY
# ============================================

def parse_date(value: Any) -> Optional[date]:
    """
    Parse a date in any of the formats the sources use.

    Accepts ISO (YYYY-MM-DD, optionally followed by a time), DD/MM/YYYY,
    DD-MM-YYYY, and date/datetime objects.

    Returns:
        date, or None for empty or unparseable input
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    text = clean_text(value)
    if text is None:
        return None
    if re.match(r'^\d{4}-\d{2}-\d{2}T', text):
        text = text[:10]

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_money(value: Any) -> Optional[Decimal]:
    """
    Parse a monetary amount such as '£12,500.00'.

    Returns:
        Decimal with two places, or None for empty or unparseable input
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        text = MONEY_STRIP_PATTERN.sub('', str(value))
        if not text:
            return None
        try:
            amount = Decimal(text)
        except InvalidOperation:
            return None

    if not amount.is_finite():
        return None
    try:
        return amount.quantize(Decimal("0.01"))
    except InvalidOperation:
        return None


# ============================================
# BREACHES AND RELATED CASES
# ============================================

def _as_items(value: Union[None, str, Iterable[Any]], separator: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        parts = value.split(separator)
    else:
        parts = list(value)
    items = []
    for part in parts:
        text = clean_text(part)
        if text and text not in items:
            items.append(text)
    return items


def join_breaches(value: Union[None, str, Iterable[Any]]) -> Optional[str]:
    """
    Join breach descriptions into one '; '-separated string.

    Args:
        value: A list of breaches or an already-joined string

    Returns:
        De-duplicated, order-preserving joined text, or None when empty
    """
    items = _as_items(value, ';')
    return '; '.join(items) if items else None


def count_breaches(value: Union[None, str, Iterable[Any]]) -> Optional[int]:
    items = _as_items(value, ';')
    return len(items) if items else None


def join_related_cases(value: Union[None, str, Iterable[Any]]) -> Optional[str]:
    """Join related case ids with commas, keeping first-seen order."""
    items = _as_items(value, ',')
    return ','.join(items) if items else None


# ============================================
# NATURAL KEYS
# ============================================

def synthetic_id(*parts: Any) -> str:
    """
    Deterministic id from stable fields.

    Returns:
        First 16 upper-case hex characters of SHA-256 over the '|'-joined parts
    """
    joined = '|'.join('' if p is None else str(p) for p in parts)
    return hashlib.sha256(joined.encode('utf-8')).hexdigest().upper()[:SYNTHETIC_ID_LENGTH]


def natural_id(raw: Dict[str, Any], agency_code: str, id_field: str = 'regulator_id') -> tuple:
    """
    Resolve the natural id of a raw record.

    Args:
        raw: Raw field dictionary
        agency_code: Agency the record belongs to
        id_field: Raw field holding the explicit reference

    Returns:
        Tuple of (natural id, is_synthetic)

    Raises:
        RecordValidationError: No explicit id and no stable fields to derive one
    """
    explicit = clean_text(raw.get(id_field))
    if explicit:
        return explicit, False

    name = clean_text(raw.get('offender_name'))
    action_date = parse_date(raw.get('offence_action_date'))
    action_type = normalize_action_type(raw.get('offence_action_type'))
    if not name and action_date is None:
        raise RecordValidationError(
            "Record has no reference and no stable fields to derive one",
            context={'raw_keys': sorted(raw.keys())}
        )

    digest = synthetic_id(
        name.upper() if name else None,
        action_date.isoformat() if action_date else None,
        action_type
    )
    return f"{agency_code.upper()}-{digest}", True


# ============================================
# RECORD TRANSFORMS
# ============================================

def _party_from_raw(raw: Dict[str, Any]) -> PartyDetails:
    name = clean_text(raw.get('offender_name'))
    return PartyDetails(
        name=name,
        address=normalize_address(raw.get('offender_address')),
        postcode=clean_text(raw.get('offender_postcode')),
        town=clean_text(raw.get('offender_town')),
        county=clean_text(raw.get('offender_county')),
        local_authority=clean_text(raw.get('offender_local_authority')),
        country=clean_text(raw.get('offender_country')),
        main_activity=clean_text(raw.get('offender_main_activity')),
        industry=clean_text(raw.get('offender_industry')),
        registration_number=clean_text(raw.get('offender_registration_number')),
        business_type=detect_business_type(name),
    )


def transform_case(raw: Dict[str, Any], agency_code: str) -> CanonicalRecord:
    """
    Transform a raw case into a CanonicalRecord.

    Raises:
        RecordValidationError: If no natural id can be determined
    """
    regulator_id, synthetic = natural_id(raw, agency_code)
    breaches = raw.get('offence_breaches')
    fields = {
        'offence_action_type': normalize_action_type(raw.get('offence_action_type')) or "Court Case",
        'offence_action_date': parse_date(raw.get('offence_action_date')),
        'offence_hearing_date': parse_date(raw.get('offence_hearing_date')),
        'offence_result': clean_text(raw.get('offence_result')),
        'offence_fine': parse_money(raw.get('offence_fine')),
        'offence_costs': parse_money(raw.get('offence_costs')),
        'offence_breaches': join_breaches(breaches),
        'offence_breaches_count': count_breaches(breaches),
        'regulator_function': normalize_regulator_function(raw.get('regulator_function')),
        'related_cases': join_related_cases(raw.get('related_cases')),
        'source_url': clean_text(raw.get('source_url')),
    }
    return CanonicalRecord(
        regulator_id=regulator_id,
        agency_code=agency_code,
        kind=CASE,
        party=_party_from_raw(raw),
        fields=fields,
        synthetic_id=synthetic,
    )


def transform_notice(raw: Dict[str, Any], agency_code: str) -> CanonicalRecord:
    """
    Transform a raw notice into a CanonicalRecord.

    Raises:
        RecordValidationError: If no natural id can be determined
    """
    regulator_id, synthetic = natural_id(raw, agency_code)
    action_date = parse_date(raw.get('offence_action_date'))
    fields = {
        'offence_action_type': normalize_action_type(raw.get('offence_action_type')),
        'offence_action_date': action_date,
        'notice_date': parse_date(raw.get('notice_date')) or action_date,
        'operative_date': parse_date(raw.get('operative_date')),
        'compliance_date': parse_date(raw.get('offence_compliance_date')),
        'revised_compliance_date': parse_date(raw.get('offence_revised_compliance_date')),
        'notice_body': clean_text(raw.get('offence_description')),
        'offence_breaches': join_breaches(raw.get('offence_breaches')),
        'regulator_function': normalize_regulator_function(raw.get('regulator_function')),
        'source_url': clean_text(raw.get('source_url')),
    }
    return CanonicalRecord(
        regulator_id=regulator_id,
        agency_code=agency_code,
        kind=NOTICE,
        party=_party_from_raw(raw),
        fields=fields,
        synthetic_id=synthetic,
    )
