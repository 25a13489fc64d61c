"""
HSE (Health and Safety Executive) adapters

Two listings are supported:
- Court cases: https://resources.hse.gov.uk/{database}/case/case_list.asp
  with per-case detail, breach list and related cases
- Enforcement notices: https://resources.hse.gov.uk/notices/notices/notice_list.asp
  filtered by country, with per-notice detail and breach list

Listing tables are mapped by header label when the page has a header row,
so reordered or missing columns come through as None. Without a header the
historic column order is assumed. Detail requests are best-effort: when one
fails the record keeps its listing fields.
"""

import logging
import re
from abc import abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import quote, quote_plus

from database.models import EnforcementCase, EnforcementNotice, SyncType
from ingestion.adapters.base import Adapter, FetchedPage, register_adapter
from ingestion.errors import FetchError, PageParseError
from ingestion.html_utils import TableRow
from ingestion.transformer import CanonicalRecord, parse_date, transform_case, transform_notice

logger = logging.getLogger(__name__)

CASE_DATABASES = ("convictions", "convictions-history")

RELATED_CASE_PREFIX = "HSE_"

# (header keyword, raw field); first keyword found in a header cell wins
CASE_HEADER_KEYWORDS = (
    ('local authority', 'offender_local_authority'),
    ('activity', 'offender_main_activity'),
    ('date', 'offence_action_date'),
    ('defendant', 'offender_name'),
    ('name', 'offender_name'),
    ('case', 'regulator_id'),
)
CASE_POSITIONAL = (
    'regulator_id',
    'offender_name',
    'offence_action_date',
    'offender_local_authority',
    'offender_main_activity',
)
CASE_DETAIL_LABELS = {
    'hse directorate': 'regulator_function',
    'main activity': 'offender_main_activity',
    'industry': 'offender_industry',
    'local authority': 'offender_local_authority',
    'address': 'offender_address',
    'total fine': 'offence_fine',
    'total costs awarded to hse': 'offence_costs',
}

NOTICE_HEADER_KEYWORDS = (
    ('local authority', 'offender_local_authority'),
    ('sic', 'offender_sic'),
    ('type', 'offence_action_type'),
    ('date', 'offence_action_date'),
    ('recipient', 'offender_name'),
    ('name', 'offender_name'),
    ('notice', 'regulator_id'),
)
NOTICE_POSITIONAL = (
    'regulator_id',
    'offender_name',
    'offence_action_type',
    'offence_action_date',
    'offender_local_authority',
    'offender_sic',
)
NOTICE_DETAIL_LABELS = {
    'hse directorate': 'regulator_function',
    'compliance date': 'offence_compliance_date',
    'revised compliance date': 'offence_revised_compliance_date',
    'description': 'offence_description',
    'main activity': 'offender_main_activity',
    'industry': 'offender_industry',
    'address': 'offender_address',
}


# ============================================
# TABLE MAPPING
# ============================================

def map_header(row: TableRow, keywords: Sequence[Tuple[str, str]]) -> Dict[int, str]:
    """Map column index to raw field name using header keywords."""
    columns: Dict[int, str] = {}
    for index, cell in enumerate(row.cells):
        label = cell.text.lower()
        for keyword, field_name in keywords:
            if keyword in label and field_name not in columns.values():
                columns[index] = field_name
                break
    return columns


def _is_header_row(row: TableRow, keywords: Sequence[Tuple[str, str]], id_field: str) -> bool:
    if any(cell.href for cell in row.cells):
        return False
    columns = map_header(row, keywords)
    return id_field in columns.values() and len(columns) >= 2


def rows_to_records(
    rows: List[TableRow],
    keywords: Sequence[Tuple[str, str]],
    positional: Sequence[str],
    id_field: str = 'regulator_id'
) -> List[Dict[str, Any]]:
    """
    Turn listing rows into raw field dictionaries.

    With a header row, columns are mapped by label and every body row with
    a non-empty id becomes a record. Without one, rows must have at least
    the positional column count and a link in the id column.
    """
    header_at = next(
        (i for i, row in enumerate(rows) if _is_header_row(row, keywords, id_field)),
        None
    )
    if header_at is not None:
        columns = map_header(rows[header_at], keywords)
        body = rows[header_at + 1:]
        min_cells = min(len(columns), 2)
        require_link = False
    else:
        columns = dict(enumerate(positional))
        body = rows
        min_cells = len(positional)
        require_link = True

    id_column = next(i for i, name in columns.items() if name == id_field)
    fields = set(columns.values())

    records = []
    for row in body:
        if row.is_header or len(row.cells) <= id_column or len(row.cells) < min_cells:
            continue
        if require_link and not row.cells[id_column].href:
            continue
        raw: Dict[str, Any] = dict.fromkeys(fields)
        for index, name in columns.items():
            if index < len(row.cells):
                raw[name] = row.cells[index].text or None
        if raw.get(id_field):
            records.append(raw)
    return records


def label_values(rows: Iterable[TableRow], labels: Dict[str, str]) -> Dict[str, str]:
    """
    Collect label/value pairs from a detail page.

    A cell whose text is a known label (case-insensitive, trailing colon
    ignored) takes the text of the next cell as its value.
    """
    found: Dict[str, str] = {}
    for row in rows:
        cells = row.cells
        for index, cell in enumerate(cells[:-1]):
            label = cell.text.rstrip(':').strip().lower()
            if label in labels and labels[label] not in found:
                value = cells[index + 1].text
                if value:
                    found[labels[label]] = value
    return found


def find_link(rows: Iterable[TableRow], fragment: str) -> Optional[str]:
    for row in rows:
        for cell in row.cells:
            href = cell.link_containing(fragment)
            if href:
                return href
    return None


# ============================================
# SHARED BEHAVIOUR
# ============================================

class _HseAdapter(Adapter):
    agency_code = "hse"
    agency_name = "Health and Safety Executive"

    def _rows(self, path: str) -> List[TableRow]:
        self.rate_limiter.acquire()
        return self.fetcher.fetch_rows(path)

    def _enrich(self, raw: Dict[str, Any]) -> Dict[str, Any]:
        """Merge detail fields into a listing record; listing fields survive failures."""
        regulator_id = raw['regulator_id']
        try:
            details = self.details(regulator_id)
        except (FetchError, PageParseError) as e:
            logger.warning(f"✗ Details for {regulator_id} unavailable, keeping listing fields: {e}")
            return raw
        merged = dict(raw)
        merged.update({k: v for k, v in details.items() if v not in (None, '', [])})
        return merged

    def _best_effort(self, what: str, func, regulator_id: str):
        try:
            return func(regulator_id)
        except (FetchError, PageParseError) as e:
            logger.warning(f"✗ {what} for {regulator_id} unavailable: {e}")
            return None

    @abstractmethod
    def details(self, regulator_id: str) -> Dict[str, Any]:
        """Detail page fields of one record"""

    @abstractmethod
    def list_records(self, page: int) -> List[Dict[str, Any]]:
        """Raw records of one listing page"""

    def fetch(self, page: int) -> FetchedPage:
        records = self.list_records(page)
        if self.config.fetch_details:
            records = [self._enrich(raw) for raw in records]
        logger.info(f"✓ {self.name} page {page}: {len(records)} records")
        return FetchedPage(page=page, records=records, url=self.fetcher.build_url(self.list_path(page)))

    @abstractmethod
    def list_path(self, page: int) -> str:
        """Listing path of a page, relative to the base URL"""


# ============================================
# CASES
# ============================================

@register_adapter("hse_cases")
class HseCaseAdapter(_HseAdapter):
    """HSE prosecution cases"""

    sync_type = SyncType.HSE_CASES
    target_model = EnforcementCase

    LIST_PATH = "case_list.asp?PN={page}&ST=C&EO=LIKE&SN=F&SF=DN&SV=&SO=DODS"

    def default_base_url(self) -> str:
        if self.config.database not in CASE_DATABASES:
            raise ValueError(
                f"Unknown HSE case database '{self.config.database}'; expected one of {CASE_DATABASES}"
            )
        return f"https://resources.hse.gov.uk/{self.config.database}/case/"

    def list_path(self, page: int) -> str:
        return (self.config.endpoint_path or self.LIST_PATH).format(page=page)

    def list_records(self, page: int) -> List[Dict[str, Any]]:
        rows = self._rows(self.list_path(page))
        return rows_to_records(rows, CASE_HEADER_KEYWORDS, CASE_POSITIONAL)

    def details(self, regulator_id: str) -> Dict[str, Any]:
        path = f"case_details.asp?SF=CN&SV={quote(regulator_id)}"
        rows = self._rows(path)
        details: Dict[str, Any] = label_values(rows, CASE_DETAIL_LABELS)
        details['source_url'] = self.fetcher.build_url(path)

        if find_link(rows, "involved in this case"):
            details.update(self._best_effort("Breaches", self.breaches, regulator_id) or {})
        if find_link(rows, "related cases"):
            details['related_cases'] = self._best_effort("Related cases", self.related_cases, regulator_id)
        return details

    def breaches(self, regulator_id: str) -> Dict[str, Any]:
        """Breach list of a case: hearing date, result and breach text per row."""
        path = f"../breach/breach_list.asp?ST=B&SN=F&EO=%3D&SF=CN&SV={quote(regulator_id)}"
        result: Dict[str, Any] = {'offence_breaches': []}
        for row in self._rows(path):
            if row.is_header or len(row.cells) != 6:
                continue
            hearing_date = parse_date(row.cells[2].text)
            if hearing_date is None:
                continue
            result['offence_hearing_date'] = hearing_date
            result['offence_result'] = row.cells[3].text or None
            result['offence_breaches'].append(row.cells[5].text)
        return result

    def related_cases(self, regulator_id: str) -> List[str]:
        path = f"case_list.asp?ST=C&SN=R&EO=%3D&SF=RCN&SV={quote(regulator_id)}"
        records = rows_to_records(self._rows(path), CASE_HEADER_KEYWORDS, CASE_POSITIONAL)
        return [
            RELATED_CASE_PREFIX + r['regulator_id']
            for r in records
            if r['regulator_id'] != regulator_id
        ]

    def transform(self, raw: Dict[str, Any]) -> CanonicalRecord:
        return transform_case(raw, self.agency_code)


# ============================================
# NOTICES
# ============================================

@register_adapter("hse_notices")
class HseNoticeAdapter(_HseAdapter):
    """HSE improvement and prohibition notices"""

    sync_type = SyncType.HSE_NOTICES
    target_model = EnforcementNotice

    LIST_PATH = "notice_list.asp?PN={page}&ST=N&CO=,AND&SN=F&EO==&SF=CTR&SV={country}&SO=DNIS"

    def default_base_url(self) -> str:
        return "https://resources.hse.gov.uk/notices/notices/"

    def list_path(self, page: int) -> str:
        template = self.config.endpoint_path or self.LIST_PATH
        return template.format(page=page, country=quote_plus(self.config.country))

    def list_records(self, page: int) -> List[Dict[str, Any]]:
        rows = self._rows(self.list_path(page))
        return rows_to_records(rows, NOTICE_HEADER_KEYWORDS, NOTICE_POSITIONAL)

    def details(self, regulator_id: str) -> Dict[str, Any]:
        path = f"notice_details.asp?SF=CN&SV={quote(regulator_id)}"
        details: Dict[str, Any] = label_values(self._rows(path), NOTICE_DETAIL_LABELS)
        details['source_url'] = self.fetcher.build_url(path)
        details['offence_breaches'] = self._best_effort("Breaches", self.breaches, regulator_id)
        return details

    def breaches(self, regulator_id: str) -> List[str]:
        path = f"../breach/breach_list.asp?ST=B&SN=F&EO==&SF=NN&SV={quote(regulator_id)}"
        found = []
        for row in self._rows(path):
            if row.is_header or len(row.cells) != 5:
                continue
            # Label rows carry no digits; every breach row has a number
            if not any(re.search(r'\d', cell.text) for cell in row.cells):
                continue
            if row.cells[3].text:
                found.append(row.cells[3].text)
        return found

    def transform(self, raw: Dict[str, Any]) -> CanonicalRecord:
        return transform_notice(raw, self.agency_code)
