"""
HTML Utilities for listing pages

Provides lenient table extraction on top of BeautifulSoup (lxml parser) and
log sanitization for text that originates from remote pages.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup


@dataclass
class TableCell:
    """One table cell: visible text, its first link and every (text, href) link"""
    text: str
    href: Optional[str] = None
    is_header: bool = False
    links: List[Tuple[str, str]] = field(default_factory=list)

    def link_containing(self, fragment: str) -> Optional[str]:
        """href of the first link whose text contains fragment (case-insensitive)"""
        for text, href in self.links:
            if fragment.lower() in text.lower():
                return href
        return None


@dataclass
class TableRow:
    """One table row of cells"""
    cells: List[TableCell] = field(default_factory=list)

    @property
    def is_header(self) -> bool:
        return bool(self.cells) and all(c.is_header for c in self.cells)

    def texts(self) -> List[str]:
        return [c.text for c in self.cells]


def collapse_whitespace(text: Optional[str]) -> str:
    """Collapse runs of whitespace (including &nbsp;) into single spaces."""
    if not text:
        return ''
    return re.sub(r'\s+', ' ', text.replace('\xa0', ' ')).strip()


def parse_html(html: str) -> BeautifulSoup:
    """Parse markup with the lxml parser."""
    return BeautifulSoup(html or '', 'lxml')


def extract_rows(html: str) -> List[TableRow]:
    """
    Extract every table row of a document.

    Args:
        html: Page markup

    Returns:
        Rows in document order; rows with no cells are dropped
    """
    soup = parse_html(html)
    rows = []
    for tr in soup.find_all('tr'):
        cells = []
        for cell in tr.find_all(['td', 'th'], recursive=False):
            links = [
                (collapse_whitespace(a.get_text(' ')), a['href'])
                for a in cell.find_all('a', href=True)
            ]
            cells.append(TableCell(
                text=collapse_whitespace(cell.get_text(' ')),
                href=links[0][1] if links else None,
                is_header=cell.name == 'th',
                links=links
            ))
        if cells:
            rows.append(TableRow(cells=cells))
    return rows


def sanitize_for_logging(text: str) -> str:
    """Sanitize remote text for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: Untrusted text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized
