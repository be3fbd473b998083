"""Regex and heuristic invoice field extraction.

Always available and free. For every field the order is: learned pattern
from the pattern store (highest confidence first), then the hand-authored
regex library (most to least specific). The total alone has a last
resort: the largest currency value between 1 and 1,000,000 in the text,
recorded in ``fallback_fields`` so it can be flagged for review.
"""

import logging
import re
from collections.abc import Callable, Iterable
from typing import TYPE_CHECKING, Any

from docparse.extraction.normalizers import (
    AMOUNT_NUMBER,
    CURRENCY_TOKEN_RE,
    DATE_TOKEN,
    DateNormalizer,
    clean_invoice_number,
    clean_text_field,
    is_valid_invoice_number,
    parse_amount,
)
from docparse.extraction.schema import CORE_FIELDS, InvoiceLineItem, ParsedInvoice

if TYPE_CHECKING:
    from docparse.learning.store import PatternStore

logger = logging.getLogger(__name__)

FALLBACK_MIN_AMOUNT = 1.0
FALLBACK_MAX_AMOUNT = 1_000_000.0

_MONEY = r"(?:[A-Z]{3}\s*)?[$€£]?\s*(" + AMOUNT_NUMBER + r")"
_FLAGS = re.IGNORECASE

INVOICE_NUMBER_PATTERNS = [
    re.compile(
        r"\b(?:tax\s+)?(?:invoice|inv)\s*(?:(?:number|num|no)\b\.?|#)\s*[:#]?\s*"
        r"([A-Z0-9][A-Z0-9\-/_.]{1,24})",
        _FLAGS,
    ),
    re.compile(r"\binvoice\s*[:#]\s*([A-Z0-9][A-Z0-9\-/_.]{1,24})", _FLAGS),
    re.compile(r"\b(INV[-_/]?\d[\w\-/]*)", _FLAGS),
    re.compile(
        r"\b(?:reference|ref)\s*(?:(?:number|no)\b\.?|#)?\s*[:#]\s*([A-Z0-9][A-Z0-9\-/_.]{2,24})",
        _FLAGS,
    ),
]

DATE_PATTERNS = [
    re.compile(
        r"\b(?:invoice\s+date|date\s+of\s+issue|issue\s+date|issued|tax\s+point)\s*[:\-]?\s*"
        r"(" + DATE_TOKEN + r")",
        _FLAGS,
    ),
    re.compile(r"(?<!due )\bdated?\s*[:\-]?\s*(" + DATE_TOKEN + r")", _FLAGS),
    re.compile(r"(" + DATE_TOKEN + r")", _FLAGS),
]

_VENDOR_STOP = r"(?=\s{2,}|\s+(?:invoice|date|total|abn|gst|phone|tel|email|ph)\b|$)"
VENDOR_PATTERNS = [
    re.compile(
        r"^[ \t]*(?:from|vendor|supplier|seller|sold\s+by|billed?\s+by|company)\s*[:\-]\s*"
        r"([^\n]{2,80}?)" + _VENDOR_STOP,
        _FLAGS | re.MULTILINE,
    ),
]
_COMPANY_SUFFIX_RE = re.compile(
    r"\b(?:Ltd|Limited|LLC|Inc|Pty|Co|Company|Corp|Corporation|Group|Services|Builders|"
    r"Construction|Contracting|Plumbing|Electrical)\b\.?",
    _FLAGS,
)

DESCRIPTION_PATTERNS = [
    re.compile(
        r"^[ \t]*(?:description|subject|project|re|for)\s*:\s*([^\n]{3,120})",
        _FLAGS | re.MULTILINE,
    ),
]

AMOUNT_PATTERNS = [
    re.compile(r"\bsub[\s\-]?total\s*[:\-]?\s*" + _MONEY, _FLAGS),
    re.compile(r"\bnet\s+(?:amount|total|worth)\s*[:\-]?\s*" + _MONEY, _FLAGS),
    re.compile(
        r"\bamount\s+excl(?:uding|\.)?\s*(?:gst|vat|tax)?\s*[:\-]?\s*" + _MONEY,
        _FLAGS,
    ),
    re.compile(r"\bamount\s*:\s*" + _MONEY, _FLAGS),
]

TAX_PATTERNS = [
    re.compile(
        r"(?<!incl )(?<!incl\. )(?<!including )"
        r"\b(?:gst|vat|sales\s+tax|tax)(?:\s*\(?\s*\d{1,2}(?:\.\d+)?\s*%\s*\)?)?"
        r"(?:\s+amount)?\s*[:\-]?\s*" + _MONEY,
        _FLAGS,
    ),
]

TOTAL_PATTERNS = [
    re.compile(
        r"\b(?:total\s+(?:due|amount|payable|inc(?:l(?:uding)?)?\.?\s*(?:gst|vat|tax))"
        r"|amount\s+(?:due|payable)|balance\s+due|grand\s+total|invoice\s+total)"
        r"\s*[:\-]?\s*" + _MONEY,
        _FLAGS,
    ),
    re.compile(r"(?<!sub )(?<!sub-)\btotal\s*[:\-]?\s*" + _MONEY, _FLAGS),
]

_ITEM_LINE_RE = re.compile(
    r"Item\s*\d+\s*:\s*(?P<desc>[^\n]+?)\s*-\s*Qty:?\s*(?P<qty>\d+(?:\.\d+)?)\s*-\s*"
    r"\$?(?P<unit>" + AMOUNT_NUMBER + r")\s*each\s*-\s*\$?(?P<total>" + AMOUNT_NUMBER + r")",
    _FLAGS,
)
_HOURS_LINE_RE = re.compile(
    r"^[ \t]*(?P<desc>[A-Za-z][^\n]{2,60}?)\s*-\s*(?P<qty>\d+(?:\.\d+)?)\s*(?:hours?|hrs?)\s*-\s*"
    r"\$?(?P<unit>" + AMOUNT_NUMBER + r")\s*/\s*(?:hour|hr)\s*-\s*"
    r"\$?(?P<total>" + AMOUNT_NUMBER + r")",
    _FLAGS | re.MULTILINE,
)
_TABLE_ROW_RE = re.compile(
    r"^[ \t]*(?P<desc>[A-Za-z][A-Za-z0-9 &/,.'()\-]{2,60}?)\s+(?P<qty>\d+(?:\.\d+)?)\s+"
    r"\$?(?P<unit>(?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2})\s+"
    r"\$?(?P<total>(?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2})[ \t]*$",
    re.MULTILINE,
)


def _first_valid(
    patterns: Iterable[re.Pattern[str]],
    text: str,
    convert: Callable[[str], object | None],
) -> object | None:
    for pattern in patterns:
        for match in pattern.finditer(text):
            value = convert(match.group(1))
            if value is not None:
                return value
    return None


class TraditionalExtractor:
    """Regex/heuristic extractor consulting the pattern learning store."""

    name = "traditional"

    def __init__(
        self,
        pattern_store: "PatternStore | None" = None,
        date_normalizer: DateNormalizer | None = None,
    ) -> None:
        self.pattern_store = pattern_store
        self.date_normalizer = date_normalizer or DateNormalizer()

    def extract_fields(self, page_text: str, page_number: int = 1) -> ParsedInvoice:
        """Extract invoice fields from one page.

        Args:
            page_text: Plain text of the page
            page_number: 1-based page index

        Returns:
            ParsedInvoice with independently nullable fields; confidence is the
            share of core fields found
        """
        if not page_text or not page_text.strip():
            return ParsedInvoice(page_number=page_number, confidence=0.0, raw_text=page_text or "")

        fallback_fields: list[str] = []

        total = self._field("total", page_text, TOTAL_PATTERNS, parse_amount)
        if total is None:
            total = self._largest_amount(page_text)
            if total is not None:
                fallback_fields.append("total")

        values = {
            "invoice_number": self._field(
                "invoice_number", page_text, INVOICE_NUMBER_PATTERNS, self._invoice_number
            ),
            "date": self._field("date", page_text, DATE_PATTERNS, self.date_normalizer.normalize),
            "vendor_name": self._vendor(page_text),
            "description": self._field(
                "description", page_text, DESCRIPTION_PATTERNS, clean_text_field
            ),
            "amount": self._field("amount", page_text, AMOUNT_PATTERNS, parse_amount),
            "tax": self._field("tax", page_text, TAX_PATTERNS, parse_amount),
            "total": total,
        }

        found = sum(1 for name in CORE_FIELDS if values[name] is not None)
        confidence = min(1.0, max(0.0, found / len(CORE_FIELDS)))

        return ParsedInvoice(
            **values,
            line_items=self.extract_line_items(page_text),
            page_number=page_number,
            confidence=confidence,
            raw_text=page_text,
            fallback_fields=fallback_fields,
        )

    def _field(
        self,
        field_name: str,
        text: str,
        patterns: list[re.Pattern[str]],
        convert: Callable[[str], object | None],
    ) -> Any:
        if self.pattern_store is not None:
            learned = self.pattern_store.apply(text, field_name)
            if learned is not None:
                value = convert(learned)
                if value is not None:
                    logger.debug(f"Learned pattern matched {field_name}")
                    return value
        return _first_valid(patterns, text, convert)

    @staticmethod
    def _invoice_number(candidate: str) -> str | None:
        cleaned = clean_invoice_number(candidate)
        return cleaned if is_valid_invoice_number(cleaned) else None

    @staticmethod
    def _vendor_candidate(candidate: str) -> str | None:
        cleaned = clean_text_field(candidate, max_length=80)
        if cleaned is None or not re.search(r"[A-Za-z]{2,}", cleaned):
            return None
        return cleaned

    def _vendor(self, text: str) -> str | None:
        labelled = self._field("vendor_name", text, VENDOR_PATTERNS, self._vendor_candidate)
        if labelled is not None:
            return str(labelled)

        # Letterhead: an early line carrying a company suffix
        lines = [line.strip() for line in text.splitlines() if line.strip()]
        for line in lines[:5]:
            if re.search(r"\binvoice\b", line, _FLAGS) or len(line) > 60:
                continue
            if _COMPANY_SUFFIX_RE.search(line):
                return self._vendor_candidate(line)
        return None

    @staticmethod
    def _largest_amount(text: str) -> float | None:
        candidates = []
        for match in CURRENCY_TOKEN_RE.finditer(text):
            amount = parse_amount(match.group("symbol") or match.group("cents"))
            if amount is not None and FALLBACK_MIN_AMOUNT <= amount <= FALLBACK_MAX_AMOUNT:
                candidates.append(amount)
        return max(candidates) if candidates else None

    def extract_line_items(self, text: str) -> list[InvoiceLineItem]:
        """Extract line items in document order, without duplicates."""
        found: list[tuple[int, InvoiceLineItem]] = []

        for pattern in (_ITEM_LINE_RE, _HOURS_LINE_RE):
            for match in pattern.finditer(text):
                total = parse_amount(match.group("total"))
                if total is None or total <= 0:
                    continue
                found.append(
                    (
                        match.start(),
                        InvoiceLineItem(
                            description=clean_text_field(match.group("desc")),
                            quantity=float(match.group("qty")),
                            unit_price=parse_amount(match.group("unit")),
                            total=total,
                        ),
                    )
                )

        for match in _TABLE_ROW_RE.finditer(text):
            quantity = float(match.group("qty"))
            unit_price = parse_amount(match.group("unit"))
            total = parse_amount(match.group("total"))
            if unit_price is None or total is None or total <= 0:
                continue
            if abs(quantity * unit_price - total) > max(0.01, total * 0.01):
                continue
            found.append(
                (
                    match.start(),
                    InvoiceLineItem(
                        description=clean_text_field(match.group("desc")),
                        quantity=quantity,
                        unit_price=unit_price,
                        total=total,
                    ),
                )
            )

        items: list[InvoiceLineItem] = []
        seen: set[tuple[str, float]] = set()
        for _, item in sorted(found, key=lambda entry: entry[0]):
            key = ((item.description or "").lower(), item.total)
            if key in seen:
                continue
            seen.add(key)
            items.append(item)
        return items
