"""Normalization helpers for amounts, dates and invoice numbers.

Date handling follows the explicit-format approach of a DateNormalizer:
try the known formats, resolve ambiguous numeric dates as DD/MM, and
only fall back to MM/DD when DD/MM cannot be a calendar date.
"""

import logging
import re
from datetime import date, datetime

logger = logging.getLogger(__name__)

# Money token: 1,234.56 / 1234.56 / 1234
AMOUNT_NUMBER = r"(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?"

# Currency-looking token used by fallback scanners: has a symbol, or cents
CURRENCY_TOKEN_RE = re.compile(
    r"(?:[$€£]\s*(?P<symbol>" + AMOUNT_NUMBER + r")"
    r"|(?<![\d.,])(?P<cents>(?:\d{1,3}(?:,\d{3})+|\d+)\.\d{2})(?![\d]))"
)

# Whole-string money value: optional code, sign and symbol around one number
_MONEY_TEXT_RE = re.compile(
    r"^(?:[A-Z]{3}(?=[\s$€£])\s*)?-?\s*[$€£]?\s*-?\s*(?P<number>\d[\d,]*(?:\.\d+)?|\.\d+)"
    r"\s*[$€£]?\s*(?:(?<=[\s$€£])[A-Z]{3})?$",
    re.IGNORECASE,
)

_MONTHS = (
    "january",
    "february",
    "march",
    "april",
    "may",
    "june",
    "july",
    "august",
    "september",
    "october",
    "november",
    "december",
)
MONTH_NAMES = r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)[a-z]*\.?"

# Any date-looking token; used as the capture group for date fields
DATE_TOKEN = (
    r"(?:\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}"
    r"|\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}"
    r"|\d{1,2}(?:st|nd|rd|th)?\s+" + MONTH_NAMES + r",?\s+\d{4}"
    r"|" + MONTH_NAMES + r"\s+\d{1,2}(?:st|nd|rd|th)?,?\s+\d{4})"
)

_ISO_RE = re.compile(r"^(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})$")
_NUMERIC_RE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})$")
_DAY_MONTH_RE = re.compile(r"^(\d{1,2})\s+([A-Za-z]+)\.?,?\s+(\d{4})$")
_MONTH_DAY_RE = re.compile(r"^([A-Za-z]+)\.?\s+(\d{1,2}),?\s+(\d{4})$")

INVOICE_NUMBER_FALSE_POSITIVES = ("page", "total", "date", "tax", "gst", "vat")


def parse_amount(value: str | float | int | None) -> float | None:
    """Parse a money value into a float rounded to cents.

    Strings must be a single number, optionally signed and decorated with a
    currency symbol or a three-letter currency code; '1e5' or '12abc' is
    not an amount.

    Args:
        value: '$1,234.56', 'NZD 21,000.00', '1234.56', 1234.56 or None

    Returns:
        Float amount, or None if the value is not a plain money amount
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return round(float(value), 2)
    if not isinstance(value, str):
        return None

    text = value.strip()
    match = _MONEY_TEXT_RE.match(text)
    if match is None:
        return None
    amount = float(match.group("number").replace(",", ""))
    if "-" in text[: match.start("number")]:
        amount = -amount
    return round(amount, 2)


def format_amount_variants(value: float) -> list[str]:
    """Common printed renderings of an amount: '1,234.56', '1234.56', ..."""
    variants = [f"{value:,.2f}", f"{value:.2f}"]
    if float(value).is_integer():
        variants.extend([f"{int(value):,}", str(int(value))])
    return list(dict.fromkeys(variants))


def _shift_years(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year + years)
    except ValueError:
        # 29 February in a non-leap target year
        return day.replace(year=day.year + years, day=28)


def _month_number(name: str) -> int | None:
    lowered = name.lower().rstrip(".")
    if len(lowered) < 3:
        return None
    for index, month in enumerate(_MONTHS, start=1):
        if month.startswith(lowered):
            return index
    return None


def _expand_year(year: int) -> int:
    if year >= 100:
        return year
    return 2000 + year if year < 70 else 1900 + year


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


class DateNormalizer:
    """Normalizes date strings to ISO YYYY-MM-DD.

    Dates outside [reference - 5 years, reference + 1 year] are rejected.

    Example:
        >>> DateNormalizer(reference_date=date(2024, 6, 1)).normalize("15/03/2024")
        '2024-03-15'
    """

    def __init__(
        self,
        reference_date: date | None = None,
        past_years: int = 5,
        future_years: int = 1,
    ) -> None:
        self._reference_date = reference_date
        self.past_years = past_years
        self.future_years = future_years

    @property
    def reference_date(self) -> date:
        return self._reference_date or date.today()

    def parse(self, text: str | None) -> date | None:
        """Parse a date string without range validation."""
        if not text:
            return None
        cleaned = " ".join(text.split())
        cleaned = re.sub(r"(\d+)(st|nd|rd|th)\b", r"\1", cleaned, flags=re.IGNORECASE)
        cleaned = cleaned.strip(" ,.;:")

        match = _ISO_RE.match(cleaned)
        if match:
            year, month, day = (int(part) for part in match.groups())
            return _safe_date(year, month, day)

        match = _NUMERIC_RE.match(cleaned)
        if match:
            first, second, year_part = (int(part) for part in match.groups())
            year = _expand_year(year_part)
            # DD/MM first; MM/DD only when DD/MM is impossible
            return _safe_date(year, second, first) or _safe_date(year, first, second)

        match = _DAY_MONTH_RE.match(cleaned)
        if match:
            month = _month_number(match.group(2))
            if month is None:
                return None
            return _safe_date(int(match.group(3)), month, int(match.group(1)))

        match = _MONTH_DAY_RE.match(cleaned)
        if match:
            month = _month_number(match.group(1))
            if month is None:
                return None
            return _safe_date(int(match.group(3)), month, int(match.group(2)))

        for fmt in ("%d %b %Y", "%d-%b-%Y", "%d %B %Y", "%d-%B-%Y"):
            try:
                return datetime.strptime(cleaned, fmt).date()
            except ValueError:
                continue

        logger.debug(f"Could not parse date: {text!r}")
        return None

    def in_range(self, value: date) -> bool:
        reference = self.reference_date
        earliest = _shift_years(reference, -self.past_years)
        latest = _shift_years(reference, self.future_years)
        return earliest <= value <= latest

    def normalize(self, text: str | None) -> str | None:
        """Normalize a date string to YYYY-MM-DD.

        Args:
            text: Date in any recognized format

        Returns:
            ISO date string, or None if unparseable or out of range
        """
        parsed = self.parse(text)
        if parsed is None:
            return None
        if not self.in_range(parsed):
            logger.debug(f"Rejected out-of-range date: {parsed.isoformat()}")
            return None
        return parsed.isoformat()


def date_variants(iso_value: str) -> list[str]:
    """Common printed renderings of an ISO date, DD/MM ordering first."""
    try:
        value = date.fromisoformat(iso_value)
    except ValueError:
        return [iso_value]

    month_name = _MONTHS[value.month - 1].capitalize()
    return list(
        dict.fromkeys(
            [
                f"{value.day:02d}/{value.month:02d}/{value.year}",
                f"{value.day}/{value.month}/{value.year}",
                f"{value.day:02d}-{value.month:02d}-{value.year}",
                f"{value.day:02d}.{value.month:02d}.{value.year}",
                value.isoformat(),
                f"{value.day} {month_name} {value.year}",
                f"{value.day} {month_name[:3]} {value.year}",
                f"{month_name} {value.day}, {value.year}",
                f"{value.month:02d}/{value.day:02d}/{value.year}",
            ]
        )
    )


def clean_invoice_number(candidate: str) -> str:
    return candidate.strip().strip(".,;:-/#").strip()


def is_valid_invoice_number(candidate: str | None) -> bool:
    """Check an invoice-number candidate.

    Valid candidates are 3-20 characters, contain an alphanumeric character,
    are not pure digits shorter than 5, and carry no false-positive token.
    """
    if not candidate:
        return False
    value = candidate.strip()
    if not 3 <= len(value) <= 20:
        return False
    if not any(ch.isalnum() for ch in value):
        return False
    if value.isdigit() and len(value) < 5:
        return False
    lowered = value.lower()
    return not any(token in lowered for token in INVOICE_NUMBER_FALSE_POSITIVES)


def clean_text_field(value: str | None, max_length: int = 120) -> str | None:
    """Collapse whitespace and trim punctuation from a free-text capture."""
    if value is None:
        return None
    cleaned = " ".join(value.split()).strip(" :-,;")
    if not cleaned:
        return None
    return cleaned[:max_length].rstrip()
