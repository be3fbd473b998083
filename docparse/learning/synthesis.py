"""Pattern synthesis from corrected field values.

For each printed occurrence of a corrected value, the surrounding context
on the same line (at most ``CONTEXT_WINDOW`` characters each side) is
reduced to its meaningful tokens and turned into a regex of the form
``before-context <typed capture> after-context``. A candidate is kept only
if it captures the corrected value back out of the source text.
"""

import re
from datetime import date
from typing import Any, NamedTuple

from docparse.extraction.normalizers import (
    AMOUNT_NUMBER,
    DATE_TOKEN,
    DateNormalizer,
    date_variants,
    format_amount_variants,
    parse_amount,
)

MONEY_FIELDS = frozenset({"amount", "tax", "total"})
DATE_FIELDS = frozenset({"date"})

CONTEXT_WINDOW = 50
MAX_CONTEXT_TOKENS = 3

# Separators: between context tokens, and between context and the value
TOKEN_GAP = r"\W+(?:\w+\W+){0,3}?"
VALUE_GAP = r"\W*(?:\w+\W+){0,3}?"

MEANINGFUL_KEYWORDS = frozenset(
    {
        "invoice",
        "inv",
        "number",
        "no",
        "ref",
        "date",
        "issued",
        "total",
        "due",
        "amount",
        "tax",
        "gst",
        "vat",
        "subtotal",
        "balance",
        "payable",
        "from",
        "vendor",
        "supplier",
        "bill",
        "nzd",
        "aud",
        "usd",
        "eur",
        "gbp",
        "qty",
        "rate",
        "price",
    }
)

_loose_dates = DateNormalizer()


class SynthesizedPattern(NamedTuple):
    pattern: str
    context: str


def is_free_text(field_name: str) -> bool:
    return field_name not in MONEY_FIELDS | DATE_FIELDS and field_name != "invoice_number"


def capture_group(field_name: str, has_after_context: bool) -> str:
    """Field-type-aware capture group."""
    if field_name in MONEY_FIELDS:
        return r"\$?\s*(" + AMOUNT_NUMBER + r")"
    if field_name in DATE_FIELDS:
        return "(" + DATE_TOKEN + ")"
    if field_name == "invoice_number":
        return r"([A-Za-z0-9][A-Za-z0-9\-/_.]{1,19})"
    return r"([^\n]+?)" if has_after_context else r"([^\n]+)"


def normalize_value(field_name: str, value: Any) -> Any:
    """Comparable form of a field value."""
    if value is None:
        return None
    if field_name in MONEY_FIELDS:
        return parse_amount(value)
    if field_name in DATE_FIELDS:
        if isinstance(value, date):
            return value
        return _loose_dates.parse(str(value))
    return " ".join(str(value).split()).strip(" .,:;").casefold()


def value_variants(field_name: str, value: Any) -> list[str]:
    """Printed renderings to search for in the source text."""
    if field_name in MONEY_FIELDS:
        amount = parse_amount(value)
        return format_amount_variants(amount) if amount is not None else []
    if field_name in DATE_FIELDS:
        parsed = normalize_value(field_name, value)
        variants = date_variants(parsed.isoformat()) if parsed else []
        return list(dict.fromkeys([*variants, str(value).strip()]))
    text = str(value).strip()
    return [text] if text else []


def find_occurrences(text: str, variant: str) -> list[tuple[int, int]]:
    pattern = r"(?<![\w.,])" + re.escape(variant) + r"(?!\w|[.,]\d)"
    return [(m.start(), m.end()) for m in re.finditer(pattern, text)]


def meaningful_tokens(segment: str) -> list[str]:
    """Domain keywords, numeric tokens and tokens longer than four characters."""
    tokens = re.findall(r"[A-Za-z0-9]+", segment)
    return [
        token
        for token in tokens
        if token.lower() in MEANINGFUL_KEYWORDS or token.isdigit() or len(token) > 4
    ]


def _token_regex(token: str) -> str:
    return r"\d+" if token.isdigit() else re.escape(token)


def build_pattern(field_name: str, before: list[str], after: list[str]) -> str:
    parts = []
    if before:
        parts.append(r"\b" + TOKEN_GAP.join(_token_regex(t) for t in before) + VALUE_GAP)
    parts.append(capture_group(field_name, has_after_context=bool(after)))
    if after:
        # Free text must not skip words before the after-context
        joiner = r"\W*" if is_free_text(field_name) else VALUE_GAP
        parts.append(joiner + TOKEN_GAP.join(_token_regex(t) for t in after) + r"\b")
    return "".join(parts)


def _captures_value(pattern: str, text: str, field_name: str, expected: Any) -> bool:
    try:
        compiled = re.compile(pattern, re.IGNORECASE)
    except re.error:
        return False
    for match in compiled.finditer(text):
        if normalize_value(field_name, match.group(1)) == expected:
            return True
    return False


def synthesize_patterns(field_name: str, text: str, value: Any) -> list[SynthesizedPattern]:
    """Synthesize matchers for one corrected value.

    Args:
        field_name: Field the value belongs to
        text: Raw page text
        value: Corrected value

    Returns:
        Distinct patterns that recover the value from ``text``
    """
    expected = normalize_value(field_name, value)
    if expected in (None, ""):
        return []

    results: list[SynthesizedPattern] = []
    seen: set[str] = set()
    for variant in value_variants(field_name, value):
        for start, end in find_occurrences(text, variant):
            before_segment = text[max(0, start - CONTEXT_WINDOW) : start].rsplit("\n", 1)[-1]
            after_segment = text[end : end + CONTEXT_WINDOW].split("\n", 1)[0]
            before = meaningful_tokens(before_segment)[-MAX_CONTEXT_TOKENS:]
            after = meaningful_tokens(after_segment)[:MAX_CONTEXT_TOKENS]
            if not before and not after:
                continue

            pattern = build_pattern(field_name, before, after)
            if pattern in seen or not _captures_value(pattern, text, field_name, expected):
                continue
            seen.add(pattern)
            context = f"{before_segment.strip()} [{field_name}] {after_segment.strip()}"
            results.append(SynthesizedPattern(pattern=pattern, context=context.strip()))
    return results
