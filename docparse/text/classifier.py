"""Weighted page classifier.

Scores a page's likelihood of carrying an invoice before any expensive
parsing runs. It is a heuristic gate: callers can force-parse pages the
classifier rejects.

Based on weighted keyword detection as used for receipt detection.
"""

import logging
import re

from pydantic import BaseModel, Field

from docparse.extraction.normalizers import CURRENCY_TOKEN_RE, DATE_TOKEN

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 8.0

STRONG_WEIGHT = 5.0
MEDIUM_WEIGHT = 2.0
WEAK_WEIGHT = 1.0
NEGATIVE_WEIGHT = -4.0
DOMAIN_WEIGHT = 1.0

MAX_AMOUNT_HITS = 3
MAX_DATE_HITS = 2
MAX_DOMAIN_HITS = 3

STRONG_INDICATORS = {
    "invoice_number": re.compile(
        r"\b(?:tax\s+)?(?:invoice|inv)\s*(?:(?:number|num|no)\b\.?|#)"
        r"\s*[:#]?\s*[A-Z0-9][A-Z0-9\-/]{2,}",
        re.IGNORECASE,
    ),
    "total_due": re.compile(
        r"\b(?:total\s+(?:due|payable|amount)|amount\s+(?:due|payable)|balance\s+due)\b",
        re.IGNORECASE,
    ),
}

MEDIUM_KEYWORDS = ("invoice", "bill", "receipt", "statement")

NEGATIVE_INDICATORS = {
    "terms_and_conditions": re.compile(r"\bterms\s+(?:and|&)\s+conditions\b", re.IGNORECASE),
    "table_of_contents": re.compile(r"\btable\s+of\s+contents\b", re.IGNORECASE),
    "privacy_policy": re.compile(r"\bprivacy\s+policy\b", re.IGNORECASE),
    "blank_page": re.compile(r"\bintentionally\s+(?:left\s+)?blank\b", re.IGNORECASE),
}

DOMAIN_KEYWORDS = (
    "materials",
    "labour",
    "labor",
    "contractor",
    "subcontractor",
    "concrete",
    "timber",
    "framing",
    "plumbing",
    "electrical",
    "roofing",
    "builder",
    "construction",
    "site",
)

_DATE_RE = re.compile(DATE_TOKEN, re.IGNORECASE)


class PageScore(BaseModel):
    """Classifier verdict with the indicators that contributed."""

    score: float
    is_invoice: bool
    matched: list[str] = Field(default_factory=list)


class PageClassifier:
    """Scores pages with strong, medium, weak, negative and domain indicators."""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD) -> None:
        self.threshold = threshold

    def classify(self, page_text: str) -> bool:
        """Return True if the page is likely an invoice page."""
        return self.score(page_text).is_invoice

    def score(self, page_text: str) -> PageScore:
        """Score one page.

        Args:
            page_text: Plain text of the page

        Returns:
            PageScore with the total and matched indicator names
        """
        if not page_text or not page_text.strip():
            return PageScore(score=0.0, is_invoice=False)

        lowered = page_text.lower()
        score = 0.0
        matched: list[str] = []

        for name, pattern in STRONG_INDICATORS.items():
            if pattern.search(page_text):
                score += STRONG_WEIGHT
                matched.append(f"strong:{name}")

        for keyword in MEDIUM_KEYWORDS:
            if re.search(rf"\b{keyword}\b", lowered):
                score += MEDIUM_WEIGHT
                matched.append(f"medium:{keyword}")

        amount_hits = min(len(CURRENCY_TOKEN_RE.findall(page_text)), MAX_AMOUNT_HITS)
        if amount_hits:
            score += amount_hits * WEAK_WEIGHT
            matched.append(f"weak:amounts x{amount_hits}")

        date_hits = min(len(_DATE_RE.findall(page_text)), MAX_DATE_HITS)
        if date_hits:
            score += date_hits * WEAK_WEIGHT
            matched.append(f"weak:dates x{date_hits}")

        for name, pattern in NEGATIVE_INDICATORS.items():
            if pattern.search(page_text):
                score += NEGATIVE_WEIGHT
                matched.append(f"negative:{name}")

        domain_hits = [kw for kw in DOMAIN_KEYWORDS if re.search(rf"\b{kw}\b", lowered)]
        if domain_hits:
            score += min(len(domain_hits), MAX_DOMAIN_HITS) * DOMAIN_WEIGHT
            matched.append(f"domain:{','.join(domain_hits[:MAX_DOMAIN_HITS])}")

        is_invoice = score >= self.threshold
        logger.debug(f"Page score {score:.1f} (threshold {self.threshold}): {matched}")
        return PageScore(score=score, is_invoice=is_invoice, matched=matched)
