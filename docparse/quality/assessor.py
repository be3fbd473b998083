"""Quality assessment for extracted invoices.

Scores are triage signals only: they annotate invoices and recommend an
action, they never drop data. Text corruption lowers confidence and adds a
warning; the largest-amount fallback is surfaced the same way.
"""

import logging
import re
from datetime import date

from pydantic import BaseModel, Field

from docparse.extraction.normalizers import DateNormalizer, is_valid_invoice_number
from docparse.extraction.schema import ExtractionQuality, ParsedInvoice, QualityMetrics

logger = logging.getLogger(__name__)

LOW_QUALITY_THRESHOLD = 0.5
REVIEW_THRESHOLD = 0.7
CORRUPTION_CONFIDENCE_FACTOR = 0.8
TOTAL_TOLERANCE = 0.5

MANUAL_PROCESSING = "Manual processing required"
MANUAL_REVIEW = "Manual review recommended"
VERIFY_CRITICAL_FIELDS = (
    "Manual verification of critical fields recommended (text corruption detected)"
)

FIELD_WEIGHTS = {
    "vendor_name": 0.2,
    "date": 0.2,
    "invoice_number": 0.3,
    "amount": 0.3,
}

CORRUPTION_SIGNATURES: dict[str, re.Pattern[str]] = {
    "font_substitution": re.compile(r"\(cid:\d+\)"),
    "replacement_characters": re.compile("\ufffd"),
    "embedded_objects": re.compile(r"\b\d+\s+\d+\s+obj\b|\bendobj\b"),
    "raw_streams": re.compile(r"\bendstream\b|\bstream\s*\r?\n\s*x\x9c"),
    "non_printable_runs": re.compile(r"[\x00-\x08\x0e-\x1f\x7f]{3,}"),
}

STRUCTURE_CUES: dict[str, re.Pattern[str]] = {
    "currency": re.compile(r"[$€£]|\b(?:NZD|AUD|USD|EUR|GBP)\b"),
    "date": re.compile(
        r"\b\d{1,2}[/.\-]\d{1,2}[/.\-]\d{2,4}\b|\b\d{4}-\d{2}-\d{2}\b"
        r"|\b\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\s+\d{4}\b",
        re.IGNORECASE,
    ),
    "total_keyword": re.compile(r"\btotal\b", re.IGNORECASE),
    "invoice_keyword": re.compile(r"\binvoice\b", re.IGNORECASE),
}

_COMPANY_SUFFIX_RE = re.compile(
    r"\b(?:ltd|limited|llc|inc|pty|co|corp|company|group|services|plumbing|electrical)\b\.?",
    re.IGNORECASE,
)


class QualityAssessment(BaseModel):
    """Quality of one invoice's extraction."""

    extraction_quality: ExtractionQuality
    field_scores: dict[str, float] = Field(default_factory=dict)
    validation_score: float = Field(0.0, ge=0, le=1)
    corruption_detected: bool = False


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class QualityAssessor:
    """Scores text quality and field plausibility."""

    def __init__(self, date_normalizer: DateNormalizer | None = None) -> None:
        self.date_normalizer = date_normalizer or DateNormalizer()

    def assess(self, invoice: ParsedInvoice, raw_text: str | None = None) -> QualityAssessment:
        """Assess one invoice against the text it was read from.

        Args:
            invoice: Extracted invoice
            raw_text: Page text (defaults to ``invoice.raw_text``)

        Returns:
            QualityAssessment with text scores, per-field scores and the
            weighted validation score
        """
        text = invoice.raw_text if raw_text is None else raw_text
        indicators = self.corruption_indicators(text)

        warnings = []
        if indicators:
            warnings.append(f"Text corruption detected: {', '.join(indicators)}")
        for field_name in invoice.fallback_fields:
            warnings.append(
                f"{field_name} chosen by largest-amount fallback; verify against the document"
            )

        quality = ExtractionQuality(
            text_clarity=self.text_clarity(text),
            structure_detection=self.structure_detection(text),
            completeness=self.completeness(invoice),
            corruption_indicators=indicators,
            warnings=warnings,
        )
        field_scores = self.field_scores(invoice)
        validation = sum(FIELD_WEIGHTS[name] * score for name, score in field_scores.items())
        return QualityAssessment(
            extraction_quality=quality,
            field_scores=field_scores,
            validation_score=round(min(max(validation, 0.0), 1.0), 4),
            corruption_detected=bool(indicators),
        )

    def enrich(self, invoice: ParsedInvoice) -> ParsedInvoice:
        """Return a copy of the invoice carrying its quality assessment.

        Corruption multiplies confidence by 0.8.
        """
        assessment = self.assess(invoice)
        confidence = invoice.confidence
        if assessment.corruption_detected:
            confidence = round(confidence * CORRUPTION_CONFIDENCE_FACTOR, 4)
            logger.warning(
                f"Page {invoice.page_number}: corrupted text "
                f"({', '.join(assessment.extraction_quality.corruption_indicators)}), "
                f"confidence lowered to {confidence:.2f}"
            )
        return invoice.model_copy(
            update={
                "confidence": confidence,
                "validation_score": assessment.validation_score,
                "field_scores": assessment.field_scores,
                "extraction_quality": assessment.extraction_quality,
            }
        )

    @staticmethod
    def corruption_indicators(text: str) -> list[str]:
        return [name for name, pattern in CORRUPTION_SIGNATURES.items() if pattern.search(text)]

    @staticmethod
    def text_clarity(text: str) -> float:
        if not text:
            return 0.0
        printable = sum(1 for char in text if char.isprintable() or char in "\n\r\t")
        return round(printable / len(text), 4)

    @staticmethod
    def structure_detection(text: str) -> float:
        found = sum(1 for pattern in STRUCTURE_CUES.values() if pattern.search(text))
        return round(found / len(STRUCTURE_CUES), 4)

    @staticmethod
    def completeness(invoice: ParsedInvoice) -> float:
        elements = (
            invoice.invoice_number is not None,
            invoice.date is not None,
            invoice.amount is not None or invoice.total is not None,
            invoice.total is not None,
        )
        return sum(elements) / len(elements)

    def field_scores(self, invoice: ParsedInvoice) -> dict[str, float]:
        return {
            "vendor_name": self._vendor_score(invoice.vendor_name),
            "date": self._date_score(invoice.date),
            "invoice_number": self._invoice_number_score(invoice.invoice_number),
            "amount": self._amount_score(invoice),
        }

    @staticmethod
    def _vendor_score(vendor: str | None) -> float:
        if not vendor or len(vendor.strip()) < 2:
            return 0.0
        if not re.search(r"[A-Za-z]{2,}", vendor) or len(vendor) > 80:
            return 0.4
        if _COMPANY_SUFFIX_RE.search(vendor):
            return 1.0
        return 0.8

    def _date_score(self, value: str | None) -> float:
        if not value:
            return 0.0
        try:
            parsed = date.fromisoformat(value)
        except ValueError:
            return 0.2
        return 1.0 if self.date_normalizer.in_range(parsed) else 0.5

    @staticmethod
    def _invoice_number_score(value: str | None) -> float:
        if not value:
            return 0.0
        return 1.0 if is_valid_invoice_number(value) else 0.4

    @staticmethod
    def _amount_score(invoice: ParsedInvoice) -> float:
        payable = invoice.payable_amount
        if payable is None or payable <= 0:
            return 0.0
        score = 1.0
        if invoice.amount is not None and invoice.tax is not None and invoice.total is not None:
            if abs(invoice.amount + invoice.tax - invoice.total) > TOTAL_TOLERANCE:
                score = 0.7
        if {"amount", "total"} & set(invoice.fallback_fields):
            score = min(score, 0.6)
        return score

    def aggregate(self, invoices: list[ParsedInvoice], pages_processed: int) -> QualityMetrics:
        """Roll invoice quality up to document level.

        The recommended action is advisory: below 0.5 manual processing,
        corruption asks for verification of critical fields, below 0.7
        manual review.
        """
        if not invoices:
            return QualityMetrics(
                parsing_success=0.0,
                issues_found=["No invoices extracted"],
                recommended_action=MANUAL_PROCESSING,
            )

        qualities = [invoice.extraction_quality or ExtractionQuality() for invoice in invoices]
        extraction_quality = _mean(
            [(q.text_clarity + q.structure_detection + q.completeness) / 3 for q in qualities]
        )
        data_completeness = _mean([q.completeness for q in qualities])
        validation = _mean([invoice.validation_score or 0.0 for invoice in invoices])
        confidence = _mean([invoice.confidence for invoice in invoices])
        parsing_success = min(len(invoices) / pages_processed, 1.0) if pages_processed else 0.0
        overall = 0.4 * confidence + 0.3 * extraction_quality + 0.3 * validation

        issues = []
        corruption = False
        for invoice, quality in zip(invoices, qualities, strict=True):
            if quality.corruption_indicators:
                corruption = True
            issues.extend(f"Page {invoice.page_number}: {warning}" for warning in quality.warnings)
            if invoice.confidence < REVIEW_THRESHOLD:
                issues.append(
                    f"Page {invoice.page_number}: low confidence ({invoice.confidence:.2f})"
                )

        if overall < LOW_QUALITY_THRESHOLD:
            action: str | None = MANUAL_PROCESSING
        elif corruption:
            action = VERIFY_CRITICAL_FIELDS
        elif overall < REVIEW_THRESHOLD:
            action = MANUAL_REVIEW
        else:
            action = None

        return QualityMetrics(
            overall_accuracy=round(overall, 4),
            extraction_quality=round(extraction_quality, 4),
            parsing_success=round(parsing_success, 4),
            data_completeness=round(data_completeness, 4),
            average_validation_score=round(validation, 4),
            corruption_detected=corruption,
            issues_found=issues,
            recommended_action=action,
        )
