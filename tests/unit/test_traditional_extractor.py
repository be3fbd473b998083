"""Unit tests for the regex/heuristic invoice extractor."""

from datetime import date
from unittest.mock import MagicMock

import pytest

from docparse.extraction.normalizers import DateNormalizer
from docparse.extraction.traditional import TraditionalExtractor

INVOICE_PAGE = """ABC Plumbing Ltd
Invoice Number: INV-2024-001
Date: 15/03/2024
Subtotal: $1,073.53
GST: $161.03
Total Due: $1,234.56
"""


@pytest.fixture
def extractor() -> TraditionalExtractor:
    """Create an extractor with a fixed reference date."""
    return TraditionalExtractor(date_normalizer=DateNormalizer(reference_date=date(2024, 6, 1)))


class TestFieldExtraction:
    """Test field extraction from page text."""

    def test_extracts_all_fields(self, extractor: TraditionalExtractor) -> None:
        """Test a well-formed invoice yields every field."""
        invoice = extractor.extract_fields(INVOICE_PAGE, page_number=2)

        assert invoice.invoice_number == "INV-2024-001"
        assert invoice.date == "2024-03-15"
        assert invoice.vendor_name == "ABC Plumbing Ltd"
        assert invoice.amount == 1073.53
        assert invoice.tax == 161.03
        assert invoice.total == 1234.56
        assert invoice.page_number == 2
        assert invoice.confidence == 1.0
        assert invoice.fallback_fields == []
        assert invoice.raw_text == INVOICE_PAGE

    def test_repeated_extraction_is_identical(self, extractor: TraditionalExtractor) -> None:
        """Test extracting the same page twice gives the same invoice."""
        text = INVOICE_PAGE + "Labour - 4 hours - $85.00/hour - $340.00\n"

        first = extractor.extract_fields(text, page_number=3)
        second = extractor.extract_fields(text, page_number=3)

        assert first.model_dump() == second.model_dump()
        assert extractor.extract_line_items(text) == first.line_items

    def test_empty_page(self, extractor: TraditionalExtractor) -> None:
        """Test blank text produces an empty zero-confidence result."""
        invoice = extractor.extract_fields("   \n ")

        assert invoice.confidence == 0.0
        assert invoice.core_field_count() == 0

    def test_confidence_is_share_of_core_fields(self, extractor: TraditionalExtractor) -> None:
        """Test two of four core fields gives 0.5."""
        invoice = extractor.extract_fields("Invoice Number: INV-77812\nTotal Due: $80.00")

        assert invoice.invoice_number == "INV-77812"
        assert invoice.total == 80.0
        assert invoice.confidence == 0.5

    def test_largest_amount_fallback_is_flagged(self, extractor: TraditionalExtractor) -> None:
        """Test the total falls back to the largest currency value."""
        text = "ACME Ltd\nInvoice #: A-1001\nCharges $150.00 and $2,500.00 were applied"

        invoice = extractor.extract_fields(text)

        assert invoice.total == 2500.0
        assert invoice.fallback_fields == ["total"]
        assert invoice.invoice_number == "A-1001"

    def test_labelled_vendor(self, extractor: TraditionalExtractor) -> None:
        """Test a labelled supplier line beats the letterhead."""
        text = "Big Builders Ltd\nSupplier: Kiwi Timber Supplies\nTotal: $10.00"

        invoice = extractor.extract_fields(text)

        assert invoice.vendor_name == "Kiwi Timber Supplies"

    def test_rejects_false_positive_invoice_number(self, extractor: TraditionalExtractor) -> None:
        """Test a page number is not taken as the invoice number."""
        invoice = extractor.extract_fields("Invoice No: Page1\nTotal Due: $12.00")

        assert invoice.invoice_number is None


class TestLearnedPatterns:
    """Test the pattern store takes precedence over built-in regexes."""

    def test_learned_value_wins(self) -> None:
        """Test a learned invoice number replaces the regex match."""
        store = MagicMock()
        store.apply.side_effect = lambda text, field: (
            "INV-LEARNED-9" if field == "invoice_number" else None
        )
        extractor = TraditionalExtractor(
            pattern_store=store,
            date_normalizer=DateNormalizer(reference_date=date(2024, 6, 1)),
        )

        invoice = extractor.extract_fields(INVOICE_PAGE)

        assert invoice.invoice_number == "INV-LEARNED-9"
        assert invoice.total == 1234.56

    def test_invalid_learned_value_falls_through(self) -> None:
        """Test an unusable learned capture is ignored."""
        store = MagicMock()
        store.apply.side_effect = lambda text, field: "x" if field == "invoice_number" else None
        extractor = TraditionalExtractor(pattern_store=store)

        invoice = extractor.extract_fields(INVOICE_PAGE)

        assert invoice.invoice_number == "INV-2024-001"


class TestLineItems:
    """Test line-item extraction."""

    def test_extracts_item_hours_and_table_rows(self, extractor: TraditionalExtractor) -> None:
        """Test all three line formats in document order."""
        text = (
            "Item 1: Copper pipe - Qty: 10 - $12.50 each - $125.00\n"
            "Labour - 4 hours - $85.00/hour - $340.00\n"
            "Timber framing 2 450.00 900.00\n"
        )

        items = extractor.extract_line_items(text)

        assert [item.description for item in items] == [
            "Copper pipe",
            "Labour",
            "Timber framing",
        ]
        assert items[0].quantity == 10
        assert items[0].unit_price == 12.5
        assert items[1].total == 340.0
        assert items[2].total == 900.0

    def test_inconsistent_table_row_skipped(self, extractor: TraditionalExtractor) -> None:
        """Test rows whose quantity times unit price disagree with the total."""
        assert extractor.extract_line_items("Timber framing 2 450.00 100.00") == []
