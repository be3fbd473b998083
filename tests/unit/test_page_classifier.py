"""Unit tests for the weighted page classifier."""

import pytest

from docparse.text.classifier import PageClassifier


@pytest.fixture
def classifier() -> PageClassifier:
    """Create a classifier with the default threshold."""
    return PageClassifier()


class TestPageClassifier:
    """Test invoice page scoring."""

    def test_invoice_page_passes(self, classifier: PageClassifier) -> None:
        """Test strong indicators push a page over the threshold."""
        page = (
            "TAX INVOICE\n"
            "Invoice Number: INV-2024-001\n"
            "Date: 15/03/2024\n"
            "Framing materials $1,200.00\n"
            "Total Due: $1,380.00\n"
        )

        result = classifier.score(page)

        assert result.is_invoice
        assert result.score >= 8.0
        assert "strong:invoice_number" in result.matched
        assert "strong:total_due" in result.matched
        assert classifier.classify(page)

    def test_terms_page_rejected(self, classifier: PageClassifier) -> None:
        """Test negative indicators pull a boilerplate page down."""
        page = "Terms and Conditions\nPayment is expected within 30 days of issue."

        result = classifier.score(page)

        assert not result.is_invoice
        assert result.score < 0
        assert "negative:terms_and_conditions" in result.matched

    def test_blank_page(self, classifier: PageClassifier) -> None:
        """Test empty text scores zero."""
        result = classifier.score("  \n")

        assert result.score == 0.0
        assert not result.is_invoice

    def test_weak_hits_are_capped(self, classifier: PageClassifier) -> None:
        """Test amounts alone cannot reach the threshold."""
        page = "\n".join(f"Line {i} $1{i}.00" for i in range(10))

        result = classifier.score(page)

        assert result.score == 3.0
        assert not result.is_invoice

    def test_custom_threshold(self) -> None:
        """Test a lower threshold admits weaker pages."""
        page = "Statement for construction materials $420.00"

        assert not PageClassifier().classify(page)
        assert PageClassifier(threshold=4.0).classify(page)
