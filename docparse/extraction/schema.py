"""Invoice data models for structured extraction.

A ``ParsedInvoice`` is created once per page by an extractor and is frozen;
the quality assessor produces an enriched copy with ``model_copy``.
"""

from pydantic import BaseModel, ConfigDict, Field

CORE_FIELDS = ("invoice_number", "date", "vendor_name", "total")


class InvoiceLineItem(BaseModel):
    """One billed line; only the total is required."""

    model_config = ConfigDict(frozen=True)

    description: str | None = Field(None, description="Line description")
    quantity: float | None = Field(None, description="Quantity or hours")
    unit_price: float | None = Field(None, description="Price per unit")
    total: float = Field(..., description="Line total")


class ExtractionQuality(BaseModel):
    """Derived text and structure quality for one invoice."""

    model_config = ConfigDict(frozen=True)

    text_clarity: float = Field(0.0, ge=0, le=1)
    structure_detection: float = Field(0.0, ge=0, le=1)
    completeness: float = Field(0.0, ge=0, le=1)
    corruption_indicators: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class ParsedInvoice(BaseModel):
    """Structured invoice data extracted from one page.

    Monetary fields are floats rounded to cents; ``date`` is ISO YYYY-MM-DD.
    """

    model_config = ConfigDict(frozen=True)

    invoice_number: str | None = Field(None, description="Invoice identifier")
    date: str | None = Field(None, description="Issue date (YYYY-MM-DD)")
    vendor_name: str | None = Field(None, description="Supplier/vendor name")
    description: str | None = Field(None, description="Work or goods description")
    amount: float | None = Field(None, description="Amount before tax")
    tax: float | None = Field(None, description="Tax (GST/VAT) amount")
    total: float | None = Field(None, description="Total including tax")
    line_items: list[InvoiceLineItem] = Field(default_factory=list)

    page_number: int = Field(1, ge=1)
    confidence: float = Field(0.0, ge=0, le=1)
    raw_text: str = Field("", description="Page text the invoice was read from")

    # Enrichment (set by the quality assessor)
    validation_score: float | None = Field(None, ge=0, le=1)
    field_scores: dict[str, float] = Field(default_factory=dict)
    extraction_quality: ExtractionQuality | None = None

    # Fields filled by the largest-amount fallback scanner
    fallback_fields: list[str] = Field(default_factory=list)

    def core_field_count(self) -> int:
        return sum(1 for name in CORE_FIELDS if getattr(self, name) is not None)

    def has_core_fields(self) -> bool:
        return self.core_field_count() > 0

    @property
    def payable_amount(self) -> float | None:
        """Total if known, else the pre-tax amount."""
        return self.total if self.total is not None else self.amount


class ParsingStats(BaseModel):
    """Cost and routing summary for one document."""

    llm_used: bool = False
    total_cost: float = 0.0
    average_confidence: float = 0.0
    strategy: str = "heuristic-primary"


class QualityMetrics(BaseModel):
    """Aggregate quality across every invoice in a document."""

    overall_accuracy: float = 0.0
    extraction_quality: float = 0.0
    parsing_success: float = 0.0
    data_completeness: float = 0.0
    average_validation_score: float = 0.0
    corruption_detected: bool = False
    issues_found: list[str] = Field(default_factory=list)
    recommended_action: str | None = None


class MultiInvoiceResult(BaseModel):
    """Every invoice found in one document plus aggregate statistics."""

    success: bool = True
    invoices: list[ParsedInvoice] = Field(default_factory=list)
    total_invoices: int = 0
    total_amount: float = 0.0
    summary: str = ""
    parsing_stats: ParsingStats = Field(default_factory=ParsingStats)
    quality_metrics: QualityMetrics = Field(default_factory=QualityMetrics)
    pages_processed: int = 0
    pages_skipped: int = 0
    extraction_method: str | None = None
    error: str | None = None
