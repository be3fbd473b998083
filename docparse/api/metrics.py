"""Prometheus metrics for the API service.

HTTP metrics are recorded by the middleware in ``docparse.api.main``;
document metrics by the parse endpoints through ``record_document``.
Pipeline metrics (provider calls, cost, budget exhaustion) live in
``docparse.orchestration.metrics`` and share the default registry.

Based on Prometheus best practices:
https://prometheus.io/docs/practices/naming/
"""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.openmetrics.exposition import CONTENT_TYPE_LATEST

from docparse.estimates.schema import ParsedEstimate
from docparse.extraction.schema import MultiInvoiceResult

# Request metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Upload metrics
uploads_rejected_total = Counter(
    "uploads_rejected_total",
    "Uploads rejected before parsing",
    ["reason"],  # missing_filename, invalid_type, empty
)

document_upload_size_bytes = Histogram(
    "document_upload_size_bytes",
    "Accepted upload size in bytes",
    ["kind"],
    buckets=(1024, 10240, 102400, 1048576, 10485760),  # 1KB to 10MB
)

# Document metrics
documents_processed_total = Counter(
    "documents_processed_total",
    "Total documents processed",
    ["kind", "status"],  # kind: invoice, estimate; status: success, failed
)

document_processing_duration_seconds = Histogram(
    "document_processing_duration_seconds",
    "Whole-document processing duration in seconds",
    ["kind"],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

invoices_per_document = Histogram(
    "invoices_per_document",
    "Invoices found in one uploaded document",
    buckets=(0, 1, 2, 5, 10, 25, 50),
)

estimate_diagnostics_total = Counter(
    "estimate_diagnostics_total",
    "Reconciliation findings on parsed estimates",
    ["kind"],  # unmatched_amount, total_mismatch, skipped_row, provider
)


def record_document(result: MultiInvoiceResult | ParsedEstimate, duration: float) -> None:
    """Record the outcome of one parsed document."""
    if isinstance(result, ParsedEstimate):
        kind, success = "estimate", bool(result.trades)
        for diagnostic in result.diagnostics:
            estimate_diagnostics_total.labels(kind=diagnostic.kind).inc()
    else:
        kind, success = "invoice", result.success
        invoices_per_document.observe(result.total_invoices)

    document_processing_duration_seconds.labels(kind=kind).observe(duration)
    documents_processed_total.labels(kind=kind, status="success" if success else "failed").inc()


def get_metrics() -> tuple[bytes, str]:
    """Generate Prometheus metrics in text format.

    Returns:
        Tuple of (metrics bytes, content type)
    """
    return generate_latest(), CONTENT_TYPE_LATEST
