"""FastAPI application for invoice and estimate parsing.

Production-ready API with:
- Health and readiness checks for Kubernetes
- Upload validation (bad uploads are 400s, bad documents are not)
- Invoice and estimate parsing through a per-request session
- Training corrections feeding the pattern learning store
- Prometheus metrics for monitoring

The cost ledger and pattern store are process-wide; everything else is
built per request so sessions never share mutable state.

Based on FastAPI best practices:
https://fastapi.tiangolo.com/
"""

import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI, File, HTTPException, Query, Request, Response, UploadFile, status
from pydantic import BaseModel, Field

from docparse.api import metrics
from docparse.estimates.schema import ParsedEstimate
from docparse.extraction.factory import ProviderPool
from docparse.extraction.schema import MultiInvoiceResult
from docparse.learning.models import TrainingStats
from docparse.learning.store import create_pattern_store
from docparse.orchestration.budget import CostLedger
from docparse.orchestration.processor import DocumentProcessor
from docparse.shared.config import get_settings
from docparse.shared.errors import PatternStoreError
from docparse.shared.parsing_config import DEFAULT_DAILY_COST_LIMIT, InMemorySettingsRepository


UPLOAD_SUFFIXES = {
    "invoice": {".pdf"},
    "estimate": {".pdf", ".csv", ".xlsx", ".xlsm"},
}

settings = get_settings()

cost_ledger = CostLedger(
    settings.daily_cost_limit
    if settings.daily_cost_limit is not None
    else DEFAULT_DAILY_COST_LIMIT
)
pattern_store = create_pattern_store(settings)
provider_pool = ProviderPool(settings)
settings_repository = InMemorySettingsRepository()


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    """Close shared provider clients when the application stops."""
    yield
    provider_pool.close()


app = FastAPI(
    title="Document Parsing Pipeline",
    description="Multi-strategy invoice and estimate extraction API",
    version=settings.service_version,
    lifespan=lifespan,
)


def get_processor(user_id: str | None = None) -> DocumentProcessor:
    """Build the parsing session for one request."""
    return DocumentProcessor.from_settings(
        settings,
        user_id=user_id,
        settings_repository=settings_repository,
        ledger=cost_ledger,
        pattern_store=pattern_store,
        provider_pool=provider_pool,
    )


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Middleware to collect request metrics.

    Tracks:
    - Request count by method, endpoint, and status
    - Request duration by method and endpoint
    """
    # Skip metrics for /metrics endpoint itself
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
    ).inc()

    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path,
    ).observe(duration)

    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class CorrectionRequest(BaseModel):
    """A user correction of a parsed invoice."""

    text: str = Field(..., min_length=1, description="Page text the invoice was parsed from")
    parsed_values: dict[str, Any] = Field(default_factory=dict)
    corrected_values: dict[str, Any] = Field(..., min_length=1)
    invoice_type: str | None = None
    user_id: str | None = None


class CorrectionResponse(BaseModel):
    """Outcome of recording a correction."""

    stored: bool
    example_id: str | None = None


def _reject(reason: str, detail: str) -> HTTPException:
    metrics.uploads_rejected_total.labels(reason=reason).inc()
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


async def _read_upload(file: UploadFile, kind: str) -> tuple[bytes, str]:
    """Validate an upload's name, type and size; bad uploads are 400s."""
    if not file.filename:
        raise _reject("missing_filename", "No filename provided")

    allowed = UPLOAD_SUFFIXES[kind]
    suffix = Path(file.filename).suffix.lower()
    if suffix not in allowed:
        raise _reject(
            "invalid_type",
            f"Invalid file type: {suffix or 'none'}. Supported: {', '.join(sorted(allowed))}",
        )

    content = await file.read()
    if not content:
        raise _reject("empty", "Empty file")

    metrics.document_upload_size_bytes.labels(kind=kind).observe(len(content))
    return content, file.filename


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Health check endpoint for liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness check endpoint for Kubernetes readiness probe."""
    return ReadinessResponse(ready=True)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics endpoint."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


@app.post("/api/v1/invoices/parse", response_model=MultiInvoiceResult, tags=["Invoices"])
async def parse_invoices(
    file: UploadFile = File(..., description="Invoice PDF"),  # noqa: B008
    force: bool = Query(False, description="Parse every page, bypassing the page classifier"),
    user_id: str | None = Query(None, description="Caller identity for stored settings"),
) -> MultiInvoiceResult:
    """Extract every invoice in an uploaded PDF.

    ## Usage

    ```bash
    curl -X POST "http://localhost:8000/api/v1/invoices/parse" \\
      -F "file=@invoices.pdf"
    ```

    ## Error Handling

    - Returns 400 if the file is missing, empty or not a PDF
    - Returns 200 with `success: false` when no text or invoice could be
      extracted; `quality_metrics.recommended_action` says what to do next
    """
    content, filename = await _read_upload(file, "invoice")

    start_time = time.time()
    result = get_processor(user_id).process_invoices(content, force=force, filename=filename)
    metrics.record_document(result, time.time() - start_time)
    return result


@app.post("/api/v1/estimates/parse", response_model=ParsedEstimate, tags=["Estimates"])
async def parse_estimate(
    file: UploadFile = File(..., description="Estimate PDF, CSV or XLSX"),  # noqa: B008
    user_id: str | None = Query(None, description="Caller identity for stored settings"),
) -> ParsedEstimate:
    """Parse a cost estimate into trades and line items.

    Diagnostics in the response flag amounts the parser could not account
    for; they indicate an incomplete extraction rather than an error.
    """
    content, filename = await _read_upload(file, "estimate")

    start_time = time.time()
    estimate = get_processor(user_id).process_estimate(content, filename)
    metrics.record_document(estimate, time.time() - start_time)
    return estimate


@app.post("/api/v1/training/examples", response_model=CorrectionResponse, tags=["Training"])
def record_correction(request: CorrectionRequest) -> CorrectionResponse:
    """Record a correction and learn extraction patterns from it.

    Returns 503 if the training store cannot be written.
    """
    try:
        example = get_processor(request.user_id).record_correction(
            request.text,
            request.parsed_values,
            request.corrected_values,
            invoice_type=request.invoice_type,
        )
    except PatternStoreError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Training store unavailable: {e.message}",
        ) from e

    if example is None:
        return CorrectionResponse(stored=False)
    return CorrectionResponse(stored=True, example_id=example.id)


@app.get("/api/v1/training/stats", response_model=TrainingStats, tags=["Training"])
def training_stats() -> TrainingStats:
    """Summary of the stored training corpus."""
    try:
        return pattern_store.stats()
    except PatternStoreError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Training store unavailable: {e.message}",
        ) from e
