"""Async task definitions for document parsing.

Uses arq (async Redis queue) for background task processing. Each job
builds its own parsing session; the worker shares only the pattern store
and the cost ledger across jobs.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from datetime import UTC, datetime
from typing import Any, Literal

from arq.connections import RedisSettings
from pydantic import BaseModel

from docparse.extraction.factory import ProviderPool
from docparse.learning.store import create_pattern_store
from docparse.orchestration.budget import CostLedger
from docparse.orchestration.processor import DocumentProcessor
from docparse.shared.config import Settings, get_settings
from docparse.shared.parsing_config import DEFAULT_DAILY_COST_LIMIT

logger = logging.getLogger(__name__)

JOB_TTL_SECONDS = 86400  # 24h

DocumentKind = Literal["invoice", "estimate"]


class JobResult(BaseModel):
    """Result of a background job.

    Attributes:
        job_id: Unique job identifier
        status: Job status (processing, completed, failed)
        document_id: Document ID being processed
        kind: Invoice or estimate document
        result: MultiInvoiceResult or ParsedEstimate as JSON-ready dict
        error: Error message (if failed)
        created_at: Job creation timestamp
        completed_at: Job completion timestamp
    """

    job_id: str
    status: str
    document_id: str
    kind: DocumentKind = "invoice"
    result: dict[str, Any] | None = None
    error: str | None = None
    created_at: str
    completed_at: str | None = None


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _build_processor(ctx: dict[str, Any], user_id: str | None) -> DocumentProcessor:
    settings: Settings = ctx.get("settings") or get_settings()
    return DocumentProcessor.from_settings(
        settings,
        user_id=user_id,
        ledger=ctx.get("cost_ledger"),
        pattern_store=ctx.get("pattern_store"),
        provider_pool=ctx.get("provider_pool"),
    )


async def process_document(
    ctx: dict[str, Any],
    job_id: str,
    document_id: str,
    file_content: bytes,
    filename: str,
    kind: DocumentKind = "invoice",
    user_id: str | None = None,
    force: bool = False,
) -> dict[str, Any]:
    """Parse one document in the background worker.

    Args:
        ctx: arq context (contains redis connection and shared services)
        job_id: Unique job identifier
        document_id: Document ID
        file_content: Raw file bytes
        filename: Original filename
        kind: "invoice" for invoice PDFs, "estimate" for estimate PDF/CSV/XLSX
        user_id: Caller identity for stored settings
        force: Bypass the page classifier (invoices only)

    Returns:
        JobResult as dict
    """
    logger.info(f"Processing {kind} job {job_id} for document {document_id}")
    redis = ctx["redis"]

    job = JobResult(
        job_id=job_id,
        status="processing",
        document_id=document_id,
        kind=kind,
        created_at=_now(),
    )
    await redis.set(f"job:{job_id}", job.model_dump_json(), ex=JOB_TTL_SECONDS)

    processor: DocumentProcessor | None = None
    try:
        processor = _build_processor(ctx, user_id)
        if kind == "estimate":
            estimate = processor.process_estimate(file_content, filename)
            job.result = estimate.model_dump(mode="json")
            job.status = "completed" if estimate.trades else "failed"
            if not estimate.trades:
                job.error = "No estimate rows found"
        else:
            invoices = processor.process_invoices(file_content, force=force, filename=filename)
            job.result = invoices.model_dump(mode="json")
            job.status = "completed" if invoices.success else "failed"
            job.error = invoices.error
    except Exception as e:
        logger.exception(f"Job {job_id} failed with error: {e}")
        job.status = "failed"
        job.error = str(e)
    finally:
        if processor is not None:
            processor.close()

    job.completed_at = _now()
    await redis.set(f"job:{job_id}", job.model_dump_json(), ex=JOB_TTL_SECONDS)
    logger.info(f"Job {job_id} completed with status: {job.status}")

    return job.model_dump()


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook: build the services shared by every job."""
    logger.info("Initializing worker services...")
    settings = get_settings()
    ctx["settings"] = settings
    ctx["pattern_store"] = create_pattern_store(settings)
    ctx["provider_pool"] = ProviderPool(settings)
    ctx["cost_ledger"] = CostLedger(
        settings.daily_cost_limit
        if settings.daily_cost_limit is not None
        else DEFAULT_DAILY_COST_LIMIT
    )
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook."""
    pool: ProviderPool | None = ctx.get("provider_pool")
    if pool is not None:
        pool.close()
    ledger: CostLedger | None = ctx.get("cost_ledger")
    if ledger is not None:
        logger.info(f"Worker shutting down (spent today: ${ledger.spent_today:.4f})")
    else:
        logger.info("Worker shutting down...")


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Job timeout and concurrency
    """

    functions = [process_document]
    on_startup = startup
    on_shutdown = shutdown

    # Set from Settings by docparse.queue.worker.configure_worker
    redis_settings: RedisSettings | None = None
    max_jobs = 10
    job_timeout = 300
