"""Unit tests for async queue functionality.

Tests task definitions and worker configuration.
"""

import json
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from docparse.estimates.schema import EstimateLineItem, EstimateTrade, ParsedEstimate
from docparse.extraction.factory import ProviderPool
from docparse.extraction.schema import MultiInvoiceResult, ParsedInvoice
from docparse.orchestration.budget import CostLedger
from docparse.queue.tasks import (
    JOB_TTL_SECONDS,
    JobResult,
    WorkerSettings,
    process_document,
    shutdown,
    startup,
)
from docparse.queue.worker import configure_worker
from docparse.shared.config import Settings


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Create mock Redis connection."""
    mock = AsyncMock()
    mock.set = AsyncMock()
    return mock


@pytest.fixture
def ctx(mock_redis: AsyncMock) -> dict[str, Any]:
    """Create a worker context with shared services."""
    return {
        "redis": mock_redis,
        "settings": Settings(_env_file=None),  # type: ignore[call-arg]
        "cost_ledger": CostLedger(10.0),
        "pattern_store": MagicMock(),
        "provider_pool": MagicMock(),
    }


class TestJobResult:
    """Test JobResult model."""

    def test_job_result_processing(self) -> None:
        """Should create a processing job result."""
        result = JobResult(
            job_id="job-123",
            status="processing",
            document_id="doc-456",
            created_at=datetime.now(UTC).isoformat(),
        )
        assert result.kind == "invoice"
        assert result.result is None

    def test_job_result_failed(self) -> None:
        """Should create a failed job result."""
        result = JobResult(
            job_id="job-123",
            status="failed",
            document_id="doc-456",
            error="No estimate rows found",
            created_at=datetime.now(UTC).isoformat(),
        )
        assert "estimate rows" in str(result.error)


class TestProcessDocumentTask:
    """Test process_document task."""

    @pytest.mark.asyncio
    async def test_invoice_job(self, ctx: dict[str, Any], mock_redis: AsyncMock) -> None:
        """Should parse invoices and store the job status twice."""
        processor = MagicMock()
        processor.process_invoices.return_value = MultiInvoiceResult(
            invoices=[ParsedInvoice(invoice_number="INV-1", total=100.0, confidence=0.9)],
            total_invoices=1,
        )

        with patch("docparse.queue.tasks._build_processor", return_value=processor) as build:
            result = await process_document(
                ctx,
                job_id="job-123",
                document_id="doc-456",
                file_content=b"%PDF-1.4",
                filename="invoice.pdf",
                user_id="u1",
                force=True,
            )

        assert result["status"] == "completed"
        assert result["result"]["total_invoices"] == 1
        assert result["completed_at"] is not None
        build.assert_called_once_with(ctx, "u1")
        processor.process_invoices.assert_called_once_with(
            b"%PDF-1.4", force=True, filename="invoice.pdf"
        )

        assert mock_redis.set.call_count == 2
        first, last = mock_redis.set.call_args_list
        assert first.args[0] == "job:job-123"
        assert json.loads(first.args[1])["status"] == "processing"
        assert json.loads(last.args[1])["status"] == "completed"
        assert last.kwargs["ex"] == JOB_TTL_SECONDS

    @pytest.mark.asyncio
    async def test_invoice_job_without_invoices(self, ctx: dict[str, Any]) -> None:
        """Should mark the job failed with the processor's error."""
        processor = MagicMock()
        processor.process_invoices.return_value = MultiInvoiceResult(
            success=False, error="No invoices found"
        )

        with patch("docparse.queue.tasks._build_processor", return_value=processor):
            result = await process_document(ctx, "job-1", "doc-1", b"%PDF-1.4", "invoice.pdf")

        assert result["status"] == "failed"
        assert result["error"] == "No invoices found"

    @pytest.mark.asyncio
    async def test_estimate_job(self, ctx: dict[str, Any]) -> None:
        """Should route estimate jobs to the estimate parser."""
        processor = MagicMock()
        processor.process_estimate.return_value = ParsedEstimate(
            trades=[
                EstimateTrade(
                    name="Plumbing",
                    line_items=[EstimateLineItem(description="Plumber", labor_cost=500.0)],
                )
            ],
            source="csv",
        )

        with patch("docparse.queue.tasks._build_processor", return_value=processor):
            result = await process_document(
                ctx, "job-2", "doc-2", b"a,b", "quote.csv", kind="estimate"
            )

        assert result["status"] == "completed"
        assert result["kind"] == "estimate"
        assert result["result"]["grand_total"] == 500.0
        processor.process_estimate.assert_called_once_with(b"a,b", "quote.csv")

    @pytest.mark.asyncio
    async def test_estimate_job_without_rows(self, ctx: dict[str, Any]) -> None:
        """Should fail estimate jobs that found no rows."""
        processor = MagicMock()
        processor.process_estimate.return_value = ParsedEstimate(source="pdf")

        with patch("docparse.queue.tasks._build_processor", return_value=processor):
            result = await process_document(
                ctx, "job-3", "doc-3", b"%PDF", "quote.pdf", kind="estimate"
            )

        assert result["status"] == "failed"
        assert result["error"] == "No estimate rows found"

    @pytest.mark.asyncio
    async def test_unexpected_error(self, ctx: dict[str, Any], mock_redis: AsyncMock) -> None:
        """Should record unexpected errors as a failed job."""
        with patch(
            "docparse.queue.tasks._build_processor", side_effect=RuntimeError("config broken")
        ):
            result = await process_document(ctx, "job-4", "doc-4", b"%PDF", "invoice.pdf")

        assert result["status"] == "failed"
        assert result["error"] == "config broken"
        assert json.loads(mock_redis.set.call_args.args[1])["status"] == "failed"

    @pytest.mark.asyncio
    async def test_shared_services_reach_the_session(self, ctx: dict[str, Any]) -> None:
        """Should build the session with the worker's shared services and close it."""
        with patch("docparse.queue.tasks.DocumentProcessor.from_settings") as from_settings:
            from_settings.return_value.process_invoices.return_value = MultiInvoiceResult()
            await process_document(ctx, "job-5", "doc-5", b"%PDF", "invoice.pdf", user_id="u2")

        from_settings.assert_called_once_with(
            ctx["settings"],
            user_id="u2",
            ledger=ctx["cost_ledger"],
            pattern_store=ctx["pattern_store"],
            provider_pool=ctx["provider_pool"],
        )
        from_settings.return_value.close.assert_called_once()


class TestWorkerLifecycle:
    """Test worker startup, shutdown and settings."""

    @pytest.mark.asyncio
    async def test_startup_builds_shared_services(self) -> None:
        """Should create one ledger, pattern store and provider pool per worker."""
        ctx: dict[str, Any] = {}
        store = MagicMock()

        with patch("docparse.queue.tasks.create_pattern_store", return_value=store):
            await startup(ctx)

        assert ctx["pattern_store"] is store
        assert isinstance(ctx["cost_ledger"], CostLedger)
        assert isinstance(ctx["settings"], Settings)
        assert isinstance(ctx["provider_pool"], ProviderPool)

        with patch.object(ctx["provider_pool"], "close") as close:
            await shutdown(ctx)

        close.assert_called_once()

    def test_worker_settings(self) -> None:
        """Should register the task with the configured limits."""
        assert process_document in WorkerSettings.functions
        assert WorkerSettings.max_jobs == 10
        assert WorkerSettings.job_timeout == 300
        assert WorkerSettings.on_startup is startup
        assert WorkerSettings.on_shutdown is shutdown

    def test_configure_worker_from_settings(self) -> None:
        """Should apply queue limits and the Redis DSN from settings."""
        settings = Settings(
            _env_file=None,  # type: ignore[call-arg]
            redis_url="redis://cache:6380/2",
            queue_max_jobs=3,
            queue_job_timeout=42,
        )

        with patch.multiple(WorkerSettings, redis_settings=None, max_jobs=10, job_timeout=300):
            configured = configure_worker(settings)

            assert configured is WorkerSettings
            assert WorkerSettings.max_jobs == 3
            assert WorkerSettings.job_timeout == 42
            assert WorkerSettings.redis_settings is not None
            assert WorkerSettings.redis_settings.host == "cache"
            assert WorkerSettings.redis_settings.port == 6380
            assert WorkerSettings.redis_settings.database == 2
