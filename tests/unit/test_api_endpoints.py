"""Unit tests for the parsing API.

Tests cover:
- Health, readiness and metrics endpoints
- Upload validation
- Invoice and estimate parsing through a mocked session
- Training corrections and stats
"""

from unittest.mock import MagicMock, patch

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from docparse.api import main
from docparse.api.main import app
from docparse.estimates.schema import EstimateLineItem, EstimateTrade, ParsedEstimate
from docparse.extraction.schema import MultiInvoiceResult, ParsedInvoice
from docparse.learning.models import TrainingExample, TrainingStats
from docparse.shared.errors import PatternStoreError


@pytest.fixture
def client() -> TestClient:
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def processor() -> MagicMock:
    """Create a mock parsing session."""
    return MagicMock()


class TestHealth:
    """Test health and monitoring endpoints."""

    def test_health_check(self, client: TestClient) -> None:
        """Test health check endpoint."""
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert "version" in data
        assert "service" in data

    def test_readiness_check(self, client: TestClient) -> None:
        """Test readiness check endpoint."""
        response = client.get("/ready")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["ready"] is True

    def test_metrics_endpoint(self, client: TestClient) -> None:
        """Test Prometheus metrics are exposed."""
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == status.HTTP_200_OK
        assert "http_requests_total" in response.text


class TestUploadValidation:
    """Test upload checks shared by the parse endpoints."""

    def test_invalid_file_type(self, client: TestClient) -> None:
        """Test non-PDF invoices are rejected."""
        files = {"file": ("invoice.png", b"data", "image/png")}

        response = client.post("/api/v1/invoices/parse", files=files)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert "Invalid file type" in response.json()["detail"]
        exposition = client.get("/metrics").text
        assert 'uploads_rejected_total{reason="invalid_type"}' in exposition

    def test_empty_file(self, client: TestClient) -> None:
        """Test empty uploads are rejected."""
        files = {"file": ("invoice.pdf", b"", "application/pdf")}

        response = client.post("/api/v1/invoices/parse", files=files)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json()["detail"] == "Empty file"

    def test_estimate_accepts_spreadsheets(self, client: TestClient, processor: MagicMock) -> None:
        """Test the estimate endpoint accepts XLSX and rejects text files."""
        processor.process_estimate.return_value = ParsedEstimate(source="xlsx")
        with patch("docparse.api.main.get_processor", return_value=processor):
            ok = client.post(
                "/api/v1/estimates/parse", files={"file": ("quote.xlsx", b"PK", "application/zip")}
            )
            bad = client.post(
                "/api/v1/estimates/parse", files={"file": ("quote.txt", b"x", "text/plain")}
            )

        assert ok.status_code == status.HTTP_200_OK
        assert bad.status_code == status.HTTP_400_BAD_REQUEST


class TestParseInvoices:
    """Test the invoice parsing endpoint."""

    def test_parse_invoices(self, client: TestClient, processor: MagicMock) -> None:
        """Test the session result is returned as JSON."""
        processor.process_invoices.return_value = MultiInvoiceResult(
            invoices=[ParsedInvoice(invoice_number="INV-1", total=100.0, confidence=0.9)],
            total_invoices=1,
            total_amount=100.0,
            summary="Found 1 invoice(s) totaling $100.00 across 1 page(s)",
        )
        files = {"file": ("invoice.pdf", b"%PDF-1.4", "application/pdf")}

        with patch("docparse.api.main.get_processor", return_value=processor) as get_processor:
            response = client.post("/api/v1/invoices/parse?force=true&user_id=u1", files=files)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total_invoices"] == 1
        assert data["invoices"][0]["invoice_number"] == "INV-1"
        get_processor.assert_called_once_with("u1")
        processor.process_invoices.assert_called_once_with(
            b"%PDF-1.4", force=True, filename="invoice.pdf"
        )

    def test_unparseable_document_is_not_an_http_error(
        self, client: TestClient, processor: MagicMock
    ) -> None:
        """Test a document with no invoices still returns 200."""
        processor.process_invoices.return_value = MultiInvoiceResult(
            success=False, error="Not a PDF document"
        )
        files = {"file": ("invoice.pdf", b"garbage", "application/pdf")}

        with patch("docparse.api.main.get_processor", return_value=processor):
            response = client.post("/api/v1/invoices/parse", files=files)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["success"] is False


class TestParseEstimate:
    """Test the estimate parsing endpoint."""

    def test_parse_estimate(self, client: TestClient, processor: MagicMock) -> None:
        """Test computed totals are serialized."""
        processor.process_estimate.return_value = ParsedEstimate(
            trades=[
                EstimateTrade(
                    name="Plumbing",
                    line_items=[EstimateLineItem(description="Plumber", labor_cost=21000.0)],
                )
            ],
            source="csv",
            filename="quote.csv",
        )
        files = {"file": ("quote.csv", b"Description,Total\nPlumber,21000\n", "text/csv")}

        with patch("docparse.api.main.get_processor", return_value=processor):
            response = client.post("/api/v1/estimates/parse", files=files)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["grand_total"] == 21000.0
        assert data["trades"][0]["total_cost"] == 21000.0
        processor.process_estimate.assert_called_once()


class TestTraining:
    """Test correction capture and stats."""

    def test_record_correction(self, client: TestClient, processor: MagicMock) -> None:
        """Test a stored correction returns its id."""
        example = TrainingExample(text="Total $100.00", corrected_values={"total": 110.0})
        processor.record_correction.return_value = example
        body = {"text": "Total $100.00", "corrected_values": {"total": 110.0}}

        with patch("docparse.api.main.get_processor", return_value=processor):
            response = client.post("/api/v1/training/examples", json=body)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"stored": True, "example_id": example.id}

    def test_collection_disabled(self, client: TestClient, processor: MagicMock) -> None:
        """Test a declined correction reports stored=false."""
        processor.record_correction.return_value = None
        body = {"text": "Total $100.00", "corrected_values": {"total": 110.0}}

        with patch("docparse.api.main.get_processor", return_value=processor):
            response = client.post("/api/v1/training/examples", json=body)

        assert response.json() == {"stored": False, "example_id": None}

    def test_store_unavailable(self, client: TestClient, processor: MagicMock) -> None:
        """Test storage faults map to 503."""
        processor.record_correction.side_effect = PatternStoreError("disk full")
        body = {"text": "Total $100.00", "corrected_values": {"total": 110.0}}

        with patch("docparse.api.main.get_processor", return_value=processor):
            response = client.post("/api/v1/training/examples", json=body)

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert "disk full" in response.json()["detail"]

    def test_empty_correction_rejected(self, client: TestClient) -> None:
        """Test a correction without corrected values fails validation."""
        response = client.post(
            "/api/v1/training/examples", json={"text": "x", "corrected_values": {}}
        )

        assert response.status_code == 422

    def test_training_stats(self, client: TestClient) -> None:
        """Test corpus statistics come from the shared store."""
        store = MagicMock()
        store.stats.return_value = TrainingStats(total_examples=3, pattern_count=5)

        with patch("docparse.api.main.pattern_store", store):
            response = client.get("/api/v1/training/stats")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["total_examples"] == 3
        assert response.json()["pattern_count"] == 5


class TestSessionWiring:
    """Test per-request sessions reuse the process-wide services."""

    def test_get_processor_shares_services(self) -> None:
        """Test every request session gets the shared ledger, store and provider pool."""
        with patch("docparse.api.main.DocumentProcessor.from_settings") as from_settings:
            main.get_processor("u3")

        kwargs = from_settings.call_args.kwargs
        assert kwargs["user_id"] == "u3"
        assert kwargs["ledger"] is main.cost_ledger
        assert kwargs["pattern_store"] is main.pattern_store
        assert kwargs["provider_pool"] is main.provider_pool

    def test_shutdown_closes_provider_pool(self) -> None:
        """Test stopping the application closes the shared provider clients."""
        with patch.object(main.provider_pool, "close") as close:
            with TestClient(app):
                close.assert_not_called()

        close.assert_called_once()
