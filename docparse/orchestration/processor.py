"""Document processor: one parsing session over whole documents.

Wires text extraction, page classification, the orchestrator and the
quality assessor together. A processor is built per session (per request
or per job) from injected collaborators; only the pattern store and the
cost ledger are meant to be shared between sessions, together with a
process-wide ``ProviderPool`` holding the adapters and their clients.
"""

import logging
import time
from pathlib import PurePath
from typing import Any

from docparse.estimates.schema import ParsedEstimate
from docparse.extraction.factory import ProviderPool
from docparse.extraction.schema import MultiInvoiceResult, ParsedInvoice, ParsingStats
from docparse.extraction.traditional import TraditionalExtractor
from docparse.learning.models import TrainingExample
from docparse.learning.store import PatternStore, create_pattern_store
from docparse.orchestration import metrics
from docparse.orchestration.budget import CostLedger, DocumentBudget
from docparse.orchestration.orchestrator import ParseOptions, ParsingOrchestrator
from docparse.quality.assessor import MANUAL_PROCESSING, QualityAssessor
from docparse.shared.config import Settings
from docparse.shared.errors import ExtractionFailure
from docparse.shared.parsing_config import SettingsRepository, load_parsing_config
from docparse.text.classifier import PageClassifier
from docparse.text.extractor import TextExtractor

logger = logging.getLogger(__name__)

ZIP_MAGIC = b"PK\x03\x04"

CORRECTABLE_FIELDS = (
    "invoice_number",
    "date",
    "vendor_name",
    "description",
    "amount",
    "tax",
    "total",
)


class DocumentProcessor:
    """Processes invoice and estimate documents for one session."""

    def __init__(
        self,
        orchestrator: ParsingOrchestrator,
        text_extractor: TextExtractor | None = None,
        classifier: PageClassifier | None = None,
        assessor: QualityAssessor | None = None,
        pattern_store: PatternStore | None = None,
        user_id: str | None = None,
        owned_pool: ProviderPool | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self._owned_pool = owned_pool
        self.config = orchestrator.config
        self.text_extractor = text_extractor or TextExtractor()
        self.classifier = classifier or PageClassifier()
        self.assessor = assessor or QualityAssessor()
        self.pattern_store = pattern_store
        self.user_id = user_id

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        user_id: str | None = None,
        settings_repository: SettingsRepository | None = None,
        ledger: CostLedger | None = None,
        pattern_store: PatternStore | None = None,
        provider_pool: ProviderPool | None = None,
    ) -> "DocumentProcessor":
        """Resolve the session config and build every collaborator.

        Args:
            settings: Application settings
            user_id: Caller identity used to look up stored settings
            settings_repository: Stored per-user settings, if any
            ledger: Process-wide daily cost ledger (a fresh one if omitted)
            pattern_store: Shared pattern store (built from settings if omitted)
            provider_pool: Shared adapters; when omitted the session builds its
                own pool and ``close()`` releases it

        Raises:
            ConfigurationError: If the resolved configuration is invalid
        """
        config = load_parsing_config(settings, settings_repository, user_id)
        store = pattern_store or create_pattern_store(settings)
        owned_pool = None
        if provider_pool is None:
            provider_pool = owned_pool = ProviderPool(settings)
        orchestrator = ParsingOrchestrator(
            config,
            adapters=provider_pool.adapters_for(config),
            traditional=TraditionalExtractor(pattern_store=store),
            ledger=ledger or CostLedger(config.daily_cost_limit),
        )
        logger.info(
            f"Parsing session for {user_id or 'anonymous'}: strategy={config.strategy}, "
            f"chain={list(config.chain)}"
        )
        return cls(
            orchestrator,
            classifier=PageClassifier(settings.classifier_threshold),
            pattern_store=store,
            user_id=user_id,
            owned_pool=owned_pool,
        )

    def close(self) -> None:
        """Release adapters this session created for itself."""
        if self._owned_pool is not None:
            self._owned_pool.close()
            self._owned_pool = None

    def __enter__(self) -> "DocumentProcessor":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def process_invoices(
        self, buffer: bytes, force: bool = False, filename: str | None = None
    ) -> MultiInvoiceResult:
        """Extract every invoice in a PDF.

        Pages run sequentially so the document budget is charged in order.
        Pages without core fields or with zero confidence are left out of
        ``invoices``.

        Args:
            buffer: PDF bytes
            force: Parse every page, bypassing the page classifier
            filename: Original filename, passed to providers

        Returns:
            MultiInvoiceResult; unreadable buffers give success=False
        """
        start_time = time.time()
        try:
            document = self.text_extractor.extract_document(buffer)
        except ExtractionFailure as e:
            logger.warning(f"Text extraction failed for {filename or 'document'}: {e.message}")
            return self._failed_result(e.message)

        if document.method == "manual-fallback":
            result = self._failed_result("No text could be extracted from the document")
            return result.model_copy(
                update={
                    "pages_processed": document.page_count,
                    "extraction_method": document.method,
                }
            )

        pages = list(enumerate(document.pages, start=1))
        if force:
            selected = pages
            metrics.pages_classified_total.labels(result="forced").inc(len(pages))
        else:
            selected = [(number, text) for number, text in pages if self.classifier.classify(text)]
            metrics.pages_classified_total.labels(result="invoice").inc(len(selected))
            metrics.pages_classified_total.labels(result="skipped").inc(len(pages) - len(selected))
            if not selected:
                logger.info("No page classified as an invoice; parsing every page")
                selected = pages

        budget = DocumentBudget(self.config.max_cost_per_document)
        options = ParseOptions(budget=budget, filename=filename, user_id=self.user_id)
        invoices: list[ParsedInvoice] = []
        total_cost = 0.0
        llm_used = False

        for page_number, page_text in selected:
            result = self.orchestrator.parse(page_text, page_number, options)
            total_cost += result.total_cost
            llm_used = llm_used or result.metadata.llm_used
            if result.metadata.budget_exhausted:
                logger.warning(f"Page {page_number}: budget exhausted, heuristics used")
            if not result.success or result.invoice is None:
                logger.warning(f"Page {page_number}: no invoice extracted")
                continue

            invoice = self.assessor.enrich(result.invoice)
            if not invoice.has_core_fields() or invoice.confidence <= 0:
                continue
            invoices.append(invoice)

        quality = self.assessor.aggregate(invoices, len(selected))
        total_amount = round(sum(invoice.payable_amount or 0.0 for invoice in invoices), 2)
        average_confidence = (
            sum(invoice.confidence for invoice in invoices) / len(invoices) if invoices else 0.0
        )
        skipped = len(pages) - len(selected)

        summary = (
            f"Found {len(invoices)} invoice(s) totaling ${total_amount:,.2f} "
            f"across {len(pages)} page(s)"
        )
        if skipped:
            summary += f"; {skipped} non-invoice page(s) skipped"

        logger.info(f"{summary} in {time.time() - start_time:.2f}s (cost ${total_cost:.4f})")
        return MultiInvoiceResult(
            success=bool(invoices),
            invoices=invoices,
            total_invoices=len(invoices),
            total_amount=total_amount,
            summary=summary,
            parsing_stats=ParsingStats(
                llm_used=llm_used,
                total_cost=round(total_cost, 6),
                average_confidence=round(average_confidence, 4),
                strategy=self.config.strategy,
            ),
            quality_metrics=quality,
            pages_processed=len(selected),
            pages_skipped=skipped,
            extraction_method=document.method,
            error=None if invoices else "No invoices found",
        )

    def _failed_result(self, error: str) -> MultiInvoiceResult:
        quality = self.assessor.aggregate([], 0)
        return MultiInvoiceResult(
            success=False,
            summary=MANUAL_PROCESSING,
            parsing_stats=ParsingStats(strategy=self.config.strategy),
            quality_metrics=quality.model_copy(update={"issues_found": [error]}),
            error=error,
        )

    def process_estimate(self, buffer: bytes, filename: str | None = None) -> ParsedEstimate:
        """Parse a cost estimate from a PDF, CSV or XLSX buffer.

        Spreadsheets go straight to the table detector; PDFs run the
        estimate chain. Unreadable documents give an empty estimate with
        zero confidence.
        """
        suffix = PurePath(filename).suffix.lower() if filename else ""
        try:
            if suffix == ".csv":
                return self.orchestrator.estimate_parser.parse_csv(buffer, filename)
            if suffix in (".xlsx", ".xlsm") or (not suffix and buffer.startswith(ZIP_MAGIC)):
                return self.orchestrator.estimate_parser.parse_xlsx(buffer, filename)
            document = self.text_extractor.extract_document(buffer)
        except ExtractionFailure as e:
            logger.warning(f"Estimate {filename or 'document'} unreadable: {e.message}")
            return ParsedEstimate(filename=filename, source="pdf")

        budget = DocumentBudget(self.config.max_cost_per_document)
        result = self.orchestrator.parse_estimate(
            "\n".join(document.pages),
            filename,
            ParseOptions(budget=budget, filename=filename, user_id=self.user_id),
        )
        if result.estimate is None:
            return ParsedEstimate(filename=filename, source="pdf")
        return result.estimate

    def record_correction(
        self,
        text: str,
        parsed: ParsedInvoice | dict[str, Any],
        corrected: dict[str, Any],
        invoice_type: str | None = None,
    ) -> TrainingExample | None:
        """Store a user correction and learn patterns from it.

        Returns:
            The stored example, or None when training collection is disabled

        Raises:
            PatternStoreError: If the training store cannot be written
        """
        if not self.config.collect_training_data:
            logger.info("Training data collection disabled; correction not stored")
            return None
        if self.pattern_store is None:
            logger.warning("No pattern store configured; correction not stored")
            return None

        if isinstance(parsed, ParsedInvoice):
            parsed_values = parsed.model_dump(include=set(CORRECTABLE_FIELDS))
        else:
            parsed_values = dict(parsed)
        example = TrainingExample(
            text=text,
            parsed_values=parsed_values,
            corrected_values=corrected,
            user_id=self.user_id,
            invoice_type=invoice_type,
        )
        self.pattern_store.learn(example)
        return example
