"""Parsing orchestrator: runs the strategy's fallback chain for one page.

The chain is an ordered list of extractor identifiers ("traditional" or a
provider name) resolved once per session. Elements run in order until one
reaches the confidence threshold; otherwise the best result seen wins.

Cost discipline (reserve-before-spend):
1. Before a paid call, its estimated cost is checked against the
   per-invoice ceiling and the remaining document budget
2. The estimate is then reserved on the shared daily ``CostLedger``
3. After the call the actual cost is committed (or the reservation released
   if the provider was unavailable)

When any ceiling would be breached the remaining paid elements are skipped
and the traditional extractor runs even if it was not next in line.
"""

import logging
import time
from collections.abc import Callable
from typing import Any, Literal, NamedTuple

from pydantic import BaseModel, ConfigDict, Field

from docparse.estimates.parser import EstimateParser
from docparse.estimates.schema import ParsedEstimate
from docparse.extraction.base import ParseContext, ProviderAdapter
from docparse.extraction.schema import ParsedInvoice
from docparse.extraction.traditional import TraditionalExtractor
from docparse.orchestration import metrics
from docparse.orchestration.budget import EPSILON, CostLedger, DocumentBudget
from docparse.shared.config import StrategyName
from docparse.shared.errors import AdapterUnavailable
from docparse.shared.parsing_config import (
    STRATEGY_PROFILES,
    TRADITIONAL,
    ParsingConfig,
    StrategyProfile,
    build_fallback_chain,
)

logger = logging.getLogger(__name__)

FAILED_STRATEGY = "failed"

Outcome = Literal["success", "low_confidence", "failed", "unavailable", "skipped"]


class AttemptRecord(BaseModel):
    """One chain element's execution (or skip)."""

    element: str
    outcome: Outcome
    confidence: float = Field(0.0, ge=0, le=1)
    cost: float = Field(0.0, ge=0)
    error: str | None = None


class ParsingMetadata(BaseModel):
    llm_used: bool = False
    fallback_triggered: bool = False
    traditional_used: bool = False
    budget_exhausted: bool = False
    providers_attempted: list[str] = Field(default_factory=list)


class ParsingResult(BaseModel):
    """Outcome of parsing one invoice page.

    Attributes:
        success: Whether any chain element produced a usable invoice
        invoice: Best invoice found, or None
        confidence: Confidence of the returned invoice
        total_cost: Sum of provider costs incurred for this page (USD)
        strategy: Chain element that produced the invoice, or "failed"
        processing_time: Wall time in seconds
        attempts: Every element run or skipped, in order
        metadata: Routing flags
        needs_review: Confidence is below the session threshold
    """

    success: bool
    invoice: ParsedInvoice | None = None
    confidence: float = Field(0.0, ge=0, le=1)
    total_cost: float = Field(0.0, ge=0)
    strategy: str = FAILED_STRATEGY
    processing_time: float = 0.0
    attempts: list[AttemptRecord] = Field(default_factory=list)
    metadata: ParsingMetadata = Field(default_factory=ParsingMetadata)
    needs_review: bool = True


class EstimateParsingResult(BaseModel):
    """Outcome of parsing one estimate document."""

    success: bool
    estimate: ParsedEstimate | None = None
    confidence: float = Field(0.0, ge=0, le=1)
    total_cost: float = Field(0.0, ge=0)
    strategy: str = FAILED_STRATEGY
    processing_time: float = 0.0
    attempts: list[AttemptRecord] = Field(default_factory=list)
    metadata: ParsingMetadata = Field(default_factory=ParsingMetadata)
    needs_review: bool = True


class ParseOptions(BaseModel):
    """Per-call options; the document budget is shared across a document's pages."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    budget: DocumentBudget | None = None
    filename: str | None = None
    user_id: str | None = None
    invoice_type: str | None = None


class CostEstimate(BaseModel):
    """Worst-case spend of running a strategy's chain over some text."""

    strategy: str
    chain: list[str]
    estimated_cost: float
    breakdown: dict[str, float] = Field(default_factory=dict)
    within_invoice_ceiling: bool = True


class _Produced(NamedTuple):
    value: Any
    confidence: float
    cost: float = 0.0
    error: str | None = None


class _ChainOutcome(NamedTuple):
    element: str | None
    value: Any
    confidence: float
    total_cost: float
    attempts: list[AttemptRecord]
    metadata: ParsingMetadata


class ParsingOrchestrator:
    """Executes fallback chains for invoices and estimates within one session."""

    def __init__(
        self,
        config: ParsingConfig,
        adapters: dict[str, ProviderAdapter] | None = None,
        traditional: TraditionalExtractor | None = None,
        ledger: CostLedger | None = None,
        estimate_parser: EstimateParser | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Resolved session config (strategy, chain, thresholds, limits)
            adapters: Available provider adapters keyed by name
            traditional: Heuristic extractor (built without learned patterns if omitted)
            ledger: Daily cost ledger shared across sessions
            estimate_parser: Heuristic estimate parser
        """
        self.config = config
        self.adapters = adapters or {}
        self.traditional = traditional or TraditionalExtractor()
        self.ledger = ledger or CostLedger(config.daily_cost_limit)
        self.estimate_parser = estimate_parser or EstimateParser()

    def parse(
        self, page_text: str, page_number: int = 1, options: ParseOptions | None = None
    ) -> ParsingResult:
        """Parse one invoice page through the fallback chain.

        Never raises for ordinary failures: an exhausted chain returns
        ``success=False`` with strategy "failed".
        """
        options = options or ParseOptions()
        context = ParseContext(
            page_number=page_number,
            filename=options.filename,
            user_id=options.user_id,
            invoice_type=options.invoice_type,
        )
        start_time = time.time()

        def heuristic() -> _Produced:
            invoice = self.traditional.extract_fields(page_text, page_number)
            if not invoice.has_core_fields() or invoice.confidence <= 0:
                return _Produced(None, invoice.confidence, error="No invoice fields found")
            return _Produced(invoice, invoice.confidence)

        def provider(adapter: ProviderAdapter) -> _Produced:
            result = adapter.parse_document(page_text, context)
            value = result.invoice if result.success else None
            return _Produced(value, result.confidence, result.cost, result.error)

        chain = self._execute_chain("invoice", page_text, options.budget, heuristic, provider)
        duration = time.time() - start_time
        logger.info(
            f"Page {page_number}: strategy={chain.element or FAILED_STRATEGY}, "
            f"confidence={chain.confidence:.2f}, cost=${chain.total_cost:.4f}, "
            f"time={duration:.2f}s"
        )
        return ParsingResult(
            success=chain.value is not None,
            invoice=chain.value,
            confidence=chain.confidence,
            total_cost=chain.total_cost,
            strategy=chain.element or FAILED_STRATEGY,
            processing_time=duration,
            attempts=chain.attempts,
            metadata=chain.metadata,
            needs_review=chain.confidence < self.config.confidence_threshold,
        )

    def parse_estimate(
        self, text: str, filename: str | None = None, options: ParseOptions | None = None
    ) -> EstimateParsingResult:
        """Parse estimate text; the heuristic element is the table detector."""
        options = options or ParseOptions()
        filename = filename or options.filename
        context = ParseContext(filename=filename, user_id=options.user_id)
        start_time = time.time()

        def heuristic() -> _Produced:
            estimate = self.estimate_parser.parse_text(text, filename, source="pdf")
            if not estimate.trades:
                return _Produced(None, 0.0, error="No estimate rows detected")
            return _Produced(estimate, estimate.confidence)

        def provider(adapter: ProviderAdapter) -> _Produced:
            result = adapter.parse_estimate(text, context)
            if not result.success or result.payload is None:
                return _Produced(None, 0.0, result.cost, result.error)
            estimate = self.estimate_parser.estimate_from_payload(
                result.payload,
                filename=filename,
                confidence=result.confidence,
                provider=adapter.provider_name,
                source_text=text,
            )
            if not estimate.trades:
                return _Produced(None, 0.0, result.cost, "Provider returned no usable rows")
            return _Produced(estimate, estimate.confidence, result.cost)

        chain = self._execute_chain("estimate", text, options.budget, heuristic, provider)
        duration = time.time() - start_time
        return EstimateParsingResult(
            success=chain.value is not None,
            estimate=chain.value,
            confidence=chain.confidence,
            total_cost=chain.total_cost,
            strategy=chain.element or FAILED_STRATEGY,
            processing_time=duration,
            attempts=chain.attempts,
            metadata=chain.metadata,
            needs_review=chain.confidence < self.config.confidence_threshold,
        )

    def _execute_chain(
        self,
        kind: str,
        text: str,
        budget: DocumentBudget | None,
        heuristic: Callable[[], _Produced],
        provider: Callable[[ProviderAdapter], _Produced],
    ) -> _ChainOutcome:
        threshold = self.config.confidence_threshold
        chain = list(self.config.chain)
        if not self.config.enable_fallback:
            chain = chain[:1]

        attempts: list[AttemptRecord] = []
        metadata = ParsingMetadata()
        total_cost = 0.0
        best: tuple[str, _Produced] | None = None
        exhausted = False
        executed = 0

        def record(element: str, produced: _Produced) -> None:
            nonlocal best
            if produced.value is None:
                outcome: Outcome = "failed"
            elif produced.confidence >= threshold:
                outcome = "success"
            else:
                outcome = "low_confidence"
            attempts.append(
                AttemptRecord(
                    element=element,
                    outcome=outcome,
                    confidence=produced.confidence,
                    cost=produced.cost,
                    error=produced.error,
                )
            )
            metrics.provider_calls_total.labels(provider=element, outcome=outcome).inc()
            if produced.value is None:
                return
            if best is None or produced.confidence > best[1].confidence:
                best = (element, produced)

        def skip(element: str, reason: str) -> None:
            attempts.append(AttemptRecord(element=element, outcome="skipped", error=reason))
            metrics.provider_calls_total.labels(provider=element, outcome="skipped").inc()

        def run_heuristic() -> None:
            nonlocal executed
            metadata.traditional_used = True
            executed += 1
            record(TRADITIONAL, heuristic())

        def satisfied() -> bool:
            return best is not None and best[1].confidence >= threshold

        with metrics.chain_duration_seconds.labels(kind=kind).time():
            for element in chain:
                if element == TRADITIONAL:
                    if not metadata.traditional_used:
                        run_heuristic()
                    if satisfied():
                        break
                    continue

                adapter = self.adapters.get(element)
                if adapter is None:
                    skip(element, "Provider not available")
                    continue
                if exhausted:
                    skip(element, "Budget exhausted")
                    continue

                reservation = None
                if adapter.is_paid:
                    estimated = adapter.estimate_cost(text)
                    scope = self._breached_scope(total_cost, estimated, budget)
                    if scope is None:
                        reservation = self.ledger.reserve(estimated, self.config.daily_cost_limit)
                        if reservation is None:
                            scope = "daily"
                    if scope is not None:
                        exhausted = True
                        metadata.budget_exhausted = True
                        metrics.budget_exhausted_total.labels(scope=scope).inc()
                        logger.warning(
                            f"Budget exhausted ({scope} limit) before {element} "
                            f"(estimated ${estimated:.4f}); skipping paid providers"
                        )
                        skip(element, f"Budget exhausted ({scope} limit)")
                        if not metadata.traditional_used:
                            run_heuristic()
                            if satisfied():
                                break
                        continue

                metadata.providers_attempted.append(element)
                executed += 1
                try:
                    produced = provider(adapter)
                except AdapterUnavailable as e:
                    if reservation is not None:
                        self.ledger.release(reservation)
                    logger.warning(f"Provider {element} unavailable, continuing chain: {e}")
                    attempts.append(
                        AttemptRecord(element=element, outcome="unavailable", error=str(e))
                    )
                    metrics.provider_calls_total.labels(
                        provider=element, outcome="unavailable"
                    ).inc()
                    continue
                except Exception:
                    if reservation is not None:
                        self.ledger.release(reservation)
                    raise

                if reservation is not None:
                    self.ledger.commit(reservation, produced.cost)
                if budget is not None:
                    budget.charge(produced.cost)
                total_cost += produced.cost
                metadata.llm_used = True
                if produced.cost:
                    metrics.parsing_cost_dollars_total.labels(provider=element).inc(produced.cost)
                record(element, produced)
                if satisfied():
                    break

        metadata.fallback_triggered = executed > 1
        if best is None:
            return _ChainOutcome(None, None, 0.0, round(total_cost, 6), attempts, metadata)
        element, produced = best
        return _ChainOutcome(
            element, produced.value, produced.confidence, round(total_cost, 6), attempts, metadata
        )

    def _breached_scope(
        self, spent: float, estimated: float, budget: DocumentBudget | None
    ) -> str | None:
        if spent + estimated > self.config.max_cost_per_invoice + EPSILON:
            return "invoice"
        if budget is not None and estimated > budget.remaining + EPSILON:
            return "document"
        return None

    def estimate_cost(self, text: str, strategy: StrategyName | None = None) -> CostEstimate:
        """Worst-case cost of running every paid element of a strategy's chain."""
        strategy = strategy or self.config.strategy
        chain = build_fallback_chain(strategy, list(self.config.providers))
        breakdown = {
            name: self.adapters[name].estimate_cost(text)
            for name in chain
            if name in self.adapters and self.adapters[name].is_paid
        }
        total = round(sum(breakdown.values()), 6)
        return CostEstimate(
            strategy=strategy,
            chain=chain,
            estimated_cost=total,
            breakdown=breakdown,
            within_invoice_ceiling=total <= self.config.max_cost_per_invoice + EPSILON,
        )

    def available_strategies(self) -> list[StrategyProfile]:
        """Strategies usable with the adapters this session has."""
        if not self.adapters:
            return [STRATEGY_PROFILES["heuristic-primary"]]
        return list(STRATEGY_PROFILES.values())
