"""Unit tests for the parsing orchestrator.

Providers are MagicMock adapters, or a real adapter over a mocked client;
the traditional extractor is real so the heuristic element behaves exactly
as in production.
"""

import json
from datetime import date
from typing import Any
from unittest.mock import MagicMock

import pytest

from docparse.extraction.base import EstimateProviderResult, ProviderAdapter, ProviderResult
from docparse.extraction.normalizers import DateNormalizer
from docparse.extraction.openai_provider import OpenAIProvider
from docparse.extraction.schema import ParsedInvoice
from docparse.extraction.traditional import TraditionalExtractor
from docparse.orchestration.budget import CostLedger, DocumentBudget
from docparse.orchestration.orchestrator import ParseOptions, ParsingOrchestrator
from docparse.shared.config import Settings
from docparse.shared.errors import AdapterUnavailable
from docparse.shared.parsing_config import TRADITIONAL, ParsingConfig, ProviderSpec

STRONG_PAGE = """ABC Plumbing Ltd
Invoice Number: INV-2024-001
Date: 15/03/2024
Total Due: $1,234.56
"""

WEAK_PAGE = "Total Due: $80.00"

OPENAI_SETTINGS = Settings(_env_file=None, openai_api_key="sk-test")  # type: ignore[call-arg]
OPENAI_SPEC = ProviderSpec(
    name="openai", model="gpt-4o-mini", priority=1, cost_per_1k_tokens=0.00015
)


def make_config(chain: tuple[str, ...], **overrides: Any) -> ParsingConfig:
    """Build a session config with generous limits unless overridden."""
    values: dict[str, Any] = {
        "strategy": "model-primary",
        "chain": chain,
        "providers": (),
        "confidence_threshold": 0.8,
        "max_cost_per_invoice": 0.05,
        "max_cost_per_document": 0.10,
        "daily_cost_limit": 10.0,
    }
    values.update(overrides)
    return ParsingConfig(**values)


def make_adapter(
    name: str,
    confidence: float = 0.9,
    cost: float = 0.002,
    estimated: float = 0.01,
    paid: bool = True,
) -> MagicMock:
    """Mock adapter returning a successful invoice."""
    adapter = MagicMock(spec=ProviderAdapter)
    adapter.provider_name = name
    adapter.is_paid = paid
    adapter.estimate_cost.return_value = estimated if paid else 0.0
    invoice = ParsedInvoice(invoice_number=f"{name.upper()}-1", total=10.0, confidence=confidence)
    adapter.parse_document.return_value = ProviderResult(
        success=True,
        invoice=invoice,
        confidence=confidence,
        cost=cost,
        provider=name,
    )
    return adapter


@pytest.fixture
def traditional() -> TraditionalExtractor:
    """Create the heuristic extractor with a fixed reference date."""
    return TraditionalExtractor(date_normalizer=DateNormalizer(reference_date=date(2024, 6, 1)))


class TestChainExecution:
    """Test chain order, thresholds and best-result selection."""

    def test_heuristic_success_skips_providers(self, traditional: TraditionalExtractor) -> None:
        """Test a confident heuristic result ends the chain for free."""
        openai = make_adapter("openai")
        orchestrator = ParsingOrchestrator(
            make_config((TRADITIONAL, "openai"), strategy="heuristic-primary"),
            adapters={"openai": openai},
            traditional=traditional,
        )

        result = orchestrator.parse(STRONG_PAGE, page_number=2)

        assert result.success is True
        assert result.strategy == TRADITIONAL
        assert result.confidence == 1.0
        assert result.total_cost == 0.0
        assert result.invoice.page_number == 2  # type: ignore[union-attr]
        assert result.needs_review is False
        assert result.metadata.llm_used is False
        assert result.metadata.fallback_triggered is False
        openai.parse_document.assert_not_called()

    def test_falls_back_to_provider(self, traditional: TraditionalExtractor) -> None:
        """Test a weak heuristic result continues to the next provider."""
        openai = make_adapter("openai", confidence=0.9, cost=0.002)
        ledger = CostLedger(10.0)
        budget = DocumentBudget(0.10)
        orchestrator = ParsingOrchestrator(
            make_config((TRADITIONAL, "openai")),
            adapters={"openai": openai},
            traditional=traditional,
            ledger=ledger,
        )

        result = orchestrator.parse(WEAK_PAGE, options=ParseOptions(budget=budget))

        assert result.strategy == "openai"
        assert result.confidence == 0.9
        assert result.total_cost == pytest.approx(0.002)
        assert result.metadata.fallback_triggered is True
        assert result.metadata.llm_used is True
        assert result.metadata.providers_attempted == ["openai"]
        assert [a.outcome for a in result.attempts] == ["low_confidence", "success"]
        assert ledger.spent_today == pytest.approx(0.002)
        assert ledger.reserved == 0.0
        assert budget.spent == pytest.approx(0.002)

    def test_best_result_when_threshold_not_reached(
        self, traditional: TraditionalExtractor
    ) -> None:
        """Test the highest-confidence result wins when none is satisfying."""
        anthropic = make_adapter("anthropic", confidence=0.5)
        openai = make_adapter("openai", confidence=0.6)
        orchestrator = ParsingOrchestrator(
            make_config(("anthropic", "openai", TRADITIONAL)),
            adapters={"anthropic": anthropic, "openai": openai},
            traditional=traditional,
        )

        result = orchestrator.parse(WEAK_PAGE)

        assert result.success is True
        assert result.strategy == "openai"
        assert result.needs_review is True
        assert [a.element for a in result.attempts] == ["anthropic", "openai", TRADITIONAL]

    def test_provider_success_stops_chain(self, traditional: TraditionalExtractor) -> None:
        """Test elements after a satisfying result never run."""
        anthropic = make_adapter("anthropic", confidence=0.95)
        openai = make_adapter("openai")
        orchestrator = ParsingOrchestrator(
            make_config(("anthropic", TRADITIONAL, "openai"), strategy="hybrid"),
            adapters={"anthropic": anthropic, "openai": openai},
            traditional=traditional,
        )

        result = orchestrator.parse(STRONG_PAGE)

        assert result.strategy == "anthropic"
        assert result.metadata.traditional_used is False
        openai.parse_document.assert_not_called()

    def test_fallback_disabled_runs_first_element_only(
        self, traditional: TraditionalExtractor
    ) -> None:
        """Test enable_fallback=False truncates the chain."""
        openai = make_adapter("openai")
        openai.parse_document.return_value = ProviderResult(
            success=False, provider="openai", error="No invoice fields in response"
        )
        orchestrator = ParsingOrchestrator(
            make_config(("openai", TRADITIONAL), enable_fallback=False),
            adapters={"openai": openai},
            traditional=traditional,
        )

        result = orchestrator.parse(STRONG_PAGE)

        assert result.success is False
        assert result.strategy == "failed"
        assert result.metadata.traditional_used is False

    def test_missing_adapter_skipped(self, traditional: TraditionalExtractor) -> None:
        """Test chain elements without an adapter are recorded as skipped."""
        orchestrator = ParsingOrchestrator(
            make_config(("gemini", TRADITIONAL)), adapters={}, traditional=traditional
        )

        result = orchestrator.parse(STRONG_PAGE)

        assert result.attempts[0].element == "gemini"
        assert result.attempts[0].outcome == "skipped"
        assert result.attempts[0].error == "Provider not available"
        assert result.strategy == TRADITIONAL

    def test_empty_page_fails(self, traditional: TraditionalExtractor) -> None:
        """Test a page with nothing extractable returns a failed result."""
        orchestrator = ParsingOrchestrator(make_config((TRADITIONAL,)), traditional=traditional)

        result = orchestrator.parse("")

        assert result.success is False
        assert result.invoice is None
        assert result.strategy == "failed"
        assert result.attempts[0].outcome == "failed"


class TestProviderFaults:
    """Test transport faults and unexpected errors."""

    def test_unavailable_provider_continues_chain(
        self, traditional: TraditionalExtractor
    ) -> None:
        """Test AdapterUnavailable releases the reservation and moves on."""
        anthropic = make_adapter("anthropic")
        anthropic.parse_document.side_effect = AdapterUnavailable("anthropic", "timed out")
        ledger = CostLedger(10.0)
        orchestrator = ParsingOrchestrator(
            make_config(("anthropic", TRADITIONAL)),
            adapters={"anthropic": anthropic},
            traditional=traditional,
            ledger=ledger,
        )

        result = orchestrator.parse(STRONG_PAGE)

        assert result.strategy == TRADITIONAL
        assert result.attempts[0].outcome == "unavailable"
        assert "timed out" in str(result.attempts[0].error)
        assert ledger.reserved == 0.0
        assert ledger.spent_today == 0.0
        assert result.metadata.fallback_triggered is True

    def test_unexpected_error_releases_and_propagates(
        self, traditional: TraditionalExtractor
    ) -> None:
        """Test programming errors are not swallowed."""
        openai = make_adapter("openai")
        openai.parse_document.side_effect = RuntimeError("bug")
        ledger = CostLedger(10.0)
        orchestrator = ParsingOrchestrator(
            make_config(("openai", TRADITIONAL)),
            adapters={"openai": openai},
            traditional=traditional,
            ledger=ledger,
        )

        with pytest.raises(RuntimeError, match="bug"):
            orchestrator.parse(STRONG_PAGE)

        assert ledger.reserved == 0.0

    def test_odd_model_json_does_not_break_the_chain(
        self, traditional: TraditionalExtractor
    ) -> None:
        """Test a real adapter tolerates list and number values in text fields."""
        client = MagicMock()
        client.chat.completions.create.return_value = MagicMock(
            choices=[
                MagicMock(
                    message=MagicMock(
                        content=json.dumps(
                            {"invoice_number": "INV-1", "total": 100, "description": ["a"]}
                        )
                    )
                )
            ],
            usage=MagicMock(prompt_tokens=100, completion_tokens=50),
        )
        orchestrator = ParsingOrchestrator(
            make_config(("openai", TRADITIONAL)),
            adapters={"openai": OpenAIProvider(OPENAI_SETTINGS, OPENAI_SPEC, client=client)},
            traditional=traditional,
        )

        result = orchestrator.parse(STRONG_PAGE)

        assert result.success is True
        assert result.attempts[0].element == "openai"
        assert result.attempts[0].outcome != "unavailable"

    def test_non_list_estimate_trades_fall_through(self) -> None:
        """Test a scalar trades value moves on to the table detector."""
        client = MagicMock()
        client.chat.completions.create.return_value = MagicMock(
            choices=[MagicMock(message=MagicMock(content='{"trades": 3, "confidence": 0.9}'))],
            usage=MagicMock(prompt_tokens=100, completion_tokens=50),
        )
        orchestrator = ParsingOrchestrator(
            make_config(("openai", TRADITIONAL), confidence_threshold=0.7),
            adapters={"openai": OpenAIProvider(OPENAI_SETTINGS, OPENAI_SPEC, client=client)},
        )

        result = orchestrator.parse_estimate("Plumber 21,000.00 $ Electrician 15,500.00 $")

        assert result.success is True
        assert result.strategy == TRADITIONAL
        assert result.estimate.grand_total == 36500.0  # type: ignore[union-attr]


class TestCostDiscipline:
    """Test per-invoice, per-document and daily ceilings."""

    def test_invoice_ceiling_skips_paid_providers(
        self, traditional: TraditionalExtractor
    ) -> None:
        """Test an over-ceiling estimate forces the heuristic and skips later providers."""
        anthropic = make_adapter("anthropic", estimated=0.2)
        openai = make_adapter("openai", estimated=0.001)
        orchestrator = ParsingOrchestrator(
            make_config(("anthropic", "openai", TRADITIONAL)),
            adapters={"anthropic": anthropic, "openai": openai},
            traditional=traditional,
        )

        result = orchestrator.parse(WEAK_PAGE)

        assert result.metadata.budget_exhausted is True
        assert result.strategy == TRADITIONAL
        assert [(a.element, a.outcome) for a in result.attempts] == [
            ("anthropic", "skipped"),
            (TRADITIONAL, "low_confidence"),
            ("openai", "skipped"),
        ]
        assert result.attempts[0].error == "Budget exhausted (invoice limit)"
        anthropic.parse_document.assert_not_called()
        openai.parse_document.assert_not_called()

    def test_document_budget(self, traditional: TraditionalExtractor) -> None:
        """Test the remaining document budget blocks a paid call."""
        openai = make_adapter("openai", estimated=0.01)
        orchestrator = ParsingOrchestrator(
            make_config(("openai", TRADITIONAL)),
            adapters={"openai": openai},
            traditional=traditional,
        )

        result = orchestrator.parse(STRONG_PAGE, options=ParseOptions(budget=DocumentBudget(0.005)))

        assert result.metadata.budget_exhausted is True
        assert result.attempts[0].error == "Budget exhausted (document limit)"
        assert result.strategy == TRADITIONAL
        openai.parse_document.assert_not_called()

    def test_daily_limit(self, traditional: TraditionalExtractor) -> None:
        """Test the shared daily ledger blocks a paid call."""
        openai = make_adapter("openai", estimated=0.01)
        ledger = CostLedger(0.005)
        orchestrator = ParsingOrchestrator(
            make_config(("openai", TRADITIONAL), daily_cost_limit=0.005),
            adapters={"openai": openai},
            traditional=traditional,
            ledger=ledger,
        )

        result = orchestrator.parse(STRONG_PAGE)

        assert result.attempts[0].error == "Budget exhausted (daily limit)"
        assert result.total_cost == 0.0
        openai.parse_document.assert_not_called()

    def test_free_provider_ignores_budget(self, traditional: TraditionalExtractor) -> None:
        """Test a zero-cost provider runs even when nothing is left to spend."""
        ollama = make_adapter("ollama", cost=0.0, paid=False)
        orchestrator = ParsingOrchestrator(
            make_config(("ollama", TRADITIONAL), daily_cost_limit=0.0, max_cost_per_invoice=0.0),
            adapters={"ollama": ollama},
            traditional=traditional,
            ledger=CostLedger(0.0),
        )

        result = orchestrator.parse(WEAK_PAGE, options=ParseOptions(budget=DocumentBudget(0.0)))

        assert result.strategy == "ollama"
        assert result.metadata.budget_exhausted is False
        ollama.estimate_cost.assert_not_called()

    def test_costs_accumulate_against_invoice_ceiling(
        self, traditional: TraditionalExtractor
    ) -> None:
        """Test spend from earlier elements counts toward the per-invoice ceiling."""
        anthropic = make_adapter("anthropic", confidence=0.3, cost=0.04, estimated=0.045)
        openai = make_adapter("openai", estimated=0.02)
        orchestrator = ParsingOrchestrator(
            make_config(("anthropic", "openai", TRADITIONAL)),
            adapters={"anthropic": anthropic, "openai": openai},
            traditional=traditional,
        )

        result = orchestrator.parse(WEAK_PAGE)

        assert result.total_cost == pytest.approx(0.04)
        assert result.attempts[1].element == "openai"
        assert result.attempts[1].outcome == "skipped"
        openai.parse_document.assert_not_called()


class TestEstimates:
    """Test the estimate chain."""

    def test_heuristic_estimate(self) -> None:
        """Test the table detector is the heuristic element for estimates."""
        orchestrator = ParsingOrchestrator(
            make_config((TRADITIONAL,), strategy="heuristic-primary", confidence_threshold=0.7)
        )

        result = orchestrator.parse_estimate(
            "Plumber 21,000.00 $ Electrician 15,500.00 $", filename="house.pdf"
        )

        assert result.success is True
        assert result.strategy == TRADITIONAL
        assert result.estimate.grand_total == 36500.0  # type: ignore[union-attr]
        assert result.estimate.source == "pdf"  # type: ignore[union-attr]
        assert result.estimate.project_name == "house"  # type: ignore[union-attr]

    def test_provider_estimate_recomputed_locally(self) -> None:
        """Test a provider payload becomes an estimate with local totals."""
        openai = make_adapter("openai")
        openai.parse_estimate.return_value = EstimateProviderResult(
            success=True,
            payload={
                "trades": [
                    {
                        "name": "Plumbing",
                        "line_items": [{"description": "Plumber", "total": 21000}],
                        "total": 99999,
                    }
                ]
            },
            confidence=0.9,
            cost=0.001,
            provider="openai",
        )
        orchestrator = ParsingOrchestrator(
            make_config(("openai", TRADITIONAL)), adapters={"openai": openai}
        )

        result = orchestrator.parse_estimate("Plumber 21,000.00 $", filename="house.pdf")

        assert result.strategy == "openai"
        assert result.confidence == 0.9
        assert result.total_cost == pytest.approx(0.001)
        assert result.estimate.grand_total == 21000.0  # type: ignore[union-attr]
        assert result.estimate.source == "provider"  # type: ignore[union-attr]

    def test_no_rows_anywhere(self) -> None:
        """Test an estimate with nothing detectable fails."""
        orchestrator = ParsingOrchestrator(make_config((TRADITIONAL,)))

        result = orchestrator.parse_estimate("Just some prose without any amounts.")

        assert result.success is False
        assert result.estimate is None


class TestPlanning:
    """Test cost estimates and strategy listings."""

    def test_estimate_cost(self) -> None:
        """Test the worst case sums paid elements only."""
        providers = (
            ProviderSpec(name="anthropic", model="m", priority=1, cost_per_1k_tokens=0.003),
            ProviderSpec(name="ollama", model="m", priority=4, cost_per_1k_tokens=0.0),
        )
        anthropic = make_adapter("anthropic", estimated=0.012)
        ollama = make_adapter("ollama", paid=False)
        orchestrator = ParsingOrchestrator(
            make_config(("anthropic", "ollama", TRADITIONAL), providers=providers),
            adapters={"anthropic": anthropic, "ollama": ollama},
        )

        estimate = orchestrator.estimate_cost("page text", strategy="cost-optimized")

        assert estimate.chain == [TRADITIONAL, "ollama", "anthropic"]
        assert estimate.breakdown == {"anthropic": 0.012}
        assert estimate.estimated_cost == pytest.approx(0.012)
        assert estimate.within_invoice_ceiling is True

    def test_available_strategies_without_adapters(self) -> None:
        """Test only heuristic-primary is offered without providers."""
        orchestrator = ParsingOrchestrator(make_config((TRADITIONAL,)))

        names = [profile.name for profile in orchestrator.available_strategies()]

        assert names == ["heuristic-primary"]

    def test_available_strategies_with_adapters(self) -> None:
        """Test every profile is offered when providers exist."""
        orchestrator = ParsingOrchestrator(
            make_config(("openai", TRADITIONAL)), adapters={"openai": make_adapter("openai")}
        )

        assert len(orchestrator.available_strategies()) == 5
