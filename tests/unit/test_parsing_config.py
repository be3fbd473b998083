"""Unit tests for strategy resolution and fallback chains."""

from typing import Any

import pytest

from docparse.shared.config import Settings
from docparse.shared.errors import ConfigurationError
from docparse.shared.parsing_config import (
    STRATEGY_PROFILES,
    TRADITIONAL,
    InMemorySettingsRepository,
    UserParsingSettings,
    build_fallback_chain,
    default_provider_specs,
    load_parsing_config,
    resolve_parsing_config,
)


def make_settings(**overrides: Any) -> Settings:
    """Settings with every provider disabled unless overridden."""
    values: dict[str, Any] = {
        "openai_api_key": "",
        "anthropic_api_key": "",
        "gemini_api_key": "",
        "ollama_enabled": False,
        "parsing_strategy": None,
        "provider_order": None,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


class TestFallbackChains:
    """Test chain composition per strategy."""

    @pytest.fixture
    def specs(self) -> list:
        """Provider specs for every known provider in priority order."""
        settings = make_settings()
        return sorted(default_provider_specs(settings).values(), key=lambda s: s.priority)

    @pytest.mark.parametrize("strategy", sorted(STRATEGY_PROFILES))
    def test_traditional_exactly_once(self, strategy: str, specs: list) -> None:
        """Test every strategy includes the heuristic extractor once."""
        chain = build_fallback_chain(strategy, specs)  # type: ignore[arg-type]

        assert chain.count(TRADITIONAL) == 1
        assert len(chain) == len(specs) + 1

    def test_hybrid_puts_heuristics_second(self, specs: list) -> None:
        """Test hybrid runs the best provider, then heuristics, then the rest."""
        chain = build_fallback_chain("hybrid", specs)

        assert chain == ["anthropic", TRADITIONAL, "gemini", "openai", "ollama"]

    def test_cost_optimized_orders_by_unit_cost(self, specs: list) -> None:
        """Test cheapest providers run first, ties broken by priority."""
        chain = build_fallback_chain("cost-optimized", specs)

        assert chain == [TRADITIONAL, "ollama", "gemini", "openai", "anthropic"]

    def test_chains_without_providers(self) -> None:
        """Test strategies degrade to heuristics only."""
        assert build_fallback_chain("hybrid", []) == [TRADITIONAL]
        assert build_fallback_chain("model-primary", []) == [TRADITIONAL]

    def test_unknown_strategy(self, specs: list) -> None:
        """Test unknown strategy names raise ConfigurationError."""
        with pytest.raises(ConfigurationError, match="Unknown parsing strategy"):
            build_fallback_chain("fastest", specs)  # type: ignore[arg-type]


class TestResolveParsingConfig:
    """Test layered resolution of the session config."""

    def test_no_providers_falls_back_to_heuristics(self) -> None:
        """Test a missing provider set forces heuristic-primary."""
        config = resolve_parsing_config(make_settings(parsing_strategy="model-primary"))

        assert config.strategy == "heuristic-primary"
        assert config.chain == (TRADITIONAL,)
        assert config.confidence_threshold == 0.7
        assert config.providers == ()

    def test_hybrid_defaults(self) -> None:
        """Test hybrid profile values and the per-invoice ceiling."""
        settings = make_settings(anthropic_api_key="a-key", openai_api_key="o-key")

        config = resolve_parsing_config(settings)

        assert config.strategy == "hybrid"
        assert config.chain == ("anthropic", TRADITIONAL, "openai")
        assert config.confidence_threshold == 0.85
        assert config.max_cost_per_invoice == 0.05
        assert config.max_cost_per_document == 0.10
        assert config.daily_cost_limit == 10.0
        assert config.enable_fallback is True

    def test_per_invoice_ceiling_capped_by_document_limit(self) -> None:
        """Test the document limit caps the profile's per-invoice ceiling."""
        settings = make_settings(openai_api_key="o-key", max_cost_per_document=0.01)

        config = resolve_parsing_config(settings)

        assert config.max_cost_per_invoice == 0.01

    def test_explicit_provider_order(self) -> None:
        """Test configured order wins, remaining providers follow by priority."""
        settings = make_settings(
            anthropic_api_key="a-key",
            gemini_api_key="g-key",
            openai_api_key="o-key",
            provider_order=["openai"],
            parsing_strategy="model-primary",
        )

        config = resolve_parsing_config(settings)

        assert config.chain == ("openai", "anthropic", "gemini", TRADITIONAL)

    def test_unknown_provider_in_order(self) -> None:
        """Test an unknown provider name is a configuration error."""
        settings = make_settings(openai_api_key="o-key", provider_order=["mystery"])

        with pytest.raises(ConfigurationError, match="mystery"):
            resolve_parsing_config(settings)

    def test_stored_settings_apply_when_env_unset(self) -> None:
        """Test stored per-user values fill gaps left by the environment."""
        stored = UserParsingSettings(
            strategy="accuracy-optimized", confidence_threshold=0.9, enable_fallback=False
        )

        config = resolve_parsing_config(make_settings(gemini_api_key="g-key"), stored)

        assert config.strategy == "accuracy-optimized"
        assert config.confidence_threshold == 0.9
        assert config.enable_fallback is False

    def test_environment_beats_stored_settings(self) -> None:
        """Test environment values take precedence over stored ones."""
        settings = make_settings(gemini_api_key="g-key", parsing_strategy="cost-optimized")
        stored = UserParsingSettings(strategy="model-primary", daily_cost_limit=1.0)

        config = resolve_parsing_config(settings, stored)

        assert config.strategy == "cost-optimized"
        assert config.confidence_threshold == 0.6
        assert config.daily_cost_limit == 1.0

    def test_load_from_repository(self) -> None:
        """Test stored settings are fetched per user."""
        repository = InMemorySettingsRepository()
        repository.save_user_settings("user-1", UserParsingSettings(collect_training_data=False))
        settings = make_settings()

        assert load_parsing_config(settings, repository, "user-1").collect_training_data is False
        assert load_parsing_config(settings, repository, "user-2").collect_training_data is True
        assert load_parsing_config(settings, repository, None).collect_training_data is True

    def test_provider_lookup(self) -> None:
        """Test specs are reachable by name from the resolved config."""
        config = resolve_parsing_config(make_settings(ollama_enabled=True))

        spec = config.provider("ollama")
        assert spec is not None
        assert spec.cost_per_1k_tokens == 0.0
        assert spec.timeout_seconds >= 120
        assert config.provider("openai") is None
