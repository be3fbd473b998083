"""Parsing strategy configuration.

A ``ParsingConfig`` is resolved once per parsing session and stays immutable
for that session. Values come from three layers, highest precedence first:
environment (``Settings`` fields that were supplied), stored per-user
settings (through a ``SettingsRepository``), compiled defaults.
"""

import logging
import threading
from typing import Protocol, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from docparse.shared.config import Settings, StrategyName
from docparse.shared.errors import ConfigurationError

logger = logging.getLogger(__name__)

TRADITIONAL = "traditional"

T = TypeVar("T")


class StrategyProfile(BaseModel):
    """Compiled defaults for one named strategy."""

    model_config = ConfigDict(frozen=True)

    name: StrategyName
    description: str
    confidence_threshold: float = Field(ge=0, le=1)
    max_cost_per_invoice: float = Field(ge=0)


STRATEGY_PROFILES: dict[str, StrategyProfile] = {
    "model-primary": StrategyProfile(
        name="model-primary",
        description="Model-backed providers first, heuristics as fallback",
        confidence_threshold=0.8,
        max_cost_per_invoice=0.10,
    ),
    "heuristic-primary": StrategyProfile(
        name="heuristic-primary",
        description="Regex and learned patterns first, providers as fallback",
        confidence_threshold=0.7,
        max_cost_per_invoice=0.02,
    ),
    "hybrid": StrategyProfile(
        name="hybrid",
        description="Best provider, then heuristics, then remaining providers",
        confidence_threshold=0.85,
        max_cost_per_invoice=0.05,
    ),
    "cost-optimized": StrategyProfile(
        name="cost-optimized",
        description="Heuristics first, then providers from cheapest to most expensive",
        confidence_threshold=0.6,
        max_cost_per_invoice=0.01,
    ),
    "accuracy-optimized": StrategyProfile(
        name="accuracy-optimized",
        description="Every provider before heuristics, highest threshold",
        confidence_threshold=0.95,
        max_cost_per_invoice=0.20,
    ),
}

DEFAULT_STRATEGY: StrategyName = "hybrid"
DEFAULT_MAX_COST_PER_DOCUMENT = 0.10
DEFAULT_DAILY_COST_LIMIT = 10.0


class ProviderSpec(BaseModel):
    """Declared capabilities of one provider adapter.

    Attributes:
        name: Provider identifier ('anthropic', 'gemini', 'openai', 'ollama')
        model: Model name sent to the backend
        priority: Lower runs earlier when no explicit order is configured
        cost_per_1k_tokens: Declared unit cost in USD
        max_tokens: Output token allowance per request
        timeout_seconds: Bound on one request
        retry_attempts: Retries for transient transport faults
    """

    model_config = ConfigDict(frozen=True)

    name: str
    model: str
    priority: int
    cost_per_1k_tokens: float = Field(ge=0)
    max_tokens: int = 4000
    timeout_seconds: float = 30.0
    retry_attempts: int = 2


class UserParsingSettings(BaseModel):
    """Per-user parsing preferences as stored by the settings collaborator."""

    strategy: StrategyName | None = None
    provider_order: list[str] | None = None
    confidence_threshold: float | None = Field(default=None, ge=0, le=1)
    max_cost_per_document: float | None = Field(default=None, ge=0)
    daily_cost_limit: float | None = Field(default=None, ge=0)
    enable_fallback: bool | None = None
    collect_training_data: bool | None = None


class SettingsRepository(Protocol):
    """Narrow interface onto stored per-user settings."""

    def get_user_settings(self, user_id: str) -> UserParsingSettings | None: ...


class InMemorySettingsRepository:
    """Thread-safe dict-backed settings repository."""

    def __init__(self) -> None:
        self._settings: dict[str, UserParsingSettings] = {}
        self._lock = threading.Lock()

    def get_user_settings(self, user_id: str) -> UserParsingSettings | None:
        with self._lock:
            return self._settings.get(user_id)

    def save_user_settings(self, user_id: str, settings: UserParsingSettings) -> None:
        with self._lock:
            self._settings[user_id] = settings


class ParsingConfig(BaseModel):
    """Resolved, immutable configuration for one parsing session."""

    model_config = ConfigDict(frozen=True)

    strategy: StrategyName
    chain: tuple[str, ...]
    providers: tuple[ProviderSpec, ...]
    confidence_threshold: float = Field(ge=0, le=1)
    max_cost_per_invoice: float = Field(ge=0)
    max_cost_per_document: float = Field(ge=0)
    daily_cost_limit: float = Field(ge=0)
    enable_fallback: bool = True
    collect_training_data: bool = True

    def provider(self, name: str) -> ProviderSpec | None:
        for spec in self.providers:
            if spec.name == name:
                return spec
        return None


def default_provider_specs(settings: Settings) -> dict[str, ProviderSpec]:
    """Declared specs for every known provider, keyed by name."""
    timeout = settings.provider_timeout_seconds
    retries = settings.provider_max_retries
    return {
        "anthropic": ProviderSpec(
            name="anthropic",
            model=settings.anthropic_model,
            priority=1,
            cost_per_1k_tokens=0.003,
            timeout_seconds=timeout,
            retry_attempts=retries,
        ),
        "gemini": ProviderSpec(
            name="gemini",
            model=settings.gemini_model,
            priority=2,
            cost_per_1k_tokens=0.00015,
            timeout_seconds=timeout,
            retry_attempts=retries,
        ),
        "openai": ProviderSpec(
            name="openai",
            model=settings.openai_model,
            priority=3,
            cost_per_1k_tokens=0.00015,
            timeout_seconds=timeout,
            retry_attempts=retries,
        ),
        "ollama": ProviderSpec(
            name="ollama",
            model=settings.ollama_model,
            priority=4,
            cost_per_1k_tokens=0.0,
            max_tokens=1024,
            # Local inference is slower than hosted APIs
            timeout_seconds=max(timeout, 120.0),
            retry_attempts=retries,
        ),
    }


def enabled_provider_names(settings: Settings) -> set[str]:
    """Providers whose credentials or toggles are present."""
    enabled = set()
    if settings.anthropic_api_key:
        enabled.add("anthropic")
    if settings.gemini_api_key:
        enabled.add("gemini")
    if settings.openai_api_key:
        enabled.add("openai")
    if settings.ollama_enabled:
        enabled.add("ollama")
    return enabled


def build_fallback_chain(strategy: StrategyName, providers: list[ProviderSpec]) -> list[str]:
    """Compose the ordered chain of extractor identifiers for a strategy.

    Args:
        strategy: Strategy name
        providers: Enabled providers, already in preference order

    Returns:
        Extractor identifiers; 'traditional' is always present exactly once
    """
    names = [spec.name for spec in providers]

    if strategy == "model-primary":
        return [*names, TRADITIONAL]
    if strategy == "heuristic-primary":
        return [TRADITIONAL, *names]
    if strategy == "hybrid":
        if not names:
            return [TRADITIONAL]
        return [names[0], TRADITIONAL, *names[1:]]
    if strategy == "cost-optimized":
        cheapest = sorted(providers, key=lambda spec: (spec.cost_per_1k_tokens, spec.priority))
        return [TRADITIONAL, *[spec.name for spec in cheapest]]
    if strategy == "accuracy-optimized":
        return [*names, TRADITIONAL]

    raise ConfigurationError(f"Unknown parsing strategy: '{strategy}'")


def _layered(env_value: T | None, stored_value: T | None, default: T) -> T:
    if env_value is not None:
        return env_value
    if stored_value is not None:
        return stored_value
    return default


def _order_providers(
    specs: dict[str, ProviderSpec], enabled: set[str], order: list[str] | None
) -> list[ProviderSpec]:
    if order:
        unknown = [name for name in order if name not in specs]
        if unknown:
            raise ConfigurationError(
                f"Unknown provider(s) in provider order: {', '.join(unknown)}",
                {"available": sorted(specs)},
            )
    ranked = sorted((specs[name] for name in enabled), key=lambda spec: spec.priority)
    if not order:
        return ranked

    listed = [specs[name] for name in order if name in enabled]
    rest = [spec for spec in ranked if spec.name not in order]
    return listed + rest


def resolve_parsing_config(
    settings: Settings, stored: UserParsingSettings | None = None
) -> ParsingConfig:
    """Resolve the session configuration.

    Args:
        settings: Application settings (environment layer)
        stored: Per-user settings from the settings collaborator, if any

    Returns:
        Frozen ParsingConfig

    Raises:
        ConfigurationError: If names or limits are invalid
    """
    stored = stored or UserParsingSettings()

    strategy: StrategyName = _layered(
        settings.parsing_strategy, stored.strategy, DEFAULT_STRATEGY
    )
    if strategy not in STRATEGY_PROFILES:
        raise ConfigurationError(f"Unknown parsing strategy: '{strategy}'")

    specs = default_provider_specs(settings)
    order = _layered(settings.provider_order, stored.provider_order, None)
    providers = _order_providers(specs, enabled_provider_names(settings), order)

    if not providers and strategy != "heuristic-primary":
        logger.info(
            f"No extraction providers enabled; falling back from '{strategy}' "
            f"to 'heuristic-primary'"
        )
        strategy = "heuristic-primary"

    profile = STRATEGY_PROFILES[strategy]
    threshold = _layered(
        settings.confidence_threshold, stored.confidence_threshold, profile.confidence_threshold
    )
    max_per_document = _layered(
        settings.max_cost_per_document,
        stored.max_cost_per_document,
        DEFAULT_MAX_COST_PER_DOCUMENT,
    )
    daily_limit = _layered(
        settings.daily_cost_limit, stored.daily_cost_limit, DEFAULT_DAILY_COST_LIMIT
    )

    if not 0 <= threshold <= 1:
        raise ConfigurationError(f"Confidence threshold must be within [0, 1], got {threshold}")
    if max_per_document < 0 or daily_limit < 0:
        raise ConfigurationError("Cost limits must not be negative")

    return ParsingConfig(
        strategy=strategy,
        chain=tuple(build_fallback_chain(strategy, providers)),
        providers=tuple(providers),
        confidence_threshold=threshold,
        max_cost_per_invoice=min(profile.max_cost_per_invoice, max_per_document),
        max_cost_per_document=max_per_document,
        daily_cost_limit=daily_limit,
        enable_fallback=_layered(settings.enable_fallback, stored.enable_fallback, True),
        collect_training_data=_layered(
            settings.collect_training_data, stored.collect_training_data, True
        ),
    )


def load_parsing_config(
    settings: Settings,
    repository: SettingsRepository | None = None,
    user_id: str | None = None,
) -> ParsingConfig:
    """Fetch stored settings for a user (if any) and resolve the session config."""
    stored = None
    if repository is not None and user_id:
        stored = repository.get_user_settings(user_id)
    return resolve_parsing_config(settings, stored)
