"""Factory for creating provider adapters from the resolved parsing config.

The set of providers is closed: each name maps to exactly one adapter class
and an unknown name is a configuration error, never a silent no-op.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging
import threading
import time
from types import MappingProxyType

from docparse.extraction.anthropic_provider import AnthropicProvider
from docparse.extraction.base import ProviderAdapter
from docparse.extraction.gemini_provider import GeminiProvider
from docparse.extraction.ollama_provider import OllamaProvider
from docparse.extraction.openai_provider import OpenAIProvider
from docparse.shared.config import Settings
from docparse.shared.errors import ConfigurationError
from docparse.shared.parsing_config import ParsingConfig, ProviderSpec

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Mapping of provider names to their adapter classes."""

    _providers = MappingProxyType(
        {
            "anthropic": AnthropicProvider,
            "gemini": GeminiProvider,
            "openai": OpenAIProvider,
            "ollama": OllamaProvider,
        }
    )

    @classmethod
    def get_provider_class(cls, name: str) -> type[ProviderAdapter]:
        """Get adapter class by name.

        Raises:
            ConfigurationError: If the provider is not one of the known variants
        """
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ConfigurationError(
                f"Unknown extraction provider: '{name}'. Available providers: {available}"
            )
        provider_class: type[ProviderAdapter] = cls._providers[name]
        return provider_class

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


def create_provider(settings: Settings, spec: ProviderSpec) -> ProviderAdapter:
    """Instantiate the adapter for one provider spec."""
    provider_class = ProviderRegistry.get_provider_class(spec.name)
    return provider_class(settings, spec)


def create_provider_adapters(
    settings: Settings, config: ParsingConfig
) -> dict[str, ProviderAdapter]:
    """Create an adapter for every provider in the resolved config.

    Providers that report themselves unavailable are left out of the
    returned mapping with a warning; the orchestrator then skips their
    chain elements.

    Args:
        settings: Application settings with credentials
        config: Resolved parsing config

    Returns:
        Adapters keyed by provider name

    Raises:
        ConfigurationError: If a configured provider is unknown
    """
    adapters: dict[str, ProviderAdapter] = {}
    for spec in config.providers:
        adapter = create_provider(settings, spec)
        if not adapter.is_available():
            logger.warning(
                f"Extraction provider '{spec.name}' is not available. "
                f"Check configuration (e.g., API keys, server reachability)."
            )
            continue
        adapters[spec.name] = adapter
        logger.info(f"Created extraction provider: {spec.name}")
    return adapters


class ProviderPool:
    """Adapters shared by every parsing session in a process.

    Adapters are keyed by their resolved ``ProviderSpec``, so sessions that
    resolve the same provider settings reuse one client and its connection
    pool. Availability (which may contact a server) is re-checked at most once
    per ``availability_ttl`` seconds.
    """

    def __init__(self, settings: Settings, availability_ttl: float = 60.0) -> None:
        self.settings = settings
        self.availability_ttl = availability_ttl
        self._adapters: dict[ProviderSpec, ProviderAdapter] = {}
        self._availability: dict[ProviderSpec, tuple[bool, float]] = {}
        self._lock = threading.Lock()

    def adapters_for(self, config: ParsingConfig) -> dict[str, ProviderAdapter]:
        """Available adapters for a resolved config, keyed by provider name.

        Raises:
            ConfigurationError: If a configured provider is unknown
        """
        adapters: dict[str, ProviderAdapter] = {}
        with self._lock:
            for spec in config.providers:
                adapter = self._adapters.get(spec)
                if adapter is None:
                    adapter = create_provider(self.settings, spec)
                    self._adapters[spec] = adapter
                    logger.info(f"Created extraction provider: {spec.name}")
                if self._is_available(spec, adapter):
                    adapters[spec.name] = adapter
        return adapters

    def _is_available(self, spec: ProviderSpec, adapter: ProviderAdapter) -> bool:
        now = time.monotonic()
        cached = self._availability.get(spec)
        if cached is not None and now - cached[1] < self.availability_ttl:
            return cached[0]
        available = adapter.is_available()
        if not available:
            logger.warning(f"Extraction provider '{spec.name}' is not available.")
        self._availability[spec] = (available, now)
        return available

    def close(self) -> None:
        """Close every adapter's client."""
        with self._lock:
            for adapter in self._adapters.values():
                adapter.close()
            self._adapters.clear()
            self._availability.clear()
