"""Exception hierarchy for the pipeline.

Ordinary bad input never raises: extractors and adapters report failure
through result objects. These exceptions cover unreadable buffers,
provider transport faults, invalid configuration and storage faults.
"""

from typing import Any


class DocParseError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ExtractionFailure(DocParseError):
    """No readable text could be obtained from a document buffer."""


class AdapterUnavailable(DocParseError):
    """A provider could not serve this call (timeout, auth, transport)."""

    def __init__(
        self, provider: str, message: str, details: dict[str, Any] | None = None
    ) -> None:
        self.provider = provider
        super().__init__(f"{provider}: {message}", details)


class ConfigurationError(DocParseError):
    """Invalid parsing configuration (programmer or deployment error)."""


class PatternStoreError(DocParseError):
    """Durable storage for training data is unavailable or corrupt."""
