"""Pattern learning store.

Turns user corrections into context-anchored regex patterns and applies the
highest-confidence pattern for a field before generic heuristics run.
Reads go through a short TTL cache; writes are serialized with a lock so
concurrent corrections never lose a confidence increment.
"""

import logging
import re
import threading
import time
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime
from functools import lru_cache

from docparse.learning.backends import TrainingBackend, create_training_backend
from docparse.learning.models import LearnedPattern, TrainingData, TrainingExample, TrainingStats
from docparse.learning.synthesis import synthesize_patterns
from docparse.shared.config import Settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=512)
def _compile(pattern: str) -> re.Pattern[str] | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning(f"Skipping invalid learned pattern {pattern!r}: {e}")
        return None


class PatternStore:
    """Durable store of training examples and learned patterns."""

    def __init__(
        self,
        backend: TrainingBackend,
        cache_ttl_seconds: float = 300.0,
        initial_confidence: float = 0.7,
        confidence_increment: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the store.

        Args:
            backend: Durable backend for the training corpus
            cache_ttl_seconds: How long a loaded corpus is reused
            initial_confidence: Confidence of a newly learned pattern
            confidence_increment: Added each time a pattern recurs (capped at 1.0)
            clock: Monotonic clock, injectable for tests
        """
        self.backend = backend
        self.cache_ttl_seconds = cache_ttl_seconds
        self.initial_confidence = initial_confidence
        self.confidence_increment = confidence_increment
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: TrainingData | None = None
        self._cached_at = 0.0

    def _snapshot(self) -> TrainingData:
        with self._lock:
            now = self._clock()
            if self._cache is None or now - self._cached_at > self.cache_ttl_seconds:
                self._cache = self.backend.load()
                self._cached_at = now
            return self._cache

    def invalidate(self) -> None:
        with self._lock:
            self._cache = None

    def learn(self, example: TrainingExample) -> list[LearnedPattern]:
        """Derive patterns from one correction and persist them.

        Args:
            example: The user correction

        Returns:
            Patterns created or reinforced by this example

        Raises:
            PatternStoreError: If the backend cannot be read or written
        """
        with self._lock:
            data = self.backend.load()
            patterns = {pattern.key: pattern for pattern in data.patterns}
            touched: dict[tuple[str, str], LearnedPattern] = {}
            now = datetime.now(UTC)

            for field_name, value in example.corrected_values.items():
                if value is None or value == "":
                    continue
                for candidate in synthesize_patterns(field_name, example.text, value):
                    key = (field_name, candidate.pattern)
                    if key in touched:
                        continue
                    existing = patterns.get(key)
                    if existing is not None:
                        updated = existing.model_copy(
                            update={
                                "confidence": min(
                                    1.0,
                                    round(existing.confidence + self.confidence_increment, 6),
                                ),
                                "examples": sorted({*existing.examples, str(value)}),
                                "updated_at": now,
                            }
                        )
                    else:
                        updated = LearnedPattern(
                            field_name=field_name,
                            pattern=candidate.pattern,
                            confidence=self.initial_confidence,
                            examples=[str(value)],
                            context=candidate.context,
                            created_at=now,
                            updated_at=now,
                        )
                    patterns[key] = updated
                    touched[key] = updated

            data = TrainingData(
                examples=[*data.examples, example], patterns=list(patterns.values())
            )
            self.backend.save(data)
            self._cache = data
            self._cached_at = self._clock()

        logger.info(
            f"Learned {len(touched)} pattern(s) from example {example.id} "
            f"({len(example.corrected_values)} corrected field(s))"
        )
        return list(touched.values())

    def patterns_for(self, field_name: str) -> list[LearnedPattern]:
        """Patterns for a field, highest confidence first."""
        patterns = [p for p in self._snapshot().patterns if p.field_name == field_name]
        return sorted(patterns, key=lambda p: (-p.confidence, p.pattern))

    def best_pattern(self, field_name: str) -> LearnedPattern | None:
        patterns = self.patterns_for(field_name)
        return patterns[0] if patterns else None

    def apply(self, page_text: str, field_name: str) -> str | None:
        """Return the value captured by the first matching learned pattern."""
        if not page_text:
            return None
        for learned in self.patterns_for(field_name):
            compiled = _compile(learned.pattern)
            if compiled is None:
                continue
            match = compiled.search(page_text)
            if match and match.group(1).strip():
                return match.group(1).strip()
        return None

    def examples(self) -> list[TrainingExample]:
        return list(self._snapshot().examples)

    def stats(self) -> TrainingStats:
        data = self._snapshot()
        field_counts: Counter[str] = Counter()
        for example in data.examples:
            field_counts.update(
                name for name, value in example.corrected_values.items() if value not in (None, "")
            )
        invoice_types = sorted({e.invoice_type for e in data.examples if e.invoice_type})
        return TrainingStats(
            total_examples=len(data.examples),
            field_counts=dict(field_counts),
            pattern_count=len(data.patterns),
            invoice_types=invoice_types,
        )


def create_pattern_store(settings: Settings) -> PatternStore:
    """Build a store on the backend and tuning selected by settings."""
    return PatternStore(
        create_training_backend(settings),
        cache_ttl_seconds=settings.pattern_cache_ttl_seconds,
        initial_confidence=settings.pattern_initial_confidence,
        confidence_increment=settings.pattern_confidence_increment,
    )
