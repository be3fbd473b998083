"""Training data models for the pattern learning store."""

import uuid
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(UTC)


class TrainingExample(BaseModel):
    """An immutable user correction.

    Attributes:
        id: Example identifier
        text: Raw page text the correction applies to
        parsed_values: Values the pipeline produced
        corrected_values: Values the user confirmed or corrected
        created_at: When the correction was recorded
        user_id: Caller identity, if known
        invoice_type: Optional document label (e.g. supplier name)
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    text: str
    parsed_values: dict[str, Any] = Field(default_factory=dict)
    corrected_values: dict[str, Any]
    created_at: datetime = Field(default_factory=_utcnow)
    user_id: str | None = None
    invoice_type: str | None = None


class LearnedPattern(BaseModel):
    """A context-anchored matcher for one field.

    ``pattern`` is a regex source with exactly one capture group holding the
    field value. Patterns are keyed by (field_name, pattern).
    """

    field_name: str
    pattern: str
    confidence: float = Field(ge=0, le=1)
    examples: list[str] = Field(default_factory=list)
    context: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.field_name, self.pattern)


class TrainingData(BaseModel):
    """Everything the durable backend persists."""

    examples: list[TrainingExample] = Field(default_factory=list)
    patterns: list[LearnedPattern] = Field(default_factory=list)


class TrainingStats(BaseModel):
    """Summary of the stored training corpus."""

    total_examples: int = 0
    field_counts: dict[str, int] = Field(default_factory=dict)
    pattern_count: int = 0
    invoice_types: list[str] = Field(default_factory=list)
