"""Cost estimate data models.

Totals are computed from children: a line item's total from its cost
splits and percentages, a trade's totals from its line items, and the
estimate's grand total from its trades. No total can be set independently.
"""

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, computed_field

EstimateSource = Literal["pdf", "csv", "xlsx", "text", "provider"]


def _cents(value: float) -> float:
    return round(value, 2)


class EstimateLineItem(BaseModel):
    """One costed line within a trade.

    The base cost is the sum of the material, labor and equipment splits;
    markup and overhead percentages are applied on top of it.
    """

    model_config = ConfigDict(frozen=True)

    description: str
    quantity: float | None = None
    unit: str | None = None
    unit_price: float | None = None
    material_cost: float = Field(0.0, ge=0)
    labor_cost: float = Field(0.0, ge=0)
    equipment_cost: float = Field(0.0, ge=0)
    markup_percentage: float = Field(0.0, ge=0)
    overhead_percentage: float = Field(0.0, ge=0)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def base_cost(self) -> float:
        return _cents(self.material_cost + self.labor_cost + self.equipment_cost)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total(self) -> float:
        uplift = 1 + (self.markup_percentage + self.overhead_percentage) / 100
        return _cents(self.base_cost * uplift)


class EstimateTrade(BaseModel):
    """A named cost category grouping line items."""

    model_config = ConfigDict(frozen=True)

    name: str
    category: str | None = None
    line_items: list[EstimateLineItem] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def material_cost(self) -> float:
        return _cents(sum(item.material_cost for item in self.line_items))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def labor_cost(self) -> float:
        return _cents(sum(item.labor_cost for item in self.line_items))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def equipment_cost(self) -> float:
        return _cents(sum(item.equipment_cost for item in self.line_items))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_cost(self) -> float:
        return _cents(sum(item.total for item in self.line_items))


class EstimateDiagnostic(BaseModel):
    """A reconciliation finding that points at an incomplete extraction."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["unmatched_amount", "total_mismatch", "skipped_row", "provider"]
    message: str
    amount: float | None = None


class ParsedEstimate(BaseModel):
    """A cost estimate grouped into trades."""

    model_config = ConfigDict(frozen=True)

    project_name: str | None = None
    currency: str = "NZD"
    trades: list[EstimateTrade] = Field(default_factory=list)
    diagnostics: list[EstimateDiagnostic] = Field(default_factory=list)
    confidence: float = Field(0.0, ge=0, le=1)
    source: EstimateSource = "text"
    filename: str | None = None
    parsed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    detection_pass: str | None = Field(
        None, description="Table detection pass or provider that produced the rows"
    )
    stated_total: float | None = Field(
        None, description="Grand total printed in the document, if any"
    )

    @computed_field  # type: ignore[prop-decorator]
    @property
    def grand_total(self) -> float:
        return _cents(sum(trade.total_cost for trade in self.trades))

    @computed_field  # type: ignore[prop-decorator]
    @property
    def line_item_count(self) -> int:
        return sum(len(trade.line_items) for trade in self.trades)

    def trade(self, name: str) -> EstimateTrade | None:
        for trade in self.trades:
            if trade.name == name:
                return trade
        return None
