"""Cost estimate parser.

Turns table rows (from PDF text, CSV or XLSX) or a provider payload into a
``ParsedEstimate`` grouped by trade. Totals are never copied from the
document: they are recomputed from the line items, and whatever the
document states is reconciled against them. Large currency amounts in the
source that no line item accounts for become diagnostics.
"""

import csv
import io
import logging
import re
import zipfile
from collections.abc import Sequence
from pathlib import PurePath
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from docparse.estimates.schema import (
    EstimateDiagnostic,
    EstimateLineItem,
    EstimateSource,
    EstimateTrade,
    ParsedEstimate,
)
from docparse.estimates.table import (
    MIN_VIABLE_ROWS,
    TableDetection,
    TableDetector,
    TableRow,
    clean_trade_name,
)
from docparse.extraction.normalizers import parse_amount
from docparse.shared.errors import ExtractionFailure

logger = logging.getLogger(__name__)

LARGE_AMOUNT_THRESHOLD = 5000.0
RECONCILE_TOLERANCE = 0.01
DIAGNOSTIC_PENALTY = 0.1
MIN_CONFIDENCE = 0.1
DEFAULT_TRADE = "General"

PASS_CONFIDENCE = {
    "header": 0.9,
    "currency-proportion": 0.75,
    "line-based": 0.7,
    "known-category": 0.6,
    "generic": 0.5,
}
CASCADE_PASSES = frozenset({"line-based", "known-category", "generic"})

# First match wins, so multi-word keywords come before their parts
TRADE_KEYWORDS: tuple[tuple[str, str], ...] = (
    ("labour only", "Labor"),
    ("labor only", "Labor"),
    ("site prep", "Site Work"),
    ("tip fee", "Site Work"),
    ("shower glass", "Windows & Doors"),
    ("plant/hire", "Equipment"),
    ("concrete", "Concrete & Foundations"),
    ("plumb", "Plumbing"),
    ("electric", "Electrical"),
    ("roof", "Roofing"),
    ("spouting", "Roofing"),
    ("downpipe", "Roofing"),
    ("alumin", "Windows & Doors"),
    ("joinery", "Windows & Doors"),
    ("door", "Windows & Doors"),
    ("glass", "Windows & Doors"),
    ("window", "Windows & Doors"),
    ("plaster", "Plastering"),
    ("tiler", "Tiling"),
    ("tiling", "Tiling"),
    ("tiles", "Tiling"),
    ("paint", "Painting"),
    ("floor", "Flooring"),
    ("framing", "Framing"),
    ("insulation", "Insulation"),
    ("hvac", "HVAC"),
    ("heating", "HVAC"),
    ("kitchen", "Kitchen & Bathrooms"),
    ("bathroom", "Kitchen & Bathrooms"),
    ("cabinet", "Kitchen & Bathrooms"),
    ("landscap", "Landscaping"),
    ("scaffold", "Site Work"),
    ("excavat", "Site Work"),
    ("demolition", "Demolition"),
    ("labour", "Labor"),
    ("labor", "Labor"),
    ("material", "Materials"),
    ("plant", "Equipment"),
    ("hire", "Equipment"),
    ("margin", "Project Costs"),
    ("p&g", "Project Costs"),
    ("profit", "Project Costs"),
)

EQUIPMENT_KEYWORDS = ("equipment", "plant", "hire", "pump", "scaffold", "crane", "machinery")
MATERIAL_KEYWORDS = (
    "material",
    "supplies",
    "timber",
    "steel",
    "concrete",
    "insulation",
    "tiles",
    "paint",
    "fixtures",
)

# Money-looking tokens only: thousands separators or cents
_MONEY_TOKEN_RE = re.compile(r"(?<![\d.,])(\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+\.\d{2})(?![\d,])")


def trade_for(description: str, default: str = DEFAULT_TRADE) -> str:
    """Map a line description onto a standard trade name."""
    lowered = description.lower()
    for keyword, trade in TRADE_KEYWORDS:
        if keyword in lowered:
            return trade
    return default


def cost_type_for(description: str) -> str:
    """Which cost split a lump-sum amount belongs to."""
    lowered = description.lower()
    if any(keyword in lowered for keyword in EQUIPMENT_KEYWORDS):
        return "equipment"
    if any(keyword in lowered for keyword in MATERIAL_KEYWORDS):
        return "material"
    return "labor"


def _title(name: str) -> str:
    return " ".join(word[:1].upper() + word[1:].lower() for word in name.split())


def _key(payload: dict[str, Any], *names: str) -> Any:
    for name in names:
        if payload.get(name) not in (None, ""):
            return payload[name]
    return None


def _objects(value: Any) -> list[dict[str, Any]]:
    """JSON objects in a payload list; anything else yields nothing."""
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


class EstimateParser:
    """Builds ``ParsedEstimate`` objects from text, spreadsheets or model output."""

    def __init__(
        self,
        currency: str = "NZD",
        min_viable_rows: int = MIN_VIABLE_ROWS,
        large_amount_threshold: float = LARGE_AMOUNT_THRESHOLD,
    ) -> None:
        self.currency = currency
        self.large_amount_threshold = large_amount_threshold
        self.detector = TableDetector(min_viable_rows=min_viable_rows)

    def parse_text(
        self, text: str, filename: str | None = None, source: EstimateSource = "text"
    ) -> ParsedEstimate:
        """Parse estimate text through the table detection passes."""
        detection = self.detector.detect(text)
        logger.info(
            f"Estimate detection for {filename or 'text'}: pass={detection.detection_pass}, "
            f"rows={len(detection.rows)}"
        )
        return self._build(detection, text, filename, source)

    def parse_rows(
        self,
        rows: Sequence[Sequence[Any]],
        filename: str | None = None,
        source: EstimateSource = "csv",
    ) -> ParsedEstimate:
        """Parse pre-split rows (CSV records or worksheet rows)."""
        detection = self.detector.detect_rows(rows)
        text = "\n".join(
            "  ".join(str(cell) for cell in row if cell not in (None, "")) for row in rows
        )
        return self._build(detection, text, filename, source)

    def parse_csv(self, content: bytes | str, filename: str | None = None) -> ParsedEstimate:
        if isinstance(content, bytes):
            content = content.decode("utf-8-sig", errors="replace")
        rows = list(csv.reader(io.StringIO(content)))
        return self.parse_rows(rows, filename, "csv")

    def parse_xlsx(self, buffer: bytes, filename: str | None = None) -> ParsedEstimate:
        """Parse the first worksheet of an XLSX workbook.

        Raises:
            ExtractionFailure: If the buffer is not a readable workbook
        """
        try:
            workbook = load_workbook(io.BytesIO(buffer), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise ExtractionFailure(
                f"Unreadable spreadsheet: {e}", details={"filename": filename}
            ) from e

        try:
            sheet = workbook.worksheets[0]
            rows = [list(row) for row in sheet.iter_rows(values_only=True)]
        finally:
            workbook.close()
        return self.parse_rows(rows, filename, "xlsx")

    def estimate_from_payload(
        self,
        payload: dict[str, Any],
        filename: str | None = None,
        confidence: float = 0.0,
        provider: str | None = None,
        source_text: str | None = None,
    ) -> ParsedEstimate:
        """Build an estimate from a provider's JSON payload.

        Accepts the ``trades`` shape requested by the estimate prompt and the
        flat ``invoices`` shape (``vendorName`` plus ``amount``) that models
        sometimes fall back to.
        """
        rows: list[TableRow] = []
        for trade in _objects(payload.get("trades")):
            name = str(_key(trade, "name", "trade", "tradeName") or "").strip() or None
            for item in _objects(_key(trade, "line_items", "lineItems", "items")):
                if (row := self._payload_row(item, name)) is not None:
                    rows.append(row)

        for invoice in _objects(payload.get("invoices")):
            description = str(_key(invoice, "vendorName", "vendor_name", "description") or "")
            total = parse_amount(_key(invoice, "amount", "total"))
            if description.strip() and total is not None and total > 0:
                rows.append(
                    TableRow(description=clean_trade_name(description), quantity=1, total=total)
                )

        detection = TableDetection(rows=rows, detection_pass=provider or "provider")
        estimate = self._build(detection, source_text or "", filename, "provider")
        project_name = _key(payload, "project_name", "projectName")
        penalty = DIAGNOSTIC_PENALTY * len(estimate.diagnostics)
        return estimate.model_copy(
            update={
                "project_name": str(project_name) if project_name else estimate.project_name,
                "confidence": max(min(confidence, 1.0) - penalty, MIN_CONFIDENCE)
                if estimate.trades
                else 0.0,
            }
        )

    @staticmethod
    def _payload_row(item: dict[str, Any], trade: str | None) -> TableRow | None:
        description = str(_key(item, "description", "name") or trade or "").strip()
        if not description:
            return None
        row = TableRow(
            description=description,
            trade=trade,
            quantity=parse_amount(item.get("quantity")),
            unit=str(item["unit"]) if item.get("unit") else None,
            unit_price=parse_amount(_key(item, "unit_price", "unitPrice")),
            material=max(parse_amount(_key(item, "material_cost", "materialCost")) or 0.0, 0.0),
            labor=max(parse_amount(_key(item, "labor_cost", "laborCost")) or 0.0, 0.0),
            equipment=max(parse_amount(_key(item, "equipment_cost", "equipmentCost")) or 0.0, 0.0),
            markup=max(
                parse_amount(_key(item, "markup_percentage", "markupPercentage")) or 0.0, 0.0
            ),
            overhead=max(
                parse_amount(_key(item, "overhead_percentage", "overheadPercentage")) or 0.0, 0.0
            ),
            total=parse_amount(item.get("total")),
        )
        return row if row.amounts() else None

    def _build(
        self,
        detection: TableDetection,
        text: str,
        filename: str | None,
        source: EstimateSource,
    ) -> ParsedEstimate:
        diagnostics: list[EstimateDiagnostic] = [
            EstimateDiagnostic(
                kind="skipped_row",
                message=f"Row '{description}' skipped: amount exceeds plausible line value",
            )
            for description in detection.skipped
        ]

        grouped: dict[str, list[EstimateLineItem]] = {}
        for row in detection.rows:
            item, mismatch = self._line_item(row)
            if mismatch is not None:
                diagnostics.append(mismatch)
            grouped.setdefault(self._trade_name(row, detection.detection_pass), []).append(item)

        trades = [EstimateTrade(name=name, line_items=items) for name, items in grouped.items()]
        estimate = ParsedEstimate(
            project_name=PurePath(filename).stem if filename else None,
            currency=self.currency,
            trades=trades,
            source=source,
            filename=filename,
            detection_pass=detection.detection_pass,
            stated_total=detection.summary.get("net", detection.summary.get("total")),
        )

        diagnostics.extend(self._reconcile(estimate, detection, text))
        for diagnostic in diagnostics:
            logger.warning(f"Estimate {filename or 'text'}: {diagnostic.message}")

        confidence = 0.0
        if trades:
            base = PASS_CONFIDENCE.get(detection.detection_pass or "", 0.0)
            confidence = max(base - DIAGNOSTIC_PENALTY * len(diagnostics), MIN_CONFIDENCE)
        return estimate.model_copy(update={"diagnostics": diagnostics, "confidence": confidence})

    @staticmethod
    def _trade_name(row: TableRow, detection_pass: str | None) -> str:
        if row.trade:
            return row.trade.strip()
        if detection_pass in CASCADE_PASSES:
            return trade_for(row.description, default=_title(row.description))
        return trade_for(row.description)

    @staticmethod
    def _line_item(row: TableRow) -> tuple[EstimateLineItem, EstimateDiagnostic | None]:
        """Convert a row, keeping splits when present.

        A row with only a total puts it in a single split chosen from the
        description; its percentages are dropped because the stated total
        already includes them.
        """
        common = {
            "description": row.description,
            "quantity": row.quantity,
            "unit": row.unit,
            "unit_price": row.unit_price,
        }
        if row.material or row.labor or row.equipment:
            item = EstimateLineItem(
                **common,
                material_cost=row.material,
                labor_cost=row.labor,
                equipment_cost=row.equipment,
                markup_percentage=row.markup,
                overhead_percentage=row.overhead,
            )
            if row.total is not None and abs(row.total - item.total) > RECONCILE_TOLERANCE:
                return item, EstimateDiagnostic(
                    kind="total_mismatch",
                    message=(
                        f"Row '{row.description}' states {row.total:,.2f} "
                        f"but its cost splits compute {item.total:,.2f}"
                    ),
                    amount=row.total,
                )
            return item, None

        total = row.total or 0.0
        split = cost_type_for(f"{row.trade or ''} {row.description}")
        return EstimateLineItem(**common, **{f"{split}_cost": total}), None

    def _reconcile(
        self, estimate: ParsedEstimate, detection: TableDetection, text: str
    ) -> list[EstimateDiagnostic]:
        diagnostics = []

        if estimate.stated_total is not None and estimate.trades:
            candidates = list(detection.summary.values())
            if not any(
                abs(value - estimate.grand_total) <= RECONCILE_TOLERANCE for value in candidates
            ):
                diagnostics.append(
                    EstimateDiagnostic(
                        kind="total_mismatch",
                        message=(
                            f"Document states {estimate.stated_total:,.2f} but line items "
                            f"sum to {estimate.grand_total:,.2f}"
                        ),
                        amount=estimate.stated_total,
                    )
                )

        accounted = {estimate.grand_total, *detection.summary.values()}
        for row in detection.rows:
            accounted.update(row.amounts())
        for trade in estimate.trades:
            accounted.add(trade.total_cost)
            accounted.update(item.total for item in trade.line_items)

        reported: set[float] = set()
        for match in _MONEY_TOKEN_RE.finditer(text):
            amount = parse_amount(match.group(1))
            if amount is None or amount < self.large_amount_threshold or amount in reported:
                continue
            if any(abs(amount - known) <= RECONCILE_TOLERANCE for known in accounted):
                continue
            reported.add(amount)
            diagnostics.append(
                EstimateDiagnostic(
                    kind="unmatched_amount",
                    message=f"Amount {amount:,.2f} in the source was not matched to any line item",
                    amount=amount,
                )
            )
        return diagnostics
