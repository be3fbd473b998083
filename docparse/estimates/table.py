"""Multi-pass table detection for cost estimates.

Pass 1 maps a header row through a synonym table ("material cost" ≈
"materials" ≈ "mat cost") and reads the rows below it. Pass 2 runs when no
header exists and infers rows from the share of cells that look like money.
Pass 3 handles text whose table segmentation collapsed (often one long
line) with a regex cascade: line-based "name amount $", a list of known
categories, then generic word-run + amount. The first layer that yields
the minimum viable row count wins.
"""

import logging
import re
from collections.abc import Sequence
from typing import Any

from pydantic import BaseModel, Field

from docparse.extraction.normalizers import parse_amount

logger = logging.getLogger(__name__)

MIN_VIABLE_ROWS = 2
MAX_ROW_AMOUNT = 1_000_000.0
CURRENCY_CELL_SHARE = 0.3

COLUMN_SYNONYMS: dict[str, tuple[str, ...]] = {
    "trade": ("trade", "category", "group", "trade name", "work category"),
    "item_code": ("item code", "reference", "sku", "code", "ref"),
    "description": ("description", "item", "work description", "item description", "task"),
    "quantity": ("quantity", "qty"),
    "unit": ("unit", "uom", "unit of measure", "units"),
    "unit_price": ("unit price", "rate", "unit cost"),
    "material": ("material cost", "materials", "material", "mat cost"),
    "labor": ("labor cost", "labour cost", "labor", "labour", "lab cost"),
    "equipment": ("equipment cost", "plant cost", "equipment", "plant", "eq cost"),
    "markup": ("markup %", "markup", "margin %", "margin"),
    "overhead": ("overhead %", "oh %", "overhead", "oh"),
    "total": ("total cost", "total", "amount", "cost", "price"),
}

_AMOUNT = r"(?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?"
_CURRENCY_CELL_RE = re.compile(
    r"^(?:NZD|AUD|USD)?\s*\$?\s*-?" + _AMOUNT + r"\s*\$?$", re.IGNORECASE
)
_CELL_SPLIT_RE = re.compile(r"\t|\s{2,}|\s*\|\s*")
_SEGMENT_SPLIT_RE = re.compile(r"\n|(?<=\$)\s+(?=[A-Za-z])")
_LINE_ROW_RE = re.compile(r"^(?P<name>.+?)\s+(?P<amount>" + _AMOUNT + r")\s*\$(?P<note>.*)$")
_GENERIC_ROW_RE = re.compile(
    r"\b(?P<name>[A-Za-z][A-Za-z &/]{3,25}?)\s+"
    r"(?P<amount>\d{1,3}(?:,\d{3})+(?:\.\d{2})?|\d+\.\d{2})(?![\d,])"
)
_PAGE_MARKER_RE = re.compile(r"\bpage\s+\d+\s+of\s+\d+\b", re.IGNORECASE)
_TRAILING_NOTE_RE = re.compile(
    r"\s+(?:quote|quoted|tbc|to be|discussed)\b.*$"
    r"|\s+client\s+(?:to\s+)?(?:provide|supply|select|choose)\b.*$",
    re.IGNORECASE,
)

SUMMARY_LABEL_RE = re.compile(
    r"^(?:grand\s+total|sub[\s\-]?total|total(?:\s+(?:incl|excl|inc|ex)\b.*)?|net(?:\s+total)?"
    r"|gst|vat|tax|balance(?:\s+due)?)\b",
    re.IGNORECASE,
)

KNOWN_CATEGORIES: tuple[tuple[str, str], ...] = (
    ("Concrete placer", r"concrete\s*placer"),
    ("Concrete pump", r"concrete\s*pump"),
    ("Plumber", r"plumb(?:er|ing)"),
    ("Electrician", r"electric(?:ian|al)"),
    ("Roofing", r"roofing"),
    ("Aluminium joinery", r"alumin(?:i)?um\s*joinery"),
    ("Plasterers", r"plasterers?"),
    ("Interior Doors", r"interior\s*doors"),
    ("Tilers", r"til(?:ers?|ing)"),
    ("Painters internal", r"painters\s*internal"),
    ("Painters external", r"painters\s*external"),
    ("Site prep", r"site\s*prep"),
    ("Spouting/downpipes", r"spouting(?:\s*/\s*downpipes)?"),
    ("Scaffolding", r"scaffolding"),
    ("Shower glass", r"shower\s*glass"),
    ("Labour Only", r"labou?r\s*only"),
    ("Materials", r"materials"),
    ("Tip Fees", r"tip\s*fees"),
    ("Plant/hire", r"plant\s*/\s*hire"),
)
_KNOWN_CATEGORY_RES = tuple(
    (
        name,
        re.compile(r"\b" + pattern + r"\b[^\d\n$]{0,40}?\$?\s*(" + _AMOUNT + r")", re.IGNORECASE),
    )
    for name, pattern in KNOWN_CATEGORIES
)


class TableRow(BaseModel):
    """One detected cost row before it is grouped into a trade."""

    description: str
    trade: str | None = None
    item_code: str | None = None
    quantity: float | None = None
    unit: str | None = None
    unit_price: float | None = None
    material: float = 0.0
    labor: float = 0.0
    equipment: float = 0.0
    markup: float = 0.0
    overhead: float = 0.0
    total: float | None = None

    def amounts(self) -> set[float]:
        values = {self.material, self.labor, self.equipment}
        if self.total is not None:
            values.add(self.total)
        return {value for value in values if value > 0}


class TableDetection(BaseModel):
    """Rows found by one detection pass plus any summary lines."""

    rows: list[TableRow] = Field(default_factory=list)
    detection_pass: str | None = None
    summary: dict[str, float] = Field(default_factory=dict)
    skipped: list[str] = Field(default_factory=list)


def normalize_header(cell: Any) -> str:
    text = str(cell or "").lower()
    text = re.sub(r"[^a-z0-9%&/ ]+", " ", text)
    return " ".join(text.split())


def map_columns(headers: Sequence[Any]) -> dict[str, int]:
    """Map header cells to fields, exact synonym matches before partial ones."""
    normalized = [normalize_header(header) for header in headers]
    mapping: dict[str, int] = {}
    for exact in (True, False):
        for field, synonyms in COLUMN_SYNONYMS.items():
            if field in mapping:
                continue
            for index, header in enumerate(normalized):
                if not header or index in mapping.values():
                    continue
                if exact:
                    matched = header in synonyms
                else:
                    matched = any(
                        re.search(r"(?<!\w)" + re.escape(s) + r"(?!\w)", header) for s in synonyms
                    )
                if matched:
                    mapping[field] = index
                    break
    return mapping


def is_header_row(cells: Sequence[Any]) -> bool:
    if len(cells) < 2 or any(is_currency_cell(cell) for cell in cells):
        return False
    mapping = map_columns(cells)
    has_value_column = bool({"total", "material", "labor", "equipment"} & mapping.keys())
    return len(mapping) >= 2 and has_value_column


def is_currency_cell(cell: Any) -> bool:
    if isinstance(cell, int | float) and not isinstance(cell, bool):
        return True
    return bool(_CURRENCY_CELL_RE.match(str(cell or "").strip()))


def split_cells(line: str) -> list[str]:
    return [cell.strip() for cell in _CELL_SPLIT_RE.split(line.strip()) if cell.strip()]


def clean_trade_name(name: str) -> str:
    cleaned = _TRAILING_NOTE_RE.sub("", " ".join(name.split()))
    return cleaned.strip(" -:,$")


def _text(value: Any) -> str | None:
    if value in (None, ""):
        return None
    return str(value).strip() or None


def _number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return round(float(value), 2)
    return parse_amount(str(value)) if value not in (None, "") else None


def _percentage(value: Any) -> float:
    number = _number(str(value).replace("%", "")) if value not in (None, "") else None
    if number is None or number < 0:
        return 0.0
    # Spreadsheets often store 15% as 0.15
    return number * 100 if 0 < number < 1 else number


def row_from_cells(cells: Sequence[Any], mapping: dict[str, int]) -> TableRow | None:
    """Build a row from mapped cells; None if it has no description or amount."""

    def cell(field: str) -> Any:
        index = mapping.get(field)
        return cells[index] if index is not None and index < len(cells) else None

    description = str(cell("description") or "").strip()
    if not description:
        text_cells = [
            str(c).strip() for c in cells if c not in (None, "") and not is_currency_cell(c)
        ]
        description = text_cells[0] if text_cells else ""
    if not description:
        return None

    row = TableRow(
        description=" ".join(description.split()),
        trade=_text(cell("trade")),
        item_code=_text(cell("item_code")),
        quantity=_number(cell("quantity")),
        unit=_text(cell("unit")),
        unit_price=_number(cell("unit_price")),
        material=max(_number(cell("material")) or 0.0, 0.0),
        labor=max(_number(cell("labor")) or 0.0, 0.0),
        equipment=max(_number(cell("equipment")) or 0.0, 0.0),
        markup=_percentage(cell("markup")),
        overhead=_percentage(cell("overhead")),
        total=_number(cell("total")),
    )

    if row.total is None and row.quantity is not None and row.unit_price is not None:
        row = row.model_copy(update={"total": round(row.quantity * row.unit_price, 2)})
    if row.total is None and not row.amounts():
        # No mapped money column: take the rightmost money-looking cell
        parsed = [_number(c) for c in cells if is_currency_cell(c)]
        money = [m for m in parsed if m is not None and m > 0]
        if not money:
            return None
        row = row.model_copy(update={"total": money[-1]})
    if not row.amounts():
        return None
    return row


class TableDetector:
    """Runs the detection passes over estimate text or spreadsheet rows."""

    def __init__(self, min_viable_rows: int = MIN_VIABLE_ROWS) -> None:
        self.min_viable_rows = min_viable_rows

    def detect_rows(self, rows: Sequence[Sequence[Any]]) -> TableDetection:
        """Header pass, then currency-proportion pass, over pre-split rows."""
        rows = [list(row) for row in rows if any(c not in (None, "") for c in row)]

        for index, cells in enumerate(rows):
            if is_header_row(cells):
                mapping = map_columns(cells)
                logger.debug(f"Header row {index} mapped to {mapping}")
                detection = self._collect(rows[index + 1 :], mapping, "header")
                if detection.rows:
                    return detection

        inferred = [
            cells
            for cells in rows
            if len(cells) >= 2
            and any(is_currency_cell(c) for c in cells)
            and sum(is_currency_cell(c) for c in cells) / len(cells) >= CURRENCY_CELL_SHARE
            and any(not is_currency_cell(c) and str(c).strip() for c in cells)
        ]
        return self._collect(inferred, {}, "currency-proportion")

    def detect(self, text: str) -> TableDetection:
        """Run every pass over plain text, most structured first."""
        lines = [
            line for line in text.splitlines() if line.strip() and not _PAGE_MARKER_RE.search(line)
        ]
        structured = self.detect_rows([split_cells(line) for line in lines])
        if len(structured.rows) >= self.min_viable_rows:
            return structured

        best = structured
        for layer in (self._line_based, self._known_categories, self._generic):
            detection = layer(text)
            if len(detection.rows) >= self.min_viable_rows:
                return detection
            if len(detection.rows) > len(best.rows):
                best = detection
        if best.rows:
            logger.warning(
                f"No detection pass reached {self.min_viable_rows} rows; "
                f"using {best.detection_pass} with {len(best.rows)}"
            )
        return best

    def _collect(
        self, rows: Sequence[Sequence[Any]], mapping: dict[str, int], pass_name: str
    ) -> TableDetection:
        detection = TableDetection(detection_pass=pass_name)
        for cells in rows:
            row = row_from_cells(cells, mapping)
            if row is None:
                continue
            self._accept(detection, row)
        return detection

    def _accept(self, detection: TableDetection, row: TableRow) -> None:
        label = row.description.strip().lower()
        if SUMMARY_LABEL_RE.match(label):
            amount = row.total if row.total is not None else max(row.amounts(), default=0.0)
            detection.summary.setdefault(_summary_key(label), amount)
            return
        if row.total is not None and row.total >= MAX_ROW_AMOUNT:
            detection.skipped.append(row.description)
            return
        detection.rows.append(row)

    def _pairs(self, pass_name: str, pairs: list[tuple[str, float]]) -> TableDetection:
        detection = TableDetection(detection_pass=pass_name)
        seen: set[tuple[str, float]] = set()
        for name, amount in pairs:
            name = clean_trade_name(name)
            key = (name.lower(), amount)
            if len(name) <= 2 or amount <= 0 or key in seen:
                continue
            seen.add(key)
            row = TableRow(description=name, quantity=1, unit="lump sum", total=amount)
            self._accept(detection, row)
        return detection

    def _line_based(self, text: str) -> TableDetection:
        pairs = []
        for segment in _SEGMENT_SPLIT_RE.split(text):
            match = _LINE_ROW_RE.match(segment.strip())
            if not match:
                continue
            amount = parse_amount(match.group("amount"))
            if amount is not None:
                pairs.append((match.group("name"), amount))
        return self._pairs("line-based", pairs)

    def _known_categories(self, text: str) -> TableDetection:
        pairs = []
        for name, pattern in _KNOWN_CATEGORY_RES:
            match = pattern.search(text)
            if match:
                amount = parse_amount(match.group(1))
                if amount is not None:
                    pairs.append((name, amount))
        return self._pairs("known-category", pairs)

    def _generic(self, text: str) -> TableDetection:
        pairs = []
        for match in _GENERIC_ROW_RE.finditer(" ".join(text.split())):
            amount = parse_amount(match.group("amount"))
            if amount is not None:
                pairs.append((match.group("name"), amount))
        return self._pairs("generic", pairs)


def _summary_key(label: str) -> str:
    if label.startswith(("net", "sub")) or "excl" in label or label.startswith("total ex"):
        return "net"
    if label.startswith(("gst", "vat", "tax")):
        return "tax"
    return "total"
