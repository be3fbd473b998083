"""Text extraction from PDF buffers.

Primary path is pdfplumber, page by page. When it recovers nothing, a raw
scan inflates Flate content streams and collects string operands (or, as a
last resort, printable byte runs). When both fail the result is a single
manual-entry page describing the failure, so callers always receive at
least one page for anything that looks like a PDF.

Based on pdfplumber page text extraction:
https://github.com/jsvine/pdfplumber#extracting-text
"""

import io
import logging
import math
import re
import zlib
from datetime import UTC, datetime
from typing import Literal

import pdfplumber
from pydantic import BaseModel, Field

from docparse.shared.errors import ExtractionFailure

logger = logging.getLogger(__name__)

ExtractionMethod = Literal["pdfplumber", "raw-scan", "manual-fallback"]

MANUAL_ENTRY_HEADER = "MANUAL ENTRY REQUIRED"

_STREAM_RE = re.compile(rb"(?<!end)stream\r?\n(.*?)\r?\n?endstream", re.DOTALL)
_TEXT_BLOCK_RE = re.compile(rb"BT(.*?)ET", re.DOTALL)
_TEXT_TOKEN_RE = re.compile(rb"\((?P<string>(?:\\.|[^\\)])*)\)|(?P<op>T\*|Td|TD|Tm|')")
_PRINTABLE_RUN_RE = re.compile(rb"[\x20-\x7e]{4,}")
_PDF_SYNTAX_RE = re.compile(
    r"^\s*(?:%|/|<<|>>|\[|\d+\s+\d+\s+(?:obj|R)\b|endobj|stream|endstream|xref|trailer|startxref)"
)
_PAGE_OBJECT_RE = re.compile(rb"/Type\s*/Page(?![A-Za-z])")
_PAGE_MARKER_RE = re.compile(r"\bPage\s+\d+\s+of\s+\d+\b", re.IGNORECASE)
_INVOICE_HEADER_RE = re.compile(r"(?im)^[ \t]*(?:tax\s+)?invoice\b")

_ESCAPES = {
    b"n": b"\n",
    b"r": b"\r",
    b"t": b"\t",
    b"b": b"\b",
    b"f": b"\f",
    b"(": b"(",
    b")": b")",
    b"\\": b"\\",
}


class DocumentText(BaseModel):
    """Per-page text recovered from one document.

    Attributes:
        pages: Page texts in document order (never empty)
        page_count: Physical page count when known
        method: Technique that produced the pages
        errors: Failures encountered along the way
    """

    pages: list[str]
    page_count: int
    method: ExtractionMethod
    errors: list[str] = Field(default_factory=list)


def looks_like_pdf(buffer: bytes) -> bool:
    return b"%PDF-" in buffer[:1024]


def count_pdf_pages(buffer: bytes) -> int:
    """Count page objects in the raw bytes (0 when none are visible)."""
    return len(_PAGE_OBJECT_RE.findall(buffer))


def _unescape_pdf_string(raw: bytes) -> str:
    out = bytearray()
    index = 0
    while index < len(raw):
        byte = raw[index : index + 1]
        if byte != b"\\":
            out += byte
            index += 1
            continue
        nxt = raw[index + 1 : index + 2]
        if nxt in _ESCAPES:
            out += _ESCAPES[nxt]
            index += 2
        elif nxt.isdigit():
            octal = re.match(rb"[0-7]{1,3}", raw[index + 1 : index + 4])
            if octal:
                out.append(int(octal.group(0), 8) & 0xFF)
                index += 1 + len(octal.group(0))
            else:
                index += 2
        else:
            index += 2
    return out.decode("latin-1")


def _text_from_content(content: bytes) -> str:
    """Collect shown strings from BT/ET blocks of one content stream."""
    lines: list[str] = []
    for block in _TEXT_BLOCK_RE.finditer(content):
        current: list[str] = []
        for token in _TEXT_TOKEN_RE.finditer(block.group(1)):
            if token.group("string") is not None:
                current.append(_unescape_pdf_string(token.group("string")))
            elif current:
                lines.append("".join(current))
                current = []
        if current:
            lines.append("".join(current))
    return "\n".join(line for line in lines if line.strip())


def _printable_runs(buffer: bytes) -> str:
    runs = []
    for match in _PRINTABLE_RUN_RE.finditer(buffer):
        text = match.group(0).decode("ascii").strip()
        if _PDF_SYNTAX_RE.match(text):
            continue
        if len(re.findall(r"[A-Za-z]{3,}", text)) < 2:
            continue
        runs.append(text)
    return "\n".join(runs)


def split_into_pages(text: str, page_count: int) -> list[str]:
    """Split one block of text into exactly ``page_count`` pages.

    Tries page-break markers, then recurring invoice headers, then
    equal-length chunks. Surplus segments are folded into the last page;
    missing pages are padded with empty strings.
    """
    if page_count <= 1:
        return [text.strip()]

    for splitter in (_split_on_page_breaks, _split_on_invoice_headers):
        segments = [segment.strip() for segment in splitter(text)]
        segments = [segment for segment in segments if segment]
        if len(segments) > 1:
            return _fit_to_count(segments, page_count)

    return _fit_to_count(_split_equal_chunks(text, page_count), page_count)


def _split_on_page_breaks(text: str) -> list[str]:
    segments: list[str] = []
    for part in text.split("\f"):
        start = 0
        for marker in _PAGE_MARKER_RE.finditer(part):
            segments.append(part[start : marker.end()])
            start = marker.end()
        segments.append(part[start:])
    return segments


def _split_on_invoice_headers(text: str) -> list[str]:
    starts = [match.start() for match in _INVOICE_HEADER_RE.finditer(text)]
    if len(starts) < 2:
        return [text]
    bounds = [0, *starts[1:], len(text)]
    return [text[bounds[i] : bounds[i + 1]] for i in range(len(bounds) - 1)]


def _split_equal_chunks(text: str, page_count: int) -> list[str]:
    stripped = text.strip()
    size = max(1, math.ceil(len(stripped) / page_count))
    return [stripped[i : i + size].strip() for i in range(0, len(stripped), size)]


def _fit_to_count(segments: list[str], page_count: int) -> list[str]:
    if len(segments) > page_count:
        head = segments[: page_count - 1]
        tail = "\n".join(segments[page_count - 1 :])
        return [*head, tail]
    return segments + [""] * (page_count - len(segments))


class TextExtractor:
    """Turns a PDF buffer into ordered per-page text."""

    def __init__(self, clock: type[datetime] = datetime) -> None:
        self._clock = clock

    def extract(self, buffer: bytes) -> list[str]:
        """Extract per-page text.

        Args:
            buffer: Raw document bytes

        Returns:
            Page texts (at least one entry)

        Raises:
            ExtractionFailure: If the buffer is empty or not a PDF
        """
        return self.extract_document(buffer).pages

    def extract_document(self, buffer: bytes) -> DocumentText:
        """Extract per-page text along with the method used and any errors.

        Raises:
            ExtractionFailure: If the buffer is empty or not a PDF
        """
        if not buffer:
            raise ExtractionFailure("Empty document buffer")
        if not looks_like_pdf(buffer):
            raise ExtractionFailure(
                "Buffer is not a PDF document", {"size_bytes": len(buffer)}
            )

        errors: list[str] = []
        library_page_count = 0

        try:
            pages = self._extract_with_pdfplumber(buffer, errors)
            library_page_count = len(pages)
            if any(page.strip() for page in pages):
                return DocumentText(
                    pages=pages,
                    page_count=library_page_count,
                    method="pdfplumber",
                    errors=errors,
                )
            errors.append("pdfplumber: no text recovered")
        except Exception as e:  # pdfminer raises a wide range of parser errors
            logger.warning(f"pdfplumber could not open document: {e}")
            errors.append(f"pdfplumber: {e}")

        raw_text = self._scan_raw_text(buffer)
        page_count = library_page_count or count_pdf_pages(buffer) or 1
        if raw_text.strip():
            logger.info(f"Recovered text by raw scan across {page_count} page(s)")
            return DocumentText(
                pages=split_into_pages(raw_text, page_count),
                page_count=page_count,
                method="raw-scan",
                errors=errors,
            )
        errors.append("raw-scan: no printable text found")

        logger.warning(f"No text recovered from {len(buffer)} byte document; manual entry needed")
        return DocumentText(
            pages=[self._manual_entry_page(buffer, errors)],
            page_count=page_count,
            method="manual-fallback",
            errors=errors,
        )

    def _extract_with_pdfplumber(self, buffer: bytes, errors: list[str]) -> list[str]:
        pages: list[str] = []
        with pdfplumber.open(io.BytesIO(buffer)) as pdf:
            for index, page in enumerate(pdf.pages, start=1):
                try:
                    pages.append(page.extract_text() or "")
                except Exception as e:  # one bad page must not abort the document
                    logger.warning(f"Failed to extract text from page {index}: {e}")
                    errors.append(f"page {index}: {e}")
                    pages.append("")
        return pages

    def _scan_raw_text(self, buffer: bytes) -> str:
        page_texts = []
        for match in _STREAM_RE.finditer(buffer):
            content = match.group(1)
            try:
                content = zlib.decompress(content)
            except zlib.error:
                pass  # uncompressed stream
            text = _text_from_content(content)
            if text:
                page_texts.append(text)
        if page_texts:
            return "\f".join(page_texts)
        return _printable_runs(buffer)

    def _manual_entry_page(self, buffer: bytes, errors: list[str]) -> str:
        timestamp = self._clock.now(UTC).isoformat(timespec="seconds")
        summary = "; ".join(errors) if errors else "unknown error"
        return (
            f"{MANUAL_ENTRY_HEADER}\n"
            f"Text could not be extracted from this document.\n"
            f"File size: {len(buffer)} bytes\n"
            f"Processed at: {timestamp}\n"
            f"Errors: {summary}"
        )
