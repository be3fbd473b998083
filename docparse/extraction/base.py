"""Abstract base class for provider adapters.

Every model-backed extraction backend sits behind the same capability:
``parse_document(text, context)`` returns a ``ProviderResult`` carrying
success, the invoice, a confidence and the incurred cost. Ordinary parsing
failures (empty text, unparseable output) are reported with
``success=False``. Transport faults (timeouts, connection errors, auth
errors, retries exhausted) raise ``AdapterUnavailable`` so the orchestrator
can move to the next chain element.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python

Retries use tenacity with exponential backoff and jitter, and only for
transient transport faults:
https://tenacity.readthedocs.io/
"""

import json
import logging
import math
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, Field
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential_jitter

from docparse.estimates.schema import ParsedEstimate
from docparse.extraction.normalizers import DateNormalizer, clean_text_field, parse_amount
from docparse.extraction.schema import InvoiceLineItem, ParsedInvoice
from docparse.shared.config import Settings
from docparse.shared.errors import AdapterUnavailable
from docparse.shared.parsing_config import ProviderSpec

logger = logging.getLogger(__name__)

# Prompt scaffolding sent on top of the document text, in characters
PROMPT_OVERHEAD_CHARS = 2000
CHARS_PER_TOKEN = 4
DEFAULT_MODEL_CONFIDENCE = 0.8
TOTAL_TOLERANCE = 0.5

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})


class CompletionResponse(BaseModel):
    """Raw model output plus reported token usage."""

    text: str
    input_tokens: int | None = None
    output_tokens: int | None = None


class ParseContext(BaseModel):
    """Per-call context passed to adapters."""

    page_number: int = Field(1, ge=1)
    filename: str | None = None
    user_id: str | None = None
    currency: str = "NZD"
    invoice_type: str | None = None


class ProviderResult(BaseModel):
    """Result of one invoice parse by one provider.

    Attributes:
        success: Whether a usable invoice was produced
        invoice: Parsed invoice or None
        confidence: Model-reported confidence after normalization
        cost: Incurred cost in USD (also set on failed parses)
        provider: Provider identifier
        error: Error message if parsing failed
        tokens_used: Input plus output tokens
    """

    success: bool
    invoice: ParsedInvoice | None = None
    confidence: float = Field(0.0, ge=0, le=1)
    cost: float = Field(0.0, ge=0)
    provider: str
    error: str | None = None
    tokens_used: int = 0


class EstimateProviderResult(BaseModel):
    """Result of one estimate parse by one provider."""

    success: bool
    estimate: ParsedEstimate | None = None
    payload: dict[str, Any] | None = None
    confidence: float = Field(0.0, ge=0, le=1)
    cost: float = Field(0.0, ge=0)
    provider: str
    error: str | None = None
    tokens_used: int = 0


def parse_json_response(response_text: str) -> Any:
    """Extract and parse JSON from a model response.

    Handles common LLM quirks like markdown code blocks.

    Raises:
        json.JSONDecodeError: If no valid JSON found
    """
    json_match = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
    if json_match:
        return json.loads(json_match.group(1).strip())

    json_match = re.search(r"\{[\s\S]*\}", response_text)
    if json_match:
        return json.loads(json_match.group(0))

    return json.loads(response_text.strip())


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def is_transient_http_error(error: BaseException) -> bool:
    """Timeouts, connection drops and retryable HTTP statuses."""
    if isinstance(error, httpx.TimeoutException | httpx.TransportError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in TRANSIENT_STATUS_CODES
    return False


class ProviderAdapter(ABC):
    """Abstract base class for model-backed extraction providers.

    Subclasses implement one request/response round trip in
    ``_request_completion``; prompt building, retries, response parsing,
    normalization and costing are shared.
    """

    # Exceptions that mean "this provider cannot serve the call"
    transport_errors: tuple[type[Exception], ...] = (httpx.HTTPError,)

    # Backoff between retries; tests replace it with tenacity.wait_none()
    retry_wait: Any = wait_exponential_jitter(initial=1, max=30)

    def __init__(self, settings: Settings, spec: ProviderSpec) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
            spec: Declared priority, unit cost and transport limits
        """
        self.settings = settings
        self.spec = spec
        self.date_normalizer = DateNormalizer()

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics."""

    @abstractmethod
    def is_available(self) -> bool:
        """Check provider prerequisites (API key, reachable server)."""

    @abstractmethod
    def _request_completion(self, prompt: str, max_tokens: int) -> CompletionResponse:
        """Send one prompt and return the raw completion.

        Raises:
            AdapterUnavailable: If credentials are missing
            Exception: Any member of ``transport_errors`` on transport faults
        """

    @property
    def priority(self) -> int:
        return self.spec.priority

    @property
    def unit_cost(self) -> float:
        """Declared cost per 1k tokens in USD."""
        return self.spec.cost_per_1k_tokens

    @property
    def is_paid(self) -> bool:
        return self.unit_cost > 0

    def _is_transient(self, error: BaseException) -> bool:
        return is_transient_http_error(error)

    def close(self) -> None:
        """Release the adapter's client, if it holds one."""

    def cost_for_tokens(self, tokens: int) -> float:
        return round(tokens / 1000 * self.unit_cost, 6)

    def estimate_cost(self, text: str) -> float:
        """Upper-bound cost of parsing ``text``, used to reserve budget."""
        prompt_tokens = estimate_tokens(text) + PROMPT_OVERHEAD_CHARS // CHARS_PER_TOKEN
        return self.cost_for_tokens(prompt_tokens + self.spec.max_tokens)

    def _complete(self, prompt: str) -> CompletionResponse:
        retrying = Retrying(
            retry=retry_if_exception(self._is_transient),
            stop=stop_after_attempt(self.spec.retry_attempts + 1),
            wait=self.retry_wait,
            reraise=True,
        )
        try:
            return retrying(self._request_completion, prompt, self.spec.max_tokens)
        except self.transport_errors as e:
            logger.warning(f"Provider {self.provider_name} unavailable: {e}")
            raise AdapterUnavailable(self.provider_name, str(e)) from e

    def _usage(self, prompt: str, completion: CompletionResponse) -> int:
        input_tokens = completion.input_tokens
        if input_tokens is None:
            input_tokens = estimate_tokens(prompt)
        output_tokens = completion.output_tokens
        if output_tokens is None:
            output_tokens = estimate_tokens(completion.text)
        return input_tokens + output_tokens

    def parse_document(self, text: str, context: ParseContext | None = None) -> ProviderResult:
        """Extract structured invoice data from page text.

        Args:
            text: Page text
            context: Page number, filename and caller details

        Returns:
            ProviderResult; ordinary failures have success=False

        Raises:
            AdapterUnavailable: On transport faults after retries
        """
        context = context or ParseContext()
        if not text or not text.strip():
            return ProviderResult(
                success=False, provider=self.provider_name, error="Empty document text provided"
            )

        prompt = self.build_invoice_prompt(text, context)
        completion = self._complete(prompt)
        tokens = self._usage(prompt, completion)
        cost = self.cost_for_tokens(tokens)

        try:
            payload = parse_json_response(completion.text)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse JSON from {self.provider_name} response: {e}")
            return ProviderResult(
                success=False,
                provider=self.provider_name,
                cost=cost,
                tokens_used=tokens,
                error=f"JSON parsing failed: {e}",
            )

        if isinstance(payload, dict) and isinstance(payload.get("invoices"), list):
            invoices = [item for item in payload["invoices"] if isinstance(item, dict)]
            payload = invoices[0] if invoices else None
        if not isinstance(payload, dict):
            return ProviderResult(
                success=False,
                provider=self.provider_name,
                cost=cost,
                tokens_used=tokens,
                error="Response is not a JSON object",
            )

        try:
            invoice = self.normalize_invoice_payload(payload, text, context.page_number)
        except (TypeError, ValueError) as e:
            logger.warning(f"Malformed invoice payload from {self.provider_name}: {e}")
            return ProviderResult(
                success=False,
                provider=self.provider_name,
                cost=cost,
                tokens_used=tokens,
                error=f"Malformed response: {e}",
            )
        if not invoice.has_core_fields():
            return ProviderResult(
                success=False,
                provider=self.provider_name,
                cost=cost,
                tokens_used=tokens,
                error="No invoice fields in response",
            )

        return ProviderResult(
            success=True,
            invoice=invoice,
            confidence=invoice.confidence,
            cost=cost,
            provider=self.provider_name,
            tokens_used=tokens,
        )

    def parse_estimate(
        self, text: str, context: ParseContext | None = None
    ) -> EstimateProviderResult:
        """Ask the model for trades and line items.

        The raw JSON payload is returned; the estimate parser turns it into a
        ``ParsedEstimate`` so totals are always recomputed locally.

        Raises:
            AdapterUnavailable: On transport faults after retries
        """
        context = context or ParseContext()
        if not text or not text.strip():
            return EstimateProviderResult(
                success=False, provider=self.provider_name, error="Empty document text provided"
            )

        prompt = self.build_estimate_prompt(text, context)
        completion = self._complete(prompt)
        tokens = self._usage(prompt, completion)
        cost = self.cost_for_tokens(tokens)

        try:
            payload = parse_json_response(completion.text)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse estimate JSON from {self.provider_name}: {e}")
            return EstimateProviderResult(
                success=False,
                provider=self.provider_name,
                cost=cost,
                tokens_used=tokens,
                error=f"JSON parsing failed: {e}",
            )

        if not isinstance(payload, dict) or not any(
            isinstance(payload.get(key), list) and payload[key] for key in ("trades", "invoices")
        ):
            return EstimateProviderResult(
                success=False,
                provider=self.provider_name,
                cost=cost,
                tokens_used=tokens,
                error="No trades in response",
            )

        confidence = _clamp(payload.get("confidence"), DEFAULT_MODEL_CONFIDENCE)
        return EstimateProviderResult(
            success=True,
            payload=payload,
            confidence=confidence,
            cost=cost,
            provider=self.provider_name,
            tokens_used=tokens,
        )

    def normalize_invoice_payload(
        self, payload: dict[str, Any], original_text: str, page_number: int
    ) -> ParsedInvoice:
        """Validate and normalize a model response into a ParsedInvoice.

        Confidence is clamped to [0, 1] (0.8 when absent) and reduced when
        amount + tax disagrees with total by more than $0.50.
        """
        amount = parse_amount(payload.get("amount"))
        tax = parse_amount(payload.get("tax"))
        total = parse_amount(payload.get("total"))
        confidence = _clamp(payload.get("confidence"), DEFAULT_MODEL_CONFIDENCE)

        if amount is not None and tax is not None and total is not None:
            if abs(total - (amount + tax)) > TOTAL_TOLERANCE:
                confidence = max(confidence * 0.8, 0.3)

        invoice_number = _scalar_text(payload.get("invoice_number", payload.get("invoiceNumber")))
        vendor_name = _scalar_text(payload.get("vendor_name", payload.get("vendorName")))
        raw_date = _scalar_text(payload.get("date"))

        return ParsedInvoice(
            invoice_number=clean_text_field(invoice_number, 40),
            date=self.date_normalizer.normalize(raw_date) if raw_date else None,
            vendor_name=clean_text_field(vendor_name, 80),
            description=clean_text_field(_scalar_text(payload.get("description"))),
            amount=amount,
            tax=tax,
            total=total,
            line_items=_normalize_line_items(
                payload.get("line_items", payload.get("lineItems")) or []
            ),
            page_number=page_number,
            confidence=confidence,
            raw_text=original_text,
        )

    def build_invoice_prompt(self, text: str, context: ParseContext) -> str:
        """Build the invoice extraction prompt.

        Args:
            text: Page text
            context: Page number and currency

        Returns:
            Formatted prompt string
        """
        schema = (
            '{"invoice_number": string|null, "vendor_name": string|null, '
            '"date": string|null (YYYY-MM-DD), "description": string|null, '
            '"amount": number|null, "tax": number|null, "total": number|null, '
            '"line_items": [{"description": string, "quantity": number|null, '
            '"unit_price": number|null, "total": number}], "confidence": number}'
        )

        example_input = (
            "TAX INVOICE Invoice No: INV-1042 Date: 03/10/2024 From: Harbour Plumbing Ltd "
            "Supply and fit hot water cylinder 1 1,200.00 1,200.00 "
            "Subtotal: $1,200.00 GST: $180.00 Total Due: $1,380.00"
        )
        example_output = (
            '{"invoice_number": "INV-1042", "vendor_name": "Harbour Plumbing Ltd", '
            '"date": "2024-10-03", "description": "Supply and fit hot water cylinder", '
            '"amount": 1200.00, "tax": 180.00, "total": 1380.00, '
            '"line_items": [{"description": "Supply and fit hot water cylinder", '
            '"quantity": 1, "unit_price": 1200.00, "total": 1200.00}], "confidence": 0.95}'
        )

        return f"""You are an invoice data extraction assistant for construction projects. \
Extract invoice information from the text of page {context.page_number} and return ONLY valid JSON.

SCHEMA (use null for missing fields):
{schema}

EXAMPLE:

Input: "{example_input}"
Output: {example_output}

INSTRUCTIONS:
- Dates are DD/MM/YYYY unless impossible; convert to YYYY-MM-DD
- "amount" is before tax, "tax" is GST/VAT, "total" includes tax
- Amounts are numbers without currency symbols or commas (currency: {context.currency})
- Total should equal amount + tax within $0.50
- Confidence reflects extraction certainty (0.0-1.0); lower it when unsure
- Return ONLY JSON, no explanation

INPUT:
{text}

OUTPUT:"""

    def build_estimate_prompt(self, text: str, context: ParseContext) -> str:
        """Build the estimate extraction prompt."""
        schema = (
            '{"project_name": string|null, "trades": [{"name": string, "line_items": '
            '[{"description": string, "quantity": number|null, "unit": string|null, '
            '"unit_price": number|null, "material_cost": number, "labor_cost": number, '
            '"equipment_cost": number, "total": number}]}], "confidence": number}'
        )
        source = f" from {context.filename}" if context.filename else ""

        return f"""Extract construction estimate data{source}. \
Extract EVERY cost line that has a trade or service name followed by an amount.

SCHEMA:
{schema}

INSTRUCTIONS:
- Use the EXACT trade names from the document
- Skip summary lines like "Total", "Net", "GST", "Margin"
- Amounts are numbers without currency symbols or commas (currency: {context.currency})
- When no cost split is given, put the whole amount in "total"
- Return ONLY JSON, no explanation

DOCUMENT:
{text}

OUTPUT:"""


def _clamp(value: Any, default: float) -> float:
    try:
        number = float(value) if value is not None else default
    except (TypeError, ValueError):
        number = default
    if math.isnan(number):
        number = default
    return min(max(number, 0.0), 1.0)


def _scalar_text(value: Any) -> str | None:
    """String form of a scalar JSON value; lists, objects and booleans are dropped."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str | int | float):
        return str(value)
    return None


def _normalize_line_items(items: Any) -> list[InvoiceLineItem]:
    if not isinstance(items, list):
        return []
    normalized = []
    for item in items:
        if not isinstance(item, dict):
            continue
        description = clean_text_field(_scalar_text(item.get("description")))
        total = parse_amount(item.get("total"))
        if not description or total is None or total <= 0:
            continue
        normalized.append(
            InvoiceLineItem(
                description=description,
                quantity=parse_amount(item.get("quantity")) or 1.0,
                unit_price=parse_amount(item.get("unit_price", item.get("unitPrice"))),
                total=total,
            )
        )
    return normalized


class HttpProviderAdapter(ProviderAdapter):
    """Provider speaking JSON over HTTP through one httpx client."""

    def __init__(
        self, settings: Settings, spec: ProviderSpec, client: httpx.Client | None = None
    ) -> None:
        super().__init__(settings, spec)
        self._client = client or httpx.Client(timeout=spec.timeout_seconds)

    def _post_json(
        self, url: str, payload: dict[str, Any], headers: dict[str, str] | None = None
    ) -> dict[str, Any]:
        response = self._client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        try:
            data: dict[str, Any] = response.json()
        except ValueError as e:
            raise httpx.DecodingError(
                f"Invalid JSON body from {self.provider_name}", request=response.request
            ) from e
        return data

    def close(self) -> None:
        self._client.close()
