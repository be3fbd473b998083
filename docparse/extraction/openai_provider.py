"""OpenAI-based extraction provider.

Uses the OpenAI API in JSON mode for structured data extraction from page
text. The SDK's own retries are disabled so the adapter's tenacity policy
(transient faults only) is the single retry layer.
"""

import logging

import openai
from openai import OpenAI

from docparse.extraction.base import CompletionResponse, ProviderAdapter
from docparse.shared.config import Settings
from docparse.shared.errors import AdapterUnavailable
from docparse.shared.parsing_config import ProviderSpec

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
)


class OpenAIProvider(ProviderAdapter):
    """OpenAI chat completions provider (gpt-4o-mini by default).

    Requires OPENAI_API_KEY (or APP_OPENAI_API_KEY).
    """

    transport_errors = (openai.APIError,)

    def __init__(
        self, settings: Settings, spec: ProviderSpec, client: OpenAI | None = None
    ) -> None:
        """Initialize OpenAI extraction provider.

        Args:
            settings: Application settings
            spec: Declared priority, unit cost and transport limits
            client: Pre-built client (tests inject a mock)
        """
        super().__init__(settings, spec)
        self._client = client

    @property
    def provider_name(self) -> str:
        return "openai"

    def is_available(self) -> bool:
        return bool(self.settings.openai_api_key)

    def _is_transient(self, error: BaseException) -> bool:
        return isinstance(error, _TRANSIENT_ERRORS)

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.settings.openai_api_key,
                timeout=self.spec.timeout_seconds,
                max_retries=0,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _request_completion(self, prompt: str, max_tokens: int) -> CompletionResponse:
        if not self.is_available():
            raise AdapterUnavailable(self.provider_name, "OPENAI_API_KEY not configured")

        response = self._get_client().chat.completions.create(
            model=self.spec.model,
            messages=[
                {"role": "system", "content": "You are an invoice data extraction assistant."},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0,  # Deterministic output
            max_tokens=max_tokens,
        )

        text = response.choices[0].message.content if response.choices else None
        usage = response.usage
        return CompletionResponse(
            text=text or "",
            input_tokens=usage.prompt_tokens if usage else None,
            output_tokens=usage.completion_tokens if usage else None,
        )
