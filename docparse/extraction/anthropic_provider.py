"""Anthropic Claude extraction provider.

Highest-accuracy hosted provider and the most expensive one. Talks to the
Messages API over httpx:
https://docs.anthropic.com/en/api/messages
"""

import logging

from docparse.extraction.base import CompletionResponse, HttpProviderAdapter
from docparse.shared.errors import AdapterUnavailable

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


class AnthropicProvider(HttpProviderAdapter):
    """Claude via the Anthropic Messages API. Requires ANTHROPIC_API_KEY."""

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def is_available(self) -> bool:
        return bool(self.settings.anthropic_api_key)

    def _request_completion(self, prompt: str, max_tokens: int) -> CompletionResponse:
        if not self.is_available():
            raise AdapterUnavailable(self.provider_name, "ANTHROPIC_API_KEY not configured")

        data = self._post_json(
            f"{self.settings.anthropic_base_url.rstrip('/')}/v1/messages",
            {
                "model": self.spec.model,
                "max_tokens": max_tokens,
                "temperature": 0,
                "messages": [{"role": "user", "content": prompt}],
            },
            headers={
                "x-api-key": self.settings.anthropic_api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            },
        )

        text = "".join(
            block.get("text", "")
            for block in data.get("content") or []
            if isinstance(block, dict) and block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return CompletionResponse(
            text=text,
            input_tokens=usage.get("input_tokens"),
            output_tokens=usage.get("output_tokens"),
        )
