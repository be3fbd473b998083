"""Google Gemini extraction provider.

Cost-optimized hosted provider for high-volume processing. Uses the
``generateContent`` REST endpoint with JSON response mode:
https://ai.google.dev/api/generate-content
"""

import logging

from docparse.extraction.base import CompletionResponse, HttpProviderAdapter
from docparse.shared.errors import AdapterUnavailable

logger = logging.getLogger(__name__)


class GeminiProvider(HttpProviderAdapter):
    """Gemini via the Generative Language API. Requires GEMINI_API_KEY."""

    @property
    def provider_name(self) -> str:
        return "gemini"

    def is_available(self) -> bool:
        return bool(self.settings.gemini_api_key)

    def _request_completion(self, prompt: str, max_tokens: int) -> CompletionResponse:
        if not self.is_available():
            raise AdapterUnavailable(self.provider_name, "GEMINI_API_KEY not configured")

        base_url = self.settings.gemini_base_url.rstrip("/")
        data = self._post_json(
            f"{base_url}/v1beta/models/{self.spec.model}:generateContent",
            {
                "contents": [{"parts": [{"text": prompt}]}],
                "generationConfig": {
                    "temperature": 0.1,
                    "maxOutputTokens": max_tokens,
                    "responseMimeType": "application/json",
                },
            },
            headers={"x-goog-api-key": self.settings.gemini_api_key},
        )

        candidates = data.get("candidates") or []
        text = ""
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            text = "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        else:
            logger.warning(f"Gemini returned no candidates: {data.get('promptFeedback')}")

        usage = data.get("usageMetadata") or {}
        return CompletionResponse(
            text=text,
            input_tokens=usage.get("promptTokenCount"),
            output_tokens=usage.get("candidatesTokenCount"),
        )
