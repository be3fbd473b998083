"""Ollama-based extraction provider for self-hosted LLM inference.

Uses a local Ollama server for structured data extraction from page text.
Supports data sovereignty requirements by running entirely on-premises,
and has zero marginal cost, so budget ceilings never block it.

Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import logging

import httpx

from docparse.extraction.base import CompletionResponse, HttpProviderAdapter

logger = logging.getLogger(__name__)


class OllamaProvider(HttpProviderAdapter):
    """Ollama-based provider for self-hosted LLM inference.

    Supports models like Qwen2.5, Llama3, Mistral.
    """

    @property
    def provider_name(self) -> str:
        return "ollama"

    @property
    def base_url(self) -> str:
        return self.settings.ollama_base_url.rstrip("/")

    def is_available(self) -> bool:
        """Check if Ollama is enabled, running and has the model loaded."""
        if not self.settings.ollama_enabled:
            return False
        try:
            response = self._client.get(f"{self.base_url}/api/tags")
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self.spec.model.split(":")[0] in model_names
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Ollama availability check failed: {e}")
            return False

    def _request_completion(self, prompt: str, max_tokens: int) -> CompletionResponse:
        data = self._post_json(
            f"{self.base_url}/api/generate",
            {
                "model": self.spec.model,
                "prompt": prompt,
                "stream": False,
                "format": "json",
                "options": {
                    "temperature": 0,  # Deterministic output
                    "num_predict": max_tokens,
                },
            },
        )
        return CompletionResponse(
            text=data.get("response", ""),
            input_tokens=data.get("prompt_eval_count"),
            output_tokens=data.get("eval_count"),
        )
