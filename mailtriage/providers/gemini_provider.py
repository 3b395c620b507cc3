"""
Google Gemini provider.

Calls the ``generateContent`` REST endpoint and returns the response
envelope untouched: ``{candidates: [{content: {parts: [{text}]}}], error?}``.
"""

from typing import Any, Dict, Optional

import requests

from .base import LLMProvider, ProviderResponse
from ..utils.errors import ConfigurationError, TransportError
from ..utils.logger import logger
from ..utils.secrets import api_key_env, resolve_api_key

API_KEY_ENV = api_key_env("gemini")


class GeminiProvider(LLMProvider):
    """
    Google Gemini provider for cloud LLM inference.

    The API key is resolved from config, then ``MAILTRIAGE_GEMINI_API_KEY``,
    then the system keyring, and is sent in the ``x-goog-api-key`` header so
    it never appears in URLs or logs.
    """

    base_url = "https://generativelanguage.googleapis.com/v1beta"

    def __init__(self, config: Optional[Dict] = None):
        """
        Initialize Gemini provider.

        Args:
            config: Provider configuration with:
                - model: Model name (default: gemini-2.5-flash)
                - api_key: API key (or retrieved from env / keyring)
                - timeout_seconds: Request timeout in seconds
                - max_output_tokens: Maximum response tokens
        """
        config = config or {}
        self.model = config.get("model", "gemini-2.5-flash")
        self.api_key = resolve_api_key("gemini", config.get("api_key"))
        self.timeout = float(config.get("timeout_seconds", 30))
        self.max_output_tokens = config.get("max_output_tokens", 2048)

        if not self.api_key:
            raise ConfigurationError(
                "Gemini API key not configured. "
                f"Set {API_KEY_ENV} or run: mailtriage set-key"
            )

    def get_name(self) -> str:
        return "gemini"

    @property
    def request_timeout(self) -> float:
        return self.timeout

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "x-goog-api-key": self.api_key}

    def health_check(self) -> bool:
        """
        Check if Gemini API is accessible.
        Uses the models list endpoint for a lightweight check.
        """
        try:
            response = requests.get(
                f"{self.base_url}/models", headers=self._headers(), timeout=10
            )
        except requests.exceptions.RequestException as e:
            logger.warning(f"Gemini health check failed: {e}")
            return False

        if response.status_code in (400, 401, 403):
            logger.error("Gemini API key is invalid")
            return False
        if response.status_code == 429:
            logger.warning("Gemini rate limit hit during health check")
            return True  # reachable, just rate limited
        return response.status_code == 200

    def generate(self, prompt: str, generation_config: Dict[str, Any]) -> ProviderResponse:
        payload_config: Dict[str, Any] = {
            "temperature": generation_config.get("temperature", 0.3),
            "maxOutputTokens": generation_config.get("max_output_tokens", self.max_output_tokens),
        }
        if generation_config.get("response_mime_type"):
            payload_config["responseMimeType"] = generation_config["response_mime_type"]

        try:
            response = requests.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                headers=self._headers(),
                json={
                    "contents": [{"parts": [{"text": prompt}]}],
                    "generationConfig": payload_config,
                },
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            logger.error("Gemini request timed out")
            raise TransportError(f"Gemini request timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            logger.error(f"Gemini connection error: {e}")
            raise TransportError(f"Gemini connection error: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = response.text

        return ProviderResponse(status_code=response.status_code, body=body)
