"""
Base provider interface for the language model service.

A provider is a thin transport: it sends one prompt and hands back the raw
status code and decoded body. Interpreting the envelope, validating output
and retrying belong to the classification client.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict


@dataclass
class ProviderResponse:
    """
    Raw answer from the model endpoint.

    Attributes:
        status_code: HTTP status
        body: Decoded JSON body, or the raw text if it was not JSON
    """
    status_code: int
    body: Any


class LLMProvider(ABC):
    """Abstract base class for language model providers."""

    @abstractmethod
    def generate(self, prompt: str, generation_config: Dict[str, Any]) -> ProviderResponse:
        """
        Send a prompt to the model.

        Args:
            prompt: Full prompt text (already redacted)
            generation_config: Provider-neutral settings: ``temperature``,
                ``max_output_tokens``, ``response_mime_type``

        Returns:
            ProviderResponse for any HTTP answer, including errors.

        Raises:
            TransportError: on timeout or connection failure.
        """

    @abstractmethod
    def health_check(self) -> bool:
        """
        Check if the provider service is available.
        """

    @abstractmethod
    def get_name(self) -> str:
        """
        Return provider identifier for logging and rate limiting.
        """

    @property
    @abstractmethod
    def request_timeout(self) -> float:
        """Per-request timeout in seconds."""
