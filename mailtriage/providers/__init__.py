"""
Language model providers for mailtriage.

- base: provider interface and raw response type
- gemini_provider: Google Gemini over HTTPS
"""

from .base import LLMProvider, ProviderResponse
from .gemini_provider import GeminiProvider

__all__ = [
    "LLMProvider",
    "ProviderResponse",
    "GeminiProvider",
]
