"""LLM provider implementations and the registry used to create them."""

from retroq.llm.providers.base import BaseProvider
from retroq.llm.providers.config import DEFAULT_MODELS, ProviderConfig
from retroq.llm.providers.factory import create_provider, register_provider, test_provider
from retroq.llm.providers.gemini import GeminiProvider

__all__ = [
    "DEFAULT_MODELS",
    "BaseProvider",
    "GeminiProvider",
    "ProviderConfig",
    "create_provider",
    "register_provider",
    "test_provider",
]
