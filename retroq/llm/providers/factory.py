"""
Provider registry and factory.

Providers register under a lowercase name; create_provider() validates the
config and instantiates the matching class. Gemini is registered by default.
"""

from __future__ import annotations

from typing import Any

from pydantic import ValidationError

from retroq.llm.monitor import PerformanceMonitor
from retroq.llm.providers.base import BaseProvider
from retroq.llm.providers.config import ProviderConfig
from retroq.llm.providers.gemini import GeminiProvider
from retroq.observability.logging import get_logger

logger = get_logger(__name__)

_PROVIDERS: dict[str, type[BaseProvider]] = {}


def register_provider(name: str, provider_class: type[BaseProvider]) -> None:
    """
    Register a provider class under a name.

    Raises:
        ValueError: empty name or a class that does not extend BaseProvider
    """
    if not name or not isinstance(name, str):
        raise ValueError("Provider name must be a non-empty string")
    if not isinstance(provider_class, type) or not issubclass(provider_class, BaseProvider):
        raise ValueError("Provider class must extend BaseProvider")
    _PROVIDERS[name.lower()] = provider_class


def unregister_provider(name: str) -> None:
    _PROVIDERS.pop(name.lower(), None)


def get_available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def has_provider(name: str) -> bool:
    return (name or "").lower() in _PROVIDERS


def create_provider(
    config: ProviderConfig | dict[str, Any], monitor: PerformanceMonitor | None = None, **kwargs: Any
) -> BaseProvider:
    """
    Instantiate the registered provider for config.provider.

    Args:
        config: ProviderConfig or a plain dict validated into one
        monitor: Shared PerformanceMonitor passed to the provider
        **kwargs: Extra provider constructor arguments (e.g. model_factory)

    Raises:
        ValueError: unknown provider or invalid settings
    """
    if not isinstance(config, ProviderConfig):
        try:
            config = ProviderConfig.model_validate(config or {})
        except ValidationError as exc:
            raise ValueError(f"Invalid provider configuration: {exc.errors()[0]['msg']}") from exc

    provider_class = _PROVIDERS.get(config.provider)
    if provider_class is None:
        raise ValueError(
            f"Unknown provider: {config.provider}. Available providers: {', '.join(get_available_providers())}"
        )
    logger.info("Creating %s provider (model=%s)", config.provider, config.resolved_model)
    return provider_class(config, monitor, **kwargs)


async def test_provider(config: ProviderConfig | dict[str, Any], **kwargs: Any) -> dict[str, Any]:
    """Create a provider and check its connection; never raises."""
    try:
        provider = create_provider(config, **kwargs)
        connected = await provider.validate_connection()
    except Exception as exc:
        logger.warning("Provider test failed: %s", exc)
        provider_name = config.provider if isinstance(config, ProviderConfig) else (config or {}).get("provider")
        return {"success": False, "provider": provider_name, "model": None, "message": str(exc)}

    return {
        "success": connected,
        "provider": provider.get_provider_name(),
        "model": provider.get_model(),
        "message": "Connection successful" if connected else "Connection failed",
    }


# Not a pytest test despite the name
test_provider.__test__ = False  # type: ignore[attr-defined]

register_provider("gemini", GeminiProvider)
