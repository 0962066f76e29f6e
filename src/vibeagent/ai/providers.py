"""Model provider selection."""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict

from .anthropic_client import AnthropicClient
from .client import AIClient, ClientSettings

LOGGER = logging.getLogger(__name__)

ClientFactory = Callable[[ClientSettings], AIClient]

_PROVIDERS: Dict[str, ClientFactory] = {
    "openai": AIClient,
    "anthropic": AnthropicClient,
}


def supported_providers() -> tuple[str, ...]:
    return tuple(_PROVIDERS)


def create_model_client(settings: Any) -> AIClient:
    """Build the streaming client for ``settings.provider``.

    Raises:
        ValueError: If the provider is not one of :func:`supported_providers`.
    """
    client_settings = settings if isinstance(settings, ClientSettings) else ClientSettings.from_settings(settings)
    provider = (client_settings.provider or "").strip().lower()
    factory = _PROVIDERS.get(provider)
    if factory is None:
        raise ValueError(
            f"Unknown model provider {client_settings.provider!r}. Available providers: {', '.join(_PROVIDERS)}"
        )
    LOGGER.debug("Using %s provider with model %s", provider, client_settings.model)
    return factory(client_settings)


__all__ = ["create_model_client", "supported_providers"]
