"""Model clients, tools and the ReAct run loop."""

from .anthropic_client import AnthropicClient
from .client import AIClient, ApproxByteCounter, ClientSettings, TokenCounterRegistry
from .providers import create_model_client

__all__ = [
    "AIClient",
    "AnthropicClient",
    "ClientSettings",
    "TokenCounterRegistry",
    "ApproxByteCounter",
    "create_model_client",
]
