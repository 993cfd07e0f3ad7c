"""Completion clients, cancellation primitives and the agent loop."""

from .cancellation import AbortResult, CancellationToken, RequestRegistry
from .client import AIClient, ClientSettings
from .errors import ChatLensError, ToolArgumentsError, TransportError
from .openai_client import OpenAIClient
from .providers import PROVIDERS, ProviderInfo, create_client

__all__ = [
    "AIClient",
    "OpenAIClient",
    "ClientSettings",
    "ProviderInfo",
    "PROVIDERS",
    "create_client",
    "AbortResult",
    "CancellationToken",
    "RequestRegistry",
    "ChatLensError",
    "TransportError",
    "ToolArgumentsError",
]
