"""Catalogue of supported completion providers and the client factory."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Dict

import httpx

from .ai_types import CompletionClient
from .client import AIClient, ClientSettings
from .openai_client import OpenAIClient

__all__ = [
    "ProviderInfo",
    "PROVIDERS",
    "DEFAULT_PROVIDER",
    "get_provider_info",
    "resolve_client_settings",
    "create_client",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ProviderInfo:
    """Static facts about one completion provider."""

    id: str
    name: str
    description: str
    default_base_url: str
    models: tuple[str, ...] = ()
    default_model: str = ""


PROVIDERS: Dict[str, ProviderInfo] = {
    "deepseek": ProviderInfo(
        id="deepseek",
        name="DeepSeek",
        description="DeepSeek chat models over the OpenAI-compatible API",
        default_base_url="https://api.deepseek.com/v1",
        models=("deepseek-chat", "deepseek-reasoner"),
        default_model="deepseek-chat",
    ),
    "qwen": ProviderInfo(
        id="qwen",
        name="Qwen",
        description="Alibaba DashScope in OpenAI-compatible mode",
        default_base_url="https://dashscope.aliyuncs.com/compatible-mode/v1",
        models=("qwen-turbo", "qwen-plus", "qwen-max"),
        default_model="qwen-plus",
    ),
    "openai": ProviderInfo(
        id="openai",
        name="OpenAI",
        description="OpenAI platform models",
        default_base_url="https://api.openai.com/v1",
        models=("gpt-4o-mini", "gpt-4o", "gpt-4.1-mini"),
        default_model="gpt-4o-mini",
    ),
    "openai-compatible": ProviderInfo(
        id="openai-compatible",
        name="OpenAI-compatible",
        description="Any endpoint implementing POST /chat/completions",
        default_base_url="http://localhost:11434/v1",
    ),
}

DEFAULT_PROVIDER = "deepseek"


def get_provider_info(provider_id: str) -> ProviderInfo:
    """Look up ``provider_id``; raises ``ValueError`` for unknown providers."""

    key = (provider_id or "").strip().lower()
    try:
        return PROVIDERS[key]
    except KeyError:
        known = ", ".join(sorted(PROVIDERS))
        raise ValueError(f"Unknown provider '{provider_id}' (expected one of: {known})") from None


def resolve_client_settings(settings: ClientSettings) -> ClientSettings:
    """Fill an empty base URL or model from the provider's defaults."""

    info = get_provider_info(settings.provider)
    base_url = settings.base_url or info.default_base_url
    model = settings.model or info.default_model
    if not model:
        raise ValueError(f"A model name is required for provider '{info.id}'")
    if base_url == settings.base_url and model == settings.model and info.id == settings.provider:
        return settings
    return replace(settings, provider=info.id, base_url=base_url, model=model)


def create_client(
    settings: ClientSettings,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> CompletionClient:
    """Build the adapter matching ``settings.provider``.

    The ``openai`` provider goes through the official SDK; every other
    provider is spoken to over plain httpx.
    """

    resolved = resolve_client_settings(settings)
    if resolved.provider == "openai":
        LOGGER.debug("Creating SDK-backed client for %s", resolved.model)
        return OpenAIClient(resolved, http_client=http_client)
    LOGGER.debug("Creating HTTP client for %s (%s)", resolved.model, resolved.provider)
    return AIClient(resolved, http_client=http_client)
