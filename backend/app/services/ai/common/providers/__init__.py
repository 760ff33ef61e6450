"""Provider factory for the extraction scope; anything unusable degrades to the mock."""

from __future__ import annotations

import logging

from app.core.config import get_settings

from .base import BaseProvider, DocumentInput, ProviderResult
from .mock import MockProvider

logger = logging.getLogger(__name__)

__all__ = ["get_provider", "BaseProvider", "DocumentInput", "ProviderResult", "MockProvider"]

# provider name -> (settings attribute holding the key, env var name for log lines)
_API_KEYS = {
    "claude": ("anthropic_api_key", "ANTHROPIC_API_KEY"),
    "openai": ("openai_api_key", "OPENAI_API_KEY"),
}


def _build(name: str, api_key: str) -> BaseProvider:
    if name == "claude":
        from .claude import ClaudeProvider

        return ClaudeProvider(api_key=api_key)
    from .openai import OpenAIProvider

    return OpenAIProvider(api_key=api_key)


def get_provider(provider_name: str) -> BaseProvider:
    settings = get_settings()
    name = (provider_name or "").lower().strip()

    if name == "mock":
        return MockProvider()
    if name not in settings.ai_allowed_providers:
        logger.warning("Provider %r is not in AI_ALLOWED_PROVIDERS; using mock", name)
        return MockProvider()
    if name not in _API_KEYS:
        logger.warning("Unknown provider %r; using mock", name)
        return MockProvider()

    key_attr, env_name = _API_KEYS[name]
    api_key = getattr(settings, key_attr)
    if not api_key:
        logger.warning("%s is not set; using mock for %r", env_name, name)
        return MockProvider()
    return _build(name, api_key)
