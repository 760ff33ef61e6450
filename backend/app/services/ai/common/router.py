"""Provider/model resolution for AI extraction calls.

Precedence, first non-empty wins: request override (only with
``ENABLE_AI_OVERRIDES``), the scope's environment settings, then ``mock``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.core.config import Settings, get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)

SCOPE_PAYROLL_EXTRACT = "payroll_extract"

# scope -> (provider setting, model setting)
_SCOPE_SETTINGS = {
    SCOPE_PAYROLL_EXTRACT: ("ai_extract_provider", "ai_extract_model"),
}


@dataclass(frozen=True)
class ResolvedConfig:
    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float


def _first_non_empty(*values: str | None) -> str:
    for value in values:
        if value and value.strip():
            return value.strip()
    return ""


def _allowed_model(provider_name: str, model: str, settings: Settings) -> str:
    """Clamp *model* to the provider's allowlist; an empty allowlist accepts anything."""
    allowed = settings.ai_allowed_models.get(provider_name, [])
    if not allowed:
        return model
    if not model:
        return allowed[0]
    if model not in allowed:
        logger.warning("Model %r is not allowed for %r; using %r", model, provider_name, allowed[0])
        return allowed[0]
    return model


def resolve(
    scope: str,
    *,
    override_provider: str | None = None,
    override_model: str | None = None,
) -> ResolvedConfig:
    try:
        provider_attr, model_attr = _SCOPE_SETTINGS[scope]
    except KeyError:
        raise ValueError(f"Unknown AI scope: {scope!r}") from None

    settings = get_settings()
    if not settings.enable_ai_overrides:
        override_provider = override_model = None

    provider_name = _first_non_empty(override_provider, getattr(settings, provider_attr)).lower() or "mock"
    model = _first_non_empty(override_model, getattr(settings, model_attr))
    model = _allowed_model(provider_name, model, settings)

    return ResolvedConfig(
        provider=get_provider(provider_name),
        model=model,
        temperature=settings.ai_temperature,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=settings.ai_timeout_seconds,
    )
