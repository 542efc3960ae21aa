"""AI Router: resolves provider + model for a scope from settings."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from docrecon.core.config import get_settings

from .providers import BaseProvider, get_provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedConfig:
    """Final resolved provider + model."""

    provider: BaseProvider
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: float


def resolve(scope: str, *, override_provider: str | None = None) -> ResolvedConfig:
    """Resolve provider + model for *scope*.

    Only the ``document_extract`` scope exists today; anything else gets the
    mock provider. An explicit ``override_provider`` wins over settings.
    """
    settings = get_settings()

    provider_name = (override_provider or "").strip().lower()
    if not provider_name and scope == "document_extract":
        provider_name = settings.ai_extract_provider
    if not provider_name:
        logger.debug("No provider configured for scope %r; using mock", scope)
        provider_name = "mock"

    provider = get_provider(provider_name)
    model = settings.ai_extract_model if provider.name == provider_name else ""

    return ResolvedConfig(
        provider=provider,
        model=model or provider.default_model,
        temperature=settings.ai_temperature,
        max_tokens=settings.ai_max_tokens,
        timeout_seconds=settings.extraction_timeout_seconds,
    )
