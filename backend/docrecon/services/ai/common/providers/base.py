"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Sequence


@dataclass(frozen=True)
class Attachment:
    """Binary document part sent next to the prompt (base64 payload)."""

    media_type: str
    data: str


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement.

    Providers let ``httpx`` errors propagate unchanged (timeouts, transport
    errors, ``HTTPStatusError``); callers decide what is retryable.
    """

    name: str = "base"
    default_model: str = ""

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        model: str = "",
        temperature: float = 0.1,
        max_tokens: int = 2000,
        timeout_seconds: float = 60.0,
        attachments: Sequence[Attachment] | None = None,
    ) -> ProviderResult:
        """Send *prompt* and return a ``ProviderResult``."""

    async def _post_json(
        self,
        url: str,
        *,
        headers: dict[str, str],
        payload: dict[str, Any],
        timeout_seconds: float,
    ) -> dict[str, Any]:
        import httpx

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(url, headers=headers, json=payload)
            resp.raise_for_status()
            return resp.json()
