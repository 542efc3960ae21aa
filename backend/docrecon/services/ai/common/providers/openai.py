"""OpenAI chat-completions provider (JSON mode)."""

from __future__ import annotations

import time
from typing import Sequence

from .base import Attachment, BaseProvider, ProviderResult

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"


class OpenAIProvider(BaseProvider):
    name = "openai"
    default_model = "gpt-4.1-2025-04-14"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

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
        model = model or self.default_model
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if attachments:
            content: list = [{"type": "text", "text": prompt}]
            content.extend(
                {"type": "image_url", "image_url": {"url": f"data:{a.media_type};base64,{a.data}", "detail": "high"}}
                for a in attachments
            )
            messages.append({"role": "user", "content": content})
        else:
            messages.append({"role": "user", "content": prompt})

        t0 = time.monotonic()
        data = await self._post_json(
            OPENAI_CHAT_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            payload={
                "model": model,
                "max_tokens": max_tokens,
                "temperature": temperature,
                "response_format": {"type": "json_object"},
                "messages": messages,
            },
            timeout_seconds=timeout_seconds,
        )
        usage = data.get("usage") or {}
        return ProviderResult(
            raw_text=data["choices"][0]["message"]["content"] or "",
            model=data.get("model") or model,
            provider=self.name,
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
            latency_ms=round((time.monotonic() - t0) * 1000, 2),
        )
