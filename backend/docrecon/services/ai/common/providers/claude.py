"""Anthropic messages-API provider."""

from __future__ import annotations

import time
from typing import Sequence

from .base import Attachment, BaseProvider, ProviderResult

ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"


def _attachment_block(attachment: Attachment) -> dict:
    return {
        "type": "image",
        "source": {"type": "base64", "media_type": attachment.media_type, "data": attachment.data},
    }


class ClaudeProvider(BaseProvider):
    name = "claude"
    default_model = "claude-3-5-haiku-20241022"

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
        content: object = prompt
        if attachments:
            content = [_attachment_block(a) for a in attachments] + [{"type": "text", "text": prompt}]
        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            payload["system"] = system_prompt

        t0 = time.monotonic()
        data = await self._post_json(
            ANTHROPIC_MESSAGES_URL,
            headers={"x-api-key": self._api_key, "anthropic-version": "2023-06-01"},
            payload=payload,
            timeout_seconds=timeout_seconds,
        )
        text = "".join(block.get("text", "") for block in data.get("content") or [] if block.get("type") == "text")
        usage = data.get("usage") or {}
        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round((time.monotonic() - t0) * 1000, 2),
        )
