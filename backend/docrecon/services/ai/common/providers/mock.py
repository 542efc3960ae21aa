"""Mock provider: deterministic extraction output for tests and fallback."""

from __future__ import annotations

import json
import time
from typing import Sequence

from .base import Attachment, BaseProvider, ProviderResult

MOCK_EXTRACTION = {
    "items": [
        {
            "field_path": "document.category",
            "value": "general_document",
            "confidence": 0.5,
            "source_snippet": "",
        }
    ]
}


class MockProvider(BaseProvider):
    name = "mock"
    default_model = "mock-v1"

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
        t0 = time.monotonic()
        text = json.dumps(MOCK_EXTRACTION)
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or self.default_model,
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
