"""Mock provider: deterministic responses for tests and fallback."""

from __future__ import annotations

import time
from collections import deque
from typing import Iterable

from .base import BaseProvider, DocumentInput, ProviderResult

# Deliberately not a document shape: an unconfigured deployment must not invent payroll data.
DEFAULT_MOCK_RESPONSE = '{"tipo": "MOCK"}'


class MockProvider(BaseProvider):
    name = "mock"

    def __init__(self, responses: str | Iterable[str] | None = None) -> None:
        if responses is None:
            responses = [DEFAULT_MOCK_RESPONSE]
        elif isinstance(responses, str):
            responses = [responses]
        self._responses = deque(responses)
        self.calls: list[dict] = []

    async def generate(
        self,
        prompt: str,
        *,
        document: DocumentInput | None = None,
        system_prompt: str | None = None,
        model: str = "",
        temperature: float = 0.0,
        max_tokens: int = 8192,
        timeout_seconds: float = 60.0,
    ) -> ProviderResult:
        t0 = time.monotonic()
        self.calls.append({"prompt": prompt, "has_document": document is not None, "model": model})
        # The last queued response repeats once the queue is down to one.
        text = self._responses.popleft() if len(self._responses) > 1 else self._responses[0]
        elapsed = (time.monotonic() - t0) * 1000
        return ProviderResult(
            raw_text=text,
            model=model or "mock-v1",
            provider=self.name,
            prompt_tokens=len(prompt.split()),
            completion_tokens=len(text.split()),
            latency_ms=round(elapsed, 2),
        )
