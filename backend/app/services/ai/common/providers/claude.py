"""Anthropic / Claude provider."""

from __future__ import annotations

import logging
import time

from .base import BaseProvider, DocumentInput, ProviderResult

logger = logging.getLogger(__name__)


def _document_block(document: DocumentInput) -> dict:
    block_type = "document" if document.is_pdf else "image"
    return {
        "type": block_type,
        "source": {
            "type": "base64",
            "media_type": document.media_type,
            "data": document.as_base64(),
        },
    }


class ClaudeProvider(BaseProvider):
    name = "claude"

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

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
        import httpx

        model = model or "claude-sonnet-4-20250514"
        t0 = time.monotonic()

        content: list[dict] = []
        if document is not None:
            content.append(_document_block(document))
        content.append({"type": "text", "text": prompt})

        payload: dict = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": [{"role": "user", "content": content}],
        }
        if system_prompt:
            payload["system"] = system_prompt

        async with httpx.AsyncClient(timeout=timeout_seconds) as client:
            resp = await client.post(
                "https://api.anthropic.com/v1/messages",
                headers={
                    "x-api-key": self._api_key,
                    "anthropic-version": "2023-06-01",
                    "content-type": "application/json",
                },
                json=payload,
            )
            resp.raise_for_status()
            data = resp.json()

        elapsed = (time.monotonic() - t0) * 1000
        text = "".join(block.get("text", "") for block in data.get("content", []) if block.get("type") == "text")
        usage = data.get("usage", {})

        return ProviderResult(
            raw_text=text,
            model=model,
            provider=self.name,
            prompt_tokens=usage.get("input_tokens", 0),
            completion_tokens=usage.get("output_tokens", 0),
            latency_ms=round(elapsed, 2),
        )
