"""Abstract base for all AI providers."""

from __future__ import annotations

import abc
import base64
from dataclasses import dataclass, field

PDF_MEDIA_TYPE = "application/pdf"


@dataclass(frozen=True)
class ProviderResult:
    """Immutable result returned by every provider."""

    raw_text: str
    model: str
    provider: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


@dataclass(frozen=True)
class DocumentInput:
    """A binary document (PDF or page image) attached to a prompt."""

    content: bytes = field(repr=False)
    media_type: str = PDF_MEDIA_TYPE
    filename: str = "document.pdf"

    @property
    def is_pdf(self) -> bool:
        return self.media_type == PDF_MEDIA_TYPE

    def as_base64(self) -> str:
        return base64.b64encode(self.content).decode("ascii")

    def as_data_uri(self) -> str:
        return f"data:{self.media_type};base64,{self.as_base64()}"


class BaseProvider(abc.ABC):
    """Contract that every AI provider must implement."""

    name: str = "base"

    @abc.abstractmethod
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
        """Send *prompt* (plus optional *document*) and return a ``ProviderResult``."""
