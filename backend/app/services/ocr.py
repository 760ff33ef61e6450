"""First-page OCR used as the fallback path for unreadable documents."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

import pytesseract
from pdf2image import convert_from_bytes
from PIL import Image

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGES = "spa+eng"


@dataclass(frozen=True)
class OcrResult:
    text: str
    language: str
    engine: str = "tesseract"


class OcrEngine(Protocol):
    def recognize(self, content: bytes, media_type: str) -> Optional[OcrResult]: ...


class TesseractOcr:
    """Rasterize page one (PDFs) and run tesseract on it.

    Returns ``None`` when anything along the way fails; callers keep their
    original error in that case.
    """

    def __init__(self, languages: str = DEFAULT_LANGUAGES, dpi: int = 200, timeout_seconds: float = 30.0) -> None:
        self.languages = languages
        self.dpi = dpi
        # Both poppler and tesseract run as subprocesses; these kill them on overrun.
        self.timeout_seconds = timeout_seconds

    def _first_page(self, content: bytes, media_type: str) -> Image.Image:
        if media_type == "application/pdf":
            pages = convert_from_bytes(
                content, dpi=self.dpi, first_page=1, last_page=1, timeout=self.timeout_seconds
            )
            if not pages:
                raise ValueError("PDF has no pages")
            return pages[0]
        return Image.open(io.BytesIO(content))

    def recognize(self, content: bytes, media_type: str) -> Optional[OcrResult]:
        try:
            image = self._first_page(content, media_type)
            text = pytesseract.image_to_string(
                image.convert("L"), lang=self.languages, timeout=self.timeout_seconds
            ) or ""
        except Exception:
            logger.warning("OCR failed (media_type=%s)", media_type, exc_info=True)
            return None
        if not text.strip():
            logger.info("OCR produced no text (media_type=%s)", media_type)
            return None
        return OcrResult(text=text, language=self.languages)
