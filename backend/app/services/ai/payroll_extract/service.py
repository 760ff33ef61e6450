"""Payroll document extraction: vision model call → canonical ``ExtractionResult``.

The provider is a black box that returns text.  Everything it returns is
validated against the raw contracts before being mapped; nothing downstream
trusts the model output implicitly.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

import httpx
from pydantic import ValidationError

from app.schemas.payroll import (
    AportesListing,
    Beneficiary,
    DocumentClass,
    Entity,
    ExtractionResult,
    ListingTotals,
    MultiTransferReceipt,
    Payer,
    PersonEntry,
    TransferDetails,
    TransferItem,
    TransferReceipt,
)
from app.services.ai.common.json_tools import extract_json_object
from app.services.ai.common.providers import DocumentInput, ProviderResult
from app.services.ai.common.router import SCOPE_PAYROLL_EXTRACT, ResolvedConfig, resolve
from app.services.ai.payroll_extract.contracts import (
    RawListado,
    RawTransferencia,
    RawTransferenciaItem,
    RawTransferenciasMultiples,
)
from app.services.ai.payroll_extract.prompts import (
    OCR_PROMPT_SUFFIX,
    SYSTEM_PROMPT_APORTES,
    SYSTEM_PROMPT_TRANSFERENCIA,
    USER_PROMPT_APORTES,
    USER_PROMPT_TRANSFERENCIA,
)
from app.services.amounts import LocaleHint, coerce_locale, parse_optional_amount
from app.services.errors import ExtractionFailure, ExtractionFailureReason, ParseError
from app.services.identifiers import normalize_tax_id
from app.services.ocr import OcrEngine

logger = logging.getLogger(__name__)

ARGENTINA_TZ = timezone(timedelta(hours=-3), "ART")

LISTING_KEYWORDS = ("listado", "aporte", "fopid", "sueldo", "haberes", "aguinaldo", "concepto", "liquidacion")
TRANSFER_KEYWORDS = ("transfer", "comprobante", "cbu", "pago", "banco")

_MEDIA_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".csv": "text/csv",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

_DATE_RE = re.compile(r"^\s*(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})\s*$")
_TIME_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([ap])?\.?\s*(?:m\.?)?\s*$", re.IGNORECASE)


def fingerprint(content: bytes) -> str:
    """SHA-256 hex digest of the raw bytes; the filename plays no part."""
    return hashlib.sha256(content).hexdigest()


def guess_document_class(filename: str, declared: Optional[Union[str, DocumentClass]] = None) -> DocumentClass:
    """Declared class wins; otherwise filename keywords; unknown defaults to ``APORTES``."""
    if declared:
        return DocumentClass(str(declared).upper())
    lowered = (filename or "").lower()
    if any(keyword in lowered for keyword in TRANSFER_KEYWORDS):
        return DocumentClass.TRANSFERENCIA
    if any(keyword in lowered for keyword in LISTING_KEYWORDS):
        return DocumentClass.APORTES
    return DocumentClass.APORTES


def guess_media_type(filename: str, content: bytes) -> str:
    if content.startswith(b"%PDF"):
        return "application/pdf"
    if content.startswith(b"\x89PNG"):
        return "image/png"
    if content.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    return _MEDIA_TYPES.get(Path(filename or "").suffix.lower(), "application/pdf")


def parse_transfer_timestamp(fecha: Optional[str], hora: Optional[str]) -> Optional[datetime]:
    """``"15/11/2024"`` + ``"10:35 AM"`` → aware datetime (Argentina, UTC-3).

    Unreadable values yield ``None``: the timestamp is informational.
    """
    if not fecha:
        return None
    date_match = _DATE_RE.match(str(fecha))
    if not date_match:
        logger.debug("Unparseable transfer date %r", fecha)
        return None
    day, month, year = (int(part) for part in date_match.groups())

    hour = minute = second = 0
    if hora:
        time_match = _TIME_RE.match(str(hora))
        if time_match:
            hour, minute = int(time_match.group(1)), int(time_match.group(2))
            second = int(time_match.group(3) or 0)
            meridiem = (time_match.group(4) or "").lower()
            if meridiem == "p" and hour < 12:
                hour += 12
            elif meridiem == "a" and hour == 12:
                hour = 0
        else:
            logger.debug("Unparseable transfer time %r", hora)

    try:
        return datetime(year, month, day, hour, minute, second, tzinfo=ARGENTINA_TZ)
    except ValueError:
        logger.debug("Out-of-range transfer timestamp %r %r", fecha, hora)
        return None


# --- Raw → canonical mapping ---


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _count(value: Any) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text.isdigit():
        raise ValueError(f"cantidad de legajos inválida {value!r}")
    return int(text)


def map_listing(raw: RawListado, locale_hint: LocaleHint) -> AportesListing:
    entries = [
        PersonEntry(
            name=persona.nombre.strip(),
            tax_id=normalize_tax_id(persona.cuilCuit),
            total_remunerative=parse_optional_amount(persona.totalRemunerativo, locale_hint),
            legajo_count=_count(persona.cantidadLegajos),
            concept_amount=parse_optional_amount(persona.montoConcepto, locale_hint),
        )
        for persona in raw.personas
    ]
    totals = raw.totales
    return AportesListing(
        entity=Entity(
            name=_text(raw.escuela.nombre),
            address=_text(raw.escuela.direccion),
            tax_id=normalize_tax_id(raw.escuela.cuit),
        ),
        period=_text(raw.periodo),
        concept=_text(raw.concepto),
        document_date=_text(raw.fecha),
        entries=entries,
        totals=ListingTotals(
            person_count=totals.cantidadPersonas if totals.cantidadPersonas is not None else len(entries),
            total_amount=parse_optional_amount(totals.montoTotal, locale_hint),
        ),
    )


def map_transfer_item(raw: RawTransferenciaItem, locale_hint: LocaleHint) -> dict[str, Any]:
    operacion = raw.operacion
    amount = parse_optional_amount(operacion.importe, locale_hint)
    to_transfer = parse_optional_amount(operacion.importeATransferir, locale_hint)
    total = parse_optional_amount(operacion.importeTotal, locale_hint)
    return {
        "transfer": TransferDetails(
            holder=_text(operacion.titular),
            account_id=_text(operacion.cbuDestino),
            operation_number=_text(raw.nroOperacion),
            timestamp=parse_transfer_timestamp(_text(raw.fecha), _text(raw.hora)),
            amount=amount if amount is not None else (to_transfer if to_transfer is not None else total),
            amount_to_transfer=to_transfer,
            total_amount=total,
            source_account=_text(operacion.cuentaOrigen),
            bank=_text(operacion.banco),
            operation_type=_text(operacion.tipoOperacion),
            reference=_text(raw.nroReferencia),
        ),
        "beneficiary": Beneficiary(
            name=_text(operacion.titular),
            tax_id=normalize_tax_id(operacion.cuit),
            address=_text(operacion.domicilioBeneficiario),
            vat_condition=_text(operacion.condicionIva),
        ),
        "payer": Payer(
            name=_text(raw.ordenante.nombre),
            address=_text(raw.ordenante.domicilio),
            tax_id=normalize_tax_id(raw.ordenante.cuit),
            gross_income_tax_id=_text(raw.ordenante.ingresosBrutos),
        ),
    }


def to_extraction_result(raw_text: str, locale_hint: Union[str, LocaleHint] = LocaleHint.EN) -> ExtractionResult:
    """Validate a provider response and map it; raises ``ExtractionFailure`` on any shape problem."""
    hint = coerce_locale(locale_hint) or LocaleHint.EN
    parsed = extract_json_object(raw_text or "")
    if parsed is None:
        raise ExtractionFailure(ExtractionFailureReason.MALFORMED_RESPONSE, "La respuesta del modelo no es un JSON válido")

    tipo = str(parsed.get("tipo") or "").upper()
    try:
        if tipo == "LISTADO_APORTES":
            return map_listing(RawListado.model_validate(parsed), hint)
        if tipo == "TRANSFERENCIA":
            return TransferReceipt(**map_transfer_item(RawTransferencia.model_validate(parsed), hint))
        if tipo == "TRANSFERENCIAS_MULTIPLES":
            raw_multi = RawTransferenciasMultiples.model_validate(parsed)
            resumen = raw_multi.resumen
            return MultiTransferReceipt(
                transfers=[TransferItem(**map_transfer_item(item, hint)) for item in raw_multi.transferencias],
                declared_total=parse_optional_amount(resumen.importeTotal, hint) if resumen else None,
            )
    except (ValidationError, ParseError, ValueError) as exc:
        raise ExtractionFailure(
            ExtractionFailureReason.MALFORMED_RESPONSE,
            f"Respuesta del modelo incompleta o inválida: {exc}",
        ) from exc

    raise ExtractionFailure(
        ExtractionFailureReason.MALFORMED_RESPONSE,
        f"Tipo de documento desconocido en la respuesta: {tipo or 'vacío'}",
    )


# --- Extractor ---


@dataclass(frozen=True)
class ExtractionOptions:
    model: Optional[str] = None
    provider: Optional[str] = None
    allow_ocr: bool = False
    timeout_seconds: Optional[float] = None


_PROMPTS = {
    DocumentClass.APORTES: (SYSTEM_PROMPT_APORTES, USER_PROMPT_APORTES),
    DocumentClass.TRANSFERENCIA: (SYSTEM_PROMPT_TRANSFERENCIA, USER_PROMPT_TRANSFERENCIA),
}


def _timed_out(budget: float, filename: str) -> ExtractionFailure:
    logger.warning("Extraction timed out after %.1fs for %s", budget, filename)
    return ExtractionFailure(
        ExtractionFailureReason.TIMEOUT,
        f"El servicio de extracción no respondió en {budget:.0f} s",
    )


def _time_left(deadline: float, budget: float, filename: str) -> float:
    left = deadline - asyncio.get_running_loop().time()
    if left <= 0:
        raise _timed_out(budget, filename)
    return left


class DocumentExtractor:
    """Wraps the vision provider with a timeout, validation and OCR fallback.

    One deadline covers the whole call: the first provider request, OCR and
    the text retry all draw from the same budget.
    """

    def __init__(
        self,
        *,
        resolver: Callable[..., ResolvedConfig] = resolve,
        ocr: Optional[OcrEngine] = None,
        locale_hint: Union[str, LocaleHint] = LocaleHint.EN,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self._resolver = resolver
        self._ocr = ocr
        self._locale_hint = coerce_locale(locale_hint) or LocaleHint.EN
        self._timeout_seconds = timeout_seconds

    async def _generate(
        self,
        config: ResolvedConfig,
        prompt: str,
        *,
        system_prompt: str,
        document: Optional[DocumentInput],
        timeout: float,
        filename: str,
        budget: Optional[float] = None,
    ) -> ProviderResult:
        try:
            return await asyncio.wait_for(
                config.provider.generate(
                    prompt,
                    document=document,
                    system_prompt=system_prompt,
                    model=config.model,
                    temperature=config.temperature,
                    max_tokens=config.max_tokens,
                    timeout_seconds=timeout,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise _timed_out(budget or timeout, filename) from exc
        except Exception as exc:
            logger.warning("Extraction provider %s failed for %s: %s", config.provider.name, filename, exc)
            raise ExtractionFailure(
                ExtractionFailureReason.UPSTREAM_ERROR,
                "Error del servicio de extracción",
            ) from exc

    async def extract(
        self,
        content: bytes,
        filename: str,
        options: Optional[ExtractionOptions] = None,
        *,
        document_class: Optional[DocumentClass] = None,
    ) -> ExtractionResult:
        options = options or ExtractionOptions()
        doc_class = document_class or guess_document_class(filename)
        config = self._resolver(
            SCOPE_PAYROLL_EXTRACT,
            override_provider=options.provider,
            override_model=options.model,
        )
        timeout = options.timeout_seconds or self._timeout_seconds or config.timeout_seconds
        system_prompt, user_prompt = _PROMPTS[doc_class]
        media_type = guess_media_type(filename, content)
        document = DocumentInput(content=content, media_type=media_type, filename=Path(filename).name or "document")
        deadline = asyncio.get_running_loop().time() + timeout

        result = await self._generate(
            config,
            user_prompt,
            system_prompt=system_prompt,
            document=document,
            timeout=timeout,
            filename=filename,
        )
        try:
            extraction = to_extraction_result(result.raw_text, self._locale_hint)
        except ExtractionFailure as failure:
            if failure.reason != ExtractionFailureReason.MALFORMED_RESPONSE or not options.allow_ocr:
                raise
            extraction = await self._extract_via_ocr(
                config, content, media_type, filename, system_prompt, user_prompt, deadline, timeout, failure
            )

        logger.info(
            "Extracted %s from %s via %s:%s (%.0f ms)",
            extraction.kind,
            filename,
            result.provider,
            result.model,
            result.latency_ms,
        )
        return extraction

    async def _extract_via_ocr(
        self,
        config: ResolvedConfig,
        content: bytes,
        media_type: str,
        filename: str,
        system_prompt: str,
        user_prompt: str,
        deadline: float,
        budget: float,
        original: ExtractionFailure,
    ) -> ExtractionResult:
        if self._ocr is None:
            logger.info("OCR fallback requested for %s but no OCR engine is configured", filename)
            raise original
        try:
            # The worker thread may outlive the wait; the engine bounds its own subprocess.
            ocr_result = await asyncio.wait_for(
                asyncio.to_thread(self._ocr.recognize, content, media_type),
                timeout=_time_left(deadline, budget, filename),
            )
        except asyncio.TimeoutError as exc:
            raise _timed_out(budget, filename) from exc
        if ocr_result is None:
            raise original

        logger.info("Retrying %s with OCR text (%d chars, %s)", filename, len(ocr_result.text), ocr_result.language)
        result = await self._generate(
            config,
            user_prompt + OCR_PROMPT_SUFFIX.format(text=ocr_result.text),
            system_prompt=system_prompt,
            document=None,
            timeout=_time_left(deadline, budget, filename),
            filename=filename,
            budget=budget,
        )
        return to_extraction_result(result.raw_text, self._locale_hint)
