"""Preview reconciliation: extraction results → reviewable ``BatchPreviewResult``.

Nothing here writes to the database.  Findings are ``Discrepancy`` values, not
exceptions; only infrastructure problems escape as errors.
"""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Optional, Sequence, Union

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.models.payroll import Institution, PayrollPeriod, PdfFile
from app.schemas.payroll import (
    FOPID_PERIOD,
    AportesListing,
    BatchPreviewResult,
    BatchTotals,
    Discrepancy,
    DiscrepancyKind,
    DocumentClass,
    DocumentKind,
    ExtractionResult,
    FileFailure,
    FilePreview,
    InstitutionRef,
    MultiTransferReceipt,
    PersonEntry,
    Severity,
    TransferItem,
    TransferReceipt,
)
from app.services.ai.payroll_extract.service import (
    DocumentExtractor,
    ExtractionOptions,
    fingerprint,
    guess_document_class,
)
from app.services.amounts import (
    MINOR_UNIT,
    ZERO,
    LocaleHint,
    difference,
    format_amount,
    percent_of,
    round_money,
    scaled_tolerance,
    sum_amounts,
    within_tolerance,
)
from app.services.errors import ExtractionFailure, ExtractionFailureReason, ParseError
from app.services.identifiers import format_tax_id, normalize_person_name, normalize_tax_id
from app.services.preview_store import PreviewSession, PreviewStore, StoredDocument
from app.services.tabular_parser import parse_listing

logger = logging.getLogger(__name__)

TABULAR_EXTENSIONS = {".csv", ".txt", ".tsv", ".xlsx", ".xlsm", ".xls"}

_PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")
_FOPID_CONCEPT_RE = re.compile(r"fopid|fondo\s+permanente", re.IGNORECASE)


def parse_period(value: str) -> tuple[int, int]:
    """``"2024-11"`` → ``(2024, 11)``; raises ``ValueError`` otherwise."""
    match = _PERIOD_RE.match((value or "").strip())
    if not match:
        raise ValueError(f"Período inválido {value!r}; se espera AAAA-MM")
    year, month = int(match.group(1)), int(match.group(2))
    if not 1 <= month <= 12:
        raise ValueError(f"Mes inválido en el período {value!r}")
    return year, month


@dataclass(frozen=True)
class ReconcileOptions:
    tolerance_abs: Optional[Decimal] = None  # None: one minor unit per entry
    tolerance_pct: Decimal = Decimal("0.0001")
    cross_tolerance_abs: Decimal = MINOR_UNIT
    batch_tolerance_pct: Decimal = Decimal("0.001")
    batch_tolerance_min: Decimal = Decimal("1")
    concept_ratio_min: Decimal = Decimal("0.5")
    concept_ratio_max: Decimal = Decimal("3")
    transfer_min: Decimal = Decimal("100")
    transfer_max: Decimal = Decimal("100000000")
    transfer_consistency: Decimal = Decimal("1")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconcileOptions":
        return cls(
            tolerance_pct=settings.totals_tolerance_pct,
            batch_tolerance_pct=settings.batch_tolerance_pct,
            batch_tolerance_min=settings.batch_tolerance_min,
        )


@dataclass
class UploadedFile:
    file_name: str
    content: bytes = field(repr=False)
    declared_class: Optional[DocumentClass] = None

    @property
    def is_tabular(self) -> bool:
        return Path(self.file_name).suffix.lower() in TABULAR_EXTENSIONS

    @property
    def stem(self) -> str:
        return Path(self.file_name).stem.lower()


def _warning(kind: DiscrepancyKind, message: str, **extra) -> Discrepancy:
    return Discrepancy(kind=kind, severity=Severity.WARNING, message=message, **extra)


def _error(kind: DiscrepancyKind, message: str, **extra) -> Discrepancy:
    return Discrepancy(kind=kind, severity=Severity.ERROR, message=message, **extra)


# --- Classification ---


def classify_result(result: ExtractionResult) -> DocumentClass:
    if isinstance(result, AportesListing):
        return DocumentClass.APORTES
    return DocumentClass.TRANSFERENCIA


def detect_document_kind(result: ExtractionResult) -> DocumentKind:
    """``FOPID`` for FOPID listings, ``SUELDO`` for other listings, ``COMPROBANTE`` for receipts."""
    if not isinstance(result, AportesListing):
        return DocumentKind.COMPROBANTE
    if (result.period or "").strip().upper() == FOPID_PERIOD:
        return DocumentKind.FOPID
    if result.concept and _FOPID_CONCEPT_RE.search(result.concept):
        return DocumentKind.FOPID
    return DocumentKind.SUELDO


def transfer_items(result: Union[TransferReceipt, MultiTransferReceipt]) -> list[TransferItem]:
    if isinstance(result, MultiTransferReceipt):
        return list(result.transfers)
    return [result]


def result_total(result: ExtractionResult) -> Decimal:
    if isinstance(result, AportesListing):
        return result.totals.total_amount
    return sum_amounts(item.transfer.amount or ZERO for item in transfer_items(result))


def result_tax_id(result: ExtractionResult) -> Optional[str]:
    """The institution CUIT a document points at: listing entity or transfer payer."""
    if isinstance(result, AportesListing):
        return normalize_tax_id(result.entity.tax_id)
    for item in transfer_items(result):
        tax_id = normalize_tax_id(item.payer.tax_id)
        if tax_id:
            return tax_id
    return None


# --- Listing checks ---


def listing_tolerance(listing: AportesListing, options: ReconcileOptions) -> Decimal:
    if options.tolerance_abs is not None:
        return options.tolerance_abs
    return MINOR_UNIT * max(1, len(listing.entries))


def _entry_label(index: int, entry: PersonEntry) -> str:
    return f"fila {index + 1} ({entry.name})"


def reconcile_listing(listing: AportesListing, options: Optional[ReconcileOptions] = None) -> list[Discrepancy]:
    options = options or ReconcileOptions()
    found: list[Discrepancy] = []

    if not listing.entries:
        found.append(_error(DiscrepancyKind.EMPTY_LISTING, "El listado no contiene personas"))
        return found

    if listing.totals.person_count != len(listing.entries):
        found.append(
            _warning(
                DiscrepancyKind.PERSON_COUNT_MISMATCH,
                f"El total declara {listing.totals.person_count} personas pero el detalle tiene "
                f"{len(listing.entries)}",
                field="totals.person_count",
            )
        )

    computed = sum_amounts(entry.concept_amount for entry in listing.entries)
    declared = listing.totals.total_amount
    if not within_tolerance(computed, declared, listing_tolerance(listing, options), options.tolerance_pct):
        delta = difference(computed, declared)
        found.append(
            _warning(
                DiscrepancyKind.TOTALS_MISMATCH,
                f"La suma del detalle ({format_amount(computed)}) difiere del total declarado "
                f"({format_amount(declared)}) en {format_amount(delta)}",
                field="totals.total_amount",
                difference=delta,
            )
        )

    for index, entry in enumerate(listing.entries):
        label = _entry_label(index, entry)
        if entry.concept_amount < 0:
            found.append(
                _error(
                    DiscrepancyKind.NEGATIVE_AMOUNT,
                    f"Monto de concepto negativo en {label}",
                    field=f"entries[{index}].concept_amount",
                )
            )
        if entry.total_remunerative < 0:
            found.append(
                _error(
                    DiscrepancyKind.NEGATIVE_AMOUNT,
                    f"Total remunerativo negativo en {label}",
                    field=f"entries[{index}].total_remunerative",
                )
            )
        if entry.total_remunerative > 0 and entry.concept_amount >= 0:
            ratio = percent_of(entry.concept_amount, entry.total_remunerative)
            if not options.concept_ratio_min <= ratio <= options.concept_ratio_max:
                found.append(
                    _warning(
                        DiscrepancyKind.CONCEPT_RATIO,
                        f"El aporte de {label} es {round_money(ratio)}% del remunerativo "
                        f"(esperado entre {options.concept_ratio_min}% y {options.concept_ratio_max}%)",
                        field=f"entries[{index}].concept_amount",
                    )
                )
    return found


def _match_key_name(entry: PersonEntry) -> Optional[str]:
    return normalize_person_name(entry.name)


def cross_validate(
    extracted: AportesListing,
    tabular: AportesListing,
    tolerance_abs: Decimal = MINOR_UNIT,
) -> list[Discrepancy]:
    """Person-by-person comparison: identifier first, then normalized name."""
    found: list[Discrepancy] = []
    unmatched = list(range(len(tabular.entries)))

    def take(predicate) -> Optional[PersonEntry]:
        for position, tab_index in enumerate(unmatched):
            if predicate(tabular.entries[tab_index]):
                del unmatched[position]
                return tabular.entries[tab_index]
        return None

    for entry in extracted.entries:
        tax_id = normalize_tax_id(entry.tax_id)
        match = take(lambda other: normalize_tax_id(other.tax_id) == tax_id) if tax_id else None
        if match is None:
            name = _match_key_name(entry)
            match = take(lambda other: _match_key_name(other) == name) if name else None
        if match is None:
            found.append(
                _warning(
                    DiscrepancyKind.MISSING_IN_TABULAR,
                    f"{entry.name} figura en el documento pero no en la planilla",
                )
            )
            continue
        for attr, label in (("concept_amount", "monto concepto"), ("total_remunerative", "total remunerativo")):
            ours, theirs = getattr(entry, attr), getattr(match, attr)
            if not within_tolerance(ours, theirs, tolerance_abs):
                delta = difference(ours, theirs)
                found.append(
                    _warning(
                        DiscrepancyKind.AMOUNT_MISMATCH,
                        f"{entry.name}: {label} {format_amount(ours)} en el documento y "
                        f"{format_amount(theirs)} en la planilla",
                        field=attr,
                        difference=delta,
                    )
                )

    for tab_index in unmatched:
        found.append(
            _warning(
                DiscrepancyKind.MISSING_IN_EXTRACTION,
                f"{tabular.entries[tab_index].name} figura en la planilla pero no en el documento",
            )
        )
    return found


# --- Transfer checks ---


def validate_transfer(
    result: Union[TransferReceipt, MultiTransferReceipt],
    options: Optional[ReconcileOptions] = None,
) -> list[Discrepancy]:
    options = options or ReconcileOptions()
    found: list[Discrepancy] = []
    items = transfer_items(result)
    multi = len(items) > 1 or isinstance(result, MultiTransferReceipt)

    for index, item in enumerate(items):
        prefix = f"Transferencia {index + 1}: " if multi else ""
        path = f"transfers[{index}].transfer" if multi else "transfer"
        details = item.transfer

        if details.amount is None:
            found.append(
                _error(DiscrepancyKind.MISSING_FIELD, f"{prefix}falta el importe", field=f"{path}.amount")
            )
        elif details.amount <= 0:
            found.append(
                _error(
                    DiscrepancyKind.AMOUNT_OUT_OF_RANGE,
                    f"{prefix}el importe debe ser positivo ({format_amount(details.amount)})",
                    field=f"{path}.amount",
                )
            )
        elif details.amount > options.transfer_max:
            found.append(
                _error(
                    DiscrepancyKind.AMOUNT_OUT_OF_RANGE,
                    f"{prefix}importe fuera de rango ({format_amount(details.amount)})",
                    field=f"{path}.amount",
                )
            )
        elif details.amount < options.transfer_min:
            found.append(
                _warning(
                    DiscrepancyKind.AMOUNT_OUT_OF_RANGE,
                    f"{prefix}importe sospechosamente bajo ({format_amount(details.amount)})",
                    field=f"{path}.amount",
                )
            )

        if not (details.operation_number or details.reference):
            found.append(
                _error(
                    DiscrepancyKind.MISSING_FIELD,
                    f"{prefix}falta el número de operación o de referencia",
                    field=f"{path}.operation_number",
                )
            )
        if not details.account_id:
            found.append(
                _warning(DiscrepancyKind.MISSING_FIELD, f"{prefix}falta el CBU de destino", field=f"{path}.account_id")
            )

        declared = [v for v in (details.amount, details.amount_to_transfer, details.total_amount) if v is not None]
        if len(declared) >= 2 and max(declared) - min(declared) > options.transfer_consistency:
            found.append(
                _warning(
                    DiscrepancyKind.TRANSFER_AMOUNTS_INCONSISTENT,
                    f"{prefix}los importes del comprobante no coinciden "
                    f"({', '.join(format_amount(v) for v in declared)})",
                    field=f"{path}.amount",
                    difference=max(declared) - min(declared),
                )
            )

    if isinstance(result, MultiTransferReceipt) and result.declared_total is not None:
        computed = sum_amounts(item.transfer.amount or ZERO for item in items)
        if not within_tolerance(computed, result.declared_total, options.transfer_consistency):
            delta = difference(computed, result.declared_total)
            found.append(
                _warning(
                    DiscrepancyKind.TOTALS_MISMATCH,
                    f"La suma de las transferencias ({format_amount(computed)}) difiere del total del "
                    f"resumen ({format_amount(result.declared_total)})",
                    field="declared_total",
                    difference=delta,
                )
            )
    return found


def reconcile_result(result: ExtractionResult, options: Optional[ReconcileOptions] = None) -> list[Discrepancy]:
    if isinstance(result, AportesListing):
        return reconcile_listing(result, options)
    return validate_transfer(result, options)


# --- Batch-level checks ---


def batch_totals(previews: Sequence[FilePreview], options: ReconcileOptions) -> tuple[BatchTotals, list[Discrepancy]]:
    """Listings vs transfers for the whole batch (duplicates excluded)."""
    live = [p for p in previews if not p.is_duplicate]
    listings = sum_amounts(p.total_amount for p in live if p.classification == DocumentClass.APORTES)
    transfers = sum_amounts(p.total_amount for p in live if p.classification == DocumentClass.TRANSFERENCIA)
    delta = difference(listings, transfers)
    tolerance = scaled_tolerance(max(listings, transfers), options.batch_tolerance_pct, options.batch_tolerance_min)
    pct = round_money(percent_of(abs(delta), max(listings, transfers)))
    match = abs(delta) <= tolerance

    found: list[Discrepancy] = []
    has_both = listings != ZERO and transfers != ZERO
    if has_both and not match:
        found.append(
            _warning(
                DiscrepancyKind.BATCH_TOTALS_MISMATCH,
                f"El total de los listados ({format_amount(listings)}) no coincide con el de las "
                f"transferencias ({format_amount(transfers)}): diferencia {format_amount(delta)} ({pct}%)",
                difference=delta,
            )
        )
    return (
        BatchTotals(
            total_listings=listings,
            total_transfers=transfers,
            difference=delta,
            percent_difference=pct,
            match=match or not has_both,
        ),
        found,
    )


def _institution_ref(institution: Institution) -> InstitutionRef:
    return InstitutionRef(
        id=str(institution.id),
        name=institution.name,
        tax_id=format_tax_id(institution.tax_id) or institution.tax_id,
    )


def find_institution_by_tax_id(db: Session, tax_id: Optional[str]) -> Optional[Institution]:
    digits = normalize_tax_id(tax_id)
    if not digits:
        return None
    return db.query(Institution).filter(Institution.tax_id == digits).one_or_none()


def find_existing_file(
    db: Session, institution_id: str, year: int, month: int, content_hash: str
) -> Optional[PdfFile]:
    return (
        db.query(PdfFile)
        .join(PayrollPeriod, PdfFile.period_id == PayrollPeriod.id)
        .filter(
            PdfFile.institution_id == institution_id,
            PdfFile.content_hash == content_hash,
            PayrollPeriod.year == year,
            PayrollPeriod.month == month,
        )
        .first()
    )


def _resolve_institutions(
    db: Session,
    previews: list[FilePreview],
    explicit_institution_id: Optional[str],
) -> tuple[Optional[Institution], list[Discrepancy]]:
    found: list[Discrepancy] = []
    explicit: Optional[Institution] = None
    if explicit_institution_id:
        explicit = db.get(Institution, explicit_institution_id)
        if explicit is None:
            found.append(
                _error(DiscrepancyKind.INSTITUTION_NOT_FOUND, "La institución indicada no existe")
            )

    resolved: dict[str, Institution] = {}
    for preview in previews:
        tax_id = result_tax_id(preview.result)
        if not tax_id:
            continue
        institution = find_institution_by_tax_id(db, tax_id)
        if institution is None:
            preview.discrepancies.append(
                _error(
                    DiscrepancyKind.INSTITUTION_NOT_FOUND,
                    f"No hay una institución registrada con CUIT {format_tax_id(tax_id) or tax_id}",
                )
            )
            continue
        preview.institution = _institution_ref(institution)
        resolved[str(institution.id)] = institution

    if explicit is not None:
        others = [inst for key, inst in resolved.items() if key != str(explicit.id)]
        if others:
            found.append(
                _error(
                    DiscrepancyKind.MIXED_INSTITUTIONS,
                    "Hay archivos de otra institución en el lote: " + ", ".join(sorted(i.name for i in others)),
                )
            )
        return explicit, found

    if len(resolved) > 1:
        found.append(
            _error(
                DiscrepancyKind.MIXED_INSTITUTIONS,
                "El lote mezcla archivos de varias instituciones: "
                + ", ".join(sorted(i.name for i in resolved.values())),
            )
        )
        return None, found
    if len(resolved) == 1:
        return next(iter(resolved.values())), found

    if not explicit_institution_id:
        found.append(
            _error(DiscrepancyKind.INSTITUTION_NOT_FOUND, "No se pudo determinar la institución del lote")
        )
    return None, found


def _flag_duplicates(
    db: Session,
    previews: list[FilePreview],
    institution: Optional[Institution],
    year: int,
    month: int,
) -> None:
    seen: dict[str, str] = {}
    for preview in previews:
        first = seen.get(preview.content_hash)
        if first is not None:
            preview.is_duplicate = True
            preview.duplicate_of = first
            preview.discrepancies.append(
                _error(DiscrepancyKind.DUPLICATE_UPLOAD, f"Archivo idéntico a {first} en este mismo lote")
            )
            continue
        seen[preview.content_hash] = preview.file_name
        if institution is None:
            continue
        existing = find_existing_file(db, institution.id, year, month, preview.content_hash)
        if existing is not None:
            preview.is_duplicate = True
            preview.duplicate_of = str(existing.id)
            preview.discrepancies.append(
                _error(
                    DiscrepancyKind.DUPLICATE_UPLOAD,
                    f"Este archivo ya fue cargado para el período ({existing.file_name})",
                )
            )


# --- Orchestration ---


async def _extract_one(
    extractor: DocumentExtractor,
    upload: UploadedFile,
    options: ExtractionOptions,
    semaphore: asyncio.Semaphore,
) -> Union[ExtractionResult, ExtractionFailure]:
    async with semaphore:
        try:
            return await extractor.extract(
                upload.content,
                upload.file_name,
                options,
                document_class=guess_document_class(upload.file_name, upload.declared_class),
            )
        except ExtractionFailure as failure:
            logger.warning("Extraction failed for %s (%s): %s", upload.file_name, failure.reason, failure.message)
            return failure


def _build_preview(
    upload: UploadedFile,
    content_hash: str,
    result: ExtractionResult,
    source: str,
    options: ReconcileOptions,
) -> FilePreview:
    return FilePreview(
        file_name=upload.file_name,
        content_hash=content_hash,
        classification=classify_result(result),
        kind=detect_document_kind(result),
        source=source,
        result=result,
        total_amount=result_total(result),
        discrepancies=reconcile_result(result, options),
    )


async def build_batch_preview(
    db: Session,
    uploads: Sequence[UploadedFile],
    *,
    period: str,
    extractor: DocumentExtractor,
    institution_id: Optional[str] = None,
    allow_ocr: bool = False,
    options: Optional[ReconcileOptions] = None,
    extraction_options: Optional[ExtractionOptions] = None,
    concurrency: int = 3,
    tabular_locale_hint: Union[str, LocaleHint] = LocaleHint.AR,
    store: Optional[PreviewStore] = None,
) -> BatchPreviewResult:
    """Extract, parse and reconcile one upload batch.

    Per-file parse/extraction failures become ``FileFailure`` entries.  If every
    AI extraction fails because the provider is unreachable, that is raised as a
    batch-level ``ExtractionFailure``.
    """
    year, month = parse_period(period)
    options = options or ReconcileOptions()
    base_options = extraction_options or ExtractionOptions()
    extraction_options = ExtractionOptions(
        model=base_options.model,
        provider=base_options.provider,
        allow_ocr=allow_ocr or base_options.allow_ocr,
        timeout_seconds=base_options.timeout_seconds,
    )

    hashes = [fingerprint(upload.content) for upload in uploads]
    failures: dict[int, FileFailure] = {}
    results: dict[int, tuple[ExtractionResult, str]] = {}

    # Tabular files parse synchronously; they never leave the process.
    for index, upload in enumerate(uploads):
        if not upload.is_tabular:
            continue
        try:
            parsed = parse_listing(upload.content, Path(upload.file_name).suffix, locale_hint=tabular_locale_hint)
        except ParseError as exc:
            logger.info("Tabular parse rejected %s: %s", upload.file_name, exc.message)
            failures[index] = FileFailure(
                file_name=upload.file_name,
                content_hash=hashes[index],
                stage="parse",
                error_kind=str(exc.kind),
                message=exc.message,
            )
            continue
        results[index] = (parsed.listing, "tabular")

    ai_indexes = [index for index, upload in enumerate(uploads) if not upload.is_tabular]
    semaphore = asyncio.Semaphore(max(1, concurrency))
    outcomes = await asyncio.gather(
        *(_extract_one(extractor, uploads[i], extraction_options, semaphore) for i in ai_indexes)
    )
    for index, outcome in zip(ai_indexes, outcomes):
        if isinstance(outcome, ExtractionFailure):
            failures[index] = FileFailure(
                file_name=uploads[index].file_name,
                content_hash=hashes[index],
                stage="extraction",
                error_kind=str(outcome.reason),
                message=outcome.message,
            )
        else:
            results[index] = (outcome, "ai")

    upstream_down = [
        i for i in ai_indexes if i in failures and failures[i].error_kind == ExtractionFailureReason.UPSTREAM_ERROR
    ]
    if ai_indexes and len(upstream_down) == len(ai_indexes) and not results:
        raise ExtractionFailure(
            ExtractionFailureReason.UPSTREAM_ERROR,
            "El servicio de extracción no está disponible",
        )

    # Pair a tabular listing with the AI listing of the same document (same file stem).
    ai_listing_by_stem = {
        uploads[i].stem: i
        for i, (result, source) in results.items()
        if source == "ai" and isinstance(result, AportesListing)
    }
    companions: dict[int, int] = {}
    for i, (result, source) in results.items():
        if source == "tabular" and uploads[i].stem in ai_listing_by_stem:
            companions[ai_listing_by_stem[uploads[i].stem]] = i

    previews: list[FilePreview] = []
    for index, upload in enumerate(uploads):
        if index not in results or index in companions.values():
            continue
        result, source = results[index]
        preview = _build_preview(upload, hashes[index], result, source, options)
        companion = companions.get(index)
        if companion is not None:
            tabular_listing = results[companion][0]
            preview.cross_checked_with = uploads[companion].file_name
            preview.discrepancies.extend(cross_validate(result, tabular_listing, options.cross_tolerance_abs))
        previews.append(preview)

    institution, batch_findings = _resolve_institutions(db, previews, institution_id)
    if institution is not None:
        ref = _institution_ref(institution)
        for preview in previews:
            preview.institution = preview.institution or ref
    _flag_duplicates(db, previews, institution, year, month)

    totals, totals_findings = batch_totals(previews, options)
    batch_findings.extend(totals_findings)

    session = PreviewSession(period=period, institution_id=str(institution.id) if institution else None)
    for index, upload in enumerate(uploads):
        if index in results:
            session.add(StoredDocument(file_name=upload.file_name, content_hash=hashes[index], content=upload.content))
    token = store.put(session) if store is not None else secrets.token_urlsafe(24)

    has_errors = any(p.has_errors for p in previews) or any(d.severity == Severity.ERROR for d in batch_findings)
    blocking_batch = any(
        d.kind in {DiscrepancyKind.INSTITUTION_NOT_FOUND, DiscrepancyKind.MIXED_INSTITUTIONS} for d in batch_findings
    )
    confirmable = institution is not None and not blocking_batch and any(not p.is_duplicate for p in previews)

    logger.info(
        "Preview built: files=%d previews=%d failures=%d duplicates=%d confirmable=%s",
        len(uploads),
        len(previews),
        len(failures),
        sum(1 for p in previews if p.is_duplicate),
        confirmable,
    )
    return BatchPreviewResult(
        session_token=token,
        period=period,
        institution=_institution_ref(institution) if institution else None,
        files=previews,
        failures=[failures[i] for i in sorted(failures)],
        discrepancies=batch_findings,
        totals=totals,
        has_errors=has_errors,
        confirmable=confirmable,
    )

