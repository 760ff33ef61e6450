"""Atomic persistence of a confirmed preview.

Each document is its own database transaction: period, members, the
``PdfFile`` row and its children commit together or not at all.  The original
bytes are written to blob storage only after that commit; a failed write
leaves a ``PARTIAL`` outcome that needs operator remediation
(``scripts/verify_storage.py``).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.storage import BlobStorage, StorageError, build_object_path
from app.models.payroll import BankTransfer, ContributionLine, Institution, Member, PayrollPeriod, PdfFile
from app.schemas.payroll import (
    AportesListing,
    BatchSaveResult,
    BatchSaveStatus,
    ConfirmBatchRequest,
    ConfirmedBatch,
    ConfirmedDocument,
    DocumentKind,
    FileSaveOutcome,
    MultiTransferReceipt,
    PersonEntry,
    SaveStatus,
)
from app.services.ai.payroll_extract.service import fingerprint, guess_media_type
from app.services.amounts import ZERO, round_money, sum_amounts
from app.services.audit import (
    ACTION_PDF_FILE_DUPLICATE_REJECTED,
    ACTION_PDF_FILE_SAVED,
    ACTION_PDF_FILE_STORAGE_MISSING,
    create_audit_log,
)
from app.services.errors import DuplicateUpload, PersistenceFailure
from app.services.identifiers import normalize_person_name, normalize_tax_id
from app.services.preview_service import (
    classify_result,
    find_existing_file,
    parse_period,
    result_total,
    transfer_items,
)
from app.services.preview_store import PreviewSession, PreviewStore

logger = logging.getLogger(__name__)

_LISTING_KINDS = {DocumentKind.SUELDO, DocumentKind.FOPID}
_SAVED_STATUSES = {SaveStatus.SAVED, SaveStatus.PARTIAL}


@dataclass(frozen=True)
class AuditContext:
    actor_type: str = "SYSTEM"
    actor_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def _short(content_hash: str) -> str:
    return content_hash[:12]


def get_or_create_period(db: Session, institution_id, year: int, month: int) -> PayrollPeriod:
    period = (
        db.query(PayrollPeriod)
        .filter(
            PayrollPeriod.institution_id == institution_id,
            PayrollPeriod.year == year,
            PayrollPeriod.month == month,
        )
        .one_or_none()
    )
    if period is None:
        period = PayrollPeriod(institution_id=institution_id, year=year, month=month)
        db.add(period)
        db.flush()
    return period


def resolve_member(db: Session, institution_id, entry: PersonEntry) -> Member:
    """Lookup-or-create by CUIT, falling back to the normalized name.

    A name match on a member without CUIT adopts the CUIT, so the same person
    is never stored twice for one institution.
    """
    tax_id = normalize_tax_id(entry.tax_id)
    name_key = normalize_person_name(entry.name) or entry.name
    query = db.query(Member).filter(Member.institution_id == institution_id)

    if tax_id:
        member = query.filter(Member.tax_id == tax_id).one_or_none()
        if member is not None:
            return member
        member = query.filter(Member.tax_id.is_(None), Member.normalized_name == name_key).first()
        if member is not None:
            member.tax_id = tax_id
            return member
    else:
        member = query.filter(Member.normalized_name == name_key).first()
        if member is not None:
            return member

    member = Member(
        institution_id=institution_id,
        tax_id=tax_id,
        full_name=entry.name.strip(),
        normalized_name=name_key,
    )
    db.add(member)
    return member


def find_duplicate(db: Session, institution_id, period_id, content_hash: str) -> Optional[PdfFile]:
    return (
        db.query(PdfFile)
        .filter(
            PdfFile.institution_id == institution_id,
            PdfFile.period_id == period_id,
            PdfFile.content_hash == content_hash,
        )
        .first()
    )


def _insert_listing(db: Session, institution_id, pdf_file: PdfFile, listing: AportesListing) -> int:
    count = 0
    for entry in listing.entries:
        member = resolve_member(db, institution_id, entry)
        db.flush()
        db.add(
            ContributionLine(
                pdf_file_id=pdf_file.id,
                member_id=member.id,
                total_remunerative=round_money(entry.total_remunerative),
                legajo_count=entry.legajo_count,
                concept_amount=round_money(entry.concept_amount),
            )
        )
        # Flush per line so a constraint violation surfaces on the offending row.
        db.flush()
        count += 1
    return count


def _insert_transfer(db: Session, pdf_file: PdfFile, document: ConfirmedDocument) -> BankTransfer:
    items = transfer_items(document.result)
    first = items[0]
    amount = sum_amounts(item.transfer.amount or ZERO for item in items)
    if isinstance(document.result, MultiTransferReceipt) and amount == ZERO and document.result.declared_total:
        amount = document.result.declared_total
    transfer = BankTransfer(
        pdf_file_id=pdf_file.id,
        transfer_at=first.transfer.timestamp,
        amount=round_money(amount),
        transfer_count=len(items),
        operation_number=first.transfer.operation_number,
        reference=first.transfer.reference,
        holder=first.transfer.holder,
        account_id=first.transfer.account_id,
        source_account=first.transfer.source_account,
        bank=first.transfer.bank,
        operation_type=first.transfer.operation_type,
        beneficiary_name=first.beneficiary.name,
        beneficiary_tax_id=normalize_tax_id(first.beneficiary.tax_id),
        payer_name=first.payer.name,
        payer_tax_id=normalize_tax_id(first.payer.tax_id),
    )
    db.add(transfer)
    db.flush()
    return transfer


def _check_document(document: ConfirmedDocument) -> None:
    if fingerprint(document.content) != document.content_hash:
        raise PersistenceFailure("El contenido del archivo no coincide con su huella (SHA-256)")
    is_listing = isinstance(document.result, AportesListing)
    if is_listing != (document.kind in _LISTING_KINDS):
        raise PersistenceFailure(f"El tipo {document.kind} no corresponde al contenido del documento")


def _audit_duplicate(
    db: Session,
    document: ConfirmedDocument,
    existing: Optional[PdfFile],
    audit: AuditContext,
) -> None:
    if existing is None:
        return
    try:
        create_audit_log(
            db,
            entity_type="pdf_file",
            entity_id=str(existing.id),
            action=ACTION_PDF_FILE_DUPLICATE_REJECTED,
            old_value=None,
            new_value={"file_name": document.file_name, "content_hash": document.content_hash},
            actor_type=audit.actor_type,
            actor_id=audit.actor_id,
            ip_address=audit.ip_address,
            user_agent=audit.user_agent,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to audit duplicate rejection for %s", _short(document.content_hash))


def _persist_document(
    db: Session,
    institution: Institution,
    year: int,
    month: int,
    document: ConfirmedDocument,
    storage_path: str,
    audit: AuditContext,
) -> FileSaveOutcome:
    """One file, one transaction.  Raises ``DuplicateUpload`` / ``SQLAlchemyError``."""
    period = get_or_create_period(db, institution.id, year, month)
    existing = find_duplicate(db, institution.id, period.id, document.content_hash)
    if existing is not None:
        raise DuplicateUpload(document.content_hash, str(existing.id))

    result = document.result
    is_listing = isinstance(result, AportesListing)
    total = result_total(result)
    pdf_file = PdfFile(
        institution_id=institution.id,
        period_id=period.id,
        file_name=document.file_name,
        kind=str(document.kind),
        classification=str(classify_result(result)),
        concept=result.concept if is_listing else "Transferencia bancaria",
        people_count=len(result.entries) if is_listing else None,
        total_amount=round_money(total),
        storage_path=storage_path,
        content_hash=document.content_hash,
    )
    db.add(pdf_file)
    db.flush()

    line_count = 0
    bank_transfer_id = None
    if is_listing:
        line_count = _insert_listing(db, institution.id, pdf_file, result)
    else:
        bank_transfer_id = str(_insert_transfer(db, pdf_file, document).id)

    create_audit_log(
        db,
        entity_type="pdf_file",
        entity_id=str(pdf_file.id),
        action=ACTION_PDF_FILE_SAVED,
        old_value=None,
        new_value={
            "file_name": document.file_name,
            "kind": str(document.kind),
            "period": f"{year:04d}-{month:02d}",
            "total_amount": str(round_money(total)),
            "contribution_lines": line_count,
            "storage_path": storage_path,
        },
        actor_type=audit.actor_type,
        actor_id=audit.actor_id,
        ip_address=audit.ip_address,
        user_agent=audit.user_agent,
        metadata={"content_hash": document.content_hash},
    )
    db.commit()

    return FileSaveOutcome(
        file_name=document.file_name,
        content_hash=document.content_hash,
        status=SaveStatus.SAVED,
        pdf_file_id=str(pdf_file.id),
        contribution_line_count=line_count,
        bank_transfer_id=bank_transfer_id,
        storage_path=storage_path,
    )


def _store_blob(
    db: Session,
    storage: BlobStorage,
    document: ConfirmedDocument,
    outcome: FileSaveOutcome,
    audit: AuditContext,
) -> FileSaveOutcome:
    media_type = guess_media_type(document.file_name, document.content)
    try:
        storage.write(outcome.storage_path, document.content, media_type)
        return outcome
    except StorageError as exc:
        logger.error(
            "Blob write failed after commit for pdf_file=%s hash=%s: %s",
            outcome.pdf_file_id,
            _short(document.content_hash),
            exc,
        )

    try:
        create_audit_log(
            db,
            entity_type="pdf_file",
            entity_id=outcome.pdf_file_id,
            action=ACTION_PDF_FILE_STORAGE_MISSING,
            old_value=None,
            new_value={"storage_path": outcome.storage_path},
            actor_type=audit.actor_type,
            actor_id=audit.actor_id,
            ip_address=audit.ip_address,
            user_agent=audit.user_agent,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to audit missing blob for pdf_file=%s", outcome.pdf_file_id)

    return outcome.model_copy(
        update={
            "status": SaveStatus.PARTIAL,
            "message": "Datos guardados, pero el archivo original no pudo almacenarse; requiere atención",
        }
    )


def save_document(
    db: Session,
    storage: BlobStorage,
    institution: Institution,
    year: int,
    month: int,
    document: ConfirmedDocument,
    audit: Optional[AuditContext] = None,
) -> FileSaveOutcome:
    audit = audit or AuditContext()

    def outcome(status: SaveStatus, message: Optional[str] = None, **extra) -> FileSaveOutcome:
        return FileSaveOutcome(
            file_name=document.file_name,
            content_hash=document.content_hash,
            status=status,
            message=message,
            **extra,
        )

    try:
        _check_document(document)
    except PersistenceFailure as exc:
        logger.warning("Rejected %s before saving: %s", document.file_name, exc)
        return outcome(SaveStatus.FAILED, str(exc))

    storage_path = build_object_path(str(institution.id), year, month, document.content_hash, document.file_name)
    try:
        saved = _persist_document(db, institution, year, month, document, storage_path, audit)
    except DuplicateUpload as dup:
        db.rollback()
        logger.info("Duplicate upload rejected: hash=%s", _short(dup.content_hash))
        existing = find_existing_file(db, institution.id, year, month, document.content_hash)
        _audit_duplicate(db, document, existing, audit)
        return outcome(SaveStatus.DUPLICATE, "El archivo ya fue cargado para este período", pdf_file_id=dup.existing_file_id)
    except IntegrityError:
        db.rollback()
        # The unique constraint is the last word on concurrent saves of the same bytes.
        existing = find_existing_file(db, institution.id, year, month, document.content_hash)
        if existing is not None:
            logger.info("Duplicate upload caught by constraint: hash=%s", _short(document.content_hash))
            _audit_duplicate(db, document, existing, audit)
            return outcome(SaveStatus.DUPLICATE, "El archivo ya fue cargado para este período", pdf_file_id=str(existing.id))
        logger.exception("Integrity error saving %s", document.file_name)
        return outcome(SaveStatus.FAILED, "Los datos no cumplen las restricciones de la base de datos")
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Database error saving %s", document.file_name)
        return outcome(SaveStatus.FAILED, "Error de base de datos; no se guardó ningún dato del archivo")

    return _store_blob(db, storage, document, saved, audit)


def batch_status(outcomes: list[FileSaveOutcome]) -> BatchSaveStatus:
    saved = sum(1 for item in outcomes if item.status in _SAVED_STATUSES)
    if outcomes and saved == len(outcomes):
        return BatchSaveStatus.ALL_SAVED
    if saved == 0:
        return BatchSaveStatus.NOTHING_SAVED
    return BatchSaveStatus.PARTIALLY_SAVED


def _batch_result(outcomes: list[FileSaveOutcome], period_id: Optional[str] = None) -> BatchSaveResult:
    return BatchSaveResult(
        status=batch_status(outcomes),
        period_id=period_id,
        files=outcomes,
        requires_attention=any(item.status == SaveStatus.PARTIAL for item in outcomes),
    )


def save_batch(
    db: Session,
    storage: BlobStorage,
    batch: ConfirmedBatch,
    *,
    is_cancelled: Optional[Callable[[], bool]] = None,
    audit: Optional[AuditContext] = None,
) -> BatchSaveResult:
    """Persist every confirmed document; one transaction per document.

    ``is_cancelled`` is polled between documents: once it returns ``True`` the
    remaining documents are reported as ``SKIPPED`` and never started.
    """
    institution = db.get(Institution, batch.institution_id)
    if institution is None:
        outcomes = [
            FileSaveOutcome(
                file_name=doc.file_name,
                content_hash=doc.content_hash,
                status=SaveStatus.FAILED,
                message="La institución no existe",
            )
            for doc in batch.documents
        ]
        return _batch_result(outcomes)

    outcomes: list[FileSaveOutcome] = []
    for document in batch.documents:
        if is_cancelled is not None and is_cancelled():
            outcomes.append(
                FileSaveOutcome(
                    file_name=document.file_name,
                    content_hash=document.content_hash,
                    status=SaveStatus.SKIPPED,
                    message="Operación cancelada antes de procesar este archivo",
                )
            )
            continue
        outcomes.append(save_document(db, storage, institution, batch.year, batch.month, document, audit))

    period = (
        db.query(PayrollPeriod)
        .filter(
            PayrollPeriod.institution_id == institution.id,
            PayrollPeriod.year == batch.year,
            PayrollPeriod.month == batch.month,
        )
        .one_or_none()
    )
    result = _batch_result(outcomes, str(period.id) if period is not None else None)
    logger.info(
        "Batch saved: institution=%s period=%04d-%02d status=%s files=%d",
        institution.id,
        batch.year,
        batch.month,
        result.status,
        len(outcomes),
    )
    return result


def _scope_mismatch(session: PreviewSession, institution_id: str, year: int, month: int) -> Optional[str]:
    """The confirm must target the institution and period the preview was checked against."""
    if session.institution_id is None:
        return "La vista previa no identificó una institución; no se puede confirmar"
    if session.institution_id.lower() != (institution_id or "").strip().lower():
        return "La institución no coincide con la de la vista previa"
    if parse_period(session.period) != (year, month):
        return f"El período no coincide con el de la vista previa ({session.period})"
    return None


def save_confirmed_request(
    db: Session,
    storage: BlobStorage,
    store: PreviewStore,
    request: ConfirmBatchRequest,
    *,
    is_cancelled: Optional[Callable[[], bool]] = None,
    audit: Optional[AuditContext] = None,
) -> BatchSaveResult:
    """Join the reviewed data with the bytes held for the preview token, then save."""
    year, month = parse_period(request.period)
    session = store.get(request.session_token)
    scope_error = _scope_mismatch(session, request.institution_id, year, month) if session is not None else None
    if scope_error:
        logger.warning("Confirm rejected for token scope: %s", scope_error)

    missing: dict[int, FileSaveOutcome] = {}
    documents: list[tuple[int, ConfirmedDocument]] = []
    for index, item in enumerate(request.files):
        stored = session.documents.get(item.content_hash) if session is not None and not scope_error else None
        if stored is None:
            if session is None:
                message = "La sesión de vista previa expiró; vuelva a subir el archivo"
            else:
                message = scope_error or "El archivo no pertenece a esta vista previa"
            missing[index] = FileSaveOutcome(
                file_name=item.file_name,
                content_hash=item.content_hash,
                status=SaveStatus.FAILED,
                message=message,
            )
            continue
        documents.append(
            (
                index,
                ConfirmedDocument(
                    file_name=item.file_name,
                    content_hash=item.content_hash,
                    kind=item.kind,
                    result=item.result,
                    content=stored.content,
                ),
            )
        )

    saved = save_batch(
        db,
        storage,
        ConfirmedBatch(
            institution_id=request.institution_id,
            year=year,
            month=month,
            documents=[doc for _, doc in documents],
        ),
        is_cancelled=is_cancelled,
        audit=audit,
    )

    by_index = dict(missing)
    for (index, _), item in zip(documents, saved.files):
        by_index[index] = item
    outcomes = [by_index[i] for i in sorted(by_index)]

    result = _batch_result(outcomes, saved.period_id)
    if result.status == BatchSaveStatus.ALL_SAVED:
        store.discard(request.session_token)
    return result

