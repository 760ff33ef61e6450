import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from sqlalchemy.orm import Session

from app.core.config import get_settings
from app.core.dependencies import get_db, get_extractor, get_preview_store, get_storage
from app.core.storage import BlobStorage
from app.schemas.payroll import BatchPreviewResult, BatchSaveResult, ConfirmBatchRequest, DocumentClass
from app.services.ai.payroll_extract.service import DocumentExtractor, ExtractionOptions
from app.services.errors import ExtractionFailure
from app.services.preview_service import ReconcileOptions, UploadedFile, build_batch_preview, parse_period
from app.services.preview_store import PreviewStore
from app.services.save_service import AuditContext, save_confirmed_request

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_FILES_PER_BATCH = 50


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_agent(request: Request) -> Optional[str]:
    return request.headers.get("user-agent")


def _validate_institution_id(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError:
        raise HTTPException(422, "Identificador de institución inválido") from None


def _declared_class(value: Optional[str]) -> Optional[DocumentClass]:
    if not value:
        return None
    try:
        return DocumentClass(value.strip().upper())
    except ValueError:
        raise HTTPException(422, f"Clase de documento desconocida: {value}") from None


@router.post("/payroll/preview", response_model=BatchPreviewResult)
async def preview_payroll_batch(
    request: Request,
    files: list[UploadFile] = File(...),
    period: str = Form(...),
    institution_id: Optional[str] = Form(None),
    document_class: Optional[str] = Form(None),
    allow_ocr: bool = Form(False),
    db: Session = Depends(get_db),
    extractor: DocumentExtractor = Depends(get_extractor),
    store: PreviewStore = Depends(get_preview_store),
):
    settings = get_settings()
    try:
        parse_period(period)
    except ValueError as exc:
        raise HTTPException(422, str(exc)) from None
    institution_id = _validate_institution_id(institution_id)
    declared = _declared_class(document_class)

    if not files:
        raise HTTPException(400, "No se recibieron archivos")
    if len(files) > MAX_FILES_PER_BATCH:
        raise HTTPException(413, f"Demasiados archivos; máximo {MAX_FILES_PER_BATCH} por lote")

    uploads: list[UploadedFile] = []
    for upload in files:
        content = await upload.read()
        name = upload.filename or "archivo"
        if not content:
            raise HTTPException(400, f"Archivo vacío: {name}")
        if len(content) > settings.max_upload_bytes:
            raise HTTPException(413, f"Archivo demasiado grande: {name}")
        uploads.append(UploadedFile(file_name=name, content=content, declared_class=declared))

    try:
        result = await build_batch_preview(
            db,
            uploads,
            period=period,
            extractor=extractor,
            institution_id=institution_id,
            allow_ocr=allow_ocr,
            options=ReconcileOptions.from_settings(settings),
            extraction_options=ExtractionOptions(timeout_seconds=settings.ai_timeout_seconds),
            concurrency=settings.extraction_concurrency,
            tabular_locale_hint=settings.tabular_locale_hint,
            store=store,
        )
    except ExtractionFailure as exc:
        logger.error("Batch preview aborted from %s: %s", _client_ip(request), exc.message)
        raise HTTPException(502, exc.message) from None
    return result


@router.post("/payroll/confirm", response_model=BatchSaveResult)
def confirm_payroll_batch(
    payload: ConfirmBatchRequest,
    request: Request,
    db: Session = Depends(get_db),
    storage: BlobStorage = Depends(get_storage),
    store: PreviewStore = Depends(get_preview_store),
):
    institution_id = _validate_institution_id(payload.institution_id)
    if institution_id is None:
        raise HTTPException(422, "Falta la institución")
    payload = payload.model_copy(update={"institution_id": institution_id})

    audit = AuditContext(
        actor_type="OPERATOR",
        ip_address=_client_ip(request),
        user_agent=_user_agent(request),
    )
    return save_confirmed_request(db, storage, store, payload, audit=audit)
