import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.payroll_upload import router as payroll_router
from app.core.config import get_settings
from app.core.dependencies import Database
from app.core.storage import build_storage
from app.services.ai.payroll_extract.service import DocumentExtractor
from app.services.ocr import TesseractOcr
from app.services.preview_store import PreviewStore

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Payroll Ingest API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_components():
    # Components already placed on app.state (tests, scripts) are left alone.
    state = app.state
    if getattr(state, "db", None) is None and settings.database_url:
        state.db = Database.from_settings(settings)
    if getattr(state, "storage", None) is None:
        state.storage = build_storage(settings)
    if getattr(state, "preview_store", None) is None:
        state.preview_store = PreviewStore(
            ttl_seconds=settings.preview_ttl_seconds,
            max_sessions=settings.preview_max_sessions,
        )
    if getattr(state, "extractor", None) is None:
        state.extractor = DocumentExtractor(
            ocr=TesseractOcr(timeout_seconds=settings.ai_timeout_seconds),
            locale_hint=settings.ai_locale_hint,
            timeout_seconds=settings.ai_timeout_seconds,
        )
    if getattr(state, "db", None) is None:
        logger.warning("DATABASE_URL is not configured; payroll endpoints will fail")


@app.on_event("shutdown")
async def _shutdown_components():
    database = getattr(app.state, "db", None)
    if database is not None:
        database.dispose()
        app.state.db = None
    store = getattr(app.state, "preview_store", None)
    if store is not None:
        store.reset()


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

app.include_router(payroll_router, prefix="/api/v1", tags=["payroll"])


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and exc.status_code != 502 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Ocurrió un error interno"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={"detail": "Solicitud inválida", "errors": jsonable_encoder(exc.errors())})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Ocurrió un error interno"})


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    if not settings.security_headers_enabled:
        return response

    headers = response.headers
    if "X-Content-Type-Options" not in headers:
        headers["X-Content-Type-Options"] = "nosniff"
    if "X-Frame-Options" not in headers:
        headers["X-Frame-Options"] = "DENY"
    if "Referrer-Policy" not in headers:
        headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if "Cache-Control" not in headers and request.url.path.startswith("/api/v1/payroll"):
        headers["Cache-Control"] = "no-store"

    return response


@app.get("/health")
async def health_check():
    return {"status": "ok"}
