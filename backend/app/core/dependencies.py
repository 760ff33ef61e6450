from collections.abc import Generator
from typing import Optional

from fastapi import Request
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings, get_settings
from app.core.storage import BlobStorage
from app.services.ai.payroll_extract.service import DocumentExtractor
from app.services.preview_store import PreviewStore


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _is_memory_sqlite(url: str) -> bool:
    return url in {"sqlite://", "sqlite:///:memory:"} or "mode=memory" in url


class Database:
    """Engine + session factory with an explicit lifecycle.

    Built once at startup, kept on ``app.state.db`` and disposed on shutdown.
    """

    def __init__(self, url: str) -> None:
        if not url:
            raise RuntimeError("DATABASE_URL is not configured")
        self.url = url
        self.engine = self._build_engine(url)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @staticmethod
    def _build_engine(url: str) -> Engine:
        if not _is_sqlite(url):
            return create_engine(url, pool_pre_ping=True)

        # FastAPI runs sync DB work in a threadpool, so the connection must be usable across threads.
        connect_args = {"check_same_thread": False, "timeout": 30}
        if _is_memory_sqlite(url):
            engine = create_engine(url, connect_args=connect_args, poolclass=StaticPool)
        else:
            engine = create_engine(url, pool_pre_ping=True, connect_args=connect_args)

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        return engine

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "Database":
        settings = settings or get_settings()
        return cls(settings.database_url)

    def create_all(self) -> None:
        from app.models.payroll import Base

        Base.metadata.create_all(self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()


def get_db(request: Request) -> Generator[Session, None, None]:
    database: Optional[Database] = getattr(request.app.state, "db", None)
    if database is None:
        raise RuntimeError("DATABASE_URL is not configured")
    db = database.session()
    try:
        yield db
    finally:
        db.close()


def get_storage(request: Request) -> BlobStorage:
    storage: Optional[BlobStorage] = getattr(request.app.state, "storage", None)
    if storage is None:
        raise RuntimeError("Blob storage is not configured")
    return storage


def get_preview_store(request: Request) -> PreviewStore:
    store: Optional[PreviewStore] = getattr(request.app.state, "preview_store", None)
    if store is None:
        raise RuntimeError("Preview store is not configured")
    return store


def get_extractor(request: Request) -> DocumentExtractor:
    extractor: Optional[DocumentExtractor] = getattr(request.app.state, "extractor", None)
    if extractor is None:
        raise RuntimeError("Document extractor is not configured")
    return extractor
