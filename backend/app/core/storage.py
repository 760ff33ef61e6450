import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Optional

from supabase import create_client

from app.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

BUCKET_PAYROLL_DOCUMENTS = "payroll-documents"


class StorageError(Exception):
    pass


def _file_extension(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return Path(filename).suffix.lower()


def build_object_path(
    institution_id: str,
    year: int,
    month: int,
    content_hash: str,
    filename: Optional[str] = None,
) -> str:
    """``{institution}/{YYYY-MM}/{sha256}{ext}``: same bytes, same path."""
    ext = _file_extension(filename)
    return f"{institution_id}/{year:04d}-{month:02d}/{content_hash}{ext}"


def _safe_relative(path: str) -> PurePosixPath:
    relative = PurePosixPath(path)
    if relative.is_absolute() or ".." in relative.parts or not relative.parts:
        raise StorageError(f"Invalid storage path: {path!r}")
    return relative


class BlobStorage(ABC):
    """Path-addressed blob store used for the original documents."""

    @abstractmethod
    def write(self, path: str, content: bytes, content_type: Optional[str] = None) -> str:
        """Store *content* at *path* and return the stored path."""

    @abstractmethod
    def read(self, path: str) -> bytes: ...

    @abstractmethod
    def exists(self, path: str) -> bool: ...


class LocalBlobStorage(BlobStorage):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        return self.root.joinpath(*_safe_relative(path).parts)

    def write(self, path: str, content: bytes, content_type: Optional[str] = None) -> str:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write-then-rename so a reader never sees a truncated document.
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(content)
                os.replace(tmp_name, target)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise StorageError(f"Local write failed for {path}: {exc}") from exc
        return path

    def read(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as exc:
            raise StorageError(f"Local read failed for {path}: {exc}") from exc

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()


class SupabaseBlobStorage(BlobStorage):
    def __init__(self, client, bucket: str = BUCKET_PAYROLL_DOCUMENTS) -> None:
        self.client = client
        self.bucket = bucket

    def _bucket(self):
        return self.client.storage.from_(self.bucket)

    @staticmethod
    def _raise_on_error(result, message: str) -> None:
        error = None
        if isinstance(result, dict):
            error = result.get("error")
        else:
            error = getattr(result, "error", None)
        if error:
            raise StorageError(f"{message}: {error}")

    def write(self, path: str, content: bytes, content_type: Optional[str] = None) -> str:
        _safe_relative(path)
        options = {"upsert": "true"}
        if content_type:
            options["content-type"] = content_type
        try:
            result = self._bucket().upload(path, content, options)
        except Exception as exc:
            raise StorageError(f"Supabase upload failed for {path}") from exc
        self._raise_on_error(result, f"Supabase upload failed for {path}")
        return path

    def read(self, path: str) -> bytes:
        try:
            return self._bucket().download(path)
        except Exception as exc:
            raise StorageError(f"Supabase download failed for {path}") from exc

    def exists(self, path: str) -> bool:
        folder, _, name = path.rpartition("/")
        try:
            entries = self._bucket().list(folder, {"search": name})
        except Exception as exc:
            raise StorageError(f"Supabase list failed for {folder}") from exc
        return any(isinstance(entry, dict) and entry.get("name") == name for entry in entries or [])


def get_storage_client(settings: Optional[Settings] = None):
    settings = settings or get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise RuntimeError("Faltan las credenciales de Supabase")
    return create_client(settings.supabase_url, key)


def build_storage(settings: Optional[Settings] = None) -> BlobStorage:
    settings = settings or get_settings()
    backend = (settings.storage_backend or "local").strip().lower()
    if backend == "supabase":
        logger.info("Blob storage: supabase bucket=%s", settings.storage_bucket)
        return SupabaseBlobStorage(get_storage_client(settings), settings.storage_bucket)
    if backend == "local":
        logger.info("Blob storage: local dir=%s", settings.storage_dir)
        return LocalBlobStorage(settings.storage_dir)
    raise RuntimeError(f"Unknown STORAGE_BACKEND: {settings.storage_backend}")
