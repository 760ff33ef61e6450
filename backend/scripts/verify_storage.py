#!/usr/bin/env python3
"""
Checks that every saved pdf_files row has its original bytes in blob storage.

Rows saved with a failed blob write (outcome PARTIAL, audit action
PDF_FILE_STORAGE_MISSING) are listed here.  With --from-dir the missing
objects are re-uploaded from local copies whose SHA-256 matches the row.

Usage:
  cd backend
  export DATABASE_URL="postgresql://..."   # or .env
  PYTHONPATH=. python scripts/verify_storage.py
  PYTHONPATH=. python scripts/verify_storage.py --from-dir /path/to/originals
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Run from repo root or backend; ensure backend is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.config import get_settings
from app.core.dependencies import Database
from app.core.storage import StorageError, build_storage
from app.models.payroll import PdfFile
from app.services.ai.payroll_extract.service import fingerprint, guess_media_type


def _index_directory(directory: Path) -> dict[str, Path]:
    by_hash: dict[str, Path] = {}
    for path in sorted(directory.rglob("*")):
        if path.is_file():
            by_hash.setdefault(fingerprint(path.read_bytes()), path)
    return by_hash


def main() -> None:
    parser = argparse.ArgumentParser(description="Verify that saved payroll documents exist in blob storage.")
    parser.add_argument("--from-dir", type=Path, help="Re-upload missing objects from files in this directory.")
    parser.add_argument("--institution", help="Only check one institution id.")
    args = parser.parse_args()

    settings = get_settings()
    if not settings.database_url:
        print("Error: DATABASE_URL is not set.", file=sys.stderr)
        sys.exit(1)

    database = Database.from_settings(settings)
    storage = build_storage(settings)
    local_copies = _index_directory(args.from_dir) if args.from_dir else {}

    db = database.session()
    missing = 0
    restored = 0
    try:
        query = db.query(PdfFile).order_by(PdfFile.created_at)
        if args.institution:
            query = query.filter(PdfFile.institution_id == args.institution)
        for row in query:
            try:
                present = storage.exists(row.storage_path)
            except StorageError as exc:
                print(f"! {row.storage_path}: {exc}", file=sys.stderr)
                present = False
            if present:
                continue
            missing += 1
            source = local_copies.get(row.content_hash)
            if source is None:
                print(f"MISSING {row.id} {row.file_name} -> {row.storage_path}")
                continue
            content = source.read_bytes()
            try:
                storage.write(row.storage_path, content, guess_media_type(row.file_name, content))
            except StorageError as exc:
                print(f"FAILED  {row.id} {row.file_name}: {exc}", file=sys.stderr)
                continue
            restored += 1
            print(f"RESTORED {row.id} {row.file_name} from {source}")
    finally:
        db.close()
        database.dispose()

    print(f"Missing: {missing}; restored: {restored}")
    if missing > restored:
        sys.exit(2)


if __name__ == "__main__":
    main()
