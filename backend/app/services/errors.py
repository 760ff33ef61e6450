"""Error taxonomy for the upload → preview → confirm pipeline.

Parsing and extraction errors are file-level: the batch catches them and turns
them into per-file results.  Discrepancies are *not* exceptions; see
``app.schemas.payroll.Discrepancy``.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Optional


class ParseErrorKind(StrEnum):
    INVALID_AMOUNT = "INVALID_AMOUNT"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    MISSING_COLUMNS = "MISSING_COLUMNS"
    EMPTY_DATA = "EMPTY_DATA"


class ExtractionFailureReason(StrEnum):
    TIMEOUT = "TIMEOUT"
    MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"


class PayrollPipelineError(Exception):
    pass


class ParseError(PayrollPipelineError):
    def __init__(self, kind: ParseErrorKind, message: str, *, row: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.row = row


class ExtractionFailure(PayrollPipelineError):
    def __init__(self, reason: ExtractionFailureReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class DuplicateUpload(PayrollPipelineError):
    def __init__(self, content_hash: str, existing_file_id: Optional[str] = None) -> None:
        super().__init__(f"duplicate content hash {content_hash[:12]}")
        self.content_hash = content_hash
        self.existing_file_id = existing_file_id


class PersistenceFailure(PayrollPipelineError):
    pass
