from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"
FOPID_PERIOD = "FOPID"


class DocumentClass(StrEnum):
    APORTES = "APORTES"
    TRANSFERENCIA = "TRANSFERENCIA"


class DocumentKind(StrEnum):
    SUELDO = "SUELDO"
    FOPID = "FOPID"
    COMPROBANTE = "COMPROBANTE"


class Severity(StrEnum):
    WARNING = "warning"
    ERROR = "error"


class DiscrepancyKind(StrEnum):
    TOTALS_MISMATCH = "TOTALS_MISMATCH"
    PERSON_COUNT_MISMATCH = "PERSON_COUNT_MISMATCH"
    EMPTY_LISTING = "EMPTY_LISTING"
    NEGATIVE_AMOUNT = "NEGATIVE_AMOUNT"
    CONCEPT_RATIO = "CONCEPT_RATIO"
    MISSING_IN_EXTRACTION = "MISSING_IN_EXTRACTION"
    MISSING_IN_TABULAR = "MISSING_IN_TABULAR"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    MISSING_FIELD = "MISSING_FIELD"
    AMOUNT_OUT_OF_RANGE = "AMOUNT_OUT_OF_RANGE"
    TRANSFER_AMOUNTS_INCONSISTENT = "TRANSFER_AMOUNTS_INCONSISTENT"
    DUPLICATE_UPLOAD = "DUPLICATE_UPLOAD"
    INSTITUTION_NOT_FOUND = "INSTITUTION_NOT_FOUND"
    MIXED_INSTITUTIONS = "MIXED_INSTITUTIONS"
    BATCH_TOTALS_MISMATCH = "BATCH_TOTALS_MISMATCH"


class Discrepancy(BaseModel):
    kind: DiscrepancyKind
    severity: Severity
    message: str
    field: Optional[str] = None
    difference: Optional[Decimal] = None


# --- Extraction results ---


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Entity(_Frozen):
    name: Optional[str] = None
    address: Optional[str] = None
    tax_id: Optional[str] = None


class PersonEntry(_Frozen):
    name: str = Field(..., min_length=1)
    tax_id: Optional[str] = None
    total_remunerative: Decimal
    legajo_count: int = Field(..., ge=0)
    concept_amount: Decimal


class ListingTotals(_Frozen):
    person_count: int = Field(..., ge=0)
    total_amount: Decimal


class AportesListing(_Frozen):
    kind: Literal["APORTES_LISTING"] = "APORTES_LISTING"
    entity: Entity = Field(default_factory=Entity)
    period: Optional[str] = None  # "MM/YYYY" or FOPID
    concept: Optional[str] = None
    document_date: Optional[str] = None
    entries: list[PersonEntry]
    totals: ListingTotals


class TransferDetails(_Frozen):
    holder: Optional[str] = None
    account_id: Optional[str] = None  # destination CBU
    operation_number: Optional[str] = None
    timestamp: Optional[datetime] = None
    amount: Optional[Decimal] = None
    amount_to_transfer: Optional[Decimal] = None
    total_amount: Optional[Decimal] = None
    source_account: Optional[str] = None
    bank: Optional[str] = None
    operation_type: Optional[str] = None
    reference: Optional[str] = None


class Beneficiary(_Frozen):
    name: Optional[str] = None
    tax_id: Optional[str] = None
    address: Optional[str] = None
    vat_condition: Optional[str] = None


class Payer(_Frozen):
    name: Optional[str] = None
    address: Optional[str] = None
    tax_id: Optional[str] = None
    gross_income_tax_id: Optional[str] = None


class TransferItem(_Frozen):
    transfer: TransferDetails = Field(default_factory=TransferDetails)
    beneficiary: Beneficiary = Field(default_factory=Beneficiary)
    payer: Payer = Field(default_factory=Payer)


class TransferReceipt(TransferItem):
    kind: Literal["TRANSFER_RECEIPT"] = "TRANSFER_RECEIPT"


class MultiTransferReceipt(_Frozen):
    kind: Literal["MULTI_TRANSFER_RECEIPT"] = "MULTI_TRANSFER_RECEIPT"
    transfers: list[TransferItem] = Field(..., min_length=1)
    declared_total: Optional[Decimal] = None
    pages_analyzed: Optional[int] = None
    pages_failed: Optional[int] = None


ExtractionResult = Annotated[
    Union[AportesListing, TransferReceipt, MultiTransferReceipt],
    Field(discriminator="kind"),
]


# --- Preview ---


class InstitutionRef(BaseModel):
    id: str
    name: Optional[str] = None
    tax_id: Optional[str] = None


class FilePreview(BaseModel):
    file_name: str
    content_hash: str
    classification: DocumentClass
    kind: DocumentKind
    source: Literal["ai", "tabular"]
    result: ExtractionResult
    total_amount: Decimal
    institution: Optional[InstitutionRef] = None
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    is_duplicate: bool = False
    duplicate_of: Optional[str] = None
    cross_checked_with: Optional[str] = None

    @property
    def has_errors(self) -> bool:
        return any(d.severity == Severity.ERROR for d in self.discrepancies)


class FileFailure(BaseModel):
    file_name: str
    content_hash: Optional[str] = None
    stage: Literal["parse", "extraction"]
    error_kind: str
    message: str


class BatchTotals(BaseModel):
    total_listings: Decimal
    total_transfers: Decimal
    difference: Decimal
    percent_difference: Decimal
    match: bool


class BatchPreviewResult(BaseModel):
    session_token: str
    period: str
    institution: Optional[InstitutionRef] = None
    files: list[FilePreview] = Field(default_factory=list)
    failures: list[FileFailure] = Field(default_factory=list)
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    totals: BatchTotals
    has_errors: bool = False
    confirmable: bool = False


# --- Confirm / save ---


class ConfirmFile(BaseModel):
    file_name: str = Field(..., min_length=1, max_length=256)
    content_hash: str = Field(..., min_length=64, max_length=64)
    kind: DocumentKind
    result: ExtractionResult


class ConfirmBatchRequest(BaseModel):
    session_token: str = Field(..., min_length=8, max_length=128)
    institution_id: str
    period: str = Field(..., pattern=PERIOD_PATTERN)
    files: list[ConfirmFile] = Field(..., min_length=1)


class ConfirmedDocument(BaseModel):
    file_name: str
    content_hash: str
    kind: DocumentKind
    result: ExtractionResult
    content: bytes = Field(repr=False)


class ConfirmedBatch(BaseModel):
    institution_id: str
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    documents: list[ConfirmedDocument]


class SaveStatus(StrEnum):
    SAVED = "SAVED"
    DUPLICATE = "DUPLICATE"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"  # rows committed, blob write failed
    SKIPPED = "SKIPPED"  # batch cancelled before this file started


class FileSaveOutcome(BaseModel):
    file_name: str
    content_hash: str
    status: SaveStatus
    pdf_file_id: Optional[str] = None
    contribution_line_count: int = 0
    bank_transfer_id: Optional[str] = None
    storage_path: Optional[str] = None
    message: Optional[str] = None


class BatchSaveStatus(StrEnum):
    ALL_SAVED = "ALL_SAVED"
    PARTIALLY_SAVED = "PARTIALLY_SAVED"
    NOTHING_SAVED = "NOTHING_SAVED"


class BatchSaveResult(BaseModel):
    status: BatchSaveStatus
    period_id: Optional[str] = None
    files: list[FileSaveOutcome] = Field(default_factory=list)
    requires_attention: bool = False
