import uuid

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import INET, JSONB
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func
from sqlalchemy.types import CHAR, TypeDecorator

Base = declarative_base()


class GUID(TypeDecorator):
    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, uuid.UUID):
            return value if dialect.name == "postgresql" else str(value)
        if isinstance(value, str):
            try:
                parsed = uuid.UUID(value)
            except ValueError:
                return value
            return parsed if dialect.name == "postgresql" else str(parsed)
        return value

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        try:
            return uuid.UUID(value)
        except ValueError:
            return value


UUID_TYPE = GUID()
JSON_TYPE = JSON().with_variant(JSONB, "postgresql")
INET_TYPE = String(45).with_variant(INET, "postgresql")
MONEY_TYPE = Numeric(14, 2)


class Institution(Base):
    __tablename__ = "institutions"

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    name = Column(String(256), nullable=False)
    tax_id = Column(String(11), unique=True)  # normalized CUIT digits
    address = Column(Text)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    periods = relationship("PayrollPeriod", back_populates="institution")


class PayrollPeriod(Base):
    __tablename__ = "payroll_periods"
    __table_args__ = (
        UniqueConstraint("institution_id", "year", "month", name="uniq_period_institution_month"),
        CheckConstraint("month BETWEEN 1 AND 12", name="chk_period_month"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    institution_id = Column(
        UUID_TYPE,
        ForeignKey("institutions.id", ondelete="CASCADE"),
        nullable=False,
    )
    year = Column(SmallInteger, nullable=False)
    month = Column(SmallInteger, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    institution = relationship("Institution", back_populates="periods")
    pdf_files = relationship("PdfFile", back_populates="period", cascade="all, delete-orphan")


class Member(Base):
    __tablename__ = "members"
    __table_args__ = (
        UniqueConstraint("institution_id", "tax_id", name="uniq_member_institution_tax_id"),
        Index("idx_members_institution_name", "institution_id", "normalized_name"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    institution_id = Column(
        UUID_TYPE,
        ForeignKey("institutions.id", ondelete="CASCADE"),
        nullable=False,
    )
    tax_id = Column(String(11))
    full_name = Column(String(256), nullable=False)
    normalized_name = Column(String(256), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PdfFile(Base):
    __tablename__ = "pdf_files"
    __table_args__ = (
        UniqueConstraint(
            "institution_id",
            "period_id",
            "content_hash",
            name="uniq_pdf_files_scope_hash",
        ),
        CheckConstraint("kind IN ('SUELDO','FOPID','COMPROBANTE')", name="chk_pdf_files_kind"),
        CheckConstraint(
            "classification IN ('APORTES','TRANSFERENCIA')",
            name="chk_pdf_files_classification",
        ),
        Index("idx_pdf_files_period", "period_id"),
        Index("idx_pdf_files_content_hash", "content_hash"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    # Denormalized from the period so the uniqueness guard is a plain table constraint.
    institution_id = Column(
        UUID_TYPE,
        ForeignKey("institutions.id", ondelete="CASCADE"),
        nullable=False,
    )
    period_id = Column(
        UUID_TYPE,
        ForeignKey("payroll_periods.id", ondelete="CASCADE"),
        nullable=False,
    )
    file_name = Column(String(256), nullable=False)
    kind = Column(String(16), nullable=False)
    classification = Column(String(16), nullable=False)
    concept = Column(Text)
    people_count = Column(Integer)
    total_amount = Column(MONEY_TYPE)
    storage_path = Column(Text, nullable=False)
    content_hash = Column(String(64), nullable=False)  # SHA-256 hex
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    period = relationship("PayrollPeriod", back_populates="pdf_files")
    contribution_lines = relationship(
        "ContributionLine",
        back_populates="pdf_file",
        cascade="all, delete-orphan",
    )
    bank_transfer = relationship(
        "BankTransfer",
        back_populates="pdf_file",
        uselist=False,
        cascade="all, delete-orphan",
    )


class ContributionLine(Base):
    __tablename__ = "contribution_lines"
    __table_args__ = (
        CheckConstraint("concept_amount >= 0", name="chk_contribution_concept_amount"),
        CheckConstraint("legajo_count >= 0", name="chk_contribution_legajo_count"),
        Index("idx_contribution_lines_pdf_file", "pdf_file_id"),
        Index("idx_contribution_lines_member", "member_id"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    pdf_file_id = Column(
        UUID_TYPE,
        ForeignKey("pdf_files.id", ondelete="CASCADE"),
        nullable=False,
    )
    member_id = Column(
        UUID_TYPE,
        ForeignKey("members.id", ondelete="RESTRICT"),
        nullable=False,
    )
    total_remunerative = Column(MONEY_TYPE, nullable=False)
    legajo_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    concept_amount = Column(MONEY_TYPE, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    pdf_file = relationship("PdfFile", back_populates="contribution_lines")


class BankTransfer(Base):
    __tablename__ = "bank_transfers"
    __table_args__ = (
        UniqueConstraint("pdf_file_id", name="uniq_bank_transfer_pdf_file"),
        CheckConstraint("amount > 0", name="chk_bank_transfer_amount"),
    )

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    pdf_file_id = Column(
        UUID_TYPE,
        ForeignKey("pdf_files.id", ondelete="CASCADE"),
        nullable=False,
    )
    transfer_at = Column(DateTime(timezone=True))
    amount = Column(MONEY_TYPE, nullable=False)
    transfer_count = Column(Integer, nullable=False, default=1, server_default=text("1"))
    operation_number = Column(String(64))
    reference = Column(String(128))
    holder = Column(String(256))
    account_id = Column(String(64))
    source_account = Column(String(64))
    bank = Column(String(128))
    operation_type = Column(String(128))
    beneficiary_name = Column(String(256))
    beneficiary_tax_id = Column(String(11))
    payer_name = Column(String(256))
    payer_tax_id = Column(String(11))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    pdf_file = relationship("PdfFile", back_populates="bank_transfer")


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (Index("idx_audit_logs_entity", "entity_type", "entity_id"),)

    id = Column(
        UUID_TYPE,
        primary_key=True,
        default=uuid.uuid4,
        server_default=text("gen_random_uuid()"),
    )
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(UUID_TYPE, nullable=False)
    action = Column(String(64), nullable=False)
    old_value = Column(JSON_TYPE)
    new_value = Column(JSON_TYPE)
    actor_type = Column(String(50), nullable=False)
    actor_id = Column(UUID_TYPE)
    ip_address = Column(INET_TYPE)
    user_agent = Column(Text)
    audit_meta = Column("metadata", JSON_TYPE, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
