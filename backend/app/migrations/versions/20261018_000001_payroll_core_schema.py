"""payroll core schema

Revision ID: 20261018_000001
Revises:
Create Date: 2026-10-18 10:00:00.000000
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "20261018_000001"
down_revision = None
branch_labels = None
depends_on = None


def _id_column() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def _fk(name: str, target: str, ondelete: str, nullable: bool = False) -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey(target, ondelete=ondelete),
        nullable=nullable,
    )


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False)


def upgrade() -> None:
    op.create_table(
        "institutions",
        _id_column(),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("tax_id", sa.String(11), unique=True),
        sa.Column("address", sa.Text()),
        _created_at(),
    )

    op.create_table(
        "payroll_periods",
        _id_column(),
        _fk("institution_id", "institutions.id", "CASCADE"),
        sa.Column("year", sa.SmallInteger(), nullable=False),
        sa.Column("month", sa.SmallInteger(), nullable=False),
        _created_at(),
        sa.UniqueConstraint("institution_id", "year", "month", name="uniq_period_institution_month"),
        sa.CheckConstraint("month BETWEEN 1 AND 12", name="chk_period_month"),
    )

    op.create_table(
        "members",
        _id_column(),
        _fk("institution_id", "institutions.id", "CASCADE"),
        sa.Column("tax_id", sa.String(11)),
        sa.Column("full_name", sa.String(256), nullable=False),
        sa.Column("normalized_name", sa.String(256), nullable=False),
        _created_at(),
        sa.UniqueConstraint("institution_id", "tax_id", name="uniq_member_institution_tax_id"),
    )
    op.create_index("idx_members_institution_name", "members", ["institution_id", "normalized_name"])

    # --- pdf_files: the duplicate-upload guard lives here ---
    op.create_table(
        "pdf_files",
        _id_column(),
        _fk("institution_id", "institutions.id", "CASCADE"),
        _fk("period_id", "payroll_periods.id", "CASCADE"),
        sa.Column("file_name", sa.String(256), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("classification", sa.String(16), nullable=False),
        sa.Column("concept", sa.Text()),
        sa.Column("people_count", sa.Integer()),
        sa.Column("total_amount", sa.Numeric(14, 2)),
        sa.Column("storage_path", sa.Text(), nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=False),
        _created_at(),
        sa.UniqueConstraint("institution_id", "period_id", "content_hash", name="uniq_pdf_files_scope_hash"),
        sa.CheckConstraint("kind IN ('SUELDO','FOPID','COMPROBANTE')", name="chk_pdf_files_kind"),
        sa.CheckConstraint("classification IN ('APORTES','TRANSFERENCIA')", name="chk_pdf_files_classification"),
    )
    op.create_index("idx_pdf_files_period", "pdf_files", ["period_id"])
    op.create_index("idx_pdf_files_content_hash", "pdf_files", ["content_hash"])

    op.create_table(
        "contribution_lines",
        _id_column(),
        _fk("pdf_file_id", "pdf_files.id", "CASCADE"),
        _fk("member_id", "members.id", "RESTRICT"),
        sa.Column("total_remunerative", sa.Numeric(14, 2), nullable=False),
        sa.Column("legajo_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("concept_amount", sa.Numeric(14, 2), nullable=False),
        _created_at(),
        sa.CheckConstraint("concept_amount >= 0", name="chk_contribution_concept_amount"),
        sa.CheckConstraint("legajo_count >= 0", name="chk_contribution_legajo_count"),
    )
    op.create_index("idx_contribution_lines_pdf_file", "contribution_lines", ["pdf_file_id"])
    op.create_index("idx_contribution_lines_member", "contribution_lines", ["member_id"])

    op.create_table(
        "bank_transfers",
        _id_column(),
        _fk("pdf_file_id", "pdf_files.id", "CASCADE"),
        sa.Column("transfer_at", sa.DateTime(timezone=True)),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("transfer_count", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("operation_number", sa.String(64)),
        sa.Column("reference", sa.String(128)),
        sa.Column("holder", sa.String(256)),
        sa.Column("account_id", sa.String(64)),
        sa.Column("source_account", sa.String(64)),
        sa.Column("bank", sa.String(128)),
        sa.Column("operation_type", sa.String(128)),
        sa.Column("beneficiary_name", sa.String(256)),
        sa.Column("beneficiary_tax_id", sa.String(11)),
        sa.Column("payer_name", sa.String(256)),
        sa.Column("payer_tax_id", sa.String(11)),
        _created_at(),
        sa.UniqueConstraint("pdf_file_id", name="uniq_bank_transfer_pdf_file"),
        sa.CheckConstraint("amount > 0", name="chk_bank_transfer_amount"),
    )

    op.create_table(
        "audit_logs",
        _id_column(),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("old_value", postgresql.JSONB()),
        sa.Column("new_value", postgresql.JSONB()),
        sa.Column("actor_type", sa.String(50), nullable=False),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True)),
        sa.Column("ip_address", postgresql.INET()),
        sa.Column("user_agent", sa.Text()),
        sa.Column("metadata", postgresql.JSONB()),
        sa.Column("timestamp", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("idx_audit_logs_entity", "audit_logs", ["entity_type", "entity_id"])


def downgrade() -> None:
    op.drop_index("idx_audit_logs_entity", table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_table("bank_transfers")
    op.drop_index("idx_contribution_lines_member", table_name="contribution_lines")
    op.drop_index("idx_contribution_lines_pdf_file", table_name="contribution_lines")
    op.drop_table("contribution_lines")
    op.drop_index("idx_pdf_files_content_hash", table_name="pdf_files")
    op.drop_index("idx_pdf_files_period", table_name="pdf_files")
    op.drop_table("pdf_files")
    op.drop_index("idx_members_institution_name", table_name="members")
    op.drop_table("members")
    op.drop_table("payroll_periods")
    op.drop_table("institutions")
