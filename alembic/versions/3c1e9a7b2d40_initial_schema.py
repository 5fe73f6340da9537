"""initial schema

Revision ID: 3c1e9a7b2d40
Revises:
Create Date: 2026-09-02

"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3c1e9a7b2d40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts_billing_account",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("monthly_expense_limit", sa.Integer(), nullable=True),
        sa.Column("is_master", sa.Boolean(), nullable=False),
        sa.Column("can_add_custom_categories", sa.Boolean(), nullable=False),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "account_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("accounts_billing_account.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("status", sa.String(length=8), nullable=True),
    )
    op.create_index("ix_categories_account_id", "categories", ["account_id"])

    op.create_table(
        "receipt_files",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "account_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("accounts_billing_account.id"),
            nullable=False,
        ),
        sa.Column("uploader_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("filename", sa.String(length=512), nullable=False),
        sa.Column("content_type", sa.String(length=200), nullable=True),
        sa.Column("byte_size", sa.Integer(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("storage_key", sa.String(length=1024), nullable=False, unique=True),
        sa.Column("status", sa.String(length=9), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("analysis_json", sa.JSON(), nullable=False),
    )
    op.create_index("ix_receipt_files_account_id", "receipt_files", ["account_id"])
    op.create_index("ix_receipt_files_uploader_id", "receipt_files", ["uploader_id"])
    op.create_index("ix_receipt_files_sha256", "receipt_files", ["sha256"])
    op.create_index("ix_receipt_files_status", "receipt_files", ["status"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "account_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("accounts_billing_account.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("employee_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column(
            "receipt_file_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("receipt_files.id"),
            nullable=True,
        ),
        sa.Column(
            "category_id", sa.Uuid(as_uuid=True), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("project_code_id", sa.String(length=100), nullable=True),
        sa.Column("vendor", sa.String(length=200), nullable=False),
        sa.Column("expense_date", sa.Date(), nullable=True),
        sa.Column("amount_net", sa.Numeric(12, 2), nullable=False),
        sa.Column("tax_vat", sa.Numeric(12, 2), nullable=False),
        sa.Column("amount_gross", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("payment_method", sa.String(length=50), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("invoice_number", sa.String(length=100), nullable=True),
        sa.Column("company_tax_id", sa.String(length=32), nullable=True),
        sa.Column("company_address", sa.Text(), nullable=True),
        sa.Column("company_email", sa.String(length=320), nullable=True),
        sa.Column("source", sa.String(length=12), nullable=False),
        sa.Column("status", sa.String(length=9), nullable=False),
        sa.Column("hash_dedupe", sa.String(length=64), nullable=False),
        sa.Column("type", sa.String(length=10), nullable=False),
    )
    for column in ("account_id", "user_id", "receipt_file_id", "category_id"):
        op.create_index(f"ix_expenses_{column}", "expenses", [column])
    op.create_index("ix_expenses_expense_date", "expenses", ["expense_date"])
    op.create_index("ix_expenses_hash_dedupe", "expenses", ["hash_dedupe"])

    op.create_table(
        "quota_monthly_usage",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        *_timestamps(),
        sa.Column(
            "account_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("accounts_billing_account.id"),
            nullable=False,
        ),
        sa.Column("period", sa.String(length=7), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False),
        sa.UniqueConstraint("account_id", "period", name="uq_usage_account_period"),
    )
    op.create_index("ix_quota_monthly_usage_account_id", "quota_monthly_usage", ["account_id"])

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True, nullable=False),
        sa.Column(
            "account_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("accounts_billing_account.id"),
            nullable=False,
        ),
        sa.Column("actor_user_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("action", sa.String(length=50), nullable=False),
        sa.Column("entity", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.Uuid(as_uuid=True), nullable=True),
        sa.Column("payload_json", sa.JSON(), nullable=False),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_audit_logs_account_id", "audit_logs", ["account_id"])
    op.create_index("ix_audit_logs_actor_user_id", "audit_logs", ["actor_user_id"])
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"])


def downgrade() -> None:
    op.drop_table("audit_logs")
    op.drop_table("quota_monthly_usage")
    op.drop_table("expenses")
    op.drop_table("receipt_files")
    op.drop_table("categories")
    op.drop_table("accounts_billing_account")
