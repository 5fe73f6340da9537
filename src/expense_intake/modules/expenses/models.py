from __future__ import annotations

import enum
import uuid
from datetime import date
from decimal import Decimal

from sqlalchemy import Date, Enum, ForeignKey, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from expense_intake.core.models import AccountScoped, Base, Timestamped, UUIDPrimaryKey
from expense_intake.modules.classification.schemas import (
    ClassificationPath,
    DocType,
    DocTypeSource,
)


class ExpenseSource(str, enum.Enum):
    AI_EXTRACTED = "AI_EXTRACTED"
    MANUAL = "MANUAL"


class ExpenseStatus(str, enum.Enum):
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# Newer columns that older deployments may not have yet.
CLASSIFICATION_COLUMNS = ("doc_type", "doc_type_source", "classification_path")


class Expense(UUIDPrimaryKey, Timestamped, AccountScoped, Base):
    __tablename__ = "expenses"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), index=True)
    employee_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    receipt_file_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("receipt_files.id"), nullable=True, index=True
    )
    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("categories.id"), index=True
    )
    project_code_id: Mapped[str | None] = mapped_column(String(100), nullable=True)

    vendor: Mapped[str] = mapped_column(String(200))
    expense_date: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    amount_net: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    tax_vat: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    amount_gross: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column(String(3))
    payment_method: Mapped[str | None] = mapped_column(String(50), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    invoice_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    company_tax_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    company_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    company_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    source: Mapped[ExpenseSource] = mapped_column(Enum(ExpenseSource, native_enum=False))
    status: Mapped[ExpenseStatus] = mapped_column(Enum(ExpenseStatus, native_enum=False))
    hash_dedupe: Mapped[str] = mapped_column(String(64), index=True)
    # Legacy FACTURA/TICKET label, kept alongside doc_type.
    type: Mapped[str] = mapped_column(String(10))

    doc_type: Mapped[DocType | None] = mapped_column(
        Enum(DocType, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )
    doc_type_source: Mapped[DocTypeSource | None] = mapped_column(
        Enum(DocTypeSource, native_enum=False, values_callable=lambda e: [m.value for m in e]),
        nullable=True,
    )
    classification_path: Mapped[ClassificationPath | None] = mapped_column(
        Enum(ClassificationPath, native_enum=False), nullable=True
    )
