from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field

from expense_intake.modules.categories.service import CategoryMatch
from expense_intake.modules.classification.schemas import (
    ClassificationPath,
    DocType,
    DocTypeSource,
)
from expense_intake.modules.documents.models import ReceiptFileStatus
from expense_intake.modules.ingestion.service import (
    ClassificationOrigin,
    IngestionDraft,
    SubmittedExpense,
    fields_to_json,
)
from expense_intake.modules.quota.service import QuotaUsage


class ExpenseFieldsOut(BaseModel):
    vendor: str
    expense_date: str
    amount_gross: Decimal
    amount_net: Decimal
    tax_vat: Decimal
    currency: str
    invoice_number: str | None = None
    seller_tax_id: str | None = None
    buyer_tax_id: str | None = None
    tax_id: str | None = None
    detected_keywords: list[str] = Field(default_factory=list)
    notes: str | None = None
    category_guess: str | None = None
    address: str | None = None
    email: str | None = None
    payment_method: str | None = None
    inferred_type: DocType


class ClassificationOut(BaseModel):
    suggested_type: DocType
    classification_path: ClassificationPath
    origin: ClassificationOrigin


class CategoryResolutionOut(BaseModel):
    proposed_name: str
    category_id: uuid.UUID | None
    match: CategoryMatch
    needs_review: bool


class QuotaOut(BaseModel):
    period: str
    limit: int | None
    used: int
    remaining: int | None
    limited: bool

    @classmethod
    def from_usage(cls, usage: QuotaUsage) -> QuotaOut:
        return cls(
            period=usage.period,
            limit=usage.limit,
            used=usage.used,
            remaining=usage.remaining,
            limited=usage.limited,
        )


class IngestionDraftOut(BaseModel):
    receipt_file_id: uuid.UUID
    dedup_key: str
    fields: ExpenseFieldsOut
    classification: ClassificationOut
    category: CategoryResolutionOut
    quota: QuotaOut

    @classmethod
    def from_draft(cls, draft: IngestionDraft) -> IngestionDraftOut:
        return cls(
            receipt_file_id=draft.receipt_file_id,
            dedup_key=draft.dedup_key,
            fields=ExpenseFieldsOut.model_validate(fields_to_json(draft.fields)),
            classification=ClassificationOut(
                suggested_type=draft.classification.suggested_type,
                classification_path=draft.classification.classification_path,
                origin=draft.classification_origin,
            ),
            category=CategoryResolutionOut(
                proposed_name=draft.category.proposed_name,
                category_id=draft.category.category_id,
                match=draft.category.match,
                needs_review=draft.category.needs_review,
            ),
            quota=QuotaOut.from_usage(draft.quota),
        )


class ReceiptFileOut(BaseModel):
    id: uuid.UUID
    account_id: uuid.UUID
    uploader_id: uuid.UUID
    filename: str
    content_type: str | None
    byte_size: int
    sha256: str
    status: ReceiptFileStatus
    error_message: str | None
    analysis_json: dict
    created_at: datetime
    updated_at: datetime


class ReviewEditsIn(BaseModel):
    vendor: str | None = None
    expense_date: str | None = None
    amount_gross: Decimal | str | None = None
    amount_net: Decimal | str | None = None
    tax_vat: Decimal | str | None = None
    currency: str | None = None
    invoice_number: str | None = None
    seller_tax_id: str | None = None
    buyer_tax_id: str | None = None
    tax_id: str | None = None
    notes: str | None = None
    category_guess: str | None = None
    address: str | None = None
    email: str | None = None
    payment_method: str | None = None


class SubmitIn(BaseModel):
    edits: ReviewEditsIn = Field(default_factory=ReviewEditsIn)
    category_id: uuid.UUID | None = None
    doc_type: DocType | None = None
    employee_id: uuid.UUID | None = None
    project_ref: str | None = None


class SubmittedExpenseOut(BaseModel):
    expense_id: uuid.UUID
    receipt_file_id: uuid.UUID
    dedup_key: str
    category_id: uuid.UUID
    doc_type: DocType
    doc_type_source: DocTypeSource
    classification_path: ClassificationPath
    type: str
    classification_stored: bool
    audit_recorded: bool

    @classmethod
    def from_submitted(cls, submitted: SubmittedExpense) -> SubmittedExpenseOut:
        return cls(
            expense_id=submitted.expense_id,
            receipt_file_id=submitted.receipt_file_id,
            dedup_key=submitted.dedup_key,
            category_id=submitted.category_id,
            doc_type=submitted.classification.doc_type,
            doc_type_source=submitted.classification.doc_type_source,
            classification_path=submitted.classification.classification_path,
            type=submitted.classification.legacy_type,
            classification_stored=submitted.classification_stored,
            audit_recorded=submitted.audit_recorded,
        )
