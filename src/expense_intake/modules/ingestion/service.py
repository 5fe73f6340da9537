from __future__ import annotations

import dataclasses
import enum
import hashlib
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from expense_intake.core.config import Settings, settings
from expense_intake.core.logging import get_logger, log_context, log_event, monotonic_ms
from expense_intake.core.storage import ObjectStorage, StorageError, get_storage
from expense_intake.core.tracing import DecisionTracer, default_tracer
from expense_intake.modules.accounts.models import BillingAccount
from expense_intake.modules.audit.service import EXPENSE_SUBMITTED, emit_audit_event
from expense_intake.modules.categories.service import (
    CategoryResolution,
    get_category,
    list_categories,
    resolve_category,
)
from expense_intake.modules.classification.schemas import (
    ClassificationPath,
    ClassificationResult,
    ClassificationSignals,
    DocType,
    FinalizedClassification,
)
from expense_intake.modules.classification.service import classify_document, finalize_doc_type
from expense_intake.modules.documents.models import ReceiptFile, ReceiptFileStatus
from expense_intake.modules.expenses.models import ExpenseSource, ExpenseStatus
from expense_intake.modules.expenses.service import ExpenseStore, SqlExpenseStore, persist_expense
from expense_intake.modules.extraction.normalizer import (
    CanonicalExpenseFields,
    extraction_source,
    normalize_currency,
    normalize_extraction,
    parse_amount,
    parse_date,
    pick_field,
)
from expense_intake.modules.extraction.recognition import RecognitionRequest, run_recognition
from expense_intake.modules.extraction.signals import extract_invoice_number, extract_tax_ids
from expense_intake.modules.ingestion.errors import (
    IngestionError,
    PersistenceFailed,
    RecognitionFailed,
    SignedReferenceFailed,
    UploadFailed,
    ValidationFailed,
)
from expense_intake.modules.quota.service import (
    QuotaUsage,
    ensure_quota_available,
    monthly_usage,
    reserve_monthly_slot,
)

logger = get_logger(__name__)

_INVOICE_LABELS = {"FACTURA", "INVOICE"}
_AMOUNT_FIELDS = ("amount_gross", "amount_net", "tax_vat")
_SIGNAL_FIELDS = ("invoice_number", "seller_tax_id", "buyer_tax_id", "tax_id")
_EDITABLE_FIELDS = frozenset(
    {
        "vendor",
        "expense_date",
        "amount_gross",
        "amount_net",
        "tax_vat",
        "currency",
        "invoice_number",
        "seller_tax_id",
        "buyer_tax_id",
        "tax_id",
        "notes",
        "category_guess",
        "address",
        "email",
        "payment_method",
    }
)


class ClassificationOrigin(str, enum.Enum):
    LADDER = "ladder"
    SERVER = "server"
    UPGRADED = "upgraded"


@dataclass(frozen=True)
class IngestionDraft:
    receipt_file_id: uuid.UUID
    dedup_key: str
    storage_key: str
    fields: CanonicalExpenseFields
    classification: ClassificationResult
    classification_origin: ClassificationOrigin
    category: CategoryResolution
    quota: QuotaUsage


@dataclass(frozen=True)
class SubmittedExpense:
    expense_id: uuid.UUID
    receipt_file_id: uuid.UUID
    dedup_key: str
    category_id: uuid.UUID
    classification: FinalizedClassification
    classification_stored: bool
    audit_recorded: bool


def compute_dedup_key(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def analyze_upload(
    session: Session,
    *,
    account: BillingAccount,
    user_id: uuid.UUID,
    filename: str,
    content_type: str | None,
    body: bytes,
    notes: str | None = None,
    project_ref: str | None = None,
    storage: ObjectStorage | None = None,
    config: Settings = settings,
    tracer: DecisionTracer | None = None,
) -> IngestionDraft:
    """
    Upload a document, run recognition on it and prepare the review draft.

    Nothing is persisted as an expense here; the draft is kept on the
    `ReceiptFile` so the reviewer can submit it later with edits.
    """
    start = time.monotonic()
    tracer = tracer or default_tracer
    storage = storage or get_storage()

    # An exhausted account never reaches storage or recognition.
    ensure_quota_available(session, account=account)

    dedup_key = compute_dedup_key(body)
    filename = _sanitize_filename(filename) or "upload.bin"
    mime_type = content_type or "application/octet-stream"

    receipt_id = uuid.uuid4()
    with log_context(account_id=account.id, receipt_file_id=receipt_id):
        key = f"accounts/{account.id}/receipts/{receipt_id}-{filename}"
        try:
            stored = storage.put(key=key, body=body, content_type=mime_type)
        except (StorageError, OSError) as e:
            raise UploadFailed(str(e) or type(e).__name__) from e

        receipt = ReceiptFile(
            id=receipt_id,
            account_id=account.id,
            uploader_id=user_id,
            filename=filename,
            content_type=content_type,
            byte_size=stored.byte_size,
            sha256=dedup_key,
            storage_key=stored.key,
            status=ReceiptFileStatus.UPLOADED,
            analysis_json={},
        )
        session.add(receipt)
        session.commit()
        log_event(
            logger,
            "ingestion.uploaded",
            receipt_file_id=str(receipt.id),
            filename=filename,
            byte_size=stored.byte_size,
            dedup_key=dedup_key,
        )

        try:
            signed_url = storage.signed_reference(
                key=stored.key, expires_in=config.signed_reference_ttl_seconds
            )
        except StorageError as e:
            _mark_failed(session, receipt, SignedReferenceFailed(str(e)))
            raise SignedReferenceFailed(str(e)) from e

        request = RecognitionRequest(
            body=body,
            filename=filename,
            mime_type=mime_type,
            storage_key=stored.key,
            signed_url=signed_url,
            account_id=str(account.id),
            project_ref=project_ref,
            notes=notes,
        )
        try:
            raw = run_recognition(request, config=config, tracer=tracer)
        except RecognitionFailed as e:
            _mark_failed(session, receipt, e)
            raise

        meta = raw.get("meta") if isinstance(raw.get("meta"), Mapping) else {}
        fields = _fill_missing_signals(normalize_extraction(raw), meta)
        backend_type = _backend_type(raw)

        classification, origin = _classify_with_server_hints(
            fields, meta=meta, backend_type=backend_type, tracer=tracer
        )
        category = resolve_category(
            fields.category_guess, list_categories(session, account_id=account.id)
        )
        tracer.record(
            "category.resolved",
            proposed=category.proposed_name,
            match=category.match.value,
            needs_review=category.needs_review,
        )

        receipt.analysis_json = {
            "fields": fields_to_json(fields),
            "classification": {
                "suggested_type": classification.suggested_type.value,
                "classification_path": classification.classification_path.value,
                "origin": origin.value,
            },
            "backend_type": backend_type,
            "category": {
                "proposed_name": category.proposed_name,
                "category_id": str(category.category_id) if category.category_id else None,
                "match": category.match.value,
                "needs_review": category.needs_review,
            },
            "project_ref": project_ref,
        }
        receipt.status = ReceiptFileStatus.ANALYZED
        receipt.error_message = None
        session.add(receipt)
        session.commit()

        log_event(
            logger,
            "ingestion.analyzed",
            receipt_file_id=str(receipt.id),
            suggested_type=classification.suggested_type.value,
            classification_path=classification.classification_path.value,
            classification_origin=origin.value,
            category_match=category.match.value,
            duration_ms=monotonic_ms(start),
        )
        return IngestionDraft(
            receipt_file_id=receipt.id,
            dedup_key=dedup_key,
            storage_key=stored.key,
            fields=fields,
            classification=classification,
            classification_origin=origin,
            category=category,
            quota=monthly_usage(session, account=account),
        )


def submit_expense(
    session: Session,
    *,
    account: BillingAccount,
    user_id: uuid.UUID,
    receipt_file_id: uuid.UUID,
    edits: Mapping[str, Any] | None = None,
    category_id: uuid.UUID | None = None,
    doc_type_override: DocType | None = None,
    employee_id: uuid.UUID | None = None,
    project_ref: str | None = None,
    store: ExpenseStore | None = None,
    now: datetime | None = None,
    tracer: DecisionTracer | None = None,
) -> SubmittedExpense:
    """
    Finalize a reviewed draft and hand it to the expense store.

    The quota slot and the expense row share one transaction, so a failed
    insert never consumes quota. The audit event is written best effort.
    """
    start = time.monotonic()
    tracer = tracer or default_tracer
    store = store or SqlExpenseStore(session)

    with log_context(account_id=account.id, receipt_file_id=receipt_file_id):
        receipt = session.scalar(
            select(ReceiptFile).where(
                ReceiptFile.id == receipt_file_id, ReceiptFile.account_id == account.id
            )
        )
        if not receipt or receipt.status != ReceiptFileStatus.ANALYZED:
            raise ValidationFailed("No analyzed document to submit")

        analysis = receipt.analysis_json or {}
        analyzed = fields_from_json(analysis.get("fields") or {})
        fields = apply_review(analyzed, edits or {})

        resolved_category_id = _resolve_submission_category(
            session, account=account, category_id=category_id, fields=fields
        )
        result = _submission_classification(
            analysis, analyzed=analyzed, reviewed=fields, tracer=tracer
        )
        finalized = finalize_doc_type(result, doc_type_override)
        tracer.record(
            "classification.finalized",
            doc_type=finalized.doc_type.value,
            doc_type_source=finalized.doc_type_source.value,
            classification_path=finalized.classification_path.value,
        )

        payload = build_expense_payload(
            account_id=account.id,
            user_id=user_id,
            employee_id=employee_id or user_id,
            receipt=receipt,
            category_id=resolved_category_id,
            fields=fields,
            finalized=finalized,
            project_ref=project_ref or analysis.get("project_ref"),
        )

        try:
            reserve_monthly_slot(session, account=account, now=now)
            persisted = persist_expense(store, payload, tracer=tracer)
        except IngestionError:
            session.rollback()
            raise

        audit_recorded = emit_audit_event(
            session,
            account_id=account.id,
            actor_user_id=user_id,
            action=EXPENSE_SUBMITTED,
            entity="expenses",
            entity_id=persisted.id,
            payload={
                "vendor": fields.vendor,
                "amount": str(fields.amount_gross),
                "type": finalized.legacy_type,
            },
        )

        receipt.status = ReceiptFileStatus.SUBMITTED
        session.add(receipt)
        try:
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            raise PersistenceFailed(f"Could not save expense: {e}") from e

        log_event(
            logger,
            "ingestion.submitted",
            expense_id=str(persisted.id),
            receipt_file_id=str(receipt_file_id),
            doc_type=finalized.doc_type.value,
            doc_type_source=finalized.doc_type_source.value,
            classification_path=finalized.classification_path.value,
            classification_stored=persisted.classification_stored,
            duration_ms=monotonic_ms(start),
        )
        return SubmittedExpense(
            expense_id=persisted.id,
            receipt_file_id=receipt_file_id,
            dedup_key=payload["hash_dedupe"],
            category_id=resolved_category_id,
            classification=finalized,
            classification_stored=persisted.classification_stored,
            audit_recorded=audit_recorded,
        )


def get_receipt_file(
    session: Session, *, account_id: uuid.UUID, receipt_file_id: uuid.UUID
) -> ReceiptFile | None:
    return session.scalar(
        select(ReceiptFile).where(
            ReceiptFile.id == receipt_file_id, ReceiptFile.account_id == account_id
        )
    )


def build_expense_payload(
    *,
    account_id: uuid.UUID,
    user_id: uuid.UUID,
    employee_id: uuid.UUID,
    receipt: ReceiptFile,
    category_id: uuid.UUID,
    fields: CanonicalExpenseFields,
    finalized: FinalizedClassification,
    project_ref: str | None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": uuid.uuid4(),
        "account_id": account_id,
        "user_id": user_id,
        "employee_id": employee_id,
        "receipt_file_id": receipt.id,
        "category_id": category_id,
        "project_code_id": project_ref,
        "vendor": fields.vendor,
        "expense_date": date.fromisoformat(fields.expense_date) if fields.expense_date else None,
        "amount_net": fields.amount_net,
        "tax_vat": fields.tax_vat,
        "amount_gross": fields.amount_gross,
        "currency": fields.currency,
        "payment_method": fields.payment_method,
        "notes": fields.notes,
        "source": ExpenseSource.AI_EXTRACTED,
        "status": ExpenseStatus.SUBMITTED,
        "hash_dedupe": receipt.sha256,
        "type": finalized.legacy_type,
        "doc_type": finalized.doc_type,
        "doc_type_source": finalized.doc_type_source,
        "classification_path": finalized.classification_path,
    }
    if finalized.doc_type == DocType.INVOICE:
        payload["invoice_number"] = fields.invoice_number
        payload["company_tax_id"] = fields.tax_id or fields.seller_tax_id
        payload["company_address"] = fields.address
        payload["company_email"] = fields.email
    return payload


def apply_review(
    fields: CanonicalExpenseFields, edits: Mapping[str, Any]
) -> CanonicalExpenseFields:
    """Overlay reviewer edits; keys that are absent or None keep the analyzed value."""
    changes: dict[str, Any] = {}
    for name, value in edits.items():
        if name not in _EDITABLE_FIELDS or value is None:
            continue
        if name in _AMOUNT_FIELDS:
            amount = parse_amount(value)
            if amount is None:
                raise ValidationFailed(f"Invalid amount for {name}: {value!r}")
            changes[name] = amount
        elif name == "expense_date":
            changes[name] = parse_date(value)
        elif name == "currency":
            changes[name] = normalize_currency(value)
        elif name == "vendor":
            changes[name] = str(value).strip()
        else:
            changes[name] = str(value).strip() or None
    return dataclasses.replace(fields, **changes) if changes else fields


def fields_to_json(fields: CanonicalExpenseFields) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for f in dataclasses.fields(fields):
        value = getattr(fields, f.name)
        if isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, frozenset):
            value = sorted(value)
        elif isinstance(value, DocType):
            value = value.value
        out[f.name] = value
    return out


def fields_from_json(data: Mapping[str, Any]) -> CanonicalExpenseFields:
    known = {f.name for f in dataclasses.fields(CanonicalExpenseFields)}
    values: dict[str, Any] = {k: v for k, v in data.items() if k in known}
    for name in _AMOUNT_FIELDS:
        if name in values:
            values[name] = parse_amount(values[name]) or Decimal("0.00")
    if "detected_keywords" in values:
        values["detected_keywords"] = frozenset(values["detected_keywords"] or ())
    if "inferred_type" in values:
        values["inferred_type"] = DocType(values["inferred_type"])
    return CanonicalExpenseFields(**values)


def signals_from_fields(fields: CanonicalExpenseFields) -> ClassificationSignals:
    return ClassificationSignals(
        seller_tax_id=fields.seller_tax_id or fields.tax_id,
        buyer_tax_id=fields.buyer_tax_id,
        invoice_number=fields.invoice_number,
        detected_keywords=fields.detected_keywords,
        ocr_text=fields.ocr_text,
    )


def _fill_missing_signals(
    fields: CanonicalExpenseFields, meta: Mapping[str, Any]
) -> CanonicalExpenseFields:
    debug = meta.get("debug") if isinstance(meta.get("debug"), Mapping) else {}

    invoice_number = fields.invoice_number or _hint(debug, "invoice_number")
    seller = fields.seller_tax_id or fields.tax_id or _hint(debug, "seller_tax_id")
    buyer = fields.buyer_tax_id or _hint(debug, "buyer_tax_id")
    tax_id = fields.tax_id or _hint(debug, "seller_tax_id")

    # Whatever is still missing comes from the recognized text.
    if not invoice_number:
        invoice_number = extract_invoice_number(fields.ocr_text)
    if not seller or not buyer:
        text_ids = extract_tax_ids(fields.ocr_text)
        if not seller and text_ids:
            seller = text_ids[0]
        if not buyer:
            buyer = next((i for i in text_ids if i != seller), None)

    return dataclasses.replace(
        fields,
        invoice_number=invoice_number,
        seller_tax_id=seller,
        buyer_tax_id=buyer,
        tax_id=tax_id,
    )


def _hint(debug: Mapping[str, Any], key: str) -> str | None:
    value = debug.get(key)
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _backend_type(raw: Mapping[str, Any]) -> str | None:
    hint = pick_field(extraction_source(raw), "type_hint")
    if hint is None:
        classification = raw.get("classification")
        if isinstance(classification, Mapping):
            hint = classification.get("type")
    if hint is None or isinstance(hint, (Mapping, list)):
        return None
    return str(hint).strip().upper() or None


def _classify_with_server_hints(
    fields: CanonicalExpenseFields,
    *,
    meta: Mapping[str, Any],
    backend_type: str | None,
    tracer: DecisionTracer,
) -> tuple[ClassificationResult, ClassificationOrigin]:
    server_type = str(meta.get("final_doc_type") or "").strip().upper()
    if server_type:
        doc_type = DocType.INVOICE if server_type in _INVOICE_LABELS else DocType.RECEIPT
        path = _parse_path(meta.get("classification_path")) or (
            ClassificationPath.R3 if doc_type == DocType.INVOICE else ClassificationPath.R4
        )
        tracer.record(
            "classification.server_override",
            final_doc_type=server_type,
            classification_path=path.value,
        )
        result = ClassificationResult(suggested_type=doc_type, classification_path=path)
        return result, ClassificationOrigin.SERVER

    result = classify_document(signals_from_fields(fields), tracer=tracer)
    return _upgrade_from_backend(result, backend_type, tracer)


def _upgrade_from_backend(
    result: ClassificationResult, backend_type: str | None, tracer: DecisionTracer
) -> tuple[ClassificationResult, ClassificationOrigin]:
    if backend_type in _INVOICE_LABELS and result.suggested_type != DocType.INVOICE:
        tracer.record(
            "classification.upgraded",
            backend_type=backend_type,
            classification_path=result.classification_path.value,
        )
        upgraded = dataclasses.replace(result, suggested_type=DocType.INVOICE)
        return upgraded, ClassificationOrigin.UPGRADED
    return result, ClassificationOrigin.LADDER


def _submission_classification(
    analysis: Mapping[str, Any],
    *,
    analyzed: CanonicalExpenseFields,
    reviewed: CanonicalExpenseFields,
    tracer: DecisionTracer,
) -> ClassificationResult:
    stored = analysis.get("classification") or {}
    changed = any(getattr(analyzed, n) != getattr(reviewed, n) for n in _SIGNAL_FIELDS)
    path = _parse_path(stored.get("classification_path"))
    if not changed and path is not None:
        return ClassificationResult(
            suggested_type=DocType(stored.get("suggested_type") or DocType.RECEIPT.value),
            classification_path=path,
        )

    tracer.record("classification.recomputed", reason="signals_edited" if changed else "missing")
    result = classify_document(signals_from_fields(reviewed), tracer=tracer)
    result, _ = _upgrade_from_backend(result, analysis.get("backend_type"), tracer)
    return result


def _resolve_submission_category(
    session: Session,
    *,
    account: BillingAccount,
    category_id: uuid.UUID | None,
    fields: CanonicalExpenseFields,
) -> uuid.UUID:
    if category_id is not None:
        category = get_category(session, account_id=account.id, category_id=category_id)
        if category is not None:
            return category.id

    remapped = resolve_category(
        fields.category_guess, list_categories(session, account_id=account.id)
    )
    if remapped.category_id is None:
        raise ValidationFailed("Select a valid category")
    return remapped.category_id


def _parse_path(value: Any) -> ClassificationPath | None:
    try:
        return ClassificationPath(str(value).strip().upper()) if value else None
    except ValueError:
        return None


def _mark_failed(session: Session, receipt: ReceiptFile, error: IngestionError) -> None:
    receipt.status = ReceiptFileStatus.FAILED
    receipt.error_message = str(error)[:2000]
    session.add(receipt)
    session.commit()
    log_event(
        logger,
        "ingestion.failed",
        receipt_file_id=str(receipt.id),
        stage=error.stage,
        error=error.message,
    )


def _sanitize_filename(name: str) -> str:
    # Strip any path components and normalize whitespace.
    name = name.replace("\\", "/").split("/")[-1].strip()
    return " ".join(name.split())
