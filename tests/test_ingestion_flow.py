from __future__ import annotations

import hashlib
from decimal import Decimal

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from expense_intake.core.db import SessionLocal
from expense_intake.core.storage import LocalObjectStorage, StorageError, get_storage
from expense_intake.core.tracing import RecordingTracer
from expense_intake.modules.accounts.service import create_account
from expense_intake.modules.audit import service as audit_service
from expense_intake.modules.audit.models import AuditEvent
from expense_intake.modules.categories.models import Category, CategoryStatus
from expense_intake.modules.categories.service import CategoryMatch
from expense_intake.modules.classification.schemas import (
    ClassificationPath,
    DocType,
    DocTypeSource,
)
from expense_intake.modules.documents.models import ReceiptFile, ReceiptFileStatus
from expense_intake.modules.expenses.models import Expense, ExpenseSource
from expense_intake.modules.expenses.service import SqlExpenseStore, get_expense
from expense_intake.modules.extraction import recognition
from expense_intake.modules.ingestion.errors import (
    QuotaExceeded,
    RecognitionFailed,
    SignedReferenceFailed,
    UploadFailed,
    ValidationFailed,
)
from expense_intake.modules.ingestion.service import (
    ClassificationOrigin,
    analyze_upload,
    compute_dedup_key,
    submit_expense,
)
from expense_intake.modules.quota.service import monthly_usage

INVOICE_BYTES = b"%PDF-1.4 hotel invoice"
TICKET_BYTES = b"\xff\xd8\xff\xe0 bar ticket"

INVOICE_PAYLOAD = {
    "success": True,
    "classification": {"type": "FACTURA", "reason": "tax ids", "confidence": 0.93},
    "extraction": {
        "type": "FACTURA",
        "data": {
            "vendor": "Hotel Sol SL",
            "invoice_date": "01/10/2026",
            "amount_net": "100,00",
            "tax_vat": "10,00",
            "currency": "eur",
            "invoice_number": "F253282",
            "seller_tax_id": "B75977868",
            "buyer_tax_id": "78222262K",
            "category": "alojamiento",
            "address": "Calle Mayor 1, Madrid",
            "email": "facturas@hotelsol.example",
        },
    },
}

TICKET_PAYLOAD = {
    "success": True,
    "data": {
        "merchant": "Bar Pepe",
        "date": "2026-10-03",
        "total": "12,50",
        "ocr_text": "BAR PEPE\nTOTAL: 12,50",
    },
}


def _account(session, **kwargs):
    account = create_account(session, name="Acme", **kwargs)
    for name in ("Transporte", "Alojamiento", "Otros"):
        session.add(Category(account_id=account.id, name=name, status=CategoryStatus.ACTIVE))
    session.commit()
    return account


def _category_id(session, account, name):
    return session.scalar(
        select(Category.id).where(Category.account_id == account.id, Category.name == name)
    )


def _analyze(session, account, user_id, body=INVOICE_BYTES, filename="factura.pdf", **kwargs):
    return analyze_upload(
        session,
        account=account,
        user_id=user_id,
        filename=filename,
        content_type="application/pdf",
        body=body,
        tracer=RecordingTracer(),
        **kwargs,
    )


def test_invoice_end_to_end(recognition_payload):
    recognition_payload.set(INVOICE_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session, monthly_expense_limit=10)
        user_id = account.id  # any uuid works as the uploader

        draft = _analyze(session, account, user_id)

        assert draft.dedup_key == hashlib.sha256(INVOICE_BYTES).hexdigest()
        assert draft.fields.vendor == "Hotel Sol SL"
        assert draft.fields.expense_date == "2026-10-01"
        assert draft.fields.amount_gross == Decimal("110.00")
        assert draft.fields.currency == "EUR"
        assert draft.classification.suggested_type == DocType.INVOICE
        assert draft.classification.classification_path == ClassificationPath.R1
        assert draft.classification_origin == ClassificationOrigin.LADDER
        assert draft.category.match == CategoryMatch.EXACT
        assert draft.category.category_id == _category_id(session, account, "Alojamiento")
        assert draft.quota.used == 0
        assert get_storage().get(key=draft.storage_key) == INVOICE_BYTES
        assert recognition_payload.calls[0]["signed_url"].startswith("file://")

        submitted = submit_expense(
            session,
            account=account,
            user_id=user_id,
            receipt_file_id=draft.receipt_file_id,
            category_id=draft.category.category_id,
            tracer=RecordingTracer(),
        )

        expense = get_expense(session, account_id=account.id, expense_id=submitted.expense_id)
        assert expense is not None
        assert expense.doc_type == DocType.INVOICE
        assert expense.doc_type_source == DocTypeSource.AUTOMATIC
        assert expense.classification_path == ClassificationPath.R1
        assert expense.type == "FACTURA"
        assert expense.source == ExpenseSource.AI_EXTRACTED
        assert expense.hash_dedupe == draft.dedup_key
        assert expense.amount_net == Decimal("100.00")
        assert expense.invoice_number == "F253282"
        assert expense.company_tax_id == "B75977868"
        assert expense.company_email == "facturas@hotelsol.example"
        assert expense.employee_id == user_id
        assert submitted.classification_stored is True
        assert submitted.audit_recorded is True

        audit = session.scalar(select(AuditEvent).where(AuditEvent.entity_id == expense.id))
        assert audit is not None
        assert audit.action == "EXPENSE_SUBMITTED"
        assert audit.payload_json == {
            "vendor": "Hotel Sol SL",
            "amount": "110.00",
            "type": "FACTURA",
        }

        receipt = session.get(ReceiptFile, draft.receipt_file_id)
        assert receipt.status == ReceiptFileStatus.SUBMITTED
        assert monthly_usage(session, account=account).used == 1


def test_receipt_overridden_to_invoice_keeps_automatic_path(recognition_payload):
    recognition_payload.set(TICKET_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES, filename="ticket.jpg")

        assert draft.classification.suggested_type == DocType.RECEIPT
        assert draft.classification.classification_path == ClassificationPath.R4
        # No proposal: the fallback category is used without asking.
        assert draft.category.match == CategoryMatch.FALLBACK
        assert draft.category.needs_review is False

        submitted = submit_expense(
            session,
            account=account,
            user_id=account.id,
            receipt_file_id=draft.receipt_file_id,
            doc_type_override=DocType.INVOICE,
        )

        expense = get_expense(session, account_id=account.id, expense_id=submitted.expense_id)
        assert expense.doc_type == DocType.INVOICE
        assert expense.doc_type_source == DocTypeSource.USER
        assert expense.classification_path == ClassificationPath.R4
        assert expense.type == "FACTURA"
        assert expense.category_id == _category_id(session, account, "Otros")


def test_receipt_does_not_carry_invoice_extras(recognition_payload):
    payload = {"success": True, "data": {**TICKET_PAYLOAD["data"], "email": "bar@pepe.example"}}
    recognition_payload.set(payload)
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)
        submitted = submit_expense(
            session, account=account, user_id=account.id, receipt_file_id=draft.receipt_file_id
        )

        expense = get_expense(session, account_id=account.id, expense_id=submitted.expense_id)
        assert expense.type == "TICKET"
        assert expense.company_email is None
        assert expense.invoice_number is None


def test_server_final_doc_type_is_trusted(recognition_payload):
    recognition_payload.set(
        {
            **TICKET_PAYLOAD,
            "meta": {"final_doc_type": "factura", "classification_path": "R2"},
        }
    )
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)

        assert draft.classification.suggested_type == DocType.INVOICE
        assert draft.classification.classification_path == ClassificationPath.R2
        assert draft.classification_origin == ClassificationOrigin.SERVER


def test_server_final_doc_type_without_path_defaults_by_type(recognition_payload):
    recognition_payload.set({**TICKET_PAYLOAD, "meta": {"final_doc_type": "TICKET"}})
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)

        assert draft.classification.suggested_type == DocType.RECEIPT
        assert draft.classification.classification_path == ClassificationPath.R4


def test_backend_invoice_type_upgrades_a_receipt_suggestion(recognition_payload):
    recognition_payload.set(
        {"success": True, "data": {**TICKET_PAYLOAD["data"], "type": "FACTURA"}}
    )
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)

        assert draft.classification.suggested_type == DocType.INVOICE
        assert draft.classification.classification_path == ClassificationPath.R4
        assert draft.classification_origin == ClassificationOrigin.UPGRADED


def test_debug_hints_fill_missing_signals(recognition_payload):
    recognition_payload.set(
        {
            **TICKET_PAYLOAD,
            "meta": {"debug": {"invoice_number": "A-77", "seller_tax_id": "B75977868"}},
        }
    )
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)

        assert draft.fields.invoice_number == "A-77"
        assert draft.fields.seller_tax_id == "B75977868"
        assert draft.fields.tax_id == "B75977868"
        assert draft.classification.classification_path == ClassificationPath.R2


def test_recognized_text_fills_missing_signals(recognition_payload):
    recognition_payload.set(
        {
            "success": True,
            "data": {
                "vendor": "Taller Ruiz",
                "total": "242,00",
                "ocr_text": "FACTURA Nº 2024/0042\nCIF: B75977868\nCliente: 78222262K",
            },
        }
    )
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id)

        assert draft.fields.invoice_number == "2024/0042"
        assert draft.fields.seller_tax_id == "B75977868"
        assert draft.fields.buyer_tax_id == "78222262K"
        assert draft.classification.classification_path == ClassificationPath.R1


def test_reviewer_signal_edits_trigger_reclassification(recognition_payload):
    recognition_payload.set(TICKET_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)
        assert draft.classification.classification_path == ClassificationPath.R4

        tracer = RecordingTracer()
        submitted = submit_expense(
            session,
            account=account,
            user_id=account.id,
            receipt_file_id=draft.receipt_file_id,
            edits={"invoice_number": "F-9", "seller_tax_id": "B75977868", "amount_gross": "15,00"},
            tracer=tracer,
        )

        assert "classification.recomputed" in tracer.step_names
        assert submitted.classification.doc_type == DocType.INVOICE
        assert submitted.classification.doc_type_source == DocTypeSource.AUTOMATIC
        assert submitted.classification.classification_path == ClassificationPath.R2
        expense = get_expense(session, account_id=account.id, expense_id=submitted.expense_id)
        assert expense.amount_gross == Decimal("15.00")
        assert expense.invoice_number == "F-9"


def test_same_bytes_under_different_names_share_the_dedup_key(recognition_payload):
    recognition_payload.set(TICKET_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session)
        first = _analyze(session, account, account.id, body=TICKET_BYTES, filename="a.jpg")
        second = _analyze(session, account, account.id, body=TICKET_BYTES, filename="b.jpg")

        assert first.dedup_key == second.dedup_key
        assert first.receipt_file_id != second.receipt_file_id

    flipped = bytes([TICKET_BYTES[0] ^ 0x01]) + TICKET_BYTES[1:]
    assert compute_dedup_key(flipped) != compute_dedup_key(TICKET_BYTES)


def test_recognition_failure_marks_receipt_failed(monkeypatch):
    def _fail(request, *, config=None):
        raise RecognitionFailed("service unavailable")

    monkeypatch.setattr(recognition, "recognize_document", _fail)
    with SessionLocal() as session:
        account = _account(session)
        with pytest.raises(RecognitionFailed):
            _analyze(session, account, account.id)

        receipt = session.scalar(select(ReceiptFile).where(ReceiptFile.account_id == account.id))
        assert receipt.status == ReceiptFileStatus.FAILED
        assert "service unavailable" in receipt.error_message
        # Stored bytes are kept.
        assert get_storage().get(key=receipt.storage_key) == INVOICE_BYTES


def test_upload_failure_records_nothing(recognition_payload):
    class _FullDisk(LocalObjectStorage):
        def put(self, *, key, body, content_type=None):
            raise OSError("No space left on device")

    with SessionLocal() as session:
        account = _account(session)
        storage = _FullDisk(get_storage().root)
        with pytest.raises(UploadFailed):
            _analyze(session, account, account.id, storage=storage)

        assert session.scalar(select(func.count()).select_from(ReceiptFile)) == 0
        assert recognition_payload.calls == []


def test_signed_reference_failure(recognition_payload):
    class _NoSigning(LocalObjectStorage):
        def signed_reference(self, *, key, expires_in):
            raise StorageError("signing key rotated")

    with SessionLocal() as session:
        account = _account(session)
        storage = _NoSigning(get_storage().root)
        with pytest.raises(SignedReferenceFailed):
            _analyze(session, account, account.id, storage=storage)

        receipt = session.scalar(select(ReceiptFile))
        assert receipt.status == ReceiptFileStatus.FAILED
        assert recognition_payload.calls == []


def test_quota_is_enforced_at_submission(recognition_payload):
    recognition_payload.set(TICKET_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session, monthly_expense_limit=1)
        first = _analyze(session, account, account.id, body=b"one")
        second = _analyze(session, account, account.id, body=b"two")

        submit_expense(
            session, account=account, user_id=account.id, receipt_file_id=first.receipt_file_id
        )
        with pytest.raises(QuotaExceeded):
            submit_expense(
                session,
                account=account,
                user_id=account.id,
                receipt_file_id=second.receipt_file_id,
            )

        assert session.scalar(select(func.count()).select_from(Expense)) == 1
        receipt = session.get(ReceiptFile, second.receipt_file_id)
        assert receipt.status == ReceiptFileStatus.ANALYZED
        assert monthly_usage(session, account=account).used == 1


def test_exhausted_account_is_stopped_before_upload(recognition_payload):
    recognition_payload.set(TICKET_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session, monthly_expense_limit=1)
        first = _analyze(session, account, account.id, body=b"one")
        submit_expense(
            session, account=account, user_id=account.id, receipt_file_id=first.receipt_file_id
        )
        storage_root = get_storage().root
        stored_before = sorted(p for p in storage_root.rglob("*") if p.is_file())

        with pytest.raises(QuotaExceeded):
            _analyze(session, account, account.id, body=b"two")

        assert session.scalar(select(func.count()).select_from(ReceiptFile)) == 1
        assert len(recognition_payload.calls) == 1
        assert sorted(p for p in storage_root.rglob("*") if p.is_file()) == stored_before


def test_submission_without_usable_category_fails_validation(recognition_payload):
    recognition_payload.set(TICKET_PAYLOAD)
    with SessionLocal() as session:
        account = create_account(session, name="No categories")
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)
        assert draft.category.match == CategoryMatch.NONE

        with pytest.raises(ValidationFailed):
            submit_expense(
                session, account=account, user_id=account.id, receipt_file_id=draft.receipt_file_id
            )
        assert monthly_usage(session, account=account).used == 0


def test_unknown_category_id_is_remapped_from_the_proposal(recognition_payload):
    recognition_payload.set(INVOICE_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session)
        other = create_account(session, name="Other")
        foreign = Category(account_id=other.id, name="Alojamiento", status=CategoryStatus.ACTIVE)
        session.add(foreign)
        session.commit()

        draft = _analyze(session, account, account.id)
        submitted = submit_expense(
            session,
            account=account,
            user_id=account.id,
            receipt_file_id=draft.receipt_file_id,
            category_id=foreign.id,
        )

        assert submitted.category_id == _category_id(session, account, "Alojamiento")


def test_submitting_twice_is_rejected(recognition_payload):
    recognition_payload.set(TICKET_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)
        submit_expense(
            session, account=account, user_id=account.id, receipt_file_id=draft.receipt_file_id
        )
        with pytest.raises(ValidationFailed):
            submit_expense(
                session, account=account, user_id=account.id, receipt_file_id=draft.receipt_file_id
            )


def test_legacy_store_persists_without_classification_columns(recognition_payload):
    class _LegacyStore(SqlExpenseStore):
        def supports_classification_columns(self) -> bool:
            return False

    recognition_payload.set(INVOICE_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id)
        submitted = submit_expense(
            session,
            account=account,
            user_id=account.id,
            receipt_file_id=draft.receipt_file_id,
            store=_LegacyStore(session),
        )

        expense = get_expense(session, account_id=account.id, expense_id=submitted.expense_id)
        assert submitted.classification_stored is False
        assert expense.doc_type is None
        assert expense.classification_path is None
        assert expense.type == "FACTURA"
        assert expense.amount_gross == Decimal("110.00")


def test_audit_failure_never_blocks_submission(recognition_payload, monkeypatch):
    def _broken_event(**kwargs):
        raise OperationalError("INSERT INTO audit_logs", {}, Exception("no such table"))

    monkeypatch.setattr(audit_service, "AuditEvent", _broken_event)
    recognition_payload.set(TICKET_PAYLOAD)
    with SessionLocal() as session:
        account = _account(session)
        draft = _analyze(session, account, account.id, body=TICKET_BYTES)
        submitted = submit_expense(
            session, account=account, user_id=account.id, receipt_file_id=draft.receipt_file_id
        )

        assert submitted.audit_recorded is False
        assert get_expense(session, account_id=account.id, expense_id=submitted.expense_id)
        assert session.scalar(select(func.count()).select_from(AuditEvent)) == 0
