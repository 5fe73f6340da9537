from __future__ import annotations

import pytest

from expense_intake.core.tracing import RecordingTracer
from expense_intake.modules.classification.schemas import (
    ClassificationPath,
    ClassificationResult,
    ClassificationSignals,
    DocType,
    DocTypeSource,
)
from expense_intake.modules.classification.service import classify_document, finalize_doc_type


def _classify(**kwargs) -> ClassificationResult:
    if "detected_keywords" in kwargs:
        kwargs["detected_keywords"] = frozenset(kwargs["detected_keywords"])
    return classify_document(ClassificationSignals(**kwargs), tracer=RecordingTracer())


def test_two_ids_dominate_even_with_invoice_number():
    result = _classify(
        invoice_number="F253282", seller_tax_id="B75977868", buyer_tax_id="78222262K"
    )
    assert result == ClassificationResult(DocType.INVOICE, ClassificationPath.R1)


@pytest.mark.parametrize(
    "extra",
    [
        {},
        {"invoice_number": "A-1"},
        {"detected_keywords": ["invoice"]},
        {"detected_keywords": ["ticket"], "ocr_text": "Gracias por su visita"},
    ],
)
def test_two_distinct_ids_always_yield_r1(extra):
    result = _classify(seller_tax_id="B75977868", buyer_tax_id="78222262K", **extra)
    assert result.suggested_type == DocType.INVOICE
    assert result.classification_path == ClassificationPath.R1


def test_two_ids_split_between_fields_and_text_count():
    result = _classify(seller_tax_id="B75977868", ocr_text="Cliente: 78222262K")
    assert result.classification_path == ClassificationPath.R1


def test_same_id_twice_is_one_id():
    result = _classify(seller_tax_id="B75977868", buyer_tax_id="b-75977868")
    assert result == ClassificationResult(DocType.RECEIPT, ClassificationPath.R4)


def test_invoice_number_and_seller_id_is_r2():
    result = _classify(invoice_number="INV-0099", seller_tax_id="B75977868")
    assert result == ClassificationResult(DocType.INVOICE, ClassificationPath.R2)


def test_simplified_marker_overrides_everything():
    result = _classify(
        invoice_number="F253282",
        seller_tax_id="B75977868",
        buyer_tax_id="78222262K",
        ocr_text="FACTURA SIMPLIFICADA nº 5",
    )
    assert result == ClassificationResult(DocType.RECEIPT, ClassificationPath.R4)


def test_simplified_marker_with_number_and_one_id():
    result = _classify(
        ocr_text="Factura simplificada nº 5\nCIF: B75977868",
        invoice_number="T-5",
    )
    assert result == ClassificationResult(DocType.RECEIPT, ClassificationPath.R4)


def test_keyword_alone_is_insufficient():
    result = _classify(detected_keywords=["invoice"])
    assert result == ClassificationResult(DocType.RECEIPT, ClassificationPath.R4)


def test_single_id_alone_is_insufficient():
    result = _classify(seller_tax_id="B75977868")
    assert result == ClassificationResult(DocType.RECEIPT, ClassificationPath.R4)


def test_invoice_number_and_keyword_is_r3():
    result = _classify(invoice_number="2024-17", detected_keywords=["Invoice"])
    assert result == ClassificationResult(DocType.INVOICE, ClassificationPath.R3)


def test_invoice_number_from_text_and_keyword_from_text_is_r3():
    result = _classify(ocr_text="Factura Nº 2024/0042\nTotal: 10,00")
    assert result == ClassificationResult(DocType.INVOICE, ClassificationPath.R3)


def test_keyword_and_one_id_is_r3():
    result = _classify(detected_keywords=["invoice"], ocr_text="NIF: 78222262K")
    assert result == ClassificationResult(DocType.INVOICE, ClassificationPath.R3)


def test_invalid_explicit_id_is_not_counted():
    result = _classify(seller_tax_id="12", buyer_tax_id="78222262K", invoice_number="X-100")
    # Only the buyer id is valid; it is still the first usable id and acts as seller.
    assert result == ClassificationResult(DocType.INVOICE, ClassificationPath.R2)


def test_empty_signals_fall_back_to_receipt():
    assert _classify() == ClassificationResult(DocType.RECEIPT, ClassificationPath.R4)


def test_every_decision_is_traced():
    tracer = RecordingTracer()
    classify_document(
        ClassificationSignals(invoice_number="INV-0099", seller_tax_id="B75977868"),
        tracer=tracer,
    )
    assert tracer.step_names == ["classification.decided"]
    _, details = tracer.steps[0]
    assert details["rule"] == "number_and_seller"
    assert details["classification_path"] == "R2"
    assert details["ids_from_fields"] == ["B75977868"]


def test_finalize_without_choice_is_automatic():
    for result in (
        ClassificationResult(DocType.INVOICE, ClassificationPath.R1),
        ClassificationResult(DocType.RECEIPT, ClassificationPath.R4),
    ):
        finalized = finalize_doc_type(result)
        assert finalized.doc_type == result.suggested_type
        assert finalized.doc_type_source == DocTypeSource.AUTOMATIC
        assert finalized.classification_path == result.classification_path


def test_finalize_with_override_keeps_automatic_path():
    result = ClassificationResult(DocType.RECEIPT, ClassificationPath.R4)
    finalized = finalize_doc_type(result, DocType.INVOICE)
    assert finalized.doc_type == DocType.INVOICE
    assert finalized.doc_type_source == DocTypeSource.USER
    assert finalized.classification_path == ClassificationPath.R4
    assert finalized.legacy_type == "FACTURA"


def test_finalize_with_matching_override_is_still_user():
    result = ClassificationResult(DocType.INVOICE, ClassificationPath.R2)
    finalized = finalize_doc_type(result, DocType.INVOICE)
    assert finalized.doc_type_source == DocTypeSource.USER
    assert finalized.classification_path == ClassificationPath.R2
