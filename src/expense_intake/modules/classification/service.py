from __future__ import annotations

from expense_intake.core.tracing import DecisionTracer, default_tracer
from expense_intake.modules.classification.schemas import (
    ClassificationPath,
    ClassificationResult,
    ClassificationSignals,
    DocType,
    DocTypeSource,
    FinalizedClassification,
)
from expense_intake.modules.extraction.signals import (
    INVOICE_KEYWORDS,
    contains_simplified_invoice_marker,
    extract_invoice_number,
    extract_tax_ids,
    infer_keywords,
    is_likely_tax_id,
    normalize_tax_id,
)


def classify_document(
    signals: ClassificationSignals, *, tracer: DecisionTracer | None = None
) -> ClassificationResult:
    """
    Decide invoice vs receipt with a priority-ordered rule ladder.

    The first matching rule wins and its path is stamped on the result:

    - simplified invoice marker            -> receipt / R4
    - two distinct tax ids                 -> invoice / R1
    - invoice number + seller tax id       -> invoice / R2
    - invoice number + invoice keyword     -> invoice / R3
    - invoice number + any tax id          -> invoice / R3
    - invoice keyword + any tax id         -> invoice / R3
    - anything else                        -> receipt / R4

    A single tax id is never enough on its own. Pure and total.
    """
    tracer = tracer or default_tracer
    text = signals.ocr_text or ""

    invoice_number = _clean_invoice_number(signals.invoice_number) or extract_invoice_number(text)

    ids_from_fields = _validated_ids(signals.seller_tax_id, signals.buyer_tax_id)
    ids_from_text = extract_tax_ids(text)
    all_ids = list(dict.fromkeys([*ids_from_fields, *ids_from_text]))
    seller_id = ids_from_fields[0] if ids_from_fields else (all_ids[0] if all_ids else None)

    keywords = {str(k).strip().lower() for k in signals.detected_keywords if str(k).strip()}
    keywords |= infer_keywords(text)
    has_invoice_keyword = bool(keywords & INVOICE_KEYWORDS)

    trace = {
        "invoice_number": invoice_number,
        "ids_from_fields": ids_from_fields,
        "ids_from_text": ids_from_text,
        "keywords": sorted(keywords),
    }

    if contains_simplified_invoice_marker(text):
        return _decide(tracer, "simplified_invoice", DocType.RECEIPT, ClassificationPath.R4, trace)
    if len(all_ids) >= 2:
        return _decide(tracer, "two_tax_ids", DocType.INVOICE, ClassificationPath.R1, trace)
    if invoice_number and seller_id:
        return _decide(tracer, "number_and_seller", DocType.INVOICE, ClassificationPath.R2, trace)
    if invoice_number and has_invoice_keyword:
        return _decide(tracer, "number_and_keyword", DocType.INVOICE, ClassificationPath.R3, trace)
    if invoice_number and all_ids:
        return _decide(tracer, "number_and_id", DocType.INVOICE, ClassificationPath.R3, trace)
    if has_invoice_keyword and all_ids:
        return _decide(tracer, "keyword_and_id", DocType.INVOICE, ClassificationPath.R3, trace)
    return _decide(tracer, "fallback", DocType.RECEIPT, ClassificationPath.R4, trace)


def finalize_doc_type(
    result: ClassificationResult, user_choice: DocType | None = None
) -> FinalizedClassification:
    # The path always records the automatic reasoning, even after an override.
    if user_choice is not None:
        return FinalizedClassification(
            doc_type=DocType(user_choice),
            doc_type_source=DocTypeSource.USER,
            classification_path=result.classification_path,
        )
    return FinalizedClassification(
        doc_type=result.suggested_type,
        doc_type_source=DocTypeSource.AUTOMATIC,
        classification_path=result.classification_path,
    )


def _decide(
    tracer: DecisionTracer,
    rule: str,
    doc_type: DocType,
    path: ClassificationPath,
    trace: dict,
) -> ClassificationResult:
    tracer.record(
        "classification.decided",
        rule=rule,
        suggested_type=doc_type.value,
        classification_path=path.value,
        **trace,
    )
    return ClassificationResult(suggested_type=doc_type, classification_path=path)


def _clean_invoice_number(value: str | None) -> str | None:
    if value is None:
        return None
    s = str(value).strip().upper()
    return s or None


def _validated_ids(*values: str | None) -> list[str]:
    out: list[str] = []
    for value in values:
        normalized = normalize_tax_id(value)
        if normalized and is_likely_tax_id(normalized) and normalized not in out:
            out.append(normalized)
    return out
