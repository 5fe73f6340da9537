from __future__ import annotations

import enum
from dataclasses import dataclass, field


class DocType(str, enum.Enum):
    INVOICE = "invoice"
    RECEIPT = "receipt"


class DocTypeSource(str, enum.Enum):
    AUTOMATIC = "automatic"
    USER = "user"


class ClassificationPath(str, enum.Enum):
    R1 = "R1"  # two distinct tax ids (seller + buyer)
    R2 = "R2"  # invoice number + seller tax id
    R3 = "R3"  # heuristic combinations
    R4 = "R4"  # simplified invoice marker or fallback


@dataclass(frozen=True)
class ClassificationSignals:
    seller_tax_id: str | None = None
    buyer_tax_id: str | None = None
    invoice_number: str | None = None
    detected_keywords: frozenset[str] = field(default_factory=frozenset)
    ocr_text: str | None = None


@dataclass(frozen=True)
class ClassificationResult:
    suggested_type: DocType
    classification_path: ClassificationPath


@dataclass(frozen=True)
class FinalizedClassification:
    doc_type: DocType
    doc_type_source: DocTypeSource
    classification_path: ClassificationPath

    @property
    def legacy_type(self) -> str:
        return "FACTURA" if self.doc_type == DocType.INVOICE else "TICKET"
