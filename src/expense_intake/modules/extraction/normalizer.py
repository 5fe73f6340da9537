from __future__ import annotations

import json
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from expense_intake.core.config import settings
from expense_intake.modules.classification.schemas import DocType

_CENT = Decimal("0.01")

# Ordered synonym keys per canonical field. Dotted keys walk nested objects.
FIELD_SYNONYMS: dict[str, tuple[str, ...]] = {
    "vendor": ("vendor", "merchant", "commerce", "company", "company_name"),
    "expense_date": ("expense_date", "date", "purchase_date", "invoice_date"),
    "amount_gross": ("amount_gross", "total", "total_amount", "amount", "amount_total"),
    "amount_net": ("amount_net", "net"),
    "tax_vat": ("tax_vat", "vat", "tax", "iva"),
    "currency": ("currency", "currency_code"),
    "notes": ("notes", "comment", "description"),
    "category_guess": ("category_guess", "category_suggestion", "category"),
    "invoice_number": ("invoice_number", "invoiceNo", "invoice_no", "n_factura"),
    "tax_id": ("tax_id", "cif", "nif", "vat_id", "company_tax_id"),
    "seller_tax_id": (
        "seller_tax_id",
        "vendor_tax_id",
        "company_tax_id",
        "issuer_tax_id",
        "emisor_tax_id",
        "emisor.nif",
        "emisor.cif",
    ),
    "buyer_tax_id": (
        "buyer_tax_id",
        "customer_tax_id",
        "client_tax_id",
        "receptor_tax_id",
        "cliente.nif",
        "cliente.cif",
    ),
    "detected_keywords": ("detected_keywords", "keywords"),
    "ocr_text": ("ocr_text", "raw_text", "full_text"),
    "address": ("address", "company_address"),
    "email": ("email", "company_email"),
    "payment_method": ("payment_method",),
    "type_hint": ("type", "kind"),
}

_CURRENCY_SYMBOLS = {"€": "EUR", "$": "USD", "£": "GBP"}

_YMD_RE = re.compile(r"(\d{4})[/-](\d{1,2})[/-](\d{1,2})")
_DMY_RE = re.compile(r"(\d{1,2})[/-](\d{1,2})[/-](\d{4})")
_GENERIC_DATE_FORMATS = (
    "%d.%m.%Y",
    "%Y.%m.%d",
    "%d %b %Y",
    "%d %B %Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d/%m/%y",
)


@dataclass(frozen=True)
class CanonicalExpenseFields:
    vendor: str = ""
    expense_date: str = ""
    amount_gross: Decimal = Decimal("0.00")
    amount_net: Decimal = Decimal("0.00")
    tax_vat: Decimal = Decimal("0.00")
    currency: str = "EUR"
    invoice_number: str | None = None
    seller_tax_id: str | None = None
    buyer_tax_id: str | None = None
    tax_id: str | None = None
    detected_keywords: frozenset[str] = field(default_factory=frozenset)
    ocr_text: str | None = None
    notes: str | None = None
    category_guess: str | None = None
    address: str | None = None
    email: str | None = None
    payment_method: str | None = None
    # Hint only; the classification engine makes the real decision.
    inferred_type: DocType = DocType.RECEIPT


def extraction_source(raw: Any) -> Mapping[str, Any]:
    """Pick the mapping that actually carries the extracted fields."""
    if not isinstance(raw, Mapping):
        return {}
    data = raw.get("data")
    if isinstance(data, Mapping):
        return data
    extraction = raw.get("extraction")
    if isinstance(extraction, Mapping):
        inner = extraction.get("data")
        return inner if isinstance(inner, Mapping) else extraction
    return raw


def pick_field(src: Mapping[str, Any], name: str) -> Any:
    """First present, non-null, non-empty value among the synonyms of `name`."""
    for key in FIELD_SYNONYMS.get(name, ()):
        cur: Any = src
        for part in key.split("."):
            if not isinstance(cur, Mapping):
                cur = None
                break
            cur = cur.get(part)
        if cur is None or cur == "":
            continue
        return cur
    return None


def normalize_extraction(raw: Any) -> CanonicalExpenseFields:
    src = extraction_source(raw)

    net = parse_amount(pick_field(src, "amount_net"))
    vat = parse_amount(pick_field(src, "tax_vat"))
    gross = parse_amount(pick_field(src, "amount_gross"))
    if gross is None and net is not None and vat is not None:
        gross = _from_cents(_to_cents(net) + _to_cents(vat))
    if net is None and gross is not None and vat is not None:
        net = _from_cents(_to_cents(gross) - _to_cents(vat))

    invoice_number = _clean_id(pick_field(src, "invoice_number"))
    tax_id = _clean_id(pick_field(src, "tax_id"))
    seller_tax_id = _clean_id(pick_field(src, "seller_tax_id")) or tax_id
    buyer_tax_id = _clean_id(pick_field(src, "buyer_tax_id"))

    return CanonicalExpenseFields(
        vendor=_to_str(pick_field(src, "vendor")) or "",
        expense_date=parse_date(pick_field(src, "expense_date")),
        amount_gross=gross if gross is not None else Decimal("0.00"),
        amount_net=net if net is not None else Decimal("0.00"),
        tax_vat=vat if vat is not None else Decimal("0.00"),
        currency=normalize_currency(pick_field(src, "currency")),
        invoice_number=invoice_number,
        seller_tax_id=seller_tax_id,
        buyer_tax_id=buyer_tax_id,
        tax_id=tax_id,
        detected_keywords=_keywords(pick_field(src, "detected_keywords")),
        ocr_text=_to_plain_text(pick_field(src, "ocr_text")),
        notes=_to_str(pick_field(src, "notes")),
        category_guess=_to_str(pick_field(src, "category_guess")),
        address=_to_str(pick_field(src, "address")),
        email=_to_str(pick_field(src, "email")),
        payment_method=_to_str(pick_field(src, "payment_method")),
        inferred_type=_infer_type(
            invoice_number=invoice_number,
            tax_ids=(tax_id, seller_tax_id, buyer_tax_id),
            hint=pick_field(src, "type_hint"),
        ),
    )


def parse_amount(value: Any) -> Decimal | None:
    """
    Parse a locale-ambiguous amount into a cent-rounded Decimal.

    With both separators present the later one is the decimal separator;
    a lone comma is a decimal comma. Anything unparseable is None, never 0.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, Decimal)):
        return _to_amount(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return _to_amount(str(value))

    s = re.sub(r"[^0-9,.-]", "", str(value).strip())
    if not s:
        return None
    last_comma, last_dot = s.rfind(","), s.rfind(".")
    if last_comma > -1 and last_dot > -1:
        if last_comma > last_dot:
            s = s.replace(".", "").replace(",", ".")
        else:
            s = s.replace(",", "")
    elif last_comma > -1:
        s = s.replace(",", ".", 1)
    return _to_amount(s)


def _to_amount(value: int | Decimal | str) -> Decimal | None:
    # Values too large for the decimal context fail to quantize; they are unparseable too.
    try:
        parsed = Decimal(value)
        if not parsed.is_finite():
            return None
        return parsed.quantize(_CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return None


def parse_date(value: Any) -> str:
    """Normalize to YYYY-MM-DD; an empty string means unknown."""
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    s = str(value).strip()

    m = _YMD_RE.fullmatch(s)
    if m:
        return _safe_iso(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    m = _DMY_RE.fullmatch(s)
    if m:
        return _safe_iso(int(m.group(3)), int(m.group(2)), int(m.group(1)))

    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    for fmt in _GENERIC_DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date().isoformat()
        except ValueError:
            continue
    return ""


def normalize_currency(value: Any) -> str:
    s = _to_str(value)
    if not s:
        return settings.default_currency
    if s in _CURRENCY_SYMBOLS:
        return _CURRENCY_SYMBOLS[s]
    code = s.upper()[:3]
    if re.fullmatch(r"[A-Z]{3}", code):
        return code
    return settings.default_currency


def _to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value(rounding=ROUND_HALF_UP))


def _from_cents(cents: int) -> Decimal | None:
    return _to_amount(f"{cents}E-2")


def _safe_iso(year: int, month: int, day: int) -> str:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return ""


def _to_str(value: Any) -> str | None:
    if value is None or isinstance(value, (Mapping, list, tuple, set)):
        return None
    s = str(value).strip()
    return s or None


def _to_plain_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value or None
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


def _clean_id(value: Any) -> str | None:
    s = _to_str(value)
    if not s:
        return None
    cleaned = re.sub(r"\s+", "", s)
    return cleaned or None


def _keywords(value: Any) -> frozenset[str]:
    if not isinstance(value, (list, tuple, set, frozenset)):
        return frozenset()
    return frozenset(str(k).strip().lower() for k in value if str(k).strip())


def _infer_type(*, invoice_number: str | None, tax_ids: tuple, hint: Any) -> DocType:
    if invoice_number or any(tax_ids):
        return DocType.INVOICE
    label = (_to_str(hint) or "").upper()
    if label in {"FACTURA", "INVOICE"}:
        return DocType.INVOICE
    return DocType.RECEIPT
