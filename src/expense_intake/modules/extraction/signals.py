from __future__ import annotations

import re

# Registry-ledger references ("Hoja B-630518") look exactly like a company tax id.
_REGISTRY_SHEET_RE = re.compile(r"\bHoja\s+B-?\d+\b", re.I)

_INVOICE_NUMBER_RES = (
    re.compile(
        r"\bFACTURA\s*(?:N[ºO]\.?\s*)?#?\s*([A-Z0-9./-]{3,}(?:\d[ A-Z0-9./-]*)?)",
        re.I,
    ),
    re.compile(
        r"\bINVOICE\s*(?:NO\.|NUMBER|#)?\s*([A-Z0-9./-]{3,}(?:\d[ A-Z0-9./-]*)?)",
        re.I,
    ),
)

_SEP = r"[\s./-]?"

# Company id: letter + 7 digits + control digit/letter.
_CIF_RE = re.compile(
    rf"(?:^|[^A-Z0-9])([A-HJ-NP-SU-W](?:{_SEP}\d){{7}}(?:{_SEP}[A-Z0-9])?)(?=$|[^A-Z0-9])",
    re.I,
)
# Personal id (8 digits + letter) and foreigner id (X/Y/Z + 7 digits + letter).
_NIF_RE = re.compile(
    rf"(?:^|[^A-Z0-9])((?:[XYZ](?:{_SEP}\d){{7}}|(?:\d{_SEP}){{8}}){_SEP}[A-Z])(?=$|[^A-Z0-9])",
    re.I,
)
# Generic VAT id: 2-3 letter country/scheme prefix + alphanumeric body.
_VAT_RE = re.compile(
    rf"(?:^|[^A-Z0-9])([A-Z]{{2,3}}(?:{_SEP}[0-9A-Z]){{6,}})(?=$|[^A-Z0-9])",
    re.I,
)

_TAX_ID_SEPARATORS_RE = re.compile(r"[\s./:-]")

_CIF_SHAPE = re.compile(r"[A-HJ-NP-SU-W]\d{7}[0-9A-Z]")
_NIF_SHAPE = re.compile(r"\d{8}[A-Z]")
_NIE_SHAPE = re.compile(r"[XYZ]\d{7}[A-Z]")
_VAT_SHAPE = re.compile(r"[A-Z]{2,3}[0-9A-Z]{6,11}")

_KEYWORD_RES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("invoice", re.compile(r"\b(invoice|factura)\b", re.I)),
    ("vat", re.compile(r"\b(vat|iva)\b", re.I)),
    ("nif", re.compile(r"\b(nif|cif|nie|vat\s*id)\b", re.I)),
    ("invoice_number", re.compile(r"\b(factura\s*(n[ºo]\.?|#)|invoice\s*(no\.|number|#))", re.I)),
)

INVOICE_KEYWORDS = frozenset({"invoice", "invoice_number"})

SIMPLIFIED_INVOICE_MARKERS = ("factura simplificada", "simplified invoice")


def normalize_tax_id(value: object) -> str | None:
    if value is None:
        return None
    s = _TAX_ID_SEPARATORS_RE.sub("", str(value).strip().upper())
    return s or None


def is_likely_tax_id(candidate: str) -> bool:
    if len(candidate) < 8 or len(candidate) > 14:
        return False
    if not re.search(r"[A-Z]", candidate) or not re.search(r"\d", candidate):
        return False

    if _CIF_SHAPE.fullmatch(candidate):
        return True
    if _NIF_SHAPE.fullmatch(candidate):
        return True
    if _NIE_SHAPE.fullmatch(candidate):
        return True

    if _VAT_SHAPE.fullmatch(candidate):
        prefix_len = 3 if re.match(r"[A-Z]{3}", candidate) else 2
        suffix = candidate[prefix_len:]
        digit_count = sum(1 for ch in suffix if ch.isdigit())
        has_early_digit = any(ch.isdigit() for ch in suffix[:5])
        if digit_count >= 2 and has_early_digit:
            return True

    return False


def extract_tax_ids(text: str | None) -> list[str]:
    """
    Scan recognized text for seller/buyer tax identifiers.

    Candidates from every pattern family are normalized, validated and
    deduplicated; the result keeps scan order (company ids, then personal ids,
    then generic VAT ids), so the first entry is the assumed seller.
    """
    if not text:
        return []
    clean = _REGISTRY_SHEET_RE.sub("", text)
    clean = clean.replace("(", " ").replace(")", " ")

    found: dict[str, None] = {}
    for rx in (_CIF_RE, _NIF_RE, _VAT_RE):
        for m in rx.finditer(clean):
            normalized = normalize_tax_id(m.group(1))
            if normalized:
                found.setdefault(normalized, None)
    return [tax_id for tax_id in found if is_likely_tax_id(tax_id)]


def extract_invoice_number(text: str | None) -> str | None:
    if not text:
        return None
    t = re.sub(r"\s+", " ", text)
    for rx in _INVOICE_NUMBER_RES:
        m = rx.search(t)
        if m and re.search(r"\d", m.group(1)):
            return m.group(1).strip().upper()
    return None


def infer_keywords(text: str | None) -> set[str]:
    if not text:
        return set()
    return {name for name, rx in _KEYWORD_RES if rx.search(text)}


def contains_simplified_invoice_marker(text: str | None) -> bool:
    lowered = (text or "").lower()
    return any(marker in lowered for marker in SIMPLIFIED_INVOICE_MARKERS)
