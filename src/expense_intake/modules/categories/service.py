from __future__ import annotations

import enum
import re
import unicodedata
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from expense_intake.core.logging import get_logger, log_event
from expense_intake.modules.accounts.models import BillingAccount
from expense_intake.modules.categories.models import Category, CategoryStatus
from expense_intake.modules.ingestion.errors import ValidationFailed

logger = get_logger(__name__)

FALLBACK_CATEGORY_NAMES = frozenset({"otro", "otra", "otros", "other", "misc"})


class CategoryMatch(str, enum.Enum):
    EXACT = "exact"
    PARTIAL = "partial"
    FALLBACK = "fallback"
    NONE = "none"


@dataclass(frozen=True)
class CategoryResolution:
    proposed_name: str
    category_id: uuid.UUID | None
    match: CategoryMatch
    # The reviewer must pick: create the proposed category, use the fallback,
    # or choose one manually.
    needs_review: bool


def normalize_category_name(name: str | None) -> str:
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", name)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return re.sub(r"[^a-z0-9]+", " ", stripped.lower()).strip()


def build_category_index(categories: Iterable[Category]) -> dict[str, uuid.UUID]:
    index: dict[str, uuid.UUID] = {}
    for c in categories:
        key = normalize_category_name(c.name)
        if key and key not in index:
            index[key] = c.id
    return index


def find_fallback_category(categories: Iterable[Category]) -> uuid.UUID | None:
    for c in categories:
        if normalize_category_name(c.name) in FALLBACK_CATEGORY_NAMES:
            return c.id
    return None


def resolve_category(proposed: str | None, categories: Sequence[Category]) -> CategoryResolution:
    proposed_name = (proposed or "").strip()
    guess = normalize_category_name(proposed_name)
    fallback_id = find_fallback_category(categories)

    if not guess:
        return CategoryResolution(
            proposed_name=proposed_name,
            category_id=fallback_id,
            match=CategoryMatch.FALLBACK if fallback_id else CategoryMatch.NONE,
            needs_review=False,
        )

    exact_id = build_category_index(categories).get(guess)
    if exact_id:
        return CategoryResolution(
            proposed_name=proposed_name,
            category_id=exact_id,
            match=CategoryMatch.EXACT,
            needs_review=False,
        )

    for c in categories:
        key = normalize_category_name(c.name)
        if not key:
            continue
        if key.startswith(guess) or guess.startswith(key) or guess in key:
            return CategoryResolution(
                proposed_name=proposed_name,
                category_id=c.id,
                match=CategoryMatch.PARTIAL,
                needs_review=False,
            )

    return CategoryResolution(
        proposed_name=proposed_name,
        category_id=fallback_id,
        match=CategoryMatch.FALLBACK if fallback_id else CategoryMatch.NONE,
        needs_review=True,
    )


def list_categories(session: Session, *, account_id: uuid.UUID) -> list[Category]:
    rows = session.scalars(
        select(Category).where(
            Category.account_id == account_id,
            or_(Category.status.is_(None), Category.status == CategoryStatus.ACTIVE),
        )
    )
    return sorted(rows, key=lambda c: normalize_category_name(c.name))


def get_category(
    session: Session, *, account_id: uuid.UUID, category_id: uuid.UUID
) -> Category | None:
    return session.scalar(
        select(Category).where(Category.id == category_id, Category.account_id == account_id)
    )


def create_category(session: Session, *, account: BillingAccount, name: str) -> Category:
    clean = " ".join((name or "").split())
    if not clean:
        raise ValidationFailed("Category name cannot be empty")
    if not account.can_add_custom_categories:
        raise ValidationFailed("The current plan does not allow creating categories")

    key = normalize_category_name(clean)
    for existing in list_categories(session, account_id=account.id):
        if normalize_category_name(existing.name) == key:
            return existing

    category = Category(account_id=account.id, name=clean, status=CategoryStatus.ACTIVE)
    session.add(category)
    session.commit()
    session.refresh(category)
    log_event(
        logger,
        "category.created",
        account_id=str(account.id),
        category_id=str(category.id),
        name=clean,
    )
    return category
