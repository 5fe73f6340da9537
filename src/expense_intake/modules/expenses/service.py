from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import inspect, insert, select
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from expense_intake.core.db import is_unknown_column_error
from expense_intake.core.logging import get_logger, log_event
from expense_intake.core.tracing import DecisionTracer, default_tracer
from expense_intake.modules.expenses.models import CLASSIFICATION_COLUMNS, Expense
from expense_intake.modules.ingestion.errors import PersistenceFailed

logger = get_logger(__name__)


class UnknownColumn(PersistenceFailed):
    """The target table rejected a column it does not have."""


class ExpenseStore(Protocol):
    def supports_classification_columns(self) -> bool: ...

    def insert(self, payload: Mapping[str, Any]) -> uuid.UUID: ...


@dataclass(frozen=True)
class PersistedExpense:
    id: uuid.UUID
    classification_stored: bool


class SqlExpenseStore:
    def __init__(self, session: Session) -> None:
        self._session = session
        self._supports: bool | None = None

    def supports_classification_columns(self) -> bool:
        if self._supports is None:
            columns = {
                c["name"]
                for c in inspect(self._session.connection()).get_columns(Expense.__tablename__)
            }
            self._supports = all(name in columns for name in CLASSIFICATION_COLUMNS)
        return self._supports

    def insert(self, payload: Mapping[str, Any]) -> uuid.UUID:
        values = dict(payload)
        expense_id = values.setdefault("id", uuid.uuid4())
        try:
            with self._session.begin_nested():
                self._session.execute(insert(Expense.__table__).values(**values))
        except DBAPIError as e:
            if is_unknown_column_error(e):
                self._supports = False
                raise UnknownColumn(str(e.orig or e)) from e
            raise PersistenceFailed(f"Could not save expense: {e.orig or e}") from e
        return expense_id


def without_classification(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in payload.items() if k not in CLASSIFICATION_COLUMNS}


def persist_expense(
    store: ExpenseStore,
    payload: Mapping[str, Any],
    *,
    tracer: DecisionTracer | None = None,
) -> PersistedExpense:
    """
    Insert an expense, degrading to the legacy column set when needed.

    Stores that report missing classification columns get the reduced payload
    up front. A full insert rejected for an unknown column is retried exactly
    once without those columns; any other failure propagates.
    """
    tracer = tracer or default_tracer
    full = dict(payload)
    full.setdefault("id", uuid.uuid4())

    if not store.supports_classification_columns():
        tracer.record("persistence.reduced_payload", reason="capability")
        expense_id = store.insert(without_classification(full))
        return PersistedExpense(id=expense_id, classification_stored=False)

    try:
        return PersistedExpense(id=store.insert(full), classification_stored=True)
    except UnknownColumn as e:
        tracer.record("persistence.reduced_payload", reason="unknown_column", error=e.message)
        log_event(
            logger,
            "expense.insert.compat_retry",
            expense_id=str(full["id"]),
            error=e.message,
        )

    try:
        expense_id = store.insert(without_classification(full))
    except UnknownColumn as e:
        raise PersistenceFailed(e.message) from e
    return PersistedExpense(id=expense_id, classification_stored=False)


def get_expense(
    session: Session, *, account_id: uuid.UUID, expense_id: uuid.UUID
) -> Expense | None:
    return session.scalar(
        select(Expense).where(Expense.id == expense_id, Expense.account_id == account_id)
    )
