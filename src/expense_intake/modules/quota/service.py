from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from expense_intake.core.logging import get_logger, log_event
from expense_intake.modules.accounts.models import BillingAccount
from expense_intake.modules.ingestion.errors import QuotaExceeded
from expense_intake.modules.quota.models import MonthlyUsage

logger = get_logger(__name__)


@dataclass(frozen=True)
class QuotaUsage:
    period: str
    limit: int | None
    used: int
    remaining: int | None
    limited: bool


def current_period(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    if now.tzinfo is not None:
        now = now.astimezone(UTC)
    return f"{now.year:04d}-{now.month:02d}"


def is_limited(account: BillingAccount) -> bool:
    return not account.is_master and account.monthly_expense_limit is not None


def monthly_usage(
    session: Session, *, account: BillingAccount, now: datetime | None = None
) -> QuotaUsage:
    period = current_period(now)
    used = session.scalar(
        select(MonthlyUsage.count).where(
            MonthlyUsage.account_id == account.id, MonthlyUsage.period == period
        )
    )
    used = int(used or 0)
    if not is_limited(account):
        return QuotaUsage(period=period, limit=None, used=used, remaining=None, limited=False)
    limit = int(account.monthly_expense_limit)
    return QuotaUsage(
        period=period,
        limit=limit,
        used=used,
        remaining=max(0, limit - used),
        limited=True,
    )


def ensure_quota_available(
    session: Session, *, account: BillingAccount, now: datetime | None = None
) -> QuotaUsage:
    """Early, non-binding check made before anything is uploaded."""
    usage = monthly_usage(session, account=account, now=now)
    if usage.limited and usage.remaining == 0:
        raise QuotaExceeded(f"Monthly limit of {usage.limit} expenses reached")
    return usage


def reserve_monthly_slot(
    session: Session, *, account: BillingAccount, now: datetime | None = None
) -> None:
    """
    Take one slot of the account's monthly allowance.

    The increment is a single conditional UPDATE, so two concurrent
    submissions cannot both take the last slot. The caller owns the
    transaction: rolling it back releases the slot.
    """
    period = current_period(now)
    _ensure_usage_row(session, account=account, period=period)

    stmt = update(MonthlyUsage).where(
        MonthlyUsage.account_id == account.id, MonthlyUsage.period == period
    )
    if is_limited(account):
        stmt = stmt.where(MonthlyUsage.count < account.monthly_expense_limit)
    result = session.execute(stmt.values(count=MonthlyUsage.count + 1))
    if not result.rowcount:
        log_event(
            logger,
            "quota.exceeded",
            account_id=str(account.id),
            period=period,
            limit=account.monthly_expense_limit,
        )
        raise QuotaExceeded(f"Monthly limit of {account.monthly_expense_limit} expenses reached")


def _ensure_usage_row(session: Session, *, account: BillingAccount, period: str) -> None:
    existing = session.scalar(
        select(MonthlyUsage.id).where(
            MonthlyUsage.account_id == account.id, MonthlyUsage.period == period
        )
    )
    if existing:
        return
    try:
        with session.begin_nested():
            session.add(MonthlyUsage(account_id=account.id, period=period, count=0))
            session.flush()
    except IntegrityError:
        # Another submission created the row first.
        pass
