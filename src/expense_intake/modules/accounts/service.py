from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from expense_intake.modules.accounts.models import BillingAccount


def create_account(
    session: Session,
    *,
    name: str,
    monthly_expense_limit: int | None = None,
    is_master: bool = False,
    can_add_custom_categories: bool = False,
) -> BillingAccount:
    account = BillingAccount(
        name=name.strip(),
        monthly_expense_limit=monthly_expense_limit,
        is_master=is_master,
        can_add_custom_categories=can_add_custom_categories,
    )
    session.add(account)
    session.commit()
    session.refresh(account)
    return account


def get_account(session: Session, *, account_id: uuid.UUID) -> BillingAccount | None:
    return session.scalar(select(BillingAccount).where(BillingAccount.id == account_id))
