from __future__ import annotations

from sqlalchemy import select

from expense_intake.core.config import settings
from expense_intake.core.db import SessionLocal, engine
from expense_intake.core.logging import get_logger, log_event
from expense_intake.core.models import Base
from expense_intake.modules.accounts.models import BillingAccount
from expense_intake.modules.categories.models import Category, CategoryStatus

logger = get_logger(__name__)


def bootstrap() -> None:
    if settings.environment == "dev" and str(settings.database_url).startswith("sqlite"):
        import expense_intake.models  # noqa: F401

        Base.metadata.create_all(engine)

    if not settings.init_account_name:
        return

    # Support comma-separated list of category names
    names = [n.strip() for n in settings.init_account_categories.split(",") if n.strip()]

    with SessionLocal() as session:
        account = session.scalar(
            select(BillingAccount).where(BillingAccount.name == settings.init_account_name)
        )
        if account:
            return
        account = BillingAccount(
            name=settings.init_account_name,
            monthly_expense_limit=settings.init_account_monthly_limit,
            is_master=False,
            can_add_custom_categories=True,
        )
        session.add(account)
        session.flush()
        for name in names:
            session.add(Category(account_id=account.id, name=name, status=CategoryStatus.ACTIVE))
        session.commit()
        log_event(
            logger,
            "bootstrap.account.created",
            account_id=str(account.id),
            categories=len(names),
        )
