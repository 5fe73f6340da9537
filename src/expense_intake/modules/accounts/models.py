from __future__ import annotations

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from expense_intake.core.models import Base, Timestamped, UUIDPrimaryKey


class BillingAccount(UUIDPrimaryKey, Timestamped, Base):
    __tablename__ = "accounts_billing_account"

    name: Mapped[str] = mapped_column(String(200))
    # None means the plan has no monthly ceiling.
    monthly_expense_limit: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_master: Mapped[bool] = mapped_column(Boolean, default=False)
    can_add_custom_categories: Mapped[bool] = mapped_column(Boolean, default=False)
