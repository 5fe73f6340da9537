from __future__ import annotations

from sqlalchemy import Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from expense_intake.core.models import AccountScoped, Base, Timestamped, UUIDPrimaryKey


class MonthlyUsage(UUIDPrimaryKey, Timestamped, AccountScoped, Base):
    __tablename__ = "quota_monthly_usage"
    __table_args__ = (UniqueConstraint("account_id", "period", name="uq_usage_account_period"),)

    period: Mapped[str] = mapped_column(String(7))  # YYYY-MM, UTC
    count: Mapped[int] = mapped_column(Integer, default=0)
