from __future__ import annotations

import enum

from sqlalchemy import Enum, String
from sqlalchemy.orm import Mapped, mapped_column

from expense_intake.core.models import AccountScoped, Base, Timestamped, UUIDPrimaryKey


class CategoryStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


class Category(UUIDPrimaryKey, Timestamped, AccountScoped, Base):
    __tablename__ = "categories"

    name: Mapped[str] = mapped_column(String(200))
    status: Mapped[CategoryStatus | None] = mapped_column(
        Enum(CategoryStatus, native_enum=False), nullable=True, default=CategoryStatus.ACTIVE
    )
