from __future__ import annotations

import uuid

from pydantic import BaseModel

from expense_intake.modules.categories.models import CategoryStatus


class CategoryOut(BaseModel):
    id: uuid.UUID
    name: str
    status: CategoryStatus | None


class CategoryCreateIn(BaseModel):
    name: str
