from __future__ import annotations

from fastapi import APIRouter

from expense_intake.modules.categories.api import router as categories_router
from expense_intake.modules.ingestion.api import router as ingestions_router
from expense_intake.modules.quota.api import router as quota_router

router = APIRouter()

router.include_router(ingestions_router, prefix="/api")
router.include_router(categories_router, prefix="/api")
router.include_router(quota_router, prefix="/api")


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}
