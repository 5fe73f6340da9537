from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from expense_intake.api.deps import get_current_account
from expense_intake.core.db import db_session
from expense_intake.modules.accounts.models import BillingAccount
from expense_intake.modules.categories.schemas import CategoryCreateIn, CategoryOut
from expense_intake.modules.categories.service import create_category, list_categories
from expense_intake.modules.ingestion.errors import IngestionError, to_http_exception

router = APIRouter(tags=["categories"])


@router.get("/categories", response_model=list[CategoryOut])
def list_categories_endpoint(
    session: Session = Depends(db_session),
    account: BillingAccount = Depends(get_current_account),
) -> list[CategoryOut]:
    categories = list_categories(session, account_id=account.id)
    return [CategoryOut.model_validate(c, from_attributes=True) for c in categories]


@router.post("/categories", response_model=CategoryOut)
def create_category_endpoint(
    payload: CategoryCreateIn,
    session: Session = Depends(db_session),
    account: BillingAccount = Depends(get_current_account),
) -> CategoryOut:
    try:
        category = create_category(session, account=account, name=payload.name)
    except IngestionError as e:
        raise to_http_exception(e) from e
    return CategoryOut.model_validate(category, from_attributes=True)
