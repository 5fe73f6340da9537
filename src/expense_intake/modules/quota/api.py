from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from expense_intake.api.deps import get_current_account
from expense_intake.core.db import db_session
from expense_intake.modules.accounts.models import BillingAccount
from expense_intake.modules.ingestion.schemas import QuotaOut
from expense_intake.modules.quota.service import monthly_usage

router = APIRouter(tags=["quota"])


@router.get("/quota", response_model=QuotaOut)
def get_quota(
    session: Session = Depends(db_session),
    account: BillingAccount = Depends(get_current_account),
) -> QuotaOut:
    return QuotaOut.from_usage(monthly_usage(session, account=account))
