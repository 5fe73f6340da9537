from __future__ import annotations

import uuid

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from expense_intake.core.db import db_session
from expense_intake.modules.accounts.models import BillingAccount
from expense_intake.modules.accounts.service import get_account


def _parse_uuid(value: str | None, *, what: str) -> uuid.UUID:
    if not value:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Missing {what}")
    try:
        return uuid.UUID(value)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid {what}") from e


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> uuid.UUID:
    # Identity is established upstream; the gateway forwards the user id.
    return _parse_uuid(x_user_id, what="user")


def get_current_account(
    x_account_id: str | None = Header(default=None),
    session: Session = Depends(db_session),
) -> BillingAccount:
    account_id = _parse_uuid(x_account_id, what="account")
    account = get_account(session, account_id=account_id)
    if not account:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown account")
    return account
