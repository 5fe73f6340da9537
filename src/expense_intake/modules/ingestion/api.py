from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from expense_intake.api.deps import get_current_account, get_current_user_id
from expense_intake.core.db import db_session
from expense_intake.core.logging import get_logger, log_event
from expense_intake.modules.accounts.models import BillingAccount
from expense_intake.modules.ingestion.errors import IngestionError, to_http_exception
from expense_intake.modules.ingestion.schemas import (
    IngestionDraftOut,
    ReceiptFileOut,
    SubmitIn,
    SubmittedExpenseOut,
)
from expense_intake.modules.ingestion.service import (
    analyze_upload,
    get_receipt_file,
    submit_expense,
)

router = APIRouter(tags=["ingestions"])
logger = get_logger(__name__)


@router.post("/ingestions", response_model=IngestionDraftOut)
async def create_ingestion(
    upload: UploadFile = File(...),
    notes: str | None = Form(default=None),
    project_ref: str | None = Form(default=None),
    session: Session = Depends(db_session),
    account: BillingAccount = Depends(get_current_account),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> IngestionDraftOut:
    body = await upload.read()
    log_event(
        logger,
        "upload.received",
        filename=upload.filename or "upload.bin",
        content_type=upload.content_type,
        byte_size=len(body),
    )
    try:
        draft = await run_in_threadpool(
            analyze_upload,
            session,
            account=account,
            user_id=user_id,
            filename=upload.filename or "upload.bin",
            content_type=upload.content_type,
            body=body,
            notes=notes,
            project_ref=project_ref,
        )
    except IngestionError as e:
        raise to_http_exception(e) from e
    return IngestionDraftOut.from_draft(draft)


@router.get("/ingestions/{receipt_file_id}", response_model=ReceiptFileOut)
def get_ingestion(
    receipt_file_id: uuid.UUID,
    session: Session = Depends(db_session),
    account: BillingAccount = Depends(get_current_account),
) -> ReceiptFileOut:
    receipt = get_receipt_file(session, account_id=account.id, receipt_file_id=receipt_file_id)
    if not receipt:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return ReceiptFileOut.model_validate(receipt, from_attributes=True)


@router.post("/ingestions/{receipt_file_id}/submit", response_model=SubmittedExpenseOut)
def submit_ingestion(
    receipt_file_id: uuid.UUID,
    payload: SubmitIn,
    session: Session = Depends(db_session),
    account: BillingAccount = Depends(get_current_account),
    user_id: uuid.UUID = Depends(get_current_user_id),
) -> SubmittedExpenseOut:
    try:
        submitted = submit_expense(
            session,
            account=account,
            user_id=user_id,
            receipt_file_id=receipt_file_id,
            edits=payload.edits.model_dump(exclude_none=True),
            category_id=payload.category_id,
            doc_type_override=payload.doc_type,
            employee_id=payload.employee_id,
            project_ref=payload.project_ref,
        )
    except IngestionError as e:
        raise to_http_exception(e) from e
    return SubmittedExpenseOut.from_submitted(submitted)
