from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from expense_intake.core.logging import get_logger, log_event
from expense_intake.modules.audit.models import AuditEvent

logger = get_logger(__name__)

EXPENSE_SUBMITTED = "EXPENSE_SUBMITTED"


def emit_audit_event(
    session: Session,
    *,
    account_id: uuid.UUID,
    actor_user_id: uuid.UUID | None,
    action: str,
    entity: str,
    entity_id: uuid.UUID | None,
    payload: dict | None = None,
) -> bool:
    """Best effort: a failed audit insert is logged and never fails the caller."""
    try:
        with session.begin_nested():
            session.add(
                AuditEvent(
                    account_id=account_id,
                    actor_user_id=actor_user_id,
                    action=action,
                    entity=entity,
                    entity_id=entity_id,
                    payload_json=payload or {},
                )
            )
            session.flush()
    except SQLAlchemyError as e:
        log_event(
            logger,
            "audit.emit.failed",
            level=logging.WARNING,
            action=action,
            entity=entity,
            entity_id=str(entity_id) if entity_id else None,
            error=str(e),
        )
        return False
    return True
