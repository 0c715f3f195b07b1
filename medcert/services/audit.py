"""Audit log emitter."""
import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medcert.models.audit import AuditEvent

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Appends audit events.

    Invariants:
    - Never raises: a failed write is logged and dropped, and the caller's
      workflow carries on (callers commit their own state first)
    - Never updates or deletes an existing event
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        event_type: str,
        subject_id: str,
        actor_id: Optional[str] = None,
        actor_role: Optional[str] = None,
        payload: Optional[dict] = None,
        subject_type: str = "request",
    ) -> Optional[AuditEvent]:
        event = AuditEvent(
            event_type=event_type,
            subject_type=subject_type,
            subject_id=str(subject_id),
            actor_id=actor_id,
            actor_role=getattr(actor_role, "value", actor_role),
            payload=payload or {},
        )
        try:
            self.db.add(event)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("audit write failed: event=%s subject=%s", event_type, subject_id)
            return None
        return event

    def history(self, subject_id: str):
        return (
            self.db.query(AuditEvent)
            .filter(AuditEvent.subject_id == str(subject_id))
            .order_by(AuditEvent.created_at, AuditEvent.id)
            .all()
        )
