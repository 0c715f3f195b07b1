"""
Retry queue for certificate regeneration and email redelivery.

Tickets are keyed by (request, document_type). A failure schedules the
next attempt with capped exponential backoff; after max_retries failures
the ticket is parked as permanently_failed and an operator is paged.
"""
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medcert.collaborators.auth import Identity, authorize
from medcert.models.audit import AuditEventType
from medcert.models.domain import RetryTicket
from medcert.models.enums import ActorRole, DocumentType, RetryStatus
from medcert.services.audit import AuditLogger
from medcert.services.clock import SystemClock
from medcert.services.errors import IssuanceError, NotFound

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_DELAY_SECONDS = 60
DEFAULT_MAX_DELAY_SECONDS = 900
MAX_RETRIES = 3


def compute_backoff(
    attempt: int,
    initial_delay: int = DEFAULT_INITIAL_DELAY_SECONDS,
    max_delay: int = DEFAULT_MAX_DELAY_SECONDS,
) -> int:
    """Seconds to wait before the given attempt (1-based)."""
    attempt = max(1, int(attempt))
    return min(initial_delay * 2 ** (attempt - 1), max_delay)


class RetryQueue:
    """
    Owns the RetryTicket lifecycle.

    Invariants:
    - At most one ticket per (request, document_type)
    - attempt_count counts failures; reaching max_retries parks the ticket
    - A permanently_failed ticket is never scheduled again except by requeue()
    - Only one worker can claim a due ticket (conditional update)
    """

    def __init__(
        self,
        db: Session,
        alerts,
        clock=None,
        initial_delay: int = DEFAULT_INITIAL_DELAY_SECONDS,
        max_delay: int = DEFAULT_MAX_DELAY_SECONDS,
        max_retries: int = MAX_RETRIES,
    ):
        self.db = db
        self.alerts = alerts
        self.clock = clock or SystemClock()
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.max_retries = max_retries
        self.audit = AuditLogger(db)

    def compute_backoff(self, attempt: int) -> int:
        return compute_backoff(attempt, self.initial_delay, self.max_delay)

    def get_ticket(self, intake_id: str, document_type: DocumentType) -> Optional[RetryTicket]:
        return (
            self.db.query(RetryTicket)
            .filter(RetryTicket.intake_id == intake_id, RetryTicket.document_type == document_type)
            .first()
        )

    def queue_retry(self, intake_id: str, document_type: DocumentType, error: str) -> RetryTicket:
        """Record a failed attempt and schedule the next one."""
        document_type = DocumentType(document_type)
        ticket = self.get_ticket(intake_id, document_type)
        if ticket is None:
            ticket = RetryTicket(
                intake_id=intake_id,
                document_type=document_type,
                attempt_count=0,
                status=RetryStatus.PENDING_RETRY,
            )
            self.db.add(ticket)
            try:
                self.db.flush()
            except IntegrityError:
                # Another process created it first
                self.db.rollback()
                ticket = self.get_ticket(intake_id, document_type)

        if ticket.status == RetryStatus.PERMANENTLY_FAILED:
            logger.warning(
                "retry ticket %s for %s/%s is permanently failed; not rescheduling",
                ticket.id, intake_id, document_type.value,
            )
            return ticket
        if ticket.status == RetryStatus.COMPLETED:
            ticket.attempt_count = 0

        now = self.clock.now()
        ticket.attempt_count += 1
        ticket.last_error = (error or "")[:2000]
        ticket.updated_at = now

        if ticket.attempt_count >= self.max_retries:
            ticket.status = RetryStatus.PERMANENTLY_FAILED
            ticket.next_retry_at = None
            self.db.commit()
            self.db.refresh(ticket)
            self._escalate(ticket)
            return ticket

        delay = self.compute_backoff(ticket.attempt_count)
        ticket.status = RetryStatus.PENDING_RETRY
        ticket.next_retry_at = now + timedelta(seconds=delay)
        self.db.commit()
        self.db.refresh(ticket)

        logger.info(
            "retry scheduled: request=%s type=%s attempt=%s in %ss",
            intake_id, document_type.value, ticket.attempt_count, delay,
        )
        self.audit.record(
            AuditEventType.RETRY_SCHEDULED,
            intake_id,
            actor_role=ActorRole.SYSTEM,
            payload={
                "document_type": document_type.value,
                "attempt_count": ticket.attempt_count,
                "next_retry_at": ticket.next_retry_at.isoformat(),
            },
        )
        return ticket

    def mark_permanently_failed(self, intake_id: str, document_type: DocumentType, error: str) -> Optional[RetryTicket]:
        """Park a ticket whose failure retrying cannot fix."""
        ticket = self.get_ticket(intake_id, DocumentType(document_type))
        if ticket is None or ticket.status == RetryStatus.PERMANENTLY_FAILED:
            return ticket
        ticket.status = RetryStatus.PERMANENTLY_FAILED
        ticket.last_error = (error or "")[:2000]
        ticket.next_retry_at = None
        ticket.updated_at = self.clock.now()
        self.db.commit()
        self.db.refresh(ticket)
        self._escalate(ticket)
        return ticket

    def _escalate(self, ticket: RetryTicket) -> None:
        logger.error(
            "retries exhausted: request=%s type=%s attempts=%s",
            ticket.intake_id, ticket.document_type.value, ticket.attempt_count,
        )
        self.alerts.capture_message(
            f"{ticket.document_type.value} retries exhausted; manual action required",
            severity="critical",
            tags={"request_id": str(ticket.intake_id), "document_type": ticket.document_type.value},
            extra={"attempt_count": ticket.attempt_count, "last_error": ticket.last_error},
        )
        self.audit.record(
            AuditEventType.RETRY_EXHAUSTED,
            ticket.intake_id,
            actor_role=ActorRole.SYSTEM,
            payload={"document_type": ticket.document_type.value, "attempt_count": ticket.attempt_count},
        )

    def list_due(self, now: Optional[datetime] = None, limit: int = 50) -> List[RetryTicket]:
        now = now or self.clock.now()
        return (
            self.db.query(RetryTicket)
            .filter(
                RetryTicket.status == RetryStatus.PENDING_RETRY,
                RetryTicket.next_retry_at <= now,
            )
            .order_by(RetryTicket.next_retry_at)
            .limit(limit)
            .all()
        )

    def list_permanently_failed(self, limit: int = 50) -> List[RetryTicket]:
        return (
            self.db.query(RetryTicket)
            .filter(RetryTicket.status == RetryStatus.PERMANENTLY_FAILED)
            .order_by(RetryTicket.updated_at.desc())
            .limit(limit)
            .all()
        )

    def mark_in_progress(self, intake_id: str, document_type: DocumentType) -> bool:
        """Claim a due ticket. Exactly one concurrent caller gets True."""
        result = self.db.execute(
            update(RetryTicket)
            .where(
                RetryTicket.intake_id == intake_id,
                RetryTicket.document_type == document_type,
                RetryTicket.status == RetryStatus.PENDING_RETRY,
            )
            .values(status=RetryStatus.PROCESSING, updated_at=self.clock.now())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def mark_success(self, intake_id: str, document_type: DocumentType) -> bool:
        """Complete an open ticket. Parked and completed tickets are left alone."""
        result = self.db.execute(
            update(RetryTicket)
            .where(
                RetryTicket.intake_id == intake_id,
                RetryTicket.document_type == document_type,
                RetryTicket.status.in_([RetryStatus.PENDING_RETRY, RetryStatus.PROCESSING]),
            )
            .values(
                status=RetryStatus.COMPLETED,
                next_retry_at=None,
                last_error=None,
                updated_at=self.clock.now(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def requeue(self, intake_id: str, document_type: DocumentType, actor: Identity) -> RetryTicket:
        """Operator reset of a permanently failed ticket; it becomes due immediately."""
        authorize(actor, [ActorRole.ADMIN])
        document_type = DocumentType(document_type)
        ticket = self.get_ticket(intake_id, document_type)
        if ticket is None:
            raise NotFound(f"No {document_type.value} retry ticket for request {intake_id}")
        if ticket.status != RetryStatus.PERMANENTLY_FAILED:
            raise IssuanceError(
                f"Retry ticket is {ticket.status.value}, only permanently failed tickets can be requeued",
                code="NOT_REQUEUEABLE",
            )

        now = self.clock.now()
        ticket.status = RetryStatus.PENDING_RETRY
        ticket.attempt_count = 0
        ticket.next_retry_at = now
        ticket.updated_at = now
        self.db.commit()
        self.db.refresh(ticket)

        self.audit.record(
            AuditEventType.RETRY_SCHEDULED,
            intake_id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"document_type": document_type.value, "requeued": True},
        )
        return ticket
