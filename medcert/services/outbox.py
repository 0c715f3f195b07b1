"""
Delivery outbox.

Every email the workflow wants to send is written here first, then
dispatched. A row records exactly one outcome per activation; transient
failures hand the request to the retry queue as an `email` ticket.
"""
import logging
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from medcert.collaborators.auth import Identity, authorize
from medcert.collaborators.email import SendResult, is_valid_email, mask_email
from medcert.models.audit import AuditEventType
from medcert.models.domain import Certificate, EmailOutbox, Intake, Patient
from medcert.models.enums import ActorRole, DeliveryStatus, DocumentType, EmailType
from medcert.services.audit import AuditLogger
from medcert.services.clock import SystemClock
from medcert.services.errors import NotFound

logger = logging.getLogger(__name__)

DELIVERY_MODE_DISABLED = "disabled"
MAX_OPERATOR_RESENDS = 3


def certificate_issued_email(patient_name: str, certificate: Certificate, app_url: str):
    subject = "Your medical certificate is ready"
    body = (
        f"Hi {patient_name or 'there'},\n\n"
        f"Your certificate {certificate.certificate_number} has been issued.\n"
        f"Download it from your account: {app_url}/account/certificates/{certificate.id}\n\n"
        f"Employers can verify it at {app_url}/verify using code {certificate.verification_code}.\n"
    )
    return subject, body


def request_declined_email(patient_name: str, reason: Optional[str], app_url: str):
    subject = "Update on your request"
    body = (
        f"Hi {patient_name or 'there'},\n\n"
        "A doctor has reviewed your request and was unable to issue a certificate.\n"
        f"Reason: {reason or 'not specified'}\n\n"
        f"You can see the details in your account: {app_url}/account\n"
    )
    return subject, body


def info_requested_email(patient_name: str, message: Optional[str], app_url: str):
    subject = "Your doctor needs more information"
    body = (
        f"Hi {patient_name or 'there'},\n\n"
        "The doctor reviewing your request has a question:\n\n"
        f"{message or ''}\n\n"
        f"Reply from your account: {app_url}/account\n"
    )
    return subject, body


class DeliveryOutbox:
    """
    Owns EmailOutbox rows.

    Invariants:
    - A row leaves pending only through a conditional update, so one
      activation records one outcome
    - Transient failures are queued for retry; a bad address is not
    - Delivery-disabled mode records skipped and sends nothing
    """

    def __init__(
        self,
        db: Session,
        sender,
        retry_queue,
        clock=None,
        delivery_mode: str = "smtp",
        app_url: str = "",
    ):
        self.db = db
        self.sender = sender
        self.retry_queue = retry_queue
        self.clock = clock or SystemClock()
        self.delivery_mode = delivery_mode
        self.app_url = app_url
        self.audit = AuditLogger(db)

    def enqueue(
        self,
        intake_id: str,
        email_type: EmailType,
        to_email: str,
        subject: str,
        body: str,
        certificate_id: Optional[str] = None,
    ) -> EmailOutbox:
        row = EmailOutbox(
            intake_id=intake_id,
            certificate_id=certificate_id,
            email_type=email_type,
            to_email=to_email or "",
            subject=subject,
            body=body,
            status=DeliveryStatus.PENDING,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)
        logger.info("outbox %s queued: %s to %s", row.id, EmailType(email_type).value, mask_email(to_email))
        return row

    def enqueue_for_intake(
        self,
        intake: Intake,
        email_type: EmailType,
        certificate: Optional[Certificate] = None,
    ) -> EmailOutbox:
        """Build the patient-facing email for a workflow event and queue it."""
        patient = self.db.get(Patient, intake.patient_id)
        name = patient.full_name if patient else None
        to_email = patient.email if patient else ""
        if email_type == EmailType.CERTIFICATE_ISSUED:
            subject, body = certificate_issued_email(name, certificate, self.app_url)
        elif email_type == EmailType.REQUEST_DECLINED:
            subject, body = request_declined_email(name, intake.decline_reason, self.app_url)
        else:
            subject, body = info_requested_email(name, intake.info_request_message, self.app_url)
        return self.enqueue(
            intake.id,
            email_type,
            to_email,
            subject,
            body,
            certificate_id=certificate.id if certificate else None,
        )

    def _finish(self, row: EmailOutbox, status: DeliveryStatus, **values) -> bool:
        result = self.db.execute(
            update(EmailOutbox)
            .where(EmailOutbox.id == row.id, EmailOutbox.status == DeliveryStatus.PENDING)
            .values(status=status, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            logger.info("outbox %s already resolved by another dispatcher", row.id)
            return False
        return True

    def _update_certificate(self, row: EmailOutbox, status: DeliveryStatus, error: Optional[str] = None) -> None:
        if not row.certificate_id:
            return
        cert = self.db.get(Certificate, row.certificate_id)
        if cert is None:
            return
        cert.email_status = status
        if status == DeliveryStatus.SENT:
            cert.email_sent_at = self.clock.now()
            cert.email_failure_reason = None
        elif status == DeliveryStatus.FAILED:
            cert.email_failure_reason = (error or "")[:500]

    def dispatch(self, outbox_id: str) -> EmailOutbox:
        """Make one delivery attempt for a pending row."""
        row = self.db.query(EmailOutbox).filter(EmailOutbox.id == outbox_id).first()
        if not row:
            raise NotFound(f"Outbox row {outbox_id} not found")
        if row.status != DeliveryStatus.PENDING:
            return row

        if self.delivery_mode == DELIVERY_MODE_DISABLED:
            if self._finish(row, DeliveryStatus.SKIPPED):
                self._update_certificate(row, DeliveryStatus.SKIPPED)
                self.db.commit()
            self.db.refresh(row)
            logger.info("outbox %s skipped: delivery disabled", row.id)
            return row

        if not is_valid_email(row.to_email):
            result = SendResult(success=False, error="invalid recipient address", retryable=False)
        else:
            try:
                result = self.sender.send(row.to_email, row.subject, row.body)
            except Exception as exc:
                logger.exception("email sender raised for outbox %s", row.id)
                result = SendResult(success=False, error=str(exc) or exc.__class__.__name__)

        now = self.clock.now()
        if result.success:
            if self._finish(row, DeliveryStatus.SENT, provider_message_id=result.message_id, sent_at=now,
                            error_message=None):
                self._update_certificate(row, DeliveryStatus.SENT)
                self.db.commit()
                self.retry_queue.mark_success(row.intake_id, DocumentType.EMAIL)
                self.audit.record(
                    AuditEventType.EMAIL_SENT,
                    row.intake_id,
                    actor_role=ActorRole.SYSTEM,
                    payload={"outbox_id": row.id, "email_type": row.email_type.value,
                             "certificate_id": row.certificate_id},
                )
                logger.info("outbox %s sent to %s", row.id, mask_email(row.to_email))
            self.db.refresh(row)
            return row

        if self._finish(row, DeliveryStatus.FAILED, error_message=(result.error or "")[:500]):
            self._update_certificate(row, DeliveryStatus.FAILED, result.error)
            self.db.commit()
            logger.warning("outbox %s to %s failed: %s", row.id, mask_email(row.to_email), result.error)
            self.audit.record(
                AuditEventType.EMAIL_FAILED,
                row.intake_id,
                actor_role=ActorRole.SYSTEM,
                payload={"outbox_id": row.id, "email_type": row.email_type.value,
                         "retryable": result.retryable, "error": result.error},
            )
            if result.retryable:
                self.retry_queue.queue_retry(row.intake_id, DocumentType.EMAIL, result.error or "send failed")
        self.db.refresh(row)
        return row

    def latest_for_intake(self, intake_id: str) -> Optional[EmailOutbox]:
        return (
            self.db.query(EmailOutbox)
            .filter(EmailOutbox.intake_id == intake_id)
            .order_by(EmailOutbox.created_at.desc())
            .first()
        )

    def reactivate(self, row: EmailOutbox) -> EmailOutbox:
        """Put a failed row back to pending for another attempt."""
        result = self.db.execute(
            update(EmailOutbox)
            .where(EmailOutbox.id == row.id, EmailOutbox.status == DeliveryStatus.FAILED)
            .values(status=DeliveryStatus.PENDING, retry_count=EmailOutbox.retry_count + 1, error_message=None)
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        self.db.refresh(row)
        if result.rowcount == 1 and row.certificate_id:
            cert = self.db.get(Certificate, row.certificate_id)
            if cert is not None:
                cert.email_status = DeliveryStatus.PENDING
                self.db.commit()
        return row

    def redeliver(self, intake_id: str) -> Optional[EmailOutbox]:
        """Retry sweep entry point for `email` tickets."""
        row = self.latest_for_intake(intake_id)
        if row is None:
            return None
        if row.status == DeliveryStatus.FAILED:
            self.reactivate(row)
        return self.dispatch(row.id)

    def resend(self, certificate_id: str, actor: Identity) -> EmailOutbox:
        """Operator resend of a certificate email."""
        authorize(actor, [ActorRole.DOCTOR, ActorRole.ADMIN])
        cert = self.db.query(Certificate).filter(Certificate.id == certificate_id).first()
        if not cert:
            raise NotFound(f"Certificate {certificate_id} not found")

        row = (
            self.db.query(EmailOutbox)
            .filter(EmailOutbox.certificate_id == certificate_id)
            .order_by(EmailOutbox.created_at.desc())
            .first()
        )
        if row is None:
            intake = self.db.get(Intake, cert.intake_id)
            row = self.enqueue_for_intake(intake, EmailType.CERTIFICATE_ISSUED, certificate=cert)
        elif row.status != DeliveryStatus.PENDING:
            self.db.execute(
                update(EmailOutbox)
                .where(EmailOutbox.id == row.id)
                .values(status=DeliveryStatus.PENDING, retry_count=EmailOutbox.retry_count + 1, error_message=None)
                .execution_options(synchronize_session=False)
            )

        cert.email_retry_count = (cert.email_retry_count or 0) + 1
        cert.email_status = DeliveryStatus.PENDING
        self.db.commit()

        self.audit.record(
            AuditEventType.EMAIL_RETRY,
            cert.intake_id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"certificate_id": cert.id, "outbox_id": row.id, "email_retry_count": cert.email_retry_count},
        )
        return self.dispatch(row.id)

    def list_failed(self, limit: int = 50) -> List[Certificate]:
        """Certificates whose email failed and that still have operator resends left."""
        return (
            self.db.query(Certificate)
            .filter(
                Certificate.email_status == DeliveryStatus.FAILED,
                Certificate.email_retry_count < MAX_OPERATOR_RESENDS,
            )
            .order_by(Certificate.updated_at.desc())
            .limit(limit)
            .all()
        )
