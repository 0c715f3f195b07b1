"""
Certificate issuance workflow.

This is the only place that creates or supersedes certificates and the
only place that moves a request to approved. Everything else it needs
(locks, invariant checks, rendering, storage, delivery, retries, audit)
is delegated to the component that owns it.

Approval runs in two phases:

    _prepare: preconditions, lock, inline draft, render, upload,
              record the document
    _issue:   verify the document, supersede any valid certificate,
              create the new one, mark the request approved, deliver

Superseding happens in the same transaction as the insert, so two
approvals that both got past the preconditions still leave exactly one
valid certificate, and a failed render never leaves a request without
one.
"""
import hashlib
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medcert.collaborators.auth import SYSTEM_IDENTITY, Identity, authorize
from medcert.collaborators.renderer import CertificateRenderInput
from medcert.collaborators.storage import build_document_path
from medcert.config import Settings
from medcert.models.audit import AuditEventType
from medcert.models.domain import (
    Certificate,
    DocumentDraft,
    GeneratedDocument,
    Intake,
    Patient,
    RetryTicket,
)
from medcert.models.enums import (
    REVIEWABLE_STATUSES,
    ActorRole,
    CertificateStatus,
    CertificateSubtype,
    DeliveryStatus,
    DocumentType,
    EmailType,
    RequestStatus,
    RetryStatus,
)
from medcert.services.audit import AuditLogger
from medcert.services.drafts import DraftService, parse_draft
from medcert.services.errors import (
    CertificateUnavailable,
    DocumentGenerationFailed,
    InfrastructureError,
    IssuanceError,
    LifecycleError,
    NotFound,
)
from medcert.services.invariants import ApprovalInvariantChecker
from medcert.services.outbox import DeliveryOutbox
from medcert.services.retry_queue import RetryQueue
from medcert.services.review_lock import LockInfo, LockResult, ReviewLockManager
from medcert.services.state_machine import RequestLifecycle

logger = logging.getLogger(__name__)

ISSUING_ROLES = (ActorRole.DOCTOR, ActorRole.ADMIN)
VERIFICATION_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
VERIFICATION_CODE_LENGTH = 10


def generate_certificate_number(now: datetime) -> str:
    """MC-YYYYMMDD-XXXXXXXX"""
    return f"MC-{now:%Y%m%d}-{secrets.token_hex(4).upper()}"


def generate_verification_code() -> str:
    return "".join(secrets.choice(VERIFICATION_ALPHABET) for _ in range(VERIFICATION_CODE_LENGTH))


def compute_idempotency_key(intake_id: str, clinician_id: str, issue_date: date, generation: int) -> str:
    raw = f"{intake_id}:{clinician_id}:{issue_date.isoformat()}:{generation}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:32]


@dataclass
class IssuanceResult:
    certificate: Optional[Certificate]
    lock_conflict: Optional[LockInfo] = None
    superseded_certificate_id: Optional[str] = None
    email_status: Optional[DeliveryStatus] = None
    pending_retry: bool = False


@dataclass
class PreparedIssuance:
    """Output of the first phase: a rendered, stored, recorded document."""
    intake_id: str
    actor: Identity
    clinician_id: str
    clinician_name: str
    subtype: CertificateSubtype
    start_date: date
    end_date: date
    document_id: str
    storage_path: str
    pdf_hash: str
    certificate_number: str
    verification_code: str
    generation: int
    issued_at: datetime
    lock_held: bool = False
    lock_conflict: Optional[LockInfo] = None
    regenerated: bool = False


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    status: CertificateStatus
    certificate_number: str
    subtype: CertificateSubtype
    start_date: date
    end_date: date
    clinician_name: str
    issued_at: datetime


@dataclass
class RetrySweepResult:
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class IssuanceWorkflow:
    """
    Composes the issuance components over one database session.

    Invariants:
    - At most one VALID certificate per request
    - No second approval without an intervening supersede
    - Interactive approvals never enqueue retries; automated regeneration does
    - Audit writes happen after the workflow's own commit and never block it
    """

    def __init__(self, db: Session, collaborators, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or Settings()
        self.storage = collaborators.storage
        self.renderer = collaborators.renderer
        self.alerts = collaborators.alerts
        self.rate_limiter = collaborators.rate_limiter
        self.clock = collaborators.clock

        self.audit = AuditLogger(db)
        self.lifecycle = RequestLifecycle(db)
        self.drafts = DraftService(db)
        self.locks = ReviewLockManager(db, self.settings.review_lock_timeout_minutes, clock=self.clock)
        self.checker = ApprovalInvariantChecker(db, self.storage, self.alerts)
        self.retry_queue = RetryQueue(
            db,
            self.alerts,
            clock=self.clock,
            initial_delay=self.settings.retry_initial_delay_seconds,
            max_delay=self.settings.retry_max_delay_seconds,
            max_retries=self.settings.max_retries,
        )
        self.outbox = DeliveryOutbox(
            db,
            collaborators.email,
            self.retry_queue,
            clock=self.clock,
            delivery_mode=self.settings.email_delivery_mode,
            app_url=self.settings.app_url,
        )

    # Lookups

    def _get_intake(self, intake_id: str) -> Intake:
        intake = self.db.query(Intake).filter(Intake.id == intake_id).first()
        if not intake:
            raise NotFound(f"Request {intake_id} not found")
        return intake

    def _get_certificate(self, certificate_id: str) -> Certificate:
        cert = self.db.query(Certificate).filter(Certificate.id == certificate_id).first()
        if not cert:
            raise NotFound(f"Certificate {certificate_id} not found")
        return cert

    def get_intake(self, intake_id: str, actor: Identity) -> Intake:
        intake = self._get_intake(intake_id)
        self._check_owner(intake.patient_id, actor, f"Request {intake_id} not found")
        return intake

    def list_certificates(self, intake_id: str, actor: Identity) -> List[Certificate]:
        intake = self.get_intake(intake_id, actor)
        return (
            self.db.query(Certificate)
            .filter(Certificate.intake_id == intake.id)
            .order_by(Certificate.created_at)
            .all()
        )

    def valid_certificate(self, intake_id: str) -> Optional[Certificate]:
        return (
            self.db.query(Certificate)
            .filter(Certificate.intake_id == intake_id, Certificate.status == CertificateStatus.VALID)
            .first()
        )

    def _check_owner(self, patient_id: str, actor: Identity, message: str) -> None:
        # Patients only see their own records; a foreign id looks like a missing one
        if actor.role == ActorRole.PATIENT.value and patient_id != actor.sub:
            raise NotFound(message)

    # Review

    def start_review(self, intake_id: str, actor: Identity) -> LockResult:
        authorize(actor, ISSUING_ROLES)
        intake = self._get_intake(intake_id)
        if intake.status not in REVIEWABLE_STATUSES:
            RequestLifecycle.validate(intake.status, RequestStatus.IN_REVIEW)

        lock = self.locks.acquire(intake_id, actor.sub, actor.name)
        intake = self._get_intake(intake_id)
        if intake.status == RequestStatus.PAID:
            self._begin_review(intake, actor)
        return lock

    def _begin_review(self, intake: Intake, actor: Identity) -> None:
        self.lifecycle.transition(intake, RequestStatus.IN_REVIEW, now=self.clock.now())
        self.audit.record(
            AuditEventType.REVIEW_STARTED,
            intake.id,
            actor_id=actor.sub,
            actor_role=actor.role,
        )

    def request_info(self, intake_id: str, actor: Identity, message: str) -> Intake:
        authorize(actor, ISSUING_ROLES)
        intake = self._get_intake(intake_id)
        RequestLifecycle.validate(intake.status, RequestStatus.PENDING_INFO)

        intake.info_request_message = message
        self.lifecycle.transition(intake, RequestStatus.PENDING_INFO, now=self.clock.now())

        row = self.outbox.enqueue_for_intake(intake, EmailType.INFO_REQUESTED)
        self.outbox.dispatch(row.id)
        self.audit.record(
            AuditEventType.INFO_REQUESTED,
            intake_id,
            actor_id=actor.sub,
            actor_role=actor.role,
        )
        return intake

    def provide_info(self, intake_id: str, actor: Identity, answers: Optional[dict] = None) -> Intake:
        """Patient reply to an info request; the request goes back to where it was."""
        authorize(actor, [ActorRole.PATIENT])
        intake = self._get_intake(intake_id)
        self._check_owner(intake.patient_id, actor, f"Request {intake_id} not found")
        if intake.status != RequestStatus.PENDING_INFO:
            raise LifecycleError(
                "Request is not waiting for information",
                code=LifecycleError.INVALID_TRANSITION,
            )

        target = intake.previous_status or RequestStatus.IN_REVIEW
        if answers:
            merged = dict(intake.answers or {})
            merged["info_response"] = answers
            intake.answers = merged
        self.lifecycle.transition(intake, target, now=self.clock.now())

        self.audit.record(
            AuditEventType.INFO_PROVIDED,
            intake_id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"restored_status": RequestStatus(target).value},
        )
        return intake

    # Decisions

    def approve(self, intake_id: str, actor: Identity, draft: Optional[dict] = None) -> IssuanceResult:
        """
        Interactive approval.

        Generation failures surface as DocumentGenerationFailed so the doctor
        can try again; nothing is queued behind their back.
        """
        authorize(actor, ISSUING_ROLES)
        self.rate_limiter.check(actor.sub, "approve")
        prepared = self._prepare(intake_id, actor, draft=draft)
        return self._issue(prepared)

    def regenerate(self, intake_id: str, actor: Identity, automated: bool = False) -> IssuanceResult:
        """
        Replace the valid certificate of an approved request with a fresh render.

        The request is moved approved -> superseded before anything is
        rendered. An automated run turns a generation failure into a
        med_cert retry ticket instead of an exception.
        """
        roles = ISSUING_ROLES + ((ActorRole.SYSTEM,) if automated else ())
        authorize(actor, roles)
        if not automated:
            self.rate_limiter.check(actor.sub, "regenerate")

        intake = self._get_intake(intake_id)
        if intake.status == RequestStatus.APPROVED:
            self.lifecycle.transition(intake, RequestStatus.SUPERSEDED, now=self.clock.now())
        elif intake.status != RequestStatus.SUPERSEDED:
            raise LifecycleError(
                f"Only approved requests can be regenerated (request is {intake.status.value})",
                code=LifecycleError.INVALID_TRANSITION,
            )

        try:
            prepared = self._prepare(intake_id, actor, acquire_lock=not automated, regenerated=True)
        except DocumentGenerationFailed as exc:
            if not automated:
                raise
            ticket = self.retry_queue.queue_retry(intake_id, DocumentType.MED_CERT, exc.message)
            logger.warning(
                "automated regeneration of %s failed; ticket %s is %s",
                intake_id, ticket.id, ticket.status.value,
            )
            return IssuanceResult(certificate=None, pending_retry=ticket.status == RetryStatus.PENDING_RETRY)
        return self._issue(prepared)

    def _prepare(
        self,
        intake_id: str,
        actor: Identity,
        draft: Optional[dict] = None,
        acquire_lock: bool = True,
        regenerated: bool = False,
    ) -> PreparedIssuance:
        intake = self._get_intake(intake_id)

        # No lock, draft or status write until the request is known to be approvable
        if draft is not None:
            parse_draft(draft)
            self.checker.check_not_approved(intake)
        else:
            intake = self.checker.check_preconditions(intake_id, DocumentType.MED_CERT)
        RequestLifecycle.validate(
            RequestStatus.IN_REVIEW if intake.status == RequestStatus.PAID else intake.status,
            RequestStatus.APPROVED,
        )

        lock_conflict = None
        if acquire_lock:
            lock = self.locks.acquire(intake_id, actor.sub, actor.name)
            lock_conflict = lock.conflict

        if draft is not None:
            try:
                self.drafts.save_draft(intake_id, draft)
            except IssuanceError:
                if acquire_lock:
                    self.locks.release(intake_id, actor.sub)
                raise

        intake = self._get_intake(intake_id)
        if intake.status == RequestStatus.PAID:
            self._begin_review(intake, actor)
        RequestLifecycle.validate(intake.status, RequestStatus.APPROVED)

        payload = parse_draft(self.drafts.get_draft(intake_id).data)

        clinician_id, clinician_name = actor.sub, actor.name or actor.sub
        if regenerated:
            current = self.valid_certificate(intake_id)
            if current is not None:
                clinician_id, clinician_name = current.clinician_id, current.clinician_name

        now = self.clock.now()
        certificate_number = generate_certificate_number(now)
        verification_code = generate_verification_code()
        inputs = CertificateRenderInput(
            certificate_number=certificate_number,
            verification_code=verification_code,
            subtype=payload.certificate_type,
            patient_name=payload.patient_name,
            start_date=payload.start_date,
            end_date=payload.end_date,
            clinician_name=clinician_name,
            issued_at=now,
            date_of_birth=payload.date_of_birth,
            institution_name=getattr(payload, "institution_name", None),
            carer_person_name=getattr(payload, "carer_person_name", None),
            carer_relationship=getattr(getattr(payload, "carer_relationship", None), "value", None),
            verify_url=f"{self.settings.app_url}/verify",
        )

        document_id = str(uuid.uuid4())
        storage_path = build_document_path(DocumentType.MED_CERT.value, intake_id, document_id)
        try:
            pdf = self.renderer.render(inputs)
            self.storage.upload(storage_path, pdf, "application/pdf")
        except Exception as exc:
            logger.error("certificate generation failed for %s: %s", intake_id, exc)
            raise DocumentGenerationFailed(f"Certificate generation failed for request {intake_id}") from exc

        document = GeneratedDocument(
            id=document_id,
            intake_id=intake_id,
            document_type=DocumentType.MED_CERT,
            subtype=CertificateSubtype(payload.certificate_type),
            storage_path=storage_path,
            pdf_hash=hashlib.sha256(pdf).hexdigest(),
            size_bytes=len(pdf),
        )
        self.db.add(document)
        self.db.commit()

        generation = (
            self.db.query(func.count(GeneratedDocument.id))
            .filter(GeneratedDocument.intake_id == intake_id)
            .scalar()
        )
        return PreparedIssuance(
            intake_id=intake_id,
            actor=actor,
            clinician_id=clinician_id,
            clinician_name=clinician_name,
            subtype=CertificateSubtype(payload.certificate_type),
            start_date=payload.start_date,
            end_date=payload.end_date,
            document_id=document_id,
            storage_path=storage_path,
            pdf_hash=document.pdf_hash,
            certificate_number=certificate_number,
            verification_code=verification_code,
            generation=generation,
            issued_at=now,
            lock_held=acquire_lock,
            lock_conflict=lock_conflict,
            regenerated=regenerated,
        )

    def _issue(self, prepared: PreparedIssuance) -> IssuanceResult:
        intake_id = prepared.intake_id
        self.checker.check_document(intake_id, DocumentType.MED_CERT, document_id=prepared.document_id)

        if prepared.lock_held:
            self.locks.release(intake_id, prepared.actor.sub)

        now = self.clock.now()
        intake = self._get_intake(intake_id)
        certificate = Certificate(
            id=str(uuid.uuid4()),
            intake_id=intake_id,
            patient_id=intake.patient_id,
            clinician_id=prepared.clinician_id,
            clinician_name=prepared.clinician_name,
            status=CertificateStatus.VALID,
            certificate_number=prepared.certificate_number,
            verification_code=prepared.verification_code,
            idempotency_key=compute_idempotency_key(
                intake_id, prepared.clinician_id, prepared.issued_at.date(), prepared.generation
            ),
            subtype=prepared.subtype,
            start_date=prepared.start_date,
            end_date=prepared.end_date,
            storage_path=prepared.storage_path,
            pdf_hash=prepared.pdf_hash,
            email_status=DeliveryStatus.PENDING,
        )

        try:
            superseded_ids = [
                row.id
                for row in self.db.query(Certificate.id).filter(
                    Certificate.intake_id == intake_id,
                    Certificate.status == CertificateStatus.VALID,
                )
            ]
            if superseded_ids:
                self.db.execute(
                    update(Certificate)
                    .where(Certificate.id.in_(superseded_ids), Certificate.status == CertificateStatus.VALID)
                    .values(
                        status=CertificateStatus.SUPERSEDED,
                        superseded_at=now,
                        superseded_by_id=certificate.id,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
            self.db.add(certificate)
            self.db.flush()

            if intake.status != RequestStatus.APPROVED:
                intake.decided_by = prepared.clinician_id
                intake.decided_at = now
                self.lifecycle.transition(intake, RequestStatus.APPROVED, now=now, commit=False)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            logger.warning("concurrent issuance collided on %s: %s", intake_id, exc.orig)
            raise InfrastructureError(f"Another issuance for request {intake_id} is in progress; try again") from exc

        for old_id in superseded_ids:
            self.audit.record(
                AuditEventType.SUPERSEDED,
                old_id,
                actor_id=prepared.actor.sub,
                actor_role=prepared.actor.role,
                payload={"request_id": intake_id, "superseded_by": certificate.id},
                subject_type="certificate",
            )

        intake = self._get_intake(intake_id)
        row = self.outbox.enqueue_for_intake(intake, EmailType.CERTIFICATE_ISSUED, certificate=certificate)
        row = self.outbox.dispatch(row.id)

        self.audit.record(
            AuditEventType.APPROVED,
            intake_id,
            actor_id=prepared.actor.sub,
            actor_role=prepared.actor.role,
            payload={
                "certificate_id": certificate.id,
                "certificate_number": certificate.certificate_number,
                "regenerated": prepared.regenerated,
                "superseded": superseded_ids,
            },
        )
        logger.info(
            "certificate %s issued for %s by %s (superseded=%s)",
            certificate.id, intake_id, prepared.actor.sub, len(superseded_ids),
        )

        self.db.refresh(certificate)
        return IssuanceResult(
            certificate=certificate,
            lock_conflict=prepared.lock_conflict,
            superseded_certificate_id=superseded_ids[0] if superseded_ids else None,
            email_status=row.status,
        )

    def decline(self, intake_id: str, actor: Identity, reason: str) -> Intake:
        authorize(actor, ISSUING_ROLES)
        self.rate_limiter.check(actor.sub, "decline")
        intake = self._get_intake(intake_id)
        RequestLifecycle.validate(intake.status, RequestStatus.DECLINED)

        self.locks.release(intake_id, actor.sub)
        intake = self._get_intake(intake_id)
        now = self.clock.now()
        intake.decline_reason = reason
        intake.decided_by = actor.sub
        intake.decided_at = now
        self.lifecycle.transition(intake, RequestStatus.DECLINED, now=now)

        row = self.outbox.enqueue_for_intake(intake, EmailType.REQUEST_DECLINED)
        self.outbox.dispatch(row.id)
        self.audit.record(
            AuditEventType.DECLINED,
            intake_id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"reason": reason},
        )
        return intake

    def complete(self, intake_id: str, actor: Identity) -> Intake:
        authorize(actor, ISSUING_ROLES + (ActorRole.SYSTEM,))
        intake = self._get_intake(intake_id)
        self.lifecycle.transition(intake, RequestStatus.COMPLETED, now=self.clock.now())
        logger.info("request %s completed by %s", intake_id, actor.sub)
        return intake

    # Certificates

    def revoke(self, certificate_id: str, actor: Identity, reason: str) -> Certificate:
        authorize(actor, [ActorRole.ADMIN])
        cert = self._get_certificate(certificate_id)
        now = self.clock.now()
        result = self.db.execute(
            update(Certificate)
            .where(Certificate.id == certificate_id, Certificate.status == CertificateStatus.VALID)
            .values(
                status=CertificateStatus.REVOKED,
                revoked_at=now,
                revoked_by=actor.sub,
                revocation_reason=reason,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        if result.rowcount != 1:
            raise LifecycleError(
                f"Certificate {certificate_id} is not valid and cannot be revoked",
                code=LifecycleError.INVALID_TRANSITION,
            )
        self.db.refresh(cert)

        self.audit.record(
            AuditEventType.REVOKED,
            certificate_id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"request_id": cert.intake_id, "reason": reason},
            subject_type="certificate",
        )
        return cert

    def verify(self, verification_code: str) -> VerificationResult:
        """Public lookup by the code printed on the certificate. Returns no patient details."""
        code = (verification_code or "").strip().upper()
        cert = self.db.query(Certificate).filter(Certificate.verification_code == code).first()
        if not cert:
            raise NotFound("No certificate matches this verification code")

        self.audit.record(
            AuditEventType.VERIFIED,
            cert.id,
            payload={"status": cert.status.value},
            subject_type="certificate",
        )
        return VerificationResult(
            valid=cert.status == CertificateStatus.VALID,
            status=cert.status,
            certificate_number=cert.certificate_number,
            subtype=cert.subtype,
            start_date=cert.start_date,
            end_date=cert.end_date,
            clinician_name=cert.clinician_name,
            issued_at=cert.created_at,
        )

    def download_url(self, certificate_id: str, actor: Identity) -> str:
        authorize(actor, [ActorRole.PATIENT, ActorRole.DOCTOR, ActorRole.ADMIN])
        cert = self._get_certificate(certificate_id)
        self._check_owner(cert.patient_id, actor, f"Certificate {certificate_id} not found")
        if cert.status != CertificateStatus.VALID:
            raise CertificateUnavailable(f"Certificate {certificate_id} is {cert.status.value}")

        try:
            url = self.storage.signed_url(cert.storage_path, self.settings.signed_url_ttl_seconds)
        except Exception as exc:
            logger.error("signing download url for %s failed: %s", certificate_id, exc)
            raise InfrastructureError("Download link could not be created") from exc

        self.audit.record(
            AuditEventType.DOWNLOADED,
            certificate_id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"request_id": cert.intake_id},
            subject_type="certificate",
        )
        return url

    # Privacy

    def anonymize(self, intake_id: str, actor: Identity) -> Intake:
        """Strip PHI from a request and its patient. Audit history stays as it is."""
        authorize(actor, [ActorRole.ADMIN])
        intake = self._get_intake(intake_id)
        now = self.clock.now()

        intake.symptoms_summary = None
        intake.answers = None
        intake.info_request_message = None
        for draft in self.db.query(DocumentDraft).filter(DocumentDraft.intake_id == intake_id):
            redacted = dict(draft.data or {})
            redacted.update({"patient_name": "REDACTED", "date_of_birth": None, "clinical_notes": None, "symptoms": []})
            if "carer_person_name" in redacted:
                redacted["carer_person_name"] = "REDACTED"
            draft.data = redacted

        patient = self.db.get(Patient, intake.patient_id)
        if patient is not None:
            patient.full_name = None
            patient.email = None
            patient.date_of_birth = None
            patient.anonymized_at = now
        self.db.commit()
        self.db.refresh(intake)

        self.audit.record(
            AuditEventType.ANONYMIZED,
            intake_id,
            actor_id=actor.sub,
            actor_role=actor.role,
        )
        return intake

    # Retry sweep

    def process_retry_ticket(self, ticket: RetryTicket) -> bool:
        """Run one due ticket. Returns True when the work it stood for is done."""
        intake_id, document_type = ticket.intake_id, DocumentType(ticket.document_type)
        if not self.retry_queue.mark_in_progress(intake_id, document_type):
            return False

        if document_type == DocumentType.MED_CERT:
            return self._retry_generation(intake_id)
        return self._retry_delivery(intake_id)

    def _retry_generation(self, intake_id: str) -> bool:
        intake = self._get_intake(intake_id)
        if intake.status == RequestStatus.APPROVED:
            # Someone regenerated it in the meantime
            self.retry_queue.mark_success(intake_id, DocumentType.MED_CERT)
            return True
        try:
            result = self.regenerate(intake_id, SYSTEM_IDENTITY, automated=True)
        except InfrastructureError as exc:
            self.retry_queue.queue_retry(intake_id, DocumentType.MED_CERT, exc.message)
            return False
        except IssuanceError as exc:
            self.retry_queue.mark_permanently_failed(intake_id, DocumentType.MED_CERT, exc.message)
            return False
        if result.certificate is None:
            return False
        self.retry_queue.mark_success(intake_id, DocumentType.MED_CERT)
        return True

    def _retry_delivery(self, intake_id: str) -> bool:
        row = self.outbox.redeliver(intake_id)
        if row is None or row.status in (DeliveryStatus.SENT, DeliveryStatus.SKIPPED):
            self.retry_queue.mark_success(intake_id, DocumentType.EMAIL)
            return True

        ticket = self.retry_queue.get_ticket(intake_id, DocumentType.EMAIL)
        if ticket is not None and ticket.status == RetryStatus.PROCESSING:
            # Failed without being requeued: retrying cannot help
            self.retry_queue.mark_permanently_failed(intake_id, DocumentType.EMAIL, row.error_message or "send failed")
        return False

    def run_retry_sweep(self, limit: int = 50) -> RetrySweepResult:
        summary = RetrySweepResult()
        for ticket in self.retry_queue.list_due(limit=limit):
            intake_id = ticket.intake_id
            try:
                done = self.process_retry_ticket(ticket)
            except Exception as exc:
                self.db.rollback()
                logger.exception("retry ticket for %s crashed", intake_id)
                summary.failed += 1
                summary.errors.append(f"{intake_id}: {exc}")
                continue
            summary.claimed += 1
            if done:
                summary.succeeded += 1
            else:
                summary.failed += 1
        return summary
