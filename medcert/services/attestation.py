"""
Attestation checks and the immutable-date guard.

Attestations are typed declarations ("I, <name>, declare ...") captured
from the patient. Certificate start dates may move forward a little on
request, forward a lot only with an admin's approval, and never backwards.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Union

from sqlalchemy.orm import Session

from medcert.collaborators.auth import Identity, authorize
from medcert.models.audit import AuditEventType
from medcert.models.domain import AttestationRecord, DateChangeRequest, Intake, Patient
from medcert.models.enums import ActorRole, AttestationType, DateChangeStatus
from medcert.services.audit import AuditLogger
from medcert.services.clock import SystemClock
from medcert.services.drafts import DraftService, parse_draft
from medcert.services.errors import (
    AttestationInvalid,
    BackdatingRejected,
    IssuanceError,
    NotFound,
)

logger = logging.getLogger(__name__)

ATTESTATION_MAX_AGE = timedelta(minutes=10)
AUTO_ALLOWED_FORWARD_SHIFT = timedelta(hours=24)

ATTESTATION_TEXTS = {
    AttestationType.PATIENT_DECLARATION: (
        "I declare that the information I have provided is true and correct "
        "to the best of my knowledge."
    ),
    AttestationType.CARER_DECLARATION: (
        "I declare that I am the carer of the person named in this request and "
        "that the information I have provided is true and correct."
    ),
    AttestationType.EMERGENCY_DISCLAIMER: (
        "I confirm that this is not a medical emergency and that I will call "
        "000 or attend an emergency department if my condition worsens."
    ),
}


@dataclass(frozen=True)
class AttestationInput:
    typed_name: str
    attestation_text: str
    attested_at: datetime
    ip_address: str
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class AttestationValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class DateChangeDecision:
    allowed: bool
    requires_approval: bool
    reason: str


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _normalize_name(name: Optional[str]) -> str:
    return (name or "").strip().casefold()


def validate_attestation(
    record: AttestationInput,
    expected_name: str,
    attestation_type: AttestationType,
    now: Optional[datetime] = None,
) -> AttestationValidation:
    """Every failing rule is reported, not just the first."""
    now = now or datetime.utcnow()
    errors = []

    if not _normalize_name(record.typed_name) or _normalize_name(record.typed_name) != _normalize_name(expected_name):
        errors.append("Typed name does not match the registered name")

    expected_text = ATTESTATION_TEXTS.get(AttestationType(attestation_type))
    if record.attestation_text != expected_text:
        errors.append("Attestation text does not match the required wording")

    attested_at = _naive_utc(record.attested_at)
    if attested_at is None or abs(now - attested_at) > ATTESTATION_MAX_AGE:
        errors.append("Attestation timestamp is outside the accepted window")

    if not (record.ip_address or "").strip():
        errors.append("Originating address is missing")

    return AttestationValidation(valid=not errors, errors=errors)


def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime(value.year, value.month, value.day)


def is_date_change_allowed(original: Union[date, datetime], requested: Union[date, datetime]) -> DateChangeDecision:
    shift = _as_datetime(requested) - _as_datetime(original)
    if shift < timedelta(0):
        return DateChangeDecision(
            allowed=False, requires_approval=False, reason="Backdating is not permitted"
        )
    if shift <= AUTO_ALLOWED_FORWARD_SHIFT:
        return DateChangeDecision(allowed=True, requires_approval=False, reason="Within 24 hours")
    return DateChangeDecision(
        allowed=False, requires_approval=True, reason="Moves the date forward by more than 24 hours"
    )


class AttestationService:
    def __init__(self, db: Session, clock=None):
        self.db = db
        self.clock = clock or SystemClock()
        self.audit = AuditLogger(db)

    def record(
        self,
        intake_id: str,
        attestation_type: AttestationType,
        attestation: AttestationInput,
        actor: Identity,
    ) -> AttestationRecord:
        """Validate and store an attestation. Records are write-once."""
        intake = self.db.query(Intake).filter(Intake.id == intake_id).first()
        if not intake:
            raise NotFound(f"Request {intake_id} not found")
        if actor.role == ActorRole.PATIENT.value and intake.patient_id != actor.sub:
            raise NotFound(f"Request {intake_id} not found")

        patient = self.db.get(Patient, intake.patient_id)
        expected_name = patient.full_name if patient else None
        result = validate_attestation(attestation, expected_name, attestation_type, now=self.clock.now())
        if not result.valid:
            raise AttestationInvalid("Attestation rejected", errors=result.errors)

        row = AttestationRecord(
            intake_id=intake_id,
            attestation_type=attestation_type,
            typed_name=attestation.typed_name.strip(),
            attestation_text=attestation.attestation_text,
            attested_at=_naive_utc(attestation.attested_at),
            ip_address=attestation.ip_address,
            user_agent=attestation.user_agent,
        )
        self.db.add(row)
        self.db.commit()
        self.db.refresh(row)

        self.audit.record(
            AuditEventType.ATTESTATION_RECORDED,
            intake_id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"attestation_id": row.id, "attestation_type": AttestationType(attestation_type).value},
        )
        return row

    def has_attestation(self, intake_id: str, attestation_type: AttestationType) -> bool:
        return (
            self.db.query(AttestationRecord.id)
            .filter(
                AttestationRecord.intake_id == intake_id,
                AttestationRecord.attestation_type == attestation_type,
            )
            .first()
            is not None
        )


class DateChangeService:
    """
    Moves a draft's start date.

    Invariants:
    - A backdated start date is never applied, approved or stored as a request
    - A forward move beyond 24 hours needs an approved DateChangeRequest
    - The certificate period keeps its length when the start moves
    """

    def __init__(self, db: Session, clock=None):
        self.db = db
        self.clock = clock or SystemClock()
        self.audit = AuditLogger(db)
        self.drafts = DraftService(db)

    def _current_start(self, intake_id: str):
        draft = self.drafts.get_draft(intake_id)
        if draft is None:
            raise NotFound(f"Request {intake_id} has no draft")
        return draft, parse_draft(draft.data)

    def _apply(self, intake_id: str, requested: date) -> None:
        draft, payload = self._current_start(intake_id)
        length = payload.end_date - payload.start_date
        data = payload.model_dump(mode="json")
        data["start_date"] = requested.isoformat()
        data["end_date"] = (requested + length).isoformat()
        self.drafts.save_draft(intake_id, data, date_change=True)

    def request_change(
        self,
        intake_id: str,
        requested_date: date,
        actor: Identity,
        reason: Optional[str] = None,
    ) -> Optional[DateChangeRequest]:
        """Returns None when the change was applied, or the pending approval request."""
        authorize(actor, [ActorRole.DOCTOR, ActorRole.ADMIN])
        intake = self.db.query(Intake).filter(Intake.id == intake_id).first()
        if not intake:
            raise NotFound(f"Request {intake_id} not found")
        self.drafts.check_editable(intake)
        _, payload = self._current_start(intake_id)
        original = payload.start_date
        decision = is_date_change_allowed(original, requested_date)

        if decision.allowed:
            self._apply(intake_id, requested_date)
            self.audit.record(
                AuditEventType.DATE_CHANGE_APPLIED,
                intake_id,
                actor_id=actor.sub,
                actor_role=actor.role,
                payload={"original_date": original.isoformat(), "requested_date": requested_date.isoformat()},
            )
            return None

        if not decision.requires_approval:
            logger.warning("backdating attempt on %s by %s", intake_id, actor.sub)
            self.audit.record(
                AuditEventType.DATE_CHANGE_REJECTED,
                intake_id,
                actor_id=actor.sub,
                actor_role=actor.role,
                payload={
                    "original_date": original.isoformat(),
                    "requested_date": requested_date.isoformat(),
                    "reason": "backdating",
                },
            )
            raise BackdatingRejected("Date change rejected", errors=[decision.reason])

        change = DateChangeRequest(
            intake_id=intake_id,
            field_name="start_date",
            original_date=original,
            requested_date=requested_date,
            reason=reason,
            status=DateChangeStatus.PENDING,
            requested_by=actor.sub,
        )
        self.db.add(change)
        self.db.commit()
        self.db.refresh(change)
        self.audit.record(
            AuditEventType.DATE_CHANGE_REQUESTED,
            change.id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"request_id": intake_id, "requested_date": requested_date.isoformat()},
            subject_type="date_change_request",
        )
        return change

    def _pending(self, change_id: str) -> DateChangeRequest:
        change = self.db.query(DateChangeRequest).filter(DateChangeRequest.id == change_id).first()
        if not change:
            raise NotFound(f"Date change request {change_id} not found")
        if change.status != DateChangeStatus.PENDING:
            raise IssuanceError(f"Date change request {change_id} is already {change.status.value}", code="ALREADY_DECIDED")
        return change

    def approve(self, change_id: str, actor: Identity) -> DateChangeRequest:
        authorize(actor, [ActorRole.ADMIN])
        change = self._pending(change_id)
        if change.requested_date < change.original_date:
            raise BackdatingRejected("Date change rejected", errors=["Backdating is not permitted"])

        self._apply(change.intake_id, change.requested_date)
        change.status = DateChangeStatus.APPROVED
        change.decided_by = actor.sub
        change.decided_at = self.clock.now()
        self.db.commit()
        self.db.refresh(change)

        self.audit.record(
            AuditEventType.DATE_CHANGE_APPROVED,
            change.id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"request_id": change.intake_id, "requested_date": change.requested_date.isoformat()},
            subject_type="date_change_request",
        )
        return change

    def reject(self, change_id: str, actor: Identity, reason: Optional[str] = None) -> DateChangeRequest:
        authorize(actor, [ActorRole.ADMIN])
        change = self._pending(change_id)
        change.status = DateChangeStatus.REJECTED
        change.decided_by = actor.sub
        change.decided_at = self.clock.now()
        self.db.commit()
        self.db.refresh(change)

        self.audit.record(
            AuditEventType.DATE_CHANGE_REJECTED,
            change.id,
            actor_id=actor.sub,
            actor_role=actor.role,
            payload={"request_id": change.intake_id, "reason": reason},
            subject_type="date_change_request",
        )
        return change
