"""
Tests for attestations and the immutable-date guard.
"""
from datetime import date, timedelta, timezone

import pytest

from medcert.models.audit import AuditEvent, AuditEventType
from medcert.models.domain import AttestationRecord, DateChangeRequest
from medcert.models.enums import AttestationType, DateChangeStatus
from medcert.services.attestation import (
    ATTESTATION_TEXTS,
    AttestationInput,
    AttestationService,
    DateChangeService,
    is_date_change_allowed,
    validate_attestation,
)
from medcert.services.errors import AttestationInvalid, BackdatingRejected, IssuanceError, Unauthorized

DECLARATION = ATTESTATION_TEXTS[AttestationType.PATIENT_DECLARATION]


def _attestation(clock, **overrides):
    values = dict(
        typed_name="Jane Citizen",
        attestation_text=DECLARATION,
        attested_at=clock.now(),
        ip_address="203.0.113.7",
        user_agent="pytest",
    )
    values.update(overrides)
    return AttestationInput(**values)


class TestAttestationValidation:

    def test_matching_attestation_is_valid(self, clock):
        result = validate_attestation(_attestation(clock), "Jane Citizen", AttestationType.PATIENT_DECLARATION,
                                      now=clock.now())
        assert result.valid is True
        assert result.errors == []

    def test_name_comparison_ignores_case_and_whitespace(self, clock):
        record = _attestation(clock, typed_name="  jane CITIZEN ")
        result = validate_attestation(record, "Jane Citizen", AttestationType.PATIENT_DECLARATION, now=clock.now())
        assert result.valid is True

    def test_every_failing_rule_is_reported(self, clock):
        """
        INVARIANT: Validation reports all errors, not just the first.
        """
        record = _attestation(
            clock,
            typed_name="Someone Else",
            attestation_text="I agree",
            attested_at=clock.now() - timedelta(minutes=11),
            ip_address="",
        )

        result = validate_attestation(record, "Jane Citizen", AttestationType.PATIENT_DECLARATION, now=clock.now())

        assert result.valid is False
        assert len(result.errors) == 4

    def test_timezone_aware_timestamps_are_accepted(self, clock):
        record = _attestation(clock, attested_at=clock.now().replace(tzinfo=timezone.utc))
        result = validate_attestation(record, "Jane Citizen", AttestationType.PATIENT_DECLARATION, now=clock.now())
        assert result.valid is True


class TestAttestationRecording:

    def test_valid_attestation_is_stored_and_audited(self, db_session, clock, paid_intake, patient_identity):
        service = AttestationService(db_session, clock=clock)

        record = service.record(paid_intake.id, AttestationType.PATIENT_DECLARATION, _attestation(clock),
                                patient_identity)

        assert record.typed_name == "Jane Citizen"
        assert service.has_attestation(paid_intake.id, AttestationType.PATIENT_DECLARATION)
        assert not service.has_attestation(paid_intake.id, AttestationType.EMERGENCY_DISCLAIMER)
        event = db_session.query(AuditEvent).filter_by(event_type=AuditEventType.ATTESTATION_RECORDED).one()
        assert event.subject_id == paid_intake.id

    def test_invalid_attestation_is_not_stored(self, db_session, clock, paid_intake, patient_identity):
        service = AttestationService(db_session, clock=clock)

        with pytest.raises(AttestationInvalid) as exc_info:
            service.record(paid_intake.id, AttestationType.PATIENT_DECLARATION,
                           _attestation(clock, typed_name="J. Citizen"), patient_identity)

        assert exc_info.value.http_status == 422
        assert db_session.query(AttestationRecord).count() == 0


class TestDateChangeRules:

    def test_backdating_is_never_allowed(self):
        """
        INVARIANT: A start date can never move backwards.
        """
        decision = is_date_change_allowed(date(2026, 3, 2), date(2026, 3, 1))
        assert decision.allowed is False
        assert decision.requires_approval is False

    def test_forward_within_a_day_is_allowed(self):
        decision = is_date_change_allowed(date(2026, 3, 2), date(2026, 3, 3))
        assert decision.allowed is True

    def test_forward_beyond_a_day_needs_approval(self):
        decision = is_date_change_allowed(date(2026, 3, 2), date(2026, 3, 4))
        assert decision.allowed is False
        assert decision.requires_approval is True


class TestDateChangeService:

    def test_small_forward_move_applies_and_keeps_period_length(
        self, db_session, clock, paid_intake, with_draft, doctor, workflow
    ):
        with_draft(paid_intake, days=3)
        service = DateChangeService(db_session, clock=clock)

        assert service.request_change(paid_intake.id, date(2026, 3, 3), doctor) is None

        data = workflow.drafts.get_draft(paid_intake.id).data
        assert data["start_date"] == "2026-03-03"
        assert data["end_date"] == "2026-03-05"

    def test_backdating_is_rejected_and_audited(self, db_session, clock, paid_intake, with_draft, doctor, workflow):
        """
        INVARIANT: Backdating leaves the draft untouched and writes no change request.
        """
        with_draft(paid_intake)
        service = DateChangeService(db_session, clock=clock)

        with pytest.raises(BackdatingRejected):
            service.request_change(paid_intake.id, date(2026, 2, 27), doctor)

        assert workflow.drafts.get_draft(paid_intake.id).data["start_date"] == "2026-03-02"
        assert db_session.query(DateChangeRequest).count() == 0
        assert db_session.query(AuditEvent).filter_by(event_type=AuditEventType.DATE_CHANGE_REJECTED).count() == 1

    def test_large_forward_move_waits_for_admin(
        self, db_session, clock, paid_intake, with_draft, doctor, admin, workflow
    ):
        with_draft(paid_intake)
        service = DateChangeService(db_session, clock=clock)

        change = service.request_change(paid_intake.id, date(2026, 3, 9), doctor, reason="Surgery rescheduled")

        assert change.status == DateChangeStatus.PENDING
        assert workflow.drafts.get_draft(paid_intake.id).data["start_date"] == "2026-03-02"

        with pytest.raises(Unauthorized):
            service.approve(change.id, doctor)

        approved = service.approve(change.id, admin)
        assert approved.status == DateChangeStatus.APPROVED
        assert approved.decided_by == "admin-1"
        assert workflow.drafts.get_draft(paid_intake.id).data["start_date"] == "2026-03-09"

        with pytest.raises(IssuanceError) as exc_info:
            service.reject(change.id, admin)
        assert exc_info.value.code == "ALREADY_DECIDED"

    def test_rejected_change_leaves_draft_alone(self, db_session, clock, paid_intake, with_draft, doctor, admin,
                                                workflow):
        with_draft(paid_intake)
        service = DateChangeService(db_session, clock=clock)
        change = service.request_change(paid_intake.id, date(2026, 3, 9), doctor)

        rejected = service.reject(change.id, admin, reason="No evidence")

        assert rejected.status == DateChangeStatus.REJECTED
        assert workflow.drafts.get_draft(paid_intake.id).data["start_date"] == "2026-03-02"
