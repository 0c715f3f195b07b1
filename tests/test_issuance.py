"""
Tests for the issuance workflow.

Covers the approval path end to end against fake storage, rendering and
email, the overlapping-approval race, regeneration, and the retry sweep.
"""
from datetime import date

import pytest

from medcert.collaborators.auth import SYSTEM_IDENTITY
from medcert.models.audit import AuditEvent, AuditEventType
from medcert.models.domain import Certificate, GeneratedDocument, Patient
from medcert.models.enums import (
    CertificateStatus,
    DeliveryStatus,
    DocumentType,
    RequestStatus,
    RetryStatus,
)
from medcert.services.errors import (
    AlreadyApproved,
    CertificateUnavailable,
    DateChangeRequired,
    DocumentGenerationFailed,
    DocumentUnreachable,
    DraftInvalid,
    DraftMissing,
    LifecycleError,
    NotFound,
    Unauthorized,
)
from medcert.services.issuance import VERIFICATION_ALPHABET, compute_idempotency_key

from conftest import draft_data


def _events(db_session, event_type):
    return db_session.query(AuditEvent).filter_by(event_type=event_type).all()


def _valid_certificates(db_session, intake_id):
    return (
        db_session.query(Certificate)
        .filter(Certificate.intake_id == intake_id, Certificate.status == CertificateStatus.VALID)
        .all()
    )


class TestApproval:

    def test_approve_issues_certificate(self, workflow, db_session, storage, email_sender, paid_intake, with_draft,
                                        doctor):
        with_draft(paid_intake)

        result = workflow.approve(paid_intake.id, doctor)

        cert = result.certificate
        assert cert.status == CertificateStatus.VALID
        assert cert.clinician_id == "doc-1"
        assert cert.clinician_name == "Dr Alice Smith"
        assert cert.certificate_number.startswith("MC-20260302-")
        assert len(cert.verification_code) == 10
        assert set(cert.verification_code) <= set(VERIFICATION_ALPHABET)
        assert storage.exists(cert.storage_path)
        assert result.email_status == DeliveryStatus.SENT
        assert len(email_sender.sent) == 1

        intake = workflow.get_intake(paid_intake.id, doctor)
        assert intake.status == RequestStatus.APPROVED
        assert intake.decided_by == "doc-1"
        assert intake.reviewing_clinician_id is None

        assert len(_events(db_session, AuditEventType.REVIEW_STARTED)) == 1
        [approved] = _events(db_session, AuditEventType.APPROVED)
        assert approved.payload["certificate_id"] == cert.id

    def test_approve_saves_inline_draft(self, workflow, renderer, paid_intake, doctor):
        data = draft_data(
            certificate_type="carer",
            carer_person_name="Sam Citizen",
            carer_relationship="child",
        )

        result = workflow.approve(paid_intake.id, doctor, draft=data)

        assert result.certificate.subtype.value == "carer"
        assert renderer.rendered[-1].carer_person_name == "Sam Citizen"
        assert workflow.drafts.get_draft(paid_intake.id).data["carer_relationship"] == "child"

    def test_invalid_inline_draft_is_rejected(self, workflow, paid_intake, doctor):
        data = draft_data(certificate_type="carer")

        with pytest.raises(DraftInvalid) as exc_info:
            workflow.approve(paid_intake.id, doctor, draft=data)

        assert any("carer_person_name" in e for e in exc_info.value.errors)

    def test_approval_without_draft_is_refused(self, workflow, db_session, renderer, alerts, paid_intake, doctor):
        """
        INVARIANT: No certificate is rendered or issued without a draft.
        """
        with pytest.raises(DraftMissing):
            workflow.approve(paid_intake.id, doctor)

        assert renderer.rendered == []
        assert db_session.query(Certificate).count() == 0
        assert alerts.critical()[0]["tags"]["invariant"] == "draft_exists"

    def test_second_approval_is_refused(self, workflow, paid_intake, with_draft, doctor, other_doctor):
        """
        INVARIANT: An approved request is not approved again.
        """
        with_draft(paid_intake)
        workflow.approve(paid_intake.id, doctor)

        with pytest.raises(AlreadyApproved):
            workflow.approve(paid_intake.id, other_doctor)

    def test_unpaid_request_cannot_be_approved(self, workflow, db_session, make_intake, with_draft, doctor):
        intake = make_intake()
        with_draft(intake)
        intake.status = RequestStatus.DRAFT
        db_session.commit()

        with pytest.raises(LifecycleError) as exc_info:
            workflow.approve(intake.id, doctor)

        assert exc_info.value.code == LifecycleError.PAYMENT_REQUIRED

    def test_patients_cannot_approve(self, workflow, paid_intake, with_draft, patient_identity):
        with_draft(paid_intake)
        with pytest.raises(Unauthorized):
            workflow.approve(paid_intake.id, patient_identity)

    def test_lock_conflict_is_reported_not_refused(self, workflow, paid_intake, with_draft, doctor, other_doctor):
        with_draft(paid_intake)
        workflow.start_review(paid_intake.id, other_doctor)

        result = workflow.approve(paid_intake.id, doctor)

        assert result.certificate is not None
        assert result.lock_conflict.clinician_id == "doc-2"

    def test_generation_failure_surfaces_and_queues_nothing(self, workflow, db_session, renderer, paid_intake,
                                                            with_draft, doctor):
        """
        INVARIANT: Interactive approvals never enqueue retries.
        """
        with_draft(paid_intake)
        renderer.fail = True

        with pytest.raises(DocumentGenerationFailed) as exc_info:
            workflow.approve(paid_intake.id, doctor)

        assert exc_info.value.http_status == 503
        assert db_session.query(Certificate).count() == 0
        assert workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.MED_CERT) is None
        assert workflow.get_intake(paid_intake.id, doctor).status == RequestStatus.IN_REVIEW

    def test_document_missing_from_storage_blocks_issuance(self, workflow, db_session, storage, alerts, paid_intake,
                                                           with_draft, doctor):
        with_draft(paid_intake)
        storage.drop_uploads = True

        with pytest.raises(DocumentUnreachable):
            workflow.approve(paid_intake.id, doctor)

        assert db_session.query(Certificate).count() == 0
        assert db_session.query(GeneratedDocument).count() == 1
        assert workflow.get_intake(paid_intake.id, doctor).status == RequestStatus.IN_REVIEW
        assert alerts.critical()[0]["tags"]["invariant"] == "document_in_storage"

    def test_email_failure_does_not_undo_issuance(self, workflow, email_sender, paid_intake, with_draft, doctor):
        email_sender.fail = True
        with_draft(paid_intake)

        result = workflow.approve(paid_intake.id, doctor)

        assert result.certificate.status == CertificateStatus.VALID
        assert result.email_status == DeliveryStatus.FAILED
        ticket = workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.EMAIL)
        assert ticket.status == RetryStatus.PENDING_RETRY


class TestSingleValidCertificate:

    def test_two_overlapping_approvals_leave_one_valid_certificate(
        self, workflow, db_session, paid_intake, with_draft, doctor, other_doctor
    ):
        """
        INVARIANT: At most one VALID certificate per request, even when two approvals race.
        """
        with_draft(paid_intake)
        first = workflow._prepare(paid_intake.id, doctor)
        second = workflow._prepare(paid_intake.id, other_doctor)

        a = workflow._issue(first)
        b = workflow._issue(second)

        db_session.refresh(a.certificate)
        assert a.certificate.status == CertificateStatus.SUPERSEDED
        assert a.certificate.superseded_by_id == b.certificate.id
        assert b.superseded_certificate_id == a.certificate.id
        assert [c.id for c in _valid_certificates(db_session, paid_intake.id)] == [b.certificate.id]
        assert a.certificate.idempotency_key != b.certificate.idempotency_key
        assert len(_events(db_session, AuditEventType.SUPERSEDED)) == 1

    def test_idempotency_key_is_stable_for_same_inputs(self):
        from datetime import date

        key = compute_idempotency_key("req-1", "doc-1", date(2026, 3, 2), 1)
        assert key == compute_idempotency_key("req-1", "doc-1", date(2026, 3, 2), 1)
        assert key != compute_idempotency_key("req-1", "doc-1", date(2026, 3, 2), 2)
        assert len(key) == 32


class TestRegeneration:

    def test_regenerate_supersedes_and_keeps_original_clinician(
        self, workflow, db_session, paid_intake, with_draft, doctor, admin
    ):
        with_draft(paid_intake)
        original = workflow.approve(paid_intake.id, doctor).certificate

        result = workflow.regenerate(paid_intake.id, admin)

        db_session.refresh(original)
        assert original.status == CertificateStatus.SUPERSEDED
        assert result.superseded_certificate_id == original.id
        assert result.certificate.clinician_id == "doc-1"
        assert result.certificate.verification_code != original.verification_code
        assert workflow.get_intake(paid_intake.id, admin).status == RequestStatus.APPROVED
        assert len(_valid_certificates(db_session, paid_intake.id)) == 1

    def test_only_approved_requests_regenerate(self, workflow, paid_intake, with_draft, doctor):
        with_draft(paid_intake)
        with pytest.raises(LifecycleError):
            workflow.regenerate(paid_intake.id, doctor)

    def test_interactive_generation_failure_keeps_old_certificate(
        self, workflow, db_session, renderer, paid_intake, with_draft, doctor
    ):
        with_draft(paid_intake)
        original = workflow.approve(paid_intake.id, doctor).certificate
        renderer.fail = True

        with pytest.raises(DocumentGenerationFailed):
            workflow.regenerate(paid_intake.id, doctor)

        db_session.refresh(original)
        assert original.status == CertificateStatus.VALID
        assert workflow.get_intake(paid_intake.id, doctor).status == RequestStatus.SUPERSEDED

        # The clinician can simply try again from superseded
        renderer.fail = False
        result = workflow.regenerate(paid_intake.id, doctor)
        assert result.superseded_certificate_id == original.id

    def test_automated_failure_queues_retry(self, workflow, db_session, renderer, paid_intake, with_draft, doctor):
        """
        INVARIANT: Automated regeneration turns a generation failure into a med_cert retry ticket.
        """
        with_draft(paid_intake)
        original = workflow.approve(paid_intake.id, doctor).certificate
        renderer.fail = True

        result = workflow.regenerate(paid_intake.id, SYSTEM_IDENTITY, automated=True)

        assert result.certificate is None
        assert result.pending_retry is True
        ticket = workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.MED_CERT)
        assert ticket.status == RetryStatus.PENDING_RETRY
        db_session.refresh(original)
        assert original.status == CertificateStatus.VALID


class TestCertificateDates:

    def test_refused_approval_saves_nothing(self, workflow, db_session, renderer, paid_intake, with_draft, doctor,
                                            other_doctor):
        """
        INVARIANT: A refused approval writes neither its draft nor a review lock.
        """
        with_draft(paid_intake)
        original = workflow.approve(paid_intake.id, doctor).certificate
        rendered = len(renderer.rendered)

        with pytest.raises(AlreadyApproved):
            workflow.approve(paid_intake.id, other_doctor, draft=draft_data(start=date(2025, 12, 1)))

        assert len(renderer.rendered) == rendered
        assert workflow.drafts.get_draft(paid_intake.id).data["start_date"] == "2026-03-02"
        intake = workflow.get_intake(paid_intake.id, doctor)
        assert intake.reviewing_clinician_id is None
        assert intake.review_locked_at is None

        result = workflow.regenerate(paid_intake.id, doctor)
        assert result.certificate.start_date == original.start_date == date(2026, 3, 2)

    def test_draft_is_frozen_once_approved(self, workflow, paid_intake, with_draft, doctor):
        """
        INVARIANT: An approved request's draft cannot be rewritten, so regeneration reissues the same dates.
        """
        with_draft(paid_intake)
        workflow.approve(paid_intake.id, doctor)

        with pytest.raises(LifecycleError) as exc_info:
            workflow.drafts.save_draft(paid_intake.id, draft_data(start=date(2025, 1, 1)))
        assert exc_info.value.code == LifecycleError.INVALID_TRANSITION

        result = workflow.regenerate(paid_intake.id, doctor)
        assert result.certificate.start_date == date(2026, 3, 2)

    def test_start_date_moves_only_through_a_date_change(self, workflow, paid_intake, with_draft):
        """
        INVARIANT: Once stored, a start date is changed only by a date change request.
        """
        with_draft(paid_intake)

        with pytest.raises(DateChangeRequired):
            workflow.drafts.save_draft(paid_intake.id, draft_data(start=date(2026, 2, 1)))

        draft = workflow.drafts.save_draft(paid_intake.id, draft_data(days=4))
        assert draft.data["start_date"] == "2026-03-02"
        assert draft.data["end_date"] == "2026-03-05"

    def test_inline_draft_cannot_move_the_start_date(self, workflow, renderer, paid_intake, with_draft, doctor):
        with_draft(paid_intake)

        with pytest.raises(DateChangeRequired):
            workflow.approve(paid_intake.id, doctor, draft=draft_data(start=date(2026, 2, 20)))

        assert renderer.rendered == []
        assert workflow.locks.get_lock(paid_intake.id) is None
        assert workflow.drafts.get_draft(paid_intake.id).data["start_date"] == "2026-03-02"


class TestRetrySweep:

    def test_retry_cap_then_operator_requeue(self, workflow, db_session, renderer, alerts, clock, paid_intake,
                                             with_draft, doctor, admin):
        """
        INVARIANT: A ticket is tried max_retries times, then parked until an operator requeues it.
        """
        with_draft(paid_intake)
        workflow.approve(paid_intake.id, doctor)
        renderer.fail = True
        workflow.regenerate(paid_intake.id, SYSTEM_IDENTITY, automated=True)

        clock.advance(seconds=60)
        first = workflow.run_retry_sweep()
        clock.advance(seconds=120)
        second = workflow.run_retry_sweep()
        clock.advance(seconds=240)
        third = workflow.run_retry_sweep()

        assert (first.claimed, first.failed) == (1, 1)
        assert (second.claimed, second.failed) == (1, 1)
        assert third.claimed == 0
        ticket = workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.MED_CERT)
        assert ticket.status == RetryStatus.PERMANENTLY_FAILED
        assert ticket.attempt_count == 3
        assert len(alerts.critical()) == 1

        renderer.fail = False
        workflow.retry_queue.requeue(paid_intake.id, DocumentType.MED_CERT, admin)
        summary = workflow.run_retry_sweep()

        assert summary.succeeded == 1
        db_session.refresh(ticket)
        assert ticket.status == RetryStatus.COMPLETED
        assert workflow.get_intake(paid_intake.id, admin).status == RequestStatus.APPROVED
        assert len(_valid_certificates(db_session, paid_intake.id)) == 1

    def test_sweep_redelivers_failed_email(self, workflow, db_session, email_sender, clock, paid_intake, with_draft,
                                           doctor):
        email_sender.fail = True
        with_draft(paid_intake)
        cert = workflow.approve(paid_intake.id, doctor).certificate
        email_sender.fail = False

        clock.advance(seconds=60)
        summary = workflow.run_retry_sweep()

        assert summary.succeeded == 1
        db_session.refresh(cert)
        assert cert.email_status == DeliveryStatus.SENT
        ticket = workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.EMAIL)
        assert ticket.status == RetryStatus.COMPLETED

    def test_stale_generation_ticket_completes_if_already_approved(self, workflow, clock, paid_intake, with_draft,
                                                                   doctor):
        with_draft(paid_intake)
        workflow.approve(paid_intake.id, doctor)
        workflow.retry_queue.queue_retry(paid_intake.id, DocumentType.MED_CERT, "renderer crashed")

        clock.advance(seconds=60)
        summary = workflow.run_retry_sweep()

        assert summary.succeeded == 1


class TestReviewAndDecline:

    def test_start_review_moves_paid_request_and_takes_lock(self, workflow, db_session, paid_intake, doctor,
                                                            other_doctor):
        lock = workflow.start_review(paid_intake.id, doctor)

        assert lock.acquired is True
        intake = workflow.get_intake(paid_intake.id, doctor)
        assert intake.status == RequestStatus.IN_REVIEW
        assert intake.reviewing_clinician_id == "doc-1"

        second = workflow.start_review(paid_intake.id, other_doctor)
        assert second.conflict.clinician_id == "doc-1"
        assert len(_events(db_session, AuditEventType.REVIEW_STARTED)) == 1

    def test_info_request_round_trip_restores_status(self, workflow, db_session, email_sender, paid_intake, doctor,
                                                     patient_identity):
        workflow.start_review(paid_intake.id, doctor)

        intake = workflow.request_info(paid_intake.id, doctor, "How long have you had the fever?")
        assert intake.status == RequestStatus.PENDING_INFO
        assert "How long have you had the fever?" in email_sender.sent[-1][2]

        intake = workflow.provide_info(paid_intake.id, patient_identity, {"fever_days": 3})
        assert intake.status == RequestStatus.IN_REVIEW
        assert intake.answers["info_response"] == {"fever_days": 3}

    def test_decline_records_reason_and_emails(self, workflow, db_session, email_sender, paid_intake, doctor):
        intake = workflow.decline(paid_intake.id, doctor, "Needs an in-person examination")

        assert intake.status == RequestStatus.DECLINED
        assert intake.decline_reason == "Needs an in-person examination"
        assert "Needs an in-person examination" in email_sender.sent[-1][2]
        assert len(_events(db_session, AuditEventType.DECLINED)) == 1

    def test_completed_request_is_terminal(self, workflow, paid_intake, with_draft, doctor):
        with_draft(paid_intake)
        workflow.approve(paid_intake.id, doctor)
        workflow.complete(paid_intake.id, doctor)

        with pytest.raises(LifecycleError) as exc_info:
            workflow.decline(paid_intake.id, doctor, "Too late")
        assert exc_info.value.code == LifecycleError.TERMINAL_STATE


class TestCertificateAccess:

    def test_verify_reports_status_without_patient_details(self, workflow, paid_intake, with_draft, doctor):
        with_draft(paid_intake)
        original = workflow.approve(paid_intake.id, doctor).certificate
        old_code = original.verification_code

        result = workflow.verify(old_code.lower())
        assert result.valid is True
        assert not hasattr(result, "patient_name")

        workflow.regenerate(paid_intake.id, doctor)
        result = workflow.verify(old_code)
        assert result.valid is False
        assert result.status == CertificateStatus.SUPERSEDED

        with pytest.raises(NotFound):
            workflow.verify("NOSUCHCODE")

    def test_patient_downloads_own_certificate_only(self, workflow, db_session, paid_intake, with_draft, doctor,
                                                    patient_identity):
        with_draft(paid_intake)
        cert = workflow.approve(paid_intake.id, doctor).certificate

        url = workflow.download_url(cert.id, patient_identity)
        assert url.startswith("https://files.test/med_cert/")
        assert len(_events(db_session, AuditEventType.DOWNLOADED)) == 1

        stranger = patient_identity.model_copy(update={"sub": "someone-else"})
        with pytest.raises(NotFound):
            workflow.download_url(cert.id, stranger)

    def test_revoked_certificate_cannot_be_downloaded(self, workflow, paid_intake, with_draft, doctor, admin,
                                                      patient_identity):
        with_draft(paid_intake)
        cert = workflow.approve(paid_intake.id, doctor).certificate

        with pytest.raises(Unauthorized):
            workflow.revoke(cert.id, doctor, "Issued in error")

        revoked = workflow.revoke(cert.id, admin, "Issued in error")
        assert revoked.status == CertificateStatus.REVOKED
        assert revoked.revocation_reason == "Issued in error"

        with pytest.raises(CertificateUnavailable):
            workflow.download_url(cert.id, patient_identity)
        with pytest.raises(LifecycleError):
            workflow.revoke(cert.id, admin, "Again")


class TestAnonymization:

    def test_anonymize_strips_phi_but_keeps_audit(self, workflow, db_session, paid_intake, with_draft, doctor, admin):
        with_draft(paid_intake)
        workflow.approve(paid_intake.id, doctor)
        events_before = db_session.query(AuditEvent).count()

        intake = workflow.anonymize(paid_intake.id, admin)

        patient = db_session.get(Patient, intake.patient_id)
        assert patient.full_name is None
        assert patient.email is None
        assert patient.anonymized_at is not None
        assert intake.symptoms_summary is None
        draft = workflow.drafts.get_draft(paid_intake.id)
        assert draft.data["patient_name"] == "REDACTED"
        assert db_session.query(AuditEvent).count() == events_before + 1
