"""
Tests for the delivery outbox.
"""
import pytest

from medcert.models.audit import AuditEvent, AuditEventType
from medcert.models.enums import DeliveryStatus, DocumentType, EmailType, RetryStatus
from medcert.services.errors import Unauthorized
from medcert.services.outbox import DeliveryOutbox


@pytest.fixture
def outbox(db_session, email_sender, workflow, clock):
    return DeliveryOutbox(db_session, email_sender, workflow.retry_queue, clock=clock, app_url="https://medcert.test")


def _queue_info_email(outbox, intake, message="Please upload a photo of the rash"):
    intake.info_request_message = message
    return outbox.enqueue_for_intake(intake, EmailType.INFO_REQUESTED)


class TestDispatch:

    def test_successful_send_is_recorded(self, outbox, db_session, email_sender, paid_intake):
        row = _queue_info_email(outbox, paid_intake)

        row = outbox.dispatch(row.id)

        assert row.status == DeliveryStatus.SENT
        assert row.provider_message_id == "<msg-1@test>"
        [(to_email, subject, body)] = email_sender.sent
        assert to_email == "jane@example.com"
        assert "Please upload a photo of the rash" in body
        assert db_session.query(AuditEvent).filter_by(event_type=AuditEventType.EMAIL_SENT).count() == 1

    def test_each_activation_records_one_outcome(self, outbox, email_sender, paid_intake):
        """
        INVARIANT: A row that already left pending is not sent again.
        """
        row = _queue_info_email(outbox, paid_intake)
        outbox.dispatch(row.id)
        outbox.dispatch(row.id)

        assert len(email_sender.sent) == 1

    def test_disabled_delivery_skips(self, db_session, email_sender, workflow, clock, paid_intake):
        outbox = DeliveryOutbox(db_session, email_sender, workflow.retry_queue, clock=clock, delivery_mode="disabled")
        row = _queue_info_email(outbox, paid_intake)

        row = outbox.dispatch(row.id)

        assert row.status == DeliveryStatus.SKIPPED
        assert email_sender.sent == []

    def test_invalid_address_fails_without_retry(self, outbox, db_session, workflow, patient, paid_intake):
        """
        INVARIANT: Retrying cannot fix a bad address, so none is queued.
        """
        patient.email = "not-an-address"
        db_session.commit()
        row = _queue_info_email(outbox, paid_intake)

        row = outbox.dispatch(row.id)

        assert row.status == DeliveryStatus.FAILED
        assert row.error_message == "invalid recipient address"
        assert workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.EMAIL) is None

    def test_transient_failure_queues_email_retry(self, outbox, email_sender, workflow, paid_intake):
        email_sender.fail = True
        row = _queue_info_email(outbox, paid_intake)

        row = outbox.dispatch(row.id)

        assert row.status == DeliveryStatus.FAILED
        ticket = workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.EMAIL)
        assert ticket.status == RetryStatus.PENDING_RETRY
        assert ticket.attempt_count == 1

    def test_sender_exception_is_treated_as_transient(self, outbox, email_sender, workflow, paid_intake):
        def exploding_send(to_email, subject, body):
            raise ConnectionResetError("connection reset")

        email_sender.send = exploding_send
        row = outbox.dispatch(_queue_info_email(outbox, paid_intake).id)

        assert row.status == DeliveryStatus.FAILED
        assert "connection reset" in row.error_message
        assert workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.EMAIL) is not None

    def test_later_send_leaves_parked_ticket_for_the_operator(self, outbox, email_sender, workflow, paid_intake):
        """
        INVARIANT: A successful send only completes an open email ticket, never a parked one.
        """
        email_sender.fail = True
        for _ in range(3):
            outbox.dispatch(_queue_info_email(outbox, paid_intake).id)
        ticket = workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.EMAIL)
        assert ticket.status == RetryStatus.PERMANENTLY_FAILED

        email_sender.fail = False
        row = outbox.dispatch(_queue_info_email(outbox, paid_intake).id)

        assert row.status == DeliveryStatus.SENT
        ticket = workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.EMAIL)
        assert ticket.status == RetryStatus.PERMANENTLY_FAILED
        assert [t.intake_id for t in workflow.retry_queue.list_permanently_failed()] == [paid_intake.id]


class TestRedelivery:

    def test_redeliver_reactivates_failed_row(self, outbox, email_sender, workflow, paid_intake):
        email_sender.fail = True
        row = outbox.dispatch(_queue_info_email(outbox, paid_intake).id)
        email_sender.fail = False

        redelivered = outbox.redeliver(paid_intake.id)

        assert redelivered.id == row.id
        assert redelivered.status == DeliveryStatus.SENT
        assert redelivered.retry_count == 1
        ticket = workflow.retry_queue.get_ticket(paid_intake.id, DocumentType.EMAIL)
        assert ticket.status == RetryStatus.COMPLETED

    def test_redeliver_without_rows_is_a_no_op(self, outbox, paid_intake):
        assert outbox.redeliver(paid_intake.id) is None


class TestOperatorResend:

    def test_resend_counts_and_audits(self, workflow, db_session, email_sender, paid_intake, with_draft, doctor,
                                      admin):
        email_sender.fail = True
        email_sender.retryable = False
        with_draft(paid_intake)
        cert = workflow.approve(paid_intake.id, doctor).certificate
        assert cert.email_status == DeliveryStatus.FAILED
        assert workflow.outbox.list_failed() == [cert]

        email_sender.fail = False
        row = workflow.outbox.resend(cert.id, admin)

        db_session.refresh(cert)
        assert row.status == DeliveryStatus.SENT
        assert cert.email_status == DeliveryStatus.SENT
        assert cert.email_retry_count == 1
        assert workflow.outbox.list_failed() == []
        assert db_session.query(AuditEvent).filter_by(event_type=AuditEventType.EMAIL_RETRY).count() == 1

    def test_patients_cannot_trigger_resend(self, workflow, paid_intake, with_draft, doctor, patient_identity):
        with_draft(paid_intake)
        cert = workflow.approve(paid_intake.id, doctor).certificate

        with pytest.raises(Unauthorized):
            workflow.outbox.resend(cert.id, patient_identity)
