"""
Internal audit logging model - NOT a user-facing domain object.

This model exists to provide immutable, append-only audit trails
for issuance decisions, deliveries and operator actions.
"""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String

from medcert.database import Base


class AuditEvent(Base):
    """
    Immutable audit event for reconstructing who did what to a request.

    Invariants:
    - Once written, never edited or deleted (anonymization leaves it alone)
    - Append-only
    - payload carries identifiers, never PHI
    """
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String, nullable=False, index=True)  # e.g., "approved"
    subject_type = Column(String, nullable=False, default="request")  # request | certificate | date_change_request
    subject_id = Column(String, nullable=False, index=True)
    actor_id = Column(String, nullable=True)  # Nullable for system events
    actor_role = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    payload = Column(JSON, nullable=True)


# Event type constants for consistency
class AuditEventType:
    """Enumeration of audit event types."""
    # Review
    REVIEW_STARTED = "review_started"
    INFO_REQUESTED = "info_requested"
    INFO_PROVIDED = "info_provided"

    # Decisions
    APPROVED = "approved"
    DECLINED = "declined"
    SUPERSEDED = "superseded"
    REVOKED = "revoked"

    # Delivery
    EMAIL_SENT = "email_sent"
    EMAIL_FAILED = "email_failed"
    EMAIL_RETRY = "email_retry"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRY_EXHAUSTED = "retry_exhausted"

    # Access
    DOWNLOADED = "downloaded"
    VERIFIED = "verified"

    # Fraud guards
    ATTESTATION_RECORDED = "attestation_recorded"
    DATE_CHANGE_REQUESTED = "date_change_requested"
    DATE_CHANGE_APPLIED = "date_change_applied"
    DATE_CHANGE_APPROVED = "date_change_approved"
    DATE_CHANGE_REJECTED = "date_change_rejected"

    # Privacy
    ANONYMIZED = "anonymized"
