"""Domain models - intakes, drafts, documents, certificates and the retry/outbox tables."""
import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from medcert.database import Base
from medcert.models.enums import (
    AttestationType,
    CertificateStatus,
    CertificateSubtype,
    DateChangeStatus,
    DeliveryStatus,
    DocumentType,
    EmailType,
    RequestStatus,
    RetryStatus,
)


def _uuid() -> str:
    return str(uuid.uuid4())


def _enum(enum_cls):
    # Store the lowercase values, not the member names
    return SQLEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class Patient(Base):
    """
    The account a request belongs to.

    full_name is the registered name attestations are checked against.
    Anonymization blanks the PHI columns and stamps anonymized_at.
    """
    __tablename__ = "patients"

    id = Column(String(36), primary_key=True, default=_uuid)
    full_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    anonymized_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    intakes = relationship("Intake", back_populates="patient")


class Intake(Base):
    """
    A clinical request awaiting (or past) a doctor's decision.

    Invariants enforced here and in the services:
    - status is always one of RequestStatus
    - at most one reviewing clinician at a time (lock fields owned by ReviewLockManager)
    - previous_status is only set while pending_info, so the patient's reply can roll back
    """
    __tablename__ = "intakes"

    id = Column(String(36), primary_key=True, default=_uuid)
    patient_id = Column(String(36), ForeignKey("patients.id"), nullable=False, index=True)
    status = Column(_enum(RequestStatus), nullable=False, default=RequestStatus.DRAFT)
    previous_status = Column(_enum(RequestStatus), nullable=True)

    # Soft review lock
    reviewing_clinician_id = Column(String, nullable=True)
    reviewing_clinician_name = Column(String, nullable=True)
    review_locked_at = Column(DateTime, nullable=True)

    # Decision
    decided_by = Column(String, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    decline_reason = Column(String, nullable=True)
    info_request_message = Column(String, nullable=True)

    # PHI, stripped on anonymization
    symptoms_summary = Column(Text, nullable=True)
    answers = Column(JSON, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    patient = relationship("Patient", back_populates="intakes")
    drafts = relationship("DocumentDraft", back_populates="intake", cascade="all, delete-orphan")
    documents = relationship("GeneratedDocument", back_populates="intake", cascade="all, delete-orphan")
    certificates = relationship("Certificate", back_populates="intake")


class DocumentDraft(Base):
    """
    Preliminary certificate content, edited by the doctor before rendering.

    data is validated against the subtype's schema before it is stored.
    """
    __tablename__ = "document_drafts"
    __table_args__ = (
        UniqueConstraint("intake_id", "document_type", name="uq_document_drafts_intake_type"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    intake_id = Column(String(36), ForeignKey("intakes.id"), nullable=False, index=True)
    document_type = Column(_enum(DocumentType), nullable=False, default=DocumentType.MED_CERT)
    subtype = Column(_enum(CertificateSubtype), nullable=False, default=CertificateSubtype.WORK)
    data = Column(JSON, nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    intake = relationship("Intake", back_populates="drafts")


class GeneratedDocument(Base):
    """A rendered PDF that made it into object storage."""
    __tablename__ = "generated_documents"

    id = Column(String(36), primary_key=True, default=_uuid)
    intake_id = Column(String(36), ForeignKey("intakes.id"), nullable=False, index=True)
    document_type = Column(_enum(DocumentType), nullable=False, default=DocumentType.MED_CERT)
    subtype = Column(_enum(CertificateSubtype), nullable=False)
    storage_path = Column(String, nullable=False)
    pdf_hash = Column(String(64), nullable=False)
    size_bytes = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    intake = relationship("Intake", back_populates="documents")


class Certificate(Base):
    """
    The issued artifact.

    Invariants:
    - At most one VALID certificate per intake (partial unique index below)
    - Never deleted: a replaced certificate is SUPERSEDED, a withdrawn one REVOKED
    - Only the issuance workflow creates or supersedes certificates
    """
    __tablename__ = "certificates"

    id = Column(String(36), primary_key=True, default=_uuid)
    intake_id = Column(String(36), ForeignKey("intakes.id"), nullable=False, index=True)
    patient_id = Column(String(36), nullable=False, index=True)
    clinician_id = Column(String, nullable=False)
    clinician_name = Column(String, nullable=False)
    status = Column(_enum(CertificateStatus), nullable=False, default=CertificateStatus.VALID)

    certificate_number = Column(String, nullable=False, unique=True)
    verification_code = Column(String(16), nullable=False, unique=True, index=True)
    idempotency_key = Column(String(32), nullable=False, unique=True)
    subtype = Column(_enum(CertificateSubtype), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    storage_path = Column(String, nullable=False)
    pdf_hash = Column(String(64), nullable=False)

    # Email delivery
    email_status = Column(_enum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    email_retry_count = Column(Integer, nullable=False, default=0)
    email_sent_at = Column(DateTime, nullable=True)
    email_failure_reason = Column(String, nullable=True)

    superseded_at = Column(DateTime, nullable=True)
    superseded_by_id = Column(String(36), nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by = Column(String, nullable=True)
    revocation_reason = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    intake = relationship("Intake", back_populates="certificates")

    __table_args__ = (
        Index(
            "uq_certificates_one_valid_per_intake",
            "intake_id",
            unique=True,
            sqlite_where=(status == CertificateStatus.VALID),
            postgresql_where=(status == CertificateStatus.VALID),
        ),
    )


class RetryTicket(Base):
    """
    Pending regeneration or redelivery for an intake.

    Lifecycle: pending_retry -> processing -> completed | pending_retry | permanently_failed.
    One row per (intake, document_type); owned by the RetryQueue.
    """
    __tablename__ = "retry_tickets"
    __table_args__ = (
        UniqueConstraint("intake_id", "document_type", name="uq_retry_tickets_intake_type"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    intake_id = Column(String(36), ForeignKey("intakes.id"), nullable=False, index=True)
    document_type = Column(_enum(DocumentType), nullable=False)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    next_retry_at = Column(DateTime, nullable=True, index=True)
    status = Column(_enum(RetryStatus), nullable=False, default=RetryStatus.PENDING_RETRY)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class EmailOutbox(Base):
    """One row per intended email; status is written after each send attempt."""
    __tablename__ = "email_outbox"

    id = Column(String(36), primary_key=True, default=_uuid)
    intake_id = Column(String(36), ForeignKey("intakes.id"), nullable=False, index=True)
    certificate_id = Column(String(36), ForeignKey("certificates.id"), nullable=True, index=True)
    email_type = Column(_enum(EmailType), nullable=False)
    to_email = Column(String, nullable=False)
    subject = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    status = Column(_enum(DeliveryStatus), nullable=False, default=DeliveryStatus.PENDING)
    provider_message_id = Column(String, nullable=True)
    error_message = Column(String, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    sent_at = Column(DateTime, nullable=True)


class AttestationRecord(Base):
    """
    Evidence of a typed declaration. Written once, never updated.

    Used as a gate by the workflow, never as workflow state.
    """
    __tablename__ = "attestation_records"

    id = Column(String(36), primary_key=True, default=_uuid)
    intake_id = Column(String(36), ForeignKey("intakes.id"), nullable=False, index=True)
    attestation_type = Column(_enum(AttestationType), nullable=False)
    typed_name = Column(String, nullable=False)
    attestation_text = Column(Text, nullable=False)
    attested_at = Column(DateTime, nullable=False)
    ip_address = Column(String, nullable=False)
    user_agent = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class DateChangeRequest(Base):
    """
    Human approval record for moving a certificate date forward by more than 24 hours.

    Backdating never gets one of these: it is rejected before a row is written.
    """
    __tablename__ = "date_change_requests"

    id = Column(String(36), primary_key=True, default=_uuid)
    intake_id = Column(String(36), ForeignKey("intakes.id"), nullable=False, index=True)
    field_name = Column(String, nullable=False, default="start_date")
    original_date = Column(Date, nullable=False)
    requested_date = Column(Date, nullable=False)
    reason = Column(String, nullable=True)
    status = Column(_enum(DateChangeStatus), nullable=False, default=DateChangeStatus.PENDING)
    requested_by = Column(String, nullable=False)
    decided_by = Column(String, nullable=True)
    decided_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
