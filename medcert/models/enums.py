"""Enums for the issuance system - these define the valid values for states and kinds."""
from enum import Enum


class RequestStatus(str, Enum):
    """Lifecycle of a clinical request. No other states are allowed."""
    DRAFT = "draft"
    PAID = "paid"
    IN_REVIEW = "in_review"
    PENDING_INFO = "pending_info"
    APPROVED = "approved"
    DECLINED = "declined"
    SUPERSEDED = "superseded"
    COMPLETED = "completed"


# Statuses in which a clinician may hold a review lock
REVIEWABLE_STATUSES = (
    RequestStatus.PAID,
    RequestStatus.IN_REVIEW,
    RequestStatus.PENDING_INFO,
)


class CertificateStatus(str, Enum):
    VALID = "valid"
    SUPERSEDED = "superseded"
    REVOKED = "revoked"


class CertificateSubtype(str, Enum):
    """Certificate variants; each has its own draft shape."""
    WORK = "work"
    STUDY = "study"
    CARER = "carer"


class DocumentType(str, Enum):
    """Units of work the retry queue knows how to redo."""
    MED_CERT = "med_cert"
    EMAIL = "email"


class RetryStatus(str, Enum):
    PENDING_RETRY = "pending_retry"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PERMANENTLY_FAILED = "permanently_failed"


class DeliveryStatus(str, Enum):
    """Status of an outbox row and of a certificate's email delivery."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


class EmailType(str, Enum):
    CERTIFICATE_ISSUED = "certificate_issued"
    REQUEST_DECLINED = "request_declined"
    INFO_REQUESTED = "info_requested"


class AttestationType(str, Enum):
    PATIENT_DECLARATION = "patient_declaration"
    CARER_DECLARATION = "carer_declaration"
    EMERGENCY_DISCLAIMER = "emergency_disclaimer"


class DateChangeStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ActorRole(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    SYSTEM = "system"
