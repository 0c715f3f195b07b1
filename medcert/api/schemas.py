"""Pydantic schemas for request/response validation."""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

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
from medcert.services.drafts import DraftPayload


# Errors
class ErrorResponse(BaseModel):
    code: str
    message: str
    errors: Optional[List[str]] = None
    retry_after: Optional[int] = None


# Intake schemas
class IntakeResponse(BaseModel):
    id: str
    patient_id: str
    status: RequestStatus
    previous_status: Optional[RequestStatus]
    reviewing_clinician_id: Optional[str]
    reviewing_clinician_name: Optional[str]
    review_locked_at: Optional[datetime]
    decided_by: Optional[str]
    decided_at: Optional[datetime]
    decline_reason: Optional[str]
    info_request_message: Optional[str]
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class LockInfoResponse(BaseModel):
    clinician_id: str
    clinician_name: Optional[str]
    locked_at: datetime
    expires_at: datetime

    class Config:
        from_attributes = True


class LockResponse(BaseModel):
    acquired: bool
    conflict: Optional[LockInfoResponse] = None

    class Config:
        from_attributes = True


# Draft schemas
class DraftSave(BaseModel):
    draft: DraftPayload


class DraftResponse(BaseModel):
    id: str
    intake_id: str
    document_type: DocumentType
    subtype: CertificateSubtype
    data: Dict[str, Any]
    updated_at: datetime

    class Config:
        from_attributes = True


# Decision schemas
class ApproveRequest(BaseModel):
    draft: Optional[DraftPayload] = None


class DeclineRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class InfoRequestCreate(BaseModel):
    message: str = Field(..., min_length=1, max_length=1000)


class InfoProvided(BaseModel):
    answers: Dict[str, Any] = Field(default_factory=dict)


class RevokeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


# Certificate schemas
class CertificateResponse(BaseModel):
    id: str
    intake_id: str
    patient_id: str
    clinician_id: str
    clinician_name: str
    status: CertificateStatus
    certificate_number: str
    verification_code: str
    subtype: CertificateSubtype
    start_date: date
    end_date: date
    pdf_hash: str
    email_status: DeliveryStatus
    email_retry_count: int
    email_sent_at: Optional[datetime]
    superseded_at: Optional[datetime]
    superseded_by_id: Optional[str]
    revoked_at: Optional[datetime]
    revocation_reason: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class IssuanceResponse(BaseModel):
    certificate: Optional[CertificateResponse] = None
    lock_conflict: Optional[LockInfoResponse] = None
    superseded_certificate_id: Optional[str] = None
    email_status: Optional[DeliveryStatus] = None
    pending_retry: bool = False

    class Config:
        from_attributes = True


class VerificationResponse(BaseModel):
    valid: bool
    status: CertificateStatus
    certificate_number: str
    subtype: CertificateSubtype
    start_date: date
    end_date: date
    clinician_name: str
    issued_at: datetime

    class Config:
        from_attributes = True


class DownloadResponse(BaseModel):
    url: str
    expires_in: int


# Attestation / date change schemas
class AttestationCreate(BaseModel):
    attestation_type: AttestationType
    typed_name: str = Field(..., min_length=1, max_length=200)
    attestation_text: str = Field(..., min_length=1)
    attested_at: datetime


class AttestationResponse(BaseModel):
    id: str
    intake_id: str
    attestation_type: AttestationType
    typed_name: str
    attested_at: datetime

    class Config:
        from_attributes = True


class DateChangeCreate(BaseModel):
    requested_date: date
    reason: Optional[str] = Field(None, max_length=500)


class DateChangeResponse(BaseModel):
    id: str
    intake_id: str
    field_name: str
    original_date: date
    requested_date: date
    reason: Optional[str]
    status: DateChangeStatus
    requested_by: str
    decided_by: Optional[str]
    decided_at: Optional[datetime]
    created_at: datetime

    class Config:
        from_attributes = True


class DateChangeResult(BaseModel):
    applied: bool
    change_request: Optional[DateChangeResponse] = None


class DateChangeReject(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# Delivery / retry schemas
class OutboxResponse(BaseModel):
    id: str
    intake_id: str
    certificate_id: Optional[str]
    email_type: EmailType
    status: DeliveryStatus
    error_message: Optional[str]
    retry_count: int
    created_at: datetime
    sent_at: Optional[datetime]

    class Config:
        from_attributes = True


class RetryTicketResponse(BaseModel):
    id: str
    intake_id: str
    document_type: DocumentType
    attempt_count: int
    last_error: Optional[str]
    next_retry_at: Optional[datetime]
    status: RetryStatus
    updated_at: datetime

    class Config:
        from_attributes = True
