"""
Error taxonomy for the issuance services.

Every error the services raise on purpose derives from IssuanceError and
carries a stable code and the HTTP status the API maps it to. A refusal
is the system working correctly, so these are raised and not logged as
failures by the services themselves.
"""
from typing import List, Optional


class IssuanceError(Exception):
    code = "ISSUANCE_ERROR"
    http_status = 400

    def __init__(self, message: str, code: Optional[str] = None):
        self.message = message
        if code is not None:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class NotFound(IssuanceError):
    code = "NOT_FOUND"
    http_status = 404


class Unauthorized(IssuanceError):
    code = "UNAUTHORIZED"
    http_status = 403


class RateLimited(IssuanceError):
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(self, message: str, retry_after: int):
        self.retry_after = retry_after
        super().__init__(message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["retry_after"] = self.retry_after
        return body


class CertificateUnavailable(IssuanceError):
    """The certificate exists but has been superseded or revoked."""
    code = "CERTIFICATE_UNAVAILABLE"
    http_status = 410


class InfrastructureError(IssuanceError):
    """Storage, rendering or delivery failed. Retryable."""
    code = "INFRASTRUCTURE_ERROR"
    http_status = 503


class DocumentGenerationFailed(InfrastructureError):
    code = "DOCUMENT_GENERATION_FAILED"


class InvariantViolation(IssuanceError):
    """An approval precondition does not hold. Never retried."""
    code = "INVARIANT_VIOLATION"
    http_status = 409
    invariant = "unknown"


class DraftMissing(InvariantViolation):
    code = "DRAFT_MISSING"
    invariant = "draft_exists"


class AlreadyApproved(InvariantViolation):
    code = "ALREADY_APPROVED"
    invariant = "not_already_approved"


class DocumentMissing(InvariantViolation):
    code = "DOCUMENT_MISSING"
    invariant = "document_exists"


class DocumentUnreachable(InvariantViolation):
    code = "DOCUMENT_UNREACHABLE"
    invariant = "document_in_storage"


class LifecycleError(IssuanceError):
    """A request status move that the transition table does not allow."""
    http_status = 409

    INVALID_TRANSITION = "INVALID_TRANSITION"
    TERMINAL_STATE = "TERMINAL_STATE"
    PAYMENT_REQUIRED = "PAYMENT_REQUIRED"


class ValidationFailed(IssuanceError):
    code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(self, message: str, errors: List[str] = None):
        self.errors = errors or []
        super().__init__(message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["errors"] = self.errors
        return body


class AttestationInvalid(ValidationFailed):
    code = "ATTESTATION_INVALID"


class BackdatingRejected(ValidationFailed):
    code = "BACKDATING_REJECTED"


class DraftInvalid(ValidationFailed):
    code = "DRAFT_INVALID"


class DateChangeRequired(IssuanceError):
    """A draft edit that moves an existing start date; that goes through a date change request."""
    code = "DATE_CHANGE_REQUIRED"
    http_status = 409
