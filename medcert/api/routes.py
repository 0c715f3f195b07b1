"""API routes for the certificate issuance workflow."""
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from slowapi import Limiter
from slowapi.util import get_remote_address

from medcert.api.deps import get_collaborators, get_settings, get_workflow
from medcert.api.schemas import (
    ApproveRequest,
    AttestationCreate,
    AttestationResponse,
    CertificateResponse,
    DateChangeCreate,
    DateChangeReject,
    DateChangeResponse,
    DateChangeResult,
    DeclineRequest,
    DownloadResponse,
    DraftResponse,
    DraftSave,
    ErrorResponse,
    InfoProvided,
    InfoRequestCreate,
    IntakeResponse,
    IssuanceResponse,
    LockInfoResponse,
    LockResponse,
    OutboxResponse,
    RetryTicketResponse,
    RevokeRequest,
    VerificationResponse,
)
from medcert.collaborators.auth import Identity, authorize, get_current_identity, require_role
from medcert.collaborators.storage import LocalObjectStorage
from medcert.models.enums import ActorRole, DocumentType
from medcert.services.attestation import AttestationInput, AttestationService, DateChangeService
from medcert.services.issuance import IssuanceResult, IssuanceWorkflow

router = APIRouter()

# Public endpoints are limited by remote address; issuance actions by clinician in the service layer
limiter = Limiter(key_func=get_remote_address)

ERROR_RESPONSES = {
    403: {"model": ErrorResponse, "description": "Role not allowed"},
    404: {"model": ErrorResponse, "description": "Request or certificate not found"},
    409: {"model": ErrorResponse, "description": "Invariant violation or invalid transition"},
    422: {"model": ErrorResponse, "description": "Validation failed"},
    429: {"model": ErrorResponse, "description": "Rate limited"},
    503: {"model": ErrorResponse, "description": "Generation or storage unavailable"},
}


def _issuance_response(result: IssuanceResult) -> IssuanceResponse:
    return IssuanceResponse(
        certificate=CertificateResponse.model_validate(result.certificate) if result.certificate else None,
        lock_conflict=LockInfoResponse.model_validate(result.lock_conflict) if result.lock_conflict else None,
        superseded_certificate_id=result.superseded_certificate_id,
        email_status=result.email_status,
        pending_retry=result.pending_retry,
    )


# Intake endpoints
@router.get("/intakes/{intake_id}", response_model=IntakeResponse, responses=ERROR_RESPONSES)
def get_intake(
    intake_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.get_intake(intake_id, identity)


@router.post("/intakes/{intake_id}/review", response_model=LockResponse, responses=ERROR_RESPONSES)
def start_review(
    intake_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    """
    Open a request for review and take the review lock.
    Someone else's lock is reported in `conflict`, never refused.
    """
    return workflow.start_review(intake_id, identity)


@router.get("/intakes/{intake_id}/lock", response_model=LockResponse, responses=ERROR_RESPONSES)
def get_lock(
    intake_id: str,
    identity: Identity = Depends(require_role("doctor", "admin")),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    info = workflow.locks.get_lock(intake_id)
    return LockResponse(acquired=False, conflict=LockInfoResponse.model_validate(info) if info else None)


@router.post("/intakes/{intake_id}/lock/extend", responses=ERROR_RESPONSES)
def extend_lock(
    intake_id: str,
    identity: Identity = Depends(require_role("doctor", "admin")),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    """Heartbeat while a clinician is working the case."""
    return {"extended": workflow.locks.extend(intake_id, identity.sub)}


@router.delete("/intakes/{intake_id}/lock", responses=ERROR_RESPONSES)
def release_lock(
    intake_id: str,
    identity: Identity = Depends(require_role("doctor", "admin")),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return {"released": workflow.locks.release(intake_id, identity.sub)}


@router.put("/intakes/{intake_id}/draft", response_model=DraftResponse, responses=ERROR_RESPONSES)
def save_draft(
    intake_id: str,
    body: DraftSave,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    authorize(identity, [ActorRole.DOCTOR, ActorRole.ADMIN])
    return workflow.drafts.save_draft(intake_id, body.draft.model_dump(mode="json"))


# Decision endpoints
@router.post(
    "/intakes/{intake_id}/approve",
    response_model=IssuanceResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def approve(
    intake_id: str,
    body: ApproveRequest = None,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    """
    Approve a request and issue its certificate.

    WILL REFUSE if:
    - There is no draft (DRAFT_MISSING)
    - The request is already approved (ALREADY_APPROVED)
    - The rendered document did not reach storage (DOCUMENT_MISSING / DOCUMENT_UNREACHABLE)
    """
    draft = body.draft.model_dump(mode="json") if body and body.draft else None
    return _issuance_response(workflow.approve(intake_id, identity, draft=draft))


@router.post("/intakes/{intake_id}/regenerate", response_model=IssuanceResponse, responses=ERROR_RESPONSES)
def regenerate(
    intake_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    """Supersede the current certificate with a freshly rendered one."""
    return _issuance_response(workflow.regenerate(intake_id, identity))


@router.post("/intakes/{intake_id}/decline", response_model=IntakeResponse, responses=ERROR_RESPONSES)
def decline(
    intake_id: str,
    body: DeclineRequest,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.decline(intake_id, identity, body.reason)


@router.post("/intakes/{intake_id}/request-info", response_model=IntakeResponse, responses=ERROR_RESPONSES)
def request_info(
    intake_id: str,
    body: InfoRequestCreate,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.request_info(intake_id, identity, body.message)


@router.post("/intakes/{intake_id}/provide-info", response_model=IntakeResponse, responses=ERROR_RESPONSES)
def provide_info(
    intake_id: str,
    body: InfoProvided,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.provide_info(intake_id, identity, body.answers)


@router.post("/intakes/{intake_id}/complete", response_model=IntakeResponse, responses=ERROR_RESPONSES)
def complete(
    intake_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.complete(intake_id, identity)


@router.post("/intakes/{intake_id}/anonymize", response_model=IntakeResponse, responses=ERROR_RESPONSES)
def anonymize(
    intake_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.anonymize(intake_id, identity)


# Attestation / date change endpoints
@router.post(
    "/intakes/{intake_id}/attestations",
    response_model=AttestationResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
def record_attestation(
    intake_id: str,
    body: AttestationCreate,
    request: Request,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    authorize(identity, [ActorRole.PATIENT])
    attestation = AttestationInput(
        typed_name=body.typed_name,
        attestation_text=body.attestation_text,
        attested_at=body.attested_at,
        ip_address=request.client.host if request.client else "",
        user_agent=request.headers.get("user-agent"),
    )
    service = AttestationService(workflow.db, clock=workflow.clock)
    return service.record(intake_id, body.attestation_type, attestation, identity)


@router.post("/intakes/{intake_id}/date-changes", response_model=DateChangeResult, responses=ERROR_RESPONSES)
def request_date_change(
    intake_id: str,
    body: DateChangeCreate,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    """
    Move the certificate start date.
    Up to 24 hours forward applies immediately; further forward needs an admin; backwards never.
    """
    service = DateChangeService(workflow.db, clock=workflow.clock)
    change = service.request_change(intake_id, body.requested_date, identity, reason=body.reason)
    if change is None:
        return DateChangeResult(applied=True)
    return DateChangeResult(applied=False, change_request=DateChangeResponse.model_validate(change))


@router.post("/date-changes/{change_id}/approve", response_model=DateChangeResponse, responses=ERROR_RESPONSES)
def approve_date_change(
    change_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return DateChangeService(workflow.db, clock=workflow.clock).approve(change_id, identity)


@router.post("/date-changes/{change_id}/reject", response_model=DateChangeResponse, responses=ERROR_RESPONSES)
def reject_date_change(
    change_id: str,
    body: DateChangeReject,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return DateChangeService(workflow.db, clock=workflow.clock).reject(change_id, identity, reason=body.reason)


# Certificate endpoints
@router.get("/intakes/{intake_id}/certificates", response_model=List[CertificateResponse], responses=ERROR_RESPONSES)
def list_certificates(
    intake_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.list_certificates(intake_id, identity)


@router.get("/certificates/{certificate_id}/download", response_model=DownloadResponse, responses=ERROR_RESPONSES)
def download_certificate(
    certificate_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    url = workflow.download_url(certificate_id, identity)
    return DownloadResponse(url=url, expires_in=workflow.settings.signed_url_ttl_seconds)


@router.post("/certificates/{certificate_id}/revoke", response_model=CertificateResponse, responses=ERROR_RESPONSES)
def revoke_certificate(
    certificate_id: str,
    body: RevokeRequest,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.revoke(certificate_id, identity, body.reason)


@router.post("/certificates/{certificate_id}/resend-email", response_model=OutboxResponse, responses=ERROR_RESPONSES)
def resend_certificate_email(
    certificate_id: str,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.outbox.resend(certificate_id, identity)


@router.get("/verify/{verification_code}", response_model=VerificationResponse, responses=ERROR_RESPONSES)
@limiter.limit("20/minute")
def verify_certificate(
    request: Request,
    verification_code: str,
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    """Public: anyone holding a certificate can check it is genuine."""
    return workflow.verify(verification_code)


@router.get("/files", include_in_schema=False)
def download_file(
    path: str,
    expires: int,
    signature: str,
    collaborators=Depends(get_collaborators),
):
    """Serves signed links handed out by the local storage backend."""
    storage = collaborators.storage
    if not isinstance(storage, LocalObjectStorage):
        raise HTTPException(status_code=404, detail="Not found")
    if not storage.verify_signature(path, expires, signature):
        raise HTTPException(status_code=403, detail={"code": "INVALID_SIGNATURE", "message": "Link invalid or expired"})
    try:
        content = storage.read(path)
    except (FileNotFoundError, ValueError):
        raise HTTPException(status_code=404, detail="Not found")
    return Response(content=content, media_type="application/pdf")


# Operator endpoints
@router.get("/admin/email-failures", response_model=List[CertificateResponse])
def list_email_failures(
    limit: int = 50,
    identity: Identity = Depends(require_role("admin")),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.outbox.list_failed(limit=limit)


@router.get("/admin/retry-tickets/failed", response_model=List[RetryTicketResponse])
def list_failed_tickets(
    limit: int = 50,
    identity: Identity = Depends(require_role("admin")),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.retry_queue.list_permanently_failed(limit=limit)


@router.post(
    "/admin/retry-tickets/{intake_id}/{document_type}/requeue",
    response_model=RetryTicketResponse,
    responses=ERROR_RESPONSES,
)
def requeue_ticket(
    intake_id: str,
    document_type: DocumentType,
    identity: Identity = Depends(get_current_identity),
    workflow: IssuanceWorkflow = Depends(get_workflow),
):
    return workflow.retry_queue.requeue(intake_id, document_type, identity)
