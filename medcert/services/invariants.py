"""
Approval invariant checker.

Four checks stand between a doctor's decision and an issued certificate:

1. a draft exists for the request            -> DraftMissing
2. the request is not already approved       -> AlreadyApproved
3. a generated document has been recorded    -> DocumentMissing
4. that document is actually in storage      -> DocumentUnreachable

A failure here means the data is wrong, not the user, so every violation
is escalated as a critical alert before it is raised. The checker only
reads; it is safe to run any number of times.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from medcert.models.domain import DocumentDraft, GeneratedDocument, Intake
from medcert.models.enums import DocumentType, RequestStatus
from medcert.services.errors import (
    AlreadyApproved,
    DocumentMissing,
    DocumentUnreachable,
    DraftMissing,
    InvariantViolation,
    NotFound,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvariantCheckResult:
    ok: bool
    document_url: Optional[str] = None
    document_id: Optional[str] = None


class ApprovalInvariantChecker:
    def __init__(self, db: Session, storage, alerts):
        self.db = db
        self.storage = storage
        self.alerts = alerts

    def _get_intake(self, intake_id: str) -> Intake:
        intake = self.db.query(Intake).filter(Intake.id == intake_id).first()
        if not intake:
            raise NotFound(f"Request {intake_id} not found")
        return intake

    def _violation(self, error: InvariantViolation, intake_id: str) -> InvariantViolation:
        self.alerts.capture_message(
            f"Approval invariant violated: {error.invariant}",
            severity="critical",
            tags={"invariant": error.invariant, "request_id": str(intake_id)},
            extra={"code": error.code},
        )
        return error

    def check_preconditions(self, intake_id: str, document_type: DocumentType = DocumentType.MED_CERT) -> Intake:
        """Checks 1 and 2. Runs before anything is rendered."""
        intake = self._get_intake(intake_id)

        draft = (
            self.db.query(DocumentDraft)
            .filter(DocumentDraft.intake_id == intake_id, DocumentDraft.document_type == document_type)
            .first()
        )
        if not draft:
            raise self._violation(DraftMissing(f"Request {intake_id} has no {document_type.value} draft"), intake_id)

        self.check_not_approved(intake)
        return intake

    def check_not_approved(self, intake: Intake) -> None:
        if intake.status == RequestStatus.APPROVED:
            raise self._violation(AlreadyApproved(f"Request {intake.id} is already approved"), intake.id)

    def check_document(
        self,
        intake_id: str,
        document_type: DocumentType = DocumentType.MED_CERT,
        document_id: Optional[str] = None,
    ) -> InvariantCheckResult:
        """Checks 3 and 4, against document_id or else the most recently generated document."""
        query = self.db.query(GeneratedDocument).filter(
            GeneratedDocument.intake_id == intake_id, GeneratedDocument.document_type == document_type
        )
        if document_id is not None:
            query = query.filter(GeneratedDocument.id == document_id)
        document = query.order_by(GeneratedDocument.created_at.desc()).first()
        if not document:
            raise self._violation(
                DocumentMissing(f"Request {intake_id} has no generated {document_type.value} document"), intake_id
            )

        try:
            reachable = self.storage.exists(document.storage_path)
        except Exception as exc:
            logger.warning("storage probe for %s failed: %s", document.id, exc)
            reachable = False
        if not reachable:
            raise self._violation(
                DocumentUnreachable(f"Document {document.id} is not reachable in storage"), intake_id
            )

        return InvariantCheckResult(ok=True, document_url=document.storage_path, document_id=document.id)

    def check_approval_invariants(
        self, intake_id: str, document_type: DocumentType = DocumentType.MED_CERT
    ) -> InvariantCheckResult:
        """All four checks, in order."""
        self.check_preconditions(intake_id, document_type)
        return self.check_document(intake_id, document_type)
