"""
Certificate drafts.

Draft content is a tagged union on certificate_type, validated before it
is stored and again when it is read back for rendering, so the renderer
never sees a carer certificate without the person being cared for.

Drafts are editable only while the request is under review, and once a
start date is stored it moves only through DateChangeService.
"""
from datetime import date
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator
from sqlalchemy.orm import Session

from medcert.models.domain import DocumentDraft, Intake
from medcert.models.enums import REVIEWABLE_STATUSES, CertificateSubtype, DocumentType
from medcert.services.errors import DateChangeRequired, DraftInvalid, LifecycleError, NotFound

MAX_CERTIFICATE_DAYS = 14


class CarerRelationship(str, Enum):
    PARENT = "parent"
    CHILD = "child"
    PARTNER = "partner"
    SIBLING = "sibling"
    GRANDPARENT = "grandparent"
    OTHER = "other"


class _DraftBase(BaseModel):
    patient_name: str = Field(..., min_length=1, max_length=200)
    date_of_birth: Optional[date] = None
    start_date: date
    end_date: date
    symptoms: List[str] = Field(default_factory=list)
    clinical_notes: Optional[str] = Field(None, max_length=2000)

    @model_validator(mode="after")
    def _check_period(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        if (self.end_date - self.start_date).days + 1 > MAX_CERTIFICATE_DAYS:
            raise ValueError(f"certificate period cannot exceed {MAX_CERTIFICATE_DAYS} days")
        return self


class WorkDraft(_DraftBase):
    certificate_type: Literal["work"] = "work"


class StudyDraft(_DraftBase):
    certificate_type: Literal["study"] = "study"
    institution_name: Optional[str] = Field(None, max_length=200)


class CarerDraft(_DraftBase):
    certificate_type: Literal["carer"] = "carer"
    carer_person_name: str = Field(..., min_length=1, max_length=200)
    carer_relationship: CarerRelationship


DraftPayload = Annotated[Union[WorkDraft, StudyDraft, CarerDraft], Field(discriminator="certificate_type")]

_draft_adapter = TypeAdapter(DraftPayload)


def parse_draft(data: dict) -> Union[WorkDraft, StudyDraft, CarerDraft]:
    try:
        return _draft_adapter.validate_python(data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise DraftInvalid("Draft content is invalid", errors=errors)


class DraftService:
    def __init__(self, db: Session):
        self.db = db

    def get_draft(self, intake_id: str, document_type: DocumentType = DocumentType.MED_CERT) -> Optional[DocumentDraft]:
        return (
            self.db.query(DocumentDraft)
            .filter(DocumentDraft.intake_id == intake_id, DocumentDraft.document_type == document_type)
            .first()
        )

    def check_editable(self, intake: Intake) -> None:
        if intake.status not in REVIEWABLE_STATUSES:
            raise LifecycleError(
                f"Draft of request {intake.id} cannot be edited (request is {intake.status.value})",
                code=LifecycleError.INVALID_TRANSITION,
            )

    def save_draft(self, intake_id: str, data: dict, date_change: bool = False) -> DocumentDraft:
        """
        Create or replace the med_cert draft for a request.

        date_change is set only by DateChangeService, after the move has
        been allowed or approved.
        """
        intake = self.db.query(Intake).filter(Intake.id == intake_id).first()
        if not intake:
            raise NotFound(f"Request {intake_id} not found")
        self.check_editable(intake)

        payload = parse_draft(data)
        draft = self.get_draft(intake_id)
        if draft is not None and not date_change:
            stored = parse_draft(draft.data)
            if stored.start_date != payload.start_date:
                raise DateChangeRequired(
                    f"Start date of request {intake_id} is {stored.start_date.isoformat()}; "
                    "moving it needs a date change request"
                )
        if draft is None:
            draft = DocumentDraft(intake_id=intake_id, document_type=DocumentType.MED_CERT)
            self.db.add(draft)
        draft.subtype = CertificateSubtype(payload.certificate_type)
        draft.data = payload.model_dump(mode="json")
        self.db.commit()
        self.db.refresh(draft)
        return draft
