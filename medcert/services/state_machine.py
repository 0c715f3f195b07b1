"""
Request lifecycle table.

Every status change on an Intake goes through RequestLifecycle; the
issuance workflow is the only caller that moves a request to approved
or superseded.
"""
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from medcert.models.domain import Intake
from medcert.models.enums import RequestStatus
from medcert.services.errors import LifecycleError

ALLOWED_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.DRAFT: frozenset({RequestStatus.PAID}),
    RequestStatus.PAID: frozenset({RequestStatus.IN_REVIEW, RequestStatus.DECLINED}),
    RequestStatus.IN_REVIEW: frozenset({
        RequestStatus.PENDING_INFO,
        RequestStatus.APPROVED,
        RequestStatus.DECLINED,
    }),
    RequestStatus.PENDING_INFO: frozenset({
        RequestStatus.IN_REVIEW,
        RequestStatus.APPROVED,
        RequestStatus.DECLINED,
    }),
    RequestStatus.APPROVED: frozenset({RequestStatus.COMPLETED, RequestStatus.SUPERSEDED}),
    RequestStatus.SUPERSEDED: frozenset({RequestStatus.APPROVED}),
    RequestStatus.DECLINED: frozenset({RequestStatus.COMPLETED}),
    RequestStatus.COMPLETED: frozenset(),
}

# Decisions that cannot be taken on a request nobody has paid for
_PAID_ONLY_TARGETS = frozenset({
    RequestStatus.IN_REVIEW,
    RequestStatus.PENDING_INFO,
    RequestStatus.APPROVED,
    RequestStatus.DECLINED,
})


class RequestLifecycle:
    """
    Enforces the request transition table.

    Invariants:
    - completed is terminal
    - a draft (unpaid) request cannot be reviewed or decided
    - approved only moves back via superseded (regeneration)
    - pending_info returns to the status it was entered from
    """

    def __init__(self, db: Session):
        self.db = db

    @staticmethod
    def can_transition(current: RequestStatus, target: RequestStatus) -> bool:
        return RequestStatus(target) in ALLOWED_TRANSITIONS[RequestStatus(current)]

    @staticmethod
    def validate(current: RequestStatus, target: RequestStatus) -> None:
        current = RequestStatus(current)
        target = RequestStatus(target)
        if current == RequestStatus.COMPLETED:
            raise LifecycleError(
                "Request is completed and cannot change status",
                code=LifecycleError.TERMINAL_STATE,
            )
        if current == RequestStatus.DRAFT and target in _PAID_ONLY_TARGETS:
            raise LifecycleError(
                "Request has not been paid for",
                code=LifecycleError.PAYMENT_REQUIRED,
            )
        if target not in ALLOWED_TRANSITIONS[current]:
            raise LifecycleError(
                f"Cannot move request from {current.value} to {target.value}",
                code=LifecycleError.INVALID_TRANSITION,
            )

    def transition(
        self,
        intake: Intake,
        target: RequestStatus,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> Intake:
        """
        Move intake to target with a conditional update on its current status.

        A concurrent writer that moved the row first makes this raise
        INVALID_TRANSITION instead of silently overwriting.
        """
        current = RequestStatus(intake.status)
        self.validate(current, target)
        self.db.flush()

        values = {"status": target, "updated_at": now or datetime.utcnow()}
        if target == RequestStatus.PENDING_INFO:
            values["previous_status"] = current
        elif current == RequestStatus.PENDING_INFO:
            values["previous_status"] = None

        result = self.db.execute(
            update(Intake)
            .where(Intake.id == intake.id, Intake.status == current)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise LifecycleError(
                f"Request {intake.id} changed status concurrently",
                code=LifecycleError.INVALID_TRANSITION,
            )
        if commit:
            self.db.commit()
        self.db.refresh(intake)
        return intake
