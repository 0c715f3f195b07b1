"""
Soft review locks.

A lock tells other clinicians that someone is looking at a request. It is
advisory: acquiring a lock someone else holds succeeds, takes the lock
over, and reports the previous holder so the UI can warn.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from medcert.models.domain import Intake
from medcert.models.enums import REVIEWABLE_STATUSES
from medcert.services.clock import SystemClock
from medcert.services.errors import NotFound

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TIMEOUT_MINUTES = 10


@dataclass(frozen=True)
class LockInfo:
    clinician_id: str
    clinician_name: Optional[str]
    locked_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    conflict: Optional[LockInfo] = None


class ReviewLockManager:
    """
    Owns the reviewing_clinician_* and review_locked_at columns.

    Invariants:
    - A lock is active iff now - locked_at < timeout
    - Acquire never blocks: another clinician's active lock is reported as a
      conflict and the lock passes to the caller
    - Only the holder can release or extend
    - Release only clears locks on requests still under review
    - Storage errors on acquire fail open (acquired, logged)
    """

    def __init__(self, db: Session, timeout_minutes: int = DEFAULT_LOCK_TIMEOUT_MINUTES, clock=None):
        self.db = db
        self.timeout = timedelta(minutes=timeout_minutes)
        self.clock = clock or SystemClock()

    def _is_active(self, locked_at: Optional[datetime], now: datetime) -> bool:
        return locked_at is not None and now - locked_at < self.timeout

    def _info(self, intake: Intake) -> LockInfo:
        return LockInfo(
            clinician_id=intake.reviewing_clinician_id,
            clinician_name=intake.reviewing_clinician_name,
            locked_at=intake.review_locked_at,
            expires_at=intake.review_locked_at + self.timeout,
        )

    def get_lock(self, intake_id: str) -> Optional[LockInfo]:
        intake = self.db.query(Intake).filter(Intake.id == intake_id).first()
        if not intake:
            raise NotFound(f"Request {intake_id} not found")
        if intake.reviewing_clinician_id and self._is_active(intake.review_locked_at, self.clock.now()):
            return self._info(intake)
        return None

    def acquire(self, intake_id: str, clinician_id: str, clinician_name: Optional[str] = None) -> LockResult:
        try:
            intake = self.db.query(Intake).filter(Intake.id == intake_id).first()
            if not intake:
                raise NotFound(f"Request {intake_id} not found")

            # Compare-and-set against the holder we observed; one re-read if it moved underneath us
            for _ in range(2):
                self.db.refresh(intake)
                now = self.clock.now()
                observed_holder = intake.reviewing_clinician_id
                conflict = None
                if (
                    observed_holder
                    and observed_holder != clinician_id
                    and self._is_active(intake.review_locked_at, now)
                ):
                    conflict = self._info(intake)

                holder_clause = (
                    Intake.reviewing_clinician_id.is_(None)
                    if observed_holder is None
                    else Intake.reviewing_clinician_id == observed_holder
                )
                result = self.db.execute(
                    update(Intake)
                    .where(Intake.id == intake_id, holder_clause)
                    .values(
                        reviewing_clinician_id=clinician_id,
                        reviewing_clinician_name=clinician_name,
                        review_locked_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    self.db.commit()
                    self.db.refresh(intake)
                    if conflict:
                        logger.warning(
                            "review lock on %s taken over by %s from %s",
                            intake_id, clinician_id, conflict.clinician_id,
                        )
                    return LockResult(acquired=True, conflict=conflict)
                self.db.rollback()

            logger.warning("review lock on %s kept moving; proceeding without it", intake_id)
            return LockResult(acquired=True, conflict=None)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("review lock acquire failed for %s; failing open", intake_id)
            return LockResult(acquired=True, conflict=None)

    def release(self, intake_id: str, clinician_id: str) -> bool:
        try:
            result = self.db.execute(
                update(Intake)
                .where(
                    Intake.id == intake_id,
                    Intake.reviewing_clinician_id == clinician_id,
                    Intake.status.in_(REVIEWABLE_STATUSES),
                )
                .values(
                    reviewing_clinician_id=None,
                    reviewing_clinician_name=None,
                    review_locked_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            self._expire(intake_id)
            return result.rowcount == 1
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("review lock release failed for %s", intake_id)
            return False

    def extend(self, intake_id: str, clinician_id: str) -> bool:
        try:
            result = self.db.execute(
                update(Intake)
                .where(Intake.id == intake_id, Intake.reviewing_clinician_id == clinician_id)
                .values(review_locked_at=self.clock.now())
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            self._expire(intake_id)
            return result.rowcount == 1
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("review lock extend failed for %s", intake_id)
            return False

    def _expire(self, intake_id: str) -> None:
        intake = self.db.get(Intake, intake_id)
        if intake is not None:
            self.db.expire(intake, ["reviewing_clinician_id", "reviewing_clinician_name", "review_locked_at"])
