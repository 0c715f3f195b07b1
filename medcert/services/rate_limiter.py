"""
Per-clinician rate limiting for issuance actions.

Fixed windows keyed by (action, clinician). Counters live in a `limits`
storage, in-process by default; point storage_uri at redis:// to share
them between workers.
"""
import logging
import math
import time

from limits import parse
from limits.storage import storage_from_string
from limits.strategies import FixedWindowRateLimiter

from medcert.services.errors import RateLimited

logger = logging.getLogger(__name__)

ISSUANCE_ACTIONS = ("approve", "decline", "regenerate")


class IssuanceRateLimiter:
    """
    Invariants:
    - A rejected attempt changes no workflow state; check() runs before anything else
    - Each action has its own window, so declining does not eat the approval budget
    """

    def __init__(self, rate: str = "30/minute", enabled: bool = True, storage_uri: str = "memory://"):
        self.item = parse(rate)
        self.enabled = enabled
        self.storage = storage_from_string(storage_uri)
        self.limiter = FixedWindowRateLimiter(self.storage)

    def check(self, clinician_id: str, action: str) -> None:
        if not self.enabled:
            return
        if self.limiter.hit(self.item, action, str(clinician_id)):
            return
        stats = self.limiter.get_window_stats(self.item, action, str(clinician_id))
        retry_after = max(1, math.ceil(stats.reset_time - time.time()))
        logger.warning("rate limit hit: clinician=%s action=%s retry_after=%ss", clinician_id, action, retry_after)
        raise RateLimited(
            f"Too many {action} requests; try again in {retry_after} seconds",
            retry_after=retry_after,
        )

    def reset(self) -> None:
        self.storage.reset()
