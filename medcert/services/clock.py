"""Time source for the services. Naive UTC, like every timestamp column."""
from datetime import datetime


class SystemClock:
    def now(self) -> datetime:
        return datetime.utcnow()
