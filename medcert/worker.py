"""
Retry worker.

Sweeps due retry tickets on an interval, one session per sweep. Runs
beside the API; several workers may run at once because tickets are
claimed with a conditional update.
"""
import argparse
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

from medcert.config import Settings
from medcert.container import build_collaborators
from medcert.database import create_db_engine, create_session_factory, init_db
from medcert.services.issuance import IssuanceWorkflow

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    sweeps: int = 0
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return {
            "sweeps": self.sweeps,
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "failed": self.failed,
        }


class RetryWorker:
    def __init__(
        self,
        session_factory,
        collaborators,
        settings: Settings,
        batch_size: int = 50,
        poll_interval_seconds: float = 30.0,
    ):
        self.session_factory = session_factory
        self.collaborators = collaborators
        self.settings = settings
        self.batch_size = max(1, int(batch_size))
        self.poll_interval_seconds = max(0.0, float(poll_interval_seconds))

    def run_once(self, stats: Optional[WorkerRunStats] = None) -> WorkerRunStats:
        stats = stats or WorkerRunStats()
        db = self.session_factory()
        try:
            result = IssuanceWorkflow(db, self.collaborators, self.settings).run_retry_sweep(limit=self.batch_size)
        finally:
            db.close()

        stats.sweeps += 1
        stats.claimed += result.claimed
        stats.succeeded += result.succeeded
        stats.failed += result.failed
        for error in result.errors:
            logger.error("retry sweep error: %s", error)
        if result.claimed:
            logger.info(
                "retry sweep: claimed=%s succeeded=%s failed=%s",
                result.claimed, result.succeeded, result.failed,
            )
        return stats

    def run_forever(self, stop_after_iterations: Optional[int] = None) -> dict:
        stats = WorkerRunStats()
        iterations = 0
        while True:
            try:
                self.run_once(stats)
            except Exception:
                # Keep the loop alive; the next sweep picks the tickets up again
                logger.exception("retry sweep crashed")
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            time.sleep(self.poll_interval_seconds)
        return stats.as_dict()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Process due certificate and email retry tickets.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N sweeps (0 means run forever).",
    )
    parser.add_argument("--interval", type=float, default=30.0, help="Seconds between sweeps.")
    parser.add_argument("--batch-size", type=int, default=50, help="Tickets claimed per sweep.")
    args = parser.parse_args(argv)

    from medcert.main import configure_logging

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    engine = create_db_engine(settings.database_url)
    init_db(engine)

    worker = RetryWorker(
        create_session_factory(engine),
        build_collaborators(settings),
        settings,
        batch_size=args.batch_size,
        poll_interval_seconds=args.interval,
    )
    stats = worker.run_forever(stop_after_iterations=args.iterations if args.iterations > 0 else None)
    print(json.dumps({"success": True, "stats": stats}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
