"""Operational alerting. Every alert is logged; Sentry gets it too when configured."""
import logging
from typing import Dict, Optional

import sentry_sdk

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    "critical": logging.CRITICAL,
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.INFO,
}


class Alerts:
    """Logs alerts. Base class and the fallback when no DSN is set."""

    def capture_message(
        self,
        text: str,
        severity: str = "error",
        tags: Optional[Dict[str, str]] = None,
        extra: Optional[dict] = None,
    ) -> None:
        logger.log(
            _LOG_LEVELS.get(severity, logging.ERROR),
            "ALERT %s tags=%s extra=%s",
            text,
            tags or {},
            extra or {},
        )


class SentryAlerts(Alerts):
    """Forwards alerts to Sentry; sentry_sdk.init() must already have run."""

    def capture_message(
        self,
        text: str,
        severity: str = "error",
        tags: Optional[Dict[str, str]] = None,
        extra: Optional[dict] = None,
    ) -> None:
        super().capture_message(text, severity=severity, tags=tags, extra=extra)
        # sentry calls it "fatal"
        level = "fatal" if severity == "critical" else severity
        try:
            sentry_sdk.capture_message(text, level=level, tags=tags or {}, extras=extra or {})
        except Exception:
            logger.exception("failed to forward alert to sentry")
