"""
Collaborator wiring.

Built once by the entry point (API startup or the worker) and handed to
services per request. Tests build their own with fakes.
"""
import logging
from dataclasses import dataclass, field

from medcert.collaborators.alerts import Alerts, SentryAlerts
from medcert.collaborators.email import SmtpEmailSender
from medcert.collaborators.renderer import ReportLabCertificateRenderer
from medcert.collaborators.storage import ObjectStorageConfig, create_object_storage
from medcert.config import Settings
from medcert.services.clock import SystemClock
from medcert.services.rate_limiter import IssuanceRateLimiter

logger = logging.getLogger(__name__)


@dataclass
class Collaborators:
    storage: object
    renderer: object
    email: object
    alerts: object
    rate_limiter: IssuanceRateLimiter
    clock: object = field(default_factory=SystemClock)


def build_collaborators(settings: Settings) -> Collaborators:
    storage = create_object_storage(ObjectStorageConfig.from_settings(settings))
    alerts = SentryAlerts() if settings.sentry_dsn else Alerts()
    if settings.disable_rate_limits:
        logger.warning("issuance rate limits are disabled")
    return Collaborators(
        storage=storage,
        renderer=ReportLabCertificateRenderer(),
        email=SmtpEmailSender(settings.smtp_server, settings.smtp_port, settings.email_from),
        alerts=alerts,
        rate_limiter=IssuanceRateLimiter(
            settings.issuance_rate_limit,
            enabled=not settings.disable_rate_limits,
        ),
    )
