"""Runtime configuration, read once from the environment at startup."""
import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _env_int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_flag(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw not in {"0", "false", "no", "off"}


def normalize_database_url(url: str) -> str:
    # Render/Heroku hand out postgres:// but SQLAlchemy needs postgresql://
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


@dataclass(frozen=True)
class Settings:
    """
    Process-wide settings.

    Built by the application entry point and passed into every component
    that needs it; nothing in the core reads os.environ directly.
    """
    database_url: str = "sqlite:///./medcert.db"

    # Review lock
    review_lock_timeout_minutes: int = 10

    # Retry queue
    retry_initial_delay_seconds: int = 60
    retry_max_delay_seconds: int = 900
    max_retries: int = 3

    # Rate limiting (limits-style rate string)
    issuance_rate_limit: str = "30/minute"
    disable_rate_limits: bool = False

    # Object storage
    object_storage_backend: str = "local"
    object_storage_root: str = "./medcert-storage"
    object_storage_bucket: str = "documents"
    object_storage_endpoint: str = ""
    object_storage_region: str = ""
    storage_signing_secret: str = "dev-storage-secret-change-in-production"
    signed_url_ttl_seconds: int = 300

    # Email
    email_delivery_mode: str = "smtp"
    smtp_server: str = ""
    smtp_port: int = 25
    email_from: str = "noreply@medcert.local"
    app_url: str = "http://localhost:8000"

    # Auth / observability
    jwt_secret_key: str = "dev-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    sentry_dsn: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            database_url=normalize_database_url(env.get("DATABASE_URL", defaults.database_url)),
            review_lock_timeout_minutes=_env_int(
                env, "REVIEW_LOCK_TIMEOUT_MINUTES", defaults.review_lock_timeout_minutes, minimum=1
            ),
            retry_initial_delay_seconds=_env_int(
                env, "RETRY_INITIAL_DELAY_SECONDS", defaults.retry_initial_delay_seconds, minimum=1
            ),
            retry_max_delay_seconds=_env_int(
                env, "RETRY_MAX_DELAY_SECONDS", defaults.retry_max_delay_seconds, minimum=1
            ),
            max_retries=_env_int(env, "MAX_RETRIES", defaults.max_retries, minimum=1),
            issuance_rate_limit=env.get("ISSUANCE_RATE_LIMIT", defaults.issuance_rate_limit).strip()
            or defaults.issuance_rate_limit,
            disable_rate_limits=_env_flag(env, "DISABLE_RATE_LIMITS") or env.get("ENV") == "TEST",
            object_storage_backend=env.get("OBJECT_STORAGE_BACKEND", defaults.object_storage_backend)
            .strip()
            .lower()
            or defaults.object_storage_backend,
            object_storage_root=env.get("OBJECT_STORAGE_ROOT", defaults.object_storage_root),
            object_storage_bucket=env.get("OBJECT_STORAGE_BUCKET", defaults.object_storage_bucket),
            object_storage_endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
            object_storage_region=env.get("OBJECT_STORAGE_REGION", "").strip(),
            storage_signing_secret=env.get("STORAGE_SIGNING_SECRET", defaults.storage_signing_secret),
            signed_url_ttl_seconds=_env_int(
                env, "SIGNED_URL_TTL_SECONDS", defaults.signed_url_ttl_seconds, minimum=1
            ),
            email_delivery_mode=env.get("EMAIL_DELIVERY_MODE", defaults.email_delivery_mode).strip().lower()
            or defaults.email_delivery_mode,
            smtp_server=env.get("SMTP_SERVER", "").strip(),
            smtp_port=_env_int(env, "SMTP_PORT", defaults.smtp_port, minimum=1),
            email_from=env.get("EMAIL_FROM", defaults.email_from),
            app_url=env.get("APP_URL", defaults.app_url).rstrip("/"),
            jwt_secret_key=env.get("JWT_SECRET_KEY", defaults.jwt_secret_key),
            jwt_algorithm=env.get("JWT_ALGORITHM", defaults.jwt_algorithm),
            sentry_dsn=env.get("SENTRY_DSN") or None,
            log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        )
