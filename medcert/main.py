"""Main FastAPI application entry point."""
import logging

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from medcert.api.routes import limiter, router
from medcert.config import Settings
from medcert.container import build_collaborators
from medcert.database import create_db_engine, create_session_factory, init_db
from medcert.services.errors import IssuanceError, RateLimited

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def issuance_error_handler(request: Request, exc: IssuanceError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict(), headers=headers)


def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"code": "INTERNAL_ERROR", "message": "Something went wrong"},
    )


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"code": "RATE_LIMITED", "message": f"Too many requests: {exc.detail}"},
    )


def create_app(settings: Settings = None, collaborators=None, session_factory=None) -> FastAPI:
    """
    Build the API.

    Tests pass their own collaborators and session factory; the process
    entry point builds everything from the environment.
    """
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)

    if settings.sentry_dsn:
        sentry_sdk.init(dsn=settings.sentry_dsn, integrations=[FastApiIntegration()])

    if session_factory is None:
        engine = create_db_engine(settings.database_url)
        init_db(engine)
        session_factory = create_session_factory(engine)

    app = FastAPI(
        title="MedCert - Certificate Issuance",
        description="Review, approval, issuance and delivery of medical certificates.",
        version="0.1.0",
    )
    app.state.settings = settings
    app.state.collaborators = collaborators or build_collaborators(settings)
    app.state.session_factory = session_factory

    # Enable CORS for local development
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For MVP - restrict in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    limiter.enabled = not settings.disable_rate_limits
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(IssuanceError, issuance_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    if not settings.disable_rate_limits:
        app.add_middleware(SlowAPIMiddleware)

    # Include API routes
    app.include_router(router, prefix="/api", tags=["MedCert"])

    # Health check
    @app.get("/health")
    def health_check():
        return {"status": "healthy", "service": "MedCert"}

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
