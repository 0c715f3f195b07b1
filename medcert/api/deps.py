"""Request-scoped dependencies. Everything long-lived hangs off app.state."""
from fastapi import Depends, Request
from sqlalchemy.orm import Session

from medcert.config import Settings
from medcert.services.issuance import IssuanceWorkflow


def get_db(request: Request):
    """Dependency for getting database sessions."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_collaborators(request: Request):
    return request.app.state.collaborators


def get_workflow(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    collaborators=Depends(get_collaborators),
) -> IssuanceWorkflow:
    return IssuanceWorkflow(db, collaborators, settings)
