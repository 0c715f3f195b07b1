"""Pytest configuration and shared fixtures."""
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from medcert.collaborators.alerts import Alerts
from medcert.collaborators.auth import Identity
from medcert.collaborators.email import EmailSender, SendResult
from medcert.collaborators.renderer import CertificateRenderer
from medcert.collaborators.storage import ObjectStorage
from medcert.config import Settings
from medcert.container import Collaborators
from medcert.database import init_db
from medcert.models.domain import Intake, Patient
from medcert.models.enums import RequestStatus
from medcert.services.issuance import IssuanceWorkflow
from medcert.services.rate_limiter import IssuanceRateLimiter

START = datetime(2026, 3, 2, 9, 0, 0)


class FrozenClock:
    def __init__(self, now: datetime = START):
        self.current = now

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeStorage(ObjectStorage):
    """In-memory storage. drop_uploads simulates a write that never lands."""
    backend_name = "memory"

    def __init__(self):
        self.objects = {}
        self.fail_uploads = False
        self.drop_uploads = False

    def upload(self, path, data, content_type="application/pdf"):
        if self.fail_uploads:
            raise OSError("storage unavailable")
        if not self.drop_uploads:
            self.objects[path] = data
        return path

    def exists(self, path):
        return path in self.objects

    def read(self, path):
        return self.objects[path]

    def signed_url(self, path, ttl_seconds):
        return f"https://files.test/{path}?ttl={ttl_seconds}"


class FakeRenderer(CertificateRenderer):
    def __init__(self):
        self.fail = False
        self.rendered = []

    def render(self, inputs):
        if self.fail:
            raise RuntimeError("renderer crashed")
        self.rendered.append(inputs)
        return f"%PDF-1.4 {inputs.certificate_number}".encode("utf-8")


class FakeEmailSender(EmailSender):
    def __init__(self):
        self.sent = []
        self.fail = False
        self.retryable = True

    def send(self, to_email, subject, body):
        if self.fail:
            return SendResult(success=False, error="mailbox unavailable", retryable=self.retryable)
        self.sent.append((to_email, subject, body))
        return SendResult(success=True, message_id=f"<msg-{len(self.sent)}@test>")


class RecordingAlerts(Alerts):
    def __init__(self):
        self.messages = []

    def capture_message(self, text, severity="error", tags=None, extra=None):
        self.messages.append({"text": text, "severity": severity, "tags": tags or {}, "extra": extra or {}})

    def critical(self):
        return [m for m in self.messages if m["severity"] == "critical"]


@pytest.fixture
def engine():
    """Fresh in-memory database shared by every session in a test."""
    # In-memory SQLite for fast tests
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", disable_rate_limits=True, app_url="https://medcert.test")


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def alerts():
    return RecordingAlerts()


@pytest.fixture
def collaborators(storage, renderer, email_sender, alerts, clock):
    return Collaborators(
        storage=storage,
        renderer=renderer,
        email=email_sender,
        alerts=alerts,
        rate_limiter=IssuanceRateLimiter(enabled=False),
        clock=clock,
    )


@pytest.fixture
def workflow(db_session, collaborators, settings):
    return IssuanceWorkflow(db_session, collaborators, settings)


@pytest.fixture
def patient(db_session):
    patient = Patient(full_name="Jane Citizen", email="jane@example.com", date_of_birth=date(1990, 5, 17))
    db_session.add(patient)
    db_session.commit()
    db_session.refresh(patient)
    return patient


@pytest.fixture
def make_intake(db_session, patient):
    def _make(status=RequestStatus.PAID, **fields):
        intake = Intake(patient_id=patient.id, status=status, symptoms_summary="Fever and cough", **fields)
        db_session.add(intake)
        db_session.commit()
        db_session.refresh(intake)
        return intake

    return _make


@pytest.fixture
def paid_intake(make_intake):
    """A paid request nobody has looked at yet."""
    return make_intake()


def draft_data(certificate_type="work", start=date(2026, 3, 2), days=2, **extra):
    data = {
        "certificate_type": certificate_type,
        "patient_name": "Jane Citizen",
        "date_of_birth": "1990-05-17",
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=days - 1)).isoformat(),
        "symptoms": ["fever", "cough"],
    }
    data.update(extra)
    return data


@pytest.fixture
def with_draft(workflow):
    def _save(intake, **kwargs):
        return workflow.drafts.save_draft(intake.id, draft_data(**kwargs))

    return _save


@pytest.fixture
def doctor():
    return Identity(sub="doc-1", role="doctor", name="Dr Alice Smith")


@pytest.fixture
def other_doctor():
    return Identity(sub="doc-2", role="doctor", name="Dr Bob Jones")


@pytest.fixture
def admin():
    return Identity(sub="admin-1", role="admin", name="Ops Admin")


@pytest.fixture
def patient_identity(patient):
    return Identity(sub=patient.id, role="patient", name=patient.full_name)
