"""Database configuration and session management."""
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """Build an engine for SQLite (local) or PostgreSQL (production)."""
    if database_url.startswith("sqlite"):
        # SQLite-specific config
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False}
        )
    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables. Models must be imported before this runs."""
    # Import models to register them with SQLAlchemy Base
    from medcert.models import audit, domain  # noqa: F401

    Base.metadata.create_all(bind=engine)
