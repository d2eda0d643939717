"""Database engine, session factory and schema bootstrap."""

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from app.core.config import settings

# SQLite connections are shared with background job threads
_connect_args = (
    {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
)

engine = create_engine(settings.database_url, echo=False, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Declarative base for the session table."""

    pass


def init_db(bind=None) -> None:
    """Create the reconciliation tables if they do not exist yet."""
    # Importing the models registers them on Base.metadata
    from app.models import SessionRecord  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)


def get_db():
    """Dependency that provides a database session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
