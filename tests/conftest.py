"""Shared test fixtures for the bank reconciliation tests.

Uses a SQLite database so tests run without an external server.
"""

from __future__ import annotations

import os

# Override DATABASE_URL before importing anything from app. The module-level
# ``engine`` in app.core.database binds to it at import time.
os.environ["DATABASE_URL"] = "sqlite:///./test.db"

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from fastapi.testclient import TestClient

from app.core.database import Base, get_db, init_db
from app.main import app
from app.services.reconciliation import batch
from app.services.reconciliation.engine import registry

TEST_DATABASE_URL = "sqlite:///./test.db"

engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
)


@event.listens_for(engine, "connect")
def _set_sqlite_pragma(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Learned rules and background jobs are process-wide; isolate tests."""
    registry.reset()
    batch._jobs.clear()
    batch._cancel_flags.clear()
    yield
    registry.reset()
    batch._jobs.clear()
    batch._cancel_flags.clear()


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database for each test."""
    init_db(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def client(db_session):
    """FastAPI test client with overridden DB dependency."""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
