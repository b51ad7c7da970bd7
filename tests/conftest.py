import os
import tempfile

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("FINTECH_DATA_DIR", tempfile.mkdtemp(prefix="fintech-tests-"))
os.environ.setdefault("FINTECH_SCHEDULER_ENABLED", "0")

from database import Base  # noqa: E402


@pytest.fixture
def client():
    """API client bound to a private in-memory database."""
    from fastapi.testclient import TestClient

    from main import app, get_db

    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        engine.dispose()
