import os
import sys
from pathlib import Path

from collections.abc import Generator

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("FIELD_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("APPROVER_ROLE", "ADMIN")
os.environ.setdefault("IMPORT_WORKER_POOL_SIZE", "4")
os.environ.setdefault("DOWNSTREAM_TIMEOUT_SECONDS", "10")

from loader_governance.database import Base, get_db  # noqa: E402
from loader_governance.main import app  # noqa: E402


def _create_testing_engine(database_path: Path):
    # Import rows run on worker threads with their own sessions, so tests use a file database.
    return create_engine(
        f"sqlite:///{database_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        future=True,
    )


def _create_test_sessionmaker(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture()
def engine(tmp_path):
    engine = _create_testing_engine(tmp_path / "loader_governance.db")
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return _create_test_sessionmaker(engine)


@pytest.fixture()
def db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def loader_payload() -> dict:
    return {
        "loader_sql": "SELECT ts, value FROM metrics WHERE ts > :since",
        "min_interval_seconds": 60,
        "max_interval_seconds": 300,
        "max_query_period_seconds": 3600,
        "max_parallel_executions": 2,
        "purge_strategy": "FAIL_ON_DUPLICATE",
        "source_timezone_offset_hours": 0,
        "enabled": True,
    }


class PrefixedTestClient(TestClient):
    api_prefix = "/api"

    def request(self, method: str, url: str, *args, **kwargs):  # type: ignore[override]
        if url.startswith("/"):
            url = f"{self.api_prefix}{url}"
        return super().request(method, url, *args, **kwargs)


@pytest.fixture()
def client(session_factory) -> Generator[TestClient, None, None]:
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db

    client = PrefixedTestClient(app)
    try:
        yield client
    finally:
        app.dependency_overrides.pop(get_db, None)


def as_user(username: str, *roles: str) -> dict[str, str]:
    headers = {"X-Username": username}
    if roles:
        headers["X-User-Roles"] = ",".join(roles)
    return headers


@pytest.fixture()
def author_headers() -> dict[str, str]:
    return as_user("alice")


@pytest.fixture()
def approver_headers() -> dict[str, str]:
    return as_user("bob", "ADMIN")
