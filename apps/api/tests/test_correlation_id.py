from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gigaid import audit, events
from gigaid.core.auth import AuthUser, get_current_user
from gigaid.core.config import get_settings
from gigaid.core.database import Base, get_db
from gigaid.gig.models import Invoice, User
from gigaid.main import app
from gigaid.nba.clock import FrozenClock
from gigaid.nba.orchestrator import EngineOrchestrator


NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def session_factory() -> Generator[sessionmaker[Session], None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub=str(uuid.uuid4()), roles=["user"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.post(f"/api/next-actions/{uuid.uuid4()}/act")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.post(f"/api/next-actions/{uuid.uuid4()}/act", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get("/health", headers={"X-Correlation-Id": "bad id with spaces"})
    assert response.status_code == 200
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    assert header_value != "bad id with spaces"
    uuid.UUID(header_value)


def test_engine_audit_and_events_carry_sweep_correlation_id(
    session_factory: sessionmaker[Session],
    db_session: Session,
) -> None:
    user = User(name="Riley", created_at=NOW - timedelta(days=30))
    db_session.add(user)
    db_session.flush()
    db_session.add(
        Invoice(
            user_id=user.id,
            invoice_number="INV-1001",
            client_name="Dana",
            amount=25000,
            status="sent",
            sent_at=NOW - timedelta(days=4),
            created_at=NOW - timedelta(days=5),
        )
    )
    db_session.commit()

    EngineOrchestrator(session_factory=session_factory, clock=FrozenClock(NOW)).run_cycle()

    created = [item for item in events.published_events if item["event_type"] == "nba.next_action.created"]
    assert len(created) == 1
    assert created[0]["correlation_id"].startswith("nba-detection-")
    assert created[0]["meta"] == {"sweep": "detection"}

    executed = [entry for entry in audit.audit_entries if entry["action"] == "nba.next_action.auto_executed"]
    assert len(executed) == 1
    assert executed[0]["correlation_id"].startswith("nba-execution-")
    assert executed[0]["actor_user_id"] == audit.SYSTEM_ACTOR
