from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from gigaid.core.auth import AuthUser, get_current_user
from gigaid.core.config import get_settings
from gigaid.core.database import Base, get_db
from gigaid.gig.models import Invoice, User
from gigaid.main import app
from gigaid.nba.clock import FrozenClock
from gigaid.nba.orchestrator import EngineOrchestrator
from gigaid.otel import setup_inmemory_otel


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
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("api")
    exporter.clear()
    return exporter


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


def test_request_span_contains_correlation_id(client: TestClient, span_exporter: InMemorySpanExporter) -> None:
    response = client.get("/api/next-actions", headers={"X-Correlation-Id": "otel-corr-1"})
    assert response.status_code == 200

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_sweep_spans_contain_sweep_and_user(
    session_factory: sessionmaker[Session],
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    user = User(name="Riley", created_at=NOW - timedelta(days=30))
    db_session.add(user)
    db_session.flush()
    user_id = str(user.id)
    db_session.add(
        Invoice(
            user_id=user.id,
            invoice_number="INV-3001",
            client_name="Dana",
            amount=18000,
            status="sent",
            sent_at=NOW - timedelta(days=4),
            created_at=NOW - timedelta(days=5),
        )
    )
    db_session.commit()

    EngineOrchestrator(session_factory=session_factory, clock=FrozenClock(NOW)).run_cycle()

    spans = span_exporter.get_finished_spans()
    sweep_spans = [span for span in spans if span.name == "nba.sweep.detection"]
    assert len(sweep_spans) == 1
    assert sweep_spans[0].attributes.get("sweep") == "detection"
    assert str(sweep_spans[0].attributes.get("correlation_id")).startswith("nba-detection-")

    user_spans = [span for span in spans if span.name == "nba.user.execution"]
    assert any(span.attributes.get("user_id") == user_id for span in user_spans)

    delivery_spans = [span for span in spans if span.name == "nba.delivery"]
    assert len(delivery_spans) == 1
    assert delivery_spans[0].attributes.get("action_type") == "send_invoice_reminder"
    assert str(delivery_spans[0].attributes.get("correlation_id")).startswith("nba-execution-")
