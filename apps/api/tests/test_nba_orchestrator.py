from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from gigaid import audit, events
from gigaid.context import get_correlation_id
from gigaid.core.config import get_settings
from gigaid.core.database import Base
from gigaid.gig.models import Invoice, Job, Lead, User
from gigaid.nba.clock import FrozenClock
from gigaid.nba.delivery import StubDeliveryChannel
from gigaid.nba.models import AutoExecutionLog, NextAction, StallDetection
from gigaid.nba.orchestrator import EngineOrchestrator
from gigaid.nba.schemas import UserSnapshot
from gigaid.nba.store import SqlAlchemyEntityStore


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("ENGINE_TIMEZONE", "UTC")
    monkeypatch.setenv("ENGINE_MAX_WORKERS", "1")
    monkeypatch.setenv("AUTO_EXECUTION_ENABLED", "true")
    monkeypatch.setenv("ACTION_EXPIRY_HOURS", "24")
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()


def _seed_user(db_session: Session, name: str, last_active_at: datetime | None = None) -> User:
    user = User(name=name, last_active_at=last_active_at, created_at=NOW - timedelta(days=30))
    db_session.add(user)
    db_session.flush()
    return user


def _seed_stalled_book(db_session: Session, user: User) -> dict[str, uuid.UUID]:
    lead = Lead(user_id=user.id, client_name="Dana", status="new", created_at=NOW - timedelta(hours=30))
    job = Job(
        user_id=user.id,
        title="Fix leaking faucet",
        status="scheduled",
        scheduled_date="2026-10-19",
        scheduled_time="9:00 AM",
        price=15000,
    )
    idle_invoice = Invoice(
        user_id=user.id,
        invoice_number="INV-1001",
        client_name="Dana",
        amount=25000,
        status="sent",
        sent_at=NOW - timedelta(days=4),
        created_at=NOW - timedelta(days=5),
    )
    fresh_draft = Invoice(
        user_id=user.id,
        invoice_number="INV-1002",
        client_name="Lee",
        amount=9000,
        status="draft",
        created_at=NOW - timedelta(hours=2),
    )
    paid = Invoice(
        user_id=user.id,
        invoice_number="INV-0999",
        client_name="Sam",
        amount=5000,
        status="paid",
        sent_at=NOW - timedelta(days=20),
        paid_at=NOW - timedelta(days=18),
        created_at=NOW - timedelta(days=21),
    )
    db_session.add_all([lead, job, idle_invoice, fresh_draft, paid])
    db_session.flush()
    return {"lead": lead.id, "job": job.id, "invoice": idle_invoice.id}


def _orchestrator(
    session_factory: sessionmaker[Session],
    clock: FrozenClock,
    delivery: StubDeliveryChannel | None = None,
    store_factory: Callable[[Session], SqlAlchemyEntityStore] | None = None,
) -> EngineOrchestrator:
    return EngineOrchestrator(
        session_factory=session_factory,
        delivery=delivery or StubDeliveryChannel(),
        clock=clock,
        store_factory=store_factory,
    )


def test_full_cycle_detects_recommends_and_executes(
    session_factory: sessionmaker[Session],
    db_session: Session,
) -> None:
    user = _seed_user(db_session, "Riley")
    ids = _seed_stalled_book(db_session, user)
    db_session.commit()

    delivery = StubDeliveryChannel()
    detection, execution = _orchestrator(session_factory, FrozenClock(NOW), delivery).run_cycle()

    assert detection.users_total == 1
    assert detection.users_failed == 0
    assert detection.candidates == 3
    assert detection.detections_created == 3
    assert detection.actions_created == 3
    assert execution.executed == 1
    assert execution.failed == 0

    actions = {action.entity_id: action for action in db_session.scalars(select(NextAction)).all()}
    assert set(actions) == set(ids.values())
    assert actions[ids["lead"]].recommended_action == "send_follow_up_text"
    assert actions[ids["job"]].recommended_action == "suggest_status_update"
    assert actions[ids["invoice"]].auto_executed_at is not None
    assert actions[ids["lead"]].auto_executed_at is None

    assert len(delivery.outbox) == 1
    assert delivery.outbox[0][0].entity_id == ids["invoice"]
    assert len(db_session.scalars(select(AutoExecutionLog)).all()) == 1


def test_repeated_sweeps_stay_idempotent(session_factory: sessionmaker[Session], db_session: Session) -> None:
    user = _seed_user(db_session, "Riley", last_active_at=NOW - timedelta(hours=1))
    _seed_stalled_book(db_session, user)
    db_session.commit()

    clock = FrozenClock(NOW)
    orchestrator = _orchestrator(session_factory, clock)
    orchestrator.run_detection_sweep()
    clock.advance(minutes=15)
    second = orchestrator.run_detection_sweep()

    assert second.candidates == 3
    assert second.detections_created == 0
    assert second.actions_created == 0
    assert len(db_session.scalars(select(NextAction)).all()) == 3
    assert len(db_session.scalars(select(StallDetection)).all()) == 3


def test_cleared_entities_are_resolved(session_factory: sessionmaker[Session], db_session: Session) -> None:
    user = _seed_user(db_session, "Riley", last_active_at=NOW - timedelta(hours=1))
    ids = _seed_stalled_book(db_session, user)
    db_session.commit()

    clock = FrozenClock(NOW)
    orchestrator = _orchestrator(session_factory, clock)
    orchestrator.run_detection_sweep()

    lead = db_session.get(Lead, ids["lead"])
    assert lead is not None
    lead.status = "contacted"
    lead.last_contacted_at = NOW + timedelta(minutes=30)
    db_session.commit()

    clock.advance(hours=1)
    report = orchestrator.run_detection_sweep()

    assert report.detections_resolved == 1
    db_session.expire_all()
    detection = db_session.scalar(select(StallDetection).where(StallDetection.entity_id == ids["lead"]))
    assert detection is not None
    assert detection.resolved_at is not None
    action = db_session.scalar(select(NextAction).where(NextAction.entity_id == ids["lead"]))
    assert action is not None
    assert action.expired_at is not None


def test_expired_actions_are_replaced_while_stall_persists(
    session_factory: sessionmaker[Session],
    db_session: Session,
) -> None:
    user = _seed_user(db_session, "Riley", last_active_at=NOW - timedelta(hours=1))
    _seed_stalled_book(db_session, user)
    db_session.commit()

    clock = FrozenClock(NOW)
    orchestrator = _orchestrator(session_factory, clock)
    orchestrator.run_detection_sweep()

    clock.advance(hours=25)
    report = orchestrator.run_detection_sweep()

    assert report.actions_expired == 3
    assert report.detections_created == 0
    assert report.actions_created == 3
    assert len(db_session.scalars(select(NextAction)).all()) == 6
    assert sum(1 for entry in audit.audit_entries if entry["action"] == "nba.next_action.expired") == 3


def test_one_failing_user_does_not_stop_the_sweep(
    session_factory: sessionmaker[Session],
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="gigaid.nba.engine")
    broken = _seed_user(db_session, "Broken")
    healthy = _seed_user(db_session, "Healthy")
    _seed_stalled_book(db_session, broken)
    _seed_stalled_book(db_session, healthy)
    db_session.commit()
    broken_id = broken.id
    healthy_id = healthy.id

    class FlakyStore(SqlAlchemyEntityStore):
        def get_leads(self, user_id: uuid.UUID):
            if user_id == broken_id:
                raise RuntimeError("lead table unavailable")
            return super().get_leads(user_id)

    report = _orchestrator(session_factory, FrozenClock(NOW), store_factory=FlakyStore).run_detection_sweep()

    assert report.users_total == 2
    assert report.users_failed == 1
    assert report.detections_created == 3
    detections = db_session.scalars(select(StallDetection)).all()
    assert {detection.user_id for detection in detections} == {healthy_id}

    failed = [record for record in caplog.records if record.getMessage() == "nba.user.failed"]
    assert len(failed) == 1
    assert getattr(failed[0], "user_id", None) == str(broken_id)
    assert getattr(failed[0], "error", None) == "lead table unavailable"

    finished = [record for record in caplog.records if record.getMessage() == "nba.sweep.finished"]
    assert len(finished) == 1
    assert getattr(finished[0], "users_failed", None) == 1
    assert getattr(finished[0], "status", None) == "completed"


def test_failing_candidate_is_skipped_and_scan_continues(
    session_factory: sessionmaker[Session],
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="gigaid.nba.engine")
    user = _seed_user(db_session, "Riley", last_active_at=NOW - timedelta(hours=1))
    ids = _seed_stalled_book(db_session, user)
    db_session.commit()
    job_id = ids["job"]

    class LockedJobStore(SqlAlchemyEntityStore):
        def create_next_action(self, detection, recommendation, expires_at, now):
            if detection.entity_id == job_id:
                raise OperationalError("INSERT INTO next_actions", {}, Exception("database is locked"))
            return super().create_next_action(detection, recommendation, expires_at, now)

    report = _orchestrator(session_factory, FrozenClock(NOW), store_factory=LockedJobStore).run_detection_sweep()

    assert report.users_failed == 0
    assert report.candidates == 3
    assert report.candidates_failed == 1
    assert report.actions_created == 2
    assert report.detections_resolved == 0

    actions = db_session.scalars(select(NextAction)).all()
    assert {action.entity_id for action in actions} == {ids["lead"], ids["invoice"]}

    failed = [record for record in caplog.records if record.getMessage() == "nba.candidate.failed"]
    assert len(failed) == 1
    assert getattr(failed[0], "entity_type", None) == "job"
    assert getattr(failed[0], "entity_id", None) == str(job_id)
    assert not [record for record in caplog.records if record.getMessage() == "nba.user.failed"]


def test_sweep_aborts_when_users_cannot_be_listed(
    session_factory: sessionmaker[Session],
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO, logger="gigaid.nba.engine")

    class UnavailableStore(SqlAlchemyEntityStore):
        def list_users(self) -> list[UserSnapshot]:
            raise RuntimeError("database unavailable")

    report = _orchestrator(session_factory, FrozenClock(NOW), store_factory=UnavailableStore).run_detection_sweep()

    assert report.aborted is True
    assert report.users_total == 0
    assert any(record.getMessage() == "nba.sweep.aborted" for record in caplog.records)
    finished = [record for record in caplog.records if record.getMessage() == "nba.sweep.finished"]
    assert getattr(finished[0], "status", None) == "aborted"


def test_sweeps_run_under_their_own_correlation_id(
    session_factory: sessionmaker[Session],
    db_session: Session,
) -> None:
    _seed_user(db_session, "Riley")
    db_session.commit()
    seen: list[str | None] = []

    class RecordingStore(SqlAlchemyEntityStore):
        def list_users(self) -> list[UserSnapshot]:
            seen.append(get_correlation_id())
            return super().list_users()

        def get_leads(self, user_id: uuid.UUID):
            seen.append(get_correlation_id())
            return super().get_leads(user_id)

    _orchestrator(session_factory, FrozenClock(NOW), store_factory=RecordingStore).run_detection_sweep()

    assert len(seen) == 2
    sweep_id, user_id = seen
    assert sweep_id is not None and sweep_id.startswith("nba-detection-")
    assert user_id is not None and user_id.startswith("nba-detection-")
    assert sweep_id != user_id
    assert get_correlation_id() != sweep_id


def test_execution_sweep_skipped_when_disabled(
    session_factory: sessionmaker[Session],
    db_session: Session,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AUTO_EXECUTION_ENABLED", "false")
    get_settings.cache_clear()
    user = _seed_user(db_session, "Riley")
    _seed_stalled_book(db_session, user)
    db_session.commit()

    delivery = StubDeliveryChannel()
    detection, execution = _orchestrator(session_factory, FrozenClock(NOW), delivery).run_cycle()

    assert detection.actions_created == 3
    assert execution.users_total == 0
    assert execution.executed == 0
    assert delivery.outbox == []


class _EmptySession:
    def close(self) -> None:
        return None


class _EmptyStore:
    def __init__(self, users: list[UserSnapshot], broken: set[uuid.UUID]) -> None:
        self.users = users
        self.broken = broken
        self.scanned: list[uuid.UUID] = []

    def list_users(self) -> list[UserSnapshot]:
        return list(self.users)

    def expire_next_actions(self, now: datetime) -> list[NextAction]:
        return []

    def get_leads(self, user_id: uuid.UUID) -> list:
        if user_id in self.broken:
            raise RuntimeError("boom")
        self.scanned.append(user_id)
        return []

    def get_jobs(self, user_id: uuid.UUID) -> list:
        return []

    def get_invoices(self, user_id: uuid.UUID) -> list:
        return []

    def get_open_stalls_for_user(self, user_id: uuid.UUID) -> list:
        return []

    def commit(self) -> None:
        return None

    def rollback(self) -> None:
        return None


def test_parallel_sweep_isolates_failures(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENGINE_MAX_WORKERS", "3")
    get_settings.cache_clear()
    users = [UserSnapshot(id=uuid.uuid4()) for _ in range(5)]
    store = _EmptyStore(users, broken={users[2].id})

    orchestrator = EngineOrchestrator(
        session_factory=_EmptySession,
        clock=FrozenClock(NOW),
        store_factory=lambda session: store,
    )
    report = orchestrator.run_detection_sweep()

    assert report.users_total == 5
    assert report.users_failed == 1
    assert sorted(store.scanned) == sorted(user.id for user in users if user.id != users[2].id)
