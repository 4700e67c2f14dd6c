from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from gigaid.core.config import get_settings
from gigaid.core.database import SessionLocal
from gigaid.nba.clock import Clock, utc_now
from gigaid.nba.delivery import DeliveryChannel
from gigaid.nba.guard import shutdown_delivery_executor
from gigaid.nba.models import NextAction
from gigaid.nba.orchestrator import EngineOrchestrator, SessionFactory, SweepReport
from gigaid.nba.registry import ActionRegistry
from gigaid.nba.scheduler import EngineScheduler, Ticker
from gigaid.nba.schemas import NextActionRead, RespondTapRead
from gigaid.nba.store import SqlAlchemyEntityStore


logger = logging.getLogger("gigaid.nba.engine")


class NextBestActionError(Exception):
    pass


class ActionNotFoundError(NextBestActionError):
    def __init__(self, action_id: uuid.UUID) -> None:
        super().__init__(f"next action {action_id} not found")
        self.action_id = action_id


class LeadNotFoundError(NextBestActionError):
    def __init__(self, lead_id: uuid.UUID) -> None:
        super().__init__(f"lead {lead_id} not found")
        self.lead_id = lead_id


@dataclass(slots=True)
class NextActionService:
    clock: Clock = field(default=utc_now)

    def list_for_user(self, session: Session, user_id: uuid.UUID) -> list[NextActionRead]:
        store = SqlAlchemyEntityStore(session)
        return [NextActionRead.model_validate(row) for row in store.get_next_actions(user_id, self.clock())]

    def act(self, session: Session, user_id: uuid.UUID, action_id: uuid.UUID) -> NextActionRead:
        store = SqlAlchemyEntityStore(session)
        self._get_owned(store, user_id, action_id)
        action = ActionRegistry(store).act_on_action(action_id, self.clock())
        return NextActionRead.model_validate(action)

    def dismiss(self, session: Session, user_id: uuid.UUID, action_id: uuid.UUID) -> NextActionRead:
        store = SqlAlchemyEntityStore(session)
        self._get_owned(store, user_id, action_id)
        action = ActionRegistry(store).dismiss_action(action_id, self.clock())
        return NextActionRead.model_validate(action)

    def record_respond_tap(self, session: Session, user_id: uuid.UUID, lead_id: uuid.UUID) -> RespondTapRead:
        store = SqlAlchemyEntityStore(session)
        lead = store.get_lead(lead_id)
        if lead is None or lead.user_id != user_id:
            raise LeadNotFoundError(lead_id)

        updated = store.increment_lead_respond_tap(lead_id, self.clock())
        store.commit()
        logger.info("nba.lead.respond_tap", extra={"user_id": str(user_id), "entity_id": str(lead_id)})
        return RespondTapRead(
            lead_id=lead_id,
            respond_tap_count=updated.respond_tap_count,
            last_respond_tap_at=updated.last_respond_tap_at,
        )

    @staticmethod
    def _get_owned(store: SqlAlchemyEntityStore, user_id: uuid.UUID, action_id: uuid.UUID) -> NextAction:
        action = store.get_next_action(action_id)
        if action is None or action.user_id != user_id:
            raise ActionNotFoundError(action_id)
        return action


next_action_service = NextActionService()


class NextBestActionEngine:
    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        delivery: DeliveryChannel | None = None,
        clock: Clock | None = None,
        ticker: Ticker | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.clock = clock or utc_now
        self.orchestrator = EngineOrchestrator(
            session_factory=self.session_factory,
            delivery=delivery,
            clock=self.clock,
        )
        self.service = NextActionService(clock=self.clock)
        self.scheduler = EngineScheduler(self.orchestrator, ticker)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def get_next_actions_for_user(self, user_id: uuid.UUID) -> list[NextActionRead]:
        with self.session_factory() as session:
            return self.service.list_for_user(session, user_id)

    def act_on_action(self, user_id: uuid.UUID, action_id: uuid.UUID) -> NextActionRead:
        with self.session_factory() as session:
            return self.service.act(session, user_id, action_id)

    def dismiss_action(self, user_id: uuid.UUID, action_id: uuid.UUID) -> NextActionRead:
        with self.session_factory() as session:
            return self.service.dismiss(session, user_id, action_id)

    def record_lead_respond_tap(self, user_id: uuid.UUID, lead_id: uuid.UUID) -> RespondTapRead:
        with self.session_factory() as session:
            return self.service.record_respond_tap(session, user_id, lead_id)

    def start(self, interval_minutes: float | None = None) -> None:
        self.scheduler.start(interval_minutes or get_settings().engine_interval_minutes)

    def stop(self) -> None:
        self.scheduler.stop()
        shutdown_delivery_executor()

    def run_once(self) -> tuple[SweepReport, SweepReport]:
        return self.orchestrator.run_cycle()
