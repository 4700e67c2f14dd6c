from __future__ import annotations

import uuid
from datetime import datetime
from typing import Protocol

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from gigaid.gig.models import Invoice, Job, Lead, User
from gigaid.nba.models import AutoExecutionLog, NextAction, StallDetection
from gigaid.nba.schemas import (
    InvoiceSnapshot,
    JobSnapshot,
    LeadSnapshot,
    Recommendation,
    StallCandidate,
    UserSnapshot,
)


def _open_action_clause(now: datetime):
    return and_(
        NextAction.acted_at.is_(None),
        NextAction.dismissed_at.is_(None),
        NextAction.auto_executed_at.is_(None),
        NextAction.expired_at.is_(None),
        NextAction.expires_at > now,
    )


def _stale_action_clause(now: datetime):
    return and_(
        NextAction.acted_at.is_(None),
        NextAction.dismissed_at.is_(None),
        NextAction.auto_executed_at.is_(None),
        NextAction.expired_at.is_(None),
        NextAction.expires_at <= now,
    )


class EntityStore(Protocol):
    def list_users(self) -> list[UserSnapshot]: ...

    def get_user(self, user_id: uuid.UUID) -> UserSnapshot | None: ...

    def get_lead(self, lead_id: uuid.UUID) -> LeadSnapshot | None: ...

    def get_leads(self, user_id: uuid.UUID) -> list[LeadSnapshot]: ...

    def get_jobs(self, user_id: uuid.UUID) -> list[JobSnapshot]: ...

    def get_invoices(self, user_id: uuid.UUID) -> list[InvoiceSnapshot]: ...

    def get_active_stall_for_entity(self, entity_type: str, entity_id: uuid.UUID) -> StallDetection | None: ...

    def get_open_stalls_for_user(self, user_id: uuid.UUID) -> list[StallDetection]: ...

    def get_stall_detection(self, detection_id: uuid.UUID) -> StallDetection | None: ...

    def create_stall_detection(self, candidate: StallCandidate, now: datetime) -> StallDetection: ...

    def update_stall_detection(
        self, detection: StallDetection, candidate: StallCandidate, now: datetime
    ) -> StallDetection: ...

    def resolve_stall_detection(self, detection_id: uuid.UUID, now: datetime) -> StallDetection | None: ...

    def get_next_actions(self, user_id: uuid.UUID, now: datetime) -> list[NextAction]: ...

    def get_next_action(self, action_id: uuid.UUID) -> NextAction | None: ...

    def get_active_next_action_for_entity(
        self, entity_type: str, entity_id: uuid.UUID, now: datetime
    ) -> NextAction | None: ...

    def create_next_action(
        self,
        detection: StallDetection,
        recommendation: Recommendation,
        expires_at: datetime,
        now: datetime,
    ) -> NextAction: ...

    def update_next_action(self, action: NextAction, **changes: object) -> NextAction: ...

    def act_on_next_action(self, action_id: uuid.UUID, now: datetime) -> NextAction | None: ...

    def dismiss_next_action(self, action_id: uuid.UUID, now: datetime) -> NextAction | None: ...

    def expire_next_actions(self, now: datetime) -> list[NextAction]: ...

    def expire_stale_actions_for_entity(
        self, entity_type: str, entity_id: uuid.UUID, now: datetime
    ) -> list[NextAction]: ...

    def get_auto_executable_actions(self, user_id: uuid.UUID, now: datetime) -> list[NextAction]: ...

    def get_last_auto_execution_for_entity(self, entity_type: str, entity_id: uuid.UUID) -> AutoExecutionLog | None: ...

    def create_auto_execution_log(
        self,
        action: NextAction,
        executed_at: datetime,
        success: bool,
        message_content: str | None = None,
        delivery_channel: str | None = None,
        error_message: str | None = None,
    ) -> AutoExecutionLog: ...

    def get_auto_execution_logs(self, user_id: uuid.UUID) -> list[AutoExecutionLog]: ...

    def increment_lead_respond_tap(self, lead_id: uuid.UUID, now: datetime) -> LeadSnapshot | None: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...


class SqlAlchemyEntityStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_users(self) -> list[UserSnapshot]:
        rows = self.session.scalars(select(User).order_by(User.created_at.asc(), User.id.asc())).all()
        return [UserSnapshot.model_validate(row) for row in rows]

    def get_user(self, user_id: uuid.UUID) -> UserSnapshot | None:
        row = self.session.get(User, user_id)
        return UserSnapshot.model_validate(row) if row is not None else None

    def get_lead(self, lead_id: uuid.UUID) -> LeadSnapshot | None:
        row = self.session.get(Lead, lead_id)
        return LeadSnapshot.model_validate(row) if row is not None else None

    def get_leads(self, user_id: uuid.UUID) -> list[LeadSnapshot]:
        rows = self.session.scalars(select(Lead).where(Lead.user_id == user_id)).all()
        return [LeadSnapshot.model_validate(row) for row in rows]

    def get_jobs(self, user_id: uuid.UUID) -> list[JobSnapshot]:
        rows = self.session.scalars(select(Job).where(Job.user_id == user_id)).all()
        return [JobSnapshot.model_validate(row) for row in rows]

    def get_invoices(self, user_id: uuid.UUID) -> list[InvoiceSnapshot]:
        rows = self.session.scalars(select(Invoice).where(Invoice.user_id == user_id)).all()
        return [InvoiceSnapshot.model_validate(row) for row in rows]

    def get_active_stall_for_entity(self, entity_type: str, entity_id: uuid.UUID) -> StallDetection | None:
        return self.session.scalar(
            select(StallDetection).where(
                and_(
                    StallDetection.entity_type == entity_type,
                    StallDetection.entity_id == entity_id,
                    StallDetection.resolved_at.is_(None),
                )
            )
        )

    def get_open_stalls_for_user(self, user_id: uuid.UUID) -> list[StallDetection]:
        return list(
            self.session.scalars(
                select(StallDetection)
                .where(and_(StallDetection.user_id == user_id, StallDetection.resolved_at.is_(None)))
                .order_by(StallDetection.detected_at.asc())
            ).all()
        )

    def get_stall_detection(self, detection_id: uuid.UUID) -> StallDetection | None:
        return self.session.get(StallDetection, detection_id)

    def create_stall_detection(self, candidate: StallCandidate, now: datetime) -> StallDetection:
        detection = StallDetection(
            user_id=candidate.user_id,
            entity_type=candidate.entity_type.value,
            entity_id=candidate.entity_id,
            stall_type=candidate.stall_type.value,
            money_at_risk=candidate.money_at_risk,
            confidence=candidate.confidence,
            detected_at=now,
            created_at=now,
            updated_at=now,
        )
        self.session.add(detection)
        self.session.flush()
        return detection

    def update_stall_detection(
        self, detection: StallDetection, candidate: StallCandidate, now: datetime
    ) -> StallDetection:
        detection.stall_type = candidate.stall_type.value
        detection.money_at_risk = candidate.money_at_risk
        detection.confidence = candidate.confidence
        detection.updated_at = now
        self.session.add(detection)
        self.session.flush()
        return detection

    def resolve_stall_detection(self, detection_id: uuid.UUID, now: datetime) -> StallDetection | None:
        detection = self.session.get(StallDetection, detection_id)
        if detection is None:
            return None
        if detection.resolved_at is None:
            detection.resolved_at = now
            detection.updated_at = now
            self.session.add(detection)
            self.session.flush()
        return detection

    def get_next_actions(self, user_id: uuid.UUID, now: datetime) -> list[NextAction]:
        return list(
            self.session.scalars(
                select(NextAction)
                .where(and_(NextAction.user_id == user_id, _open_action_clause(now)))
                .order_by(NextAction.created_at.desc(), NextAction.id.asc())
            ).all()
        )

    def get_next_action(self, action_id: uuid.UUID) -> NextAction | None:
        return self.session.get(NextAction, action_id)

    def get_active_next_action_for_entity(
        self, entity_type: str, entity_id: uuid.UUID, now: datetime
    ) -> NextAction | None:
        return self.session.scalar(
            select(NextAction).where(
                and_(
                    NextAction.entity_type == entity_type,
                    NextAction.entity_id == entity_id,
                    _open_action_clause(now),
                )
            )
        )

    def create_next_action(
        self,
        detection: StallDetection,
        recommendation: Recommendation,
        expires_at: datetime,
        now: datetime,
    ) -> NextAction:
        action = NextAction(
            user_id=detection.user_id,
            stall_detection_id=detection.id,
            entity_type=detection.entity_type,
            entity_id=detection.entity_id,
            recommended_action=recommendation.recommended_action.value,
            reason=recommendation.reason,
            auto_executable=recommendation.auto_executable,
            expires_at=expires_at,
            created_at=now,
        )
        self.session.add(action)
        self.session.flush()
        return action

    def update_next_action(self, action: NextAction, **changes: object) -> NextAction:
        for field_name, value in changes.items():
            if not hasattr(NextAction, field_name):
                raise AttributeError(f"NextAction has no field {field_name!r}")
            setattr(action, field_name, value)
        self.session.add(action)
        self.session.flush()
        return action

    def act_on_next_action(self, action_id: uuid.UUID, now: datetime) -> NextAction | None:
        action = self.session.get(NextAction, action_id)
        if action is None or action.is_terminated:
            return action
        return self.update_next_action(action, acted_at=now)

    def dismiss_next_action(self, action_id: uuid.UUID, now: datetime) -> NextAction | None:
        action = self.session.get(NextAction, action_id)
        if action is None or action.is_terminated:
            return action
        return self.update_next_action(action, dismissed_at=now)

    def _flag_expired(self, rows: list[NextAction], now: datetime) -> list[NextAction]:
        for action in rows:
            action.expired_at = now
            self.session.add(action)
        if rows:
            self.session.flush()
        return rows

    def expire_next_actions(self, now: datetime) -> list[NextAction]:
        rows = list(self.session.scalars(select(NextAction).where(_stale_action_clause(now))).all())
        return self._flag_expired(rows, now)

    def expire_stale_actions_for_entity(
        self, entity_type: str, entity_id: uuid.UUID, now: datetime
    ) -> list[NextAction]:
        rows = list(
            self.session.scalars(
                select(NextAction).where(
                    and_(
                        NextAction.entity_type == entity_type,
                        NextAction.entity_id == entity_id,
                        _stale_action_clause(now),
                    )
                )
            ).all()
        )
        return self._flag_expired(rows, now)

    def get_auto_executable_actions(self, user_id: uuid.UUID, now: datetime) -> list[NextAction]:
        return list(
            self.session.scalars(
                select(NextAction)
                .where(
                    and_(
                        NextAction.user_id == user_id,
                        NextAction.auto_executable.is_(True),
                        _open_action_clause(now),
                    )
                )
                .order_by(NextAction.created_at.asc(), NextAction.id.asc())
            ).all()
        )

    def get_last_auto_execution_for_entity(self, entity_type: str, entity_id: uuid.UUID) -> AutoExecutionLog | None:
        return self.session.scalar(
            select(AutoExecutionLog)
            .where(and_(AutoExecutionLog.entity_type == entity_type, AutoExecutionLog.entity_id == entity_id))
            .order_by(AutoExecutionLog.executed_at.desc())
            .limit(1)
        )

    def create_auto_execution_log(
        self,
        action: NextAction,
        executed_at: datetime,
        success: bool,
        message_content: str | None = None,
        delivery_channel: str | None = None,
        error_message: str | None = None,
    ) -> AutoExecutionLog:
        entry = AutoExecutionLog(
            user_id=action.user_id,
            next_action_id=action.id,
            entity_type=action.entity_type,
            entity_id=action.entity_id,
            action_type=action.recommended_action,
            message_content=message_content,
            delivery_channel=delivery_channel,
            executed_at=executed_at,
            success=success,
            error_message=error_message[:500] if error_message else None,
        )
        self.session.add(entry)
        self.session.flush()
        return entry

    def get_auto_execution_logs(self, user_id: uuid.UUID) -> list[AutoExecutionLog]:
        return list(
            self.session.scalars(
                select(AutoExecutionLog)
                .where(AutoExecutionLog.user_id == user_id)
                .order_by(AutoExecutionLog.executed_at.desc())
            ).all()
        )

    def increment_lead_respond_tap(self, lead_id: uuid.UUID, now: datetime) -> LeadSnapshot | None:
        lead = self.session.get(Lead, lead_id)
        if lead is None:
            return None
        lead.respond_tap_count = (lead.respond_tap_count or 0) + 1
        lead.last_respond_tap_at = now
        self.session.add(lead)
        self.session.flush()
        return LeadSnapshot.model_validate(lead)

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()
