from __future__ import annotations

import logging
import uuid
from collections.abc import Collection
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError

from gigaid import audit, events
from gigaid.core.config import get_settings
from gigaid.metrics import observe_action_created, observe_actions_expired, observe_stall_detected
from gigaid.nba.locks import EntityLockRegistry, entity_locks
from gigaid.nba.models import NextAction, StallDetection
from gigaid.nba.recommender import recommend
from gigaid.nba.schemas import EntityType, StallCandidate, as_utc
from gigaid.nba.store import EntityStore


logger = logging.getLogger("gigaid.nba.engine")

EntityKey = tuple[EntityType, uuid.UUID]


def _action_snapshot(action: NextAction) -> dict[str, Any]:
    return {
        "recommended_action": action.recommended_action,
        "acted_at": _iso(action.acted_at),
        "dismissed_at": _iso(action.dismissed_at),
        "auto_executed_at": _iso(action.auto_executed_at),
        "expired_at": _iso(action.expired_at),
    }


def _iso(value: datetime | None) -> str | None:
    normalized = as_utc(value)
    return normalized.isoformat() if normalized is not None else None


def _action_payload(action: NextAction) -> dict[str, Any]:
    return {
        "action_id": str(action.id),
        "stall_detection_id": str(action.stall_detection_id),
        "entity_type": action.entity_type,
        "entity_id": str(action.entity_id),
        "recommended_action": action.recommended_action,
        "auto_executable": action.auto_executable,
    }


@dataclass(slots=True)
class ProcessOutcome:
    detection: StallDetection
    action: NextAction | None
    detection_created: bool
    action_created: bool


class StallRegistry:
    def __init__(self, store: EntityStore, locks: EntityLockRegistry | None = None) -> None:
        self.store = store
        self.locks = locks or entity_locks

    def upsert(self, candidate: StallCandidate, now: datetime) -> tuple[StallDetection, bool]:
        entity_type = candidate.entity_type.value
        existing = self.store.get_active_stall_for_entity(entity_type, candidate.entity_id)
        if existing is not None:
            detection = self.store.update_stall_detection(existing, candidate, now)
            self.store.commit()
            return detection, False

        try:
            detection = self.store.create_stall_detection(candidate, now)
            self.store.commit()
        except IntegrityError:
            self.store.rollback()
            logger.debug(
                "nba.stall_detection.race",
                extra={"entity_type": entity_type, "entity_id": str(candidate.entity_id)},
            )
            winner = self.store.get_active_stall_for_entity(entity_type, candidate.entity_id)
            if winner is None:
                raise
            detection = self.store.update_stall_detection(winner, candidate, now)
            self.store.commit()
            return detection, False

        observe_stall_detected(entity_type, candidate.stall_type.value)
        logger.info(
            "nba.stall_detection.created",
            extra={
                "user_id": str(candidate.user_id),
                "entity_type": entity_type,
                "entity_id": str(candidate.entity_id),
                "stall_type": candidate.stall_type.value,
            },
        )
        return detection, True

    def resolve_cleared(self, user_id: uuid.UUID, stalled_keys: Collection[EntityKey], now: datetime) -> int:
        still_stalled = {(EntityType(entity_type).value, entity_id) for entity_type, entity_id in stalled_keys}
        resolved = 0
        for detection in self.store.get_open_stalls_for_user(user_id):
            key = (detection.entity_type, detection.entity_id)
            if key in still_stalled:
                continue
            with self.locks.hold(detection.entity_type, detection.entity_id):
                active = self.store.get_active_next_action_for_entity(detection.entity_type, detection.entity_id, now)
                if active is not None:
                    before = _action_snapshot(active)
                    self.store.update_next_action(active, expired_at=now)
                    audit.record(
                        actor_user_id=audit.SYSTEM_ACTOR,
                        entity_type="nba.next_action",
                        entity_id=str(active.id),
                        action="nba.next_action.cleared",
                        before=before,
                        after=_action_snapshot(active),
                    )
                self.store.resolve_stall_detection(detection.id, now)
                self.store.commit()
            resolved += 1
            logger.info(
                "nba.stall_detection.resolved",
                extra={
                    "user_id": str(user_id),
                    "entity_type": detection.entity_type,
                    "entity_id": str(detection.entity_id),
                    "reason": "cleared",
                },
            )
        return resolved


class ActionRegistry:
    def __init__(
        self,
        store: EntityStore,
        stalls: StallRegistry | None = None,
        locks: EntityLockRegistry | None = None,
    ) -> None:
        self.store = store
        self.locks = locks or entity_locks
        self.stalls = stalls or StallRegistry(store, self.locks)

    def process_stall_candidate(self, candidate: StallCandidate, now: datetime) -> ProcessOutcome:
        with self.locks.hold(candidate.entity_type.value, candidate.entity_id):
            return self._process_locked(candidate, now)

    def _process_locked(self, candidate: StallCandidate, now: datetime) -> ProcessOutcome:
        detection, detection_created = self.stalls.upsert(candidate, now)
        entity_type = candidate.entity_type.value

        active = self.store.get_active_next_action_for_entity(entity_type, candidate.entity_id, now)
        if active is not None:
            return ProcessOutcome(detection, active, detection_created, False)

        recommendation = recommend(candidate)
        if recommendation is None:
            return ProcessOutcome(detection, None, detection_created, False)

        settings = get_settings()
        try:
            expired = self.store.expire_stale_actions_for_entity(entity_type, candidate.entity_id, now)
            action = self.store.create_next_action(
                detection,
                recommendation,
                expires_at=now + timedelta(hours=settings.action_expiry_hours),
                now=now,
            )
            self.store.commit()
        except IntegrityError:
            self.store.rollback()
            logger.debug(
                "nba.next_action.race",
                extra={"entity_type": entity_type, "entity_id": str(candidate.entity_id)},
            )
            return ProcessOutcome(detection, None, detection_created, False)

        if expired:
            observe_actions_expired(len(expired))
        observe_action_created(action.recommended_action)
        logger.info(
            "nba.next_action.created",
            extra={
                "user_id": str(action.user_id),
                "entity_type": action.entity_type,
                "entity_id": str(action.entity_id),
                "action_id": str(action.id),
                "action_type": action.recommended_action,
            },
        )
        events.publish("nba.next_action.created", str(action.user_id), _action_payload(action))
        return ProcessOutcome(detection, action, detection_created, True)

    def act_on_action(self, action_id: uuid.UUID, now: datetime) -> NextAction | None:
        action = self.store.get_next_action(action_id)
        if action is None:
            return None

        with self.locks.hold(action.entity_type, action.entity_id):
            if action.is_terminated:
                return action
            before = _action_snapshot(action)
            self.store.act_on_next_action(action.id, now)
            self.store.resolve_stall_detection(action.stall_detection_id, now)
            self.store.commit()

        audit.record(
            actor_user_id=str(action.user_id),
            entity_type="nba.next_action",
            entity_id=str(action.id),
            action="nba.next_action.acted",
            before=before,
            after=_action_snapshot(action),
        )
        events.publish("nba.next_action.acted", str(action.user_id), _action_payload(action))
        return action

    def dismiss_action(self, action_id: uuid.UUID, now: datetime) -> NextAction | None:
        action = self.store.get_next_action(action_id)
        if action is None:
            return None

        with self.locks.hold(action.entity_type, action.entity_id):
            if action.is_terminated:
                return action
            before = _action_snapshot(action)
            self.store.dismiss_next_action(action.id, now)
            self.store.commit()

        audit.record(
            actor_user_id=str(action.user_id),
            entity_type="nba.next_action",
            entity_id=str(action.id),
            action="nba.next_action.dismissed",
            before=before,
            after=_action_snapshot(action),
        )
        events.publish("nba.next_action.dismissed", str(action.user_id), _action_payload(action))
        return action

    def expire_actions(self, now: datetime) -> int:
        expired = self.store.expire_next_actions(now)
        self.store.commit()

        for action in expired:
            audit.record(
                actor_user_id=audit.SYSTEM_ACTOR,
                entity_type="nba.next_action",
                entity_id=str(action.id),
                action="nba.next_action.expired",
                before=None,
                after=_action_snapshot(action),
            )
        observe_actions_expired(len(expired))
        if expired:
            logger.info("nba.next_action.expired", extra={"count": len(expired)})
        return len(expired)
