from __future__ import annotations

import contextvars
import logging
import uuid
from concurrent.futures import Executor, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta

from opentelemetry import trace

from gigaid import audit, events
from gigaid.core.config import get_settings
from gigaid.metrics import observe_auto_execution, observe_guardrail_block
from gigaid.nba.delivery import DeliveryChannel, DeliveryRequest, DeliveryResult
from gigaid.nba.locks import EntityLockRegistry, entity_locks
from gigaid.nba.models import NextAction
from gigaid.nba.schemas import ActionType, EntityType, UserSnapshot, as_utc
from gigaid.nba.store import EntityStore
from gigaid.otel import engine_span


logger = logging.getLogger("gigaid.nba.engine")
tracer = trace.get_tracer("gigaid.nba.guard")

_delivery_executor: ThreadPoolExecutor | None = None


def _default_executor() -> ThreadPoolExecutor:
    global _delivery_executor

    if _delivery_executor is None:
        _delivery_executor = ThreadPoolExecutor(
            max_workers=get_settings().delivery_max_workers,
            thread_name_prefix="nba-delivery",
        )
    return _delivery_executor


def shutdown_delivery_executor() -> None:
    global _delivery_executor

    if _delivery_executor is not None:
        _delivery_executor.shutdown(wait=False, cancel_futures=True)
        _delivery_executor = None


@dataclass(slots=True)
class GuardReport:
    user_id: uuid.UUID
    skipped_reason: str | None = None
    executed: int = 0
    failed: int = 0
    throttled: int = 0
    timed_out: int = 0


class AutoExecutionGuard:
    def __init__(
        self,
        store: EntityStore,
        delivery: DeliveryChannel,
        locks: EntityLockRegistry | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.store = store
        self.delivery = delivery
        self.locks = locks or entity_locks
        self.executor = executor

    def run_for_user(self, user: UserSnapshot, now: datetime) -> GuardReport:
        settings = get_settings()
        report = GuardReport(user_id=user.id)

        if not settings.auto_execution_enabled:
            report.skipped_reason = "DISABLED"
            return report

        last_active_at = as_utc(user.last_active_at)
        if last_active_at is not None and now - last_active_at < timedelta(hours=settings.user_inactivity_hours):
            report.skipped_reason = "USER_ACTIVE"
            self._blocked("USER_ACTIVE", user_id=user.id)
            return report

        for action in self.store.get_auto_executable_actions(user.id, now):
            with self.locks.hold(action.entity_type, action.entity_id):
                self._execute(action, now, report)
        return report

    def _blocked(self, reason: str, user_id: uuid.UUID, action: NextAction | None = None) -> None:
        extra = {"reason": reason, "user_id": str(user_id)}
        if action is not None:
            extra.update(
                {
                    "action_id": str(action.id),
                    "entity_type": action.entity_type,
                    "entity_id": str(action.entity_id),
                }
            )
        logger.info("nba.guardrail.blocked", extra=extra)
        observe_guardrail_block(reason)

    def _execute(self, action: NextAction, now: datetime, report: GuardReport) -> None:
        settings = get_settings()

        current = self.store.get_active_next_action_for_entity(action.entity_type, action.entity_id, now)
        if current is None or current.id != action.id:
            return

        last_run = self.store.get_last_auto_execution_for_entity(action.entity_type, action.entity_id)
        if last_run is not None:
            elapsed = now - as_utc(last_run.executed_at)
            if elapsed < timedelta(hours=settings.auto_execution_cooldown_hours):
                report.throttled += 1
                self._blocked("COOLDOWN", user_id=action.user_id, action=action)
                return

        request = DeliveryRequest(
            user_id=action.user_id,
            entity_type=EntityType(action.entity_type),
            entity_id=action.entity_id,
            action_type=ActionType(action.recommended_action),
        )
        with engine_span(
            tracer,
            "nba.delivery",
            action_id=action.id,
            entity_type=action.entity_type,
            action_type=action.recommended_action,
        ):
            outcome: str | None = None
            try:
                result = self._deliver(request, settings.delivery_timeout_seconds)
            except FuturesTimeoutError:
                # A late call still sends; the recorded attempt holds the cooldown.
                outcome = "timeout"
                result = DeliveryResult(
                    success=False,
                    error_message=f"delivery timed out after {settings.delivery_timeout_seconds}s",
                )
            except Exception as exc:
                logger.exception(
                    "nba.auto_execution.delivery_error",
                    extra={"action_id": str(action.id), "entity_id": str(action.entity_id)},
                )
                result = DeliveryResult(success=False, error_message=str(exc) or type(exc).__name__)

        outcome = outcome or ("sent" if result.success else "failed")
        self._record(action, request, result, now, outcome)
        if outcome == "sent":
            report.executed += 1
        elif outcome == "timeout":
            report.timed_out += 1
        else:
            report.failed += 1

    def _deliver(self, request: DeliveryRequest, timeout: float) -> DeliveryResult:
        context = contextvars.copy_context()
        future = (self.executor or _default_executor()).submit(context.run, self.delivery.deliver, request)
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            future.cancel()
            raise

    def _record(
        self,
        action: NextAction,
        request: DeliveryRequest,
        result: DeliveryResult,
        now: datetime,
        outcome: str,
    ) -> None:
        before = {"auto_executed_at": None}
        self.store.update_next_action(action, auto_executed_at=now)
        log_entry = self.store.create_auto_execution_log(
            action,
            executed_at=now,
            success=result.success,
            message_content=result.message_content,
            delivery_channel=result.channel,
            error_message=result.error_message,
        )
        self.store.commit()

        observe_auto_execution(action.recommended_action, outcome)
        extra = {
            "user_id": str(action.user_id),
            "action_id": str(action.id),
            "action_type": action.recommended_action,
            "entity_type": action.entity_type,
            "entity_id": str(action.entity_id),
        }
        if result.success:
            logger.info("nba.auto_execution.sent", extra=extra)
        elif outcome == "timeout":
            logger.warning("nba.auto_execution.timed_out", extra={**extra, "error": log_entry.error_message})
        else:
            logger.warning("nba.auto_execution.failed", extra={**extra, "error": log_entry.error_message})

        audit.record(
            actor_user_id=audit.SYSTEM_ACTOR,
            entity_type="nba.next_action",
            entity_id=str(action.id),
            action="nba.next_action.auto_executed",
            before=before,
            after={
                "auto_executed_at": now.isoformat(),
                "success": result.success,
                "delivery_channel": result.channel,
                "log_id": str(log_entry.id),
            },
        )
        events.publish(
            "nba.next_action.auto_executed",
            str(action.user_id),
            {
                "action_id": str(action.id),
                "entity_type": request.entity_type.value,
                "entity_id": str(request.entity_id),
                "action_type": request.action_type.value,
                "success": result.success,
            },
        )
