from __future__ import annotations

import contextvars
import logging
import time
import uuid
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, fields
from datetime import datetime
from zoneinfo import ZoneInfo

from opentelemetry import trace
from sqlalchemy.orm import Session

from gigaid.context import reset_correlation_id, reset_sweep, set_correlation_id, set_sweep
from gigaid.core.config import get_settings
from gigaid.core.database import SessionLocal
from gigaid.metrics import observe_sweep
from gigaid.nba.classifier import classify, select_strongest
from gigaid.nba.clock import Clock, utc_now
from gigaid.nba.delivery import DeliveryChannel, StubDeliveryChannel
from gigaid.nba.guard import AutoExecutionGuard
from gigaid.nba.locks import EntityLockRegistry, entity_locks
from gigaid.nba.registry import ActionRegistry
from gigaid.nba.schemas import EntitySnapshot, UserSnapshot
from gigaid.nba.store import EntityStore, SqlAlchemyEntityStore
from gigaid.otel import engine_span


logger = logging.getLogger("gigaid.nba.engine")
tracer = trace.get_tracer("gigaid.nba.orchestrator")

SessionFactory = Callable[[], Session]
StoreFactory = Callable[[Session], EntityStore]

DETECTION_SWEEP = "detection"
EXECUTION_SWEEP = "execution"


@dataclass(slots=True)
class SweepReport:
    sweep: str
    users_total: int = 0
    users_failed: int = 0
    candidates: int = 0
    candidates_failed: int = 0
    detections_created: int = 0
    actions_created: int = 0
    actions_expired: int = 0
    detections_resolved: int = 0
    executed: int = 0
    failed: int = 0
    throttled: int = 0
    timed_out: int = 0
    aborted: bool = False

    def merge(self, other: SweepReport) -> None:
        for item in fields(self):
            if item.name in {"sweep", "aborted", "users_total", "users_failed"}:
                continue
            setattr(self, item.name, getattr(self, item.name) + getattr(other, item.name))


class EngineOrchestrator:
    def __init__(
        self,
        session_factory: SessionFactory | None = None,
        delivery: DeliveryChannel | None = None,
        clock: Clock | None = None,
        store_factory: StoreFactory | None = None,
        locks: EntityLockRegistry | None = None,
    ) -> None:
        self.session_factory = session_factory or SessionLocal
        self.delivery = delivery or StubDeliveryChannel()
        self.clock = clock or utc_now
        self.store_factory = store_factory or SqlAlchemyEntityStore
        self.locks = locks or entity_locks

    def run_cycle(self) -> tuple[SweepReport, SweepReport]:
        return self.run_detection_sweep(), self.run_execution_sweep()

    def run_detection_sweep(self) -> SweepReport:
        return self._sweep(DETECTION_SWEEP, self._expire_before_detection, self._detect_for_user)

    def run_execution_sweep(self) -> SweepReport:
        if not get_settings().auto_execution_enabled:
            logger.info("nba.sweep.skipped", extra={"sweep": EXECUTION_SWEEP, "reason": "DISABLED"})
            return SweepReport(sweep=EXECUTION_SWEEP)
        return self._sweep(EXECUTION_SWEEP, None, self._execute_for_user)

    def _expire_before_detection(self, store: EntityStore, now: datetime, report: SweepReport) -> None:
        report.actions_expired = ActionRegistry(store, locks=self.locks).expire_actions(now)

    def _sweep(
        self,
        sweep: str,
        prepare: Callable[[EntityStore, datetime, SweepReport], None] | None,
        per_user: Callable[[EntityStore, UserSnapshot, datetime], SweepReport],
    ) -> SweepReport:
        report = SweepReport(sweep=sweep)
        now = self.clock()
        started = time.perf_counter()
        sweep_token = set_sweep(sweep)
        correlation_token = set_correlation_id(f"nba-{sweep}-{uuid.uuid4()}")
        try:
            logger.info("nba.sweep.started", extra={"sweep": sweep})
            with engine_span(tracer, f"nba.sweep.{sweep}"):
                users = self._load_users(sweep, prepare, now, report)
                if users is not None:
                    report.users_total = len(users)
                    self._run_users(sweep, users, now, per_user, report)

            duration = time.perf_counter() - started
            observe_sweep(sweep, duration, report.users_failed)
            logger.info(
                "nba.sweep.finished",
                extra={
                    "sweep": sweep,
                    "users_total": report.users_total,
                    "users_failed": report.users_failed,
                    "status": "aborted" if report.aborted else "completed",
                    "duration_ms": round(duration * 1000, 2),
                },
            )
            return report
        finally:
            reset_correlation_id(correlation_token)
            reset_sweep(sweep_token)

    def _load_users(
        self,
        sweep: str,
        prepare: Callable[[EntityStore, datetime, SweepReport], None] | None,
        now: datetime,
        report: SweepReport,
    ) -> list[UserSnapshot] | None:
        session = self.session_factory()
        store = self.store_factory(session)
        try:
            if prepare is not None:
                prepare(store, now, report)
            return store.list_users()
        except Exception as exc:
            store.rollback()
            report.aborted = True
            logger.exception("nba.sweep.aborted", extra={"sweep": sweep, "error": str(exc)})
            return None
        finally:
            session.close()

    def _run_users(
        self,
        sweep: str,
        users: list[UserSnapshot],
        now: datetime,
        per_user: Callable[[EntityStore, UserSnapshot, datetime], SweepReport],
        report: SweepReport,
    ) -> None:
        settings = get_settings()
        if settings.engine_max_workers <= 1 or len(users) <= 1:
            for user in users:
                self._collect(report, self._run_user(sweep, user, now, per_user))
            return

        pool = ThreadPoolExecutor(max_workers=settings.engine_max_workers, thread_name_prefix="nba-sweep")
        try:
            futures = [
                (user, pool.submit(contextvars.copy_context().run, self._run_user, sweep, user, now, per_user))
                for user in users
            ]
            for user, future in futures:
                try:
                    result = future.result(timeout=settings.engine_user_timeout_seconds)
                except FuturesTimeoutError:
                    future.cancel()
                    logger.warning(
                        "nba.user.timed_out",
                        extra={"sweep": sweep, "user_id": str(user.id)},
                    )
                    result = None
                self._collect(report, result)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _collect(self, report: SweepReport, result: SweepReport | None) -> None:
        if result is None:
            report.users_failed += 1
            return
        report.merge(result)

    def _run_user(
        self,
        sweep: str,
        user: UserSnapshot,
        now: datetime,
        per_user: Callable[[EntityStore, UserSnapshot, datetime], SweepReport],
    ) -> SweepReport | None:
        token = set_correlation_id(f"nba-{sweep}-{user.id}-{uuid.uuid4().hex[:8]}")
        session = self.session_factory()
        store = self.store_factory(session)
        try:
            with engine_span(tracer, f"nba.user.{sweep}", user_id=user.id):
                return per_user(store, user, now)
        except Exception as exc:
            store.rollback()
            logger.exception(
                "nba.user.failed",
                extra={"sweep": sweep, "user_id": str(user.id), "error": str(exc)},
            )
            return None
        finally:
            session.close()
            reset_correlation_id(token)

    def _detect_for_user(self, store: EntityStore, user: UserSnapshot, now: datetime) -> SweepReport:
        report = SweepReport(sweep=DETECTION_SWEEP)
        tz = ZoneInfo(get_settings().engine_timezone)

        entities: list[EntitySnapshot] = [
            *store.get_leads(user.id),
            *store.get_jobs(user.id),
            *store.get_invoices(user.id),
        ]
        candidates = select_strongest(
            candidate for candidate in (classify(entity, now, tz) for entity in entities) if candidate is not None
        )
        report.candidates = len(candidates)

        actions = ActionRegistry(store, locks=self.locks)
        for candidate in candidates:
            try:
                outcome = actions.process_stall_candidate(candidate, now)
            except Exception as exc:
                store.rollback()
                report.candidates_failed += 1
                logger.exception(
                    "nba.candidate.failed",
                    extra={
                        "user_id": str(user.id),
                        "entity_type": candidate.entity_type.value,
                        "entity_id": str(candidate.entity_id),
                        "error": str(exc),
                    },
                )
                continue
            report.detections_created += int(outcome.detection_created)
            report.actions_created += int(outcome.action_created)

        # Failed candidates stay in the stalled set so their detections remain open.
        report.detections_resolved = actions.stalls.resolve_cleared(
            user.id, [candidate.entity_key for candidate in candidates], now
        )
        logger.debug("nba.user.scanned", extra={"user_id": str(user.id), "count": len(candidates)})
        return report

    def _execute_for_user(self, store: EntityStore, user: UserSnapshot, now: datetime) -> SweepReport:
        guard = AutoExecutionGuard(store, self.delivery, locks=self.locks)
        result = guard.run_for_user(user, now)
        return SweepReport(
            sweep=EXECUTION_SWEEP,
            executed=result.executed,
            failed=result.failed,
            throttled=result.throttled,
            timed_out=result.timed_out,
        )
