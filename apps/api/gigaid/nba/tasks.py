from __future__ import annotations

from dataclasses import asdict
from typing import Any

from gigaid.core.celery_app import celery_app
from gigaid.nba.orchestrator import EngineOrchestrator


def _orchestrator() -> EngineOrchestrator:
    return EngineOrchestrator()


@celery_app.task(name="gigaid.nba.detection_sweep")
def detection_sweep_task() -> dict[str, Any]:
    return asdict(_orchestrator().run_detection_sweep())


@celery_app.task(name="gigaid.nba.execution_sweep")
def execution_sweep_task() -> dict[str, Any]:
    return asdict(_orchestrator().run_execution_sweep())
