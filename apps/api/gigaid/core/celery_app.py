from celery import Celery

from gigaid.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "gigaid_api",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["gigaid.nba.tasks"],
)
celery_app.conf.timezone = "UTC"
celery_app.conf.task_acks_late = True
celery_app.conf.beat_schedule = {
    "nba-detection-sweep": {
        "task": "gigaid.nba.detection_sweep",
        "schedule": settings.engine_interval_minutes * 60.0,
        "options": {"expires": settings.engine_interval_minutes * 60.0},
    },
    "nba-execution-sweep": {
        "task": "gigaid.nba.execution_sweep",
        "schedule": settings.engine_interval_minutes * 60.0,
        "options": {"expires": settings.engine_interval_minutes * 60.0},
    },
}


@celery_app.task(name="gigaid.tasks.ping")
def ping_task() -> str:
    return "pong"
