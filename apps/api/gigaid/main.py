from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from gigaid.api.routes import router as api_router
from gigaid.core.config import get_settings
from gigaid.events import InternalEvent, event_bus
from gigaid.logging import configure_logging
from gigaid.middleware.correlation_id import CorrelationIdMiddleware
from gigaid.middleware.request_logging import RequestLoggingMiddleware
from gigaid.nba.service import NextBestActionEngine
from gigaid.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("gigaid.lifecycle")
_subscriptions_registered = False

_engine_event_types = [
    "nba.next_action.created",
    "nba.next_action.acted",
    "nba.next_action.dismissed",
    "nba.next_action.auto_executed",
]


def _on_engine_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload", {}) if isinstance(event.payload, dict) else {}
    logger.debug(
        "engine_event",
        extra={
            "status": event.name,
            "action_id": payload.get("action_id"),
            "entity_type": payload.get("entity_type"),
            "entity_id": payload.get("entity_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        for event_name in _engine_event_types:
            event_bus.subscribe(event_name, _on_engine_event)
        _subscriptions_registered = True

    settings = get_settings()
    engine = NextBestActionEngine()
    app.state.nba_engine = engine
    if settings.engine_autostart:
        engine.start(settings.engine_interval_minutes)
        logger.info("engine_started", extra={"interval_minutes": settings.engine_interval_minutes})
    try:
        yield
    finally:
        engine.stop()
        logger.info("engine_stopped")


app = FastAPI(title="GigAid API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
