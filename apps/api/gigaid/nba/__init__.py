from gigaid.nba.classifier import classify, classify_invoice, classify_job, classify_lead, select_strongest
from gigaid.nba.clock import FrozenClock, utc_now
from gigaid.nba.delivery import DeliveryChannel, DeliveryRequest, DeliveryResult, StubDeliveryChannel, TextGenerator
from gigaid.nba.guard import AutoExecutionGuard, GuardReport
from gigaid.nba.models import AutoExecutionLog, NextAction, StallDetection
from gigaid.nba.orchestrator import EngineOrchestrator, SweepReport
from gigaid.nba.recommender import recommend
from gigaid.nba.registry import ActionRegistry, ProcessOutcome, StallRegistry
from gigaid.nba.scheduler import EngineScheduler, IntervalTicker, ManualTicker, Ticker
from gigaid.nba.service import (
    ActionNotFoundError,
    LeadNotFoundError,
    NextActionService,
    NextBestActionEngine,
    NextBestActionError,
)
from gigaid.nba.store import EntityStore, SqlAlchemyEntityStore

__all__ = [
    "ActionNotFoundError",
    "ActionRegistry",
    "AutoExecutionGuard",
    "AutoExecutionLog",
    "DeliveryChannel",
    "DeliveryRequest",
    "DeliveryResult",
    "EngineOrchestrator",
    "EngineScheduler",
    "EntityStore",
    "FrozenClock",
    "GuardReport",
    "IntervalTicker",
    "LeadNotFoundError",
    "ManualTicker",
    "NextAction",
    "NextActionService",
    "NextBestActionEngine",
    "NextBestActionError",
    "ProcessOutcome",
    "SqlAlchemyEntityStore",
    "StallDetection",
    "StallRegistry",
    "StubDeliveryChannel",
    "SweepReport",
    "TextGenerator",
    "Ticker",
    "classify",
    "classify_invoice",
    "classify_job",
    "classify_lead",
    "recommend",
    "select_strongest",
    "utc_now",
]
