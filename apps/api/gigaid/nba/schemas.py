from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator


def as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class EntityType(str, Enum):
    LEAD = "lead"
    JOB = "job"
    INVOICE = "invoice"


class LeadStatus(str, Enum):
    NEW = "new"
    RESPONSE_SENT = "response_sent"
    CONTACTED = "contacted"
    CONVERTED = "converted"
    COLD = "cold"
    LOST = "lost"


class JobStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"


class StallType(str, Enum):
    NO_RESPONSE = "no_response"
    OVERDUE = "overdue"
    DRAFT_AGING = "draft_aging"
    IDLE = "idle"
    VIEWED_UNPAID = "viewed_unpaid"


class ActionType(str, Enum):
    SEND_INVOICE_REMINDER = "send_invoice_reminder"
    AUTO_SEND_GENTLE_NUDGE = "auto_send_gentle_nudge"
    SUGGEST_STATUS_UPDATE = "suggest_status_update"
    SEND_FOLLOW_UP_TEXT = "send_follow_up_text"


class _Snapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value: object) -> object:
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class UserSnapshot(_Snapshot):
    id: UUID
    last_active_at: datetime | None = None


class LeadSnapshot(_Snapshot):
    id: UUID
    user_id: UUID
    status: LeadStatus
    created_at: datetime
    last_contacted_at: datetime | None = None
    response_copied_at: datetime | None = None
    converted_at: datetime | None = None
    respond_tap_count: int = 0
    last_respond_tap_at: datetime | None = None


class JobSnapshot(_Snapshot):
    id: UUID
    user_id: UUID
    status: JobStatus
    scheduled_date: str
    scheduled_time: str
    price: int | None = None


class InvoiceSnapshot(_Snapshot):
    id: UUID
    user_id: UUID
    status: InvoiceStatus
    amount: int = 0
    created_at: datetime
    sent_at: datetime | None = None


EntitySnapshot = LeadSnapshot | JobSnapshot | InvoiceSnapshot


class StallCandidate(BaseModel):
    model_config = ConfigDict(frozen=True)

    entity_type: EntityType
    entity_id: UUID
    user_id: UUID
    stall_type: StallType
    money_at_risk: int = Field(ge=0)
    confidence: float = Field(ge=0.0, le=1.0)

    @property
    def entity_key(self) -> tuple[EntityType, UUID]:
        return self.entity_type, self.entity_id


class Recommendation(BaseModel):
    model_config = ConfigDict(frozen=True)

    recommended_action: ActionType
    reason: str = Field(max_length=120)
    auto_executable: bool


class _Read(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    @field_validator("*", mode="after")
    @classmethod
    def _normalize_datetimes(cls, value: object) -> object:
        if isinstance(value, datetime):
            return as_utc(value)
        return value


class StallDetectionRead(_Read):
    id: UUID
    user_id: UUID
    entity_type: EntityType
    entity_id: UUID
    stall_type: StallType
    money_at_risk: int
    confidence: float
    detected_at: datetime
    resolved_at: datetime | None


class NextActionRead(_Read):
    id: UUID
    user_id: UUID
    stall_detection_id: UUID
    entity_type: EntityType
    entity_id: UUID
    recommended_action: ActionType
    reason: str
    auto_executable: bool
    expires_at: datetime
    acted_at: datetime | None
    dismissed_at: datetime | None
    auto_executed_at: datetime | None
    expired_at: datetime | None
    created_at: datetime


class AutoExecutionLogRead(_Read):
    id: UUID
    user_id: UUID
    next_action_id: UUID
    entity_type: EntityType
    entity_id: UUID
    action_type: ActionType
    message_content: str | None
    delivery_channel: str | None
    executed_at: datetime
    success: bool
    error_message: str | None


class RespondTapRead(BaseModel):
    lead_id: UUID
    respond_tap_count: int
    last_respond_tap_at: datetime | None
