from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Protocol

from gigaid.nba.schemas import ActionType, EntityType


logger = logging.getLogger("gigaid.nba.engine")


@dataclass(frozen=True, slots=True)
class DeliveryRequest:
    user_id: uuid.UUID
    entity_type: EntityType
    entity_id: uuid.UUID
    action_type: ActionType


@dataclass(frozen=True, slots=True)
class DeliveryResult:
    success: bool
    message_content: str | None = None
    channel: str | None = None
    error_message: str | None = None


class DeliveryChannel(Protocol):
    def deliver(self, request: DeliveryRequest) -> DeliveryResult: ...


class TextGenerator(Protocol):
    def generate(self, prompt: str) -> str: ...


MESSAGE_TEMPLATES: dict[ActionType, str] = {
    ActionType.SEND_INVOICE_REMINDER: "Hi! Just a friendly reminder that your invoice is still open. Thanks!",
    ActionType.AUTO_SEND_GENTLE_NUDGE: "Hi! Checking in on the invoice you opened recently. Let me know if you have questions.",
    ActionType.SUGGEST_STATUS_UPDATE: "Your job is past its start time. Update its status to keep things on track.",
    ActionType.SEND_FOLLOW_UP_TEXT: "Hi! Following up on your request. Are you still looking for help?",
}


def build_prompt(request: DeliveryRequest) -> str:
    return (
        f"Write a short, friendly SMS for a gig worker's client. "
        f"Purpose: {request.action_type.value.replace('_', ' ')}. "
        f"Subject: {request.entity_type.value}. Keep it under 160 characters."
    )


@dataclass(slots=True)
class StubDeliveryChannel:
    channel: str = "sms"
    text_generator: TextGenerator | None = None
    outbox: list[tuple[DeliveryRequest, str]] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def render(self, request: DeliveryRequest) -> str:
        if self.text_generator is not None:
            try:
                generated = self.text_generator.generate(build_prompt(request)).strip()
            except Exception:
                logger.warning(
                    "nba.delivery.generation_failed",
                    exc_info=True,
                    extra={"entity_type": request.entity_type.value, "entity_id": str(request.entity_id)},
                )
            else:
                if generated:
                    return generated
        return MESSAGE_TEMPLATES[request.action_type]

    def deliver(self, request: DeliveryRequest) -> DeliveryResult:
        message = self.render(request)
        with self._lock:
            self.outbox.append((request, message))
        logger.info(
            "nba.delivery.queued",
            extra={
                "user_id": str(request.user_id),
                "entity_type": request.entity_type.value,
                "entity_id": str(request.entity_id),
                "action_type": request.action_type.value,
            },
        )
        return DeliveryResult(success=True, message_content=message, channel=self.channel)
