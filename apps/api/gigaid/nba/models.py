from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, Uuid, false, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gigaid.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_OPEN_DETECTION = text("resolved_at IS NULL")
_OPEN_ACTION = text(
    "acted_at IS NULL AND dismissed_at IS NULL AND auto_executed_at IS NULL AND expired_at IS NULL"
)


class StallDetection(Base):
    __tablename__ = "nba_stall_detection"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    stall_type: Mapped[str] = mapped_column(String(32), nullable=False)
    money_at_risk: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    detected_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    actions: Mapped[list[NextAction]] = relationship(
        "gigaid.nba.models.NextAction",
        back_populates="stall_detection",
        passive_deletes=True,
    )

    __table_args__ = (
        Index(
            "uq_nba_stall_open_entity",
            "entity_type",
            "entity_id",
            unique=True,
            sqlite_where=_OPEN_DETECTION,
            postgresql_where=_OPEN_DETECTION,
        ),
        Index("ix_nba_stall_user", "user_id"),
    )


class NextAction(Base):
    __tablename__ = "nba_next_action"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    stall_detection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("nba_stall_detection.id", ondelete="CASCADE"),
        nullable=False,
    )
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    recommended_action: Mapped[str] = mapped_column(String(64), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    auto_executable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    acted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    dismissed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    auto_executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    stall_detection: Mapped[StallDetection] = relationship(
        "gigaid.nba.models.StallDetection",
        back_populates="actions",
    )

    __table_args__ = (
        Index(
            "uq_nba_action_open_entity",
            "entity_type",
            "entity_id",
            unique=True,
            sqlite_where=_OPEN_ACTION,
            postgresql_where=_OPEN_ACTION,
        ),
        Index("ix_nba_action_user", "user_id"),
        Index("ix_nba_action_expires", "expires_at"),
    )

    @property
    def is_terminated(self) -> bool:
        return any(
            value is not None
            for value in (self.acted_at, self.dismissed_at, self.auto_executed_at, self.expired_at)
        )


class AutoExecutionLog(Base):
    __tablename__ = "nba_auto_execution_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    next_action_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(16), nullable=False)
    entity_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False)
    action_type: Mapped[str] = mapped_column(String(64), nullable=False)
    message_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_channel: Mapped[str | None] = mapped_column(String(16), nullable=True)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_nba_auto_exec_entity", "entity_type", "entity_id", "executed_at"),
        Index("ix_nba_auto_exec_user", "user_id"),
    )
