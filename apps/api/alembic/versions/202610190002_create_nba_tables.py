"""create next best action engine tables

Revision ID: 202610190002
Revises: 202610190001
Create Date: 2026-10-19 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190002"
down_revision: str | None = "202610190001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


_OPEN_DETECTION = sa.text("resolved_at IS NULL")
_OPEN_ACTION = sa.text(
    "acted_at IS NULL AND dismissed_at IS NULL AND auto_executed_at IS NULL AND expired_at IS NULL"
)


def upgrade() -> None:
    op.create_table(
        "nba_stall_detection",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("stall_type", sa.String(length=32), nullable=False),
        sa.Column("money_at_risk", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("confidence", sa.Float(), nullable=False),
        sa.Column("detected_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_nba_stall_open_entity",
        "nba_stall_detection",
        ["entity_type", "entity_id"],
        unique=True,
        sqlite_where=_OPEN_DETECTION,
        postgresql_where=_OPEN_DETECTION,
    )
    op.create_index("ix_nba_stall_user", "nba_stall_detection", ["user_id"], unique=False)

    op.create_table(
        "nba_next_action",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("stall_detection_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("recommended_action", sa.String(length=64), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("auto_executable", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dismissed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["stall_detection_id"], ["nba_stall_detection.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "uq_nba_action_open_entity",
        "nba_next_action",
        ["entity_type", "entity_id"],
        unique=True,
        sqlite_where=_OPEN_ACTION,
        postgresql_where=_OPEN_ACTION,
    )
    op.create_index("ix_nba_action_user", "nba_next_action", ["user_id"], unique=False)
    op.create_index("ix_nba_action_expires", "nba_next_action", ["expires_at"], unique=False)

    op.create_table(
        "nba_auto_execution_log",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("next_action_id", sa.Uuid(), nullable=False),
        sa.Column("entity_type", sa.String(length=16), nullable=False),
        sa.Column("entity_id", sa.Uuid(), nullable=False),
        sa.Column("action_type", sa.String(length=64), nullable=False),
        sa.Column("message_content", sa.Text(), nullable=True),
        sa.Column("delivery_channel", sa.String(length=16), nullable=True),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_nba_auto_exec_entity",
        "nba_auto_execution_log",
        ["entity_type", "entity_id", "executed_at"],
        unique=False,
    )
    op.create_index("ix_nba_auto_exec_user", "nba_auto_execution_log", ["user_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_nba_auto_exec_user", table_name="nba_auto_execution_log")
    op.drop_index("ix_nba_auto_exec_entity", table_name="nba_auto_execution_log")
    op.drop_table("nba_auto_execution_log")
    op.drop_index("ix_nba_action_expires", table_name="nba_next_action")
    op.drop_index("ix_nba_action_user", table_name="nba_next_action")
    op.drop_index("uq_nba_action_open_entity", table_name="nba_next_action")
    op.drop_table("nba_next_action")
    op.drop_index("ix_nba_stall_user", table_name="nba_stall_detection")
    op.drop_index("uq_nba_stall_open_entity", table_name="nba_stall_detection")
    op.drop_table("nba_stall_detection")
