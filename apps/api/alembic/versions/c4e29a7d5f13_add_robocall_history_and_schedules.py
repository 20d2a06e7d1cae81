"""add robocall history and schedules

Revision ID: c4e29a7d5f13
Revises: b81d4f06c95e
Create Date: 2026-10-17 09:00:00.000000

This migration:
1. Creates robocall_messages (one row per robocall send, with totals)
2. Creates robocall_recipient_logs (per-recipient outcome of each send)
3. Creates scheduled_robocalls (robocalls waiting for their send time)

Deleting a send removes its recipient logs. Schedules keep their row when
the linked send is deleted.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "c4e29a7d5f13"
down_revision: str | Sequence[str] | None = "b81d4f06c95e"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    """Create the robocall history and schedule tables."""
    method_enum = postgresql.ENUM(
        "text_to_speech", "audio", name="robocall_method", create_type=False
    )
    method_enum.create(op.get_bind(), checkfirst=True)

    delivery_status_enum = postgresql.ENUM(
        "completed",
        "partial",
        "failed",
        name="robocall_delivery_status",
        create_type=False,
    )
    delivery_status_enum.create(op.get_bind(), checkfirst=True)

    schedule_status_enum = postgresql.ENUM(
        "pending",
        "sending",
        "sent",
        "failed",
        "cancelled",
        name="scheduled_robocall_status",
        create_type=False,
    )
    schedule_status_enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        "robocall_messages",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        *_timestamps(),
        sa.Column("recording_method", method_enum, nullable=False),
        sa.Column("text_content", sa.Text(), nullable=True),
        sa.Column("audio_storage_path", sa.Text(), nullable=True),
        sa.Column("from_name", sa.String(length=100), nullable=True),
        sa.Column("phone_numbers", sa.JSON(), nullable=False),
        sa.Column("status", delivery_status_enum, nullable=False),
        sa.Column("total_recipients", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("success_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("fail_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sent_by", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["sent_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_robocall_messages_sent_by", "robocall_messages", ["sent_by"])
    op.create_index("ix_robocall_messages_sent_at", "robocall_messages", ["sent_at"])

    op.create_table(
        "robocall_recipient_logs",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        *_timestamps(),
        sa.Column("robocall_message_id", postgresql.UUID(as_uuid=False), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("call_sid", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("error_code", sa.String(length=64), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(
            ["robocall_message_id"], ["robocall_messages.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_robocall_recipient_logs_robocall_message_id",
        "robocall_recipient_logs",
        ["robocall_message_id"],
    )

    op.create_table(
        "scheduled_robocalls",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        *_timestamps(),
        sa.Column("recording_method", method_enum, nullable=False),
        sa.Column("text_content", sa.Text(), nullable=True),
        sa.Column("audio_storage_path", sa.Text(), nullable=True),
        sa.Column("from_name", sa.String(length=100), nullable=True),
        sa.Column("phone_numbers", sa.JSON(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", schedule_status_enum, nullable=False, server_default="pending"),
        sa.Column("created_by", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("robocall_message_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(
            ["robocall_message_id"], ["robocall_messages.id"], ondelete="SET NULL"
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_scheduled_robocalls_scheduled_for", "scheduled_robocalls", ["scheduled_for"]
    )
    op.create_index("ix_scheduled_robocalls_status", "scheduled_robocalls", ["status"])
    op.create_index("ix_scheduled_robocalls_created_by", "scheduled_robocalls", ["created_by"])


def downgrade() -> None:
    """Drop the robocall history and schedule tables and enum types."""
    op.drop_index("ix_scheduled_robocalls_created_by", table_name="scheduled_robocalls")
    op.drop_index("ix_scheduled_robocalls_status", table_name="scheduled_robocalls")
    op.drop_index("ix_scheduled_robocalls_scheduled_for", table_name="scheduled_robocalls")
    op.drop_table("scheduled_robocalls")

    op.drop_index(
        "ix_robocall_recipient_logs_robocall_message_id", table_name="robocall_recipient_logs"
    )
    op.drop_table("robocall_recipient_logs")

    op.drop_index("ix_robocall_messages_sent_at", table_name="robocall_messages")
    op.drop_index("ix_robocall_messages_sent_by", table_name="robocall_messages")
    op.drop_table("robocall_messages")

    op.execute("DROP TYPE IF EXISTS scheduled_robocall_status")
    op.execute("DROP TYPE IF EXISTS robocall_delivery_status")
    op.execute("DROP TYPE IF EXISTS robocall_method")
