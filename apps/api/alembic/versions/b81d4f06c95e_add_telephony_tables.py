"""add telephony tables

Revision ID: b81d4f06c95e
Revises: a7c3e91f2b40
Create Date: 2026-09-30 14:00:00.000000

This migration:
1. Creates webhook_tokens (hashed, single-purpose Twilio callback tokens)
2. Creates call_to_record_sessions
3. Creates saved_audio_recordings (the robocall recording library)

Both user foreign keys use ON DELETE SET NULL so recordings and session
history survive the user who created them.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "b81d4f06c95e"
down_revision: str | Sequence[str] | None = "a7c3e91f2b40"
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
    """Create the telephony tables."""
    purpose_enum = postgresql.ENUM(
        "instruction", "recording_status", name="webhook_token_purpose", create_type=False
    )
    purpose_enum.create(op.get_bind(), checkfirst=True)

    session_status_enum = postgresql.ENUM(
        "pending",
        "calling",
        "completed",
        "failed",
        name="call_to_record_status",
        create_type=False,
    )
    session_status_enum.create(op.get_bind(), checkfirst=True)

    recording_method_enum = postgresql.ENUM(
        "call_to_record", "upload", name="recording_method", create_type=False
    )
    recording_method_enum.create(op.get_bind(), checkfirst=True)

    # Webhook tokens: only the SHA-256 hash of the token is stored
    op.create_table(
        "webhook_tokens",
        sa.Column("token_hash", sa.String(length=64), nullable=False),
        sa.Column("purpose", purpose_enum, nullable=False),
        sa.Column("call_sid", sa.String(length=64), nullable=True),
        sa.Column("session_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("token_hash"),
    )
    op.create_index("ix_webhook_tokens_call_sid", "webhook_tokens", ["call_sid"])
    op.create_index("ix_webhook_tokens_session_id", "webhook_tokens", ["session_id"])
    op.create_index("ix_webhook_tokens_expires_at", "webhook_tokens", ["expires_at"])

    op.create_table(
        "call_to_record_sessions",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        *_timestamps(),
        sa.Column("user_id", postgresql.UUID(as_uuid=False), nullable=True),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("status", session_status_enum, nullable=False, server_default="pending"),
        sa.Column("call_sid", sa.String(length=64), nullable=True),
        sa.Column("recording_sid", sa.String(length=64), nullable=True),
        sa.Column("recording_url", sa.Text(), nullable=True),
        sa.Column("recording_storage_path", sa.Text(), nullable=True),
        sa.Column("recording_duration_seconds", sa.Integer(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_call_to_record_sessions_user_id", "call_to_record_sessions", ["user_id"]
    )
    op.create_index(
        "ix_call_to_record_sessions_status", "call_to_record_sessions", ["status"]
    )

    op.create_table(
        "saved_audio_recordings",
        sa.Column("id", postgresql.UUID(as_uuid=False), nullable=False),
        *_timestamps(),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("storage_path", sa.Text(), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), nullable=True),
        sa.Column("file_size_bytes", sa.Integer(), nullable=True),
        sa.Column("recording_method", recording_method_enum, nullable=False),
        sa.Column("created_by", postgresql.UUID(as_uuid=False), nullable=True),
        sa.ForeignKeyConstraint(["created_by"], ["users.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("storage_path", name="uq_saved_audio_recordings_storage_path"),
    )
    op.create_index(
        "ix_saved_audio_recordings_created_by", "saved_audio_recordings", ["created_by"]
    )


def downgrade() -> None:
    """Drop the telephony tables and enum types."""
    op.drop_index("ix_saved_audio_recordings_created_by", table_name="saved_audio_recordings")
    op.drop_table("saved_audio_recordings")

    op.drop_index("ix_call_to_record_sessions_status", table_name="call_to_record_sessions")
    op.drop_index("ix_call_to_record_sessions_user_id", table_name="call_to_record_sessions")
    op.drop_table("call_to_record_sessions")

    op.drop_index("ix_webhook_tokens_expires_at", table_name="webhook_tokens")
    op.drop_index("ix_webhook_tokens_session_id", table_name="webhook_tokens")
    op.drop_index("ix_webhook_tokens_call_sid", table_name="webhook_tokens")
    op.drop_table("webhook_tokens")

    op.execute("DROP TYPE IF EXISTS recording_method")
    op.execute("DROP TYPE IF EXISTS call_to_record_status")
    op.execute("DROP TYPE IF EXISTS webhook_token_purpose")
