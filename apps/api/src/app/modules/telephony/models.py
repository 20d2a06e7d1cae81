"""
Telephony Models

Database models for webhook tokens, call-to-record sessions, the saved
audio recording library, robocall delivery history and scheduled robocalls.

All telephony state lives in the database rather than process memory: the
instruction fetch and the recording-status callback for one call may reach
different API instances.
"""

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String, Text, Uuid, func
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base
from app.modules.shared import BaseModel


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class WebhookTokenPurpose(str, Enum):
    """Which class of provider callback a token authorizes."""

    INSTRUCTION = "instruction"  # TwiML fetch when the call connects
    RECORDING_STATUS = "recording_status"  # Recording-finished POST


class CallToRecordStatus(str, Enum):
    """Lifecycle of a call-to-record session."""

    PENDING = "pending"  # Session created, call not yet accepted by Twilio
    CALLING = "calling"  # Twilio accepted the call
    COMPLETED = "completed"  # Recording stored (terminal)
    FAILED = "failed"  # Dispatch, fetch or storage failed (terminal)


# Statuses a session can still leave; completed/failed are terminal
ACTIVE_SESSION_STATUSES = (CallToRecordStatus.PENDING, CallToRecordStatus.CALLING)


class RecordingMethod(str, Enum):
    """How a saved recording entered the library."""

    CALL_TO_RECORD = "call_to_record"
    UPLOAD = "upload"


class RobocallMethod(str, Enum):
    """What a robocall plays."""

    TEXT_TO_SPEECH = "text_to_speech"
    AUDIO = "audio"


class RobocallDeliveryStatus(str, Enum):
    """Overall outcome of one robocall send."""

    COMPLETED = "completed"  # Every call was placed
    PARTIAL = "partial"  # Some calls failed
    FAILED = "failed"  # No call was placed


class ScheduledRobocallStatus(str, Enum):
    """Lifecycle of a scheduled robocall."""

    PENDING = "pending"  # Waiting for its time
    SENDING = "sending"  # Claimed by a scheduler tick
    SENT = "sent"  # Dispatched (terminal); see the linked robocall message
    FAILED = "failed"  # Could not be dispatched (terminal)
    CANCELLED = "cancelled"  # Cancelled by its creator before sending (terminal)


class WebhookToken(Base):
    """
    Short-lived credential embedded in a Twilio callback URL.

    Only the SHA-256 hash of the token is stored; the plain value exists
    solely in the callback URL handed to Twilio. A token is valid while its
    row exists and ``expires_at`` is in the future. Validation never extends
    the expiry.
    """

    __tablename__ = "webhook_tokens"

    token_hash: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
    )
    purpose: Mapped[WebhookTokenPurpose] = mapped_column(
        SAEnum(WebhookTokenPurpose, name="webhook_token_purpose", values_callable=_enum_values),
        nullable=False,
    )
    call_sid: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        index=True,
    )
    session_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        nullable=True,
        index=True,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<WebhookToken(purpose={self.purpose.value}, call_sid={self.call_sid})>"


class CallToRecordSession(BaseModel):
    """
    A "call me and record a message" request.

    Transitions pending -> calling -> completed | failed. The transition into
    a terminal state is a conditional update, so duplicate recording-status
    webhooks can't process the same session twice.
    """

    __tablename__ = "call_to_record_sessions"

    # ON DELETE SET NULL: the recording survives the initiating user
    user_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    phone_number: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    status: Mapped[CallToRecordStatus] = mapped_column(
        SAEnum(CallToRecordStatus, name="call_to_record_status", values_callable=_enum_values),
        nullable=False,
        default=CallToRecordStatus.PENDING,
        index=True,
    )

    # Twilio identifiers
    call_sid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recording_sid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    recording_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Result
    recording_storage_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    recording_duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    @property
    def is_terminal(self) -> bool:
        return self.status not in ACTIVE_SESSION_STATUSES

    def __repr__(self) -> str:
        return f"<CallToRecordSession(id={self.id}, status={self.status.value})>"


class SavedAudioRecording(BaseModel):
    """A reusable audio file in the robocall recording library."""

    __tablename__ = "saved_audio_recordings"

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    storage_path: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    duration_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    recording_method: Mapped[RecordingMethod] = mapped_column(
        SAEnum(RecordingMethod, name="recording_method", values_callable=_enum_values),
        nullable=False,
    )
    created_by: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<SavedAudioRecording(id={self.id}, name={self.name})>"


class RobocallMessage(BaseModel):
    """
    One robocall send: what was played, to whom and how it went.

    Written after dispatch with the totals; each recipient's outcome is a
    ``RobocallRecipientLog`` row.
    """

    __tablename__ = "robocall_messages"

    recording_method: Mapped[RobocallMethod] = mapped_column(
        SAEnum(RobocallMethod, name="robocall_method", values_callable=_enum_values),
        nullable=False,
    )
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_storage_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    phone_numbers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[RobocallDeliveryStatus] = mapped_column(
        SAEnum(
            RobocallDeliveryStatus,
            name="robocall_delivery_status",
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    total_recipients: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fail_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    sent_by: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    def __repr__(self) -> str:
        return f"<RobocallMessage(id={self.id}, status={self.status.value})>"


class RobocallRecipientLog(BaseModel):
    """Outcome of the call to one robocall recipient."""

    __tablename__ = "robocall_recipient_logs"

    robocall_message_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("robocall_messages.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Dispatch order within the send
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    call_sid: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<RobocallRecipientLog(message={self.robocall_message_id}, status={self.status})>"


class ScheduledRobocall(BaseModel):
    """
    A robocall to send at a later time.

    Transitions pending -> sending -> sent | failed, or pending -> cancelled.
    Each transition is a conditional update, so a schedule is dispatched at
    most once even with several scheduler instances running.
    """

    __tablename__ = "scheduled_robocalls"

    recording_method: Mapped[RobocallMethod] = mapped_column(
        SAEnum(RobocallMethod, name="robocall_method", values_callable=_enum_values),
        nullable=False,
    )
    text_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    audio_storage_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    # Already normalized to E.164 and de-duplicated
    phone_numbers: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    scheduled_for: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        index=True,
    )
    status: Mapped[ScheduledRobocallStatus] = mapped_column(
        SAEnum(
            ScheduledRobocallStatus,
            name="scheduled_robocall_status",
            values_callable=_enum_values,
        ),
        nullable=False,
        default=ScheduledRobocallStatus.PENDING,
        index=True,
    )
    created_by: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )

    # Result
    robocall_message_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("robocall_messages.id", ondelete="SET NULL"),
        nullable=True,
    )
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<ScheduledRobocall(id={self.id}, status={self.status.value})>"
