"""
Telephony Schemas

Pydantic schemas for the robocall, scheduling, delivery history,
call-to-record and recording library endpoints.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.modules.telephony.errors import ProviderErrorCategory
from app.modules.telephony.models import (
    CallToRecordStatus,
    RecordingMethod,
    RobocallDeliveryStatus,
    RobocallMethod,
    ScheduledRobocallStatus,
)


class RobocallRequest(BaseModel):
    """Send a robocall to a list of numbers."""

    recording_method: RobocallMethod
    text_content: str | None = Field(None, max_length=1600)
    audio_storage_path: str | None = Field(None, max_length=500)
    from_name: str | None = Field(None, max_length=100)
    phone_numbers: list[str] = Field(..., min_length=1, max_length=500)

    @model_validator(mode="after")
    def check_content(self) -> "RobocallRequest":
        if self.recording_method == RobocallMethod.TEXT_TO_SPEECH:
            if not self.text_content or not self.text_content.strip():
                raise ValueError("text_content is required for text_to_speech robocalls")
        elif not self.audio_storage_path:
            raise ValueError("audio_storage_path is required for audio robocalls")
        return self


class RecipientResult(BaseModel):
    """Outcome for one robocall recipient."""

    phone_number: str
    success: bool
    call_sid: str | None = None
    status: str | None = None
    error_code: str | None = None
    error_category: ProviderErrorCategory | None = None
    error_message: str | None = None
    retryable: bool = False


class RobocallResponse(BaseModel):
    """Per-recipient results of a robocall."""

    robocall_message_id: str | None = Field(
        None, description="Delivery history entry, when it could be recorded"
    )
    total: int
    succeeded: int
    failed: int
    invalid_numbers: list[str] = Field(default_factory=list)
    results: list[RecipientResult]


class CallToRecordRequest(BaseModel):
    """Ask the portal to call a number and record a message."""

    phone_number: str = Field(..., min_length=10, max_length=20)


class CallToRecordSessionResponse(BaseModel):
    """State of a call-to-record session, for polling."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    status: CallToRecordStatus
    phone_number: str
    call_sid: str | None = None
    recording_storage_path: str | None = None
    recording_duration_seconds: int | None = None
    signed_url: str | None = Field(
        None, description="Signed URL for the stored recording, when completed"
    )
    error_message: str | None = None
    expires_at: datetime
    created_at: datetime


class SavedRecordingResponse(BaseModel):
    """A recording in the library."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None = None
    storage_path: str
    duration_seconds: int | None = None
    file_size_bytes: int | None = None
    recording_method: RecordingMethod
    url: str | None = None
    created_at: datetime


class SavedRecordingListResponse(BaseModel):
    recordings: list[SavedRecordingResponse]


class RecipientLogResponse(BaseModel):
    """Recorded outcome for one recipient of a past robocall."""

    model_config = ConfigDict(from_attributes=True)

    phone_number: str
    call_sid: str | None = None
    status: str
    error_code: str | None = None
    error_message: str | None = None


class RobocallMessageResponse(BaseModel):
    """A past robocall send."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    recording_method: RobocallMethod
    text_content: str | None = None
    audio_storage_path: str | None = None
    from_name: str | None = None
    status: RobocallDeliveryStatus
    total_recipients: int
    success_count: int
    fail_count: int
    sent_by: str | None = None
    sent_at: datetime


class RobocallMessageDetailResponse(RobocallMessageResponse):
    recipients: list[RecipientLogResponse] = Field(default_factory=list)


class RobocallHistoryResponse(BaseModel):
    messages: list[RobocallMessageResponse]
    limit: int
    offset: int


class ScheduledRobocallRequest(RobocallRequest):
    """Send a robocall at a future time."""

    scheduled_for: datetime = Field(
        ..., description="When to send; must include a timezone and be in the future"
    )


class ScheduledRobocallResponse(BaseModel):
    """A robocall waiting for, or past, its scheduled time."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    recording_method: RobocallMethod
    text_content: str | None = None
    audio_storage_path: str | None = None
    from_name: str | None = None
    phone_numbers: list[str]
    scheduled_for: datetime
    status: ScheduledRobocallStatus
    robocall_message_id: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    created_at: datetime
    invalid_numbers: list[str] = Field(
        default_factory=list, description="Inputs dropped when the schedule was created"
    )


class ScheduledRobocallListResponse(BaseModel):
    scheduled: list[ScheduledRobocallResponse]
