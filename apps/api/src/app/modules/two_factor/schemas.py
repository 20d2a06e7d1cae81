"""
Two-Factor Authentication Schemas
"""

from pydantic import BaseModel, Field

from app.modules.users.models import TwoFactorMethod

CODE_PATTERN = r"^\d{6}$"


class TwoFactorSetupStartRequest(BaseModel):
    """Choose where verification codes are delivered."""

    phone_number: str = Field(..., min_length=10, max_length=20)
    method: TwoFactorMethod = TwoFactorMethod.SMS


class TwoFactorSendRequest(BaseModel):
    """Re-send a code, optionally overriding the saved delivery method."""

    method: TwoFactorMethod | None = None


class TwoFactorVerifyRequest(BaseModel):
    code: str = Field(..., pattern=CODE_PATTERN)


class TwoFactorSendResponse(BaseModel):
    """Where the code went. The destination is always masked."""

    method: TwoFactorMethod
    masked_destination: str
    expires_in_seconds: int


class TwoFactorVerifyResponse(BaseModel):
    verified: bool = True


class TwoFactorStatusResponse(BaseModel):
    enabled: bool
    method: TwoFactorMethod | None = None
    masked_destination: str | None = None
