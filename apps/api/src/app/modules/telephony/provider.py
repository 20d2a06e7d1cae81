"""
Telephony Provider

The narrow interface the dispatcher, ingestion pipeline and 2FA service use
to talk to Twilio, and its production implementation.

The Twilio REST client is synchronous; calls run in a worker thread so a slow
provider never blocks other requests. Each request is bounded by the
client's own timeout (settings.twilio_request_timeout_seconds). Recording
downloads use httpx with the account credentials as basic auth.

All SDK and HTTP exceptions are translated into TelephonyError subclasses
before they leave this module.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Protocol

import httpx
from twilio.http.http_client import TwilioHttpClient
from twilio.request_validator import RequestValidator
from twilio.rest import Client

from app.core.config import settings
from app.modules.telephony.errors import (
    RecordingFetchError,
    TelephonyConfigurationError,
    translate_provider_error,
)
from app.modules.telephony.phone import mask_phone_number

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com"

_RECORDING_SID = re.compile(r"^RE[0-9a-fA-F]{32}$")


@dataclass(frozen=True)
class PlacedCall:
    """A call Twilio accepted for delivery."""

    sid: str
    status: str | None = None


class TelephonyProvider(Protocol):
    @property
    def sender_number(self) -> str: ...

    async def place_call(
        self,
        to: str,
        instruction_url: str,
        *,
        recording_status_url: str | None = None,
    ) -> PlacedCall: ...

    async def send_sms(self, to: str, body: str) -> str: ...

    async def fetch_recording(self, recording_sid: str) -> bytes: ...

    def verify_signature(self, url: str, params: dict[str, str], signature: str | None) -> bool: ...


class TwilioProvider:
    """TelephonyProvider backed by the Twilio REST API."""

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        timeout_seconds: float = 15.0,
    ):
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number
        self._timeout = timeout_seconds
        self._client = Client(
            account_sid,
            auth_token,
            http_client=TwilioHttpClient(timeout=timeout_seconds),
        )
        self._validator = RequestValidator(auth_token)

    @classmethod
    def from_settings(cls) -> "TwilioProvider":
        """
        Build the provider from configuration.

        Raises:
            TelephonyConfigurationError: If credentials or sender number are unset
        """
        if not settings.twilio_account_sid or not settings.twilio_auth_token:
            raise TelephonyConfigurationError(
                "TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN must be set"
            )
        if not settings.twilio_phone_number:
            raise TelephonyConfigurationError("TWILIO_PHONE_NUMBER must be set")

        return cls(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_phone_number,
            timeout_seconds=settings.twilio_request_timeout_seconds,
        )

    @property
    def sender_number(self) -> str:
        return self._from_number

    async def place_call(
        self,
        to: str,
        instruction_url: str,
        *,
        recording_status_url: str | None = None,
    ) -> PlacedCall:
        params: dict = {
            "to": to,
            "from_": self._from_number,
            "url": instruction_url,
            "method": "GET",
        }
        if recording_status_url:
            params.update(
                record=True,
                recording_status_callback=recording_status_url,
                recording_status_callback_method="POST",
            )

        try:
            call = await asyncio.to_thread(self._client.calls.create, **params)
        except Exception as e:
            error = translate_provider_error(e)
            logger.warning(
                f"Twilio rejected call to {mask_phone_number(to)}: {error.error_code} ({e})"
            )
            raise error from e

        logger.info(f"Placed call {call.sid} to {mask_phone_number(to)}")
        return PlacedCall(sid=call.sid, status=call.status)

    async def send_sms(self, to: str, body: str) -> str:
        try:
            message = await asyncio.to_thread(
                self._client.messages.create,
                to=to,
                from_=self._from_number,
                body=body,
            )
        except Exception as e:
            error = translate_provider_error(e)
            logger.warning(
                f"Twilio rejected SMS to {mask_phone_number(to)}: {error.error_code} ({e})"
            )
            raise error from e

        logger.info(f"Sent SMS {message.sid} to {mask_phone_number(to)}")
        return message.sid

    async def fetch_recording(self, recording_sid: str) -> bytes:
        """
        Download a finished recording as WAV.

        Raises:
            RecordingFetchError: If the SID is malformed or the download fails
        """
        if not _RECORDING_SID.match(recording_sid or ""):
            raise RecordingFetchError("Malformed recording SID")

        url = (
            f"{TWILIO_API_BASE}/2010-04-01/Accounts/{self._account_sid}"
            f"/Recordings/{recording_sid}.wav"
        )
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(url, auth=(self._account_sid, self._auth_token))
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RecordingFetchError(
                f"Failed to fetch recording {recording_sid}: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise RecordingFetchError(f"Failed to fetch recording {recording_sid}: {e}") from e

        return response.content

    def verify_signature(self, url: str, params: dict[str, str], signature: str | None) -> bool:
        if not signature:
            return False
        return self._validator.validate(url, params, signature)


@lru_cache
def get_telephony_provider() -> TelephonyProvider:
    """
    FastAPI dependency returning the configured provider.

    Raises:
        TelephonyConfigurationError: If Twilio isn't configured
    """
    return TwilioProvider.from_settings()


__all__ = [
    "PlacedCall",
    "TelephonyProvider",
    "TwilioProvider",
    "get_telephony_provider",
]
