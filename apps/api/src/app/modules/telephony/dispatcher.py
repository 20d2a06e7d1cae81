"""
Outbound Call Dispatcher

Places calls whose instructions Twilio fetches from the public webhook
endpoints.

Dispatch Flow:
1. Validate the destination and resolve sender number and public base URL
   (missing configuration raises TelephonyConfigurationError: fail fast)
2. Mint an instruction token, bound to the call-to-record session if any
3. Build the callback URL with the token as a query credential
4. For call-to-record, mint a second, independent token for the
   recording-status callback
5. Ask Twilio to place the call (recording enabled for call-to-record)
6. On acceptance, attach the call SID to the token(s)
7. On rejection, delete the minted token(s) and return a categorized failure

Nothing here retries. A transient provider failure comes back as a
retryable failure for the caller to act on, so a call is never placed twice.

Bulk dispatch handles recipients one at a time, in order, so provider rate
limits are respected and one failure never aborts the rest.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.modules.telephony.errors import (
    InvalidDestinationError,
    ProviderErrorCategory,
    ProviderRejectedError,
    TelephonyConfigurationError,
    TelephonyError,
)
from app.modules.telephony.models import WebhookTokenPurpose
from app.modules.telephony.phone import mask_phone_number
from app.modules.telephony.provider import TelephonyProvider
from app.modules.telephony.tokens import WebhookTokenStore

logger = logging.getLogger(__name__)

# Mount point of the public webhook router
WEBHOOK_PREFIX = "/api/v1/twilio"
RECORDING_STATUS_PATH = "/recording-status"

# Error code for a recipient whose dispatch failed inside this service
DISPATCH_FAILED = "DISPATCH_FAILED"


class InstructionVariant(str, Enum):
    """What the call does when it connects."""

    SPEAK_CODE = "speak_code"
    SPEAK_MESSAGE = "speak_message"
    PLAY_AUDIO = "play_audio"
    PROMPT_AND_RECORD = "prompt_and_record"


INSTRUCTION_PATHS: dict[InstructionVariant, str] = {
    InstructionVariant.SPEAK_CODE: "/voice-2fa",
    InstructionVariant.SPEAK_MESSAGE: "/robocall-tts",
    InstructionVariant.PLAY_AUDIO: "/robocall-audio",
    InstructionVariant.PROMPT_AND_RECORD: "/call-to-record",
}


@dataclass
class DispatchResult:
    """Outcome of one call attempt."""

    phone_number: str
    success: bool
    call_sid: str | None = None
    status: str | None = None
    error_code: str | None = None
    error_category: ProviderErrorCategory | None = None
    error_message: str | None = None
    provider_code: int | None = None
    retryable: bool = False


class CallDispatcher:
    """
    Mints webhook tokens and asks the provider to place calls.

    Args:
        provider: Telephony provider capability
        token_store: Where webhook tokens are minted
        server_url: Public base URL Twilio uses to reach the webhooks
            (defaults to settings.server_url)
    """

    def __init__(
        self,
        provider: TelephonyProvider,
        token_store: WebhookTokenStore,
        server_url: str | None = None,
    ):
        self._provider = provider
        self._tokens = token_store
        self._server_url = server_url if server_url is not None else settings.server_url

    def _base_url(self) -> str:
        if not self._server_url:
            raise TelephonyConfigurationError(
                "SERVER_URL must be set to a public URL Twilio can reach"
            )
        return self._server_url.rstrip("/")

    def _check_configuration(self) -> str:
        if not self._provider.sender_number:
            raise TelephonyConfigurationError("TWILIO_PHONE_NUMBER must be set")
        return self._base_url()

    @staticmethod
    def _callback_url(base_url: str, path: str, params: dict[str, str]) -> str:
        return f"{base_url}{WEBHOOK_PREFIX}{path}?{urlencode(params)}"

    async def _rollback(self, db: AsyncSession, tokens: list[str]) -> None:
        for token in tokens:
            try:
                await self._tokens.delete(db, token)
            except Exception as e:
                # Tokens that survive a failed rollback expire on their own
                await db.rollback()
                logger.error(f"Failed to delete webhook token after rejected call: {e}")

    async def dispatch(
        self,
        db: AsyncSession,
        to: str,
        variant: InstructionVariant,
        params: dict[str, str] | None = None,
        session_id: str | None = None,
    ) -> DispatchResult:
        """
        Place one call.

        Args:
            db: Database session used for the webhook tokens
            to: Destination in E.164 format
            variant: Instruction document the call will fetch
            params: Query parameters for the instruction endpoint
                (e.g. {"message": ..., "fromName": ...})
            session_id: Call-to-record session; required for PROMPT_AND_RECORD

        Returns:
            DispatchResult with the call SID, or a categorized failure

        Raises:
            InvalidDestinationError: If ``to`` is empty
            SQLAlchemyError: If a token can't be minted (tokens already minted
                for this call are deleted first)
            TelephonyConfigurationError: If sender number or public URL are unset
            ValueError: If PROMPT_AND_RECORD is requested without a session
        """
        destination = (to or "").strip()
        if not destination:
            raise InvalidDestinationError()
        if variant == InstructionVariant.PROMPT_AND_RECORD and not session_id:
            raise ValueError("A call-to-record dispatch requires a session_id")

        base_url = self._check_configuration()

        query = dict(params or {})
        if session_id:
            query["sessionId"] = session_id

        minted: list[str] = []
        recording_status_url = None
        try:
            instruction_token = await self._tokens.mint(
                db, WebhookTokenPurpose.INSTRUCTION, session_id=session_id
            )
            minted.append(instruction_token)

            if variant == InstructionVariant.PROMPT_AND_RECORD:
                recording_token = await self._tokens.mint(
                    db, WebhookTokenPurpose.RECORDING_STATUS, session_id=session_id
                )
                minted.append(recording_token)
                recording_status_url = self._callback_url(
                    base_url,
                    RECORDING_STATUS_PATH,
                    {"sessionId": session_id, "token": recording_token},
                )
        except Exception:
            await db.rollback()
            await self._rollback(db, minted)
            raise

        instruction_url = self._callback_url(
            base_url, INSTRUCTION_PATHS[variant], {**query, "token": instruction_token}
        )

        try:
            call = await self._provider.place_call(
                destination,
                instruction_url,
                recording_status_url=recording_status_url,
            )
        except TelephonyError as e:
            await self._rollback(db, minted)
            logger.warning(
                f"{variant.value} call to {mask_phone_number(destination)} failed: {e.error_code}"
            )
            return DispatchResult(
                phone_number=destination,
                success=False,
                error_code=e.error_code,
                error_category=e.category if isinstance(e, ProviderRejectedError) else None,
                error_message=e.message,
                provider_code=e.provider_code if isinstance(e, ProviderRejectedError) else None,
                retryable=e.retryable,
            )

        for token in minted:
            await self._tokens.attach_call_sid(db, token, call.sid)

        return DispatchResult(
            phone_number=destination,
            success=True,
            call_sid=call.sid,
            status=call.status,
        )

    async def dispatch_bulk(
        self,
        db: AsyncSession,
        recipients: list[str],
        variant: InstructionVariant,
        params: dict[str, str] | None = None,
    ) -> list[DispatchResult]:
        """
        Place one call per recipient, sequentially.

        Each recipient gets its own token. Any failure for one recipient,
        including a database error while minting its token, is recorded in
        its result and processing continues.

        Raises:
            TelephonyConfigurationError: Before any call, if misconfigured
        """
        self._check_configuration()

        results: list[DispatchResult] = []
        for recipient in recipients:
            try:
                result = await self.dispatch(db, recipient, variant, params)
            except InvalidDestinationError as e:
                result = DispatchResult(
                    phone_number=recipient,
                    success=False,
                    error_code=e.error_code,
                    error_category=ProviderErrorCategory.INVALID_NUMBER,
                    error_message=e.message,
                )
            except TelephonyConfigurationError:
                raise
            except Exception as e:
                logger.error(
                    f"{variant.value} dispatch to {mask_phone_number(recipient)} failed: {e}",
                    exc_info=True,
                )
                result = DispatchResult(
                    phone_number=recipient,
                    success=False,
                    error_code=DISPATCH_FAILED,
                    error_message="The call could not be placed. Please try again.",
                    retryable=True,
                )
            results.append(result)

        succeeded = sum(1 for r in results if r.success)
        logger.info(
            f"Bulk {variant.value} dispatch: {succeeded}/{len(results)} calls placed"
        )
        return results


__all__ = [
    "CallDispatcher",
    "DISPATCH_FAILED",
    "DispatchResult",
    "INSTRUCTION_PATHS",
    "InstructionVariant",
    "RECORDING_STATUS_PATH",
    "WEBHOOK_PREFIX",
]
