"""
Twilio Webhook Router

Public endpoints Twilio calls while a call is in progress. They carry no
user authentication; each request is authorized by a webhook token minted
when the call was dispatched.

Endpoints:
- GET /twilio/voice-2fa?code=&token= - Speak a 2FA code
- GET /twilio/robocall-tts?message=&fromName=&token= - Speak a message
- GET /twilio/robocall-audio?audioUrl=&fromName=&token= - Play an audio file
- GET /twilio/call-to-record?sessionId=&token= - Prompt for a recording
- POST /twilio/recording-status?sessionId=&token= - Recording finished

Security:
- Token must exist, be unexpired, and match the endpoint's purpose; session
  endpoints also require the token's session to match sessionId
- recording-status additionally requires a valid X-Twilio-Signature computed
  over the public URL (SERVER_URL + path + query), so it survives
  TLS-terminating proxies
- Authorization failures get a bare 403: no body, no reason
- Everything else gets 200 with a TwiML document. Internal errors are logged
  and absorbed so Twilio never sees a 500 and never retries into a failure
"""

import logging
from collections.abc import Callable

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.modules.telephony import twiml
from app.modules.telephony.dependencies import get_ingestion_pipeline, get_token_store
from app.modules.telephony.ingestion import IngestionOutcome, RecordingIngestionPipeline
from app.modules.telephony.models import WebhookTokenPurpose
from app.modules.telephony.tokens import WebhookTokenStore

logger = logging.getLogger(__name__)

router = APIRouter()

TWIML_MEDIA_TYPE = "application/xml"
SIGNATURE_HEADER = "X-Twilio-Signature"


def _twiml_response(document: str) -> Response:
    return Response(content=document, media_type=TWIML_MEDIA_TYPE)


def _forbidden() -> Response:
    return Response(status_code=status.HTTP_403_FORBIDDEN)


def public_request_url(request: Request) -> str:
    """
    The URL Twilio signed: the configured public base URL plus the request's
    path and query string. Falls back to the inbound URL when SERVER_URL is
    unset.
    """
    if not settings.server_url:
        return str(request.url)

    url = f"{settings.server_url.rstrip('/')}{request.url.path}"
    if request.url.query:
        url = f"{url}?{request.url.query}"
    return url


async def _instruction(
    endpoint: str,
    db: AsyncSession,
    token_store: WebhookTokenStore,
    token: str | None,
    render: Callable[[], str],
    session_id: str | None = None,
) -> Response:
    try:
        valid = await token_store.validate(
            db, token, WebhookTokenPurpose.INSTRUCTION, session_id=session_id
        )
    except Exception as e:
        logger.error(f"{endpoint}: token validation failed: {e}", exc_info=True)
        return _forbidden()

    if not valid:
        logger.warning(f"Rejected {endpoint} webhook: invalid or expired token")
        return _forbidden()

    try:
        return _twiml_response(render())
    except ValueError as e:
        logger.warning(f"{endpoint}: invalid instruction parameters: {e}")
        return _twiml_response(twiml.empty_response())


@router.get("/voice-2fa", include_in_schema=False)
async def voice_two_factor(
    code: str = Query(""),
    token: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    token_store: WebhookTokenStore = Depends(get_token_store),
) -> Response:
    """Speak a verification code."""
    return await _instruction(
        "voice-2fa",
        db,
        token_store,
        token,
        lambda: twiml.speak_code(code, settings.sender_display_name),
    )


@router.get("/robocall-tts", include_in_schema=False)
async def robocall_text_to_speech(
    message: str = Query(""),
    from_name: str | None = Query(None, alias="fromName"),
    token: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    token_store: WebhookTokenStore = Depends(get_token_store),
) -> Response:
    """Speak a robocall message."""
    return await _instruction(
        "robocall-tts",
        db,
        token_store,
        token,
        lambda: twiml.speak_message(message, from_name or settings.sender_display_name),
    )


@router.get("/robocall-audio", include_in_schema=False)
async def robocall_audio(
    audio_url: str = Query("", alias="audioUrl"),
    from_name: str | None = Query(None, alias="fromName"),
    token: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    token_store: WebhookTokenStore = Depends(get_token_store),
) -> Response:
    """Play a robocall audio file."""
    return await _instruction(
        "robocall-audio",
        db,
        token_store,
        token,
        lambda: twiml.play_audio(audio_url, from_name or settings.sender_display_name),
    )


@router.get("/call-to-record", include_in_schema=False)
async def call_to_record(
    session_id: str | None = Query(None, alias="sessionId"),
    token: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    token_store: WebhookTokenStore = Depends(get_token_store),
) -> Response:
    """Prompt the callee to record a message."""
    if not session_id:
        logger.warning("Rejected call-to-record webhook: missing sessionId")
        return _forbidden()

    return await _instruction(
        "call-to-record",
        db,
        token_store,
        token,
        lambda: twiml.prompt_and_record(
            settings.recording_max_length_seconds, settings.recording_finish_key
        ),
        session_id=session_id,
    )


@router.post("/recording-status", include_in_schema=False)
async def recording_status(
    request: Request,
    session_id: str | None = Query(None, alias="sessionId"),
    token: str | None = Query(None),
    db: AsyncSession = Depends(get_db),
    pipeline: RecordingIngestionPipeline | None = Depends(get_ingestion_pipeline),
) -> Response:
    """Ingest a finished call-to-record recording."""
    if pipeline is None:
        logger.error("Rejected recording-status webhook: telephony or storage not configured")
        return _forbidden()

    try:
        form = await request.form()
        params = {key: str(value) for key, value in form.items()}
        outcome = await pipeline.handle(
            db,
            token=token,
            session_id=session_id,
            url=public_request_url(request),
            form=params,
            signature=request.headers.get(SIGNATURE_HEADER),
        )
    except Exception as e:
        logger.error(
            f"recording-status webhook for session {session_id} failed: {e}", exc_info=True
        )
        return _twiml_response(twiml.empty_response())

    if outcome == IngestionOutcome.REJECTED:
        return _forbidden()

    return _twiml_response(twiml.empty_response())

