"""
Telephony Dependencies

FastAPI dependencies wiring the token store, provider, storage, dispatcher
and ingestion pipeline together. Tests override these with fakes.
"""

import logging

from fastapi import Depends, HTTPException, status

from app.core.config import settings
from app.core.storage import ObjectStorage, StorageError, get_storage
from app.modules.telephony.dispatcher import CallDispatcher
from app.modules.telephony.errors import TelephonyConfigurationError
from app.modules.telephony.ingestion import RecordingIngestionPipeline
from app.modules.telephony.provider import TelephonyProvider, get_telephony_provider
from app.modules.telephony.tokens import WebhookTokenStore

logger = logging.getLogger(__name__)


def _not_configured(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": "TELEPHONY_NOT_CONFIGURED", "message": message},
    )


def get_token_store() -> WebhookTokenStore:
    return WebhookTokenStore()


def get_provider() -> TelephonyProvider:
    """Provider for application-facing endpoints; misconfiguration is a 500."""
    try:
        return get_telephony_provider()
    except TelephonyConfigurationError as e:
        logger.error(f"Telephony is not configured: {e.message}")
        raise _not_configured(e.message) from e


def get_optional_provider() -> TelephonyProvider | None:
    """Provider for webhooks, which must never answer 500."""
    try:
        return get_telephony_provider()
    except TelephonyConfigurationError as e:
        logger.error(f"Telephony is not configured: {e.message}")
        return None


def get_object_storage() -> ObjectStorage:
    try:
        return get_storage()
    except StorageError as e:
        logger.error(f"Object storage is not configured: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "STORAGE_NOT_CONFIGURED", "message": str(e)},
        ) from e


def get_call_dispatcher(
    provider: TelephonyProvider = Depends(get_provider),
    token_store: WebhookTokenStore = Depends(get_token_store),
) -> CallDispatcher:
    return CallDispatcher(provider, token_store)


def get_ingestion_pipeline(
    provider: TelephonyProvider | None = Depends(get_optional_provider),
    token_store: WebhookTokenStore = Depends(get_token_store),
) -> RecordingIngestionPipeline | None:
    """The pipeline, or None when Twilio or storage aren't configured."""
    if provider is None:
        return None
    try:
        storage = get_storage()
    except StorageError as e:
        logger.error(f"Object storage is not configured: {e}")
        return None

    return RecordingIngestionPipeline(
        provider,
        storage,
        token_store,
        verify_signatures=settings.signature_validation_enabled,
    )
