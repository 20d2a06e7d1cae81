from fastapi import APIRouter

from app.modules.telephony import router as robocalls_router
from app.modules.telephony import webhooks_router
from app.modules.two_factor import router as two_factor_router

api_router = APIRouter()

api_router.include_router(two_factor_router, prefix="/auth/2fa", tags=["Two-Factor Authentication"])

api_router.include_router(robocalls_router, prefix="/robocalls", tags=["Robocalls"])

# Public, token-authorized callbacks from Twilio
api_router.include_router(webhooks_router, prefix="/twilio", tags=["Twilio Webhooks"])
