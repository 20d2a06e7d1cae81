"""
Telephony Module

Outbound calls, SMS and call recordings through Twilio, plus the public
webhook endpoints Twilio calls back into.

API Endpoints:
- POST /robocalls - Send a text-to-speech or audio robocall
- POST /robocalls/call-to-record - Record a message by phone
- GET /robocalls/call-to-record/{session_id} - Poll a recording session
- GET /robocalls/recordings - List saved recordings
- POST /robocalls/recordings - Upload an audio file to the library
- GET /robocalls/history - Robocall delivery history
- POST /robocalls/scheduled - Schedule a robocall (list and cancel too)
- /twilio/* - Webhooks (token-authorized, signature-checked for recordings)

Security Features:
- Single-purpose webhook tokens, stored as SHA-256 hashes, 1 hour TTL
- Twilio request signatures validated against the public URL
- Webhooks answer a bare 403 on authorization failure and never 500

Background Jobs (via APScheduler):
- sweep_webhook_tokens: deletes expired tokens
- expire_call_to_record_sessions: fails sessions past their lifetime
- send_scheduled_robocalls: dispatches scheduled robocalls that are due
"""

from .jobs import register_telephony_jobs
from .router import router
from .webhooks import router as webhooks_router

__all__ = ["router", "register_telephony_jobs", "webhooks_router"]
