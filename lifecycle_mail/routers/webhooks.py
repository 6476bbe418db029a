"""Webhooks — lifecycle trigger ingestion and Resend engagement events."""

import logging
import time
from collections import defaultdict

from fastapi import APIRouter, Header, HTTPException, Request

from lifecycle_mail.config import WEBHOOK_SECRET
from lifecycle_mail.engine import BOUNCED, CLICKED, OPENED
from lifecycle_mail.models import TriggerEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks")

_MAX_USER_ID_LEN = 128

# In-memory rate limiter: {ip: [timestamp, ...]}
_rate_buckets: dict[str, list[float]] = defaultdict(list)
_RATE_LIMIT = 120      # max requests per window
_RATE_WINDOW = 60      # window in seconds


def _check_rate_limit(request: Request) -> None:
    """Raise 429 if IP exceeds rate limit. Simple sliding window."""
    ip = request.client.host if request.client else "unknown"
    now = time.monotonic()
    bucket = _rate_buckets[ip]
    # Prune old entries
    cutoff = now - _RATE_WINDOW
    _rate_buckets[ip] = bucket = [t for t in bucket if t > cutoff]
    if len(bucket) >= _RATE_LIMIT:
        raise HTTPException(status_code=429, detail="Rate limit exceeded")
    bucket.append(now)


def check_secret(authorization: str = Header("")) -> None:
    """Require the shared bearer secret. Usable as a FastAPI dependency."""
    if WEBHOOK_SECRET:
        expected = f"Bearer {WEBHOOK_SECRET}"
        if authorization != expected:
            raise HTTPException(status_code=401, detail="Invalid webhook secret")


@router.post("/trigger")
async def trigger_webhook(
    request: Request,
    authorization: str = Header(""),
):
    """Receive a lifecycle event from the app backend.

    Payload: { user_id, event, metadata? }
    Enrolls the user in every active, eligible workflow for the event.
    """
    _check_rate_limit(request)
    check_secret(authorization)

    body = await request.json()
    user_id = str(body.get("user_id") or "").strip()
    if not user_id or len(user_id) > _MAX_USER_ID_LEN:
        raise HTTPException(status_code=400, detail="user_id required")

    try:
        event = TriggerEvent(body.get("event", ""))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unknown event: {body.get('event')!r}")

    metadata = body.get("metadata") or {}
    if not isinstance(metadata, dict):
        raise HTTPException(status_code=400, detail="metadata must be an object")

    engine = request.app.state.engine
    result = await engine.trigger(user_id, event, metadata)

    logger.info(
        "Trigger %s for %s: created %d, skipped %d, errors %d",
        event.value, user_id, len(result.subscriptions_created), len(result.skipped), len(result.errors),
    )
    return result.to_dict()


@router.post("/resend")
async def resend_webhook(
    request: Request,
    authorization: str = Header(""),
):
    """Receive Resend email event webhooks (opens, clicks, bounces)."""
    _check_rate_limit(request)
    check_secret(authorization)

    body = await request.json()

    event_type = body.get("type", "")
    data = body.get("data", {})

    # Resend sends email_id in data
    message_id = data.get("email_id", "")
    if not message_id:
        return {"status": "ignored", "reason": "no email_id"}

    if event_type in (OPENED, CLICKED, BOUNCED):
        success = request.app.state.engine.record_event(message_id, event_type)
        return {"status": "recorded" if success else "not_found"}

    return {"status": "ignored", "reason": f"unhandled event: {event_type}"}
