"""Outbound transports. Both are idempotent on the message's idempotency key."""

import asyncio
import logging
from typing import Protocol

import httpx
import requests
import resend
from postgrest.exceptions import APIError
from resend.exceptions import ResendError

from lifecycle_mail import supabase_client as db
from lifecycle_mail.errors import TransportError
from lifecycle_mail.models import QueuedMessage, TransportResult
from lifecycle_mail.timing import to_iso

logger = logging.getLogger(__name__)

QUEUE = "email_queue"


class Transport(Protocol):
    async def send(self, message: QueuedMessage) -> TransportResult: ...


class ResendTransport:
    """Send via Resend, forwarding the idempotency key so retries collapse."""

    def __init__(self, api_key: str, from_email: str, from_name: str):
        self._api_key = api_key
        self._sender = f"{from_name} <{from_email}>"

    async def send(self, message: QueuedMessage) -> TransportResult:
        try:
            # Resend's client is blocking; keep it off the event loop
            message_id = await asyncio.to_thread(self._send_sync, message)
        except TransportError as e:
            return TransportResult(success=False, error=str(e))
        return TransportResult(success=True, message_id=message_id)

    def _send_sync(self, message: QueuedMessage) -> str:
        resend.api_key = self._api_key
        try:
            result = resend.Emails.send(
                {
                    "from": self._sender,
                    "to": [message.recipient],
                    "subject": message.subject,
                    "html": message.html_body,
                    "text": message.text_body,
                    "tags": [
                        {"name": "workflow", "value": message.workflow_id},
                        {"name": "step", "value": str(message.step_number)},
                    ],
                },
                {"idempotency_key": message.idempotency_key},
            )
        except ResendError as e:
            raise TransportError(f"Resend rejected {message.idempotency_key}: {e}") from e
        except requests.RequestException as e:
            raise TransportError(f"Resend unreachable for {message.idempotency_key}: {e}") from e
        return result.get("id", "")


class QueueTransport:
    """Hand messages to a downstream sender through the email_queue table.

    The queue has a unique index on idempotency_key; a replay finds the
    existing row and reports a duplicate instead of enqueuing twice.
    """

    def __init__(self, priority: int = 3):
        self._priority = priority

    async def send(self, message: QueuedMessage) -> TransportResult:
        try:
            existing = db.select_one(QUEUE, match={"idempotency_key": message.idempotency_key})
            if existing:
                return TransportResult(success=True, duplicate=True, message_id=str(existing["id"]))
            row = db.insert(QUEUE, {
                "recipient_email": message.recipient,
                "subject_line": message.subject,
                "html_content": message.html_body,
                "text_content": message.text_body,
                "sequence_id": message.workflow_id,
                "sequence_step_id": message.step_id,
                "variant": message.variant,
                "idempotency_key": message.idempotency_key,
                "scheduled_at": to_iso(message.scheduled_at),
                "priority": self._priority,
                "status": "pending",
            })
        except APIError as e:
            if e.code == db.UNIQUE_VIOLATION:
                return TransportResult(success=True, duplicate=True)
            logger.warning("Queue insert failed for %s: %s", message.idempotency_key, e.message)
            return TransportResult(success=False, error=e.message or str(e))
        except httpx.HTTPError as e:
            logger.warning("Queue insert failed for %s: %s", message.idempotency_key, e)
            return TransportResult(success=False, error=str(e))
        return TransportResult(success=True, message_id=str(row.get("id", "")))
