"""Subscription store — Supabase persistence for subscriptions and sends.

Every write goes through ``_guard`` so PostgREST failures surface as
``PersistenceError`` (per record) instead of leaking client exceptions.
Advancing writes are conditional on the row still being active at the
step the caller read, so two runners can never both advance it.
"""

import logging
from contextlib import contextmanager
from datetime import datetime

import httpx
from postgrest.exceptions import APIError

from lifecycle_mail import supabase_client as db
from lifecycle_mail.errors import BatchReadError, DuplicateEnrollmentError, PersistenceError
from lifecycle_mail.models import QueuedMessage, Subscription, SubscriptionStatus
from lifecycle_mail.timing import to_iso

logger = logging.getLogger(__name__)

SUBSCRIPTIONS = "workflow_subscriptions"
SENDS = "workflow_sends"


@contextmanager
def _guard(what: str):
    try:
        yield
    except APIError as e:
        if e.code == db.UNIQUE_VIOLATION:
            raise DuplicateEnrollmentError(f"{what}: {e.message}") from e
        raise PersistenceError(f"{what}: {e.message or e}") from e
    except httpx.HTTPError as e:
        # Connection resets and timeouts never reach PostgREST
        raise PersistenceError(f"{what}: {e}") from e


class SubscriptionStore:
    """CRUD over workflow_subscriptions and workflow_sends."""

    # -- subscriptions ------------------------------------------------------

    def get(self, subscription_id: str) -> Subscription | None:
        with _guard(f"load subscription {subscription_id}"):
            row = db.select_one(SUBSCRIPTIONS, match={"id": subscription_id})
        return Subscription.from_row(row) if row else None

    def find_active(self, user_id: str, workflow_id: str) -> Subscription | None:
        with _guard(f"lookup {user_id}/{workflow_id}"):
            row = db.select_one(SUBSCRIPTIONS, match={
                "user_id": user_id,
                "workflow_id": workflow_id,
                "status": SubscriptionStatus.ACTIVE.value,
            })
        return Subscription.from_row(row) if row else None

    def create(
        self,
        user_id: str,
        workflow_id: str,
        next_due_at: datetime,
        created_at: datetime,
        triggered_by: str = "",
        metadata: dict | None = None,
    ) -> Subscription:
        """Insert an active subscription.

        Raises DuplicateEnrollmentError when the partial unique index on
        (user_id, workflow_id) WHERE status = 'active' rejects the row.
        """
        with _guard(f"enroll {user_id} in {workflow_id}"):
            row = db.insert(SUBSCRIPTIONS, {
                "user_id": user_id,
                "workflow_id": workflow_id,
                "triggered_by": triggered_by,
                "status": SubscriptionStatus.ACTIVE.value,
                "current_step": 0,
                "send_count": 0,
                "next_due_at": to_iso(next_due_at),
                "created_at": to_iso(created_at),
                "metadata": metadata or {},
            })
        if not row:
            raise PersistenceError(f"enroll {user_id} in {workflow_id}: insert returned no row")
        return Subscription.from_row(row)

    def due(self, now: datetime, limit: int | None = None,
            after: tuple[str, str] | None = None) -> list[dict]:
        """Raw rows of active subscriptions due at ``now``, oldest first.

        Rows are ordered by (next_due_at, id). Pass the last row's pair as
        ``after`` to read the next page; rows that stay due without changing
        (stalled ones) are then stepped over instead of re-read.
        """
        try:
            q = db._table(SUBSCRIPTIONS).select("*")
            q = q.eq("status", SubscriptionStatus.ACTIVE.value).lte("next_due_at", to_iso(now))
            if after:
                due_at, last_id = after
                q = q.or_(
                    f'next_due_at.gt."{due_at}",'
                    f'and(next_due_at.eq."{due_at}",id.gt."{last_id}")'
                )
            q = q.order("next_due_at").order("id")
            if limit:
                q = q.limit(limit)
            result = q.execute()
        except Exception as e:
            raise BatchReadError(f"Could not read due subscriptions: {e}") from e
        return result.data or []

    def transition(self, sub: Subscription, changes: dict) -> bool:
        """Apply ``changes`` only if the row is still active at ``sub.current_step``.

        Returns False when another runner got there first.
        """
        with _guard(f"update subscription {sub.id}"):
            row = db.update(SUBSCRIPTIONS, changes, {
                "id": sub.id,
                "status": SubscriptionStatus.ACTIVE.value,
                "current_step": sub.current_step,
            })
        return bool(row)

    def cancel(self, subscription_id: str, reason: str, at: datetime) -> bool:
        """Cancel an active subscription. False if it was not active."""
        with _guard(f"cancel subscription {subscription_id}"):
            row = db.update(SUBSCRIPTIONS, {
                "status": SubscriptionStatus.CANCELLED.value,
                "next_due_at": None,
                "cancelled_at": to_iso(at),
                "cancel_reason": reason,
            }, {"id": subscription_id, "status": SubscriptionStatus.ACTIVE.value})
        return bool(row)

    def active_for_user(self, user_id: str) -> list[Subscription]:
        with _guard(f"list subscriptions for {user_id}"):
            rows = db.select(SUBSCRIPTIONS, match={
                "user_id": user_id,
                "status": SubscriptionStatus.ACTIVE.value,
            })
        return [Subscription.from_row(r) for r in rows]

    def for_workflow(self, workflow_id: str) -> list[dict]:
        with _guard(f"list subscriptions for {workflow_id}"):
            return db.select(SUBSCRIPTIONS, match={"workflow_id": workflow_id})

    # -- sends --------------------------------------------------------------

    def record_send(self, sub: Subscription, message: QueuedMessage,
                    message_id: str, sent_at: datetime) -> dict:
        """Record a delivered step. Keyed by idempotency key, so replays collapse."""
        with _guard(f"record send for {sub.id} step {message.step_number}"):
            return db.upsert(SENDS, {
                "subscription_id": sub.id,
                "user_id": sub.user_id,
                "workflow_id": sub.workflow_id,
                "step_id": message.step_id,
                "step_number": message.step_number,
                "variant": message.variant,
                "subject": message.subject,
                "message_id": message_id,
                "idempotency_key": message.idempotency_key,
                "status": "sent",
                "sent_at": to_iso(sent_at),
            }, on_conflict="idempotency_key")

    def find_send(self, message_id: str) -> dict | None:
        with _guard(f"lookup send {message_id}"):
            return db.select_one(SENDS, match={"message_id": message_id})

    def update_send(self, send_id: str, changes: dict) -> dict:
        with _guard(f"update send {send_id}"):
            return db.update(SENDS, changes, {"id": send_id})

    def sends_for_user(self, user_id: str) -> list[dict]:
        with _guard(f"list sends for {user_id}"):
            return db.select(SENDS, match={"user_id": user_id})

    def sends_for_subscriptions(self, subscription_ids: list[str]) -> list[dict]:
        with _guard("list sends"):
            return db.select_in(SENDS, "subscription_id", subscription_ids)

    # -- audit --------------------------------------------------------------

    def log_action(self, action: str, entity_type: str = "", entity_id: str = "",
                   details: str = "") -> None:
        with _guard(f"audit {action}"):
            db.log_action(action, entity_type, entity_id, details)
