"""Workflow engine — the explicit, dependency-injected entry point.

Construct one with ``build_engine()`` for production wiring, or pass test
doubles for the store, transport and profile accessor directly.
"""

import logging
from datetime import timedelta

from lifecycle_mail import config
from lifecycle_mail.models import BatchResult, EnrollmentResult, TriggerEvent
from lifecycle_mail.services.dispatcher import Dispatcher, StepProcessor
from lifecycle_mail.services.eligibility import EligibilityEvaluator
from lifecycle_mail.services.engagement import EngagementScorer
from lifecycle_mail.services.enrollment import EnrollmentManager
from lifecycle_mail.services.profiles import SupabaseProfiles
from lifecycle_mail.services.rendering import TemplateRenderer
from lifecycle_mail.services.store import SubscriptionStore
from lifecycle_mail.services.transport import QueueTransport, ResendTransport
from lifecycle_mail.timing import to_iso, utc_now

logger = logging.getLogger(__name__)

# Resend webhook event types we track
OPENED = "email.opened"
CLICKED = "email.clicked"
BOUNCED = "email.bounced"


class WorkflowEngine:
    def __init__(
        self,
        catalog,
        store,
        transport,
        profiles,
        renderer: TemplateRenderer | None = None,
        *,
        scorer: EngagementScorer | None = None,
        clock=utc_now,
        batch_size: int = 500,
        concurrency: int = 5,
    ):
        self.catalog = catalog
        self.store = store
        self.transport = transport
        self.profiles = profiles
        self.renderer = renderer or TemplateRenderer()
        self.scorer = scorer or EngagementScorer(store, clock=clock)
        self.evaluator = EligibilityEvaluator(profiles, self.scorer)
        self.clock = clock

        self.processor = StepProcessor(
            catalog, store, self.evaluator, profiles, self.renderer, transport, clock=clock,
        )
        self.enrollment = EnrollmentManager(
            catalog, store, self.evaluator, profiles, self.processor, clock=clock,
        )
        self.dispatcher = Dispatcher(
            self.processor, store, clock=clock, batch_size=batch_size, concurrency=concurrency,
        )

    def validate(self) -> None:
        """Fail fast if a catalog step references a template that doesn't exist."""
        self.renderer.validate(self.catalog.templates())

    # -- core operations ------------------------------------------------------

    async def trigger(self, user_id: str, event: TriggerEvent | str,
                      metadata: dict | None = None) -> EnrollmentResult:
        return await self.enrollment.trigger(user_id, event, metadata)

    async def process_due_workflows(self) -> BatchResult:
        return await self.dispatcher.process_due()

    # -- cancellation ---------------------------------------------------------

    def cancel_subscription(self, subscription_id: str, reason: str = "operator") -> bool:
        """Cancel one active subscription. False if it was not active."""
        cancelled = self.store.cancel(subscription_id, reason, self.clock())
        if cancelled:
            self.store.log_action("subscription_cancelled", "subscription", subscription_id, reason)
        return cancelled

    def unsubscribe(self, user_id: str) -> int:
        """Cancel every active subscription for a user. Returns count cancelled."""
        now = self.clock()
        count = 0
        for sub in self.store.active_for_user(user_id):
            if self.store.cancel(sub.id, "unsubscribed", now):
                count += 1

        if count:
            self.store.log_action("user_unsubscribed", "user", user_id, f"Cancelled {count} subscriptions")

        return count

    def cancel_stalled(self, older_than_days: int) -> int:
        """Cancel active subscriptions overdue by more than ``older_than_days``.

        Subscriptions stuck behind a condition that never becomes true stay
        due forever; this is the sweep that retires them.
        """
        now = self.clock()
        cutoff = now - timedelta(days=older_than_days)
        count = 0
        for row in self.store.due(cutoff):
            if self.store.cancel(row["id"], "stalled", now):
                count += 1
        if count:
            logger.info("Cancelled %d subscriptions overdue for %d+ days", count, older_than_days)
            self.store.log_action("stalled_cancelled", "subscription", "", f"Cancelled {count}")
        return count

    # -- engagement events ----------------------------------------------------

    def record_event(self, message_id: str, event_type: str) -> bool:
        """Record an email event (open, click, bounce) from a Resend webhook."""
        send = self.store.find_send(message_id)
        if not send:
            return False

        now = to_iso(self.clock())
        updates = {}

        if event_type == OPENED and not send.get("opened_at"):
            updates["opened_at"] = now
            updates["status"] = "opened"
        elif event_type == CLICKED and not send.get("clicked_at"):
            updates["clicked_at"] = now
            updates["status"] = "clicked"
            # A click implies an open even if the pixel was blocked
            if not send.get("opened_at"):
                updates["opened_at"] = now
        elif event_type == BOUNCED:
            updates["status"] = "bounced"
            self.store.cancel(send["subscription_id"], "bounced", self.clock())

        if updates:
            self.store.update_send(send["id"], updates)
            return True

        return False

    # -- reporting ------------------------------------------------------------

    def workflow_stats(self, workflow_id: str) -> dict:
        """Aggregate stats for a workflow, with per-variant send performance."""
        subs = self.store.for_workflow(workflow_id)

        total = len(subs)
        active = sum(1 for s in subs if s["status"] == "active")
        completed = sum(1 for s in subs if s["status"] == "completed")
        cancelled = sum(1 for s in subs if s["status"] == "cancelled")

        sends = self.store.sends_for_subscriptions([s["id"] for s in subs])
        variant_stats: dict[str, dict] = {}
        for send in sends:
            key = send.get("variant") or "default"
            v = variant_stats.setdefault(key, {"sends": 0, "opens": 0, "clicks": 0})
            v["sends"] += 1
            if send.get("opened_at"):
                v["opens"] += 1
            if send.get("clicked_at"):
                v["clicks"] += 1

        for v in variant_stats.values():
            v["open_rate"] = round(v["opens"] / v["sends"] * 100, 1) if v["sends"] else 0
            v["click_rate"] = round(v["clicks"] / v["sends"] * 100, 1) if v["sends"] else 0

        return {
            "total": total,
            "active": active,
            "completed": completed,
            "cancelled": cancelled,
            "completion_rate": round(completed / total * 100, 1) if total else 0,
            "variants": variant_stats,
        }


def build_transport():
    """Pick the configured transport. Without a Resend key, fall back to the queue."""
    if config.EMAIL_TRANSPORT == "resend":
        if config.RESEND_API_KEY:
            return ResendTransport(config.RESEND_API_KEY, config.MAIL_FROM_EMAIL, config.MAIL_FROM_NAME)
        logger.warning("RESEND_API_KEY not set; queuing messages to email_queue instead")
    return QueueTransport()


def build_engine() -> WorkflowEngine:
    """Wire the engine from configuration."""
    from lifecycle_mail.workflows import CATALOG

    return WorkflowEngine(
        CATALOG,
        SubscriptionStore(),
        build_transport(),
        SupabaseProfiles(),
        TemplateRenderer(config.EMAIL_TEMPLATES_DIR),
        batch_size=config.DISPATCH_BATCH_SIZE,
        concurrency=config.DISPATCH_CONCURRENCY,
    )
