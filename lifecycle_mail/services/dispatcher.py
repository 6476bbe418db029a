"""Step processor and due-batch dispatcher.

A subscription moves active(n) -> active(n+1) -> ... -> completed, or to
cancelled when the user drops out of the workflow's segments, has no
address, or the workflow disappears. A step whose conditions are false is
left untouched and re-evaluated on every tick until they hold or someone
cancels the subscription. A transport failure is likewise left for the next
tick; the transport owns backoff.
"""

import asyncio
import hashlib
import logging

from lifecycle_mail.errors import BatchReadError
from lifecycle_mail.models import (
    BatchResult,
    QueuedMessage,
    StepDefinition,
    StepOutcome,
    Subscription,
    SubscriptionStatus,
    TransportResult,
    WorkflowDefinition,
)
from lifecycle_mail.timing import next_due_at, to_iso, utc_now

logger = logging.getLogger(__name__)


def idempotency_key(subscription_id: str, step_number: int) -> str:
    """Deterministic key for one logical send."""
    return hashlib.sha256(f"{subscription_id}:{step_number}".encode()).hexdigest()


def select_variant(user_id: str, step: StepDefinition) -> str:
    """Stable A/B pick: the same user always gets the same variant of a step."""
    if not step.variants:
        return ""
    digest = hashlib.sha256(f"{user_id}:{step.id}".encode()).digest()
    return step.variants[int.from_bytes(digest[:8], "big") % len(step.variants)]


class StepProcessor:
    """Advances a single subscription by at most one step."""

    def __init__(self, catalog, store, evaluator, profiles, renderer, transport, clock=utc_now):
        self._catalog = catalog
        self._store = store
        self._evaluator = evaluator
        self._profiles = profiles
        self._renderer = renderer
        self._transport = transport
        self._clock = clock

    async def process(self, sub: Subscription) -> StepOutcome:
        if sub.status is not SubscriptionStatus.ACTIVE:
            return StepOutcome.CONFLICT

        now = self._clock()
        workflow = self._catalog.get(sub.workflow_id)
        if workflow is None:
            return self._cancel(sub, "workflow_removed", now)

        step = workflow.get_step(sub.current_step + 1)
        if step is None:
            return self._complete(sub, now)

        if workflow.is_segmented:
            segments = self._profiles.get_user_segments(sub.user_id)
            if not self._evaluator.is_eligible(segments, workflow):
                return self._cancel(sub, "ineligible", now)

        if not self._evaluator.check_conditions(sub.user_id, step.conditions):
            logger.debug("Subscription %s step %d: conditions not met", sub.id, step.step_number)
            return StepOutcome.STALLED

        recipient = self._profiles.get_recipient(sub.user_id)
        if recipient is None:
            return self._cancel(sub, "recipient_missing", now)

        variant = select_variant(sub.user_id, step)
        subject, html, text = self._renderer.render(sub, step, recipient, variant)
        message = QueuedMessage(
            recipient=recipient.email,
            subject=subject,
            html_body=html,
            text_body=text,
            workflow_id=workflow.id,
            step_id=step.id,
            step_number=step.step_number,
            idempotency_key=idempotency_key(sub.id, step.step_number),
            scheduled_at=sub.next_due_at or now,
            variant=variant,
        )

        result = await self._transport.send(message)
        if not result.acknowledged:
            logger.warning(
                "Send failed for subscription %s step %d, retrying next tick: %s",
                sub.id, step.step_number, result.error,
            )
            return StepOutcome.FAILED

        return self._advance(sub, workflow, message, result)

    def _advance(self, sub: Subscription, workflow: WorkflowDefinition,
                 message: QueuedMessage, result: TransportResult) -> StepOutcome:
        sent_at = self._clock()
        # Keyed by idempotency key: a replayed send overwrites, never duplicates
        self._store.record_send(sub, message, result.message_id, sent_at)

        changes = {
            "current_step": message.step_number,
            "send_count": sub.send_count + 1,
            "last_sent_at": to_iso(sent_at),
        }
        following = workflow.get_step(message.step_number + 1)
        if following is not None:
            changes["next_due_at"] = to_iso(
                next_due_at(sent_at, following.delay_days, following.delay_hours)
            )
        else:
            changes["status"] = SubscriptionStatus.COMPLETED.value
            changes["next_due_at"] = None
            changes["completed_at"] = to_iso(sent_at)

        if not self._store.transition(sub, changes):
            logger.info(
                "Subscription %s step %d already advanced elsewhere", sub.id, message.step_number,
            )
            return StepOutcome.CONFLICT

        sub.current_step = message.step_number
        sub.send_count += 1
        sub.last_sent_at = sent_at
        if following is None:
            sub.status = SubscriptionStatus.COMPLETED
            sub.next_due_at = None
            sub.completed_at = sent_at
            logger.info("Subscription %s completed %s", sub.id, workflow.id)
        else:
            sub.next_due_at = next_due_at(sent_at, following.delay_days, following.delay_hours)
        return StepOutcome.SENT

    def _complete(self, sub: Subscription, now) -> StepOutcome:
        ok = self._store.transition(sub, {
            "status": SubscriptionStatus.COMPLETED.value,
            "next_due_at": None,
            "completed_at": to_iso(now),
        })
        if not ok:
            return StepOutcome.CONFLICT
        sub.status = SubscriptionStatus.COMPLETED
        sub.next_due_at = None
        sub.completed_at = now
        return StepOutcome.COMPLETED

    def _cancel(self, sub: Subscription, reason: str, now) -> StepOutcome:
        if not self._store.cancel(sub.id, reason, now):
            return StepOutcome.CONFLICT
        logger.info("Subscription %s cancelled: %s", sub.id, reason)
        sub.status = SubscriptionStatus.CANCELLED
        sub.next_due_at = None
        sub.cancelled_at = now
        sub.cancel_reason = reason
        return StepOutcome.CANCELLED


class Dispatcher:
    """Runs one tick over every due subscription.

    Overlapping ticks in the same process are skipped rather than queued.
    """

    def __init__(self, processor: StepProcessor, store, clock=utc_now,
                 batch_size: int = 500, concurrency: int = 5):
        self._processor = processor
        self._store = store
        self._clock = clock
        self._batch_size = max(batch_size, 1)
        self._concurrency = max(concurrency, 1)
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def process_due(self) -> BatchResult:
        """Process every due subscription, one page of ``batch_size`` rows at a time.

        Raises BatchReadError only if the first page cannot be read.
        """
        if self._lock.locked():
            logger.info("process_due_workflows already running, skipping")
            return BatchResult(skipped=True)

        async with self._lock:
            now = self._clock()
            result = BatchResult()
            semaphore = asyncio.Semaphore(self._concurrency)

            async def run(row: dict):
                async with semaphore:
                    return await self._process_row(row)

            # Page through the whole due set so stalled rows at the head
            # never hide newer work behind them
            cursor = None
            while True:
                try:
                    rows = self._store.due(now, limit=self._batch_size, after=cursor)
                except BatchReadError as e:
                    if cursor is None:
                        raise
                    logger.error("Stopped after %d due rows: %s", result.processed_count, e)
                    result.errors.append(str(e))
                    break
                if not rows:
                    break

                result.processed_count += len(rows)
                # Taken before processing, which rewrites next_due_at
                cursor = (rows[-1]["next_due_at"], rows[-1]["id"])

                for outcome, error in await asyncio.gather(*(run(r) for r in rows)):
                    result.record(outcome)
                    if error:
                        result.errors.append(error)

                if len(rows) < self._batch_size:
                    break
            return result

    async def _process_row(self, row: dict) -> tuple[StepOutcome, str | None]:
        sub_id = row.get("id")
        try:
            sub = Subscription.from_row(row)
            return await self._processor.process(sub), None
        except Exception as e:
            logger.exception("Error processing subscription %s", sub_id)
            return StepOutcome.FAILED, f"{sub_id}: {e}"
