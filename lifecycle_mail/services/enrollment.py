"""Enrollment manager — turns lifecycle events into subscriptions."""

import logging

from lifecycle_mail.errors import DuplicateEnrollmentError, PersistenceError
from lifecycle_mail.models import EnrollmentResult, TriggerEvent
from lifecycle_mail.timing import next_due_at, utc_now

logger = logging.getLogger(__name__)


class EnrollmentManager:
    """Enrolls a user in every active, eligible workflow for an event.

    Each workflow is enrolled independently: a failure on one is reported
    in the result and the others still proceed.
    """

    def __init__(self, catalog, store, evaluator, profiles, processor, clock=utc_now):
        self._catalog = catalog
        self._store = store
        self._evaluator = evaluator
        self._profiles = profiles
        self._processor = processor
        self._clock = clock

    async def trigger(self, user_id: str, event: TriggerEvent | str,
                      metadata: dict | None = None) -> EnrollmentResult:
        event = TriggerEvent(event)
        result = EnrollmentResult()

        workflows = self._catalog.find_by_trigger(event)
        if not workflows:
            return result

        segments: set[str] | None = None

        for workflow in workflows:
            try:
                if self._store.find_active(user_id, workflow.id):
                    result.skipped[workflow.id] = "already_active"
                    continue

                if workflow.is_segmented:
                    if segments is None:
                        segments = self._profiles.get_user_segments(user_id)
                    if not self._evaluator.is_eligible(segments, workflow):
                        result.skipped[workflow.id] = "ineligible"
                        continue

                now = self._clock()
                first = workflow.steps[0]
                sub = self._store.create(
                    user_id=user_id,
                    workflow_id=workflow.id,
                    next_due_at=next_due_at(now, first.delay_days, first.delay_hours),
                    created_at=now,
                    triggered_by=event.value,
                    metadata=metadata,
                )
            except DuplicateEnrollmentError:
                # A concurrent trigger won the insert race
                result.skipped[workflow.id] = "already_active"
                continue
            except PersistenceError as e:
                logger.error("Enrollment of %s in %s failed: %s", user_id, workflow.id, e)
                result.errors[workflow.id] = str(e)
                continue

            result.subscriptions_created.append(sub.id)
            logger.info("Enrolled %s in %s (subscription %s)", user_id, workflow.id, sub.id)

            if first.is_immediate:
                await self._send_immediately(sub)

        return result

    async def _send_immediately(self, sub) -> None:
        """Deliver a zero-delay first step within the trigger call.

        A failure here leaves the subscription due, so the next tick retries.
        """
        try:
            outcome = await self._processor.process(sub)
        except Exception:
            logger.exception("Immediate send for subscription %s failed; left for next tick", sub.id)
            return
        logger.debug("Immediate send for subscription %s: %s", sub.id, outcome.value)
