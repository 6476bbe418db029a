"""APScheduler — runs the due-workflow tick on a fixed interval."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from lifecycle_mail.config import DISPATCH_INTERVAL_MINUTES, STALE_SUBSCRIPTION_DAYS
from lifecycle_mail.errors import BatchReadError

logger = logging.getLogger(__name__)


def create_scheduler(engine) -> AsyncIOScheduler:
    """Build a scheduler bound to ``engine``. Not started."""
    scheduler = AsyncIOScheduler()

    async def process_workflows():
        """Process due workflow steps."""
        try:
            result = await engine.process_due_workflows()
        except BatchReadError as e:
            logger.error("Workflow processing failed: %s", e)
            return
        if result.processed_count > 0:
            logger.info(
                "Workflow processing: %d processed, %d sent, %d completed, %d stalled, %d errors",
                result.processed_count,
                result.sent,
                result.completed,
                result.stalled,
                len(result.errors),
            )

    # max_instances=1 keeps a slow batch from overlapping the next tick
    scheduler.add_job(
        process_workflows,
        "interval",
        minutes=DISPATCH_INTERVAL_MINUTES,
        id="process_workflows",
        max_instances=1,
        coalesce=True,
    )

    if STALE_SUBSCRIPTION_DAYS > 0:
        def cancel_stalled():
            """Retire subscriptions stuck behind unmet conditions."""
            try:
                engine.cancel_stalled(STALE_SUBSCRIPTION_DAYS)
            except BatchReadError as e:
                logger.error("Stalled-subscription sweep failed: %s", e)

        scheduler.add_job(cancel_stalled, "interval", days=1, id="cancel_stalled",
                          max_instances=1, coalesce=True)

    return scheduler
