"""FastAPI application factory."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from lifecycle_mail.routers import unsubscribe, webhooks, workflows

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    from lifecycle_mail.engine import build_engine
    from lifecycle_mail.scheduler import create_scheduler

    engine = build_engine()
    # Missing templates are a configuration error: refuse to start
    engine.validate()
    app.state.engine = engine

    scheduler = create_scheduler(engine)
    scheduler.start()
    logger.info("Scheduler started — processing due workflows on an interval")

    yield

    scheduler.shutdown(wait=False)


def create_app(engine=None) -> FastAPI:
    """Build the app. Passing ``engine`` skips the production lifespan."""
    app = FastAPI(
        title="Lifecycle Mail",
        description="Trigger-based email workflows: enrollment, scheduling and delivery.",
        version="1.0.0",
        lifespan=None if engine is not None else lifespan,
    )
    if engine is not None:
        app.state.engine = engine

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    for r in [webhooks, workflows, unsubscribe]:
        app.include_router(r.router)

    return app
