from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI
from fastapi.middleware.gzip import GZipMiddleware

from publisher.core.config import settings
from publisher.core.errors import init_sentry
from publisher.core.logging_config import get_logger
from publisher.db import create_db_and_tables, engine
from publisher.api import publishing_queue
from publisher.services.connectors import ConnectorRegistry
from publisher.services.publishing_queue import PublishingQueueService
from publisher.services.queue_store import QueueStore

logger = get_logger(__name__)


def build_queue_service(connectors: ConnectorRegistry | None = None) -> PublishingQueueService:
    """Wire the store, limiter, breakers and connectors into one queue service."""
    store = QueueStore(engine)
    return PublishingQueueService(store=store, connectors=connectors or ConnectorRegistry())


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT)
    create_db_and_tables()

    queue = getattr(app.state, "publishing_queue", None) or build_queue_service()
    app.state.publishing_queue = queue

    logger.info("=" * 50)
    logger.info(f"{settings.PROJECT_NAME} API Starting")
    logger.info(f"Connectors: {', '.join(queue.connectors.platforms()) or 'none registered'}")
    logger.info("=" * 50)

    await queue.recover_stale_items()
    if settings.RUN_QUEUE_PROCESSOR:
        queue.start_processing(settings.QUEUE_INTERVAL_SECONDS)
    else:
        logger.info("RUN_QUEUE_PROCESSOR is false - skipping queue processor startup in this process.")

    try:
        yield
    finally:
        await queue.shutdown()


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

# GZip compression for responses > 1KB
app.add_middleware(cast(Any, GZipMiddleware), minimum_size=1000)

app.include_router(
    publishing_queue.router,
    prefix=f"{settings.API_V1_STR}/publishing-queue",
    tags=["publishing-queue"],
)


@app.get("/")
def root():
    return {"message": f"{settings.PROJECT_NAME} API"}


@app.get("/health")
def health():
    return {"status": "ok"}
