"""
dwag relay - Main Application Entry Point

Polls conversations for "add" commands, pairs each idea with the media shared
before it, files it under a tag and forwards it to a Discord webhook once.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from dwag_relay.api.routes import router as relay_router
from dwag_relay.config.settings import get_settings
from dwag_relay.infrastructure.database import async_session_factory, dispose_database, init_database
from dwag_relay.infrastructure.dedup import DedupTracker
from dwag_relay.infrastructure.discord_webhook import DiscordWebhookTransport
from dwag_relay.infrastructure.inbox_client import EmptyInboundSource, HttpInboxClient, LoggingReplySink
from dwag_relay.infrastructure.scheduler import get_scheduler, schedule_polling, start_scheduler, stop_scheduler
from dwag_relay.usecases.dispatcher import NotificationDispatcher
from dwag_relay.usecases.pipeline import PipelineCoordinator
from dwag_relay.usecases.tag_record_store import TagRecordStore

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)

SHUTDOWN_GRACE_SECONDS = 30.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Starting dwag relay...")

    logger.info("Initializing database...")
    await init_database()
    logger.info("Database initialized")

    store = TagRecordStore(async_session_factory)
    tracker = DedupTracker(async_session_factory, cap=settings.dedup_cap)
    await tracker.load()

    transport = DiscordWebhookTransport(timeout=settings.send_timeout_seconds)
    if settings.inbox_url:
        inbox = HttpInboxClient(
            settings.inbox_url,
            token=settings.inbox_token,
            timeout=settings.fetch_timeout_seconds,
        )
        source, replies = inbox, inbox
    else:
        logger.warning("INBOX_URL is not set; polling will find no conversations")
        inbox = None
        source, replies = EmptyInboundSource(), LoggingReplySink()

    dispatcher = NotificationDispatcher(
        transport,
        tracker,
        routes=settings.webhook_routes,
        default_endpoint=settings.discord_webhook_url,
        max_attempts=settings.dispatch_max_attempts,
        backoff_base=settings.dispatch_backoff_base,
        backoff_max=settings.dispatch_backoff_max,
        min_send_interval=settings.min_send_interval_seconds,
        send_timeout=settings.send_timeout_seconds,
    )
    coordinator = PipelineCoordinator(
        source,
        replies,
        store,
        tracker,
        dispatcher,
        prefix=settings.command_prefix,
        bot_user_id=settings.bot_user_id,
        fetch_timeout=settings.fetch_timeout_seconds,
        max_workers=settings.max_conversation_workers,
    )

    app.state.store = store
    app.state.coordinator = coordinator

    if settings.scheduler_enabled:
        schedule_polling(coordinator, settings.poll_interval_seconds)
        await start_scheduler()
    else:
        logger.info("Scheduler disabled; cycles run only via POST /cycle/run")

    logger.info("Application startup complete!")
    logger.info(f"Webhook routes configured: {sorted(settings.webhook_routes) or 'default only'}")

    yield

    # Shutdown
    logger.info("Shutting down...")
    coordinator.request_shutdown()
    if not await coordinator.wait_idle(timeout=SHUTDOWN_GRACE_SECONDS):
        logger.warning("In-flight cycle did not finish before the shutdown grace period")
    await stop_scheduler()
    await transport.close()
    if inbox is not None:
        await inbox.close()
    await dispose_database()
    logger.info("Application shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="dwag relay",
    description="Pairs shared media with ideas, files them by tag and relays them to Discord",
    version="1.0.0",
    lifespan=lifespan
)

# Register routers
app.include_router(relay_router, tags=["Relay"])


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "name": "dwag relay",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "health": "/health",
            "run_cycle": "/cycle/run",
            "tags": "/users/{username}/tags",
            "records": "/users/{username}/records"
        }
    }


@app.get("/scheduler/status")
async def scheduler_status():
    """Get scheduler status and pending jobs."""
    scheduler = get_scheduler()

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run": str(job.next_run_time) if job.next_run_time else None
        })

    return {
        "running": scheduler.running,
        "jobs_count": len(jobs),
        "jobs": jobs
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "dwag_relay.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug
    )
