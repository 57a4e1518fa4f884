"""replytrack - WhatsApp response correlation engine."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from replytrack.core.config import constants, settings
from replytrack.core.errors import ReplytrackError
from replytrack.core.logging import configure_logfire, instrument_fastapi
from replytrack.core.redis_client import redis_client
from replytrack.core.scheduler import start_scheduler, stop_scheduler
from replytrack.core.scheduler_tracker import job_tracker
from replytrack.interface.api_router import replytrack_error_handler, router as api_router
from replytrack.interface.waha_transport import WahaTransport
from replytrack.interface.webhook import router as webhook_router
from replytrack.services.correlation_service import ResponseTaskService
from replytrack.services.inbound_dispatcher import InboundDispatcher
from replytrack.services.replica_sync import ReplicaSync
from replytrack.services.task_store import TaskStore


logger = logging.getLogger(__name__)


async def check_redis_connectivity() -> None:
    """Log whether the optional Redis is disabled, reachable or down. Never fails startup."""
    if not redis_client.is_available:
        status = "disabled"
    elif await redis_client.ping():
        status = "ok"
    else:
        status = "unavailable"
    level = logging.WARNING if status == "unavailable" else logging.INFO
    logger.log(level, "startup_validation", extra={"service": "redis", "status": status})


async def start_transport(transport: WahaTransport) -> None:
    """Start the WAHA session. A failure leaves the engine up with the transport closed."""
    try:
        await transport.start()
    except httpx.HTTPError as e:
        logger.error("startup_validation", extra={"service": "waha", "status": "failed", "error": str(e)})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager."""
    # Startup
    # Configure logging first so startup logs are captured
    configure_logfire()
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    await check_redis_connectivity()

    replica = None
    if settings.replica_enabled:
        replica = ReplicaSync()
        await replica.connect()
        await replica.start()

    store = TaskStore(replica=replica)
    await store.init()
    logger.info("Task store initialized")
    if replica is not None:
        await replica.reconcile(store)

    transport = WahaTransport()
    dispatcher = InboundDispatcher(transport.emit)
    dispatcher.start()
    service = ResponseTaskService(store, transport)
    service.start()

    app.state.store = store
    app.state.transport = transport
    app.state.dispatcher = dispatcher
    app.state.task_service = service

    start_scheduler(service.run_maintenance_tick)
    await start_transport(transport)
    yield
    # Shutdown
    stop_scheduler()
    service.stop()
    await dispatcher.stop()
    await transport.close()
    if replica is not None:
        await replica.stop()
    await store.close()
    await redis_client.close()


app = FastAPI(
    title="replytrack",
    description="Correlates WhatsApp replies with the messages that asked for them",
    version="0.1.0",
    lifespan=lifespan,
)

# Instrument FastAPI with Logfire
instrument_fastapi(app)

# Register routers
app.include_router(webhook_router)
app.include_router(api_router)
app.add_exception_handler(ReplytrackError, replytrack_error_handler)


@app.get("/health")
async def health_check() -> JSONResponse:
    """Health check endpoint."""
    return JSONResponse(content={"status": "healthy"}, status_code=200)


@app.get("/health/scheduler")
async def scheduler_health_check() -> JSONResponse:
    """Scheduler health check endpoint: maintenance job status, dead letters and the Redis that stores them."""
    job_status = await job_tracker.get_job_status(constants.MAINTENANCE_JOB_NAME)
    dlq = job_tracker.get_dead_letter_queue()

    overall_status = "degraded" if job_status["consecutive_failures"] > 0 else "healthy"
    if len(dlq) > 0:
        overall_status = "critical"

    return JSONResponse(
        content={
            "status": overall_status,
            "jobs": {constants.MAINTENANCE_JOB_NAME: job_status},
            "dead_letter_queue_size": len(dlq),
            "dead_letter_queue": dlq,
            "redis": redis_client.get_health_status(),
        },
        status_code=200 if overall_status == "healthy" else 503,
    )
