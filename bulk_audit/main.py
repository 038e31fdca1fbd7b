"""
FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from bulk_audit.api.v1.routes import api_router
from bulk_audit.core.config import get_engine_limits, get_settings
from bulk_audit.core.engine import build_engine
from bulk_audit.domain.interfaces.job_queue import QueueUnavailable

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan - startup and shutdown events.

    Startup:
    - Builds the campaign engine (store, queue, audit client)
    - Starts the dispatcher loop unless DISPATCHER_ENABLED=false
      (when it runs as its own process)

    Shutdown:
    - Stops the dispatcher and waits for running jobs
    - Closes the queue and audit client connections
    """
    # ========================
    # STARTUP
    # ========================
    logger.info("Starting Bulk Audit Engine...")

    settings = get_settings()
    engine = getattr(app.state, "engine", None)
    if engine is None:
        engine = build_engine(settings, get_engine_limits())
        app.state.engine = engine

    await engine.start(run_dispatcher=settings.dispatcher_enabled)
    logger.info("Bulk Audit Engine started successfully")

    yield  # Application is running

    # ========================
    # SHUTDOWN
    # ========================
    logger.info("Shutting down Bulk Audit Engine...")

    try:
        await engine.stop()
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")

    logger.info("Bulk Audit Engine shutdown complete")


app = FastAPI(
    title="Bulk Audit Engine",
    description="Rate-limited bulk QA auditing of call recordings",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_router, prefix=get_settings().api_prefix)


@app.get("/")
async def root():
    return {"message": "Bulk Audit Engine API", "status": "running"}


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns basic health status, dispatcher stats and queue counters.
    """
    health = {"status": "healthy"}

    engine = getattr(app.state, "engine", None)
    if engine is None:
        health["status"] = "starting"
        return health

    health["dispatcher"] = engine.dispatcher.get_stats()
    try:
        health["queue"] = await engine.queue.stats()
    except QueueUnavailable as e:
        health["status"] = "degraded"
        health["queue"] = f"error: {str(e)}"

    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
