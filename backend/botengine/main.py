"""Bot execution engine FastAPI application.

Startup loads configuration, prepares the database, resumes bots that were
running when the process last stopped and schedules the periodic jobs.
"""

import logging
import sys
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import init_db, engine, async_session_maker, get_session
from .models.database import DATABASE_URL, create_session_factory
from .routers import bots, health, webhooks
from .services.config import config_service, ConfigValidationException, EngineSettings
from .services.logging_service import setup_logging
from .services.bot_supervisor import BotSupervisor
from .services.maintenance import MaintenanceService
from .services.scheduler import JobScheduler
from .services.webhooks import WebhookService

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    setup_logging()

    # Startup: Validate configuration
    try:
        config_service.load_and_validate()
    except ConfigValidationException as e:
        logger.critical(f"FATAL: {e}")
        logger.critical("Server cannot start with invalid configuration.")
        sys.exit(1)

    setup_logging(config_service.get("logging.level", "INFO"), config_service.get("logging.format"))
    settings = EngineSettings.from_config(config_service)

    # Initialize database
    db_engine, session_factory = engine, async_session_maker
    db_url = config_service.get("database.url")
    if db_url and db_url != DATABASE_URL:
        db_engine, session_factory = create_session_factory(db_url)

        async def configured_session():
            async with session_factory() as session:
                yield session

        app.dependency_overrides[get_session] = configured_session

    await init_db(db_engine)
    logger.info("Database initialized")

    supervisor = BotSupervisor(settings=settings, session_factory=session_factory)
    scheduler = JobScheduler()
    MaintenanceService(supervisor, settings, session_factory).register_jobs(scheduler)

    app.state.supervisor = supervisor
    app.state.scheduler = scheduler
    app.state.webhook_service = WebhookService(supervisor.processor, session_factory)

    # Resume bots that were running when the server stopped
    loaded = await supervisor.start()
    if loaded:
        logger.info(f"Resumed {loaded} bot(s) from previous session")
    scheduler.start()

    yield

    # Shutdown: running bots keep their status so they resume on next start
    logger.info("Initiating graceful shutdown...")
    await scheduler.stop()
    await supervisor.shutdown()
    if db_engine is not engine:
        await db_engine.dispose()
    logger.info("Graceful shutdown complete")


app = FastAPI(
    title="Bot Engine API",
    description="Trading bot execution engine",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["Health"])
app.include_router(bots.router, prefix="/api/bots", tags=["Bots"])
app.include_router(webhooks.router, prefix="/api/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint redirect to docs."""
    return {"message": "Bot Engine API", "docs": "/docs"}


def run() -> None:
    """Serve the API with uvicorn using the `server` config section."""
    import uvicorn

    config_service.load_and_validate()
    uvicorn.run(
        "botengine.main:app",
        host=config_service.get("server.host", "0.0.0.0"),
        port=config_service.get("server.port", 8000),
        reload=config_service.get("server.debug", False),
    )
