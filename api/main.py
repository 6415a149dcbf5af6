"""
FastAPI application initialization
"""

from contextlib import asynccontextmanager
from typing import Dict, Optional
from fastapi import FastAPI
from api.middleware import RequestContextMiddleware
from api.routes import health, jobs
from batch.job import JobController
from batch.jobs import JOB_FACTORIES, JobFactory
from batch.scheduler import BatchScheduler
from batch.tracker import ExecutionTracker
from core.config import Settings, mask_connection_url, settings as default_settings
from core.database import build_engine, build_session_factory, create_schema
from core.logging import setup_logging
import logging

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[Settings] = None,
    database_url: Optional[str] = None,
    job_factories: Optional[Dict[str, JobFactory]] = None,
    create_tables: bool = False
) -> FastAPI:
    """
    Build the API application.

    The engine, tracker and controller are created when the application starts
    and disposed of when it shuts down, so each app instance owns its own.
    """
    config = config or default_settings
    database_url = database_url or config.DATABASE_URL

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Batch Engine API")
        logger.info(f"Environment: {config.ENVIRONMENT}")
        logger.info(f"Database: {mask_connection_url(database_url)}")

        engine = build_engine(database_url)
        if create_tables:
            await create_schema(engine)

        app.state.session_factory = build_session_factory(engine)
        app.state.controller = JobController(ExecutionTracker(app.state.session_factory))

        scheduler = None
        if config.SCHEDULER_ENABLED:
            scheduler = BatchScheduler(app.state.controller, config=config)
            scheduler.start()

        try:
            yield
        finally:
            logger.info("Shutting down Batch Engine API")
            if scheduler is not None:
                scheduler.stop()
            await app.state.controller.shutdown()
            await engine.dispose()

    app = FastAPI(
        title="Batch Engine API",
        description="Chunk-oriented batch job execution with restart, skip and retry policies",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )

    app.state.settings = config
    app.state.job_factories = dict(job_factories or JOB_FACTORIES)

    app.add_middleware(RequestContextMiddleware)

    app.include_router(health.router)
    app.include_router(jobs.router)

    @app.get("/")
    async def root():
        """Root endpoint"""
        return {
            "message": "Batch Engine API",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
            "jobs": sorted(app.state.job_factories)
        }

    return app


setup_logging(default_settings.LOG_LEVEL)
app = create_app()
