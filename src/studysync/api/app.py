"""FastAPI application factory.

The app factory creates a FastAPI instance with:
- Lifespan handler that opens the database pool and the Google HTTP client
- Health endpoint at GET /api/health
- The calendar sync router
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from studysync.api.middleware import register_error_handlers
from studysync.api.routers.calendar import _get_orchestrator
from studysync.api.routers.calendar import router as calendar_router
from studysync.calendar import CalendarSyncRuntime
from studysync.config import StudySyncConfig
from studysync.db import Database

logger = logging.getLogger(__name__)


def create_app(
    config: StudySyncConfig | None = None,
    runtime: CalendarSyncRuntime | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration. When set (and *runtime* is not), startup opens
        a database pool and builds the sync runtime from it.
    runtime:
        Pre-built sync components, used as-is. Neither is required for
        tests, which override the orchestrator dependency directly.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db: Database | None = None
        active = runtime
        if active is None and config is not None:
            db = Database.from_config(config.database)
            await db.connect()
            active = CalendarSyncRuntime.from_database(config, db)
            logger.info("Calendar sync runtime initialized for database %s", config.database.name)

        if active is not None:
            orchestrator = active.orchestrator
            app.dependency_overrides[_get_orchestrator] = lambda: orchestrator

        yield

        if active is not None and active is not runtime:
            await active.shutdown()
        if db is not None:
            await db.close()

    app = FastAPI(
        title="StudySync Calendar API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    register_error_handlers(app)
    app.include_router(calendar_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
