"""FastAPI application factory."""
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from budgetsync.api.routes import sync as sync_routes
from budgetsync.db.engine import get_engine
from budgetsync.sync.service import SyncService, build_sync_service


def create_app(sync_service: Optional[SyncService] = None) -> FastAPI:
    """Build and return the FastAPI app.

    Args:
        sync_service: service to serve requests with. Defaults to one built
            on the configured database at startup. A single instance is kept
            for the app's lifetime so per-user pass locks are shared.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "sync_service", None) is None:
            app.state.sync_service = build_sync_service(get_engine())
        yield

    app = FastAPI(
        title="Budget Sync API",
        description="Offline mutation queue and conflict resolution",
        version="0.1.0",
        lifespan=lifespan,
    )
    if sync_service is not None:
        app.state.sync_service = sync_service

    app.include_router(sync_routes.router, prefix="/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
