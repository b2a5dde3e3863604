"""FastAPI application factory."""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from sqlmodel import SQLModel

from canopy.api.routes import sync as sync_routes
from canopy.db.engine import get_engine


def create_app() -> FastAPI:
    """Build and return the FastAPI app."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Create tables on startup (idempotent); honour test overrides
        engine_factory = app.dependency_overrides.get(get_engine, get_engine)
        SQLModel.metadata.create_all(engine_factory())
        yield

    app = FastAPI(
        title="Canopy Sync API",
        description="Room registry ↔ Metrc location reconciliation",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(sync_routes.router, prefix="/sites", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
