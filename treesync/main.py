"""treesync backend FastAPI application entry point."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from treesync.config import load_settings
from treesync.db.connection import Database
from treesync.server.router import get_event_store
from treesync.server.router import router as events_router
from treesync.server.store import EventStore

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage database lifecycle and service wiring."""
    settings = load_settings()
    db = await Database.connect(settings.db_path)
    logger.info("Event store opened at %s", settings.db_path)

    store = EventStore(db)
    app.dependency_overrides[get_event_store] = lambda: store

    app.state.db = db
    yield

    await db.close()


app = FastAPI(
    title="treesync",
    description="Authoritative event log for collaboratively edited outline trees",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(events_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}
