"""Shared pytest fixtures for treesync tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from treesync.config import Settings
from treesync.db.connection import Database
from treesync.events.log import EventLog
from treesync.main import app
from treesync.server.router import get_event_store
from treesync.server.store import EventStore
from treesync.session.service import ClientSession
from treesync.sync.queue import OfflineQueue, SqliteQueueStorage
from treesync.sync.transport import HttpTransport
from tests.fixtures import TREE_ID


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
async def event_store(db):
    """Backend EventStore backed by the in-memory database."""
    return EventStore(db)


@pytest.fixture
async def queue(db):
    """OfflineQueue for TREE_ID persisted in the in-memory database."""
    q = OfflineQueue(TREE_ID, SqliteQueueStorage(db))
    await q.load()
    return q


@pytest.fixture
async def client(event_store):
    """Async HTTP client with the backend app wired to the in-memory store."""
    app.dependency_overrides[get_event_store] = lambda: event_store
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def settings():
    return Settings(retry_backoff=0, max_retries=2)


@pytest.fixture
async def transport(client, settings):
    return HttpTransport(
        "http://test",
        max_retries=settings.max_retries,
        backoff=settings.retry_backoff,
        client=client,
    )


@pytest.fixture
async def make_session(transport, settings):
    """Factory for client sessions, each with its own local database.

    Sessions share the backend behind `transport`, like two devices would.
    """
    databases: list[Database] = []
    sessions: list[ClientSession] = []

    async def factory(device_id: str = "device-a", online: bool = True) -> ClientSession:
        local_db = await Database.connect(":memory:")
        databases.append(local_db)
        queue = OfflineQueue(TREE_ID, SqliteQueueStorage(local_db))
        await queue.load()
        session = ClientSession(
            EventLog.for_new_tree(TREE_ID),
            queue,
            transport,
            settings.model_copy(update={"device_id": device_id}),
        )
        await session.start()
        sessions.append(session)
        if online:
            await session.go_online()
        return session

    yield factory

    for session in sessions:
        await session.stop()
    for local_db in databases:
        await local_db.close()
