"""Durable FIFO of locally originated events awaiting server confirmation.

The queue knows nothing about the network. Every change is written through
a QueueStorage so pending events survive a process restart. Forks split off
by reconciliation are stored alongside, so edits that leave the queue for a
fork are never only in memory.
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import BaseModel, Field

from treesync.db.connection import Database
from treesync.events.log import EventLog
from treesync.models import EventEnvelope, TreeSnapshot
from treesync.sync.engine import Conflict, ForkedTree

logger = logging.getLogger(__name__)


@dataclass
class QueueState:
    events: list[EventEnvelope] = field(default_factory=list)
    last_server_version: int = 0


class ForkRecord(BaseModel):
    """Serialized form of a ForkedTree."""

    tree_id: str
    source_tree_id: str
    name: str | None = None
    id_map: dict[str, str]
    initial: TreeSnapshot
    events: list[EventEnvelope]
    conflicts: list[dict[str, Any]] = Field(default_factory=list)

    @classmethod
    def from_fork(cls, fork: ForkedTree) -> "ForkRecord":
        return cls(
            tree_id=fork.tree_id,
            source_tree_id=fork.source_tree_id,
            name=fork.name,
            id_map=fork.id_map,
            initial=fork.log.initial,
            events=[entry.event for entry in fork.log.entries],
            conflicts=[
                dataclasses.asdict(c) | {"fields": sorted(c.fields)} for c in fork.conflicts
            ],
        )

    def to_fork(self) -> ForkedTree:
        log = EventLog(self.initial)
        for event in self.events:
            log.append(event)
        fork = ForkedTree(
            tree_id=self.tree_id,
            source_tree_id=self.source_tree_id,
            log=log,
            id_map=dict(self.id_map),
            conflicts=[
                Conflict(**(c | {"fields": set(c.get("fields", []))})) for c in self.conflicts
            ],
        )
        if self.name is not None:
            fork.rename(self.name)
        return fork


class QueueStorage(Protocol):
    async def save(self, tree_id: str, state: QueueState) -> None: ...

    async def load(self, tree_id: str) -> QueueState: ...

    async def save_fork(self, tree_id: str, state: QueueState, fork: ForkRecord) -> None: ...

    async def load_forks(self, tree_id: str) -> list[ForkRecord]: ...


class SqliteQueueStorage:
    """Persists queue state in the pending_events, sync_state and forks tables."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def save(self, tree_id: str, state: QueueState) -> None:
        await self._db.execute_many(self._state_statements(tree_id, state))

    async def save_fork(self, tree_id: str, state: QueueState, fork: ForkRecord) -> None:
        """Store a fork and the queue it was taken from in one transaction."""
        statements = self._state_statements(tree_id, state)
        statements.append((
            """
            INSERT INTO forks (fork_tree_id, tree_id, record) VALUES (?, ?, ?)
            ON CONFLICT(fork_tree_id) DO UPDATE SET record = excluded.record
            """,
            (fork.tree_id, tree_id, fork.model_dump_json()),
        ))
        await self._db.execute_many(statements)

    async def load(self, tree_id: str) -> QueueState:
        rows = await self._db.fetchall(
            "SELECT event FROM pending_events WHERE tree_id = ? ORDER BY position",
            (tree_id,),
        )
        row = await self._db.fetchone(
            "SELECT last_server_version FROM sync_state WHERE tree_id = ?", (tree_id,)
        )
        return QueueState(
            events=[EventEnvelope.model_validate_json(r["event"]) for r in rows],
            last_server_version=row["last_server_version"] if row else 0,
        )

    async def load_forks(self, tree_id: str) -> list[ForkRecord]:
        rows = await self._db.fetchall(
            "SELECT record FROM forks WHERE tree_id = ? ORDER BY rowid", (tree_id,)
        )
        return [ForkRecord.model_validate_json(r["record"]) for r in rows]

    @staticmethod
    def _state_statements(tree_id: str, state: QueueState) -> list[tuple[str, tuple]]:
        statements: list[tuple[str, tuple]] = [
            ("DELETE FROM pending_events WHERE tree_id = ?", (tree_id,)),
            (
                """
                INSERT INTO sync_state (tree_id, last_server_version) VALUES (?, ?)
                ON CONFLICT(tree_id) DO UPDATE SET last_server_version = excluded.last_server_version
                """,
                (tree_id, state.last_server_version),
            ),
        ]
        for position, event in enumerate(state.events):
            statements.append((
                "INSERT INTO pending_events (tree_id, position, event) VALUES (?, ?, ?)",
                (tree_id, position, event.model_dump_json()),
            ))
        return statements


class OfflineQueue:
    """Ordered pending local events for one tree, plus the last known server version."""

    def __init__(self, tree_id: str, storage: QueueStorage) -> None:
        self.tree_id = tree_id
        self._storage = storage
        self._state = QueueState()
        self.forks: dict[str, ForkedTree] = {}

    def __len__(self) -> int:
        return len(self._state.events)

    @property
    def last_server_version(self) -> int:
        return self._state.last_server_version

    def peek(self) -> list[EventEnvelope]:
        return list(self._state.events)

    async def load(self) -> None:
        self._state = await self._storage.load(self.tree_id)
        records = await self._storage.load_forks(self.tree_id)
        self.forks = {r.tree_id: r.to_fork() for r in records}
        logger.debug(
            "Loaded %d pending events and %d forks for %s",
            len(self._state.events), len(self.forks), self.tree_id,
        )

    async def enqueue(self, event: EventEnvelope) -> None:
        if event.origin != "local":
            raise ValueError("Only locally originated events can be queued")
        self._state.events.append(event)
        await self._save()

    async def drain(self) -> list[EventEnvelope]:
        """Remove and return every buffered event, oldest first."""
        events, self._state.events = self._state.events, []
        await self._save()
        return events

    async def requeue(self, events: list[EventEnvelope]) -> None:
        """Put events back at the front, ahead of anything queued since."""
        queued = {e.event_id for e in self._state.events}
        self._state.events[:0] = [e for e in events if e.event_id not in queued]
        await self._save()

    async def acknowledge(self, event_ids: set[str]) -> None:
        """Drop events the server has accepted."""
        self._state.events = [
            e for e in self._state.events if e.event_id not in event_ids
        ]
        await self._save()

    async def save_fork(self, fork: ForkedTree, moved: set[str] | None = None) -> None:
        """Store fork, dropping the events in moved that now live in it.

        Both changes are written together, so the edits are always either
        queued or in a stored fork.
        """
        if moved:
            self._state.events = [e for e in self._state.events if e.event_id not in moved]
        self.forks[fork.tree_id] = fork
        await self._storage.save_fork(self.tree_id, self._state, ForkRecord.from_fork(fork))

    async def set_server_version(self, version: int) -> None:
        self._state.last_server_version = version
        await self._save()

    async def _save(self) -> None:
        await self._storage.save(self.tree_id, self._state)
