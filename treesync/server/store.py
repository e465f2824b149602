"""Authoritative append-only event store backed by SQLite.

Accepts a batch only when the submitter has seen the whole history of the
tree; otherwise answers with the events it is missing.
"""

import asyncio
import json
import logging

from treesync.db.connection import Database
from treesync.models import BatchResponse, BatchSubmission, EventEnvelope

logger = logging.getLogger(__name__)


class DuplicateEventError(Exception):
    def __init__(self, event_id: str) -> None:
        self.event_id = event_id
        super().__init__(f"Event already stored: {event_id}")


class EventStore:
    """The backend's write side: one ordered log per tree."""

    def __init__(self, db: Database) -> None:
        self._db = db
        # The head check and the insert must not interleave between submissions.
        self._submit_lock = asyncio.Lock()

    async def head(self, tree_id: str) -> int:
        """Current server version of a tree (0 when it has no events)."""
        row = await self._db.fetchone(
            "SELECT MAX(server_version) AS head FROM events WHERE tree_id = ?",
            (tree_id,),
        )
        return row["head"] or 0

    async def submit(self, tree_id: str, batch: BatchSubmission) -> BatchResponse:
        """Append a batch if it builds on the current head, else report divergence."""
        async with self._submit_lock:
            return await self._submit(tree_id, batch)

    async def _submit(self, tree_id: str, batch: BatchSubmission) -> BatchResponse:
        head = await self.head(tree_id)
        if batch.last_known_server_version != head:
            missing = await self.get_events(tree_id, since=batch.last_known_server_version)
            logger.info(
                "Diverged submission for %s: client at %d, head at %d",
                tree_id, batch.last_known_server_version, head,
            )
            return BatchResponse(accepted=False, server_events=missing)

        for event in batch.events:
            if event.tree_id != tree_id:
                raise ValueError(f"Event {event.event_id} belongs to tree {event.tree_id}")
            existing = await self._db.fetchone(
                "SELECT 1 FROM events WHERE event_id = ?", (event.event_id,)
            )
            if existing is not None:
                raise DuplicateEventError(event.event_id)

        statements = []
        for offset, event in enumerate(batch.events, start=1):
            statements.append((
                """
                INSERT INTO events
                    (event_id, tree_id, server_version, sequence_num, timestamp,
                     device_id, event_type, intent, payload)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event_id,
                    tree_id,
                    head + offset,
                    event.sequence_num,
                    event.timestamp.isoformat(),
                    event.device_id,
                    event.event_type,
                    event.intent,
                    json.dumps(event.payload),
                ),
            ))
        await self._db.execute_many(statements)
        return BatchResponse(accepted=True, new_version=head + len(batch.events))

    async def get_events(self, tree_id: str, since: int = 0) -> list[EventEnvelope]:
        """Events of a tree with server_version greater than since, in order."""
        rows = await self._db.fetchall(
            "SELECT * FROM events WHERE tree_id = ? AND server_version > ? "
            "ORDER BY server_version",
            (tree_id, since),
        )
        return [self._row_to_envelope(row) for row in rows]

    @staticmethod
    def _row_to_envelope(row) -> EventEnvelope:
        """Convert a database row to an EventEnvelope."""
        return EventEnvelope(
            event_id=row["event_id"],
            tree_id=row["tree_id"],
            timestamp=row["timestamp"],
            device_id=row["device_id"],
            origin="remote",
            sequence_num=row["sequence_num"],
            event_type=row["event_type"],
            payload=json.loads(row["payload"]),
            intent=row["intent"],
            server_version=row["server_version"],
        )
