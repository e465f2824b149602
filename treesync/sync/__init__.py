"""Offline queueing, transport and reconciliation with the backend."""

from treesync.sync.engine import (
    Conflict,
    ForkedTree,
    ReconciliationEngine,
    ReconciliationOutcome,
    ReconciliationResult,
    SyncState,
)
from treesync.sync.queue import ForkRecord, OfflineQueue, QueueState, SqliteQueueStorage
from treesync.sync.transport import HttpTransport, Transport

__all__ = [
    "Conflict",
    "ForkRecord",
    "ForkedTree",
    "HttpTransport",
    "OfflineQueue",
    "QueueState",
    "ReconciliationEngine",
    "ReconciliationOutcome",
    "ReconciliationResult",
    "SqliteQueueStorage",
    "SyncState",
    "Transport",
]
