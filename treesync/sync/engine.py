"""Reconciliation of unconfirmed local events against the server's history.

Given a log whose first ancestor_version entries are server-confirmed and
whose remaining entries are unconfirmed local edits, the engine produces
one of four outcomes:

    up_to_date    the server has nothing new; the log is returned as is
    fast_forward  no local edits; server events are appended
    merged        server events first, then every local edit re-applied
    forked        local edits moved to a new tree with fresh node ids,
                  the original log reset to ancestor + server events

The input log is never modified. Every call ends back in SYNCED.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal
from uuid import uuid4

from treesync.errors import LocalValidationError, ReconciliationConflictError
from treesync.events.log import EventLog
from treesync.models import (
    EventEnvelope,
    FocusChangedPayload,
    Node,
    NodeAddedPayload,
    NodeRemovedPayload,
    NodeUpdatedPayload,
    TreeSnapshot,
)

logger = logging.getLogger(__name__)

ConflictGranularity = Literal["field", "node"]


class SyncState(Enum):
    SYNCED = "synced"
    DIVERGED = "diverged"
    MERGING = "merging"
    FORKING = "forking"


class ReconciliationOutcome(Enum):
    UP_TO_DATE = "up_to_date"
    FAST_FORWARD = "fast_forward"
    MERGED = "merged"
    FORKED = "forked"


@dataclass
class Conflict:
    """Why a local event could not be merged onto the server's history.

    removed_remotely covers every event kind that names an existing node,
    FocusChanged included: a local focus on a node another user removed
    forks the tree like an edit would, rather than being silently dropped.
    """

    event_id: str
    node_id: str | None
    reason: Literal["removed_remotely", "overlapping_update", "precondition_failed"]
    fields: set[str] = field(default_factory=set)
    detail: str = ""

    def __str__(self) -> str:
        text = f"{self.reason} on node {self.node_id} (event {self.event_id})"
        if self.fields:
            text += f", fields {sorted(self.fields)}"
        if self.detail:
            text += f": {self.detail}"
        return text


@dataclass
class ForkedTree:
    """A local-only tree holding edits that could not be merged."""

    tree_id: str
    source_tree_id: str
    log: EventLog
    id_map: dict[str, str]
    conflicts: list[Conflict]
    name: str | None = None

    @property
    def needs_name(self) -> bool:
        return self.name is None

    def rename(self, name: str) -> None:
        if not name.strip():
            raise ValueError("A forked tree needs a non-empty name")
        self.name = name
        self.log.store.title = name


@dataclass
class ReconciliationResult:
    outcome: ReconciliationOutcome
    log: EventLog
    pending: list[EventEnvelope]
    ancestor_version: int
    server_version: int | None = None
    fork: ForkedTree | None = None
    conflicts: list[Conflict] = field(default_factory=list)

    @property
    def confirmed_version(self) -> int:
        """Log version up to which the returned log matches the server."""
        return self.log.version - len(self.pending)


# ---------------------------------------------------------------------------
# Event inspection helpers
# ---------------------------------------------------------------------------


def _target_ids(event: EventEnvelope) -> list[str]:
    """Existing nodes an event depends on."""
    payload = event.typed_payload()
    if isinstance(payload, NodeAddedPayload):
        return [payload.parent_id]
    if isinstance(payload, (NodeRemovedPayload, NodeUpdatedPayload)):
        return [payload.node_id]
    if isinstance(payload, FocusChangedPayload) and payload.node_id is not None:
        return [payload.node_id]
    return []


def _latest_server_version(events: Iterable[EventEnvelope]) -> int | None:
    versions = [e.server_version for e in events if e.server_version is not None]
    return max(versions) if versions else None


# ---------------------------------------------------------------------------
# Id remapping for forks
# ---------------------------------------------------------------------------


class _IdRemapper:
    def __init__(self) -> None:
        self.mapping: dict[str, str] = {}

    def __call__(self, node_id: str | None) -> str | None:
        if node_id is None:
            return None
        if node_id not in self.mapping:
            self.mapping[node_id] = str(uuid4())
        return self.mapping[node_id]

    def node(self, node: Node) -> Node:
        return node.model_copy(
            update={
                "node_id": self(node.node_id),
                "children": [self(c) for c in node.children],
            },
            deep=True,
        )

    def snapshot(self, snapshot: TreeSnapshot, tree_id: str) -> TreeSnapshot:
        nodes = [self.node(n) for n in snapshot.nodes.values()]
        return TreeSnapshot(
            tree_id=tree_id,
            title=None,
            root_id=self(snapshot.root_id),
            nodes={n.node_id: n for n in nodes},
            focus=self(snapshot.focus),
            zoom=snapshot.zoom,
        )

    def event(self, event: EventEnvelope, tree_id: str) -> EventEnvelope:
        payload = event.typed_payload()
        if isinstance(payload, NodeAddedPayload):
            payload = payload.model_copy(
                update={
                    "node_id": self(payload.node_id),
                    "parent_id": self(payload.parent_id),
                    "children": [self(c) for c in payload.children],
                    "descendants": [self.node(n) for n in payload.descendants],
                    "focus_id": self(payload.focus_id),
                }
            )
        elif isinstance(payload, (NodeRemovedPayload, NodeUpdatedPayload, FocusChangedPayload)):
            payload = payload.model_copy(update={"node_id": self(payload.node_id)})
        return event.model_copy(
            update={
                "event_id": str(uuid4()),
                "tree_id": tree_id,
                "payload": payload.model_dump(),
                "server_version": None,
            }
        )


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class ReconciliationEngine:
    """Decides merge vs fork for divergent local and server histories."""

    def __init__(self, granularity: ConflictGranularity = "field") -> None:
        if granularity not in ("field", "node"):
            raise ValueError(f"Unknown conflict granularity: {granularity!r}")
        self.granularity = granularity
        self.state = SyncState.SYNCED
        self.transitions: list[tuple[SyncState, SyncState]] = []

    def reconcile(
        self,
        log: EventLog,
        ancestor_version: int,
        local_events: list[EventEnvelope],
        server_events: list[EventEnvelope],
    ) -> ReconciliationResult:
        """Reconcile local_events (applied after ancestor_version) with server_events."""
        self.transitions = []
        server_events = [e.as_remote() for e in server_events]
        server_version = _latest_server_version(server_events)

        if not server_events:
            return ReconciliationResult(
                ReconciliationOutcome.UP_TO_DATE,
                log=log,
                pending=list(local_events),
                ancestor_version=ancestor_version,
            )

        self._transition(SyncState.DIVERGED)
        try:
            if not local_events:
                merged = log.branch(ancestor_version)
                for event in server_events:
                    merged.append(event)
                logger.info(
                    "Fast-forwarded %s by %d server events", log.tree_id, len(server_events)
                )
                return ReconciliationResult(
                    ReconciliationOutcome.FAST_FORWARD,
                    log=merged,
                    pending=[],
                    ancestor_version=ancestor_version,
                    server_version=server_version,
                )

            self._transition(SyncState.MERGING)
            try:
                merged = self._merge(log, ancestor_version, local_events, server_events)
            except ReconciliationConflictError as e:
                conflict = e.conflict
                logger.warning("Merge of %s aborted: %s", log.tree_id, conflict)
                self._transition(SyncState.FORKING)
                fork = self._fork(log, ancestor_version, local_events, [conflict])
                server_log = log.branch(ancestor_version)
                for event in server_events:
                    server_log.append(event)
                return ReconciliationResult(
                    ReconciliationOutcome.FORKED,
                    log=server_log,
                    pending=[],
                    ancestor_version=ancestor_version,
                    server_version=server_version,
                    fork=fork,
                    conflicts=[conflict],
                )

            logger.info(
                "Merged %d local events onto %d server events for %s",
                len(local_events), len(server_events), log.tree_id,
            )
            return ReconciliationResult(
                ReconciliationOutcome.MERGED,
                log=merged,
                pending=list(local_events),
                ancestor_version=ancestor_version,
                server_version=server_version,
            )
        finally:
            self._transition(SyncState.SYNCED)

    # -- Merge ---------------------------------------------------------------

    def _merge(
        self,
        log: EventLog,
        ancestor_version: int,
        local_events: list[EventEnvelope],
        server_events: list[EventEnvelope],
    ) -> EventLog:
        merged = log.branch(ancestor_version)

        removed_remotely: set[str] = set()
        updated_remotely: dict[str, set[str]] = {}
        for event in server_events:
            version = merged.append(event)
            undo = merged.entry(version).undo
            removed_remotely.update(n.node_id for n in undo.removed)
            payload = event.typed_payload()
            if isinstance(payload, NodeAddedPayload):
                removed_remotely.discard(payload.node_id)
                removed_remotely.difference_update(n.node_id for n in payload.descendants)
            elif isinstance(payload, NodeUpdatedPayload):
                updated_remotely.setdefault(payload.node_id, set()).update(payload.changes)

        for event in local_events:
            self._check_conflicts(event, removed_remotely, updated_remotely)
            try:
                merged.append(event)
            except LocalValidationError as e:
                raise ReconciliationConflictError(
                    Conflict(
                        event_id=event.event_id,
                        node_id=next(iter(_target_ids(event)), None),
                        reason="precondition_failed",
                        detail=str(e),
                    )
                ) from e
        return merged

    def _check_conflicts(
        self,
        event: EventEnvelope,
        removed_remotely: set[str],
        updated_remotely: dict[str, set[str]],
    ) -> None:
        for node_id in _target_ids(event):
            if node_id in removed_remotely:
                raise ReconciliationConflictError(
                    Conflict(event.event_id, node_id, "removed_remotely")
                )

        payload = event.typed_payload()
        if not isinstance(payload, NodeUpdatedPayload):
            return
        remote_fields = updated_remotely.get(payload.node_id)
        if remote_fields is None:
            return
        if self.granularity == "node":
            overlap = remote_fields | set(payload.changes)
        else:
            overlap = remote_fields & set(payload.changes)
        if overlap:
            raise ReconciliationConflictError(
                Conflict(event.event_id, payload.node_id, "overlapping_update", overlap)
            )

    # -- Fork ----------------------------------------------------------------

    def _fork(
        self,
        log: EventLog,
        ancestor_version: int,
        local_events: list[EventEnvelope],
        conflicts: list[Conflict],
    ) -> ForkedTree:
        """Replay local_events in isolation on a re-identified ancestor snapshot."""
        fork_id = str(uuid4())
        remap = _IdRemapper()
        ancestor = log.snapshot_at(ancestor_version).snapshot()
        fork_log = EventLog(remap.snapshot(ancestor, fork_id), log.checkpoint_interval)
        for event in local_events:
            fork_log.append(remap.event(event, fork_id))

        logger.info(
            "Forked %d local events of %s into %s", len(local_events), log.tree_id, fork_id
        )
        return ForkedTree(
            tree_id=fork_id,
            source_tree_id=log.tree_id,
            log=fork_log,
            id_map=dict(remap.mapping),
            conflicts=conflicts,
        )

    def _transition(self, state: SyncState) -> None:
        if state is not self.state:
            self.transitions.append((self.state, state))
            logger.debug("Reconciliation %s -> %s", self.state.value, state.value)
            self.state = state
