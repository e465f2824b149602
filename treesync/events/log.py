"""Append-only event log that applies events to a TreeStore.

The write side and the projection are one step here: append validates an
event against the current tree, applies it, and only then records it with
the next version number. Replaying the same events from the same initial
snapshot always yields the same tree.
"""

import logging
from collections.abc import Callable, Iterator

from pydantic import BaseModel, ValidationError

from treesync.errors import LocalValidationError, PreconditionError
from treesync.models import (
    EventEnvelope,
    FocusChangedPayload,
    LogEntry,
    NodeAddedPayload,
    NodeRemovedPayload,
    NodeUpdatedPayload,
    TreeSnapshot,
    UndoRecord,
    ZoomChangedPayload,
)
from treesync.trees.store import TreeStore

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_INTERVAL = 50


# ---------------------------------------------------------------------------
# Event application
# ---------------------------------------------------------------------------


def _apply_node_added(store: TreeStore, payload: NodeAddedPayload) -> UndoRecord:
    if payload.focus_id is not None and payload.focus_id not in (
        {payload.node_id} | {n.node_id for n in payload.descendants}
    ):
        raise PreconditionError(
            f"focus_id {payload.focus_id} is not inside the added subtree"
        )
    prior_focus = store.focus
    if payload.children or payload.descendants:
        store.insert_subtree(
            payload.parent_id, payload.as_node(), payload.descendants, payload.position
        )
    else:
        store.add_node(payload.parent_id, payload.as_node(), payload.position)
    if payload.focus_id is not None:
        store.set_focus(payload.focus_id)
    return UndoRecord(prior_focus=prior_focus)


def _apply_node_removed(store: TreeStore, payload: NodeRemovedPayload) -> UndoRecord:
    prior_focus = store.focus
    parent_id = store.parent_of(payload.node_id)
    position = store.position_of(payload.node_id)
    removed = store.remove_node(payload.node_id)
    return UndoRecord(
        removed=removed,
        parent_id=parent_id,
        position=position,
        prior_focus=prior_focus,
    )


def _apply_node_updated(store: TreeStore, payload: NodeUpdatedPayload) -> UndoRecord:
    prior = store.update_node(payload.node_id, payload.changes)
    return UndoRecord(prior_fields=prior)


def _apply_focus_changed(store: TreeStore, payload: FocusChangedPayload) -> UndoRecord:
    return UndoRecord(prior_focus=store.set_focus(payload.node_id))


def _apply_zoom_changed(store: TreeStore, payload: ZoomChangedPayload) -> UndoRecord:
    return UndoRecord(prior_zoom=store.set_zoom(payload.level))


_APPLIERS: dict[str, Callable[[TreeStore, BaseModel], UndoRecord]] = {
    "NodeAdded": _apply_node_added,
    "NodeRemoved": _apply_node_removed,
    "NodeUpdated": _apply_node_updated,
    "FocusChanged": _apply_focus_changed,
    "ZoomChanged": _apply_zoom_changed,
}


def apply_event(store: TreeStore, event: EventEnvelope) -> UndoRecord:
    """Validate and apply one event. Raises a LocalValidationError on rejection.

    Every applier checks all of its preconditions before mutating, so a
    rejected event leaves the store exactly as it was.
    """
    applier = _APPLIERS.get(event.event_type)
    if applier is None:
        raise PreconditionError(
            f"Unknown event type {event.event_type!r}", event_id=event.event_id
        )
    try:
        payload = event.typed_payload()
    except ValidationError as e:
        raise PreconditionError(
            f"Invalid {event.event_type} payload: {e}", event_id=event.event_id
        ) from e
    return applier(store, payload)


# ---------------------------------------------------------------------------
# Log
# ---------------------------------------------------------------------------


class EventLog:
    """Ordered sequence of applied events plus the tree they produced."""

    def __init__(
        self,
        initial: TreeSnapshot,
        checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
    ) -> None:
        if checkpoint_interval <= 0:
            raise ValueError("checkpoint_interval must be positive")
        self._initial = initial
        self._checkpoint_interval = checkpoint_interval
        self._store = TreeStore.from_snapshot(initial)
        self._entries: list[LogEntry] = []
        self._checkpoints: dict[int, TreeSnapshot] = {0: initial}
        self._index: dict[str, int] = {}

    @classmethod
    def for_new_tree(
        cls,
        tree_id: str,
        root_id: str = "root",
        checkpoint_interval: int = DEFAULT_CHECKPOINT_INTERVAL,
    ) -> "EventLog":
        return cls(TreeStore.new(tree_id, root_id).snapshot(), checkpoint_interval)

    @property
    def tree_id(self) -> str:
        return self._initial.tree_id

    @property
    def initial(self) -> TreeSnapshot:
        """The snapshot version 0 was built from."""
        return self._initial

    @property
    def store(self) -> TreeStore:
        """The live tree. Mutate only through append()."""
        return self._store

    @property
    def version(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[LogEntry]:
        return list(self._entries)

    @property
    def checkpoint_interval(self) -> int:
        return self._checkpoint_interval

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LogEntry]:
        return iter(list(self._entries))

    def append(self, event: EventEnvelope) -> int:
        """Apply and record an event. Returns the resulting tree version."""
        if event.event_id in self._index:
            raise PreconditionError(
                f"Event {event.event_id} is already in the log", event_id=event.event_id
            )
        if event.tree_id != self.tree_id:
            raise PreconditionError(
                f"Event for tree {event.tree_id} appended to tree {self.tree_id}",
                event_id=event.event_id,
            )
        try:
            undo = apply_event(self._store, event)
        except LocalValidationError as e:
            logger.warning("Rejected %s %s: %s", event.event_type, event.event_id, e)
            raise

        version = len(self._entries) + 1
        self._entries.append(LogEntry(version=version, event=event, undo=undo))
        self._index[event.event_id] = version
        if version % self._checkpoint_interval == 0:
            self._checkpoints[version] = self._store.snapshot()
        return version

    def entry(self, version: int) -> LogEntry:
        if not 1 <= version <= len(self._entries):
            raise IndexError(f"No log entry at version {version}")
        return self._entries[version - 1]

    def version_of(self, event_id: str) -> int | None:
        return self._index.get(event_id)

    def replay_from(self, version: int) -> list[EventEnvelope]:
        """Events applied after the given version, in order."""
        self._check_version(version)
        return [entry.event for entry in self._entries[version:]]

    def snapshot_at(self, version: int) -> TreeStore:
        """Reconstruct the tree as it was at version, from the nearest checkpoint."""
        self._check_version(version)
        if version == len(self._entries):
            return self._store.copy()
        base = max(v for v in self._checkpoints if v <= version)
        store = TreeStore.from_snapshot(self._checkpoints[base])
        for entry in self._entries[base:version]:
            apply_event(store, entry.event)
        return store

    def branch(self, version: int) -> "EventLog":
        """A new log holding this log's history up to version.

        Used for rebasing: the returned log shares the (immutable) entries
        up to version and can be extended independently. This log is not
        modified.
        """
        self._check_version(version)
        log = EventLog(self._initial, self._checkpoint_interval)
        log._entries = self._entries[:version]
        log._index = {e.event.event_id: e.version for e in log._entries}
        log._checkpoints = {v: s for v, s in self._checkpoints.items() if v <= version}
        log._store = self.snapshot_at(version)
        return log

    def _check_version(self, version: int) -> None:
        if not 0 <= version <= len(self._entries):
            raise IndexError(
                f"Version {version} outside log range 0..{len(self._entries)}"
            )
