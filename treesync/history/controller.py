"""Undo/redo as a cursor over the local edits of an EventLog.

The controller owns no tree data. Its stack holds log versions of local
edits; position counts how many of them are currently in effect. Undo and
redo never rewrite the log: each appends a compensating (or repeated)
event as a new forward entry.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

from treesync.errors import LocalValidationError, PreconditionError
from treesync.events.factory import EventFactory
from treesync.events.log import EventLog
from treesync.models import (
    EventEnvelope,
    FocusChangedPayload,
    LogEntry,
    NodeAddedPayload,
    NodeRemovedPayload,
    NodeUpdatedPayload,
    ZoomChangedPayload,
)

logger = logging.getLogger(__name__)


class HistoryStatus(Enum):
    APPLIED = "applied"
    NOTHING_TO_UNDO = "nothing_to_undo"
    NOTHING_TO_REDO = "nothing_to_redo"
    SUPERSEDED = "superseded"


@dataclass
class HistoryResult:
    status: HistoryStatus
    event: EventEnvelope | None = None
    version: int | None = None


def inverse_payload(entry: LogEntry) -> BaseModel:
    """The payload that reverts entry, built from its retained UndoRecord."""
    event, undo = entry.event, entry.undo
    payload = event.typed_payload()

    if isinstance(payload, NodeAddedPayload):
        return NodeRemovedPayload(node_id=payload.node_id)

    if isinstance(payload, NodeRemovedPayload):
        root, *descendants = undo.removed
        removed_ids = {n.node_id for n in undo.removed}
        return NodeAddedPayload(
            node_id=root.node_id,
            parent_id=undo.parent_id,
            name=root.name,
            node_type=root.node_type,
            metadata=root.metadata,
            position=undo.position,
            children=root.children,
            descendants=descendants,
            focus_id=undo.prior_focus if undo.prior_focus in removed_ids else None,
        )

    if isinstance(payload, NodeUpdatedPayload):
        return NodeUpdatedPayload(node_id=payload.node_id, changes=undo.prior_fields)

    if isinstance(payload, FocusChangedPayload):
        return FocusChangedPayload(node_id=undo.prior_focus)

    if isinstance(payload, ZoomChangedPayload):
        return ZoomChangedPayload(level=undo.prior_zoom)

    raise TypeError(f"No inverse for {event.event_type}")


class HistoryController:
    """Bounded undo/redo cursor. Only local-origin edits are tracked."""

    def __init__(self, log: EventLog, factory: EventFactory, limit: int = 500) -> None:
        self._log = log
        self._factory = factory
        self._limit = limit
        self._stack: list[int] = []
        self.position = 0

    @property
    def log(self) -> EventLog:
        return self._log

    @property
    def can_undo(self) -> bool:
        return self.position > 0

    @property
    def can_redo(self) -> bool:
        return self.position < len(self._stack)

    @property
    def depth(self) -> int:
        return len(self._stack)

    def dispatch(self, event: EventEnvelope) -> int:
        """Append an event to the log; local edits become undoable.

        Remote events pass straight through and never move the cursor.
        """
        version = self._log.append(event)
        if event.origin == "local" and event.intent == "edit":
            del self._stack[self.position:]
            self._stack.append(version)
            if len(self._stack) > self._limit:
                del self._stack[: len(self._stack) - self._limit]
            self.position = len(self._stack)
        return version

    def undo(self) -> HistoryResult:
        if not self.can_undo:
            return HistoryResult(HistoryStatus.NOTHING_TO_UNDO)
        version = self._stack[self.position - 1]
        entry = self._log.entry(version)
        payload = self._guard_inverse(version, inverse_payload(entry))
        if payload is None:
            # Every change this edit made was overwritten remotely since.
            self.position -= 1
            logger.debug("Undo of %s superseded by remote edits", entry.event.event_id)
            return HistoryResult(HistoryStatus.SUPERSEDED)
        event = self._factory.make(payload, intent="undo")
        version = self._append(event)
        self.position -= 1
        logger.debug("Undid %s with %s", entry.event.event_id, event.event_id)
        return HistoryResult(HistoryStatus.APPLIED, event, version)

    def redo(self) -> HistoryResult:
        if not self.can_redo:
            return HistoryResult(HistoryStatus.NOTHING_TO_REDO)
        entry = self._log.entry(self._stack[self.position])
        event = self._factory.make(entry.event.typed_payload(), intent="redo")
        version = self._append(event)
        # Later undos invert the re-applied entry, whose UndoRecord is current.
        self._stack[self.position] = version
        self.position += 1
        return HistoryResult(HistoryStatus.APPLIED, event, version)

    def _append(self, event: EventEnvelope) -> int:
        try:
            return self._log.append(event)
        except LocalValidationError:
            self._factory.rewind(event)
            raise

    def _guard_inverse(self, version: int, payload: BaseModel) -> BaseModel | None:
        """Narrow an inverse so it leaves remote changes made after version intact.

        Returns None when nothing is left to revert. Raises PreconditionError
        when reverting would discard remote work, e.g. removing a node that
        another user has since added children to or edited.
        """
        remote = [
            e.event.typed_payload()
            for e in self._log.entries[version:]
            if e.event.origin == "remote"
        ]
        if not remote:
            return payload

        if isinstance(payload, NodeUpdatedPayload):
            touched: set[str] = set()
            for p in remote:
                if isinstance(p, NodeUpdatedPayload) and p.node_id == payload.node_id:
                    touched.update(p.changes)
            changes = {k: v for k, v in payload.changes.items() if k not in touched}
            if not changes:
                return None
            return NodeUpdatedPayload(node_id=payload.node_id, changes=changes)

        if isinstance(payload, NodeRemovedPayload):
            store = self._log.store
            if payload.node_id not in store:
                return payload
            subtree = {payload.node_id, *store.descendants(payload.node_id)}
            for p in remote:
                if isinstance(p, NodeAddedPayload):
                    ids = {p.node_id, *(n.node_id for n in p.descendants)}
                elif isinstance(p, NodeUpdatedPayload):
                    ids = {p.node_id}
                else:
                    continue
                if ids & subtree:
                    raise PreconditionError(
                        f"Cannot undo: node {payload.node_id} was changed remotely since"
                    )
            return payload

        if isinstance(payload, FocusChangedPayload):
            if any(isinstance(p, FocusChangedPayload) for p in remote):
                return None
        elif isinstance(payload, ZoomChangedPayload):
            if any(isinstance(p, ZoomChangedPayload) for p in remote):
                return None
        return payload

    def rebind(self, log: EventLog) -> None:
        """Point the cursor at a rebased log, matching entries by event id.

        Edits missing from the new log (moved into a fork) leave the stack.
        """
        stack: list[int] = []
        position = 0
        for index, version in enumerate(self._stack):
            event_id = self._log.entry(version).event.event_id
            new_version = log.version_of(event_id)
            if new_version is None:
                continue
            stack.append(new_version)
            if index < self.position:
                position += 1
        self._log = log
        self._stack = stack
        self.position = position
