"""Shared test helpers: event builders and small tree setups."""

from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel

from treesync.events.log import EventLog
from treesync.models import (
    EVENT_TYPES,
    EventEnvelope,
    FocusChangedPayload,
    NodeAddedPayload,
    NodeRemovedPayload,
    NodeUpdatedPayload,
    ZoomChangedPayload,
)

TREE_ID = "tree-1"

_sequence = 0


def make_envelope(
    payload: BaseModel,
    tree_id: str = TREE_ID,
    origin: Literal["local", "remote"] = "local",
    device_id: str = "test",
    server_version: int | None = None,
) -> EventEnvelope:
    """Wrap a payload in an EventEnvelope for testing."""
    global _sequence
    _sequence += 1
    event_type = next(n for n, cls in EVENT_TYPES.items() if isinstance(payload, cls))
    return EventEnvelope(
        event_id=str(uuid4()),
        tree_id=tree_id,
        timestamp=datetime.now(UTC),
        device_id=device_id,
        origin=origin,
        sequence_num=_sequence,
        event_type=event_type,
        payload=payload.model_dump(),
        server_version=server_version,
    )


def node_added(
    node_id: str, parent_id: str = "root", name: str = "", **kwargs: Any
) -> EventEnvelope:
    fields = {k: v for k, v in kwargs.items() if k in NodeAddedPayload.model_fields}
    envelope = {k: v for k, v in kwargs.items() if k not in fields}
    return make_envelope(
        NodeAddedPayload(node_id=node_id, parent_id=parent_id, name=name, **fields),
        **envelope,
    )


def node_removed(node_id: str, **kwargs: Any) -> EventEnvelope:
    return make_envelope(NodeRemovedPayload(node_id=node_id), **kwargs)


def node_updated(node_id: str, changes: dict[str, Any], **kwargs: Any) -> EventEnvelope:
    return make_envelope(NodeUpdatedPayload(node_id=node_id, changes=changes), **kwargs)


def focus_changed(node_id: str | None, **kwargs: Any) -> EventEnvelope:
    return make_envelope(FocusChangedPayload(node_id=node_id), **kwargs)


def zoom_changed(level: float, **kwargs: Any) -> EventEnvelope:
    return make_envelope(ZoomChangedPayload(level=level), **kwargs)


def server_events(*events: EventEnvelope, start: int = 1) -> list[EventEnvelope]:
    """Stamp events with consecutive server versions, as the backend would."""
    return [
        e.model_copy(update={"origin": "remote", "server_version": start + i})
        for i, e in enumerate(events)
    ]


def build_log(*events: EventEnvelope, checkpoint_interval: int = 50) -> EventLog:
    """A fresh log for TREE_ID with the given events applied."""
    log = EventLog.for_new_tree(TREE_ID, checkpoint_interval=checkpoint_interval)
    for event in events:
        log.append(event)
    return log


def outline_log() -> EventLog:
    """root -> A(1) -> [B(2) -> [D(4)], C(3)]"""
    return build_log(
        node_added("1", "root", "A"),
        node_added("2", "1", "B"),
        node_added("3", "1", "C"),
        node_added("4", "2", "D"),
    )
