"""Canonical data structures and event types for treesync.

Defined once here, referenced everywhere else. Event payloads represent the
type-specific content of each event; the EventEnvelope wraps them with
ordering and origin metadata.
"""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# ---------------------------------------------------------------------------
# Tree structures
# ---------------------------------------------------------------------------

UPDATABLE_NODE_FIELDS = frozenset({"name", "node_type", "metadata"})


class Node(BaseModel):
    """A single outline node. Parent links live in the TreeStore index."""

    node_id: str
    name: str = ""
    node_type: str = "node"
    children: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TreeSnapshot(BaseModel):
    """Complete, self-contained tree state. Equality is structural."""

    tree_id: str
    title: str | None = None
    root_id: str
    nodes: dict[str, Node]
    focus: str | None = None
    zoom: float = 1.0


# ---------------------------------------------------------------------------
# Event payloads, one per event type
# ---------------------------------------------------------------------------


class NodeAddedPayload(BaseModel):
    node_id: str
    parent_id: str
    name: str = ""
    node_type: str = "node"
    metadata: dict[str, Any] = Field(default_factory=dict)
    position: int | None = None  # None appends

    # Populated only when restoring a removed subtree
    children: list[str] = Field(default_factory=list)
    descendants: list[Node] = Field(default_factory=list)  # pre-order
    focus_id: str | None = None

    def as_node(self) -> Node:
        return Node(
            node_id=self.node_id,
            name=self.name,
            node_type=self.node_type,
            children=list(self.children),
            metadata=dict(self.metadata),
        )


class NodeRemovedPayload(BaseModel):
    node_id: str


class NodeUpdatedPayload(BaseModel):
    node_id: str
    changes: dict[str, Any]

    @field_validator("changes")
    @classmethod
    def _known_fields(cls, changes: dict[str, Any]) -> dict[str, Any]:
        unknown = set(changes) - UPDATABLE_NODE_FIELDS
        if unknown:
            raise ValueError(f"Unknown node fields: {sorted(unknown)}")
        if not changes:
            raise ValueError("NodeUpdated requires at least one field")
        return changes


class FocusChangedPayload(BaseModel):
    node_id: str | None = None


class ZoomChangedPayload(BaseModel):
    level: float = Field(gt=0)


# ---------------------------------------------------------------------------
# Event type registry
# ---------------------------------------------------------------------------

EventType = Literal[
    "NodeAdded", "NodeRemoved", "NodeUpdated", "FocusChanged", "ZoomChanged"
]

EVENT_TYPES: dict[str, type[BaseModel]] = {
    "NodeAdded": NodeAddedPayload,
    "NodeRemoved": NodeRemovedPayload,
    "NodeUpdated": NodeUpdatedPayload,
    "FocusChanged": FocusChangedPayload,
    "ZoomChanged": ZoomChangedPayload,
}


# ---------------------------------------------------------------------------
# Event envelope
# ---------------------------------------------------------------------------


class EventEnvelope(BaseModel):
    """Wraps every event with metadata. This is the serialized wire record."""

    event_id: str
    tree_id: str
    timestamp: datetime
    device_id: str = "local"
    origin: Literal["local", "remote"] = "local"
    sequence_num: int
    event_type: EventType
    payload: dict[str, Any]
    intent: Literal["edit", "undo", "redo"] = "edit"
    server_version: int | None = None  # assigned by the backend on acceptance

    def typed_payload(self) -> BaseModel:
        """Deserialize payload into the correct Pydantic model based on event_type."""
        payload_cls = EVENT_TYPES[self.event_type]
        return payload_cls.model_validate(self.payload)

    def as_remote(self) -> "EventEnvelope":
        return self.model_copy(update={"origin": "remote"})


class VersionMarker(BaseModel):
    sequence_num: int
    origin: Literal["local", "server"]


# ---------------------------------------------------------------------------
# Applied log records
# ---------------------------------------------------------------------------


class UndoRecord(BaseModel):
    """State captured immediately before an event was applied."""

    removed: list[Node] = Field(default_factory=list)  # pre-order subtree
    parent_id: str | None = None
    position: int | None = None
    prior_fields: dict[str, Any] = Field(default_factory=dict)
    prior_focus: str | None = None
    prior_zoom: float | None = None


class LogEntry(BaseModel, frozen=True):
    version: int
    event: EventEnvelope
    undo: UndoRecord


# ---------------------------------------------------------------------------
# Backend wire records
# ---------------------------------------------------------------------------


class BatchSubmission(BaseModel):
    last_known_server_version: int
    events: list[EventEnvelope]


class BatchResponse(BaseModel):
    accepted: bool
    new_version: int | None = None
    server_events: list[EventEnvelope] = Field(default_factory=list)


class ReconciliationResponse(BaseModel):
    status: Literal["ok", "diverged"]
    server_events: list[EventEnvelope] = Field(default_factory=list)

    @classmethod
    def from_batch(cls, response: BatchResponse) -> "ReconciliationResponse":
        if response.accepted:
            return cls(status="ok")
        return cls(status="diverged", server_events=response.server_events)
