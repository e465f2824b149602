"""Builds EventEnvelopes with monotonically increasing local sequence numbers."""

from datetime import UTC, datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel

from treesync.models import EVENT_TYPES, EventEnvelope


class EventFactory:
    def __init__(self, tree_id: str, device_id: str = "local", last_sequence: int = 0) -> None:
        self.tree_id = tree_id
        self.device_id = device_id
        self._sequence = last_sequence

    @property
    def last_sequence(self) -> int:
        return self._sequence

    def advance_to(self, sequence_num: int) -> None:
        """Never hand out a sequence number at or below sequence_num."""
        self._sequence = max(self._sequence, sequence_num)

    def make(
        self,
        payload: BaseModel,
        intent: Literal["edit", "undo", "redo"] = "edit",
    ) -> EventEnvelope:
        event_type = next(
            (name for name, cls in EVENT_TYPES.items() if isinstance(payload, cls)), None
        )
        if event_type is None:
            raise TypeError(f"Not an event payload: {type(payload).__name__}")

        self._sequence += 1
        return EventEnvelope(
            event_id=str(uuid4()),
            tree_id=self.tree_id,
            timestamp=datetime.now(UTC),
            device_id=self.device_id,
            origin="local",
            sequence_num=self._sequence,
            event_type=event_type,
            payload=payload.model_dump(),
            intent=intent,
        )

    def rewind(self, event: EventEnvelope) -> None:
        """Return the sequence number of the newest event if it was never applied."""
        if event.sequence_num == self._sequence:
            self._sequence -= 1
