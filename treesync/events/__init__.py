"""Event sourcing: append-only event log and event construction."""

from treesync.events.factory import EventFactory
from treesync.events.log import EventLog, apply_event

__all__ = ["EventFactory", "EventLog", "apply_event"]
