"""Outbound notification channel with token-based subscriptions."""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

logger = logging.getLogger(__name__)

NotificationKind = Literal["applied", "rejected", "synced", "forked", "offline", "online"]


@dataclass
class Notification:
    kind: NotificationKind
    tree_id: str
    detail: dict[str, Any] = field(default_factory=dict)


Subscriber = Callable[[Notification], None]


class NotificationChannel:
    def __init__(self) -> None:
        self._subscribers: dict[str, Subscriber] = {}

    def subscribe(self, callback: Subscriber) -> str:
        """Register callback. Returns the token that unsubscribes it."""
        token = str(uuid4())
        self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: str) -> bool:
        return self._subscribers.pop(token, None) is not None

    def publish(self, notification: Notification) -> None:
        for token, callback in list(self._subscribers.items()):
            try:
                callback(notification)
            except Exception:
                logger.exception(
                    "Subscriber %s failed on %s notification", token, notification.kind
                )
