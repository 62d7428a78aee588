"""
Event bus for ticket notification events.

Synchronous in-process pub/sub. Handlers execute immediately in the same
thread as the publisher. Handler errors are logged but never propagate:
the transition (status + event row) has already committed.
"""

import logging
from typing import Callable, Dict, List

from core.events import EventKind, NotificationEvent

logger = logging.getLogger(__name__)

ALL_KINDS = "*"


class EventBus:
    """
    In-process event bus for notification events.

    Subscribe by event kind (or ALL_KINDS), publish by event instance.
    Handlers are called synchronously in subscription order; kind-specific
    subscribers run before wildcard subscribers.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, kind: EventKind | str, callback: Callable):
        """
        Subscribe to events of a specific kind.

        Args:
            kind: EventKind to subscribe to, or ALL_KINDS for every event
            callback: Function to call when event is published
        """
        key = kind.value if isinstance(kind, EventKind) else kind
        self._subscribers.setdefault(key, []).append(callback)

    def publish(self, event: NotificationEvent):
        """
        Publish an event to all subscribers of its kind.

        Args:
            event: NotificationEvent instance to publish
        """
        callbacks = self._subscribers.get(event.kind.value, []) + self._subscribers.get(ALL_KINDS, [])

        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Handler %s failed for %s (event_id=%s)",
                    getattr(callback, "__name__", repr(callback)),
                    event.kind.value,
                    event.event_id,
                )
