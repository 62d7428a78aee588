"""
Handler for committed notification events.

Hands every event on the bus to the NotificationDispatcher. With an executor
the dispatch runs in the background so the transition caller returns
immediately; without one it runs inline (tests, replay tools).
"""

import logging
from concurrent.futures import Executor, Future
from typing import Callable

from core.events import NotificationEvent

logger = logging.getLogger(__name__)


def handle_notification_event(dispatcher, executor: Executor | None = None) -> Callable:
    """
    Factory that returns a NotificationEvent handler.

    Dependencies are captured at wiring time via closure.

    Args:
        dispatcher: NotificationDispatcher instance
        executor: Optional executor for fire-and-forget dispatch

    Returns:
        Handler callable for EventBus.subscribe
    """

    def log_outcome(event: NotificationEvent) -> Callable[[Future], None]:
        def done(future: Future):
            error = future.exception()
            if error is not None:
                logger.error(
                    f"Background dispatch failed for {event.kind.value} "
                    f"(event_id={event.event_id}): {error}"
                )
        return done

    def handler(event: NotificationEvent):
        if executor is None:
            dispatcher.dispatch(event)
            return

        future = executor.submit(dispatcher.dispatch, event)
        future.add_done_callback(log_outcome(event))

    return handler
