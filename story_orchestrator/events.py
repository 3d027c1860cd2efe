"""Host event bus with revocable subscriptions.

The host chat application publishes the events below; engine components
subscribe with EventBus.on() and keep the returned Subscription handles so
they can be revoked individually on teardown.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Host event names
# ---------------------------------------------------------------------------

MESSAGE_SENT = "message_sent"                  # payload: ChatMessage (user)
MESSAGE_RECEIVED = "message_received"          # payload: ChatMessage (character)
GENERATION_STARTED = "generation_started"      # payload: gen_type, {"dry_run", "character"}
GENERATION_STOPPED = "generation_stopped"
GENERATION_ENDED = "generation_ended"
GROUP_MEMBER_DRAFTED = "group_member_drafted"  # payload: character name
CHAT_CHANGED = "chat_changed"                  # payload: chat id

Handler = Callable[..., Any]


class Subscription:
    """Handle for one registered listener. close() is idempotent."""

    def __init__(self, bus: EventBus, event: str, handler: Handler) -> None:
        self._bus = bus
        self.event = event
        self.handler = handler
        self.active = True

    def close(self) -> None:
        if not self.active:
            return
        self.active = False
        self._bus._remove(self.event, self.handler)


class EventBus:
    """Synchronous in-process publish/subscribe.

    A handler that raises is logged and the remaining handlers still run.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def on(self, event: str, handler: Handler) -> Subscription:
        self._handlers.setdefault(event, []).append(handler)
        return Subscription(self, event, handler)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(*args)
            except Exception:
                logger.exception("event handler failed event=%s handler=%r", event, handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))

    def _remove(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers is None or handler not in handlers:
            raise KeyError(f"handler not registered for {event!r}")
        handlers.remove(handler)


def close_all(subscriptions: Iterable[Subscription]) -> int:
    """Close every subscription, continuing past failures.

    Returns the number of handles that failed to close.
    """
    failures = 0
    for sub in subscriptions:
        try:
            sub.close()
        except Exception as e:
            failures += 1
            logger.warning("failed to unsubscribe from %s: %s", sub.event, e)
    return failures
