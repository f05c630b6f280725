"""In-process event bus connecting the redirect listener to its host.

The listener does not know who is interested in a finished exchange. It
publishes a ``token-response`` event (or ``token-error`` when the session
failed) on an :class:`EventBus`, and whatever plays the host-shell role
(the CLI's ``login`` command, a desktop UI bridge, a test) subscribes to it.

Handlers run synchronously on the emitting thread, in subscription order.
The subscriber list is snapshotted before dispatch, so handlers may
unsubscribe themselves while an event is being delivered.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from pkcegate.exceptions import EventDispatchError

logger = logging.getLogger(__name__)

TOKEN_RESPONSE_EVENT = "token-response"
"""Event name published after a successful code exchange."""

TOKEN_ERROR_EVENT = "token-error"
"""Event name published when a callback leaves the session unable to finish."""

EventHandler = Callable[[str, Any], None]


class EventBus:
    """Ordered publish/subscribe dispatcher keyed by event name.

    Example::

        bus = EventBus()
        unsubscribe = bus.subscribe(TOKEN_RESPONSE_EVENT, lambda name, payload: ...)
        bus.emit(TOKEN_RESPONSE_EVENT, event)
        unsubscribe()
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[str, list[EventHandler]] = {}

    def subscribe(self, event: str, handler: EventHandler) -> Callable[[], None]:
        """Register *handler* for *event*.

        Args:
            event: Event name, e.g. :data:`TOKEN_RESPONSE_EVENT`.
            handler: Called as ``handler(event, payload)``.

        Returns:
            A callable that removes this subscription. Calling it more than
            once is harmless.
        """
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: str, payload: Any) -> int:
        """Deliver *payload* to every handler subscribed to *event*.

        Returns:
            The number of handlers that received the event.

        Raises:
            EventDispatchError: If a handler raises. Later handlers are not
                called.
        """
        with self._lock:
            handlers = list(self._handlers.get(event, []))

        for handler in handlers:
            try:
                handler(event, payload)
            except Exception as exc:
                raise EventDispatchError(f"Handler for '{event}' event failed: {exc}") from exc

        logger.debug("Emitted %s to %d handler(s)", event, len(handlers))
        return len(handlers)

    def handler_count(self, event: str) -> int:
        with self._lock:
            return len(self._handlers.get(event, []))
