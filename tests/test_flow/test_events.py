"""Tests for pkcegate.flow.events -- the in-process event bus."""

from __future__ import annotations

import pytest

from pkcegate.exceptions import EventDispatchError
from pkcegate.flow.events import TOKEN_RESPONSE_EVENT, EventBus


class TestEventBus:
    def test_event_name(self) -> None:
        assert TOKEN_RESPONSE_EVENT == "token-response"

    def test_handlers_called_in_order(self) -> None:
        bus = EventBus()
        calls: list[tuple[str, str, object]] = []
        bus.subscribe("token-response", lambda e, p: calls.append(("first", e, p)))
        bus.subscribe("token-response", lambda e, p: calls.append(("second", e, p)))

        delivered = bus.emit("token-response", {"name": "github"})

        assert delivered == 2
        assert calls == [
            ("first", "token-response", {"name": "github"}),
            ("second", "token-response", {"name": "github"}),
        ]

    def test_other_events_not_delivered(self) -> None:
        bus = EventBus()
        calls: list[object] = []
        bus.subscribe("other", lambda e, p: calls.append(p))

        assert bus.emit("token-response", 1) == 0
        assert calls == []

    def test_unsubscribe(self) -> None:
        bus = EventBus()
        calls: list[object] = []
        unsubscribe = bus.subscribe("token-response", lambda e, p: calls.append(p))

        unsubscribe()
        unsubscribe()
        bus.emit("token-response", 1)

        assert calls == []
        assert bus.handler_count("token-response") == 0

    def test_unsubscribe_during_dispatch(self) -> None:
        bus = EventBus()
        calls: list[str] = []
        unsubscribers: list = []

        def once(event: str, payload: object) -> None:
            calls.append("once")
            unsubscribers[0]()

        unsubscribers.append(bus.subscribe("token-response", once))
        bus.subscribe("token-response", lambda e, p: calls.append("always"))

        bus.emit("token-response", None)
        bus.emit("token-response", None)

        assert calls == ["once", "always", "always"]

    def test_failing_handler_raises_dispatch_error(self) -> None:
        bus = EventBus()
        later: list[object] = []

        def boom(event: str, payload: object) -> None:
            raise RuntimeError("window closed")

        bus.subscribe("token-response", boom)
        bus.subscribe("token-response", lambda e, p: later.append(p))

        with pytest.raises(EventDispatchError, match="window closed") as exc_info:
            bus.emit("token-response", 1)

        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert later == []
