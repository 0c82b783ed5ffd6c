"""
Tests for the event bus.
"""

import logging

from key_routing_graph.events import EventBus, EventType


class TestEventBus:
    """Tests for EventBus subscription and dispatch."""

    def test_emit_in_subscription_order(self):
        """Test handlers run in the order they subscribed."""
        bus = EventBus()
        calls = []
        bus.subscribe(EventType.NODE_ADDED, lambda e: calls.append("first"))
        bus.subscribe(EventType.NODE_ADDED, lambda e: calls.append("second"))

        bus.emit(EventType.NODE_ADDED, {"id": "a"})

        assert calls == ["first", "second"]

    def test_wildcard_runs_after_typed_handlers(self):
        """Test that wildcard subscribers see every event after typed ones."""
        bus = EventBus()
        calls = []
        bus.subscribe(None, lambda e: calls.append(("any", e.type)))
        bus.subscribe(EventType.NODE_REMOVED, lambda e: calls.append(("typed", e.type)))

        bus.emit(EventType.NODE_REMOVED, "a")
        bus.emit(EventType.NODE_ADDED, "b")

        assert calls == [
            ("typed", EventType.NODE_REMOVED),
            ("any", EventType.NODE_REMOVED),
            ("any", EventType.NODE_ADDED),
        ]

    def test_event_payload_and_timestamp(self):
        """Test the delivered event carries payload and timestamp."""
        bus = EventBus()
        event = bus.emit(EventType.SESSION_CREATED, {"id": "s"})
        assert event.type == EventType.SESSION_CREATED
        assert event.payload == {"id": "s"}
        assert event.timestamp.tzinfo is not None

    def test_unsubscribe(self):
        """Test that the returned callable removes the subscription."""
        bus = EventBus()
        calls = []
        unsubscribe = bus.subscribe(EventType.NODE_ADDED, calls.append)
        assert bus.handler_count(EventType.NODE_ADDED) == 1

        unsubscribe()
        bus.emit(EventType.NODE_ADDED)

        assert calls == []
        assert bus.handler_count(EventType.NODE_ADDED) == 0

    def test_unsubscribe_unknown_handler_is_ignored(self):
        """Test removing a handler that was never registered."""
        bus = EventBus()
        bus.unsubscribe(EventType.NODE_ADDED, print)

    def test_failing_handler_does_not_stop_dispatch(self, caplog):
        """Test that a raising subscriber is logged and skipped."""
        bus = EventBus()
        calls = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventType.NODE_ERROR, broken)
        bus.subscribe(EventType.NODE_ERROR, calls.append)

        with caplog.at_level(logging.ERROR, logger="key_routing_graph.events"):
            bus.emit(EventType.NODE_ERROR, {"node_id": "a"})

        assert len(calls) == 1
        assert "nodeError" in caplog.text
