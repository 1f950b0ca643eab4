"""Tests for the event system."""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from websockets.asyncio.client import connect

from perla.events import EventPublisher, EventType, SaleEvent, SessionEvent
from perla.events import types as events
from perla.events.publisher import ClientConnection
from perla.ledger import Ledger
from perla.models import EntityCandidate


def _client(address=("127.0.0.1", 12345)):
    mock_ws = MagicMock()
    mock_ws.remote_address = address
    mock_ws.send = AsyncMock()
    return ClientConnection(websocket=mock_ws)


class TestEventTypes:
    """Tests for event type definitions."""

    def test_event_type_values(self):
        """Test that event types use dotted names."""
        assert EventType.SALE_CREATED.value == "sale.created"
        assert EventType.SELECTION_CHANGED.value == "selection.changed"
        assert EventType.MATCH_CONFIRMATION_REQUESTED.value == "match.confirmation_requested"

    def test_session_event_to_dict(self):
        """Test basic event serialization."""
        event = SessionEvent(
            event_type=EventType.ASSISTANT_MESSAGE, owner_id="tienda", data={"message": "Hola"}
        )

        result = event.to_dict()

        assert result["type"] == "assistant.message"
        assert result["owner"] == "tienda"
        assert result["data"] == {"message": "Hola"}
        assert "id" in result
        assert "timestamp" in result

    def test_sale_event_to_dict(self, cookie_sale):
        """Test sale events carry wire-format sales."""
        event = events.sales_created("tienda", [cookie_sale])

        result = event.to_dict()

        assert isinstance(event, SaleEvent)
        assert result["sale_ids"] == [cookie_sale.id]
        assert result["sales"][0]["totalPrice"] == 6000
        assert result["sales"][0]["price"] == 3000


class TestEventFactories:
    """Tests for event factory functions."""

    def test_sales_updated(self, cookie_sale):
        event = events.sales_updated("tienda", [cookie_sale])

        assert event.event_type == EventType.SALE_UPDATED
        assert event.sale_ids == [cookie_sale.id]

    def test_sales_deleted(self):
        event = events.sales_deleted("tienda", ["a", "b"])

        assert event.event_type == EventType.SALE_DELETED
        assert event.sale_ids == ["a", "b"]
        assert event.sales == []

    def test_selection_changed(self):
        event = events.selection_changed("tienda", ("a",))

        assert event.data == {"selected": ["a"]}

    def test_match_confirmation_requested(self):
        candidate = EntityCandidate(
            field="product",
            value="cokies",
            canonical="cookies",
            similarity=0.86,
            record_ids=["sale-1"],
        )

        event = events.match_confirmation_requested("tienda", [candidate])

        assert event.data["candidates"] == [
            {
                "field": "product",
                "value": "cokies",
                "canonical": "cookies",
                "similarity": 0.86,
                "sale_ids": ["sale-1"],
            }
        ]

    def test_assistant_message_truncated(self):
        event = events.assistant_message("tienda", "x" * 3000, "conversational")

        assert len(event.data["message"]) == 2000
        assert event.data["kind"] == "conversational"

    def test_error_event(self):
        """Test error event creation."""
        event = events.error_event("Connection failed", {"reason": "transport_error"})

        assert event.event_type == EventType.ERROR
        assert event.data["message"] == "Connection failed"
        assert event.data["details"]["reason"] == "transport_error"


class TestClientConnection:
    """Tests for per-client subscription filtering."""

    def test_client_id_from_address(self):
        assert _client().client_id == "127.0.0.1:12345"

    def test_no_filters_receive_everything(self):
        client = _client()

        assert client.wants(events.sales_deleted("tienda", ["a"]))

    def test_event_type_filter(self):
        client = _client()
        client.subscribed_events.add(EventType.SALE_CREATED)

        assert client.wants(events.sales_created("tienda", []))
        assert not client.wants(events.sales_deleted("tienda", ["a"]))

    def test_owner_filter(self):
        client = _client()
        client.subscribed_owners.add("tienda")

        assert client.wants(events.sales_deleted("tienda", ["a"]))
        assert not client.wants(events.sales_deleted("otra", ["a"]))


class TestEventPublisher:
    """Tests for the EventPublisher class."""

    def test_publisher_initialization(self):
        """Test publisher initializes with defaults."""
        publisher = EventPublisher()

        assert publisher.is_running is False
        assert publisher.client_count == 0
        assert publisher.recent_events == []

    def test_publish_calls_hooks(self):
        """Test that publish calls registered hooks."""
        publisher = EventPublisher()
        hook = MagicMock()
        publisher.add_event_hook(hook)

        event = events.selection_changed("tienda", ())
        publisher.publish(event)

        hook.assert_called_once_with(event)

    def test_failing_hook_does_not_raise(self):
        publisher = EventPublisher()
        publisher.add_event_hook(MagicMock(side_effect=RuntimeError("boom")))
        second = MagicMock()
        publisher.add_event_hook(second)

        publisher.publish(events.selection_changed("tienda", ()))

        second.assert_called_once()

    def test_remove_event_hook(self):
        publisher = EventPublisher()
        hook = MagicMock()
        publisher.add_event_hook(hook)
        publisher.remove_event_hook(hook)

        publisher.publish(events.selection_changed("tienda", ()))

        hook.assert_not_called()

    def test_buffer_respects_max_size(self):
        """Test that buffer respects max size."""
        publisher = EventPublisher(buffer_size=3)

        for i in range(5):
            publisher.publish(events.selection_changed("tienda", (str(i),)))

        assert [e.data["selected"] for e in publisher.recent_events] == [["2"], ["3"], ["4"]]

    def test_get_status(self):
        """Test getting publisher status."""
        publisher = EventPublisher(host="localhost", port=8888)

        status = publisher.get_status()

        assert status["is_running"] is False
        assert status["host"] == "localhost"
        assert status["port"] == 8888
        assert status["client_count"] == 0
        assert status["buffer_size"] == 0


class TestEventPublisherMessages:
    """Tests for client control messages."""

    @pytest.mark.asyncio
    async def test_subscribe_to_types_and_owners(self):
        publisher = EventPublisher()
        client = _client()

        await publisher._handle_message(
            client,
            json.dumps(
                {"type": "subscribe", "event_types": ["sale.created", "bogus"], "owners": ["t"]}
            ),
        )

        assert client.subscribed_events == {EventType.SALE_CREATED}
        assert client.subscribed_owners == {"t"}
        reply = json.loads(client.websocket.send.call_args.args[0])
        assert reply == {"type": "subscribed", "event_types": ["sale.created"], "owners": ["t"]}

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        publisher = EventPublisher()
        client = _client()
        client.subscribed_events.add(EventType.SALE_CREATED)

        await publisher._handle_message(
            client, json.dumps({"type": "unsubscribe", "event_types": ["sale.created"]})
        )

        assert client.subscribed_events == set()

    @pytest.mark.asyncio
    async def test_ping(self):
        publisher = EventPublisher()
        client = _client()

        await publisher._handle_message(client, b'{"type": "ping"}')

        client.websocket.send.assert_awaited_once_with('{"type": "pong"}')

    @pytest.mark.asyncio
    async def test_snapshot_of_attached_ledger(self, cookie_sale):
        publisher = EventPublisher()
        publisher.attach_ledger(Ledger("tienda", [cookie_sale]))
        client = _client()

        await publisher._handle_message(client, json.dumps({"type": "snapshot", "owner": "tienda"}))

        reply = json.loads(client.websocket.send.call_args.args[0])
        assert reply["type"] == "ledger_snapshot"
        assert reply["owner"] == "tienda"
        assert [sale["id"] for sale in reply["sales"]] == [cookie_sale.id]
        assert publisher.get_status()["ledgers"] == ["tienda"]

    @pytest.mark.asyncio
    async def test_snapshot_of_unknown_owner(self):
        publisher = EventPublisher()
        client = _client()

        await publisher._handle_message(client, json.dumps({"type": "snapshot", "owner": "nadie"}))

        reply = json.loads(client.websocket.send.call_args.args[0])
        assert reply["type"] == "error"

    @pytest.mark.asyncio
    async def test_invalid_messages_ignored(self):
        publisher = EventPublisher()
        client = _client()

        await publisher._handle_message(client, "not json")
        await publisher._handle_message(client, "[1, 2]")
        await publisher._handle_message(client, b"\xff\xfe")

        client.websocket.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_history_filtered_by_subscription(self):
        publisher = EventPublisher()
        publisher.publish(events.sales_deleted("tienda", ["a"]))
        publisher.publish(events.sales_deleted("otra", ["b"]))
        client = _client()
        client.subscribed_owners.add("tienda")

        await publisher._send_event_history(client)

        history = json.loads(client.websocket.send.call_args.args[0])
        assert history["type"] == "event_history"
        assert [e["owner"] for e in history["events"]] == ["tienda"]


class TestEventPublisherAsync:
    """Async tests for EventPublisher."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        """Test starting and stopping the publisher."""
        publisher = EventPublisher(host="127.0.0.1", port=18765)

        await publisher.start()
        assert publisher.is_running is True

        await publisher.stop()
        assert publisher.is_running is False

    @pytest.mark.asyncio
    async def test_start_twice_is_safe(self):
        """Test that starting twice doesn't cause issues."""
        publisher = EventPublisher(host="127.0.0.1", port=18766)

        await publisher.start()
        await publisher.start()

        assert publisher.is_running is True

        await publisher.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self):
        """Test that stopping when not running is safe."""
        publisher = EventPublisher()

        await publisher.stop()

        assert publisher.is_running is False

    @pytest.mark.asyncio
    async def test_connected_client_receives_events(self, cookie_sale):
        publisher = EventPublisher(host="127.0.0.1", port=18767)
        await publisher.start()
        try:
            async with connect("ws://127.0.0.1:18767") as ws:
                await ws.send(json.dumps({"type": "ping"}))
                assert json.loads(await ws.recv()) == {"type": "pong"}

                publisher.publish(events.sales_created("tienda", [cookie_sale]))
                received = json.loads(await asyncio.wait_for(ws.recv(), timeout=2))

            assert received["type"] == "sale.created"
            assert received["sale_ids"] == [cookie_sale.id]
        finally:
            await publisher.stop()
