"""WebSocket event publisher for live sales views.

Connected clients receive every session event as JSON. Clients may narrow
what they receive by event type or ledger owner, and late joiners get the
recently published events on connect.

Client messages:
    {"type": "subscribe", "event_types": [...], "owners": [...]}
    {"type": "unsubscribe", "event_types": [...], "owners": [...]}
    {"type": "snapshot", "owner": "tienda"}   -> ledger_snapshot
    {"type": "ping"}                          -> pong
"""

import asyncio
import json
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog
import websockets
from websockets.asyncio.server import Server, ServerConnection

from perla.config import get_settings
from perla.events.types import EventType, SessionEvent

if TYPE_CHECKING:
    from perla.ledger import Ledger

logger = structlog.get_logger(__name__)


@dataclass
class ClientConnection:
    """Represents a connected WebSocket client."""

    websocket: ServerConnection
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    subscribed_events: set[EventType] = field(default_factory=set)
    subscribed_owners: set[str] = field(default_factory=set)
    client_id: str = ""

    def __post_init__(self) -> None:
        if not self.client_id and self.websocket.remote_address:
            addr = self.websocket.remote_address
            self.client_id = f"{addr[0]}:{addr[1]}" if isinstance(addr, tuple) else str(addr)

    def __hash__(self) -> int:
        return hash(id(self.websocket))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ClientConnection):
            return False
        return self.websocket is other.websocket

    def wants(self, event: SessionEvent) -> bool:
        """No subscriptions means everything."""
        if self.subscribed_events and event.event_type not in self.subscribed_events:
            return False
        if self.subscribed_owners and event.owner_id not in self.subscribed_owners:
            return False
        return True


class EventPublisher:
    """WebSocket server broadcasting session events.

    Usage:
        publisher = EventPublisher()
        await publisher.start()
        session = SalesSession(gateway, ledger, publisher=publisher)
        ...
        await publisher.stop()

    ``publish()`` never raises into the caller: hook and delivery errors are
    logged.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = None,
        buffer_size: int = 100,
    ):
        settings = get_settings()
        self._host = host or settings.ws_host
        self._port = port or settings.ws_port

        self._server: Server | None = None
        self._clients: set[ClientConnection] = set()
        self._event_buffer: deque[SessionEvent] = deque(maxlen=buffer_size)
        self._broadcasts: set[asyncio.Task[None]] = set()
        self._is_running = False

        self._event_hooks: list[Callable[[SessionEvent], None]] = []
        self._ledgers: "dict[str, Ledger]" = {}

        self._logger = logger.bind(component="event_publisher")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def recent_events(self) -> list[SessionEvent]:
        return list(self._event_buffer)

    def add_event_hook(self, hook: Callable[[SessionEvent], None]) -> None:
        """Add a hook called synchronously for every event, before broadcasting."""
        self._event_hooks.append(hook)

    def remove_event_hook(self, hook: Callable[[SessionEvent], None]) -> None:
        if hook in self._event_hooks:
            self._event_hooks.remove(hook)

    def attach_ledger(self, ledger: "Ledger") -> None:
        """Make an owner's ledger available to ``snapshot`` requests."""
        self._ledgers[ledger.owner_id] = ledger

    async def start(self) -> None:
        """Start the WebSocket server."""
        if self._is_running:
            self._logger.warning("publisher_already_running")
            return

        self._logger.info("starting_publisher", host=self._host, port=self._port)
        self._server = await websockets.serve(
            self._handle_client,
            self._host,
            self._port,
            ping_interval=30,
            ping_timeout=10,
        )
        self._is_running = True
        self._logger.info("publisher_started", address=f"ws://{self._host}:{self._port}")

    async def stop(self) -> None:
        """Stop the server and disconnect all clients."""
        if not self._is_running:
            return

        self._logger.info("stopping_publisher", client_count=len(self._clients))
        close_tasks = [c.websocket.close(1001, "Server shutting down") for c in self._clients]
        if close_tasks:
            await asyncio.gather(*close_tasks, return_exceptions=True)
        self._clients.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        self._is_running = False
        self._logger.info("publisher_stopped")

    async def _handle_client(self, websocket: ServerConnection) -> None:
        client = ClientConnection(websocket=websocket)
        self._clients.add(client)
        self._logger.info("client_connected", client_id=client.client_id)

        await self._send_event_history(client)

        try:
            async for message in websocket:
                await self._handle_message(client, message)
        except websockets.ConnectionClosed as e:
            self._logger.info(
                "client_disconnected", client_id=client.client_id, code=e.code, reason=e.reason
            )
        finally:
            self._clients.discard(client)

    async def _handle_message(self, client: ClientConnection, message: str | bytes) -> None:
        """Decode one client message and dispatch it by its ``type``."""
        if isinstance(message, bytes):
            try:
                message = message.decode("utf-8")
            except UnicodeDecodeError:
                self._logger.warning("invalid_message_encoding", client_id=client.client_id)
                return

        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            self._logger.warning("invalid_json", client_id=client.client_id)
            return
        if not isinstance(data, dict):
            self._logger.warning("invalid_message", client_id=client.client_id)
            return

        handlers = {
            "subscribe": self._on_subscribe,
            "unsubscribe": self._on_unsubscribe,
            "snapshot": self._on_snapshot,
            "ping": self._on_ping,
        }
        msg_type = data.get("type", "")
        handler = handlers.get(msg_type)
        if handler is None:
            self._logger.warning(
                "unknown_message_type", client_id=client.client_id, msg_type=msg_type
            )
            return
        await handler(client, data)

    async def _on_subscribe(self, client: ClientConnection, data: dict[str, Any]) -> None:
        self._update_subscriptions(client, data, add=True)
        reply = {
            "type": "subscribed",
            "event_types": sorted(et.value for et in client.subscribed_events),
            "owners": sorted(client.subscribed_owners),
        }
        await client.websocket.send(json.dumps(reply))

    async def _on_unsubscribe(self, client: ClientConnection, data: dict[str, Any]) -> None:
        self._update_subscriptions(client, data, add=False)

    async def _on_snapshot(self, client: ClientConnection, data: dict[str, Any]) -> None:
        owner = str(data.get("owner", ""))
        ledger = self._ledgers.get(owner)
        if ledger is None:
            reply: dict[str, Any] = {"type": "error", "message": f"unknown owner {owner!r}"}
        else:
            reply = {
                "type": "ledger_snapshot",
                "owner": owner,
                "sales": [sale.to_dict() for sale in ledger.records],
            }
        await client.websocket.send(json.dumps(reply, ensure_ascii=False))

    async def _on_ping(self, client: ClientConnection, data: dict[str, Any]) -> None:
        await client.websocket.send(json.dumps({"type": "pong"}))

    def _update_subscriptions(
        self, client: ClientConnection, data: dict[str, Any], add: bool
    ) -> None:
        events = client.subscribed_events
        owners = client.subscribed_owners
        for raw in data.get("event_types", []):
            try:
                event_type = EventType(raw)
            except ValueError:
                self._logger.debug("unknown_event_type", client_id=client.client_id, value=raw)
                continue
            if add:
                events.add(event_type)
            else:
                events.discard(event_type)

        for owner in map(str, data.get("owners", [])):
            if add:
                owners.add(owner)
            else:
                owners.discard(owner)

        self._logger.debug(
            "client_subscriptions_changed",
            client_id=client.client_id,
            events=len(events),
            owners=len(owners),
        )

    async def _send_event_history(self, client: ClientConnection) -> None:
        if not self._event_buffer:
            return
        history = {
            "type": "event_history",
            "events": [event.to_dict() for event in self._event_buffer if client.wants(event)],
        }
        await client.websocket.send(json.dumps(history))

    def publish(self, event: SessionEvent) -> None:
        """Record an event, run hooks, and schedule delivery to clients."""
        self._event_buffer.append(event)

        for hook in self._event_hooks:
            try:
                hook(event)
            except Exception as e:
                self._logger.error("event_hook_error", error=str(e))

        if self._is_running:
            task = asyncio.create_task(self._broadcast(event))
            self._broadcasts.add(task)
            task.add_done_callback(self._broadcasts.discard)

    async def _broadcast(self, event: SessionEvent) -> None:
        if not self._clients:
            return

        message = json.dumps(event.to_dict())
        tasks = [self._safe_send(c, message) for c in list(self._clients) if c.wants(event)]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_send(self, client: ClientConnection, message: str) -> None:
        try:
            await client.websocket.send(message)
        except websockets.ConnectionClosed:
            self._clients.discard(client)

    def get_status(self) -> dict[str, Any]:
        return {
            "is_running": self._is_running,
            "host": self._host,
            "port": self._port,
            "client_count": len(self._clients),
            "buffer_size": len(self._event_buffer),
            "ledgers": sorted(self._ledgers),
        }
