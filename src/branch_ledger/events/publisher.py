"""WebSocket publisher for live ledger updates.

Dashboards connect and receive ledger events as branches are recalculated
or reset. The publisher supports:
- Multiple concurrent client connections
- Filtering by event type or branch
- Replaying recent events to late-joining clients
"""

import asyncio
import contextlib
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import structlog
import websockets
from websockets.asyncio.server import Server, ServerConnection

from branch_ledger.config import get_settings
from branch_ledger.events.types import EventType, LedgerEvent

logger = structlog.get_logger(__name__)


@dataclass
class ClientConnection:
    """A connected dashboard client."""

    websocket: ServerConnection
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    subscribed_events: set[EventType] = field(default_factory=set)
    subscribed_branches: set[str] = field(default_factory=set)
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


class EventPublisher:
    """WebSocket server broadcasting ledger events.

    Usage:
        publisher = EventPublisher()
        await publisher.start()
        publisher.publish(event)
        await publisher.stop()
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
        self._event_buffer: deque[LedgerEvent] = deque(maxlen=buffer_size)
        self._is_running = False
        self._tasks: set[asyncio.Task[None]] = set()

        self._logger = logger.bind(component="event_publisher")

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def recent_events(self) -> list[LedgerEvent]:
        return list(self._event_buffer)

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

        close_tasks = [
            client.websocket.close(1001, "Server shutting down") for client in list(self._clients)
        ]
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
                "client_disconnected",
                client_id=client.client_id,
                code=e.code,
                reason=e.reason,
            )
        finally:
            self._clients.discard(client)

    async def _handle_message(self, client: ClientConnection, message: str | bytes) -> None:
        """Handle subscribe, unsubscribe and ping messages."""
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

        msg_type = data.get("type", "")
        if msg_type == "subscribe":
            await self._handle_subscribe(client, data)
        elif msg_type == "unsubscribe":
            self._handle_unsubscribe(client, data)
        elif msg_type == "ping":
            await client.websocket.send(json.dumps({"type": "pong"}))
        else:
            self._logger.warning(
                "unknown_message_type", client_id=client.client_id, msg_type=msg_type
            )

    async def _handle_subscribe(self, client: ClientConnection, data: dict[str, Any]) -> None:
        for et in data.get("event_types", []):
            with contextlib.suppress(ValueError):
                client.subscribed_events.add(EventType(et))
        for branch_id in data.get("branch_ids", []):
            client.subscribed_branches.add(str(branch_id))

        self._logger.debug(
            "client_subscribed",
            client_id=client.client_id,
            events=len(client.subscribed_events),
            branches=len(client.subscribed_branches),
        )
        await client.websocket.send(
            json.dumps(
                {
                    "type": "subscribed",
                    "event_types": sorted(et.value for et in client.subscribed_events),
                    "branch_ids": sorted(client.subscribed_branches),
                }
            )
        )

    def _handle_unsubscribe(self, client: ClientConnection, data: dict[str, Any]) -> None:
        for et in data.get("event_types", []):
            with contextlib.suppress(ValueError):
                client.subscribed_events.discard(EventType(et))
        for branch_id in data.get("branch_ids", []):
            client.subscribed_branches.discard(str(branch_id))

    async def _send_event_history(self, client: ClientConnection) -> None:
        if not self._event_buffer:
            return
        history = {
            "type": "event_history",
            "events": [
                event.to_dict()
                for event in self._event_buffer
                if self._should_send_to_client(client, event)
            ],
        }
        await client.websocket.send(json.dumps(history))

    def _should_send_to_client(self, client: ClientConnection, event: LedgerEvent) -> bool:
        """Clients without subscriptions receive everything."""
        if client.subscribed_events and event.event_type not in client.subscribed_events:
            return False
        if client.subscribed_branches and event.branch_id:
            return event.branch_id in client.subscribed_branches
        return True

    def publish(self, event: LedgerEvent) -> None:
        """Buffer the event and schedule a broadcast.

        Non-blocking. Delivery failures never reach the caller.
        """
        self._event_buffer.append(event)

        if self._is_running:
            task = asyncio.create_task(self._broadcast(event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def broadcast_all(self, event: LedgerEvent) -> None:
        """Like publish(), but waits for the broadcast to finish."""
        self._event_buffer.append(event)
        await self._broadcast(event)

    async def _broadcast(self, event: LedgerEvent) -> None:
        if not self._clients:
            return

        message = json.dumps(event.to_dict())
        tasks = [
            self._safe_send(client, message)
            for client in list(self._clients)
            if self._should_send_to_client(client, event)
        ]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _safe_send(self, client: ClientConnection, message: str) -> None:
        try:
            await client.websocket.send(message)
        except websockets.ConnectionClosed:
            self._clients.discard(client)
        except Exception as e:
            self._logger.error("send_error", client_id=client.client_id, error=str(e))
