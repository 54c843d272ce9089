"""Multi-device sync: fan-out of events to every live connection of an account.

Delivery is best-effort. A connection that cannot be written to is dropped
from the registry; nothing is queued or retried.
"""
import asyncio
import logging
import threading
import time
import uuid
from typing import Any, Dict, List, Optional

from starlette.websockets import WebSocket, WebSocketState

logger = logging.getLogger(__name__)

EVENT_TYPES = frozenset({"chat_message", "workspace_update", "user_status", "heartbeat", "generation_complete"})
RELAYED_EVENT_TYPES = frozenset({"chat_message", "workspace_update"})


def make_event(event_type: str, data: Any, account_id: Optional[str] = None) -> Dict[str, Any]:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    event = {"type": event_type, "data": data, "timestamp": int(time.time() * 1000)}
    if account_id is not None:
        event["userId"] = account_id
    return event


class WebSocketConnection:
    """A registered duplex channel. Its lifecycle belongs to the transport layer."""

    def __init__(self, websocket: WebSocket):
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.is_alive = True
        self.closed = False

    def mark_alive(self) -> None:
        self.is_alive = True

    async def send_json(self, data: Dict[str, Any]) -> None:
        if self.closed or self.websocket.application_state != WebSocketState.CONNECTED:
            raise ConnectionError(f"Connection {self.id} is closed")
        await self.websocket.send_json(data)

    async def close(self, code: int = 1000) -> None:
        if self.closed:
            return
        self.closed = True
        if self.websocket.application_state == WebSocketState.CONNECTED:
            await self.websocket.close(code=code)


class SyncBroadcaster:
    def __init__(self, heartbeat_interval: float = 30.0):
        self.heartbeat_interval = heartbeat_interval
        self._connections: Dict[str, List[Any]] = {}
        self._lock = threading.Lock()

    def register(self, account_id: str, connection) -> None:
        with self._lock:
            self._connections.setdefault(account_id, []).append(connection)
        logger.info("Sync connection %s registered for account %s", connection.id, account_id)

    def unregister(self, account_id: str, connection) -> bool:
        with self._lock:
            connections = self._connections.get(account_id)
            if not connections or connection not in connections:
                return False
            connections.remove(connection)
            if not connections:
                del self._connections[account_id]
        logger.info("Sync connection %s unregistered for account %s", connection.id, account_id)
        return True

    def connections(self, account_id: str) -> List[Any]:
        with self._lock:
            return list(self._connections.get(account_id, ()))

    def _snapshot(self) -> List[tuple]:
        with self._lock:
            return [(account_id, c) for account_id, conns in self._connections.items() for c in conns]

    async def _send(self, account_id: str, connection, event: Dict[str, Any]) -> bool:
        if connection.closed:
            return False
        try:
            await connection.send_json(event)
        except Exception as exc:
            logger.warning(
                "Dropping sync connection %s for account %s after failed send: %s",
                connection.id, account_id, exc,
            )
            self.unregister(account_id, connection)
            return False
        return True

    async def send(self, account_id: str, connection, event: Dict[str, Any]) -> bool:
        """Send to a single connection; used for replies and the welcome event."""
        return await self._send(account_id, connection, event)

    async def broadcast(self, account_id: str, event: Dict[str, Any]) -> int:
        """Deliver ``event`` to every open connection of the account. Returns the delivered count."""
        delivered = 0
        for connection in self.connections(account_id):
            if await self._send(account_id, connection, event):
                delivered += 1
        logger.debug("Broadcast %s to %d connection(s) of %s", event.get("type"), delivered, account_id)
        return delivered

    async def handle_client_event(self, account_id: str, connection, event: Any) -> None:
        """React to a message received from a client connection."""
        connection.mark_alive()
        if not isinstance(event, dict):
            logger.debug("Ignoring malformed sync message from %s", connection.id)
            return
        event_type = event.get("type")
        if event_type == "heartbeat":
            await self.send(account_id, connection, make_event("heartbeat", {"status": "alive"}))
        elif event_type in RELAYED_EVENT_TYPES:
            await self.broadcast(account_id, make_event(event_type, event.get("data"), account_id))
        else:
            logger.debug("Unknown sync event type %r from %s", event_type, connection.id)

    async def heartbeat_once(self) -> int:
        """Close connections that missed the previous heartbeat, ping the rest.

        Returns the number of connections closed.
        """
        closed = 0
        for account_id, connection in self._snapshot():
            if not connection.is_alive or connection.closed:
                logger.info("Sync connection %s missed heartbeat; closing", connection.id)
                self.unregister(account_id, connection)
                try:
                    await connection.close(code=1001)
                except Exception as exc:
                    logger.debug("Error closing stale connection %s: %s", connection.id, exc)
                closed += 1
                continue
            connection.is_alive = False
            await self._send(account_id, connection, make_event("heartbeat", {"status": "ping"}))
        return closed

    async def run_heartbeat(self, interval: Optional[float] = None) -> None:
        interval = interval or self.heartbeat_interval
        while True:
            await asyncio.sleep(interval)
            await self.heartbeat_once()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "totalConnections": sum(len(c) for c in self._connections.values()),
                "authenticatedUsers": len(self._connections),
                "userConnections": [
                    {"userId": account_id, "connections": len(c)}
                    for account_id, c in self._connections.items()
                ],
            }
