"""WebSocket sync channel (``/ws?token=...``)."""
import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from synexa_gateway.auth import account_id_from_token
from synexa_gateway.sync import WebSocketConnection, make_event

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])

POLICY_VIOLATION = 1008


@router.websocket("/ws")
async def sync_socket(websocket: WebSocket, token: Optional[str] = None):
    services = websocket.app.state.services
    broadcaster = services.broadcaster

    await websocket.accept()
    account_id = account_id_from_token(token, services.settings)
    if account_id is None:
        logger.info("Rejecting sync connection: missing or invalid token")
        await websocket.close(code=POLICY_VIOLATION, reason="Invalid token")
        return

    connection = WebSocketConnection(websocket)
    broadcaster.register(account_id, connection)
    try:
        await broadcaster.send(account_id, connection, make_event("user_status", {"status": "connected"}, account_id))
        while True:
            raw = await websocket.receive_text()
            try:
                event = json.loads(raw)
            except ValueError:
                logger.debug("Ignoring non-JSON sync message from %s", connection.id)
                connection.mark_alive()
                continue
            await broadcaster.handle_client_event(account_id, connection, event)
    except WebSocketDisconnect as exc:
        logger.info("Sync connection %s closed by client (code %s)", connection.id, exc.code)
    finally:
        connection.closed = True
        broadcaster.unregister(account_id, connection)
