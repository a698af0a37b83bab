"""
WebSocket endpoint for the real-time counseling relay.

Frames in both directions are JSON objects of the form
``{"event": <name>, "data": {...}}``.
"""
from fastapi import WebSocket, WebSocketDisconnect, Query
from typing import Optional
import json
import logging
import uuid

from ..errors import AuthenticationFailedError
from ..relay import RelayEngine
from ..services.auth_service import get_auth_service
from ..utils.clock import isoformat, utcnow

logger = logging.getLogger(__name__)

# Application-defined close code for a rejected token (4000-4999 range).
WS_CLOSE_AUTH_FAILED = 4401


def _bearer_token(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() != "bearer" or not credentials.strip():
        return None
    return credentials.strip()


async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None)
):
    """
    WebSocket endpoint for relay connections.

    Args:
        websocket: WebSocket connection
        token: Signed JWT; may also be sent as an Authorization bearer header.
            Without a token the connection is anonymous.
    """
    engine: RelayEngine = websocket.app.state.engine
    gateway = engine.gateway

    token = token or _bearer_token(websocket.headers.get("authorization"))

    try:
        identity = get_auth_service().authenticate(token)
    except AuthenticationFailedError as e:
        logger.warning(f"Rejected WebSocket connection: {e.message}")
        await websocket.close(code=WS_CLOSE_AUTH_FAILED, reason=e.message)
        return

    await websocket.accept()

    connection_id = uuid.uuid4().hex
    gateway.register(connection_id, identity, websocket.send_json)

    try:
        # Send connection confirmation
        await gateway.send_to(connection_id, "connected", {
            "connectionId": connection_id,
            "userId": identity.user_id,
            "role": identity.role.value,
            "anonymous": identity.is_anonymous,
            "timestamp": isoformat(utcnow())
        })

        while True:
            raw = await websocket.receive_text()

            try:
                frame = json.loads(raw)
            except json.JSONDecodeError:
                await gateway.send_to(connection_id, "error", {
                    "message": "Invalid JSON",
                    "code": "validation_error"
                })
                continue

            if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
                await gateway.send_to(connection_id, "error", {
                    "message": "Frames must be objects with an 'event' field",
                    "code": "validation_error"
                })
                continue

            # Frames from one connection are handled strictly in order.
            await engine.dispatch(connection_id, frame["event"], frame.get("data"))

    except WebSocketDisconnect:
        logger.info(f"WebSocket client {connection_id} disconnected")
    except Exception as e:
        logger.error(f"WebSocket error on {connection_id}: {e}", exc_info=True)
    finally:
        await engine.handle_disconnect(connection_id)


__all__ = ['websocket_endpoint', 'WS_CLOSE_AUTH_FAILED']
