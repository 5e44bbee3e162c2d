"""
WebSocket endpoint for real-time notifications.

Clients bind their connection to a user identity, then receive
``notification`` events published for that user.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["websocket"])


# Message models
class WSRequest(BaseModel):
    """WebSocket client message."""

    action: str  # join, leave, ping
    user_id: Optional[str] = Field(None, min_length=1)


class WSResponse(BaseModel):
    """WebSocket response message."""

    type: str = "response"
    action: str
    success: bool
    user_id: Optional[str] = None
    error: Optional[str] = None


@router.websocket("/notifications/ws")
async def notifications_websocket(websocket: WebSocket):
    """
    WebSocket endpoint for student notifications.

    **Message Format** (client to server):
    ```json
    {"action": "join", "user_id": "u1"}
    {"action": "leave", "user_id": "u1"}
    {"action": "ping"}
    ```

    **Events** (server to client):
    ```json
    {"type": "event", "event": "notification",
     "data": {"message": "...", "timestamp": "2024-01-01T00:00:00+00:00"}}
    ```

    Disconnecting unbinds the connection from every user it joined.
    """
    manager = websocket.app.state.services.connections
    connection_id = await manager.connect(websocket)

    await websocket.send_json(
        {"type": "connected", "connection_id": connection_id}
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                request = WSRequest(**json.loads(raw))
            except (ValueError, ValidationError) as e:
                await websocket.send_json(
                    WSResponse(action="unknown", success=False, error=f"Invalid message: {e}").model_dump()
                )
                continue

            if request.action == "ping":
                await websocket.send_json({"type": "pong"})
            elif request.action in ("join", "leave") and request.user_id:
                if request.action == "join":
                    manager.join(connection_id, request.user_id)
                else:
                    manager.leave(connection_id, request.user_id)
                await websocket.send_json(
                    WSResponse(action=request.action, success=True, user_id=request.user_id).model_dump()
                )
            else:
                await websocket.send_json(
                    WSResponse(
                        action=request.action,
                        success=False,
                        error="Unknown action or missing user_id",
                    ).model_dump()
                )

    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: {connection_id}")
    finally:
        await manager.disconnect(connection_id)
