"""Live-reload websocket endpoint."""

from __future__ import annotations

from fastapi import APIRouter, WebSocket

from trowel.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def reload_socket(websocket: WebSocket) -> None:
    """Hold the connection open; the hub pushes reload notices into it.

    Anything the client sends, text or binary, is ignored.
    """
    hub = websocket.app.state.reload_hub
    await websocket.accept()
    hub.register(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                logger.debug("reload_client_disconnected", code=message.get("code"))
                break
    finally:
        hub.unregister(websocket)
