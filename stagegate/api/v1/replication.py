"""
Replication WebSocket.

The client connects with ?token=<jwt>; the server sends a full snapshot
and then the coalesced deltas produced by each processing cycle. A client
may send "resync" at any time to receive a fresh full snapshot.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel

from stagegate.engines.replication.messages import encode_message
from stagegate.kernel.identity.jwt import verify_access_token
from stagegate.logging_config import get_logger

router = APIRouter()
logger = get_logger(__name__)


class WebSocketObserver:
    """Observer that writes JSON messages to a WebSocket."""

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    async def send(self, message: BaseModel) -> None:
        await self.websocket.send_text(encode_message(message))


@router.websocket("/replication/{principal_id}")
async def replication_socket(websocket: WebSocket, principal_id: uuid.UUID, token: Optional[str] = None):
    payload = verify_access_token(token) if token else None
    if payload is None or (not payload.is_admin and payload.principal_id != principal_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    context = getattr(websocket.app.state, "context", None)
    if context is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await websocket.accept()
    observer = WebSocketObserver(websocket)
    try:
        await context.connect(principal_id, observer)
        while True:
            text = await websocket.receive_text()
            if text.strip().lower() == "resync":
                await context.replication.resync(principal_id)
    except WebSocketDisconnect:
        logger.info("Replication socket closed", extra={"principal_id": str(principal_id)})
    finally:
        await context.disconnect(principal_id, observer)
