"""Client websocket route: binary audio in, binary synthesized audio out."""

from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket, status

from ..errors import ProtocolConfigurationError
from ..pipeline.channel import ClientChannel
from ..pipeline.manager import SessionManager

logger = logging.getLogger(__name__)
router = APIRouter(tags=["voice"])


@router.websocket("/voice-stream")
async def voice_stream(websocket: WebSocket) -> None:
    manager: SessionManager | None = getattr(websocket.app.state, "session_manager", None)
    if manager is None:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return

    await websocket.accept()
    channel = ClientChannel(websocket, max_pending=manager.settings.client_send_queue_size)
    try:
        session = await manager.on_client_connect(channel)
    except ProtocolConfigurationError as exc:
        logger.error("Rejecting voice client: %s", exc)
        return

    try:
        await session.wait_closed()
    finally:
        await manager.on_client_disconnect(session)
