"""Registry of active voice sessions."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Dict, Optional

from fastapi import status

from ..config import Settings
from ..errors import ProtocolConfigurationError
from ..upstream import UpstreamFactory
from .channel import ClientChannel
from .session import Session

logger = logging.getLogger(__name__)


class SessionManager:
    """Create a Session per client connection and dispose it exactly once."""

    def __init__(self, settings: Settings, factory: Optional[UpstreamFactory] = None):
        self.settings = settings
        self.factory = factory or UpstreamFactory(settings)
        self.sessions: Dict[str, Session] = {}

    def get(self, session_id: str) -> Optional[Session]:
        """Retrieve a session by id."""
        return self.sessions.get(session_id)

    async def on_client_connect(self, channel: ClientChannel) -> Session:
        """Create and start a session for ``channel``.

        A `ProtocolConfigurationError` from `Session.start` disposes the
        session and is re-raised to the caller.
        """

        session_id = uuid.uuid4().hex
        session = Session(session_id, channel, self.factory, self.settings)
        self.sessions[session_id] = session
        try:
            session.start()
        except ProtocolConfigurationError as exc:
            await self.on_client_disconnect(
                session, code=status.WS_1008_POLICY_VIOLATION, reason=str(exc)[:120]
            )
            raise
        logger.info("Client connected: session %s (%d active)", session_id, len(self.sessions))
        return session

    async def on_client_disconnect(
        self, session: Session, code: int = 1000, reason: str = ""
    ) -> None:
        """Dispose ``session``; calling it again for the same session is a no-op."""

        if self.sessions.pop(session.session_id, None) is not None:
            logger.info(
                "Client disconnected: session %s (%d active)",
                session.session_id,
                len(self.sessions),
            )
        await session.close(code=code, reason=reason)

    async def shutdown(self) -> None:
        sessions = list(self.sessions.values())
        if sessions:
            logger.info("Closing %d active session(s)", len(sessions))
        await asyncio.gather(
            *(self.on_client_disconnect(s) for s in sessions), return_exceptions=True
        )
        await self.factory.aclose()


__all__ = ["SessionManager"]
