"""Inspect active sessions and submit transcripts from outside the live path."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..pipeline.manager import SessionManager
from ..pipeline.session import Session
from ..schemas.sessions import SessionSummary, TranscriptAccepted, TranscriptSubmission

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def get_session_manager(request: Request) -> SessionManager:
    manager: SessionManager | None = getattr(request.app.state, "session_manager", None)
    if manager is None:
        raise HTTPException(status_code=503, detail="Session manager is not running")
    return manager


def _summarize(session: Session) -> SessionSummary:
    return SessionSummary(
        session_id=session.session_id,
        state=session.state,
        turn=session.turn,
        created_at=session.created_at,
        connections={c.source: c.state.value for c in session.connections},
        dropped_audio_frames=session.dropped_audio_frames,
    )


@router.get("", response_model=list[SessionSummary])
async def list_sessions(
    manager: SessionManager = Depends(get_session_manager),
) -> list[SessionSummary]:
    return [_summarize(session) for session in list(manager.sessions.values())]


@router.post(
    "/{session_id}/transcripts",
    response_model=TranscriptAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_transcript(
    session_id: str,
    payload: TranscriptSubmission,
    manager: SessionManager = Depends(get_session_manager),
) -> TranscriptAccepted:
    """Queue a transcript for the session as if recognition had produced it."""

    session = manager.get(session_id)
    if session is None or session.closed:
        raise HTTPException(status_code=404, detail=f"Unknown session '{session_id}'")
    await session.submit_transcript(payload.to_event())
    logger.debug("Queued submitted transcript for session %s", session_id)
    return TranscriptAccepted(session_id=session_id, turn=session.turn, state=session.state)
