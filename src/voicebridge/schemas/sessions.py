"""Schemas for the session inspection and transcript submission routes."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from ..pipeline.events import TranscriptEvent, TurnState


class TranscriptSubmission(BaseModel):
    """A transcript produced outside the live recognition path."""

    text: str = Field(..., description="Recognized utterance")
    is_final: bool = Field(default=True, description="Only final transcripts start a turn")
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    def to_event(self) -> TranscriptEvent:
        return TranscriptEvent(
            text=self.text, is_final=self.is_final, confidence=self.confidence
        )


class TranscriptAccepted(BaseModel):
    session_id: str
    turn: int
    state: TurnState


class SessionSummary(BaseModel):
    session_id: str
    state: TurnState
    turn: int
    created_at: float
    connections: dict[str, str] = Field(
        default_factory=dict, description="Upstream connection states keyed by source"
    )
    dropped_audio_frames: int = 0


__all__ = ["SessionSummary", "TranscriptAccepted", "TranscriptSubmission"]
