"""Typed events exchanged between upstream connections and the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class ConnectionState(str, Enum):
    """Lifecycle of a single upstream connection."""

    CONNECTING = "connecting"
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"
    FAILED = "failed"


class TurnState(str, Enum):
    """States of the per-session turn state machine."""

    IDLE = "idle"
    LISTENING = "listening"
    GENERATING = "generating"
    SPEAKING = "speaking"
    CANCELLING = "cancelling"


@dataclass(frozen=True)
class TranscriptEvent:
    """A recognition result, partial or final."""

    text: str
    is_final: bool
    confidence: Optional[float] = None

    @property
    def starts_turn(self) -> bool:
        return self.is_final and bool(self.text.strip())


@dataclass(frozen=True)
class GenerationToken:
    """One text fragment of a streamed completion.

    The completion sentinel is delivered as a token with ``is_final=True``
    and empty text.
    """

    text: str
    index: int
    turn: int
    is_final: bool = False


@dataclass(frozen=True)
class SynthesisRequest:
    text: str
    turn: int


@dataclass(frozen=True)
class AudioFrame:
    data: bytes
    turn: int


@dataclass(frozen=True)
class UpstreamClosed:
    """A connection finished cleanly; for synthesis this completes the turn."""

    source: str
    turn: Optional[int] = None


@dataclass(frozen=True)
class UpstreamFailure:
    source: str
    error: Exception
    turn: Optional[int] = None


PipelineEvent = Union[
    TranscriptEvent, GenerationToken, AudioFrame, UpstreamClosed, UpstreamFailure
]


__all__ = [
    "AudioFrame",
    "ConnectionState",
    "GenerationToken",
    "PipelineEvent",
    "SynthesisRequest",
    "TranscriptEvent",
    "TurnState",
    "UpstreamClosed",
    "UpstreamFailure",
]
