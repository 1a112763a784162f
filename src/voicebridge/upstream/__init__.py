"""
Upstream backend connections.

Each session owns three connections, all built on `UpstreamConnection`:

- recognition: long-lived websocket, raw audio out, transcripts in
- generation: one streamed HTTP completion per turn, tokens in
- synthesis: one websocket per turn, text increments out, audio in

Connections push typed events into the session inbox and never call back
into the orchestrator.
"""

from .base import UpstreamConnection
from .factory import UpstreamFactory
from .generation import GenerationConnection
from .recognition import RecognitionConnection
from .synthesis import SynthesisConnection
from .websocket import WebSocketConnection

__all__ = [
    "GenerationConnection",
    "RecognitionConnection",
    "SynthesisConnection",
    "UpstreamConnection",
    "UpstreamFactory",
    "WebSocketConnection",
]
