"""Exception types shared across the voice pipeline."""

from __future__ import annotations

from typing import Any, Optional


class VoiceBridgeError(Exception):
    """Base class for pipeline errors."""


class UpstreamConnectionError(VoiceBridgeError):
    """Wrap transport or handshake failures on one of the backend connections."""

    def __init__(
        self, source: str, detail: Any, status_code: Optional[int] = None
    ) -> None:
        super().__init__(f"{source}: {detail}")
        self.source = source
        self.detail = detail
        self.status_code = status_code


class NotReadyError(UpstreamConnectionError):
    """Raised when a payload is sent to a connection that cannot accept it."""


class ParseError(VoiceBridgeError):
    """A single upstream segment could not be decoded."""

    def __init__(self, detail: str, segment: Any = None) -> None:
        super().__init__(detail)
        self.segment = segment


class ProtocolConfigurationError(VoiceBridgeError):
    """Required credentials or routing parameters are missing."""


__all__ = [
    "NotReadyError",
    "ParseError",
    "ProtocolConfigurationError",
    "UpstreamConnectionError",
    "VoiceBridgeError",
]
