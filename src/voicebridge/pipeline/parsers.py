"""Incremental decoders for the upstream event framings.

Two framings reach the pipeline:

* newline-delimited JSON (recognition results, synthesis status messages)
* chunked event-stream lines (``data: {...}``) terminated by ``data: [DONE]``
  (streamed chat completions)

The ``split_*``/``parse_*`` functions are pure: they take the carried-over
buffer plus new bytes and return the decoded items with the unconsumed
remainder. The small parser classes only hold that remainder between reads.
Malformed segments are logged and skipped; they never abort a stream.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Iterable, Mapping, Optional, Sequence

from ..errors import ParseError
from .events import TranscriptEvent

logger = logging.getLogger(__name__)

COMPLETION_SENTINEL = "[DONE]"


def _as_bytes(data: bytes | str) -> bytes:
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def split_lines(buffer: bytes) -> tuple[list[bytes], bytes]:
    """Split ``buffer`` into complete lines and the trailing partial line."""

    *lines, remainder = buffer.split(b"\n")
    return [line.rstrip(b"\r") for line in lines], remainder


def decode_json_line(line: bytes) -> Any:
    """Decode one JSON line, raising `ParseError` on malformed input."""

    try:
        return json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ParseError(f"Malformed JSON segment: {exc}", line) from exc


def parse_json_lines(buffer: bytes) -> tuple[list[Any], bytes]:
    """Decode every complete JSON line in ``buffer``.

    Returns the decoded payloads and the unconsumed remainder.
    """

    lines, remainder = split_lines(buffer)
    payloads: list[Any] = []
    for line in lines:
        if not line.strip():
            continue
        try:
            payloads.append(decode_json_line(line))
        except ParseError as exc:
            logger.warning("Skipping segment: %s", exc)
    return payloads, remainder


def parse_event_stream(
    buffer: bytes, sentinel: str = COMPLETION_SENTINEL
) -> tuple[list[str], bytes, bool]:
    """Extract ``data:`` payloads from an event-stream buffer.

    Returns ``(payloads, remainder, done)``. Once the sentinel is seen,
    ``done`` is true and anything after it is discarded.
    """

    lines, remainder = split_lines(buffer)
    payloads: list[str] = []
    for raw in lines:
        try:
            line = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Skipping undecodable event-stream line (%d bytes)", len(raw))
            continue
        if not line or line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field != "data":
            continue
        value = value.lstrip(" ")
        if value == sentinel:
            return payloads, b"", True
        payloads.append(value)
    return payloads, remainder, False


class JsonLineParser:
    """Hold the partial line between reads of a newline-delimited JSON stream."""

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, data: bytes | str, *, end_of_message: bool = False) -> list[Any]:
        """Consume ``data`` and return the payloads it completes.

        ``end_of_message`` treats the end of ``data`` as a line boundary, which
        is how websocket messages are framed.
        """

        self._buffer += _as_bytes(data)
        if end_of_message and not self._buffer.endswith(b"\n"):
            self._buffer += b"\n"
        payloads, self._buffer = parse_json_lines(self._buffer)
        return payloads

    def flush(self) -> list[Any]:
        if not self._buffer.strip():
            self._buffer = b""
            return []
        return self.feed(b"", end_of_message=True)


class EventStreamParser:
    """Hold the partial line between reads of a ``data:`` event stream."""

    def __init__(self, sentinel: str = COMPLETION_SENTINEL) -> None:
        self._buffer = b""
        self._sentinel = sentinel
        self.done = False

    def feed(self, data: bytes | str) -> list[str]:
        if self.done:
            return []
        self._buffer += _as_bytes(data)
        payloads, self._buffer, self.done = parse_event_stream(
            self._buffer, self._sentinel
        )
        return payloads

    def flush(self) -> list[str]:
        if self.done or not self._buffer:
            return []
        return self.feed(b"\n")


def transcript_from_payload(payload: Any) -> Optional[TranscriptEvent]:
    """Map a recognition result message to a `TranscriptEvent`.

    Messages that are not transcription results (metadata, speech-started
    notifications, utterance-end markers) yield ``None``. Result messages with
    an unexpected shape raise `ParseError`.
    """

    if not isinstance(payload, Mapping):
        raise ParseError("Recognition payload is not an object", payload)
    channel = payload.get("channel")
    if channel is None:
        return None
    if not isinstance(channel, Mapping):
        raise ParseError("Recognition channel is not an object", payload)
    alternatives = channel.get("alternatives")
    if not isinstance(alternatives, Sequence) or not alternatives:
        return None
    best = alternatives[0]
    if not isinstance(best, Mapping):
        raise ParseError("Recognition alternative is not an object", payload)
    transcript = best.get("transcript")
    if not isinstance(transcript, str):
        raise ParseError("Recognition transcript is not a string", payload)

    confidence = best.get("confidence")
    return TranscriptEvent(
        text=transcript.strip(),
        is_final=bool(payload.get("is_final", False)),
        confidence=float(confidence) if isinstance(confidence, (int, float)) else None,
    )


def text_from_completion_chunk(payload: str) -> Optional[str]:
    """Return the text delta carried by one streamed completion chunk."""

    try:
        chunk = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed completion chunk: {exc.msg}", payload) from exc
    if not isinstance(chunk, Mapping):
        raise ParseError("Completion chunk is not an object", payload)
    if "error" in chunk:
        raise ParseError(f"Completion stream reported an error: {chunk['error']}", payload)

    choices = chunk.get("choices")
    if not isinstance(choices, Sequence) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, Mapping):
        return None
    delta = choice.get("delta")
    if not isinstance(delta, Mapping):
        return None
    content = delta.get("content")
    if isinstance(content, str) and content:
        return content
    return None


def iter_transcripts(payloads: Iterable[Any]) -> Iterable[TranscriptEvent]:
    for payload in payloads:
        try:
            event = transcript_from_payload(payload)
        except ParseError as exc:
            logger.warning("Skipping recognition message: %s", exc)
            continue
        if event is not None:
            yield event


__all__ = [
    "COMPLETION_SENTINEL",
    "EventStreamParser",
    "JsonLineParser",
    "decode_json_line",
    "iter_transcripts",
    "parse_event_stream",
    "parse_json_lines",
    "split_lines",
    "text_from_completion_chunk",
    "transcript_from_payload",
]
