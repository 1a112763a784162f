"""Streaming speech synthesis over the ElevenLabs stream-input websocket."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from typing import Any, Iterable, Mapping

from ..errors import NotReadyError
from ..pipeline.events import AudioFrame, SynthesisRequest
from ..pipeline.parsers import JsonLineParser
from .websocket import WebSocketConnection

logger = logging.getLogger(__name__)

END_OF_INPUT_MESSAGE = json.dumps({"text": ""})


class SynthesisConnection(WebSocketConnection):
    """Send text increments for one turn and emit the resulting audio.

    The handshake message (voice settings, model) is sent as soon as the
    socket opens; text queued before that is flushed right after it. The
    backend closing the socket marks the end of the turn's audio.
    """

    source = "synthesis"
    fail_on_overflow = True

    def __init__(self, *, handshake: Mapping[str, Any], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._handshake = dict(handshake)
        self._parser = JsonLineParser()
        self.frames_received = 0

    async def send(self, payload: SynthesisRequest) -> None:
        if payload.turn != self.turn:
            raise NotReadyError(
                self.source,
                f"request for turn {payload.turn} sent to turn {self.turn}",
            )
        await super().send(payload)

    async def _on_connected(self) -> None:
        await self._send_raw(json.dumps(self._handshake))

    def _encode(self, payload: SynthesisRequest) -> str:
        return json.dumps({"text": payload.text})

    async def _finish_input(self) -> None:
        await self._send_raw(END_OF_INPUT_MESSAGE)

    def _decode(self, message: bytes | str) -> Iterable[AudioFrame]:
        if isinstance(message, (bytes, bytearray)):
            if not message:
                return []
            self.frames_received += 1
            return [AudioFrame(data=bytes(message), turn=self.turn)]

        frames: list[AudioFrame] = []
        for payload in self._parser.feed(message, end_of_message=True):
            if not isinstance(payload, Mapping):
                logger.warning("Skipping non-object synthesis message for %s", self.session_id)
                continue
            if payload.get("error"):
                logger.warning(
                    "Synthesis backend error for %s turn %s: %s",
                    self.session_id,
                    self.turn,
                    payload.get("message") or payload["error"],
                )
                continue
            audio = payload.get("audio")
            if isinstance(audio, str) and audio:
                try:
                    data = base64.b64decode(audio, validate=True)
                except (binascii.Error, ValueError) as exc:
                    logger.warning("Skipping undecodable synthesis audio: %s", exc)
                    continue
                self.frames_received += 1
                frames.append(AudioFrame(data=data, turn=self.turn))
            if payload.get("isFinal"):
                logger.debug(
                    "Synthesis for %s turn %s reported final audio", self.session_id, self.turn
                )
        return frames


__all__ = ["END_OF_INPUT_MESSAGE", "SynthesisConnection"]
