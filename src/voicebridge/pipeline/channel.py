"""Client websocket adapter: the only writer to the client socket."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import AsyncIterator, Optional

from fastapi import WebSocket, WebSocketDisconnect
from fastapi.websockets import WebSocketState

from .events import AudioFrame

logger = logging.getLogger(__name__)


class ClientChannel:
    """Serialize outbound audio onto one client websocket.

    Outbound frames go through a bounded queue drained by a single writer
    task; when the queue is full the oldest frame is dropped. Frames of a
    turn passed to `drop_turn` are discarded both from the queue and at
    write time.
    """

    def __init__(self, websocket: WebSocket, *, max_pending: int = 256) -> None:
        self._ws = websocket
        self._queue: asyncio.Queue[AudioFrame] = asyncio.Queue(maxsize=max_pending)
        self._writer: Optional[asyncio.Task] = None
        self._dropped_through = 0
        self._disconnected = asyncio.Event()
        self._closed = False
        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed or self._disconnected.is_set()

    async def receive_audio(self) -> AsyncIterator[bytes]:
        """Yield inbound binary frames until the client disconnects."""

        while not self.closed:
            try:
                message = await self._ws.receive()
            except (WebSocketDisconnect, RuntimeError):
                break
            if message.get("type") == "websocket.disconnect":
                break
            data = message.get("bytes")
            if data:
                yield data
            elif message.get("text") is not None:
                logger.debug("Ignoring text frame from client")
        self._disconnected.set()

    async def wait_disconnected(self) -> None:
        await self._disconnected.wait()

    async def send_audio(self, frame: AudioFrame) -> None:
        if self.closed or frame.turn <= self._dropped_through:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.frames_dropped += 1
            logger.debug("Client send queue full; dropped oldest frame")
        self._queue.put_nowait(frame)
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    def drop_turn(self, turn: int) -> None:
        """Discard every queued frame of ``turn`` and earlier turns."""

        self._dropped_through = max(self._dropped_through, turn)
        kept: list[AudioFrame] = []
        while not self._queue.empty():
            frame = self._queue.get_nowait()
            if frame.turn > self._dropped_through:
                kept.append(frame)
            else:
                self.frames_dropped += 1
        for frame in kept:
            self._queue.put_nowait(frame)

    async def _write_loop(self) -> None:
        try:
            while True:
                frame = await self._queue.get()
                if frame.turn <= self._dropped_through:
                    continue
                await self._ws.send_bytes(frame.data)
                self.frames_sent += 1
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.info("Client socket write failed: %s", exc)
            self._disconnected.set()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        self._disconnected.set()
        if self._writer is not None:
            self._writer.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer
            self._writer = None
        if (
            self._ws.client_state is WebSocketState.CONNECTED
            and self._ws.application_state is WebSocketState.CONNECTED
        ):
            try:
                await self._ws.close(code=code, reason=reason)
            except (RuntimeError, OSError) as exc:
                logger.debug("Client socket already closed: %s", exc)


__all__ = ["ClientChannel"]
