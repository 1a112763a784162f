"""One client conversation: the inbox, its producers and its consumer."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Optional

from ..errors import UpstreamConnectionError
from .events import (
    PipelineEvent,
    TranscriptEvent,
    TurnState,
    UpstreamClosed,
    UpstreamFailure,
)
from .orchestrator import Orchestrator

if TYPE_CHECKING:
    from ..config import Settings
    from ..upstream import RecognitionConnection, UpstreamConnection, UpstreamFactory
    from .channel import ClientChannel

logger = logging.getLogger(__name__)


class Session:
    """Tie a client channel to its upstream connections.

    Producers (the client audio pump, the recognition reader, the generation
    and synthesis readers and the transcript submission route) push into
    ``inbox``; a single consumer task hands every event to the orchestrator.
    """

    def __init__(
        self,
        session_id: str,
        channel: "ClientChannel",
        factory: "UpstreamFactory",
        settings: "Settings",
    ) -> None:
        self.session_id = session_id
        self.channel = channel
        self.settings = settings
        self.created_at = time.time()
        self.inbox: asyncio.Queue[PipelineEvent] = asyncio.Queue()
        self.orchestrator = Orchestrator(session_id, factory, channel, self.inbox)
        self.recognition: Optional["RecognitionConnection"] = None
        self.dropped_audio_frames = 0
        self._factory = factory
        self._tasks: set[asyncio.Task] = set()
        self._restoring = False
        self._done = asyncio.Event()
        self._closed = False

    @property
    def state(self) -> TurnState:
        return self.orchestrator.state

    @property
    def turn(self) -> int:
        return self.orchestrator.turn

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def connections(self) -> list["UpstreamConnection"]:
        orchestrator = self.orchestrator
        return [
            c
            for c in (self.recognition, orchestrator.generation, orchestrator.synthesis)
            if c is not None
        ]

    def start(self) -> None:
        """Validate configuration and start the session tasks.

        Raises `ProtocolConfigurationError` before anything is started when
        required credentials are missing.
        """

        self._factory.validate()
        self.orchestrator.start()
        self._spawn(self._pump_events(), "events")
        self._spawn(self._pump_client_audio(), "client-audio")
        self._spawn(self._watch_channel(), "client-watch")
        if self.settings.recognition_enabled:
            self._restoring = True
            self._spawn(self._connect_recognition(), "recognition-open")
        logger.info("Session %s started", self.session_id)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"{name}-{self.session_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Producers and consumer
    # ------------------------------------------------------------------
    async def _pump_events(self) -> None:
        try:
            while True:
                event = await self.inbox.get()
                if (
                    isinstance(event, (UpstreamClosed, UpstreamFailure))
                    and event.source == "recognition"
                ):
                    self._on_recognition_lost(event)
                    continue
                await self.orchestrator.dispatch(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "Event loop for session %s crashed: %s", self.session_id, exc, exc_info=True
            )
            self._end()

    async def _pump_client_audio(self) -> None:
        async for frame in self.channel.receive_audio():
            await self.forward_audio(frame)
        logger.info("Client for session %s disconnected", self.session_id)
        self._end()

    async def _watch_channel(self) -> None:
        await self.channel.wait_disconnected()
        if not self._done.is_set():
            logger.info("Client channel for session %s went away", self.session_id)
        self._end()

    async def forward_audio(self, frame: bytes) -> None:
        """Send one client audio frame to recognition, dropping it if not accepted."""

        recognition = self.recognition
        if recognition is None:
            self.dropped_audio_frames += 1
            return
        try:
            await recognition.send(frame)
        except UpstreamConnectionError as exc:
            self.dropped_audio_frames += 1
            logger.debug("Dropped client audio for session %s: %s", self.session_id, exc)

    async def _connect_recognition(self) -> None:
        recognition = self._factory.recognition(self.session_id, self.inbox)
        self.recognition = recognition
        try:
            opened = await recognition.open()
        finally:
            self._restoring = False
        if not opened and not self._done.is_set():
            logger.error(
                "Recognition for session %s could not be established; ending session",
                self.session_id,
            )
            self._end()

    def _on_recognition_lost(self, event: PipelineEvent) -> None:
        if self._done.is_set() or self._restoring:
            return
        if isinstance(event, UpstreamFailure):
            logger.warning(
                "Recognition lost for session %s: %s; reconnecting",
                self.session_id,
                event.error,
            )
        else:
            logger.info("Recognition closed for session %s; reconnecting", self.session_id)
        if self.recognition is not None:
            self.recognition.abort()
        self._restoring = True
        self._spawn(self._connect_recognition(), "recognition-restore")

    async def submit_transcript(self, event: TranscriptEvent) -> None:
        """Feed a transcript produced outside the live recognition path."""

        if self._closed:
            return
        await self.inbox.put(event)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------
    def _end(self) -> None:
        self._done.set()

    async def wait_closed(self) -> None:
        """Return once the client disconnects or the session ends on its own."""

        await self._done.wait()

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Cancel every session task and close every connection; idempotent."""

        if self._closed:
            return
        self._closed = True
        self._done.set()

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.orchestrator.shutdown()
        if self.recognition is not None:
            await self.recognition.close()
        await self.channel.close(code=code, reason=reason)
        logger.info(
            "Session %s closed after %d turn(s); %d client frame(s) dropped",
            self.session_id,
            self.turn,
            self.dropped_audio_frames,
        )


__all__ = ["Session"]
