"""
Turn state machine for one session.

The orchestrator consumes events from the session inbox one at a time, so
every transition is serialized:

    idle -> listening -> generating -> speaking -> listening
                              \\            /
                               cancelling -     (barge-in)

- a final transcript starts a turn: audio of earlier turns still queued for
  the client is dropped, the turn number is bumped and exactly one
  generation request is issued with the transcript as user content
- the first token of the active turn opens synthesis; every token is sent as
  its own text increment, and the completion sentinel drains synthesis
- synthesis audio is forwarded only while speaking and only for the active
  turn; the synthesis socket closing completes the turn
- a final transcript during generating/speaking cancels the active turn
  before the next one starts; a failed generation or synthesis connection
  drops the turn and the session keeps listening
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from ..errors import UpstreamConnectionError
from .events import (
    AudioFrame,
    GenerationToken,
    PipelineEvent,
    SynthesisRequest,
    TranscriptEvent,
    TurnState,
    UpstreamClosed,
    UpstreamFailure,
)

if TYPE_CHECKING:
    from ..upstream import GenerationConnection, SynthesisConnection, UpstreamFactory
    from .channel import ClientChannel

logger = logging.getLogger(__name__)

ACTIVE_STATES = (TurnState.GENERATING, TurnState.SPEAKING)


class Orchestrator:
    """Drive generation and synthesis from recognition events."""

    def __init__(
        self,
        session_id: str,
        factory: "UpstreamFactory",
        channel: "ClientChannel",
        inbox: asyncio.Queue,
    ) -> None:
        self.session_id = session_id
        self._factory = factory
        self._channel = channel
        self._inbox = inbox
        self.state = TurnState.IDLE
        self.turn = 0
        self.generation: Optional["GenerationConnection"] = None
        self.synthesis: Optional["SynthesisConnection"] = None
        self._tasks: set[asyncio.Task] = set()

    def start(self) -> None:
        self._transition(TurnState.LISTENING)

    def _transition(self, state: TurnState) -> None:
        if state is self.state:
            return
        logger.info(
            "Session %s turn %d: %s -> %s",
            self.session_id,
            self.turn,
            self.state.value,
            state.value,
        )
        self.state = state

    async def dispatch(self, event: PipelineEvent) -> None:
        if isinstance(event, TranscriptEvent):
            await self._on_transcript(event)
        elif isinstance(event, GenerationToken):
            await self._on_token(event)
        elif isinstance(event, AudioFrame):
            await self._on_audio(event)
        elif isinstance(event, UpstreamClosed):
            self._on_closed(event)
        elif isinstance(event, UpstreamFailure):
            self._on_failure(event)
        else:
            logger.warning("Ignoring unknown event %r", event)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    async def _on_transcript(self, event: TranscriptEvent) -> None:
        if not event.starts_turn:
            logger.debug("Partial transcript for %s: %r", self.session_id, event.text)
            return
        if self.state is TurnState.IDLE:
            logger.debug("Session %s is not listening; ignoring transcript", self.session_id)
            return
        if self.state in ACTIVE_STATES:
            logger.info("Barge-in on session %s during turn %d", self.session_id, self.turn)
            self._transition(TurnState.CANCELLING)
            self._abandon_turn()
            self._transition(TurnState.LISTENING)
        await self._start_turn(event.text)

    async def _start_turn(self, text: str) -> None:
        self._channel.drop_turn(self.turn)
        self.turn += 1
        logger.info("Session %s turn %d: %r", self.session_id, self.turn, text)
        self._transition(TurnState.GENERATING)
        generation = self._factory.generation(self.session_id, self.turn, self._inbox)
        self.generation = generation
        if not await generation.open():
            return
        try:
            await generation.send(text)
        except UpstreamConnectionError as exc:
            # The connection has queued an UpstreamFailure for this turn.
            logger.debug("Generation request for turn %d not sent: %s", self.turn, exc)

    async def _on_token(self, token: GenerationToken) -> None:
        if token.turn != self.turn or self.state not in ACTIVE_STATES:
            logger.debug("Dropping stale token for turn %d", token.turn)
            return

        if token.is_final:
            if self.synthesis is None:
                logger.info("Turn %d produced no text", self.turn)
                self._finish_turn()
            else:
                await self.synthesis.drain()
            return

        if self.synthesis is None:
            self._transition(TurnState.SPEAKING)
            self.synthesis = self._factory.synthesis(self.session_id, self.turn, self._inbox)
            self._spawn(self.synthesis.open())
        try:
            await self.synthesis.send(SynthesisRequest(text=token.text, turn=token.turn))
        except UpstreamConnectionError as exc:
            logger.warning(
                "Dropping text increment %d for turn %d: %s", token.index, token.turn, exc
            )

    async def _on_audio(self, frame: AudioFrame) -> None:
        if frame.turn != self.turn or self.state is not TurnState.SPEAKING:
            logger.debug("Dropping audio frame for stale turn %d", frame.turn)
            return
        await self._channel.send_audio(frame)

    def _on_closed(self, event: UpstreamClosed) -> None:
        if event.turn != self.turn:
            return
        if event.source == "generation":
            self.generation = None
        elif event.source == "synthesis" and self.state is TurnState.SPEAKING:
            logger.info("Session %s turn %d complete", self.session_id, self.turn)
            self._finish_turn()

    def _on_failure(self, event: UpstreamFailure) -> None:
        if event.turn != self.turn or self.state not in ACTIVE_STATES:
            return
        logger.warning(
            "Dropping turn %d on session %s after %s failure: %s",
            self.turn,
            self.session_id,
            event.source,
            event.error,
        )
        self._abandon_turn()
        self._transition(TurnState.LISTENING)

    # ------------------------------------------------------------------
    # Turn bookkeeping
    # ------------------------------------------------------------------
    def _abandon_turn(self) -> None:
        self._channel.drop_turn(self.turn)
        self._release_turn()

    def _finish_turn(self) -> None:
        self._release_turn()
        self._transition(TurnState.LISTENING)

    def _release_turn(self) -> None:
        for connection in (self.generation, self.synthesis):
            if connection is not None:
                connection.abort()
        self.generation = None
        self.synthesis = None

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def shutdown(self) -> None:
        """Stop the state machine and close the active turn's connections."""

        self._transition(TurnState.IDLE)
        connections = [c for c in (self.generation, self.synthesis) if c is not None]
        self.generation = None
        self.synthesis = None
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await asyncio.gather(*(c.close() for c in connections), return_exceptions=True)


__all__ = ["Orchestrator"]
