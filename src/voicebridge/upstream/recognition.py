"""Live speech recognition over the Deepgram listen websocket."""

from __future__ import annotations

import json
import logging
from contextlib import suppress
from typing import Any, Iterable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from websockets.exceptions import ConnectionClosed

from ..errors import UpstreamConnectionError
from ..pipeline.events import TranscriptEvent
from ..pipeline.parsers import JsonLineParser, iter_transcripts
from .websocket import WebSocketConnection

logger = logging.getLogger(__name__)

CLOSE_STREAM_MESSAGE = json.dumps({"type": "CloseStream"})


class RecognitionConnection(WebSocketConnection):
    """Stream raw client audio to recognition and emit `TranscriptEvent`s.

    The connection is long-lived, so opening it retries with exponential
    backoff before giving up.
    """

    source = "recognition"

    def __init__(
        self,
        *,
        retry_attempts: int = 3,
        retry_backoff: float = 0.5,
        retry_max_backoff: float = 5.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff
        self._retry_max_backoff = retry_max_backoff
        self._parser = JsonLineParser()

    async def _connect_with_policy(self) -> None:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(
                multiplier=self._retry_backoff, max=self._retry_max_backoff
            ),
            retry=retry_if_exception_type(UpstreamConnectionError),
            before_sleep=self._log_retry,
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                await self._attempt()

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "Recognition connect attempt %d for session %s failed: %s; retrying",
            retry_state.attempt_number,
            self.session_id,
            exc,
        )

    def _decode(self, message: bytes | str) -> Iterable[TranscriptEvent]:
        payloads = self._parser.feed(message, end_of_message=True)
        events = list(iter_transcripts(payloads))
        for event in events:
            logger.debug(
                "Transcript for %s: %r (final=%s)",
                self.session_id,
                event.text,
                event.is_final,
            )
        return events

    async def _teardown(self) -> None:
        if self._ws is not None:
            # Ask the backend to flush pending results before the socket closes.
            with suppress(ConnectionClosed):
                await self._ws.send(CLOSE_STREAM_MESSAGE)
        await super()._teardown()


__all__ = ["CLOSE_STREAM_MESSAGE", "RecognitionConnection"]
