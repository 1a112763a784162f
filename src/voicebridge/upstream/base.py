"""Shared lifecycle for the three backend connections of a session."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, AsyncIterator, Optional

from ..errors import NotReadyError, UpstreamConnectionError
from ..pipeline.events import (
    ConnectionState,
    PipelineEvent,
    UpstreamClosed,
    UpstreamFailure,
)

logger = logging.getLogger(__name__)


class UpstreamConnection:
    """One outbound streaming connection owned by a session.

    The connection runs its own reader task and pushes typed events into the
    session inbox; it never calls back into the orchestrator. State moves
    ``connecting -> open -> draining -> closed`` with ``failed`` reachable from
    any state, and ``close()``/``abort()`` ending every path in ``closed``.

    Subclasses implement the transport hooks:

    * ``_establish()``: connect and complete the backend handshake
    * ``_transmit(payload)``: write one payload
    * ``_receive()``: async iterator of decoded events, ending when the
      backend finishes
    * ``_finish_input()``: signal end of input for close-after-drain
    * ``_teardown()``: release the transport
    """

    source = "upstream"
    # Whether a full pre-open queue fails the connection instead of dropping
    # its oldest payload.
    fail_on_overflow = False

    def __init__(
        self,
        *,
        session_id: str,
        inbox: asyncio.Queue,
        turn: Optional[int] = None,
        open_timeout: float = 10.0,
        drain_timeout: float = 15.0,
        pre_open_limit: int = 0,
    ) -> None:
        self.session_id = session_id
        self.turn = turn
        self._inbox = inbox
        self._open_timeout = open_timeout
        self._drain_timeout = drain_timeout
        self._pre_open_limit = pre_open_limit
        self._pending: deque[Any] = deque()
        self._state = ConnectionState.CONNECTING
        self._closed = False
        self._flushing = False
        self._drain_requested = False
        self._opener: Optional[asyncio.Task] = None
        self._reader: Optional[asyncio.Task] = None
        self._watchdog: Optional[asyncio.Task] = None
        self._release: Optional[asyncio.Task] = None
        self.dropped = 0

    def __repr__(self) -> str:
        turn = f" turn={self.turn}" if self.turn is not None else ""
        return f"<{type(self).__name__} session={self.session_id}{turn} state={self._state.value}>"

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug(
            "%s connection for session %s: %s -> %s",
            self.source,
            self.session_id,
            self._state.value,
            state.value,
        )
        self._state = state

    def _emit(self, event: PipelineEvent) -> None:
        self._inbox.put_nowait(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(self) -> bool:
        """Connect, flush queued payloads and start the reader.

        Returns ``False`` when the connection could not be opened; in that
        case it is ``failed`` and an `UpstreamFailure` has been queued.
        """

        if self._closed:
            return False
        if self._opener is not None or self._state is not ConnectionState.CONNECTING:
            return self.is_open

        self._opener = asyncio.current_task()
        try:
            await self._connect_with_policy()
        except UpstreamConnectionError as exc:
            self._fail(exc)
            return False
        finally:
            self._opener = None

        if self._closed:
            await self._release_transport()
            return False

        self._set_state(ConnectionState.OPEN)
        self._reader = asyncio.create_task(
            self._read_loop(), name=f"{self.source}-reader-{self.session_id}"
        )
        logger.info("%s connection open for session %s", self.source, self.session_id)

        self._flushing = True
        try:
            while self._pending:
                await self._transmit(self._pending.popleft())
            if self._drain_requested:
                await self._begin_drain()
        except UpstreamConnectionError as exc:
            self._fail(exc)
            return False
        finally:
            self._flushing = False
        return True

    async def _connect_with_policy(self) -> None:
        await self._attempt()

    async def _attempt(self) -> None:
        try:
            async with asyncio.timeout(self._open_timeout):
                await self._establish()
        except TimeoutError as exc:
            await self._release_transport()
            raise UpstreamConnectionError(
                self.source, f"open timed out after {self._open_timeout:.1f}s"
            ) from exc
        except UpstreamConnectionError:
            await self._release_transport()
            raise

    async def send(self, payload: Any) -> None:
        """Send ``payload`` or queue it until the connection opens.

        Raises `NotReadyError` when the connection does not accept payloads
        in its current state, and `UpstreamConnectionError` when the write
        itself fails.
        """

        if self._state is ConnectionState.OPEN and not self._flushing:
            try:
                await self._transmit(payload)
            except NotReadyError:
                raise
            except UpstreamConnectionError as exc:
                self._fail(exc)
                raise
            return

        accepting = self._state is ConnectionState.CONNECTING or (
            self._flushing and self._state is ConnectionState.OPEN
        )
        if accepting and self._pre_open_limit > 0 and not self._drain_requested:
            if len(self._pending) >= self._pre_open_limit:
                if self.fail_on_overflow:
                    exc = UpstreamConnectionError(
                        self.source,
                        f"pre-open queue overflowed at {self._pre_open_limit} payloads",
                    )
                    self._fail(exc)
                    raise exc
                self._pending.popleft()
                self.dropped += 1
                logger.debug(
                    "%s pre-open queue full for session %s; dropped oldest payload",
                    self.source,
                    self.session_id,
                )
            self._pending.append(payload)
            return

        raise NotReadyError(
            self.source, f"not accepting payloads while {self._state.value}"
        )

    async def drain(self) -> None:
        """Stop accepting input and close once the backend has finished."""

        if self._closed or self._state in (
            ConnectionState.FAILED,
            ConnectionState.DRAINING,
        ):
            return
        if self._state is ConnectionState.CONNECTING or self._flushing:
            self._drain_requested = True
            return
        await self._begin_drain()

    async def _begin_drain(self) -> None:
        self._drain_requested = True
        self._set_state(ConnectionState.DRAINING)
        self._watchdog = asyncio.create_task(self._expire_drain())
        try:
            await self._finish_input()
        except UpstreamConnectionError as exc:
            self._fail(exc)

    async def _expire_drain(self) -> None:
        await asyncio.sleep(self._drain_timeout)
        if self._state is ConnectionState.DRAINING:
            logger.warning(
                "%s connection for session %s did not finish within %.1fs of drain",
                self.source,
                self.session_id,
                self._drain_timeout,
            )
            self._emit(UpstreamClosed(self.source, self.turn))
            self.abort()

    def abort(self) -> None:
        """Close without waiting: cancel reads and release the transport later."""

        if self._closed:
            return
        self._closed = True
        self._set_state(ConnectionState.CLOSED)
        self._pending.clear()
        self._cancel_tasks()
        self._schedule_release()

    async def close(self) -> None:
        """Close the connection; safe to call repeatedly and from any state."""

        self.abort()
        if self._release is not None:
            await self._release

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _read_loop(self) -> None:
        try:
            async for event in self._receive():
                if self._closed:
                    return
                self._emit(event)
        except asyncio.CancelledError:
            raise
        except UpstreamConnectionError as exc:
            self._fail(exc)
            return
        except Exception as exc:
            logger.error(
                "Unexpected %s reader error for session %s: %s",
                self.source,
                self.session_id,
                exc,
                exc_info=True,
            )
            self._fail(UpstreamConnectionError(self.source, str(exc)))
            return

        if self._closed or self._state is ConnectionState.FAILED:
            return
        logger.info(
            "%s connection for session %s finished", self.source, self.session_id
        )
        self._closed = True
        self._set_state(ConnectionState.CLOSED)
        self._cancel_tasks()
        self._schedule_release()
        self._emit(UpstreamClosed(self.source, self.turn))

    def _fail(self, exc: UpstreamConnectionError) -> None:
        if self._closed or self._state is ConnectionState.FAILED:
            return
        logger.warning(
            "%s connection failed for session %s: %s",
            self.source,
            self.session_id,
            exc.detail,
        )
        self._set_state(ConnectionState.FAILED)
        self._pending.clear()
        self._cancel_tasks()
        self._schedule_release()
        self._emit(UpstreamFailure(self.source, exc, self.turn))

    def _cancel_tasks(self) -> None:
        current = asyncio.current_task()
        for task in (self._opener, self._reader, self._watchdog):
            if task is not None and task is not current and not task.done():
                task.cancel()

    def _schedule_release(self) -> None:
        if self._release is None:
            self._release = asyncio.create_task(self._release_transport())

    async def _release_transport(self) -> None:
        try:
            await self._teardown()
        except Exception as exc:
            logger.warning(
                "Error releasing %s connection for session %s: %s",
                self.source,
                self.session_id,
                exc,
            )

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------
    async def _establish(self) -> None:
        raise NotImplementedError

    async def _transmit(self, payload: Any) -> None:
        raise NotImplementedError

    def _receive(self) -> AsyncIterator[PipelineEvent]:
        raise NotImplementedError

    async def _finish_input(self) -> None:
        return None

    async def _teardown(self) -> None:
        return None


__all__ = ["UpstreamConnection"]
