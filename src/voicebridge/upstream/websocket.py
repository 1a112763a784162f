"""Websocket transport shared by the recognition and synthesis connections."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Mapping, Optional

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    InvalidStatus,
    WebSocketException,
)

from ..errors import NotReadyError, UpstreamConnectionError
from ..pipeline.events import PipelineEvent
from .base import UpstreamConnection

logger = logging.getLogger(__name__)

Connector = Callable[[str, Mapping[str, str]], Awaitable[Any]]


class WebSocketConnection(UpstreamConnection):
    """Upstream connection carried over a client websocket.

    ``connector`` returns an object with the ``send``/``close``/async-iteration
    surface of a ``websockets`` client connection; it defaults to
    ``websockets.connect``.
    """

    def __init__(
        self,
        *,
        url: str,
        headers: Optional[Mapping[str, str]] = None,
        connector: Optional[Connector] = None,
        close_timeout: float = 2.0,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.url = url
        self._headers = dict(headers or {})
        self._connector = connector or self._connect
        self._close_timeout = close_timeout
        self._ws: Any = None

    async def _connect(self, url: str, headers: Mapping[str, str]) -> Any:
        return await websockets.connect(
            url,
            additional_headers=dict(headers),
            open_timeout=None,
            close_timeout=self._close_timeout,
            max_size=None,
        )

    async def _establish(self) -> None:
        try:
            self._ws = await self._connector(self.url, self._headers)
        except InvalidStatus as exc:
            status_code = exc.response.status_code
            raise UpstreamConnectionError(
                self.source, f"handshake rejected with HTTP {status_code}", status_code
            ) from exc
        except (OSError, WebSocketException) as exc:
            raise UpstreamConnectionError(self.source, str(exc) or repr(exc)) from exc
        await self._on_connected()

    async def _on_connected(self) -> None:
        """Send the backend's opening message, if it needs one."""

    def _encode(self, payload: Any) -> bytes | str:
        return payload

    async def _transmit(self, payload: Any) -> None:
        await self._send_raw(self._encode(payload))

    async def _send_raw(self, message: bytes | str) -> None:
        if self._ws is None:
            raise NotReadyError(self.source, "socket is not connected")
        try:
            await self._ws.send(message)
        except ConnectionClosed as exc:
            raise UpstreamConnectionError(
                self.source, f"socket closed while sending: {exc}"
            ) from exc

    async def _receive(self) -> AsyncIterator[PipelineEvent]:
        ws = self._ws
        if ws is None:
            return
        try:
            async for message in ws:
                for event in self._decode(message):
                    yield event
        except ConnectionClosedError as exc:
            raise UpstreamConnectionError(
                self.source, f"socket closed abnormally: {exc}"
            ) from exc

    def _decode(self, message: bytes | str) -> Iterable[PipelineEvent]:
        raise NotImplementedError

    async def _teardown(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()


__all__ = ["Connector", "WebSocketConnection"]
