import asyncio
import pathlib
import sys
from typing import Any

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from fastapi.websockets import WebSocketState  # noqa: E402
from websockets.exceptions import ConnectionClosedOK  # noqa: E402
from websockets.frames import Close  # noqa: E402

from voicebridge.config import Settings  # noqa: E402

_END = object()


class FakeUpstreamSocket:
    """In-memory stand-in for a ``websockets`` client connection."""

    def __init__(self, url: str = "", headers: dict | None = None) -> None:
        self.url = url
        self.headers = dict(headers or {})
        self.sent: list[Any] = []
        self.closed = False
        self.close_calls = 0
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, message: Any) -> None:
        if self.closed:
            raise ConnectionClosedOK(Close(1000, ""), Close(1000, ""), True)
        self.sent.append(message)

    def feed(self, message: Any) -> None:
        self._incoming.put_nowait(message)

    def finish(self) -> None:
        """End the inbound stream as if the server closed cleanly."""
        self._incoming.put_nowait(_END)

    async def close(self) -> None:
        self.close_calls += 1
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(_END)

    def __aiter__(self):
        return self

    async def __anext__(self) -> Any:
        message = await self._incoming.get()
        if message is _END:
            raise StopAsyncIteration
        if isinstance(message, BaseException):
            raise message
        return message


class FakeConnector:
    """Connector returning a fresh `FakeUpstreamSocket` per connection."""

    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.sockets: list[FakeUpstreamSocket] = []
        self.failures = failures
        self.error = error or OSError("connection refused")
        self.attempts = 0

    async def __call__(self, url: str, headers) -> FakeUpstreamSocket:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        socket = FakeUpstreamSocket(url, headers)
        self.sockets.append(socket)
        return socket


class FakeClientWebSocket:
    """Minimal FastAPI ``WebSocket`` surface used by `ClientChannel`."""

    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED
        self.sent: list[bytes] = []
        self.close_codes: list[int] = []
        self._incoming: asyncio.Queue = asyncio.Queue()

    def push_audio(self, data: bytes) -> None:
        self._incoming.put_nowait({"type": "websocket.receive", "bytes": data})

    def push_text(self, text: str) -> None:
        self._incoming.put_nowait({"type": "websocket.receive", "text": text})

    def disconnect(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED
        self._incoming.put_nowait({"type": "websocket.disconnect", "code": 1000})

    async def receive(self) -> dict:
        return await self._incoming.get()

    async def send_bytes(self, data: bytes) -> None:
        self.sent.append(data)

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_codes.append(code)
        self.application_state = WebSocketState.DISCONNECTED


async def settle(rounds: int = 20) -> None:
    """Let pending tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Wait until ``predicate()`` is true or fail after ``timeout`` seconds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        deepgram_api_key="dg-key",
        openai_api_key="oa-key",
        elevenlabs_api_key="el-key",
        elevenlabs_voice_id="voice-1",
        openai_base_url="https://llm.test/v1",
        recognition_retry_attempts=2,
        recognition_retry_backoff=0,
        recognition_retry_max_backoff=0,
    )


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()
