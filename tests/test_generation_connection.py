import asyncio
import json

import httpx
import pytest

from voicebridge.errors import NotReadyError
from voicebridge.pipeline.events import (
    ConnectionState,
    GenerationToken,
    UpstreamClosed,
    UpstreamFailure,
)
from voicebridge.upstream import UpstreamFactory
from voicebridge.upstream.generation import extract_error_detail


def _sse(*tokens: str, done: bool = True) -> bytes:
    lines = [": keep-alive\n"]
    lines.append(
        "data: " + json.dumps({"choices": [{"delta": {"role": "assistant"}}]}) + "\n\n"
    )
    for token in tokens:
        lines.append(
            "data: " + json.dumps({"choices": [{"delta": {"content": token}}]}) + "\n\n"
        )
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


async def _collect(inbox: asyncio.Queue, count: int) -> list:
    return [await asyncio.wait_for(inbox.get(), 1) for _ in range(count)]


def _factory(settings, handler) -> tuple[UpstreamFactory, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return UpstreamFactory(settings, http_client=client), requests


@pytest.mark.asyncio
async def test_single_request_with_transcript_as_user_content(settings):
    factory, requests = _factory(
        settings, lambda request: httpx.Response(200, content=_sse("Hi", " there"))
    )
    inbox: asyncio.Queue = asyncio.Queue()
    generation = factory.generation("s1", 1, inbox)

    assert await generation.open() is True
    await generation.send("turn on the lights")
    events = await _collect(inbox, 4)

    assert len(requests) == 1
    request = requests[0]
    assert str(request.url) == "https://llm.test/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer oa-key"
    body = json.loads(request.content)
    assert body["stream"] is True
    assert body["model"] == settings.generation_model
    assert body["messages"][0] == {"role": "system", "content": settings.system_prompt}
    assert body["messages"][-1] == {"role": "user", "content": "turn on the lights"}

    assert events == [
        GenerationToken("Hi", 0, 1),
        GenerationToken(" there", 1, 1),
        GenerationToken("", 2, 1, is_final=True),
        UpstreamClosed("generation", 1),
    ]
    assert generation.state is ConnectionState.CLOSED
    await factory.aclose()


@pytest.mark.asyncio
async def test_second_request_for_same_turn_is_rejected(settings):
    gate = asyncio.Event()

    async def stream_body():
        await gate.wait()
        yield _sse("ok")

    factory, requests = _factory(
        settings, lambda request: httpx.Response(200, content=stream_body())
    )
    generation = factory.generation("s1", 1, asyncio.Queue())
    await generation.open()
    await generation.send("first")

    with pytest.raises(NotReadyError):
        await generation.send("second")

    gate.set()
    await generation.close()


@pytest.mark.asyncio
async def test_send_before_open_is_not_queued(settings):
    factory, requests = _factory(settings, lambda request: httpx.Response(200))
    generation = factory.generation("s1", 1, asyncio.Queue())

    with pytest.raises(NotReadyError):
        await generation.send("too early")
    assert generation.pending == 0


@pytest.mark.asyncio
async def test_stream_without_sentinel_still_completes(settings):
    factory, _ = _factory(
        settings, lambda request: httpx.Response(200, content=_sse("Hi", done=False))
    )
    inbox: asyncio.Queue = asyncio.Queue()
    generation = factory.generation("s1", 2, inbox)
    await generation.open()
    await generation.send("hello")

    events = await _collect(inbox, 3)

    assert events[0] == GenerationToken("Hi", 0, 2)
    assert events[1] == GenerationToken("", 1, 2, is_final=True)
    assert events[2] == UpstreamClosed("generation", 2)


@pytest.mark.asyncio
async def test_malformed_chunk_is_skipped(settings):
    body = (
        b'data: {"choices": [{"delta": {"content": "A"}}]}\n\n'
        b"data: {garbage\n\n"
        b'data: {"choices": [{"delta": {"content": "B"}}]}\n\n'
        b"data: [DONE]\n\n"
    )
    factory, _ = _factory(settings, lambda request: httpx.Response(200, content=body))
    inbox: asyncio.Queue = asyncio.Queue()
    generation = factory.generation("s1", 1, inbox)
    await generation.open()
    await generation.send("x")

    events = await _collect(inbox, 3)

    assert [e.text for e in events] == ["A", "B", ""]


@pytest.mark.asyncio
async def test_http_error_fails_the_connection(settings):
    factory, _ = _factory(
        settings,
        lambda request: httpx.Response(
            429, json={"error": {"message": "Rate limit reached"}}
        ),
    )
    inbox: asyncio.Queue = asyncio.Queue()
    generation = factory.generation("s1", 4, inbox)
    await generation.open()
    await generation.send("hello")

    (event,) = await _collect(inbox, 1)

    assert isinstance(event, UpstreamFailure)
    assert event.turn == 4
    assert event.error.status_code == 429
    assert event.error.detail == {"message": "Rate limit reached"}
    assert generation.state is ConnectionState.FAILED


@pytest.mark.asyncio
async def test_transport_error_fails_the_connection(settings):
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    factory, _ = _factory(settings, refuse)
    inbox: asyncio.Queue = asyncio.Queue()
    generation = factory.generation("s1", 1, inbox)
    await generation.open()
    await generation.send("hello")

    (event,) = await _collect(inbox, 1)

    assert isinstance(event, UpstreamFailure)
    assert "connection refused" in str(event.error)


@pytest.mark.asyncio
async def test_completion_timeout(settings):
    async def never_finishes():
        yield b'data: {"choices": [{"delta": {"content": "slow"}}]}\n\n'
        await asyncio.sleep(3600)

    factory, _ = _factory(
        settings.model_copy(update={"generation_completion_timeout": 0.05}),
        lambda request: httpx.Response(200, content=never_finishes()),
    )
    inbox: asyncio.Queue = asyncio.Queue()
    generation = factory.generation("s1", 1, inbox)
    await generation.open()
    await generation.send("hello")

    token, failure = await _collect(inbox, 2)

    assert token == GenerationToken("slow", 0, 1)
    assert isinstance(failure, UpstreamFailure)
    assert "no completion" in str(failure.error)


def test_extract_error_detail():
    assert extract_error_detail(b"") == "Generation backend returned an empty error response."
    assert extract_error_detail(b"plain failure") == "plain failure"
    assert extract_error_detail(b'{"error": "bad key"}') == "bad key"
    assert extract_error_detail(b'{"status": 500}') == {"status": 500}
