import asyncio
import json

import httpx
import pytest
import pytest_asyncio

from conftest import FakeClientWebSocket, eventually, settle
from voicebridge.pipeline.channel import ClientChannel
from voicebridge.pipeline.events import (
    AudioFrame,
    ConnectionState,
    TranscriptEvent,
    TurnState,
)
from voicebridge.pipeline.session import Session
from voicebridge.upstream import UpstreamFactory
from voicebridge.upstream.synthesis import END_OF_INPUT_MESSAGE


def _chunk(text: str) -> bytes:
    return ("data: " + json.dumps({"choices": [{"delta": {"content": text}}]}) + "\n\n").encode()


DONE = b"data: [DONE]\n\n"


class CompletionBackend:
    """Scripted generation backend keyed by the user utterance."""

    def __init__(self) -> None:
        self.requests: list[dict] = []
        self.scripts: dict[str, object] = {}

    def user_content(self, index: int) -> str:
        return self.requests[index]["messages"][-1]["content"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        script = self.scripts.get(body["messages"][-1]["content"], [DONE])
        if isinstance(script, int):
            return httpx.Response(script, json={"error": "scripted failure"})
        if isinstance(script, list):
            script = b"".join(script)
        return httpx.Response(200, content=script)


@pytest.fixture
def backend() -> CompletionBackend:
    return CompletionBackend()


@pytest_asyncio.fixture
async def make_session(settings, connector, backend):
    """Build started sessions around a client socket; all are closed afterwards."""

    client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
    factory = UpstreamFactory(
        settings.model_copy(update={"recognition_enabled": False}),
        http_client=client,
        connector=connector,
    )
    sessions: list[Session] = []

    def build(websocket: FakeClientWebSocket | None = None) -> Session:
        channel = ClientChannel(websocket or FakeClientWebSocket())
        session = Session(f"test-session-{len(sessions)}", channel, factory, factory.settings)
        session.start()
        sessions.append(session)
        return session

    yield build
    for session in sessions:
        await session.close()
    await client.aclose()


@pytest_asyncio.fixture
async def session(make_session) -> Session:
    return make_session()


def _client_frames(session: Session) -> list[bytes]:
    return session.channel._ws.sent


@pytest.mark.asyncio
async def test_session_start_moves_to_listening(session):
    assert session.state is TurnState.LISTENING
    assert session.turn == 0


@pytest.mark.asyncio
async def test_final_transcript_issues_exactly_one_request(session, backend):
    await session.submit_transcript(TranscriptEvent("turn on the lights", True))

    await eventually(lambda: session.state is TurnState.LISTENING and session.turn == 1)
    await settle()

    assert len(backend.requests) == 1
    assert backend.user_content(0) == "turn on the lights"


@pytest.mark.asyncio
async def test_partial_transcripts_do_not_start_turns(session, backend):
    await session.submit_transcript(TranscriptEvent("turn on", False))
    await session.submit_transcript(TranscriptEvent("   ", True))
    await settle()

    assert session.turn == 0
    assert backend.requests == []


@pytest.mark.asyncio
async def test_tokens_are_chunked_then_synthesis_drains(session, backend, connector):
    backend.scripts["hello"] = [_chunk("Hi"), _chunk(" there"), DONE, _chunk("ignored")]

    await session.submit_transcript(TranscriptEvent("hello", True))
    await eventually(lambda: connector.sockets and END_OF_INPUT_MESSAGE in connector.sockets[0].sent)

    socket = connector.sockets[0]
    assert json.loads(socket.sent[0])["text"] == " "
    assert socket.sent[1:] == [
        json.dumps({"text": "Hi"}),
        json.dumps({"text": " there"}),
        END_OF_INPUT_MESSAGE,
    ]
    assert session.state is TurnState.SPEAKING

    socket.feed(b"pcm-1")
    socket.feed(b"pcm-2")
    socket.finish()

    await eventually(lambda: session.state is TurnState.LISTENING)
    await eventually(lambda: len(_client_frames(session)) == 2)
    assert _client_frames(session) == [b"pcm-1", b"pcm-2"]
    assert session.orchestrator.synthesis is None
    assert len(socket.sent) == 4


@pytest.mark.asyncio
async def test_barge_in_cancels_active_turn(session, backend, connector):
    gate = asyncio.Event()

    async def held_stream():
        yield _chunk("Let me")
        await gate.wait()
        yield DONE

    backend.scripts["first"] = held_stream()
    backend.scripts["second"] = [_chunk("Sure"), DONE]

    await session.submit_transcript(TranscriptEvent("first", True))
    await eventually(lambda: session.state is TurnState.SPEAKING and connector.sockets)
    first_socket = connector.sockets[0]
    await eventually(lambda: first_socket.sent)

    first_socket.feed(b"turn-1-audio")
    await eventually(lambda: _client_frames(session) == [b"turn-1-audio"])

    orchestrator = session.orchestrator
    first_generation = orchestrator.generation
    first_synthesis = orchestrator.synthesis

    await session.submit_transcript(TranscriptEvent("second", True))
    await eventually(lambda: session.turn == 2 and len(connector.sockets) == 2)
    await eventually(lambda: first_socket.closed)

    assert first_generation.state is ConnectionState.CLOSED
    assert first_synthesis.state is ConnectionState.CLOSED
    assert [r["messages"][-1]["content"] for r in backend.requests] == ["first", "second"]

    # Late audio from turn 1 never reaches the client.
    await session.inbox.put(AudioFrame(b"turn-1-late", 1))
    gate.set()

    second_socket = connector.sockets[1]
    await eventually(lambda: END_OF_INPUT_MESSAGE in second_socket.sent)
    second_socket.feed(b"turn-2-audio")
    second_socket.finish()

    await eventually(lambda: session.state is TurnState.LISTENING)
    await eventually(lambda: len(_client_frames(session)) == 2)
    assert _client_frames(session) == [b"turn-1-audio", b"turn-2-audio"]
    assert session.turn == 2


@pytest.mark.asyncio
async def test_generation_failure_drops_turn_and_keeps_listening(session, backend, connector):
    backend.scripts["broken"] = 500

    await session.submit_transcript(TranscriptEvent("broken", True))
    await eventually(lambda: session.turn == 1 and session.state is TurnState.LISTENING)
    assert connector.sockets == []

    await session.submit_transcript(TranscriptEvent("again", True))
    await eventually(lambda: session.turn == 2 and session.state is TurnState.LISTENING)
    assert len(backend.requests) == 2


@pytest.mark.asyncio
async def test_synthesis_failure_drops_turn(session, backend, connector):
    connector.failures = 1
    backend.scripts["speak"] = [_chunk("Hello"), DONE]

    await session.submit_transcript(TranscriptEvent("speak", True))
    await eventually(lambda: connector.attempts == 1)
    await eventually(lambda: session.state is TurnState.LISTENING)

    assert session.turn == 1
    assert session.orchestrator.synthesis is None
    assert _client_frames(session) == []


@pytest.mark.asyncio
async def test_empty_completion_returns_to_listening(session, backend, connector):
    await session.submit_transcript(TranscriptEvent("say nothing", True))

    await eventually(lambda: session.turn == 1 and session.state is TurnState.LISTENING)
    assert connector.sockets == []


@pytest.mark.asyncio
async def test_queued_audio_of_finished_turn_is_dropped_when_next_turn_starts(
    make_session, backend, connector
):
    gate = asyncio.Event()
    websocket = FakeClientWebSocket()

    async def slow_send(data: bytes) -> None:
        await gate.wait()
        websocket.sent.append(data)

    websocket.send_bytes = slow_send
    session = make_session(websocket)
    backend.scripts["one"] = [_chunk("First"), DONE]
    backend.scripts["two"] = [_chunk("Second"), DONE]

    await session.submit_transcript(TranscriptEvent("one", True))
    await eventually(lambda: connector.sockets and END_OF_INPUT_MESSAGE in connector.sockets[0].sent)
    first_socket = connector.sockets[0]
    for index in range(5):
        first_socket.feed(f"t1-{index}".encode())
    first_socket.finish()
    await eventually(lambda: session.turn == 1 and session.state is TurnState.LISTENING)
    await settle()

    # The writer holds t1-0; the other four frames are still queued.
    await session.submit_transcript(TranscriptEvent("two", True))
    await eventually(lambda: len(connector.sockets) == 2)
    gate.set()

    second_socket = connector.sockets[1]
    await eventually(lambda: END_OF_INPUT_MESSAGE in second_socket.sent)
    second_socket.feed(b"t2-0")
    second_socket.finish()

    await eventually(lambda: b"t2-0" in websocket.sent)
    assert websocket.sent == [b"t1-0", b"t2-0"]
    assert session.channel.frames_dropped == 4


@pytest.mark.asyncio
async def test_client_write_failure_ends_session(make_session, backend, connector):
    websocket = FakeClientWebSocket()

    async def broken_send(data: bytes) -> None:
        raise OSError("connection reset by peer")

    websocket.send_bytes = broken_send
    session = make_session(websocket)
    backend.scripts["speak"] = [_chunk("Hello"), DONE]

    await session.submit_transcript(TranscriptEvent("speak", True))
    await eventually(lambda: connector.sockets and END_OF_INPUT_MESSAGE in connector.sockets[0].sent)
    connector.sockets[0].feed(b"pcm")

    await asyncio.wait_for(session.wait_closed(), 1)

    synthesis_socket = connector.sockets[0]
    await session.close()
    assert synthesis_socket.closed
    assert session.connections == []
