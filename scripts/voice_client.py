"""Manual smoke test for a running voicebridge server.

Streams raw 16-bit PCM (a file, or silence) to ``/voice-stream``, optionally
submits a transcript through the batch route so a turn runs without speech,
and writes whatever synthesized audio comes back to a file.

    python scripts/voice_client.py --say "what's the weather like" --out reply.pcm
"""

import argparse
import asyncio
import logging
from pathlib import Path

import httpx
import websockets

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s")
logger = logging.getLogger("VoiceClient")

CHUNK_BYTES = 3200  # 100ms of 16kHz 16-bit mono


async def _send_audio(websocket, audio: bytes) -> None:
    for offset in range(0, len(audio), CHUNK_BYTES):
        await websocket.send(audio[offset : offset + CHUNK_BYTES])
        await asyncio.sleep(0.1)
    logger.info("Sent %.1fs of audio", len(audio) / (CHUNK_BYTES * 10))


async def _submit_transcript(base_url: str, text: str) -> None:
    async with httpx.AsyncClient(base_url=base_url, timeout=10.0) as client:
        sessions = (await client.get("/api/sessions")).json()
        if not sessions:
            logger.error("No active session to submit to")
            return
        session_id = sessions[-1]["session_id"]
        response = await client.post(
            f"/api/sessions/{session_id}/transcripts", json={"text": text}
        )
        logger.info("Submitted transcript to %s: HTTP %s", session_id, response.status_code)


async def run(args: argparse.Namespace) -> None:
    ws_url = args.server.replace("http", "ws", 1).rstrip("/") + "/voice-stream"
    audio = Path(args.audio).read_bytes() if args.audio else bytes(CHUNK_BYTES * 5)
    received = bytearray()

    logger.info("Connecting to %s...", ws_url)
    async with websockets.connect(ws_url, max_size=None) as websocket:
        await _send_audio(websocket, audio)
        if args.say:
            await _submit_transcript(args.server, args.say)

        logger.info("Listening for %s seconds...", args.wait)
        try:
            async with asyncio.timeout(args.wait):
                async for message in websocket:
                    if isinstance(message, bytes):
                        received.extend(message)
        except TimeoutError:
            pass

    logger.info("Received %d bytes of synthesized audio", len(received))
    if args.out and received:
        Path(args.out).write_bytes(bytes(received))
        logger.info("Wrote %s", args.out)


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--server", default="http://localhost:8000")
    parser.add_argument("--audio", help="raw 16kHz 16-bit mono PCM to stream")
    parser.add_argument("--say", help="transcript to submit through the batch route")
    parser.add_argument("--out", help="file to write received audio to")
    parser.add_argument("--wait", type=float, default=10.0)
    asyncio.run(run(parser.parse_args()))


if __name__ == "__main__":
    main()
