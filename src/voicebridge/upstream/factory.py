"""Build the upstream connections of a session from the immutable settings."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional
from urllib.parse import urlencode

import httpx

from ..config import Settings
from ..errors import ProtocolConfigurationError
from .generation import GenerationConnection
from .recognition import RecognitionConnection
from .synthesis import SynthesisConnection
from .websocket import Connector

logger = logging.getLogger(__name__)


def _secret(value) -> Optional[str]:
    return value.get_secret_value() if value else None


class UpstreamFactory:
    """Create recognition, generation and synthesis connections.

    One factory is shared by every session of the process. It holds only
    read-only configuration and the pooled HTTP client used for generation.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        connector: Optional[Connector] = None,
    ) -> None:
        self._settings = settings
        self._http_client = http_client
        self._owns_client = http_client is None
        self._connector = connector

    @property
    def settings(self) -> Settings:
        return self._settings

    def validate(self) -> None:
        """Raise `ProtocolConfigurationError` if a required parameter is missing."""

        settings = self._settings
        missing: list[str] = []
        if settings.recognition_enabled and not _secret(settings.deepgram_api_key):
            missing.append("DEEPGRAM_API_KEY")
        if not _secret(settings.openai_api_key):
            missing.append("OPENAI_API_KEY")
        if not _secret(settings.elevenlabs_api_key):
            missing.append("ELEVENLABS_API_KEY")
        if not settings.elevenlabs_voice_id:
            missing.append("ELEVENLABS_VOICE_ID")
        if missing:
            raise ProtocolConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            timeout = httpx.Timeout(self._settings.generation_completion_timeout, connect=10.0)
            limits = httpx.Limits(max_connections=50, max_keepalive_connections=20)
            self._http_client = httpx.AsyncClient(timeout=timeout, limits=limits, http2=True)
            logger.info("Created pooled httpx.AsyncClient for generation")
        return self._http_client

    async def aclose(self) -> None:
        client, self._http_client = self._http_client, None
        if client is not None and self._owns_client:
            await client.aclose()
            logger.info("Closed generation HTTP client")

    def recognition_url(self) -> str:
        settings = self._settings
        params = {
            "language": settings.recognition_language,
            "punctuate": "true",
            "encoding": settings.recognition_encoding,
            "sample_rate": str(settings.recognition_sample_rate),
            "interim_results": str(settings.recognition_interim_results).lower(),
        }
        return f"{str(settings.deepgram_listen_url).rstrip('/')}?{urlencode(params)}"

    def synthesis_url(self) -> str:
        settings = self._settings
        if not settings.elevenlabs_voice_id:
            raise ProtocolConfigurationError("ELEVENLABS_VOICE_ID is not set")
        base = settings.elevenlabs_url_template.format(voice_id=settings.elevenlabs_voice_id)
        params = {
            "model_id": settings.elevenlabs_model_id,
            "output_format": settings.elevenlabs_output_format,
            "optimize_streaming_latency": str(
                settings.elevenlabs_optimize_streaming_latency
            ),
        }
        return f"{base}?{urlencode(params)}"

    def synthesis_handshake(self) -> dict:
        settings = self._settings
        return {
            "text": " ",
            "voice_settings": {
                "stability": settings.voice_stability,
                "similarity_boost": settings.voice_similarity_boost,
            },
            "model_id": settings.elevenlabs_model_id,
        }

    def recognition(self, session_id: str, inbox: asyncio.Queue) -> RecognitionConnection:
        settings = self._settings
        return RecognitionConnection(
            session_id=session_id,
            inbox=inbox,
            url=self.recognition_url(),
            headers={"Authorization": f"Token {_secret(settings.deepgram_api_key)}"},
            connector=self._connector,
            open_timeout=settings.upstream_open_timeout,
            close_timeout=settings.upstream_close_timeout,
            pre_open_limit=settings.recognition_pre_open_limit,
            retry_attempts=settings.recognition_retry_attempts,
            retry_backoff=settings.recognition_retry_backoff,
            retry_max_backoff=settings.recognition_retry_max_backoff,
        )

    def generation(
        self, session_id: str, turn: int, inbox: asyncio.Queue
    ) -> GenerationConnection:
        settings = self._settings
        return GenerationConnection(
            session_id=session_id,
            inbox=inbox,
            turn=turn,
            client=self._get_http_client(),
            url=settings.generation_url,
            api_key=_secret(settings.openai_api_key) or "",
            model=settings.generation_model,
            system_prompt=settings.system_prompt,
            completion_timeout=settings.generation_completion_timeout,
            open_timeout=settings.upstream_open_timeout,
        )

    def synthesis(
        self, session_id: str, turn: int, inbox: asyncio.Queue
    ) -> SynthesisConnection:
        settings = self._settings
        return SynthesisConnection(
            session_id=session_id,
            inbox=inbox,
            turn=turn,
            url=self.synthesis_url(),
            headers={"xi-api-key": _secret(settings.elevenlabs_api_key) or ""},
            handshake=self.synthesis_handshake(),
            connector=self._connector,
            open_timeout=settings.upstream_open_timeout,
            close_timeout=settings.upstream_close_timeout,
            drain_timeout=settings.synthesis_drain_timeout,
            pre_open_limit=settings.synthesis_pre_open_limit,
        )


__all__ = ["UpstreamFactory"]
