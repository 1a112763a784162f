"""Streamed chat completions for one conversational turn."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx

from ..errors import NotReadyError, ParseError, UpstreamConnectionError
from ..pipeline.events import GenerationToken
from ..pipeline.parsers import EventStreamParser, text_from_completion_chunk
from .base import UpstreamConnection

logger = logging.getLogger(__name__)


def extract_error_detail(raw: bytes) -> Any:
    """Best-effort decoding of an error response body."""

    if not raw:
        return "Generation backend returned an empty error response."
    text = raw.decode("utf-8", errors="ignore")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        return text
    if isinstance(payload, dict):
        return payload.get("error") or payload
    return payload


class GenerationConnection(UpstreamConnection):
    """One-shot streaming completion request.

    ``open()`` only readies the connection; ``send(text)`` issues the single
    request for the turn. Tokens are emitted as they arrive and the
    completion sentinel is emitted as a final token. There is no pre-open
    queue: sending before ``open()`` raises `NotReadyError`.
    """

    source = "generation"

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        url: str,
        api_key: str,
        model: str,
        system_prompt: Optional[str] = None,
        completion_timeout: float = 60.0,
        **kwargs: Any,
    ) -> None:
        kwargs["pre_open_limit"] = 0
        super().__init__(**kwargs)
        self._client = client
        self._url = url
        self._api_key = api_key
        self._model = model
        self._system_prompt = system_prompt
        self._completion_timeout = completion_timeout
        self._request: Optional[dict[str, Any]] = None
        self._requested = asyncio.Event()

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    def build_payload(self, text: str) -> dict[str, Any]:
        messages: list[dict[str, str]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        messages.append({"role": "user", "content": text})
        return {"model": self._model, "stream": True, "messages": messages}

    async def _establish(self) -> None:
        return None

    async def _transmit(self, payload: str) -> None:
        if self._request is not None:
            raise NotReadyError(self.source, "a request was already issued for this turn")
        self._request = self.build_payload(payload)
        self._requested.set()

    async def _receive(self) -> AsyncIterator[GenerationToken]:
        await self._requested.wait()
        parser = EventStreamParser()
        index = 0
        try:
            async with asyncio.timeout(self._completion_timeout):
                async with self._client.stream(
                    "POST", self._url, headers=self._headers, json=self._request
                ) as response:
                    if response.status_code >= 400:
                        body = await response.aread()
                        raise UpstreamConnectionError(
                            self.source,
                            extract_error_detail(body),
                            status_code=response.status_code,
                        )
                    async for chunk in response.aiter_bytes():
                        for payload in parser.feed(chunk):
                            text = self._token_text(payload)
                            if text is None:
                                continue
                            yield GenerationToken(text=text, index=index, turn=self.turn)
                            index += 1
                        if parser.done:
                            break
                    for payload in parser.flush():
                        text = self._token_text(payload)
                        if text is not None:
                            yield GenerationToken(text=text, index=index, turn=self.turn)
                            index += 1
        except TimeoutError as exc:
            raise UpstreamConnectionError(
                self.source,
                f"no completion within {self._completion_timeout:.1f}s",
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamConnectionError(self.source, str(exc) or repr(exc)) from exc

        if not parser.done:
            logger.warning(
                "Generation stream for session %s turn %s ended without completion sentinel",
                self.session_id,
                self.turn,
            )
        logger.info(
            "Generation for session %s turn %s complete: %d token(s)",
            self.session_id,
            self.turn,
            index,
        )
        yield GenerationToken(text="", index=index, turn=self.turn, is_final=True)

    def _token_text(self, payload: str) -> Optional[str]:
        try:
            return text_from_completion_chunk(payload)
        except ParseError as exc:
            logger.warning("Skipping generation segment for %s: %s", self.session_id, exc)
            return None


__all__ = ["GenerationConnection", "extract_error_detail"]
