"""Async client for an Ollama-compatible local generation endpoint."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx

from codeforge.config import ModelConfig
from codeforge.errors import GenerationTimeoutError, ProtocolError, TransportError
from codeforge.models import GenerationProgress, GenerationRequest, StreamFragment
from codeforge.prompting import build_system_prompt, build_user_prompt

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[StreamFragment], None]
ProgressCallback = Callable[[GenerationProgress], None]


def _noop_progress(progress: GenerationProgress) -> None:
    return None


class OllamaClient:
    """Issue generation requests and decode the streamed response.

    ``transport`` lets tests inject ``httpx.MockTransport``.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        self._transport = transport

    def build_payload(self, request: GenerationRequest, config: ModelConfig) -> dict[str, Any]:
        return {
            "model": request.model,
            "prompt": build_user_prompt(request.raw_input, request.framework),
            "system": build_system_prompt(request.framework),
            "stream": config.stream,
            "temperature": request.temperature,
            "max_tokens": request.max_tokens,
            "options": {
                "temperature": request.temperature,
                "num_predict": request.max_tokens,
                "top_p": config.top_p,
                "top_k": config.top_k,
                "repeat_penalty": config.repeat_penalty,
                "num_ctx": config.context_length,
            },
        }

    def _client(self, config: ModelConfig) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=config.base_url,
            timeout=httpx.Timeout(config.timeout_seconds),
            transport=self._transport,
        )

    async def generate(
        self,
        request: GenerationRequest,
        config: ModelConfig,
        *,
        on_fragment: FragmentCallback,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Run one generation, delivering fragments in order.

        Returns when the stream ends. Cancelling the awaiting task closes the
        HTTP connection.

        Raises:
            TransportError: Connection failure, non-2xx status, or backend error.
            GenerationTimeoutError: No data within ``config.timeout_ms``.
            ProtocolError: A response line could not be decoded.
        """
        emit_progress = on_progress or _noop_progress
        payload = self.build_payload(request, config)
        emit_progress(
            GenerationProgress(phase="queued", percent=0, message=f"Connecting to {request.model}")
        )
        logger.info("POST %s/api/generate model=%s stream=%s", config.base_url, request.model, config.stream)

        try:
            async with self._client(config) as client:
                async with client.stream("POST", "/api/generate", json=payload) as response:
                    if not response.is_success:
                        body = (await response.aread()).decode("utf-8", errors="replace")
                        raise TransportError(
                            f"Model endpoint returned HTTP {response.status_code}: {body[:200]}",
                            status_code=response.status_code,
                        )
                    if config.stream:
                        token_count = await self._consume_stream(response, config, on_fragment)
                    else:
                        token_count = await self._consume_single(response, config, on_fragment)
        except httpx.TimeoutException as exc:
            raise GenerationTimeoutError(
                f"No response from model within {config.timeout_ms} ms",
                timeout_ms=config.timeout_ms,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Model endpoint unreachable: {exc}") from exc

        emit_progress(
            GenerationProgress(
                phase="finalizing",
                percent=99,
                message="Model finished",
                tokens_generated=token_count or 0,
            )
        )

    async def _consume_stream(
        self,
        response: httpx.Response,
        config: ModelConfig,
        on_fragment: FragmentCallback,
    ) -> int | None:
        index = 0
        async for line in _lines_with_inactivity_timeout(response.aiter_lines(), config):
            if not line.strip():
                continue
            data = _decode_line(line)
            done = bool(data.get("done", False))
            content = _content_of(data)
            if done:
                token_count = data.get("eval_count")
                on_fragment(StreamFragment(content=content, is_final=True, index=index, token_count=token_count))
                return token_count
            if content:
                on_fragment(StreamFragment(content=content, index=index))
                index += 1
        logger.debug("Stream closed without a done marker after %d fragments", index)
        return None

    async def _consume_single(
        self,
        response: httpx.Response,
        config: ModelConfig,
        on_fragment: FragmentCallback,
    ) -> int | None:
        try:
            raw = await asyncio.wait_for(response.aread(), timeout=config.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise GenerationTimeoutError(
                f"No response from model within {config.timeout_ms} ms",
                timeout_ms=config.timeout_ms,
            ) from exc
        data = _decode_line(raw.decode("utf-8", errors="replace"))
        token_count = data.get("eval_count")
        on_fragment(StreamFragment(content=_content_of(data), is_final=True, index=0, token_count=token_count))
        return token_count

    async def list_models(self, config: ModelConfig) -> list[str]:
        """Return model names installed on the endpoint (``/api/tags``)."""
        try:
            async with self._client(config) as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"Model endpoint returned HTTP {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Model endpoint unreachable: {exc}") from exc
        return [item.get("name", "") for item in response.json().get("models", [])]


async def _lines_with_inactivity_timeout(
    lines: AsyncIterator[str],
    config: ModelConfig,
) -> AsyncIterator[str]:
    iterator = lines.__aiter__()
    while True:
        try:
            line = await asyncio.wait_for(iterator.__anext__(), timeout=config.timeout_seconds)
        except StopAsyncIteration:
            return
        except asyncio.TimeoutError as exc:
            raise GenerationTimeoutError(
                f"Model stream inactive for {config.timeout_ms} ms",
                timeout_ms=config.timeout_ms,
            ) from exc
        yield line


def _decode_line(line: str) -> dict[str, Any]:
    try:
        data = json.loads(line)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Malformed response line: {line[:120]!r}") from exc
    if not isinstance(data, dict):
        raise ProtocolError(f"Unexpected response payload: {line[:120]!r}")
    if data.get("error"):
        raise TransportError(f"Model endpoint error: {data['error']}")
    return data


def _content_of(data: dict[str, Any]) -> str:
    """Extract the text piece from a generate or chat style payload."""
    if isinstance(data.get("response"), str):
        return data["response"]
    message = data.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return message["content"]
    return ""
