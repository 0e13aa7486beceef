"""
# Anthropic Messages API transport.

- Atomic:      POST https://api.anthropic.com/v1/messages
- Incremental: same endpoint with ``"stream": true`` (server-sent events)

Non-2xx responses are raised as ``TransportHTTPError`` with the body and any
``Retry-After`` hint; classification happens in the completion client.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any, AsyncIterator, Callable, Dict, Optional

import aiohttp

from ..config import LLMConfig
from ..logging_config import get_logger
from .base import (
    CompletionTransport,
    InvalidTransportResponse,
    StreamEvent,
    TextDelta,
    TransportHTTPError,
    TransportResponse,
)

logger = get_logger(__name__)


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """``Retry-After`` seconds -> milliseconds; HTTP-date forms are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if seconds < 0:
        return None
    return int(seconds * 1000)


def _joined_text(content: Any) -> str:
    if not isinstance(content, list):
        return ""
    return "".join(
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    )


class AnthropicTransport(CompletionTransport):
    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
    ):
        self._config = config or LLMConfig()
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def supports_streaming(self) -> bool:  # type: ignore[override]
        return self._config.stream

    async def stop(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": api_key,
            "anthropic-version": self._config.anthropic_version,
        }

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            factory = self._session_factory or aiohttp.ClientSession
            self._session = factory()
        return self._session

    async def _raise_for_status(self, resp: Any, request_id: str) -> None:
        if resp.status < 400:
            return
        body = await resp.text()
        retry_after_ms = parse_retry_after(resp.headers.get("retry-after"))
        logger.error(
            "Anthropic request failed",
            request_id=request_id,
            status=resp.status,
            retry_after_ms=retry_after_ms,
            body_preview=body[:200],
        )
        raise TransportHTTPError(resp.status, body, retry_after_ms)

    async def complete(self, payload: Dict[str, Any], api_key: str, timeout: float) -> TransportResponse:
        session = await self._ensure_session()
        request_id = f"anthropic-{uuid.uuid4().hex[:12]}"
        body = dict(payload)
        body.pop("stream", None)

        logger.info(
            "Anthropic request started",
            request_id=request_id,
            model=body.get("model"),
            max_tokens=body.get("max_tokens"),
            message_count=len(body.get("messages") or []),
        )

        started_at = time.perf_counter()
        async with session.post(
            self._config.base_url,
            json=body,
            headers=self._headers(api_key),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            await self._raise_for_status(resp, request_id)
            raw = await resp.text()

        try:
            data = json.loads(raw)
        except ValueError as exc:
            logger.error("Anthropic returned invalid JSON", request_id=request_id, body_preview=raw[:200])
            raise InvalidTransportResponse("Invalid JSON from Anthropic API") from exc
        if not isinstance(data, dict):
            raise InvalidTransportResponse("Unexpected response shape from Anthropic API")

        usage = data.get("usage") or {}
        result = TransportResponse(
            text=_joined_text(data.get("content")),
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
            stop_reason=data.get("stop_reason"),
        )
        logger.info(
            "Anthropic request completed",
            request_id=request_id,
            latency_ms=round((time.perf_counter() - started_at) * 1000.0, 2),
            text_length=len(result.text),
            input_tokens=result.input_tokens,
            output_tokens=result.output_tokens,
            stop_reason=result.stop_reason,
        )
        return result

    async def stream_events(self, payload: Dict[str, Any], api_key: str, timeout: float) -> AsyncIterator[StreamEvent]:
        session = await self._ensure_session()
        request_id = f"anthropic-{uuid.uuid4().hex[:12]}"
        body = dict(payload)
        body["stream"] = True

        logger.info(
            "Anthropic stream started",
            request_id=request_id,
            model=body.get("model"),
            message_count=len(body.get("messages") or []),
        )

        input_tokens = 0
        output_tokens = 0
        stop_reason: Optional[str] = None
        text_length = 0

        async with session.post(
            self._config.base_url,
            json=body,
            headers=self._headers(api_key),
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            await self._raise_for_status(resp, request_id)
            async for raw_line in resp.content:
                line = raw_line.decode("utf-8", errors="ignore").strip()
                if not line.startswith("data:"):
                    continue
                data_str = line[len("data:"):].strip()
                if not data_str:
                    continue
                try:
                    event = json.loads(data_str)
                except ValueError:
                    logger.debug("Skipping undecodable SSE line", request_id=request_id)
                    continue

                event_type = event.get("type")
                if event_type == "message_start":
                    usage = (event.get("message") or {}).get("usage") or {}
                    input_tokens = int(usage.get("input_tokens") or 0)
                elif event_type == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        text_length += len(delta["text"])
                        yield TextDelta(delta["text"])
                elif event_type == "message_delta":
                    stop_reason = (event.get("delta") or {}).get("stop_reason") or stop_reason
                    usage = event.get("usage") or {}
                    output_tokens = int(usage.get("output_tokens") or output_tokens)
                elif event_type == "error":
                    error = event.get("error") or {}
                    logger.error("Anthropic stream error event", request_id=request_id, error_type=error.get("type"))
                    status = 529 if error.get("type") == "overloaded_error" else 500
                    raise TransportHTTPError(status, json.dumps(error))
                elif event_type == "message_stop":
                    break

        logger.info(
            "Anthropic stream completed",
            request_id=request_id,
            text_length=text_length,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stop_reason=stop_reason,
        )
        yield TransportResponse(
            text="",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            stop_reason=stop_reason,
        )


__all__ = ["AnthropicTransport", "parse_retry_after"]
