"""
Completion client.

One ``CompletionClient`` instance is owned by whoever orchestrates turns.
Each call performs one conversational exchange and exposes it as a
cancellable, retrying, incrementally observable operation:

- ``stream()`` yields ``StreamChunk`` objects. Atomic transports produce one
  non-final chunk carrying the whole text followed by a final chunk;
  streaming transports produce one chunk per delta followed by a final chunk.
- ``send()`` returns a ``CompletionResult`` in one call.

Transient failures are retried with exponential backoff (1s, 2s, 4s) unless
the classified error carries its own wait, e.g. a rate-limit hint.
"""

from __future__ import annotations

import asyncio
import json
import re
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from prometheus_client import Counter, Histogram

from ..config import LLMConfig
from ..config.settings_store import SettingsStore
from ..logging_config import get_logger
from ..pipelines.base import CompletionTransport, TextDelta, TransportResponse
from .cancellation import CancellationToken, RequestCancelled
from .errors import CompletionError, MissingCredentialError, classify_error
from .models import CompletionOptions, CompletionRequest, CompletionResult, Message, SessionStats, StreamChunk
from .prompts import build_classification_prompt, build_system_prompt

logger = get_logger(__name__)

_REQUESTS_TOTAL = Counter(
    "neuralos_llm_requests_total",
    "LLM exchanges by delivery mode and outcome",
    labelnames=("mode", "outcome"),
)
_RETRIES_TOTAL = Counter(
    "neuralos_llm_retries_total",
    "LLM retry attempts by classified error type",
    labelnames=("error_type",),
)
_TOKENS_TOTAL = Counter(
    "neuralos_llm_tokens_total",
    "Tokens consumed by successful LLM exchanges",
    labelnames=("direction",),
)
_LATENCY_SECONDS = Histogram(
    "neuralos_llm_request_seconds",
    "Wall time of successful LLM exchanges, retries included",
    labelnames=("mode",),
    buckets=(0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 16.0, 32.0, 64.0),
)

_END = object()


class _PumpFailure:
    def __init__(self, exc: BaseException):
        self.exc = exc


def bound_history(history: Sequence[Message], limit: int) -> List[Message]:
    """Keep the most recent ``limit`` messages, never starting on an assistant turn."""
    if limit <= 0:
        return []
    recent = list(history)[-limit:]
    while recent and recent[0].role != "user":
        recent.pop(0)
    return recent


class CompletionClient:
    def __init__(
        self,
        transport: CompletionTransport,
        config: Optional[LLMConfig] = None,
        settings: Optional[SettingsStore] = None,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._transport = transport
        self._config = config or LLMConfig()
        self._settings = settings
        self._sleep = sleep
        self._stats = SessionStats()

    # Stats ----------------------------------------------------------------

    @property
    def session_stats(self) -> SessionStats:
        return SessionStats(
            input_tokens=self._stats.input_tokens,
            output_tokens=self._stats.output_tokens,
            request_count=self._stats.request_count,
        )

    def reset_session_stats(self) -> None:
        self._stats = SessionStats()

    # Request building -----------------------------------------------------

    def _api_key(self) -> str:
        key = self._settings.get_api_key() if self._settings else self._config.api_key
        if not key:
            logger.error("LLM request attempted without an API key")
            raise MissingCredentialError()
        return key

    def build_request(self, user_message: str, options: Optional[CompletionOptions] = None) -> CompletionRequest:
        options = options or CompletionOptions()
        settings = self._settings

        model = options.model or (settings.get_model() if settings else self._config.model)
        max_tokens = options.max_tokens or (settings.get_max_tokens() if settings else self._config.max_tokens)
        if options.temperature is not None:
            temperature = options.temperature
        else:
            temperature = settings.get_temperature() if settings else self._config.temperature

        messages = bound_history(options.history, self._config.history_limit)
        messages.append(Message(role="user", content=user_message))

        system_prompt = options.system_prompt or build_system_prompt(
            options.input_method, options.system_context, commands=options.available_commands
        )

        return CompletionRequest(
            messages=messages,
            system_prompt=system_prompt,
            model=model,
            max_tokens=int(max_tokens),
            temperature=float(temperature),
            input_method=options.input_method,
            cancellation_token=options.cancellation_token,
        )

    # Retry policy ---------------------------------------------------------

    def _retry_delay_ms(self, error: CompletionError, retry: int) -> int:
        if error.retry_after_ms is not None:
            return int(error.retry_after_ms)
        return int(self._config.base_retry_delay_ms * (2 ** (retry - 1)))

    def _classify(self, exc: BaseException) -> CompletionError:
        return classify_error(exc, default_rate_limit_wait_ms=self._config.default_rate_limit_wait_ms)

    async def _wait_before_retry(self, error: CompletionError, retry: int, token: CancellationToken, mode: str) -> None:
        delay_ms = self._retry_delay_ms(error, retry)
        _RETRIES_TOTAL.labels(error.error_type.value).inc()
        logger.warning(
            "Retrying LLM request",
            mode=mode,
            retry=retry,
            max_retries=self._config.max_retries,
            delay_ms=delay_ms,
            error_type=error.error_type.value,
        )
        await token.race(self._sleep(delay_ms / 1000.0))

    def _record_success(self, response: TransportResponse, mode: str, started_at: float) -> float:
        self._stats.record(response.input_tokens, response.output_tokens)
        elapsed = time.perf_counter() - started_at
        _REQUESTS_TOTAL.labels(mode, "success").inc()
        _TOKENS_TOTAL.labels("input").inc(max(0, response.input_tokens))
        _TOKENS_TOTAL.labels("output").inc(max(0, response.output_tokens))
        _LATENCY_SECONDS.labels(mode).observe(elapsed)
        return elapsed * 1000.0

    # Streaming ------------------------------------------------------------

    async def _pump(self, payload: Dict[str, Any], api_key: str, queue: "asyncio.Queue[Any]") -> None:
        try:
            async for event in self._transport.stream_events(payload, api_key, self._config.request_timeout_sec):
                queue.put_nowait(event)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            queue.put_nowait(_PumpFailure(exc))
            return
        queue.put_nowait(_END)

    async def stream(self, user_message: str, options: Optional[CompletionOptions] = None) -> AsyncIterator[StreamChunk]:
        options = options or CompletionOptions()
        token = options.cancellation_token or CancellationToken()
        request = self.build_request(user_message, options)
        api_key = self._api_key()

        incremental = bool(self._transport.supports_streaming)
        mode = "stream" if incremental else "atomic"
        payload = request.to_payload(stream=incremental)
        started_at = time.perf_counter()
        retries = 0

        logger.info(
            "LLM exchange started",
            mode=mode,
            model=request.model,
            input_method=request.input_method,
            history_messages=len(request.messages) - 1,
        )

        while True:
            if token.cancelled:
                _REQUESTS_TOTAL.labels(mode, "cancelled").inc()
                return

            accumulated = ""
            delivered = False
            pump: Optional[asyncio.Task] = None
            try:
                if incremental:
                    queue: "asyncio.Queue[Any]" = asyncio.Queue()
                    pump = asyncio.create_task(self._pump(payload, api_key, queue))
                    response: Optional[TransportResponse] = None
                    while True:
                        item = await token.race(queue.get())
                        if item is _END:
                            break
                        if isinstance(item, _PumpFailure):
                            raise item.exc
                        if isinstance(item, TextDelta):
                            if not item.text:
                                continue
                            accumulated += item.text
                            if token.cancelled:
                                raise RequestCancelled(token.reason)
                            delivered = True
                            yield StreamChunk(item.text, accumulated, False)
                        elif isinstance(item, TransportResponse):
                            response = item
                    response = TransportResponse(
                        text=accumulated,
                        input_tokens=response.input_tokens if response else 0,
                        output_tokens=response.output_tokens if response else 0,
                        stop_reason=response.stop_reason if response else None,
                    )
                else:
                    response = await token.race(
                        self._transport.complete(payload, api_key, self._config.request_timeout_sec)
                    )
                    accumulated = response.text
                    if token.cancelled:
                        raise RequestCancelled(token.reason)
                    delivered = True
                    yield StreamChunk(accumulated, accumulated, False)

                if token.cancelled:
                    raise RequestCancelled(token.reason)
                elapsed_ms = self._record_success(response, mode, started_at)
                logger.info(
                    "LLM exchange completed",
                    mode=mode,
                    elapsed_ms=round(elapsed_ms, 2),
                    text_length=len(accumulated),
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens,
                    retries=retries,
                )
                yield StreamChunk("", accumulated, True)
                return

            except RequestCancelled:
                logger.info("LLM exchange cancelled", mode=mode, delivered=delivered)
                _REQUESTS_TOTAL.labels(mode, "cancelled").inc()
                return
            except Exception as exc:
                if token.cancelled:
                    logger.debug("Suppressing LLM error raced by cancellation", error_class=type(exc).__name__)
                    _REQUESTS_TOTAL.labels(mode, "cancelled").inc()
                    return
                error = self._classify(exc)
                if delivered or not error.retryable or retries >= self._config.max_retries:
                    _REQUESTS_TOTAL.labels(mode, "error").inc()
                    logger.error(
                        "LLM exchange failed",
                        mode=mode,
                        error_type=error.error_type.value,
                        retries=retries,
                        partial_delivery=delivered,
                    )
                    raise error from exc
                retries += 1
                try:
                    await self._wait_before_retry(error, retries, token, mode)
                except RequestCancelled:
                    _REQUESTS_TOTAL.labels(mode, "cancelled").inc()
                    return
            finally:
                if pump is not None and not pump.done():
                    pump.cancel()

    # One-shot -------------------------------------------------------------

    async def send(self, user_message: str, options: Optional[CompletionOptions] = None) -> CompletionResult:
        """Full response in one call; cancellation surfaces as a ``timeout`` error."""
        options = options or CompletionOptions()
        token = options.cancellation_token or CancellationToken()
        request = self.build_request(user_message, options)
        api_key = self._api_key()
        payload = request.to_payload()
        started_at = time.perf_counter()
        retries = 0

        while True:
            try:
                if token.cancelled:
                    raise RequestCancelled(token.reason)
                response = await token.race(
                    self._transport.complete(payload, api_key, self._config.request_timeout_sec)
                )
                if token.cancelled:
                    raise RequestCancelled(token.reason)
            except Exception as exc:
                error = self._classify(RequestCancelled() if token.cancelled else exc)
                if token.cancelled or not error.retryable or retries >= self._config.max_retries:
                    outcome = "cancelled" if token.cancelled else "error"
                    _REQUESTS_TOTAL.labels("send", outcome).inc()
                    logger.warning("LLM send failed", error_type=error.error_type.value, retries=retries)
                    raise error from exc
                retries += 1
                try:
                    await self._wait_before_retry(error, retries, token, "send")
                except RequestCancelled as cancelled:
                    _REQUESTS_TOTAL.labels("send", "cancelled").inc()
                    raise self._classify(cancelled) from cancelled
                continue

            elapsed_ms = self._record_success(response, "send", started_at)
            return CompletionResult(
                text=response.text,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                elapsed_ms=elapsed_ms,
                model=request.model,
                input_method=request.input_method,
                stop_reason=response.stop_reason,
            )

    async def classify_intent(self, text: str, options: Optional[CompletionOptions] = None) -> Optional[Dict[str, Any]]:
        """Route ``text`` to an agent category; ``None`` when the model's JSON is unusable."""
        base = options or CompletionOptions()
        classification = CompletionOptions(
            model=base.model,
            max_tokens=base.max_tokens or 512,
            temperature=0.0 if base.temperature is None else base.temperature,
            input_method=base.input_method,
            system_prompt=build_classification_prompt(),
            cancellation_token=base.cancellation_token,
        )
        result = await self.send(text, classification)
        intent = _extract_json_object(result.text)
        if intent is None:
            logger.warning("Intent classification returned no usable JSON", text_length=len(result.text))
            return None
        intent.setdefault("inputMethod", base.input_method)
        intent["rawInput"] = text
        return intent


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def _extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    cleaned = _FENCE.sub("", text or "").strip()
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        value = json.loads(cleaned[start : end + 1])
    except ValueError:
        return None
    return value if isinstance(value, dict) else None


__all__ = ["CompletionClient", "bound_history"]
