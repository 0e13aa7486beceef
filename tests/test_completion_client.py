import asyncio

import aiohttp
import pytest

from neuralos.ai.cancellation import CancellationToken
from neuralos.ai.client import CompletionClient, bound_history
from neuralos.ai.errors import MESSAGES, CompletionError, ErrorType
from neuralos.ai.models import CompletionOptions, Message
from neuralos.ai.prompts import INTENT_CLASSIFICATION_PROMPT
from neuralos.config import AppConfig, LLMConfig
from neuralos.config.settings_store import SettingsStore
from neuralos.pipelines.base import TransportHTTPError, TransportResponse


async def collect(client, text="hello", options=None):
    return [chunk async for chunk in client.stream(text, options)]


async def wait_for_in_flight(transport):
    for _ in range(200):
        if transport.in_flight:
            return
        await asyncio.sleep(0)
    raise AssertionError("request never reached the transport")


async def hang():
    await asyncio.sleep(30)


def history_of(count):
    roles = ("user", "assistant")
    return [Message(role=roles[i % 2], content=f"m{i}") for i in range(count)]


@pytest.mark.asyncio
async def test_atomic_delivery_yields_text_then_final(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([TransportResponse("Done.", 12, 3, "end_turn")])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    chunks = await collect(client)

    assert [(c.delta_text, c.accumulated_text, c.is_final) for c in chunks] == [
        ("Done.", "Done.", False),
        ("", "Done.", True),
    ]
    assert "stream" not in transport.payloads[0]
    assert transport.api_keys == ["sk-ant-test-key"]
    assert client.session_stats.input_tokens == 12


@pytest.mark.asyncio
async def test_streaming_delivery_yields_each_delta(transport_factory, llm_config, recording_sleep):
    transport = transport_factory(
        [["Hel", "lo", "", TransportResponse("", 5, 2, "end_turn")]],
        streaming=True,
    )
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    chunks = await collect(client)

    assert [(c.delta_text, c.accumulated_text, c.is_final) for c in chunks] == [
        ("Hel", "Hel", False),
        ("lo", "Hello", False),
        ("", "Hello", True),
    ]
    assert transport.payloads[0]["stream"] is True
    stats = client.session_stats
    assert (stats.input_tokens, stats.output_tokens, stats.request_count) == (5, 2, 1)


@pytest.mark.asyncio
async def test_missing_key_fails_before_any_request(transport_factory, recording_sleep):
    transport = transport_factory()
    client = CompletionClient(transport, LLMConfig(), sleep=recording_sleep)

    with pytest.raises(CompletionError) as info:
        await collect(client)

    assert info.value.error_type is ErrorType.AUTH
    assert info.value.message == MESSAGES["missing_key"]
    assert transport.payloads == []


@pytest.mark.asyncio
async def test_rate_limit_waits_default_interval(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([TransportHTTPError(429, "slow down")])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    chunks = await collect(client)

    assert recording_sleep.delays == [15.0]
    assert chunks[-1].is_final and chunks[-1].accumulated_text == "ok"
    assert len(transport.payloads) == 2


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after_hint(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([TransportHTTPError(429, "", retry_after_ms=3000)])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    await collect(client)

    assert recording_sleep.delays == [3.0]


@pytest.mark.asyncio
async def test_server_errors_back_off_exponentially(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([TransportHTTPError(503), TransportHTTPError(500), TransportHTTPError(502)])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    chunks = await collect(client)

    assert recording_sleep.delays == [1.0, 2.0, 4.0]
    assert chunks[-1].is_final
    assert len(transport.payloads) == 4


@pytest.mark.asyncio
async def test_retries_are_exhausted_after_three(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([TransportHTTPError(503) for _ in range(4)])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    with pytest.raises(CompletionError) as info:
        await collect(client)

    assert info.value.error_type is ErrorType.SERVER
    assert info.value.message == MESSAGES["server"]
    assert recording_sleep.delays == [1.0, 2.0, 4.0]
    assert len(transport.payloads) == 4


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, error_type, message",
    [
        (401, ErrorType.AUTH, MESSAGES["auth"]),
        (403, ErrorType.AUTH, MESSAGES["auth"]),
        (400, ErrorType.UNKNOWN, MESSAGES["bad_request"]),
    ],
)
async def test_client_errors_are_not_retried(transport_factory, llm_config, recording_sleep, status, error_type, message):
    transport = transport_factory([TransportHTTPError(status, "nope")])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    with pytest.raises(CompletionError) as info:
        await collect(client)

    assert info.value.error_type is error_type
    assert info.value.message == message
    assert recording_sleep.delays == []
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_network_error_is_retried(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([aiohttp.ClientConnectionError("refused")])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    chunks = await collect(client)

    assert recording_sleep.delays == [1.0]
    assert chunks[-1].accumulated_text == "ok"


@pytest.mark.asyncio
async def test_error_after_delivered_chunk_is_not_retried(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([["Hel", TransportHTTPError(500)]], streaming=True)
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)
    seen = []

    with pytest.raises(CompletionError) as info:
        async for chunk in client.stream("hello"):
            seen.append(chunk.accumulated_text)

    assert seen == ["Hel"]
    assert info.value.error_type is ErrorType.SERVER
    assert recording_sleep.delays == []
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_cancel_during_retry_wait_stops_quietly(transport_factory, llm_config):
    token = CancellationToken()

    async def cancelling_sleep(seconds):
        token.cancel("user")
        await asyncio.sleep(30)

    transport = transport_factory([TransportHTTPError(503)])
    client = CompletionClient(transport, llm_config, sleep=cancelling_sleep)

    chunks = await collect(client, options=CompletionOptions(cancellation_token=token))

    assert chunks == []
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_cancel_in_flight_aborts_request(transport_factory, llm_config, recording_sleep):
    token = CancellationToken()
    transport = transport_factory([hang])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    task = asyncio.create_task(collect(client, options=CompletionOptions(cancellation_token=token)))
    await wait_for_in_flight(transport)
    token.cancel("user")
    chunks = await asyncio.wait_for(task, timeout=2)

    assert chunks == []
    assert transport.aborted == 1
    assert transport.in_flight == 0
    assert client.session_stats.request_count == 0


@pytest.mark.asyncio
async def test_failure_racing_cancellation_is_suppressed(transport_factory, llm_config, recording_sleep):
    token = CancellationToken()

    async def cancel_then_fail():
        token.cancel("user")
        raise TransportHTTPError(500)

    transport = transport_factory([cancel_then_fail])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    chunks = await collect(client, options=CompletionOptions(cancellation_token=token))

    assert chunks == []
    assert recording_sleep.delays == []
    assert len(transport.payloads) == 1
    assert client.session_stats.request_count == 0


@pytest.mark.asyncio
async def test_streaming_failure_racing_cancellation_is_suppressed(transport_factory, llm_config, recording_sleep):
    token = CancellationToken()
    transport = transport_factory(
        [[lambda: token.cancel("user"), TransportHTTPError(500)]],
        streaming=True,
    )
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    chunks = await collect(client, options=CompletionOptions(cancellation_token=token))

    assert chunks == []
    assert recording_sleep.delays == []
    assert len(transport.payloads) == 1


@pytest.mark.asyncio
async def test_send_failure_racing_cancellation_reports_cancelled(transport_factory, llm_config, recording_sleep):
    token = CancellationToken()

    async def cancel_then_fail():
        token.cancel()
        raise TransportHTTPError(500)

    transport = transport_factory([cancel_then_fail])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    with pytest.raises(CompletionError) as info:
        await client.send("hi", CompletionOptions(cancellation_token=token))

    assert info.value.error_type is ErrorType.TIMEOUT
    assert info.value.message == MESSAGES["cancelled"]
    assert recording_sleep.delays == []


@pytest.mark.asyncio
async def test_already_cancelled_token_issues_no_request(transport_factory, llm_config, recording_sleep):
    token = CancellationToken()
    token.cancel()
    transport = transport_factory()
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    assert await collect(client, options=CompletionOptions(cancellation_token=token)) == []
    assert transport.payloads == []


@pytest.mark.asyncio
async def test_history_is_bounded(transport_factory, llm_config, recording_sleep):
    transport = transport_factory()
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    await collect(client, "latest", CompletionOptions(history=history_of(15)))

    messages = transport.payloads[0]["messages"]
    assert len(messages) <= 11
    assert messages[0]["role"] == "user"
    assert messages[-1] == {"role": "user", "content": "latest"}
    assert messages[-2] == {"role": "assistant", "content": "m14"}


def test_bound_history():
    assert bound_history(history_of(4), 0) == []
    assert [m.content for m in bound_history(history_of(14), 10)] == [f"m{i}" for i in range(4, 14)]
    assert [m.content for m in bound_history(history_of(15), 10)][0] == "m6"


@pytest.mark.asyncio
async def test_send_returns_result_for_voice_input(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([TransportResponse("Calling Mom.", 40, 6, "end_turn")])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    result = await client.send("call mom", CompletionOptions(input_method="voice"))

    assert result.text == "Calling Mom."
    assert (result.input_tokens, result.output_tokens) == (40, 6)
    assert result.input_method == "voice"
    assert result.model == llm_config.model
    assert result.stop_reason == "end_turn"
    assert result.elapsed_ms >= 0
    assert "INPUT METHOD: Voice" in transport.payloads[0]["system"]


@pytest.mark.asyncio
async def test_send_cancelled_surfaces_timeout_error(transport_factory, llm_config, recording_sleep):
    token = CancellationToken()
    transport = transport_factory([hang])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    task = asyncio.create_task(client.send("hi", CompletionOptions(cancellation_token=token)))
    await wait_for_in_flight(transport)
    token.cancel()

    with pytest.raises(CompletionError) as info:
        await asyncio.wait_for(task, timeout=2)
    assert info.value.error_type is ErrorType.TIMEOUT
    assert info.value.message == MESSAGES["cancelled"]


@pytest.mark.asyncio
async def test_classify_intent_parses_fenced_json(transport_factory, llm_config, recording_sleep):
    reply = '```json\n{"agent": "system", "action": "set alarm", "confidence": 0.9}\n```'
    transport = transport_factory([TransportResponse(reply)])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    intent = await client.classify_intent("wake me at 7")

    assert intent["agent"] == "system"
    assert intent["rawInput"] == "wake me at 7"
    assert intent["inputMethod"] == "text"
    payload = transport.payloads[0]
    assert payload["system"] == INTENT_CLASSIFICATION_PROMPT
    assert payload["temperature"] == 0.0


@pytest.mark.asyncio
async def test_classify_intent_without_json_returns_none(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([TransportResponse("I am not sure.")])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    assert await client.classify_intent("hmm") is None


@pytest.mark.asyncio
async def test_session_stats_accumulate_and_reset(transport_factory, llm_config, recording_sleep):
    transport = transport_factory([TransportResponse("a", 10, 2), TransportResponse("b", 7, 3)])
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    await collect(client)
    await client.send("again")

    stats = client.session_stats
    assert (stats.input_tokens, stats.output_tokens, stats.request_count) == (17, 5, 2)
    stats.request_count = 99
    assert client.session_stats.request_count == 2

    client.reset_session_stats()
    assert client.session_stats.request_count == 0


@pytest.mark.asyncio
async def test_settings_override_config_defaults(transport_factory, llm_config, recording_sleep):
    settings = SettingsStore(AppConfig(llm=llm_config))
    settings.set_model("claude-opus-4-20250514")
    settings.set_max_tokens(10000)
    settings.set_temperature(0.2)
    settings.set_api_key("sk-ant-user-key")
    transport = transport_factory()
    client = CompletionClient(transport, llm_config, settings, sleep=recording_sleep)

    await collect(client)

    payload = transport.payloads[0]
    assert payload["model"] == "claude-opus-4-20250514"
    assert payload["max_tokens"] == 4096
    assert payload["temperature"] == 0.2
    assert transport.api_keys == ["sk-ant-user-key"]


@pytest.mark.asyncio
async def test_options_override_settings(transport_factory, llm_config, recording_sleep):
    transport = transport_factory()
    client = CompletionClient(transport, llm_config, sleep=recording_sleep)

    await collect(client, options=CompletionOptions(model="m", max_tokens=300, temperature=1.0, system_context="ctx"))

    payload = transport.payloads[0]
    assert (payload["model"], payload["max_tokens"], payload["temperature"]) == ("m", 300, 1.0)
    assert "ADDITIONAL CONTEXT:\nctx" in payload["system"]
