import asyncio

import httpx
import pytest

import prompts
from conftest import FakeCompletion, chat_chunk, make_settings, ndjson, sse
from decoders import WireFormat
from errors import ConfigurationError, UpstreamError
from providers import LocalModelProvider, ProviderDispatcher
from schemas import Direction, IncrementKind, ProviderId, Style, TranslationRequest


def translation(provider, text="καλημέρα", direction=Direction.MODERN_TO_ANCIENT, style=Style.STANDARD):
    return TranslationRequest(text=text, direction=direction, style=style, provider=provider)


def make_dispatcher(upstream, completion=None, **overrides):
    return ProviderDispatcher(
        make_settings(**overrides),
        client=upstream.client(),
        completion=completion or FakeCompletion(["Χαῖρε"]),
    )


async def drain(normalizer):
    return [inc async for inc in normalizer]


def contents(increments):
    return [inc.payload for inc in increments if inc.kind == IncrementKind.CONTENT]


# =========================
# Chat completion providers
# =========================

@pytest.mark.asyncio
async def test_openai_request_shape(upstream):
    upstream.stream([sse(chat_chunk("Χαῖ"), chat_chunk("ρε"))])
    dispatcher = make_dispatcher(upstream)

    increments = await drain(await dispatcher.open_stream(translation(ProviderId.OPENAI)))

    request = upstream.requests[0]
    assert str(request.url) == "https://api.openai.com/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test"
    body = upstream.last_json()
    assert body["model"] == "gpt-4o"
    assert body["stream"] is True
    assert body["messages"][0]["role"] == "system"
    assert "καλημέρα" in body["messages"][1]["content"]
    assert contents(increments) == ["Χαῖ", "ρε"]
    assert increments[-1].kind == IncrementKind.TERMINAL


@pytest.mark.asyncio
async def test_deepseek_uses_its_own_endpoint_and_key(upstream):
    upstream.stream([sse(chat_chunk("x"))])
    dispatcher = make_dispatcher(upstream)

    await drain(await dispatcher.open_stream(translation(ProviderId.DEEPSEEK)))

    request = upstream.requests[0]
    assert str(request.url) == "https://api.deepseek.com/chat/completions"
    assert request.headers["Authorization"] == "Bearer ds-test"
    assert upstream.last_json()["model"] == "deepseek-chat"


@pytest.mark.asyncio
async def test_formal_register_changes_prompt(upstream):
    upstream.stream([sse(chat_chunk("x"))])
    dispatcher = make_dispatcher(upstream)

    await drain(await dispatcher.open_stream(translation(ProviderId.OPENAI, style=Style.FORMAL_REGISTER)))

    user_message = upstream.last_json()["messages"][1]["content"]
    assert prompts.STYLE_INSTRUCTIONS[Style.FORMAL_REGISTER].strip() in user_message


@pytest.mark.asyncio
async def test_missing_key_fails_before_any_request(upstream):
    dispatcher = make_dispatcher(upstream, OPENAI_API_KEY=None)

    with pytest.raises(ConfigurationError, match="OpenAI API key not configured"):
        await dispatcher.open_stream(translation(ProviderId.OPENAI))

    assert upstream.requests == []


@pytest.mark.asyncio
async def test_upstream_status_is_passed_through(upstream):
    upstream.error(401, json={"error": {"message": "Incorrect API key provided"}})
    dispatcher = make_dispatcher(upstream)

    with pytest.raises(UpstreamError) as exc_info:
        await dispatcher.open_stream(translation(ProviderId.OPENAI))

    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "OpenAI API error: Incorrect API key provided"


@pytest.mark.asyncio
async def test_upstream_error_without_json_body_is_previewed(upstream):
    upstream.error(503, text="x" * 500)
    dispatcher = make_dispatcher(upstream)

    with pytest.raises(UpstreamError) as exc_info:
        await dispatcher.open_stream(translation(ProviderId.DEEPSEEK))

    assert exc_info.value.status_code == 503
    assert exc_info.value.message.endswith("x" * 200 + "...")


@pytest.mark.asyncio
async def test_unreachable_cloud_provider_is_bad_gateway(upstream):
    upstream.fail(httpx.ConnectError("connection refused"))
    dispatcher = make_dispatcher(upstream)

    with pytest.raises(UpstreamError) as exc_info:
        await dispatcher.open_stream(translation(ProviderId.OPENAI))

    assert exc_info.value.status_code == 502


# =========================
# Local model
# =========================

@pytest.mark.asyncio
async def test_ollama_request_shape(upstream):
    upstream.stream([ndjson({"response": "Χαῖ", "done": False}, {"response": "ρε", "done": False}, {"response": "", "done": True})])
    dispatcher = make_dispatcher(upstream)

    increments = await drain(await dispatcher.open_stream(translation(ProviderId.LOCAL, direction=Direction.ANCIENT_TO_MODERN)))

    assert str(upstream.requests[0].url) == "http://ollama.test/api/generate"
    body = upstream.last_json()
    assert body["model"] == "ilsp/meltemi-instruct"
    assert body["stream"] is True
    assert "from ancient to modern greek" in body["prompt"]
    assert contents(increments) == ["Χαῖ", "ρε"]


@pytest.mark.asyncio
async def test_tgi_backend_streams_token_events(upstream):
    upstream.stream([sse({"token": {"text": "ἐν"}}, {"token": {"text": " ἀρχῇ"}}, done=False)])
    dispatcher = make_dispatcher(upstream, LOCAL_MODEL_BACKEND="tgi")

    increments = await drain(await dispatcher.open_stream(translation(ProviderId.LOCAL)))

    assert str(upstream.requests[0].url) == "http://ollama.test/generate_stream"
    assert upstream.last_json()["parameters"] == {"max_new_tokens": 512}
    assert contents(increments) == ["ἐν", " ἀρχῇ"]


def test_local_backend_selects_wire_format():
    assert LocalModelProvider(make_settings()).wire_format == WireFormat.GENERATE_NDJSON
    assert LocalModelProvider(make_settings(LOCAL_MODEL_BACKEND="tgi")).wire_format == WireFormat.TOKEN_SSE


@pytest.mark.asyncio
async def test_local_model_disabled_in_production(upstream):
    dispatcher = make_dispatcher(upstream, ENV="production")

    with pytest.raises(ConfigurationError, match="disabled in production"):
        await dispatcher.open_stream(translation(ProviderId.LOCAL))

    assert upstream.requests == []


@pytest.mark.asyncio
async def test_unknown_local_backend_is_a_configuration_error(upstream):
    dispatcher = make_dispatcher(upstream, LOCAL_MODEL_BACKEND="vllm")

    with pytest.raises(ConfigurationError, match="Unsupported local model backend"):
        await dispatcher.open_stream(translation(ProviderId.LOCAL))


@pytest.mark.asyncio
async def test_unreachable_local_model_is_a_configuration_error(upstream):
    upstream.fail(httpx.ConnectError("connection refused"))
    dispatcher = make_dispatcher(upstream)

    with pytest.raises(ConfigurationError, match="Failed to connect to the local model"):
        await dispatcher.open_stream(translation(ProviderId.LOCAL))


# =========================
# Gemini
# =========================

@pytest.mark.asyncio
async def test_gemini_streams_through_completion_callback(upstream, completion):
    dispatcher = make_dispatcher(upstream, completion=completion)

    increments = await drain(await dispatcher.open_stream(translation(ProviderId.GEMINI)))

    call = completion.calls[0]
    assert call["model"] == "gemini/gemini-2.0-flash"
    assert call["api_key"] == "gm-test"
    assert call["stream"] is True
    assert "καλημέρα" in call["messages"][0]["content"]
    assert contents(increments) == ["Χαῖρε", ", ὦ φίλε"]
    assert completion.streams[0].closed is True
    assert upstream.requests == []


@pytest.mark.asyncio
async def test_gemini_missing_key(upstream, completion):
    dispatcher = make_dispatcher(upstream, completion=completion, GEMINI_API_KEY=None)

    with pytest.raises(ConfigurationError, match="Gemini API Key is not configured"):
        await dispatcher.open_stream(translation(ProviderId.GEMINI))

    assert completion.calls == []


class RateLimitedByProvider(Exception):
    status_code = 429


@pytest.mark.asyncio
@pytest.mark.parametrize("error, status_code", [(RateLimitedByProvider("quota"), 429), (RuntimeError("boom"), 502)])
async def test_gemini_start_failure_status(upstream, error, status_code):
    dispatcher = make_dispatcher(upstream, completion=FakeCompletion(error=error))

    with pytest.raises(UpstreamError) as exc_info:
        await dispatcher.open_stream(translation(ProviderId.GEMINI))

    assert exc_info.value.status_code == status_code


class InvalidKey(Exception):
    status_code = 400


@pytest.mark.asyncio
@pytest.mark.parametrize("error, status_code", [(InvalidKey("API key not valid"), 400), (RateLimitedByProvider("quota"), 429)])
async def test_gemini_error_on_first_read_fails_before_streaming(upstream, error, status_code):
    completion = FakeCompletion(["never"], read_error=error)
    dispatcher = make_dispatcher(upstream, completion=completion)

    with pytest.raises(UpstreamError) as exc_info:
        await dispatcher.open_stream(translation(ProviderId.GEMINI))

    assert exc_info.value.status_code == status_code
    assert completion.streams[0].reads == 1
    assert completion.streams[0].closed is True


@pytest.mark.asyncio
async def test_gemini_first_chunk_is_not_lost(upstream):
    completion = FakeCompletion(["α", "β", "γ"])
    dispatcher = make_dispatcher(upstream, completion=completion)

    normalizer = await dispatcher.open_stream(translation(ProviderId.GEMINI))
    assert completion.streams[0].reads == 1

    assert contents(await drain(normalizer)) == ["α", "β", "γ"]


@pytest.mark.asyncio
async def test_gemini_empty_stream_still_terminates(upstream):
    dispatcher = make_dispatcher(upstream, completion=FakeCompletion([]))

    increments = await drain(await dispatcher.open_stream(translation(ProviderId.GEMINI)))

    assert [inc.kind for inc in increments] == [IncrementKind.TERMINAL]


# =========================
# Release
# =========================

@pytest.mark.asyncio
async def test_closing_normalizer_releases_upstream_response(upstream):
    upstream.stream([sse(chat_chunk("a"), done=False)], hang=True)
    dispatcher = make_dispatcher(upstream)
    normalizer = await dispatcher.open_stream(translation(ProviderId.OPENAI))

    iterator = normalizer.__aiter__()
    first = await iterator.__anext__()
    assert first.payload == "a"

    pending = asyncio.ensure_future(iterator.__anext__())
    await asyncio.sleep(0.01)
    assert not pending.done()
    pending.cancel()
    with pytest.raises(asyncio.CancelledError):
        await pending

    await normalizer.aclose()

    assert upstream.streams[0].closed is True
    assert normalizer.released is True


@pytest.mark.asyncio
async def test_completed_stream_releases_upstream_response(upstream):
    upstream.stream([sse(chat_chunk("a"))])
    dispatcher = make_dispatcher(upstream)

    await drain(await dispatcher.open_stream(translation(ProviderId.OPENAI)))

    assert upstream.streams[0].closed is True


def test_configured_reports_each_provider():
    dispatcher = ProviderDispatcher(make_settings(DEEPSEEK_API_KEY=None))
    assert dispatcher.configured() == {"ollama": True, "openai": True, "deepseek": False, "gemini": True}
