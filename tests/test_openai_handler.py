"""Tests for OpenAIHandler - message building, SSE parsing, errors, abort."""

import asyncio
import json

import httpx
import pytest
import respx

from ai_providers.config import ProvidersSettings
from ai_providers.errors import ProviderError
from ai_providers.handlers.openai import OpenAIHandler, build_openai_messages
from ai_providers.schema import ChatMessage, EmbedRequest, ExecuteRequest

from tests.conftest import (
    MOCK_API_KEY,
    MOCK_MANIFEST_RESPONSE,
    MOCK_MODEL_1,
    MOCK_MODEL_2,
    MOCK_OPENAI_URL,
    sse_chunk,
    sse_stream,
)

CHAT_URL = f"{MOCK_OPENAI_URL}/chat/completions"


@pytest.fixture
def handler(settings):
    return OpenAIHandler(settings)


async def run(chunk_handler):
    """Collect chunks, final text and errors from a ChunkHandler."""
    result = {"chunks": [], "end": None, "errors": []}
    chunk_handler.on_data(lambda chunk, text: result["chunks"].append(chunk))
    chunk_handler.on_end(lambda text: result.__setitem__("end", text))
    chunk_handler.on_error(result["errors"].append)
    await chunk_handler.wait()
    return result


# ─────────────────────────────────────────────────────────────────────
# Message building
# ─────────────────────────────────────────────────────────────────────


class TestBuildMessages:
    def test_prompt_with_system(self, openai_provider):
        request = ExecuteRequest(provider=openai_provider, prompt="Hi", system_prompt="Be brief")
        assert build_openai_messages(request) == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hi"},
        ]

    def test_prompt_with_images_becomes_content_parts(self, openai_provider):
        request = ExecuteRequest(
            provider=openai_provider, prompt="What is this?", images=["data:image/png;base64,AAA"]
        )
        messages = build_openai_messages(request)

        assert messages == [{
            "role": "user",
            "content": [
                {"type": "text", "text": "What is this?"},
                {"type": "image_url", "image_url": {"url": "data:image/png;base64,AAA"}},
            ],
        }]

    def test_request_images_attach_to_last_user_message(self, openai_provider):
        request = ExecuteRequest(
            provider=openai_provider,
            messages=[
                ChatMessage(role="user", content="first"),
                ChatMessage(role="assistant", content="ok"),
                ChatMessage(role="user", content="second"),
                ChatMessage(role="assistant", content="sure"),
            ],
            images=["http://img/1.png"],
        )
        messages = build_openai_messages(request)

        assert messages[0] == {"role": "user", "content": "first"}
        assert messages[2]["content"] == [
            {"type": "text", "text": "second"},
            {"type": "image_url", "image_url": {"url": "http://img/1.png"}},
        ]
        assert messages[3] == {"role": "assistant", "content": "sure"}

    def test_content_blocks_pass_through(self, openai_provider):
        request = ExecuteRequest(
            provider=openai_provider,
            messages=[{
                "role": "user",
                "content": [
                    {"type": "text", "text": "look"},
                    {"type": "image_url", "image_url": {"url": "http://img/2.png"}},
                ],
            }],
        )
        assert build_openai_messages(request)[0]["content"][1] == {
            "type": "image_url", "image_url": {"url": "http://img/2.png"},
        }


# ─────────────────────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────────────────────


class TestStreaming:
    @pytest.mark.asyncio
    @respx.mock
    async def test_streams_deltas_in_order(self, handler, openai_provider):
        respx.post(CHAT_URL).mock(return_value=httpx.Response(200, content=sse_stream("He", "llo")))

        result = await run(handler.execute(ExecuteRequest(provider=openai_provider, prompt="Hi")))

        assert result["chunks"] == ["He", "llo"]
        assert result["end"] == "Hello"
        assert result["errors"] == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_payload_carries_model_stream_and_options(self, handler, openai_provider):
        captured = {}

        def capture_request(request):
            captured["body"] = json.loads(request.content)
            captured["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, content=sse_stream("ok"))

        respx.post(CHAT_URL).mock(side_effect=capture_request)

        await run(handler.execute(ExecuteRequest(
            provider=openai_provider,
            prompt="Hi",
            options={"temperature": 0.2, "tools": [{"name": "lookup", "parameters": {}}]},
        )))

        body = captured["body"]
        assert body["model"] == MOCK_MODEL_1
        assert body["stream"] is True
        assert body["temperature"] == 0.2
        assert body["tools"] == [{"type": "function", "function": {"name": "lookup", "parameters": {}}}]
        assert body["stream_options"] == {"include_usage": True}
        assert captured["auth"] == f"Bearer {MOCK_API_KEY}"

    @pytest.mark.asyncio
    @respx.mock
    async def test_caller_stream_options_override_default(self, handler, openai_provider):
        route = respx.post(CHAT_URL).mock(return_value=httpx.Response(200, content=sse_stream("ok")))

        await run(handler.execute(ExecuteRequest(
            provider=openai_provider,
            prompt="Hi",
            options={"stream_options": {"include_usage": False}},
        )))

        body = json.loads(route.calls.last.request.content)
        assert body["stream_options"] == {"include_usage": False}

    @pytest.mark.asyncio
    @respx.mock
    async def test_reports_usage_when_backend_sends_it(self, handler, openai_provider):
        usage = {"prompt_tokens": 10, "completion_tokens": 8, "total_tokens": 18}
        respx.post(CHAT_URL).mock(
            return_value=httpx.Response(200, content=sse_stream("Paris", usage=usage))
        )
        reports = []

        await run(handler.execute(ExecuteRequest(provider=openai_provider, prompt="Hi"), reports.append))

        assert len(reports) == 1
        assert reports[0].usage.completion_tokens == 8
        assert reports[0].duration_ms >= 0
        assert reports[0].first_token_latency_ms is not None

    @pytest.mark.asyncio
    @respx.mock
    async def test_no_usage_no_report(self, handler, openai_provider):
        respx.post(CHAT_URL).mock(return_value=httpx.Response(200, content=sse_stream("x")))
        reports = []

        await run(handler.execute(ExecuteRequest(provider=openai_provider, prompt="Hi"), reports.append))

        assert reports == []

    @pytest.mark.asyncio
    @respx.mock
    async def test_ignores_comments_and_malformed_lines(self, handler, openai_provider):
        body = ": keep-alive\n\n" + "data: {not json\n\n" + sse_stream("ok")
        respx.post(CHAT_URL).mock(return_value=httpx.Response(200, content=body))

        result = await run(handler.execute(ExecuteRequest(provider=openai_provider, prompt="Hi")))

        assert result["end"] == "ok"


# ─────────────────────────────────────────────────────────────────────
# Error handling
# ─────────────────────────────────────────────────────────────────────


class TestErrorHandling:
    @pytest.mark.asyncio
    @respx.mock
    async def test_http_error_becomes_error_event(self, handler, openai_provider):
        error_body = json.dumps({"error": {"message": "Rate limit exceeded"}}).encode()
        respx.post(CHAT_URL).mock(return_value=httpx.Response(429, content=error_body))

        result = await run(handler.execute(ExecuteRequest(provider=openai_provider, prompt="Hi")))

        assert result["end"] is None
        assert len(result["errors"]) == 1
        assert isinstance(result["errors"][0], ProviderError)
        assert "Rate limit exceeded" in str(result["errors"][0])
        assert result["errors"][0].status_code == 429

    @pytest.mark.asyncio
    @respx.mock
    async def test_in_stream_error_frame(self, handler, openai_provider):
        body = sse_chunk("partial") + 'data: {"error": {"message": "context overflow"}}\n\n'
        respx.post(CHAT_URL).mock(return_value=httpx.Response(200, content=body))

        result = await run(handler.execute(ExecuteRequest(provider=openai_provider, prompt="Hi")))

        assert result["chunks"] == ["partial"]
        assert "context overflow" in str(result["errors"][0])

    @pytest.mark.asyncio
    @respx.mock
    async def test_connection_error_becomes_error_event(self, handler, openai_provider):
        respx.post(CHAT_URL).mock(side_effect=httpx.ConnectError("refused"))

        result = await run(handler.execute(ExecuteRequest(provider=openai_provider, prompt="Hi")))

        assert isinstance(result["errors"][0], httpx.ConnectError)


# ─────────────────────────────────────────────────────────────────────
# Abort
# ─────────────────────────────────────────────────────────────────────


class TestAbort:
    @pytest.mark.asyncio
    async def test_abort_mid_stream_is_silent(self, openai_provider):
        never = asyncio.Event()

        async def body():
            yield sse_chunk("He").encode()
            await never.wait()
            yield sse_chunk("llo").encode()

        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=body()))
        handler = OpenAIHandler(ProvidersSettings(), transport=transport)

        first = asyncio.Event()
        chunk_handler = handler.execute(ExecuteRequest(provider=openai_provider, prompt="Hi"))
        result = {"chunks": [], "end": None, "errors": []}
        chunk_handler.on_data(lambda chunk, text: (result["chunks"].append(chunk), first.set()))
        chunk_handler.on_end(lambda text: result.__setitem__("end", text))
        chunk_handler.on_error(result["errors"].append)

        await asyncio.wait_for(first.wait(), timeout=5)
        chunk_handler.abort()
        chunk_handler.abort()
        await chunk_handler.wait()

        assert result == {"chunks": ["He"], "end": None, "errors": []}
        assert chunk_handler.is_aborted


# ─────────────────────────────────────────────────────────────────────
# Models and embeddings
# ─────────────────────────────────────────────────────────────────────


class TestModelsAndEmbeddings:
    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_models(self, handler, openai_provider):
        respx.get(f"{MOCK_OPENAI_URL}/models").mock(
            return_value=httpx.Response(200, json=MOCK_MANIFEST_RESPONSE)
        )

        assert await handler.fetch_models(openai_provider) == [MOCK_MODEL_1, MOCK_MODEL_2]

    @pytest.mark.asyncio
    @respx.mock
    async def test_fetch_models_http_error(self, handler, openai_provider):
        respx.get(f"{MOCK_OPENAI_URL}/models").mock(
            return_value=httpx.Response(401, json={"error": {"message": "Invalid API key"}})
        )

        with pytest.raises(ProviderError, match="Invalid API key"):
            await handler.fetch_models(openai_provider)

    @pytest.mark.asyncio
    @respx.mock
    async def test_embed_orders_by_index(self, handler, openai_provider):
        respx.post(f"{MOCK_OPENAI_URL}/embeddings").mock(return_value=httpx.Response(200, json={
            "data": [
                {"index": 1, "embedding": [0.3, 0.4]},
                {"index": 0, "embedding": [0.1, 0.2]},
            ]
        }))

        vectors = await handler.embed(EmbedRequest(provider=openai_provider, input=["a", "b"]))

        assert vectors == [[0.1, 0.2], [0.3, 0.4]]

    @pytest.mark.asyncio
    @respx.mock
    async def test_embed_accepts_legacy_text(self, handler, openai_provider):
        route = respx.post(f"{MOCK_OPENAI_URL}/embeddings").mock(
            return_value=httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})
        )

        await handler.embed(EmbedRequest(provider=openai_provider, text="hello"))

        assert json.loads(route.calls.last.request.content)["input"] == "hello"


# ─────────────────────────────────────────────────────────────────────
# Transport selection
# ─────────────────────────────────────────────────────────────────────


class TestTransport:
    @pytest.mark.asyncio
    async def test_host_transport_is_used(self, openai_provider):
        seen = []

        def handle(request):
            seen.append(str(request.url))
            return httpx.Response(200, json=MOCK_MANIFEST_RESPONSE)

        handler = OpenAIHandler(ProvidersSettings(), transport=httpx.MockTransport(handle))

        await handler.fetch_models(openai_provider)

        assert seen == [f"{MOCK_OPENAI_URL}/models"]

    @pytest.mark.asyncio
    @respx.mock
    async def test_native_fetch_bypasses_host_transport(self, openai_provider):
        respx.get(f"{MOCK_OPENAI_URL}/models").mock(
            return_value=httpx.Response(200, json=MOCK_MANIFEST_RESPONSE)
        )
        host_calls = []

        def handle(request):
            host_calls.append(request)
            return httpx.Response(500)

        handler = OpenAIHandler(
            ProvidersSettings(use_native_fetch=True), transport=httpx.MockTransport(handle)
        )

        assert await handler.fetch_models(openai_provider) == [MOCK_MODEL_1, MOCK_MODEL_2]
        assert host_calls == []
