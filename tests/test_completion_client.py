"""Tests for the upstream completion client against a mocked transport."""

import json

import httpx
import pytest

from chatrelay.service.catalog import FALLBACK_MODELS, ModelCatalog
from chatrelay.service.completion import (
    CompletionClient,
    build_chat_request,
    extract_delta,
    parse_stream_line,
)
from chatrelay.service.errors import UpstreamError
from chatrelay.service.history import HistoryEntry

BASE_URL = "http://upstream.test/api/v1"


def _client(handler) -> CompletionClient:
    return CompletionClient(
        api_key="sk-test",
        base_url=BASE_URL + "/",
        http_referer="http://localhost:8080",
        app_title="Chat Application",
        transport=httpx.MockTransport(handler),
    )


def _sse(*chunks) -> bytes:
    lines = []
    for chunk in chunks:
        lines.append(chunk if isinstance(chunk, str) else "data: " + json.dumps(chunk))
        lines.append("")
    return ("\n".join(lines) + "\n").encode()


def _delta(text):
    return {"choices": [{"delta": {"content": text}}]}


class TestRequestShape:
    def test_text_only_message(self):
        history = [HistoryEntry("user", "hi"), HistoryEntry("assistant", "hello")]
        body = build_chat_request("next", "m", history)
        assert body == {
            "model": "m",
            "messages": [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
                {"role": "user", "content": "next"},
            ],
        }

    def test_image_message_parts(self):
        body = build_chat_request("what is this?", "m", [], "aGVsbG8=", stream=True)
        assert body["stream"] is True
        assert body["messages"][-1]["content"] == [
            {"type": "text", "text": "what is this?"},
            {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,aGVsbG8="}},
        ]

    def test_image_data_uri_kept(self):
        body = build_chat_request("x", "m", [], "data:image/png;base64,abc")
        assert body["messages"][-1]["content"][1]["image_url"]["url"] == "data:image/png;base64,abc"


class TestStreamLineParsing:
    def test_skips_non_payload_lines(self):
        assert parse_stream_line("") is None
        assert parse_stream_line(": OPENROUTER PROCESSING") is None
        assert parse_stream_line("data: [DONE]") is None
        assert parse_stream_line("data: {not json") is None

    def test_decodes_data_line(self):
        chunk = parse_stream_line('data: {"choices": [{"delta": {"content": "Hi"}}]}')
        assert extract_delta(chunk) == "Hi"

    def test_empty_delta_ignored(self):
        assert extract_delta({"choices": [{"delta": {}}]}) is None
        assert extract_delta({"choices": []}) is None


class TestComplete:
    async def test_returns_message_content(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["title"] = request.headers["X-Title"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"choices": [{"message": {"content": "4"}}]})

        client = _client(handler)
        try:
            assert await client.complete("2+2?", "m", []) == "4"
        finally:
            await client.close()

        assert seen["url"] == BASE_URL + "/chat/completions"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["title"] == "Chat Application"
        assert "stream" not in seen["body"]

    async def test_http_error_includes_status(self):
        def handler(request):
            return httpx.Response(429, json={"error": {"message": "Rate limit exceeded: free-models-per-min"}})

        client = _client(handler)
        with pytest.raises(UpstreamError) as excinfo:
            await client.complete("hi", "m", [])
        await client.close()

        err = excinfo.value
        assert err.upstream_status == 429
        assert err.message.startswith("Upstream API error: 429 Too Many Requests")
        assert "free-models-per-min" in err.message
        assert err.message.endswith(f"from POST {BASE_URL}/chat/completions")

    async def test_invalid_format(self):
        client = _client(lambda request: httpx.Response(200, json={"unexpected": True}))
        with pytest.raises(UpstreamError) as excinfo:
            await client.complete("hi", "m", [])
        await client.close()
        assert "Invalid response format" in excinfo.value.message

    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(UpstreamError) as excinfo:
            await client.complete("hi", "m", [])
        await client.close()
        assert excinfo.value.message.startswith("Failed to communicate with upstream API")


class TestStream:
    async def test_yields_deltas_in_order(self):
        def handler(request):
            assert json.loads(request.content)["stream"] is True
            assert request.headers["Accept"] == "text/event-stream"
            body = _sse(
                ": OPENROUTER PROCESSING",
                _delta("Hel"),
                {"choices": [{"delta": {}}]},
                _delta("lo"),
                "data: [DONE]",
            )
            return httpx.Response(200, content=body, headers={"Content-Type": "text/event-stream"})

        client = _client(handler)
        fragments = [f async for f in client.stream("hi", "m", [])]
        await client.close()
        assert fragments == ["Hel", "lo"]

    async def test_error_status_raises_before_fragments(self):
        client = _client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(UpstreamError) as excinfo:
            async for _ in client.stream("hi", "m", []):
                pass
        await client.close()
        assert excinfo.value.upstream_status == 500
        assert "500 Internal Server Error" in excinfo.value.message

    async def test_error_chunk_mid_stream(self):
        def handler(request):
            body = _sse(_delta("partial"), {"error": {"code": 429, "message": "Provider returned error"}})
            return httpx.Response(200, content=body)

        client = _client(handler)
        received = []
        with pytest.raises(UpstreamError) as excinfo:
            async for fragment in client.stream("hi", "m", []):
                received.append(fragment)
        await client.close()

        assert received == ["partial"]
        assert excinfo.value.upstream_status == 429
        assert excinfo.value.message == "Streaming failed: 429 Provider returned error"


class TestModelCatalog:
    async def test_parses_models(self):
        payload = {
            "data": [
                {
                    "id": "a/free:free",
                    "name": "Free",
                    "pricing": {"prompt": "0", "completion": "0"},
                    "architecture": {"input_modalities": ["text", "image"]},
                },
                {"id": "b/paid", "pricing": {"prompt": "0.001", "completion": "0.002"}},
            ]
        }
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(200, json=payload)

        client = _client(handler)
        catalog = ModelCatalog(client, None, ttl_seconds=60)
        models = await catalog.list_models()
        again = await catalog.list_models()
        await client.close()

        assert [m.id for m in models] == ["a/free:free", "b/paid"]
        assert models[0].free and models[0].supports_vision
        assert not models[1].free and models[1].name == "b/paid"
        assert again == models
        assert calls == ["/api/v1/models"]

    async def test_falls_back_on_upstream_failure(self):
        client = _client(lambda request: httpx.Response(503, text="down"))
        catalog = ModelCatalog(client, None)
        models = await catalog.list_models()
        await client.close()
        assert models == list(FALLBACK_MODELS)
        assert any(m.supports_vision for m in models)
