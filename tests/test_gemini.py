from __future__ import annotations

import asyncio
import json
from typing import Callable, List

import httpx
import pytest

from anugrah_server.gateway import GatewayFailure
from anugrah_server.gemini import GeminiGateway, GeminiSettings, create_from_config


def _sse(*payloads) -> bytes:
    lines = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        lines.append(f"data: {data}\r\n\r\n")
    return "".join(lines).encode("utf-8")


def _chunk(text: str) -> dict:
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


def _gateway(handler: Callable[[httpx.Request], httpx.Response], **overrides) -> GeminiGateway:
    settings = GeminiSettings(api_key="test-key", retry_delay=0.0, **overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiGateway(settings, client=client)


def _collect(gw: GeminiGateway, history, message) -> List[str]:
    async def run():
        return [frag async for frag in gw.stream_chat(history, message)]
    return asyncio.run(run())


def test_stream_chat_yields_text_fragments_in_order():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        body = _sse(_chunk("Grace "), {"candidates": [{"content": {"parts": []}}]}, _chunk("is favor."))
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    gw = _gateway(handler)
    history = [{"role": "assistant", "text": "Namaste!"}, {"role": "user", "text": "Hi"}]
    out = _collect(gw, history, "What is grace?")

    assert out == ["Grace ", "is favor."]
    assert ":streamGenerateContent" in seen["url"] and "alt=sse" in seen["url"]
    assert "/models/gemini-2.5-flash:" in seen["url"]
    assert seen["key"] == "test-key"
    contents = seen["body"]["contents"]
    assert [c["role"] for c in contents] == ["model", "user", "user"]
    assert contents[-1]["parts"][0]["text"] == "What is grace?"
    assert "Anugrah Church" in seen["body"]["systemInstruction"]["parts"][0]["text"]


def test_stream_chat_skips_empty_history_entries():
    captured = {}

    def handler(request):
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, content=_sse(_chunk("ok")))

    _collect(_gateway(handler), [{"role": "assistant", "text": ""}], "hello")
    assert len(captured["body"]["contents"]) == 1


def test_stream_chat_http_error_raises_gateway_failure():
    gw = _gateway(lambda request: httpx.Response(500, text="internal"))
    with pytest.raises(GatewayFailure):
        _collect(gw, [], "hello")


def test_stream_chat_transport_error_raises_gateway_failure():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(GatewayFailure):
        _collect(_gateway(handler), [], "hello")


def test_stream_chat_bad_frame_after_fragments():
    received: List[str] = []

    def handler(request):
        return httpx.Response(200, content=_sse(_chunk("I th"), "{not json"))

    async def run():
        async for frag in _gateway(handler).stream_chat([], "hello"):
            received.append(frag)

    with pytest.raises(GatewayFailure):
        asyncio.run(run())
    assert received == ["I th"]


def test_stream_chat_blocked_prompt():
    def handler(request):
        return httpx.Response(200, content=_sse({"promptFeedback": {"blockReason": "SAFETY"}}))

    with pytest.raises(GatewayFailure, match="SAFETY"):
        _collect(_gateway(handler), [], "hello")


def test_generate_sends_schema_and_collects_unique_sources():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "candidates": [{
                "content": {"parts": [{"text": '{"a": 1}'}]},
                "groundingMetadata": {"groundingChunks": [
                    {"web": {"uri": "https://b.example"}},
                    {"web": {"uri": "https://a.example"}},
                    {"web": {"uri": "https://b.example"}},
                    {"retrievedContext": {"uri": "ignored"}},
                ]},
            }],
        })

    schema = {"type": "OBJECT", "properties": {"a": {"type": "STRING"}}}
    gen = asyncio.run(_gateway(handler).generate("prompt", response_schema=schema))

    assert gen.text == '{"a": 1}'
    assert gen.sources == ["https://b.example", "https://a.example"]
    assert seen["url"].endswith(":generateContent")
    assert seen["body"]["generationConfig"]["responseMimeType"] == "application/json"
    assert seen["body"]["generationConfig"]["responseSchema"] == schema
    assert "tools" not in seen["body"]


def test_generate_retries_transient_status():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(503, text="busy")
        return httpx.Response(200, json=_chunk("done"))

    gen = asyncio.run(_gateway(handler, max_retries=3).generate("p"))
    assert gen.text == "done"
    assert calls["n"] == 3


def test_generate_gives_up_after_max_retries():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(GatewayFailure):
        asyncio.run(_gateway(handler, max_retries=2).generate("p"))
    assert calls["n"] == 2


def test_generate_client_error_is_not_retried():
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(400, text="bad key")

    with pytest.raises(GatewayFailure):
        asyncio.run(_gateway(handler, max_retries=3).generate("p"))
    assert calls["n"] == 1


def test_create_from_config_requires_api_key(clean_env):
    with pytest.raises(RuntimeError):
        create_from_config({"gemini": {}})


def test_create_from_config_reads_env_key(clean_env, monkeypatch):
    monkeypatch.setenv("API_KEY", "from-env")
    gw = create_from_config({"gemini": {"model": "gemini-2.5-pro", "max_retries": 5}})
    assert gw.settings.api_key == "from-env"
    assert gw.model == "gemini-2.5-pro"
    assert gw.settings.max_retries == 5
    asyncio.run(gw.aclose())
