from __future__ import annotations

import asyncio
import json

import httpx
import pytest

import chatbot_service.chat.llm_client as llm
from chatbot_service.config import LLMConfig
from chatbot_service.errors import ExternalServiceError

_OK_BODY = {
    "model": "gpt-4-0613",
    "choices": [{"message": {"content": "  Xin chào!  "}, "finish_reason": "stop"}],
    "usage": {"prompt_tokens": 12, "completion_tokens": 5, "total_tokens": 17},
}


def _client(handler, **cfg) -> llm.CompletionClient:
    config = LLMConfig(base_url="http://llm.test/v1/", api_key="k-1", **cfg)
    return llm.CompletionClient(config, transport=httpx.MockTransport(handler))


@pytest.fixture()
def sleeps(monkeypatch):
    recorded: list[float] = []

    async def _sleep(delay):
        recorded.append(delay)

    monkeypatch.setattr(llm.asyncio, "sleep", _sleep)
    return recorded


def test_complete_parses_reply_usage_and_headers():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_OK_BODY)

    client = _client(handler, model="gpt-4", max_tokens=100, temperature=0.2)
    out = asyncio.run(client.complete([{"role": "user", "content": "hi"}]))

    assert out.content == "Xin chào!"
    assert out.model == "gpt-4-0613"
    assert out.tokens == {"prompt": 12, "completion": 5, "total": 17}
    assert out.finish_reason == "stop"
    assert seen["url"] == "http://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer k-1"
    assert seen["body"]["max_tokens"] == 100
    assert seen["body"]["temperature"] == 0.2
    assert seen["body"]["stream"] is False


def test_complete_per_call_options_override_defaults():
    seen = {}

    def handler(request):
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=_OK_BODY)

    client = _client(handler)
    asyncio.run(client.complete([], {"model": "gpt-3.5-turbo", "temperature": 0.0}))
    assert seen["body"]["model"] == "gpt-3.5-turbo"
    assert seen["body"]["temperature"] == 0.0
    assert seen["body"]["max_tokens"] == 1000


def test_upstream_status_maps_to_502_and_network_error_to_503():
    client = _client(lambda request: httpx.Response(429, json={"error": "slow down"}))
    with pytest.raises(ExternalServiceError) as ex:
        asyncio.run(client.complete([]))
    assert ex.value.status_code == 502
    assert ex.value.upstream_status == 429

    def _down(request):
        raise httpx.ConnectError("refused", request=request)

    client = _client(_down)
    with pytest.raises(ExternalServiceError) as ex:
        asyncio.run(client.complete([]))
    assert ex.value.status_code == 503
    assert ex.value.upstream_status is None


def test_retry_backs_off_two_then_four_seconds(sleeps):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        if calls["n"] < 3:
            return httpx.Response(500, json={})
        return httpx.Response(200, json=_OK_BODY)

    out = asyncio.run(_client(handler).complete_with_retry([]))
    assert out.content == "Xin chào!"
    assert calls["n"] == 3
    assert sleeps == [2.0, 4.0]


def test_retry_reraises_last_error_after_attempts(sleeps):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(503, json={})

    with pytest.raises(ExternalServiceError) as ex:
        asyncio.run(_client(handler, max_attempts=2).complete_with_retry([]))
    assert calls["n"] == 2
    assert ex.value.upstream_status == 503
    assert sleeps == [2.0]


def test_retry_treats_client_errors_like_any_other(sleeps):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(400, json={})

    with pytest.raises(ExternalServiceError):
        asyncio.run(_client(handler).complete_with_retry([], max_attempts=3))
    assert calls["n"] == 3


def test_null_usage_counters_read_as_zero():
    body = {
        "choices": [{"message": {"content": "ok"}, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 7, "completion_tokens": None, "total_tokens": None},
    }
    out = asyncio.run(_client(lambda request: httpx.Response(200, json=body)).complete([]))
    assert out.tokens == {"prompt": 7, "completion": 0, "total": 0}
    assert out.model == "gpt-4"


@pytest.mark.parametrize(
    "body",
    [
        {"choices": "nope"},
        {"choices": [{"message": {"content": "ok"}}], "usage": {"prompt_tokens": "many"}},
        ["not", "an", "object"],
    ],
)
def test_malformed_payload_is_retried_as_external_error(body, sleeps):
    calls = {"n": 0}

    def handler(request):
        calls["n"] += 1
        return httpx.Response(200, json=body)

    with pytest.raises(ExternalServiceError) as ex:
        asyncio.run(_client(handler).complete_with_retry([], max_attempts=2))
    assert ex.value.status_code == 502
    assert calls["n"] == 2
    assert sleeps == [2.0]


def test_stream_yields_fragments_until_done():
    body = (
        'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
        'data: {"choices":[{"delta":{"content":"Xin "}}]}\n\n'
        ": keep-alive\n\n"
        'data: {"choices":[{"delta":{"content":"chào"}}]}\n\n'
        "data: [DONE]\n\n"
        'data: {"choices":[{"delta":{"content":"ignored"}}]}\n\n'
    )

    def handler(request):
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    async def _collect():
        client = _client(handler)
        return [t async for t in client.stream([])]

    assert asyncio.run(_collect()) == ["Xin ", "chào"]


def test_stream_failure_is_external_service_error():
    async def _collect():
        client = _client(lambda request: httpx.Response(500))
        return [t async for t in client.stream([])]

    with pytest.raises(ExternalServiceError):
        asyncio.run(_collect())


def test_embed_and_health():
    def handler(request):
        if request.url.path.endswith("/embeddings"):
            assert json.loads(request.content)["model"] == "text-embedding-ada-002"
            return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2]}]})
        if request.url.path.endswith("/models"):
            return httpx.Response(200, json={"data": []})
        return httpx.Response(404)

    client = _client(handler)
    assert asyncio.run(client.embed("ram")) == [0.1, 0.2]
    assert asyncio.run(client.health()) is True

    down = _client(lambda request: httpx.Response(500))
    assert asyncio.run(down.health()) is False


def test_get_client_lazy_init_and_aclose():
    client = _client(lambda request: httpx.Response(200, json=_OK_BODY))
    first = client._get_client()
    assert client._get_client() is first
    asyncio.run(client.aclose())
    assert client._client is None
