"""Tests for the protocol adapter against a faked HTTP backend.

Both wire formats are served by ``httpx.MockTransport``; the OpenAI SDK is
handed the same client, so no request leaves the process.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from codeagent.agent.cancellation import CancellationToken
from codeagent.agent.errors import (
    ClientError,
    NetworkError,
    RateLimited,
    RequestTimeout,
    ServerError,
    UserCancelled,
)
from codeagent.agent.llm import ChatAdapter, should_rescue_text_calls
from codeagent.agent.providers import API_KEY
from codeagent.agent.state import CallingMode, ChatResponse, Message, ToolCall
from codeagent.agent.tools import create_default_registry

OPENAI_URL = "https://api.z.ai/api/coding/paas/v4/chat/completions"
ANTHROPIC_URL = "https://api.z.ai/api/anthropic/v1/messages"

TAGGED_CALL = (
    "I will write it now.\n"
    '<tool_call>{"tool": "write_file", "parameters": {"path": "x.txt", "content": "hi"}}</tool_call>'
)


def _openai_reply(content: str = "", tool_calls: list | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    return {
        "choices": [{"index": 0, "message": message, "finish_reason": "stop"}],
        "usage": {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15},
    }


def _make_adapter(handler, provider: str = "z.ai", protocol: str = "openai") -> ChatAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChatAdapter(
        provider,
        protocol,
        "glm-4.7",
        "test-key",
        registry=create_default_registry(),
        http_client=client,
    )


def _send(adapter: ChatAdapter, **kwargs) -> ChatResponse:
    async def go():
        try:
            return await adapter.send([Message("user", "write x.txt")], "You are an agent.", **kwargs)
        finally:
            await adapter._http.aclose()

    return asyncio.run(go())


# ── Format A ────────────────────────────────────────────────────


def test_openai_native_round():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=_openai_reply(
                "Reading.",
                [{"id": "c1", "type": "function",
                  "function": {"name": "read_file", "arguments": '{"path": "a.py"}'}}],
            ),
        )

    adapter = _make_adapter(handler)
    response = _send(adapter)

    assert response.used_native_tools is True
    assert response.content == "Reading."
    assert response.tool_calls == [ToolCall(tool="read_file", parameters={"path": "a.py"}, id="c1")]

    assert str(seen[0].url) == OPENAI_URL
    assert seen[0].headers["authorization"] == "Bearer test-key"
    body = json.loads(seen[0].content)
    assert body["messages"][0] == {"role": "system", "content": "You are an agent."}
    assert body["tool_choice"] == "auto"
    assert {t["function"]["name"] for t in body["tools"]} >= {"read_file", "write_file"}
    assert body["max_tokens"] == 16384
    assert body["stream"] is False
    assert adapter.usage.request_count == 1


def test_openai_streaming_forwards_chunks():
    events = [
        {"choices": [{"index": 0, "delta": {"content": "Hel"}}]},
        {"choices": [{"index": 0, "delta": {"content": "lo"}}]},
    ]
    sse = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, text=sse, headers={"content-type": "text/event-stream"})

    chunks: list[str] = []
    response = _send(_make_adapter(handler), on_chunk=chunks.append)
    assert response.content == "Hello"
    assert chunks == ["Hel", "lo"]
    assert response.tool_calls == []


def test_native_rejection_falls_back_to_text_protocol():
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        bodies.append(body)
        if "tools" in body:
            return httpx.Response(400, json={"error": {"message": "tools are not supported for this model"}})
        return httpx.Response(200, json=_openai_reply(TAGGED_CALL))

    adapter = _make_adapter(handler)
    response = _send(adapter)

    assert response.used_native_tools is False
    assert response.tool_calls == [
        ToolCall(tool="write_file", parameters={"path": "x.txt", "content": "hi"})
    ]
    assert len(bodies) == 2
    assert "tools" not in bodies[1]
    assert "## Available Tools" in bodies[1]["messages"][0]["content"]
    assert adapter.calling_mode is CallingMode.TEXT


def test_client_error_without_tool_mention_is_not_a_fallback():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": {"message": "invalid model"}})

    with pytest.raises(ClientError):
        _send(_make_adapter(handler))


def test_status_codes_map_to_error_types():
    for status, error_type in ((429, RateLimited), (503, ServerError)):
        def handler(request: httpx.Request, status=status) -> httpx.Response:
            return httpx.Response(status, json={"error": {"message": "busy"}})

        with pytest.raises(error_type):
            _send(_make_adapter(handler))


def test_first_round_rescues_tagged_calls_from_native_reply():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_openai_reply(TAGGED_CALL))

    first = _send(_make_adapter(handler), iteration=1)
    assert first.used_native_tools is False
    assert [c.tool for c in first.tool_calls] == ["write_file"]

    later = _send(_make_adapter(handler), iteration=2)
    assert later.used_native_tools is True
    assert later.tool_calls == []


def test_should_rescue_text_calls_predicate():
    native_empty = ChatResponse(content="text", tool_calls=[], used_native_tools=True)
    assert should_rescue_text_calls(native_empty, 1)
    assert not should_rescue_text_calls(native_empty, 2)
    assert not should_rescue_text_calls(
        ChatResponse(content="text", tool_calls=[], used_native_tools=False), 1
    )


# ── Format B ────────────────────────────────────────────────────


def test_anthropic_native_stream():
    events = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 30, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Listing."}},
        {"type": "content_block_stop", "index": 0},
        {"type": "content_block_start", "index": 1,
         "content_block": {"type": "tool_use", "id": "tu_1", "name": "list_files", "input": {}}},
        {"type": "content_block_delta", "index": 1,
         "delta": {"type": "input_json_delta", "partial_json": '{"path": "src"}'}},
        {"type": "content_block_stop", "index": 1},
        {"type": "message_delta", "usage": {"output_tokens": 9}},
        {"type": "message_stop"},
    ]
    sse = "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=sse, headers={"content-type": "text/event-stream"})

    chunks: list[str] = []
    adapter = _make_adapter(handler, protocol="anthropic")
    response = _send(adapter, on_chunk=chunks.append)

    assert response.content == "Listing."
    assert response.tool_calls == [ToolCall(tool="list_files", parameters={"path": "src"}, id="tu_1")]
    assert chunks == ["Listing."]
    assert adapter.usage.totals().total_tokens == 39

    request = seen[0]
    assert str(request.url) == ANTHROPIC_URL
    assert request.headers["x-api-key"] == "test-key"
    assert request.headers["anthropic-version"] == "2023-06-01"
    body = json.loads(request.content)
    assert body["system"] == "You are an agent."
    assert body["tools"][0]["input_schema"]["type"] == "object"


def test_anthropic_text_mode_for_provider_without_native_tools():
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "content": [{"type": "text", "text": TAGGED_CALL}],
                "usage": {"input_tokens": 5, "output_tokens": 5},
            },
        )

    adapter = _make_adapter(handler, provider="minimax", protocol="anthropic")
    assert adapter.calling_mode is CallingMode.TEXT
    response = _send(adapter)

    assert response.used_native_tools is False
    assert [c.tool for c in response.tool_calls] == ["write_file"]
    body = seen[0]
    assert "tools" not in body
    assert body["messages"][0]["role"] == "user"
    assert "## Available Tools" in body["messages"][0]["content"]
    assert body["messages"][1]["role"] == "assistant"
    assert body["messages"][2] == {"role": "user", "content": "write x.txt"}


# ── Deadlines and cancellation ──────────────────────────────────


async def _slow_handler(request: httpx.Request) -> httpx.Response:
    await asyncio.sleep(5)
    return httpx.Response(200, json=_openai_reply("late"))


def test_deadline_raises_request_timeout():
    with pytest.raises(RequestTimeout):
        _send(_make_adapter(_slow_handler), timeout=0.05)


def test_user_cancel_raises_user_cancelled_not_timeout():
    adapter = _make_adapter(_slow_handler)

    async def go():
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.05, token.cancel)
        try:
            await adapter.send([Message("user", "hi")], "sys", cancel_token=token, timeout=10)
        finally:
            await adapter._http.aclose()

    with pytest.raises(UserCancelled):
        asyncio.run(go())


def test_already_cancelled_token_sends_nothing():
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json=_openai_reply("x"))

    token = CancellationToken()
    token.cancel()
    with pytest.raises(UserCancelled):
        _send(_make_adapter(handler), cancel_token=token)
    assert calls == []


# ── Transport failures and auth ─────────────────────────────────


class _DroppedStream(httpx.AsyncByteStream):
    """Serves one SSE event, then the connection resets."""

    def __init__(self, first: bytes) -> None:
        self.first = first

    async def __aiter__(self):
        yield self.first
        raise httpx.ReadError("connection reset mid-stream")


def test_openai_stream_dropped_mid_body_is_network_error():
    first = b'data: {"choices": [{"index": 0, "delta": {"content": "Hel"}}]}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, stream=_DroppedStream(first)
        )

    adapter = _make_adapter(handler)
    with pytest.raises(NetworkError):
        _send(adapter, on_chunk=lambda _: None)


def test_anthropic_stream_dropped_mid_body_is_network_error():
    first = b'event: message_start\ndata: {"type": "message_start", "message": {}}\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, stream=_DroppedStream(first)
        )

    adapter = _make_adapter(handler, protocol="anthropic")
    with pytest.raises(NetworkError):
        _send(adapter, on_chunk=lambda _: None)


def test_openai_format_sends_only_api_key_header_when_provider_wants_it(monkeypatch):
    monkeypatch.setattr("codeagent.agent.llm.provider_auth_header", lambda *_: API_KEY)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_openai_reply("done"))

    _send(_make_adapter(handler))

    assert seen[0].headers["x-api-key"] == "test-key"
    assert "authorization" not in seen[0].headers


def test_openai_format_bearer_provider_sends_authorization_only():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_openai_reply("done"))

    _send(_make_adapter(handler))

    assert seen[0].headers["authorization"] == "Bearer test-key"
    assert "x-api-key" not in seen[0].headers
