"""Tests for SSE parsing and stream assembly in both wire formats."""

from __future__ import annotations

import asyncio
import json

from codeagent.agent.state import TokenUsage
from codeagent.agent.streaming import (
    assemble_anthropic_stream,
    assemble_openai_stream,
    iter_sse_events,
    parse_anthropic_body,
    parse_openai_body,
)


async def _lines(lines: list[str]):
    for line in lines:
        yield line


def _data(obj) -> str:
    return "data: " + json.dumps(obj)


async def _collect(agen) -> list:
    return [item async for item in agen]


# ── SSE lines ───────────────────────────────────────────────────


def test_iter_sse_events_drops_malformed_and_stops_at_done():
    lines = [
        ": keep-alive",
        "event: message",
        _data({"n": 1}),
        "data: {broken",
        "",
        _data({"n": 2}),
        "data: [DONE]",
        _data({"n": 3}),
    ]
    events = asyncio.run(_collect(iter_sse_events(_lines(lines))))
    assert events == [{"n": 1}, {"n": 2}]


def test_iter_sse_events_stops_at_message_stop():
    lines = [_data({"type": "ping"}), _data({"type": "message_stop"}), _data({"type": "late"})]
    events = asyncio.run(_collect(iter_sse_events(_lines(lines), done_sentinel=None)))
    assert [e["type"] for e in events] == ["ping", "message_stop"]


# ── Format A ────────────────────────────────────────────────────


def test_assemble_openai_stream_merges_tool_call_fragments():
    events = [
        {"choices": [{"delta": {"content": "Let me "}}]},
        {"choices": [{"delta": {"content": "look."}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "id": "c1", "function": {"name": "read_file", "arguments": '{"pa'}}
        ]}}]},
        {"choices": [{"delta": {"tool_calls": [
            {"index": 0, "function": {"arguments": 'th": "a.py"}'}}
        ]}}]},
        {"choices": [], "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}},
    ]
    chunks: list[str] = []
    text, calls, usage = asyncio.run(assemble_openai_stream(_lines(events), chunks.append))
    assert text == "Let me look."
    assert chunks == ["Let me ", "look."]
    assert calls == [
        {"id": "c1", "type": "function", "function": {"name": "read_file", "arguments": '{"path": "a.py"}'}}
    ]
    assert usage == TokenUsage(10, 5, 15)


def test_parse_openai_body():
    data = {
        "choices": [{"message": {"content": "hi", "tool_calls": [{"id": "x"}]}}],
        "usage": {"prompt_tokens": 3, "completion_tokens": 1},
    }
    text, calls, usage = parse_openai_body(data)
    assert text == "hi"
    assert calls == [{"id": "x"}]
    assert usage == TokenUsage(3, 1, 4)


# ── Format B ────────────────────────────────────────────────────


def test_assemble_anthropic_stream():
    events = [
        {"type": "message_start", "message": {"usage": {"input_tokens": 20, "output_tokens": 1}}},
        {"type": "content_block_start", "index": 0, "content_block": {"type": "text", "text": ""}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Writing."}},
        {"type": "content_block_stop", "index": 0},
        {"type": "content_block_start", "index": 1,
         "content_block": {"type": "tool_use", "id": "tu_1", "name": "write_file", "input": {}}},
        {"type": "content_block_delta", "index": 1,
         "delta": {"type": "input_json_delta", "partial_json": '{"path": "x.txt", '}},
        {"type": "content_block_delta", "index": 1,
         "delta": {"type": "input_json_delta", "partial_json": '"content": "hi"}'}},
        {"type": "content_block_stop", "index": 1},
        {"type": "message_delta", "usage": {"output_tokens": 12}},
    ]
    chunks: list[str] = []
    text, blocks, usage = asyncio.run(assemble_anthropic_stream(_lines(events), chunks.append))
    assert text == "Writing."
    assert chunks == ["Writing."]
    assert blocks == [
        {"type": "tool_use", "id": "tu_1", "name": "write_file", "input": {"path": "x.txt", "content": "hi"}}
    ]
    assert usage == TokenUsage(20, 12, 32)


def test_assemble_anthropic_stream_leaves_broken_input_as_string():
    events = [
        {"type": "content_block_start", "index": 0,
         "content_block": {"type": "tool_use", "id": "tu_1", "name": "read_file"}},
        {"type": "content_block_delta", "index": 0,
         "delta": {"type": "input_json_delta", "partial_json": '{"path": '}},
    ]
    _, blocks, usage = asyncio.run(assemble_anthropic_stream(_lines(events)))
    assert blocks[0]["input"] == '{"path": '
    assert usage is None


def test_parse_anthropic_body():
    data = {
        "content": [
            {"type": "text", "text": "Sure."},
            {"type": "tool_use", "id": "tu", "name": "list_files", "input": {}},
        ],
        "usage": {"input_tokens": 7, "output_tokens": 2},
    }
    text, blocks, usage = parse_anthropic_body(data)
    assert text == "Sure."
    assert blocks[0]["name"] == "list_files"
    assert usage == TokenUsage(7, 2, 9)
