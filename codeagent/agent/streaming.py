"""Server-sent event parsing and response assembly for both wire formats.

Every assembler returns the same triple: ``(text, raw native tool calls,
usage)``. The raw calls are handed to ``tool_parsing.from_native``.
"""

from __future__ import annotations

import json
import logging
from typing import AsyncIterable, AsyncIterator, Callable

from codeagent.agent.state import TokenUsage

logger = logging.getLogger(__name__)

OPENAI_DONE = "[DONE]"
ANTHROPIC_STOP = "message_stop"
DATA_PREFIX = "data:"

ChunkCallback = Callable[[str], None]
Assembled = tuple[str, list[dict], TokenUsage | None]


async def iter_sse_events(
    lines: AsyncIterable[str], done_sentinel: str | None = OPENAI_DONE
) -> AsyncIterator[dict]:
    """Yield one JSON object per ``data:`` line.

    Lines without the prefix (``event:``, comments, keep-alives) are ignored
    and malformed payloads are dropped without failing the stream. Iteration
    stops at ``done_sentinel`` or at an Anthropic ``message_stop`` event.
    """
    async for raw in lines:
        line = raw.strip()
        if not line.startswith(DATA_PREFIX):
            continue
        payload = line[len(DATA_PREFIX):].strip()
        if not payload:
            continue
        if done_sentinel is not None and payload == done_sentinel:
            return
        try:
            event = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug("Dropping malformed stream line: %r", payload[:200])
            continue
        if not isinstance(event, dict):
            continue
        yield event
        if event.get("type") == ANTHROPIC_STOP:
            return


# ── Usage ───────────────────────────────────────────────────────


def usage_from_openai(data: dict | None) -> TokenUsage | None:
    usage = (data or {}).get("usage")
    if not usage:
        return None
    prompt = usage.get("prompt_tokens") or 0
    completion = usage.get("completion_tokens") or 0
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=usage.get("total_tokens") or prompt + completion,
    )


def usage_from_anthropic(data: dict | None) -> TokenUsage | None:
    usage = (data or {}).get("usage")
    if not usage:
        return None
    prompt = usage.get("input_tokens") or 0
    completion = usage.get("output_tokens") or 0
    return TokenUsage(prompt, completion, prompt + completion)


# ── Format A (OpenAI-style) ─────────────────────────────────────


async def assemble_openai_stream(
    events: AsyncIterable[dict], on_chunk: ChunkCallback | None = None
) -> Assembled:
    text_parts: list[str] = []
    tool_calls_acc: dict[int, dict] = {}
    usage: TokenUsage | None = None

    async for event in events:
        if event.get("usage"):
            usage = usage_from_openai(event)
        choices = event.get("choices") or []
        if not choices:
            continue
        delta = choices[0].get("delta") or {}

        content = delta.get("content")
        if content:
            text_parts.append(content)
            if on_chunk:
                on_chunk(content)

        for tc in delta.get("tool_calls") or []:
            idx = tc.get("index", len(tool_calls_acc))
            if idx not in tool_calls_acc:
                tool_calls_acc[idx] = {
                    "id": tc.get("id") or "",
                    "type": "function",
                    "function": {"name": "", "arguments": ""},
                }
            if tc.get("id"):
                tool_calls_acc[idx]["id"] = tc["id"]
            function = tc.get("function") or {}
            if function.get("name"):
                tool_calls_acc[idx]["function"]["name"] += function["name"]
            if function.get("arguments"):
                tool_calls_acc[idx]["function"]["arguments"] += function["arguments"]

    raw_calls = [tool_calls_acc[i] for i in sorted(tool_calls_acc)]
    return "".join(text_parts), raw_calls, usage


def parse_openai_body(data: dict) -> Assembled:
    choices = data.get("choices") or [{}]
    message = choices[0].get("message") or {}
    return message.get("content") or "", message.get("tool_calls") or [], usage_from_openai(data)


# ── Format B (Anthropic-style) ──────────────────────────────────


async def assemble_anthropic_stream(
    events: AsyncIterable[dict], on_chunk: ChunkCallback | None = None
) -> Assembled:
    text_parts: list[str] = []
    blocks: dict[int, dict] = {}
    partial_json: dict[int, list[str]] = {}
    input_tokens = 0
    output_tokens = 0
    saw_usage = False

    async for event in events:
        etype = event.get("type")

        if etype == "message_start":
            usage = (event.get("message") or {}).get("usage") or {}
            if usage:
                saw_usage = True
                input_tokens = usage.get("input_tokens") or 0
                output_tokens = usage.get("output_tokens") or output_tokens

        elif etype == "content_block_start":
            idx = event.get("index", len(blocks))
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                blocks[idx] = {
                    "type": "tool_use",
                    "id": block.get("id"),
                    "name": block.get("name", ""),
                    "input": block.get("input") or {},
                }
                partial_json[idx] = []
            elif block.get("text"):
                text_parts.append(block["text"])
                if on_chunk:
                    on_chunk(block["text"])

        elif etype == "content_block_delta":
            idx = event.get("index", 0)
            delta = event.get("delta") or {}
            if delta.get("type") == "input_json_delta" or "partial_json" in delta:
                partial_json.setdefault(idx, []).append(delta.get("partial_json", ""))
            elif delta.get("text"):
                text_parts.append(delta["text"])
                if on_chunk:
                    on_chunk(delta["text"])

        elif etype == "content_block_stop":
            idx = event.get("index", 0)
            _finish_tool_block(blocks, partial_json, idx)

        elif etype == "message_delta":
            usage = event.get("usage") or {}
            if usage:
                saw_usage = True
                output_tokens = usage.get("output_tokens") or output_tokens
                input_tokens = usage.get("input_tokens") or input_tokens

    # Streams cut short never send content_block_stop
    for idx in list(partial_json):
        _finish_tool_block(blocks, partial_json, idx)

    usage = (
        TokenUsage(input_tokens, output_tokens, input_tokens + output_tokens)
        if saw_usage
        else None
    )
    return "".join(text_parts), [blocks[i] for i in sorted(blocks)], usage


def _finish_tool_block(blocks: dict[int, dict], partial_json: dict[int, list[str]], idx: int) -> None:
    parts = partial_json.pop(idx, None)
    if idx not in blocks or not parts:
        return
    raw = "".join(parts)
    if not raw.strip():
        return
    try:
        blocks[idx]["input"] = json.loads(raw)
    except json.JSONDecodeError:
        # Left as a string so the normalizer drops the call
        blocks[idx]["input"] = raw


def parse_anthropic_body(data: dict) -> Assembled:
    content_blocks = data.get("content") or []
    text = "".join(
        b.get("text", "")
        for b in content_blocks
        if isinstance(b, dict) and b.get("type") == "text"
    )
    tool_blocks = [b for b in content_blocks if isinstance(b, dict) and b.get("type") == "tool_use"]
    return text, tool_blocks, usage_from_anthropic(data)
