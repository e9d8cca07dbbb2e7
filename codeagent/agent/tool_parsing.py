"""Tool-call normalization.

Turns each backend's native tool-call representation, or tagged JSON
embedded in plain text, into canonical ``ToolCall`` objects. Nothing here
raises on bad model output: unparsable calls are logged and dropped.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from codeagent.agent.state import ProtocolKind, ToolCall

logger = logging.getLogger(__name__)

_TOOL_NAME_ALIASES = {
    "executecommand": "execute_command",
    "readfile": "read_file",
    "writefile": "write_file",
    "editfile": "edit_file",
    "deletefile": "delete_file",
    "listfiles": "list_files",
    "searchcode": "search_code",
    "createdirectory": "create_directory",
    "findfiles": "find_files",
    "fetchurl": "fetch_url",
}

_TAG_RE = re.compile(r"<tool_?call>\s*(.*?)\s*</tool_?call>", re.IGNORECASE | re.DOTALL)
_FENCE_RE = re.compile(r"```(?:tool|json)?[ \t]*\n(.*?)\n?```", re.DOTALL)
_ARG_KV_RE = re.compile(
    r"Tool\s+(\w+)((?:\s*<arg_key>.*?</arg_key>\s*<arg_value>.*?</arg_value>)+)",
    re.IGNORECASE | re.DOTALL,
)
_ARG_PAIR_RE = re.compile(
    r"<arg_key>(.*?)</arg_key>\s*<arg_value>(.*?)</arg_value>", re.IGNORECASE | re.DOTALL
)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_THINK_RE = re.compile(r"<think>(.*?)</think>", re.IGNORECASE | re.DOTALL)
_ARG_ARTIFACT_RE = re.compile(r"<arg_key>.*?</arg_value>", re.IGNORECASE | re.DOTALL)
_TOOL_FENCE_RE = re.compile(r"```(?:json|tool_call|tool)?\s*\{.*?\}\s*```", re.DOTALL)


def normalize_tool_name(name: str) -> str:
    """Lowercase, dashes to underscores, camel-case aliases to snake_case."""
    lowered = (name or "").strip().lower().replace("-", "_")
    return _TOOL_NAME_ALIASES.get(lowered, lowered)


def _missing_required(tool: str, params: dict) -> bool:
    if tool in ("write_file", "read_file") and not params.get("path"):
        return True
    if tool == "edit_file" and (
        not params.get("path") or "old_text" not in params or "new_text" not in params
    ):
        return True
    return False


def _load_arguments(raw: Any) -> dict | None:
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if not isinstance(raw, str):
        return None
    try:
        parsed = json.loads(raw, strict=False)
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


# ── Native formats ──────────────────────────────────────────────


def from_openai(raw_tool_calls: list | None) -> list[ToolCall]:
    """Parse ``message.tool_calls`` entries from an OpenAI-style response."""
    calls: list[ToolCall] = []
    for tc in raw_tool_calls or []:
        if not isinstance(tc, dict):
            continue
        function = tc.get("function") or {}
        tool = normalize_tool_name(function.get("name", ""))
        if not tool:
            continue
        params = _load_arguments(function.get("arguments"))
        if params is None:
            logger.debug(
                "Dropping %s: unparsable arguments %r",
                tool,
                str(function.get("arguments"))[:200],
            )
            continue
        if _missing_required(tool, params):
            logger.debug("Dropping %s: missing required parameters", tool)
            continue
        calls.append(ToolCall(tool=tool, parameters=params, id=tc.get("id")))
    return calls


def from_anthropic(content_blocks: list | None) -> list[ToolCall]:
    """Parse ``tool_use`` content blocks from an Anthropic-style response."""
    calls: list[ToolCall] = []
    for block in content_blocks or []:
        if not isinstance(block, dict) or block.get("type") != "tool_use":
            continue
        tool = normalize_tool_name(block.get("name", ""))
        if not tool:
            continue
        params = _load_arguments(block.get("input"))
        if params is None:
            logger.debug("Dropping %s: unparsable input", tool)
            continue
        calls.append(ToolCall(tool=tool, parameters=params, id=block.get("id")))
    return calls


def from_native(protocol: ProtocolKind | str, payload: list | None) -> list[ToolCall]:
    if ProtocolKind(protocol) is ProtocolKind.OPENAI:
        return from_openai(payload)
    return from_anthropic(payload)


# ── Text protocol ───────────────────────────────────────────────


def _parse_tagged_json(body: str) -> ToolCall | None:
    body = body.strip()
    parsed = None
    for candidate in (body, _TRAILING_COMMA_RE.sub(r"\1", body)):
        try:
            parsed = json.loads(candidate, strict=False)
            break
        except json.JSONDecodeError:
            continue
    if not isinstance(parsed, dict):
        return None
    tool = parsed.get("tool")
    if not isinstance(tool, str) or not tool:
        return None
    params = parsed.get("parameters") or {}
    if not isinstance(params, dict):
        return None
    return ToolCall(tool=normalize_tool_name(tool), parameters=params, id=parsed.get("id"))


def _signature(call: ToolCall) -> str:
    return call.tool + json.dumps(call.parameters, sort_keys=True, default=str)


def from_text(content: str | None) -> list[ToolCall]:
    """Extract tool calls embedded as tagged JSON anywhere in free text.

    Recognised forms, in order:
      <tool_call>{"tool": ..., "parameters": {...}}</tool_call>  (also <toolcall>)
      fenced ```tool / ```json blocks carrying the same object
      Tool name<arg_key>k</arg_key><arg_value>v</arg_value> pairs
    Malformed blocks are skipped. Every tagged block counts, even a repeat;
    fenced and arg_key forms are dropped when they repeat a call already found.
    """
    if not content:
        return []

    calls: list[ToolCall] = []
    seen: set[str] = set()

    def add(call: ToolCall | None, *, unique: bool = True) -> None:
        if call is None:
            return
        sig = _signature(call)
        if unique and sig in seen:
            return
        seen.add(sig)
        calls.append(call)

    for match in _TAG_RE.finditer(content):
        call = _parse_tagged_json(match.group(1))
        if call is None:
            logger.debug("Skipping malformed tool_call block: %r", match.group(1)[:200])
        add(call, unique=False)

    remainder = _TAG_RE.sub("", content)
    for match in _FENCE_RE.finditer(remainder):
        block = match.group(1)
        if '"tool"' in block:
            add(_parse_tagged_json(block))

    if not calls:
        for match in _ARG_KV_RE.finditer(content):
            params = {
                k.strip(): v.strip() for k, v in _ARG_PAIR_RE.findall(match.group(2))
            }
            if params:
                add(ToolCall(tool=normalize_tool_name(match.group(1)), parameters=params))

    return calls


# ── Response cleanup ────────────────────────────────────────────


def extract_thinking(content: str) -> str:
    return "\n".join(m.strip() for m in _THINK_RE.findall(content or "")).strip()


def strip_tool_markup(content: str) -> str:
    """Remove reasoning and tool-call artifacts from a final answer."""
    text = _THINK_RE.sub("", content or "")
    text = _TAG_RE.sub("", text)
    text = _ARG_ARTIFACT_RE.sub("", text)
    text = _TOOL_FENCE_RE.sub(
        lambda m: "" if '"tool"' in m.group(0) else m.group(0), text
    )
    return text.strip()
