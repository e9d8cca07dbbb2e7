"""Default tool executor and the mapping from tool calls to action logs."""

from __future__ import annotations

from codeagent.agent.constants import ACTION_DETAILS_MAX_CHARS
from codeagent.agent.state import ActionLog, ActionType, ToolCall, ToolResult
from codeagent.agent.tool_registry import ToolRegistry
from codeagent.agent.tools.command_tools import register_command_tools
from codeagent.agent.tools.file_tools import register_file_tools
from codeagent.agent.tools.search_tools import register_search_tools
from codeagent.agent.tools.web_tools import register_web_tools

ACTION_TYPES: dict[str, ActionType] = {
    "read_file": ActionType.READ,
    "write_file": ActionType.WRITE,
    "edit_file": ActionType.EDIT,
    "delete_file": ActionType.DELETE,
    "execute_command": ActionType.COMMAND,
    "search_code": ActionType.SEARCH,
    "list_files": ActionType.LIST,
    "create_directory": ActionType.MKDIR,
    "fetch_url": ActionType.FETCH,
}


def create_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    register_file_tools(registry)
    register_command_tools(registry)
    register_search_tools(registry)
    register_web_tools(registry)
    return registry


def action_target(call: ToolCall) -> str:
    params = call.parameters
    for key in ("path", "command", "pattern", "url"):
        value = params.get(key)
        if value:
            return str(value)
    return "unknown"


def create_action_log(call: ToolCall, result: ToolResult) -> ActionLog:
    """Derive the action log entry for one executed tool call."""
    if result.success:
        details = result.output[:ACTION_DETAILS_MAX_CHARS]
    else:
        details = result.error
    return ActionLog(
        type=ACTION_TYPES.get(call.tool, ActionType.COMMAND),
        target=action_target(call),
        result="success" if result.success else "error",
        details=details,
    )


__all__ = [
    "ACTION_TYPES",
    "ToolRegistry",
    "action_target",
    "create_action_log",
    "create_default_registry",
]
