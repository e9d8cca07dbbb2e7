from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Coroutine

from codeagent.agent.state import ToolCall, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Coroutine[Any, Any, str]]


class ToolError(Exception):
    """Raised by a tool handler to report a failure back to the model."""


@dataclass
class ToolDefinition:
    name: str
    description: str
    parameters: dict
    handler: ToolHandler


class ToolRegistry:
    """Registry for agent tools. Each tool is a function the LLM can call.

    The registry is also the default tool executor: ``execute`` never raises,
    every failure comes back as ``ToolResult(success=False)``.
    """

    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}

    def register(
        self,
        name: str,
        description: str,
        parameters: dict,
        handler: ToolHandler,
    ) -> None:
        self._tools[name] = ToolDefinition(
            name=name,
            description=description,
            parameters=parameters,
            handler=handler,
        )

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    # ------------------------------------------------------------------
    # Schemas
    # ------------------------------------------------------------------

    def get_openai_schema(self) -> list[dict]:
        """Return tools in OpenAI function-calling format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in self._tools.values()
        ]

    def get_anthropic_schema(self) -> list[dict]:
        """Return tools in Anthropic tool-use format."""
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.parameters,
            }
            for t in self._tools.values()
        ]

    def format_tool_definitions(self) -> str:
        """Render the tools as prompt documentation for the text protocol."""
        lines = [
            "## Available Tools",
            "",
            "To use a tool, reply with one block per call in exactly this format:",
            '<tool_call>{"tool": "tool_name", "parameters": {"param": "value"}}</tool_call>',
            "",
            "You may emit several <tool_call> blocks in one response. "
            "When the task is complete, reply with a summary and no tool calls.",
            "",
        ]
        for t in self._tools.values():
            lines.append(f"### {t.name}")
            lines.append(t.description)
            lines.append("Parameters:")
            required = set(t.parameters.get("required", []))
            for param, info in t.parameters.get("properties", {}).items():
                flag = "(required)" if param in required else "(optional)"
                lines.append(
                    f"  - {param}: {info.get('type', 'string')} {flag} - "
                    f"{info.get('description', '')}"
                )
            lines.append("")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute(self, call: ToolCall, project_root: str | Path) -> ToolResult:
        """Execute a tool call against the project root."""
        tool = self._tools.get(call.tool)
        params = dict(call.parameters)
        if not tool:
            return ToolResult(
                success=False,
                output="",
                tool=call.tool,
                parameters=params,
                error=f"Unknown tool '{call.tool}'",
            )
        known = tool.parameters.get("properties", {})
        kwargs = {k: v for k, v in params.items() if k in known}
        try:
            output = await tool.handler(Path(project_root), **kwargs)
            return ToolResult(success=True, output=str(output), tool=call.tool, parameters=params)
        except ToolError as e:
            return ToolResult(
                success=False, output="", tool=call.tool, parameters=params, error=str(e)
            )
        except TypeError as e:
            # Missing or unexpected parameters from the model
            return ToolResult(
                success=False,
                output="",
                tool=call.tool,
                parameters=params,
                error=f"Invalid parameters for {call.tool}: {e}",
            )
        except Exception as e:
            logger.exception("Tool %s raised", call.tool)
            return ToolResult(
                success=False,
                output="",
                tool=call.tool,
                parameters=params,
                error=f"Error executing {call.tool}: {type(e).__name__}: {e}",
            )
