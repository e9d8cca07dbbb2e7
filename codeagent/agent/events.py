"""AgentEvent and the observer interface the orchestrator reports through.

The orchestrator never touches a UI. It calls an injected ``AgentObserver``;
``EventQueueObserver`` turns those calls into ``AgentEvent``s for the
WebSocket layer.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from codeagent.agent.state import ActionLog, ToolCall, ToolResult, VerifyResult


@dataclass
class AgentEvent:
    """Events streamed to the WebSocket layer.

    Known types:
        iteration -> a new round started: data={"iteration": int, "max": int}
        agent_message_delta -> streaming text token: data={"token": str}
        thinking -> reasoning text: data={"text": str}
        tool_call_start -> about to execute: data={"tool": str, "parameters": dict}
        tool_call_result -> execution done: data={"tool", "success", "output", "action"}
        verification -> verifier ran: data={"results": list[dict]}
        agent_result -> final result: data=AgentResult.to_dict()
        error -> non-fatal error: data={"message": str}
    """

    type: str
    data: dict = field(default_factory=dict)


class AgentObserver:
    """No-op base; override what you need."""

    def on_iteration(self, iteration: int, max_iterations: int) -> None:
        pass

    def on_chunk(self, text: str) -> None:
        pass

    def on_thinking(self, text: str) -> None:
        pass

    def on_tool_call(self, call: ToolCall) -> None:
        pass

    def on_tool_result(self, result: ToolResult, action: ActionLog) -> None:
        pass

    def on_verification(self, results: list[VerifyResult]) -> None:
        pass


class EventQueueObserver(AgentObserver):
    def __init__(self, queue: asyncio.Queue[AgentEvent] | None = None) -> None:
        self.queue: asyncio.Queue[AgentEvent] = queue or asyncio.Queue()

    def _put(self, event_type: str, data: dict) -> None:
        self.queue.put_nowait(AgentEvent(type=event_type, data=data))

    def on_iteration(self, iteration: int, max_iterations: int) -> None:
        self._put("iteration", {"iteration": iteration, "max": max_iterations})

    def on_chunk(self, text: str) -> None:
        self._put("agent_message_delta", {"token": text})

    def on_thinking(self, text: str) -> None:
        self._put("thinking", {"text": text})

    def on_tool_call(self, call: ToolCall) -> None:
        self._put("tool_call_start", {"tool": call.tool, "parameters": dict(call.parameters)})

    def on_tool_result(self, result: ToolResult, action: ActionLog) -> None:
        self._put(
            "tool_call_result",
            {
                "tool": result.tool,
                "success": result.success,
                "output": (result.output if result.success else result.error or "")[:2000],
                "action": action.to_dict(),
            },
        )

    def on_verification(self, results: list[VerifyResult]) -> None:
        self._put(
            "verification",
            {
                "results": [
                    {
                        "type": r.type,
                        "success": r.success,
                        "command": r.command,
                        "errors": len(r.errors),
                    }
                    for r in results
                ]
            },
        )
