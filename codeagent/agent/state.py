from __future__ import annotations

import enum
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from codeagent.agent.cancellation import CancellationToken
    from codeagent.agent.events import AgentObserver


# ── Enums ───────────────────────────────────────────────────────


class ProtocolKind(str, enum.Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


class CallingMode(str, enum.Enum):
    NATIVE = "native"
    TEXT = "text"


class ActionType(str, enum.Enum):
    WRITE = "write"
    EDIT = "edit"
    READ = "read"
    DELETE = "delete"
    COMMAND = "command"
    SEARCH = "search"
    LIST = "list"
    MKDIR = "mkdir"
    FETCH = "fetch"


MUTATING_ACTIONS = {ActionType.WRITE, ActionType.EDIT, ActionType.DELETE}


# ── Conversation ────────────────────────────────────────────────


@dataclass
class Message:
    role: str  # user | assistant | system
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ToolCall:
    tool: str
    parameters: dict[str, Any] = field(default_factory=dict)
    id: str | None = None

    def to_dict(self) -> dict:
        data: dict = {"tool": self.tool, "parameters": dict(self.parameters)}
        if self.id:
            data["id"] = self.id
        return data


@dataclass
class ToolResult:
    success: bool
    output: str
    tool: str
    parameters: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


@dataclass
class ActionLog:
    type: ActionType
    target: str
    result: str  # success | error
    details: str | None = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "target": self.target,
            "result": self.result,
            "details": self.details,
            "timestamp": self.timestamp,
        }


# ── Adapter output ──────────────────────────────────────────────


@dataclass
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class ChatResponse:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    used_native_tools: bool = True
    usage: TokenUsage | None = None


# ── Verification ────────────────────────────────────────────────


@dataclass
class ParsedError:
    message: str
    severity: str = "error"  # error | warning
    file: str | None = None
    line: int | None = None
    column: int | None = None
    code: str | None = None


@dataclass
class VerifyResult:
    success: bool
    type: str  # build | test | typecheck | lint
    command: str
    output: str = ""
    errors: list[ParsedError] = field(default_factory=list)
    duration: float = 0.0


@dataclass
class VerifyOptions:
    build: bool = True
    test: bool = True
    typecheck: bool = True


# ── Project ─────────────────────────────────────────────────────


@dataclass
class ProjectContext:
    root: str
    name: str = ""
    type: str = "unknown"
    structure: str = ""


# ── Run configuration and result ────────────────────────────────


@dataclass
class AgentOptions:
    max_iterations: int = 100
    max_duration: float = 20 * 60  # seconds
    dry_run: bool = False
    auto_verify: bool = True
    max_fix_attempts: int = 3
    chat_history: list[dict] = field(default_factory=list)
    observer: AgentObserver | None = None
    cancel_token: CancellationToken | None = None
    stream: bool = False


@dataclass
class AgentResult:
    success: bool
    iterations: int
    actions: list[ActionLog] = field(default_factory=list)
    final_response: str = ""
    error: str | None = None
    aborted: bool = False

    def to_dict(self) -> dict:
        data = asdict(self)
        data["actions"] = [a.to_dict() for a in self.actions]
        return data
