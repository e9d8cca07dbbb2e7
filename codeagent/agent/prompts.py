from __future__ import annotations

import logging
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

from codeagent.agent.constants import CHAT_HISTORY_MAX_CHARS
from codeagent.agent.state import ProjectContext

logger = logging.getLogger(__name__)

_env = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    keep_trailing_newline=False,
    trim_blocks=True,
)

RULES_FILES = (Path(".codeep") / "rules.md", Path("CODEEP.md"))

_AGENT_ECHO_PREFIXES = ("[AGENT]", "[DRY RUN]")
_AGENT_RESULT_PREFIXES = ("Agent completed", "Agent failed", "Agent stopped", "Agent was stopped")

# ── Conversation templates ──────────────────────────────────────

CONTINUE_NUDGE = "Continue. Execute the tool calls now."
TIMEOUT_CONTINUE = (
    "The previous request timed out. Please continue with the task, "
    "using simpler responses if needed."
)
FAILURE_CONTINUE = "The previous request failed. Please continue with the task."
TOOL_RESULTS_FOOTER = (
    "Continue with the task. If this subtask is complete, "
    "provide a summary without tool calls."
)


def render_system_prompt(project: ProjectContext, extra_context: str = "") -> str:
    """Agent prompt; in text mode the adapter appends the tool documentation."""
    template = _env.get_template("system_prompt.j2")
    return template.render(project=project, extra_context=extra_context).strip()


def load_project_rules(project_root: str | Path) -> str:
    """Rules the project owner keeps in .codeep/rules.md or CODEEP.md."""
    for candidate in RULES_FILES:
        path = Path(project_root) / candidate
        if not path.is_file():
            continue
        try:
            content = path.read_text(encoding="utf-8").strip()
        except OSError as e:
            logger.debug("Failed to read project rules from %s: %s", path, e)
            continue
        if content:
            return (
                "\n\n## Project Rules\n"
                "The following rules are defined by the project owner. "
                f"You MUST follow these rules:\n\n{content}"
            )
    return ""


def format_chat_history_for_agent(
    history: list[dict] | None, max_chars: int = CHAT_HISTORY_MAX_CHARS
) -> str:
    """Most recent chat turns that fit the budget, oldest first."""
    if not history:
        return ""

    filtered = []
    for m in history:
        content = (m.get("content") or "").lstrip()
        if not content or content.startswith(_AGENT_ECHO_PREFIXES + _AGENT_RESULT_PREFIXES):
            continue
        filtered.append(m)

    selected: list[str] = []
    total = 0
    for m in reversed(filtered):
        speaker = "User" if m.get("role") == "user" else "Assistant"
        entry = f"**{speaker}:** {m['content']}"
        if total + len(entry) > max_chars:
            break
        selected.insert(0, entry)
        total += len(entry)

    if not selected:
        return ""
    return (
        "\n\n## Prior Conversation Context\n"
        "The following is the recent chat history from this session. Use it as "
        "background context to understand the user's intent, but focus on "
        "completing the current task.\n\n" + "\n\n".join(selected)
    )
