import asyncio
import logging
import shlex
from pathlib import Path

from codeagent.agent.constants import COMMAND_OUTPUT_MAX_CHARS, SHELL_COMMAND_TIMEOUT_SECONDS
from codeagent.agent.tool_registry import ToolError, ToolRegistry

logger = logging.getLogger(__name__)

# Destructive or privilege-changing commands that are never run
BLOCKED_COMMANDS = {"sudo", "su", "shutdown", "reboot", "mkfs", "dd", "chown"}


def _truncate(text: str) -> str:
    if len(text) > COMMAND_OUTPUT_MAX_CHARS:
        return text[:COMMAND_OUTPUT_MAX_CHARS] + f"\n... (truncated, {len(text)} chars total)"
    return text


async def execute_command(root: Path, command: str, args: list | None = None) -> str:
    """Run a program inside the project directory without a shell."""
    if not command:
        raise ToolError("Missing required parameter: command")

    argv = shlex.split(command) if not args and " " in command.strip() else [command]
    argv += [str(a) for a in (args or [])]
    if Path(argv[0]).name in BLOCKED_COMMANDS:
        raise ToolError(f"Command not allowed: {argv[0]}")

    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise ToolError(f"Command not found: {argv[0]}")

    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(), timeout=SHELL_COMMAND_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ToolError(f"Command timed out after {SHELL_COMMAND_TIMEOUT_SECONDS} seconds")

    out = stdout.decode(errors="replace")
    err = stderr.decode(errors="replace")
    if proc.returncode != 0:
        logger.debug("Command %s exited with %d", argv[0], proc.returncode)
        raise ToolError(
            _truncate(f"[exit code: {proc.returncode}]\n{err.strip() or out.strip()}")
        )
    return _truncate(out.strip()) or "(no output)"


def register_command_tools(registry: ToolRegistry) -> None:
    """Register command tools with the registry."""
    registry.register(
        name="execute_command",
        description="Execute a shell command. Use for npm, git, build tools, tests, etc.",
        parameters={
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The command to run (e.g., npm, git, node)",
                },
                "args": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": 'Command arguments as array (e.g., ["install", "lodash"])',
                },
            },
            "required": ["command"],
        },
        handler=execute_command,
    )
