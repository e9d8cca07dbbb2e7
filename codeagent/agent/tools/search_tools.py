import os
import re
from pathlib import Path

from codeagent.agent.constants import IGNORED_DIRS, SEARCH_MAX_RESULTS
from codeagent.agent.tool_registry import ToolRegistry
from codeagent.agent.tools.file_tools import validate_path

SEARCHABLE_SUFFIXES = {
    ".ts", ".tsx", ".js", ".jsx", ".json", ".md", ".css", ".html",
    ".py", ".go", ".rs", ".php", ".java", ".rb", ".toml", ".yaml", ".yml",
}


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error:
        return re.compile(re.escape(pattern))


async def search_code(root: Path, pattern: str, path: str = ".") -> str:
    """Search for a text or regex pattern across project files."""
    target = validate_path(root, path or ".")
    base = root.resolve()
    regex = _compile(pattern)

    results: list[str] = []
    files = [target] if target.is_file() else None
    if files is None:
        files = []
        for current, dirs, names in os.walk(target):
            dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
            files.extend(
                Path(current) / n for n in sorted(names)
                if Path(n).suffix in SEARCHABLE_SUFFIXES
            )

    for file_path in files:
        try:
            content = file_path.read_text(encoding="utf-8")
        except (UnicodeDecodeError, PermissionError):
            continue
        rel_path = file_path.relative_to(base).as_posix()
        for line_num, line in enumerate(content.splitlines(), 1):
            if regex.search(line):
                results.append(f"{rel_path}:{line_num}: {line.strip()}")
                if len(results) >= SEARCH_MAX_RESULTS:
                    results.append(f"... (stopped at {SEARCH_MAX_RESULTS} results)")
                    return "\n".join(results)

    return "\n".join(results) if results else "No matches found"


def register_search_tools(registry: ToolRegistry) -> None:
    registry.register(
        name="search_code",
        description="Search for a text pattern in the codebase. Returns matching files and lines.",
        parameters={
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": "Text or regex pattern to search for",
                },
                "path": {
                    "type": "string",
                    "description": "Path to search in (default: entire project)",
                },
            },
            "required": ["pattern"],
        },
        handler=search_code,
    )
