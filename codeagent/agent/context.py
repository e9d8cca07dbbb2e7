"""Project context for the system prompt."""

from __future__ import annotations

import json
import re
from pathlib import Path

from codeagent.agent.constants import IGNORED_DIRS, STRUCTURE_MAX_DEPTH, STRUCTURE_MAX_ENTRIES
from codeagent.agent.state import ProjectContext

# (marker file, project type), first match wins
PROJECT_MARKERS = (
    ("tsconfig.json", "TypeScript"),
    ("package.json", "JavaScript/Node.js"),
    ("pyproject.toml", "Python"),
    ("setup.py", "Python"),
    ("requirements.txt", "Python"),
    ("go.mod", "Go"),
    ("Cargo.toml", "Rust"),
    ("composer.json", "PHP"),
    ("pom.xml", "Java"),
)

_FILE_MENTION_RE = re.compile(r"[\w./-]+\.\w{1,6}")
EXCERPT_MAX_CHARS = 4000


def detect_project_type(root: Path) -> str:
    for marker, kind in PROJECT_MARKERS:
        if (root / marker).exists():
            return kind
    return "unknown"


def _project_name(root: Path) -> str:
    package_json = root / "package.json"
    if package_json.is_file():
        try:
            name = json.loads(package_json.read_text(encoding="utf-8")).get("name")
        except (ValueError, OSError):
            name = None
        if name:
            return name
    return root.name


def build_structure(root: Path, max_depth: int = STRUCTURE_MAX_DEPTH) -> str:
    lines: list[str] = []
    _build_tree(root, lines, prefix="", max_depth=max_depth, current_depth=0)
    if len(lines) > STRUCTURE_MAX_ENTRIES:
        lines = lines[:STRUCTURE_MAX_ENTRIES] + ["... (truncated)"]
    return "\n".join(lines)


def _build_tree(
    current: Path,
    lines: list[str],
    prefix: str,
    max_depth: int,
    current_depth: int,
) -> None:
    if current_depth >= max_depth or len(lines) > STRUCTURE_MAX_ENTRIES:
        return
    try:
        entries = sorted(current.iterdir(), key=lambda e: (not e.is_dir(), e.name))
    except OSError:
        return

    entries = [e for e in entries if e.name not in IGNORED_DIRS]
    for i, entry in enumerate(entries):
        is_last = i == len(entries) - 1
        connector = "└── " if is_last else "├── "
        if entry.is_dir():
            lines.append(f"{prefix}{connector}{entry.name}/")
            extension = "    " if is_last else "│   "
            _build_tree(entry, lines, prefix + extension, max_depth, current_depth + 1)
        else:
            lines.append(f"{prefix}{connector}{entry.name}")


def gather_project_context(project_root: str | Path) -> ProjectContext:
    root = Path(project_root).resolve()
    return ProjectContext(
        root=str(root),
        name=_project_name(root),
        type=detect_project_type(root),
        structure=build_structure(root),
    )


class ContextGatherer:
    """Adds excerpts of files the task mentions by name.

    The result is an opaque text block appended to the system prompt.
    """

    def __init__(self, max_files: int = 3) -> None:
        self.max_files = max_files

    async def gather(self, prompt: str, project: ProjectContext) -> str:
        root = Path(project.root).resolve()
        sections: list[str] = []
        for mention in dict.fromkeys(_FILE_MENTION_RE.findall(prompt)):
            path = (root / mention).resolve()
            if root not in path.parents or not path.is_file():
                continue
            try:
                text = path.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            if len(text) > EXCERPT_MAX_CHARS:
                text = text[:EXCERPT_MAX_CHARS] + "\n... (truncated)"
            sections.append(f"### {mention}\n```\n{text}\n```")
            if len(sections) >= self.max_files:
                break
        return "\n\n".join(sections)
