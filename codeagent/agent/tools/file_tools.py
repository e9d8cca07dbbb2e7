import shutil
from pathlib import Path

from codeagent.agent.constants import (
    IGNORED_DIRS,
    MAX_FILE_READ_BYTES,
    MAX_FILE_WRITE_BYTES,
)
from codeagent.agent.tool_registry import ToolError, ToolRegistry


def validate_path(root: Path, relative_path: str) -> Path:
    """Resolve and validate that a path stays within the project directory."""
    if not relative_path:
        raise ToolError("Missing required parameter: path")
    base = root.resolve()
    full_path = (base / relative_path).resolve()
    if full_path != base and base not in full_path.parents:
        raise ToolError(f"Access denied: {relative_path} escapes the project directory")
    return full_path


async def read_file(root: Path, path: str) -> str:
    """Read a file from the project."""
    file_path = validate_path(root, path)
    if not file_path.exists():
        raise ToolError(f"File not found: {path}")
    if file_path.is_dir():
        raise ToolError(f"Path is a directory, not a file: {path}")
    size = file_path.stat().st_size
    if size > MAX_FILE_READ_BYTES:
        raise ToolError(f"File too large ({size} bytes). Max: {MAX_FILE_READ_BYTES // 1000}KB")
    try:
        return file_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        raise ToolError(f"Binary file cannot be read: {path}")


async def write_file(root: Path, path: str, content: str) -> str:
    """Write or create a file in the project."""
    file_path = validate_path(root, path)
    if len(content.encode("utf-8")) > MAX_FILE_WRITE_BYTES:
        raise ToolError("File content exceeds 1MB limit")

    existed = file_path.exists()
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(content, encoding="utf-8")
    return f"{'Updated' if existed else 'Created'} file: {path}"


async def edit_file(root: Path, path: str, old_text: str, new_text: str) -> str:
    """Replace the first occurrence of old_text with new_text."""
    file_path = validate_path(root, path)
    if not file_path.exists():
        raise ToolError(f"File not found: {path}")

    content = file_path.read_text(encoding="utf-8")
    if old_text not in content:
        raise ToolError("Text not found in file. Make sure old_text matches exactly.")

    file_path.write_text(content.replace(old_text, new_text, 1), encoding="utf-8")
    return f"Edited file: {path}"


async def delete_file(root: Path, path: str) -> str:
    target = validate_path(root, path)
    if target == root.resolve():
        raise ToolError("Refusing to delete the project root")
    if not target.exists():
        raise ToolError(f"Path not found: {path}")
    if target.is_dir():
        shutil.rmtree(target)
        return f"Deleted directory: {path}"
    target.unlink()
    return f"Deleted file: {path}"


async def list_files(root: Path, path: str = ".", recursive: bool = False) -> str:
    """List the contents of a directory, directories first."""
    target = validate_path(root, path or ".")
    if not target.exists():
        raise ToolError(f"Directory not found: {path}")
    if not target.is_dir():
        raise ToolError(f"Path is not a directory: {path}")

    base = root.resolve()
    lines: list[str] = []
    _walk(target, base, lines, recursive=recursive in (True, "true", "True"))
    return "\n".join(lines) if lines else "(empty directory)"


def _walk(current: Path, base: Path, lines: list[str], recursive: bool) -> None:
    try:
        entries = sorted(current.iterdir(), key=lambda e: (not e.is_dir(), e.name))
    except PermissionError:
        return

    for entry in entries:
        if entry.name in IGNORED_DIRS:
            continue
        rel = entry.relative_to(base).as_posix()
        if entry.is_dir():
            lines.append(f"{rel}/")
            if recursive:
                _walk(entry, base, lines, recursive)
        else:
            lines.append(rel)


async def create_directory(root: Path, path: str) -> str:
    target = validate_path(root, path)
    if target.exists():
        if target.is_dir():
            return f"Directory already exists: {path}"
        raise ToolError(f"Path exists but is a file: {path}")
    target.mkdir(parents=True, exist_ok=True)
    return f"Created directory: {path}"


def register_file_tools(registry: ToolRegistry) -> None:
    """Register all file tools with the registry."""
    registry.register(
        name="read_file",
        description="Read the contents of a file. Use this to examine existing code.",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file relative to project root",
                },
            },
            "required": ["path"],
        },
        handler=read_file,
    )

    registry.register(
        name="write_file",
        description="Create a new file or completely overwrite an existing file with new content.",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file relative to project root",
                },
                "content": {
                    "type": "string",
                    "description": "The complete content to write to the file",
                },
            },
            "required": ["path", "content"],
        },
        handler=write_file,
    )

    registry.register(
        name="edit_file",
        description="Edit an existing file by replacing specific text. Use for targeted changes.",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file relative to project root",
                },
                "old_text": {
                    "type": "string",
                    "description": "The exact text to find and replace",
                },
                "new_text": {
                    "type": "string",
                    "description": "The new text to replace with",
                },
            },
            "required": ["path", "old_text", "new_text"],
        },
        handler=edit_file,
    )

    registry.register(
        name="delete_file",
        description="Delete a file or directory from the project. For directories, deletes recursively.",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file or directory relative to project root",
                },
            },
            "required": ["path"],
        },
        handler=delete_file,
    )

    registry.register(
        name="list_files",
        description="List files and directories in a path. Use to explore project structure.",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": 'Path to directory relative to project root (use "." for root)',
                },
                "recursive": {
                    "type": "boolean",
                    "description": "Whether to list recursively (default: false)",
                },
            },
            "required": ["path"],
        },
        handler=list_files,
    )

    registry.register(
        name="create_directory",
        description="Create a new directory (folder). Creates parent directories if needed.",
        parameters={
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the directory to create, relative to project root",
                },
            },
            "required": ["path"],
        },
        handler=create_directory,
    )
