"""Tests for the default tool executor and action logs."""

from __future__ import annotations

import asyncio
import sys

import httpx

from codeagent.agent.state import ActionType, ToolCall, ToolResult
from codeagent.agent.tools import action_target, create_action_log, create_default_registry
from codeagent.agent.tools.web_tools import fetch_url, html_to_text


def execute(tmp_path, tool: str, **params) -> ToolResult:
    registry = create_default_registry()
    return asyncio.run(registry.execute(ToolCall(tool=tool, parameters=params), tmp_path))


# ── Registry ────────────────────────────────────────────────────


def test_registry_has_the_nine_tools():
    registry = create_default_registry()
    assert set(registry.list_tools()) == {
        "read_file", "write_file", "edit_file", "delete_file", "list_files",
        "create_directory", "execute_command", "search_code", "fetch_url",
    }


def test_schemas_for_both_formats():
    registry = create_default_registry()
    openai = {t["function"]["name"]: t for t in registry.get_openai_schema()}
    anthropic = {t["name"]: t for t in registry.get_anthropic_schema()}
    assert openai["write_file"]["function"]["parameters"]["required"] == ["path", "content"]
    assert anthropic["write_file"]["input_schema"]["required"] == ["path", "content"]


def test_text_protocol_documentation():
    docs = create_default_registry().format_tool_definitions()
    assert docs.startswith("## Available Tools")
    assert "<tool_call>" in docs
    assert "### edit_file" in docs
    assert "  - old_text: string (required)" in docs
    assert "  - recursive: boolean (optional)" in docs


def test_unknown_tool_is_a_failed_result(tmp_path):
    result = execute(tmp_path, "format_disk")
    assert not result.success
    assert "Unknown tool" in result.error


def test_missing_parameter_is_a_failed_result(tmp_path):
    result = execute(tmp_path, "write_file", path="a.txt")
    assert not result.success
    assert "Invalid parameters" in result.error


# ── File tools ──────────────────────────────────────────────────


def test_write_read_edit_delete(tmp_path):
    assert execute(tmp_path, "write_file", path="src/a.txt", content="hello world").output == (
        "Created file: src/a.txt"
    )
    assert execute(tmp_path, "write_file", path="src/a.txt", content="hello world").output == (
        "Updated file: src/a.txt"
    )
    assert execute(tmp_path, "read_file", path="src/a.txt").output == "hello world"

    edited = execute(tmp_path, "edit_file", path="src/a.txt", old_text="world", new_text="there")
    assert edited.success
    assert (tmp_path / "src" / "a.txt").read_text() == "hello there"

    missing = execute(tmp_path, "edit_file", path="src/a.txt", old_text="nope", new_text="x")
    assert not missing.success

    assert execute(tmp_path, "delete_file", path="src").output == "Deleted directory: src"
    assert not (tmp_path / "src").exists()


def test_paths_are_confined_to_the_project(tmp_path):
    result = execute(tmp_path, "read_file", path="../outside.txt")
    assert not result.success
    assert "Access denied" in result.error
    assert not execute(tmp_path, "delete_file", path=".").success


def test_list_files_and_create_directory(tmp_path):
    (tmp_path / "b.txt").write_text("b")
    (tmp_path / "node_modules").mkdir()
    assert execute(tmp_path, "create_directory", path="pkg/sub").success
    (tmp_path / "pkg" / "sub" / "c.py").write_text("")

    flat = execute(tmp_path, "list_files", path=".").output.splitlines()
    assert flat == ["pkg/", "b.txt"]

    deep = execute(tmp_path, "list_files", path=".", recursive=True).output.splitlines()
    assert "pkg/sub/c.py" in deep


def test_search_code(tmp_path):
    (tmp_path / "app.py").write_text("def handler():\n    return 1\n")
    (tmp_path / "notes.bin").write_text("def handler")
    result = execute(tmp_path, "search_code", pattern="def handler")
    assert result.output == "app.py:1: def handler():"
    assert execute(tmp_path, "search_code", pattern="nothing_here").output == "No matches found"
    assert execute(tmp_path, "search_code", pattern="handler(").success


# ── Commands ────────────────────────────────────────────────────


def test_execute_command(tmp_path):
    result = execute(
        tmp_path, "execute_command", command=sys.executable, args=["-c", "print('hi')"]
    )
    assert result.success
    assert result.output == "hi"


def test_failing_command_reports_exit_code(tmp_path):
    result = execute(
        tmp_path, "execute_command", command=sys.executable,
        args=["-c", "import sys; sys.exit(3)"],
    )
    assert not result.success
    assert result.error.startswith("[exit code: 3]")


def test_blocked_command(tmp_path):
    result = execute(tmp_path, "execute_command", command="sudo rm -rf /")
    assert not result.success
    assert "not allowed" in result.error


# ── Web ─────────────────────────────────────────────────────────


def test_fetch_url_strips_html(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            text="<html><script>x()</script><body><h1>Docs</h1><p>a &amp; b</p></body></html>",
            headers={"content-type": "text/html"},
        )

    text = asyncio.run(fetch_url(tmp_path, "https://docs.example.com", httpx.MockTransport(handler)))
    assert "Docs" in text
    assert "a & b" in text
    assert "x()" not in text


def test_fetch_url_rejects_non_http(tmp_path):
    result = execute(tmp_path, "fetch_url", url="file:///etc/passwd")
    assert not result.success


def test_html_to_text_collapses_blank_lines():
    assert html_to_text("<p>a</p>\n\n\n<p>b</p>") == "a\n\nb"


def test_html_to_text_decodes_named_and_numeric_entities():
    assert html_to_text("<p>it&#39;s &mdash; &lt;ok&gt; &amp;&nbsp;done</p>") == "it's \u2014 <ok> &\xa0done"


# ── Action logs ─────────────────────────────────────────────────


def test_create_action_log():
    call = ToolCall(tool="execute_command", parameters={"command": "npm test"})
    ok = create_action_log(call, ToolResult(True, "x" * 500, "execute_command"))
    assert ok.type is ActionType.COMMAND
    assert ok.target == "npm test"
    assert ok.result == "success"
    assert len(ok.details) == 200

    failed = create_action_log(
        ToolCall(tool="read_file", parameters={"path": "a.py"}),
        ToolResult(False, "", "read_file", error="File not found: a.py"),
    )
    assert failed.type is ActionType.READ
    assert failed.result == "error"
    assert failed.details == "File not found: a.py"


def test_action_target_fallbacks():
    assert action_target(ToolCall(tool="search_code", parameters={"pattern": "TODO"})) == "TODO"
    assert action_target(ToolCall(tool="fetch_url", parameters={"url": "https://x.y"})) == "https://x.y"
    assert action_target(ToolCall(tool="list_files", parameters={})) == "unknown"
