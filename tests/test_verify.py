"""Tests for verification command detection and error parsing."""

from __future__ import annotations

import asyncio
import json
import sys

from codeagent.agent.state import ParsedError, VerifyOptions, VerifyResult
from codeagent.agent.verify import (
    VerificationRunner,
    detect_project_scripts,
    format_errors_for_agent,
    has_verification_errors,
    parse_errors,
    run_verify_command,
    verification_summary,
)


# ── Detection ───────────────────────────────────────────────────


def test_detects_npm_scripts_with_lockfile_manager(tmp_path):
    (tmp_path / "package.json").write_text(
        json.dumps({"scripts": {"build": "vite build", "test": "vitest", "typecheck": "tsc"}})
    )
    (tmp_path / "pnpm-lock.yaml").write_text("")
    commands = detect_project_scripts(tmp_path)
    assert commands == {
        "build": ["pnpm", "run", "build"],
        "test": ["pnpm", "run", "test"],
        "typecheck": ["pnpm", "run", "typecheck"],
    }


def test_detects_python_and_go(tmp_path):
    (tmp_path / "pyproject.toml").write_text("[project]\nname='x'\n")
    (tmp_path / "tests").mkdir()
    commands = detect_project_scripts(tmp_path)
    assert commands["build"][1:3] == ["-m", "compileall"]
    assert commands["test"][1:3] == ["-m", "pytest"]

    (tmp_path / "go.mod").write_text("module x")
    assert detect_project_scripts(tmp_path)["test"] == ["go", "test", "./..."]


def test_nothing_to_run_for_plain_directory(tmp_path):
    assert detect_project_scripts(tmp_path) == {}
    assert asyncio.run(VerificationRunner().run_all(tmp_path)) == []


# ── Parsing ─────────────────────────────────────────────────────


def test_parse_typescript_and_lint_errors():
    output = (
        "src/app.ts(12,5): error TS2322: Type 'string' is not assignable to type 'number'.\n"
        "src/util.js:3:1: warning Unexpected console statement\n"
    )
    errors = parse_errors(output)
    assert errors[0] == ParsedError(
        "Type 'string' is not assignable to type 'number'.", "error", "src/app.ts", 12, 5, "TS2322"
    )
    assert errors[1].severity == "warning"
    assert errors[1].file == "src/util.js"


def test_parse_python_traceback_and_pytest():
    output = (
        'Traceback (most recent call last):\n'
        '  File "pkg/mod.py", line 7, in <module>\n'
        "NameError: name 'x' is not defined\n"
        "FAILED tests/test_mod.py::test_x - AssertionError: boom\n"
    )
    errors = parse_errors(output)
    assert errors[0].file == "pkg/mod.py"
    assert errors[0].line == 7
    assert errors[0].message == "NameError: name 'x' is not defined"
    assert errors[1].file == "tests/test_mod.py"
    assert errors[1].message == "AssertionError: boom"


def test_parse_rust_location():
    errors = parse_errors("error[E0425]: cannot find value\n  --> src/main.rs:4:9\n")
    assert errors[-1].file == "src/main.rs"
    assert errors[-1].line == 4


# ── Running ─────────────────────────────────────────────────────


def test_run_verify_command_failure_parses_errors(tmp_path):
    script = 'import sys; print("src/a.py:3: error: bad thing"); sys.exit(1)'
    result = asyncio.run(run_verify_command("build", [sys.executable, "-c", script], tmp_path))
    assert not result.success
    assert result.errors[0].file == "src/a.py"
    assert result.duration >= 0


def test_run_verify_command_missing_binary(tmp_path):
    result = asyncio.run(run_verify_command("test", ["definitely-not-a-binary-xyz"], tmp_path))
    assert not result.success
    assert result.errors[0].severity == "warning"


def test_runner_respects_options(tmp_path):
    (tmp_path / "requirements.txt").write_text("")
    (tmp_path / "ok.py").write_text("x = 1\n")
    results = asyncio.run(
        VerificationRunner().run_all(tmp_path, VerifyOptions(build=True, test=False, typecheck=False))
    )
    assert [r.type for r in results] == ["build"]
    assert results[0].success


# ── Reporting ───────────────────────────────────────────────────


def test_summary_and_agent_report():
    results = [
        VerifyResult(success=True, type="typecheck", command="tsc"),
        VerifyResult(
            success=False,
            type="test",
            command="npm test",
            errors=[ParsedError("expected 1", file="a.test.ts", line=3, column=2, code="E1")],
        ),
        VerifyResult(success=False, type="build", command="make", output="boom"),
    ]
    assert has_verification_errors(results)
    assert verification_summary(results) == {"passed": 1, "failed": 2, "total": 3, "errors": 1}

    report = format_errors_for_agent(results)
    assert report.startswith("## Verification Errors - Please Fix:")
    assert "### TEST Failed" in report
    assert "- [a.test.ts:3:2] expected 1 (E1)" in report
    assert "```\nboom\n```" in report
    assert "TYPECHECK" not in report
    assert format_errors_for_agent(results[:1]) == ""
