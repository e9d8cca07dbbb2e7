"""Default verification runner.

Detects the project's own build, test and typecheck commands and runs them
as subprocesses. Output is parsed into ``ParsedError`` entries so the
orchestrator can narrow failures to the files the agent touched.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sys
import time
from pathlib import Path

from codeagent.agent.constants import VERIFY_OUTPUT_MAX_CHARS, VERIFY_TIMEOUT_SECONDS
from codeagent.agent.state import ParsedError, VerifyOptions, VerifyResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Command detection
# ---------------------------------------------------------------------------


def _package_manager(root: Path) -> str:
    if (root / "bun.lockb").exists():
        return "bun"
    if (root / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (root / "yarn.lock").exists():
        return "yarn"
    return "npm"


def detect_project_scripts(project_root: str | Path) -> dict[str, list[str]]:
    """Map check kind (build, test, typecheck) to the argv that runs it."""
    root = Path(project_root)
    commands: dict[str, list[str]] = {}

    package_json = root / "package.json"
    if package_json.is_file():
        try:
            scripts = json.loads(package_json.read_text(encoding="utf-8")).get("scripts") or {}
        except (ValueError, OSError):
            scripts = {}
        pm = _package_manager(root)
        for kind, names in (
            ("build", ("build", "compile")),
            ("test", ("test", "spec")),
            ("typecheck", ("typecheck", "type-check", "tsc")),
        ):
            for name in names:
                if name in scripts:
                    commands[kind] = [pm, "run", name]
                    break
        if "typecheck" not in commands and (root / "tsconfig.json").exists():
            commands["typecheck"] = ["npx", "tsc", "--noEmit"]

    if any((root / f).exists() for f in ("pyproject.toml", "requirements.txt", "setup.py")):
        commands["build"] = [
            sys.executable, "-m", "compileall", "-q",
            "-x", r"(\.venv|venv|node_modules|\.git)", ".",
        ]
        if (root / "pytest.ini").exists() or (root / "tests").is_dir():
            commands["test"] = [sys.executable, "-m", "pytest", "-q", "-x"]

    if (root / "go.mod").exists():
        commands["build"] = ["go", "build", "./..."]
        commands["test"] = ["go", "test", "./..."]

    if (root / "Cargo.toml").exists():
        commands["build"] = ["cargo", "build"]
        commands["test"] = ["cargo", "test"]

    composer = root / "composer.json"
    if composer.is_file():
        try:
            scripts = json.loads(composer.read_text(encoding="utf-8")).get("scripts") or {}
        except (ValueError, OSError):
            scripts = {}
        if "test" in scripts:
            commands["test"] = ["composer", "test"]

    return commands


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

_TS_RE = re.compile(r"^(.+?)\((\d+),(\d+)\):\s*(error|warning)\s+(TS\d+):\s*(.+)$")
_LINT_RE = re.compile(r"^(.+?):(\d+):(\d+):\s*(error|warning)\s+(.+)$")
_JEST_FAIL_RE = re.compile(r"^\s*FAIL\s+(.+)$")
_PYTEST_FAIL_RE = re.compile(r"^FAILED\s+(.+?)::(\S+)(?:\s+-\s+(.+))?$")
_PY_FRAME_RE = re.compile(r'^\s*File "(.+?)", line (\d+)')
_PY_ERROR_RE = re.compile(r"^(\w+Error):\s*(.+)$")
_GENERIC_RE = re.compile(r"^(.+?):(\d+):\s*(.*error.*)$", re.IGNORECASE)
_GO_RE = re.compile(r"^(.+\.go):(\d+):(\d+):\s*(.+)$")
_RUST_RE = re.compile(r"^\s*-->\s*(.+?):(\d+):(\d+)$")


def parse_errors(output: str) -> list[ParsedError]:
    errors: list[ParsedError] = []
    last_frame: tuple[str, int] | None = None

    for line in output.splitlines():
        if m := _TS_RE.match(line):
            errors.append(ParsedError(m[6], m[4], m[1], int(m[2]), int(m[3]), m[5]))
        elif m := _LINT_RE.match(line):
            errors.append(ParsedError(m[5], m[4], m[1], int(m[2]), int(m[3])))
        elif m := _JEST_FAIL_RE.match(line):
            errors.append(ParsedError("Test file failed", file=m[1].strip()))
        elif m := _PYTEST_FAIL_RE.match(line):
            errors.append(ParsedError(m[3] or f"{m[2]} failed", file=m[1]))
        elif m := _PY_FRAME_RE.match(line):
            last_frame = (m[1], int(m[2]))
        elif (m := _PY_ERROR_RE.match(line)) and last_frame:
            errors.append(ParsedError(f"{m[1]}: {m[2]}", file=last_frame[0], line=last_frame[1]))
            last_frame = None
        elif m := _GO_RE.match(line):
            errors.append(ParsedError(m[4], file=m[1], line=int(m[2]), column=int(m[3])))
        elif m := _GENERIC_RE.match(line):
            errors.append(ParsedError(m[3], file=m[1], line=int(m[2])))
        elif m := _RUST_RE.match(line):
            errors.append(
                ParsedError("Rust compilation error", file=m[1], line=int(m[2]), column=int(m[3]))
            )
    return errors


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


async def run_verify_command(
    kind: str, argv: list[str], project_root: Path, timeout: float = VERIFY_TIMEOUT_SECONDS
) -> VerifyResult:
    start = time.monotonic()
    command = " ".join(argv)
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(project_root),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        return VerifyResult(
            success=False,
            type=kind,
            command=command,
            errors=[ParsedError(f"Command not found: {argv[0]}", severity="warning")],
            duration=time.monotonic() - start,
        )

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return VerifyResult(
            success=False,
            type=kind,
            command=command,
            errors=[
                ParsedError(
                    f"Command timed out after {timeout:.0f}s. This tool may be too slow for verification.",
                    severity="warning",
                )
            ],
            duration=time.monotonic() - start,
        )

    output = (stdout.decode(errors="replace") + "\n" + stderr.decode(errors="replace")).strip()
    success = proc.returncode == 0
    errors = parse_errors(output)
    if not success and not errors:
        # Possibly a pre-existing failure, reported as a warning
        errors.append(
            ParsedError(output[-500:] or "Command failed with no output", severity="warning")
        )
    return VerifyResult(
        success=success,
        type=kind,
        command=command,
        output=output,
        errors=errors,
        duration=time.monotonic() - start,
    )


class VerificationRunner:
    def __init__(self, timeout: float = VERIFY_TIMEOUT_SECONDS) -> None:
        self.timeout = timeout

    async def run_all(
        self, project_root: str | Path, options: VerifyOptions | None = None
    ) -> list[VerifyResult]:
        """Typecheck, then build, then tests; only the checks the project has."""
        opts = options or VerifyOptions()
        root = Path(project_root)
        commands = detect_project_scripts(root)
        results: list[VerifyResult] = []
        for kind, enabled in (
            ("typecheck", opts.typecheck),
            ("build", opts.build),
            ("test", opts.test),
        ):
            if enabled and kind in commands:
                logger.debug("Verifying %s with %s", kind, commands[kind])
                results.append(await run_verify_command(kind, commands[kind], root, self.timeout))
        return results


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def has_verification_errors(results: list[VerifyResult]) -> bool:
    return any(not r.success for r in results)


def verification_summary(results: list[VerifyResult]) -> dict:
    passed = sum(1 for r in results if r.success)
    return {
        "passed": passed,
        "failed": len(results) - passed,
        "total": len(results),
        "errors": sum(1 for r in results for e in r.errors if e.severity == "error"),
    }


def format_errors_for_agent(results: list[VerifyResult]) -> str:
    failed = [r for r in results if not r.success]
    if not failed:
        return ""

    lines = ["## Verification Errors - Please Fix:", ""]
    for result in failed:
        lines.append(f"### {result.type.upper()} Failed")
        lines.append(f"Command: {result.command}")
        lines.append("")
        if result.errors:
            lines.append("Errors:")
            for error in result.errors:
                loc = "unknown"
                if error.file:
                    loc = error.file
                    if error.line:
                        loc += f":{error.line}"
                    if error.column:
                        loc += f":{error.column}"
                code = f" ({error.code})" if error.code else ""
                lines.append(f"- [{loc}] {error.message}{code}")
        else:
            lines.append("Output:")
            lines.append("```")
            lines.append(result.output[:VERIFY_OUTPUT_MAX_CHARS])
            if len(result.output) > VERIFY_OUTPUT_MAX_CHARS:
                lines.append("... (truncated)")
            lines.append("```")
        lines.append("")
    lines.append("Please fix these errors and try again.")
    return "\n".join(lines)
