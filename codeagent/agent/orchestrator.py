"""Agent orchestrator: the iteration loop around the protocol adapter.

One ``run`` drives a conversation until the model stops asking for tools, a
bound is hit, or the caller cancels. Tool calls run one at a time through the
injected executor, and their results are folded back as a single user
message per round. After a round that changed files, the verification runner
is consulted and the model gets a bounded number of rounds to fix failures.

The conversation is append-only; when it grows past the compression
threshold the adapter is sent a compressed view instead.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

from codeagent.agent import constants
from codeagent.agent.cancellation import CancellationToken
from codeagent.agent.context import ContextGatherer, gather_project_context
from codeagent.agent.errors import (
    NetworkError,
    RateLimited,
    RequestTimeout,
    ServerError,
    UserCancelled,
)
from codeagent.agent.events import AgentObserver
from codeagent.agent.history import HistoryStore, Snapshot
from codeagent.agent.llm import ChatAdapter, calculate_dynamic_timeout
from codeagent.agent.prompts import (
    CONTINUE_NUDGE,
    FAILURE_CONTINUE,
    TIMEOUT_CONTINUE,
    TOOL_RESULTS_FOOTER,
    format_chat_history_for_agent,
    load_project_rules,
    render_system_prompt,
)
from codeagent.agent.providers import resolve_api_key, resolve_model, resolve_protocol
from codeagent.agent.retry import backoff_delay, cancellable_sleep, with_retry
from codeagent.agent.state import (
    MUTATING_ACTIONS,
    ActionLog,
    ActionType,
    AgentOptions,
    AgentResult,
    ChatResponse,
    Message,
    ProjectContext,
    ToolCall,
    ToolResult,
    VerifyOptions,
    VerifyResult,
)
from codeagent.agent.tool_parsing import extract_thinking, strip_tool_markup
from codeagent.agent.tool_registry import ToolRegistry
from codeagent.agent.tools import create_action_log, create_default_registry
from codeagent.agent.verify import (
    VerificationRunner,
    format_errors_for_agent,
    has_verification_errors,
    verification_summary,
)
from codeagent.config import settings

logger = logging.getLogger(__name__)

STOPPED_BY_USER = "Agent was stopped by user"


# ── Heuristics and helpers ──────────────────────────────────────


def wants_to_continue(text: str, iteration: int) -> bool:
    """Best-effort guess that a tool-less reply is narration, not an answer.

    Short replies that announce work ("let me", "now I", "creating ...") on
    an early iteration are treated as unfinished.
    """
    if iteration > constants.CONTINUE_MAX_ITERATION:
        return False
    if len(text) >= constants.CONTINUE_MAX_CHARS:
        return False
    lowered = text.lower()
    return any(phrase in lowered for phrase in constants.CONTINUE_PHRASES)


def truncate_tool_result(output: str) -> str:
    limit = constants.TOOL_RESULT_MAX_CHARS
    if len(output) <= limit:
        return output
    return (
        f"{output[:limit]}\n[... {len(output) - limit} chars truncated. "
        "Use search_code or read specific sections if you need more]"
    )


def compress_messages(messages: list[Message], actions: list[ActionLog]) -> list[Message]:
    """First message, a summary built from the action log, then the recent tail.

    Returns ``messages`` itself when no compression is needed.
    """
    keep = constants.COMPRESSION_KEEP_LAST_N
    total = sum(len(m.content) for m in messages)
    if total < constants.COMPRESSION_THRESHOLD_CHARS or len(messages) <= keep + 1:
        return messages

    def targets(*types: ActionType) -> list[str]:
        return [a.target for a in actions if a.type in types]

    lines = ["[Context compressed: summary of work so far]"]
    written = targets(ActionType.WRITE, ActionType.EDIT)
    if written:
        lines.append(f"Files written/edited ({len(written)}): {', '.join(written)}")
    deleted = targets(ActionType.DELETE)
    if deleted:
        lines.append(f"Files deleted: {', '.join(deleted)}")
    commands = targets(ActionType.COMMAND)
    if commands:
        lines.append(f"Commands run: {', '.join(commands)}")
    reads = targets(ActionType.READ)
    if reads:
        lines.append(f"Files read ({len(reads)}): {', '.join(reads[-10:])}")
    lines.append("[End of summary, continuing from current state]")

    logger.debug("Compressed %d chars of context to first + summary + last %d", total, keep)
    return [messages[0], Message("user", "\n".join(lines)), *messages[-keep:]]


def filter_to_touched_files(results: list[VerifyResult], touched: set[str]) -> list[VerifyResult]:
    """Drop errors located in files the agent never wrote or edited.

    Errors without a file stay. A check whose remaining problems are only
    warnings counts as passed.
    """

    def related(path: str) -> bool:
        return path in touched or any(path.endswith(t) or t.endswith(path) for t in touched)

    filtered = []
    for result in results:
        errors = [e for e in result.errors if not e.file or related(e.file)]
        success = result.success or not any(e.severity == "error" for e in errors)
        filtered.append(dataclasses.replace(result, errors=errors, success=success))
    return filtered


def format_agent_result(result: AgentResult) -> str:
    if result.success:
        lines = [f"Agent completed in {result.iterations} iteration(s)"]
    elif result.aborted:
        lines = [STOPPED_BY_USER]
    else:
        lines = [f"Agent failed: {result.error}"]

    if result.actions:
        lines.append("")
        lines.append("Actions performed:")
        for action in result.actions:
            status = "✓" if action.result == "success" else "✗"
            lines.append(f"  {status} {action.type.value}: {action.target}")
    return "\n".join(lines)


class _RunFailed(Exception):
    """Terminal error raised from inside the loop."""

    def __init__(self, error: str, final_response: str = "") -> None:
        super().__init__(error)
        self.final_response = final_response


@dataclass
class _Run:
    """Mutable state of one agent run. Never shared between runs."""

    project: ProjectContext
    options: AgentOptions
    observer: AgentObserver
    token: CancellationToken
    system_prompt: str = ""
    session_id: str | None = None
    started: float = field(default_factory=time.monotonic)
    messages: list[Message] = field(default_factory=list)
    actions: list[ActionLog] = field(default_factory=list)
    iteration: int = 0
    consecutive_failures: int = 0
    nudges: int = 0
    final_response: str = ""
    last_write_by_path: dict[str, str] = field(default_factory=dict)
    duplicate_writes: int = 0
    read_cache: dict[str, str] = field(default_factory=dict)

    @property
    def touched_files(self) -> set[str]:
        return {
            a.target for a in self.actions if a.type in (ActionType.WRITE, ActionType.EDIT)
        }

    def partial_progress(self, headline: str, footer: str) -> str:
        lines = [headline]
        done = list(dict.fromkeys(
            a.target for a in self.actions if a.type in (ActionType.WRITE, ActionType.EDIT)
        ))
        if done:
            lines.append("\n**Partial progress, files written/edited:**")
            lines.extend(f"  ✓ `{f}`" for f in done)
            lines.append(f"\n{footer}")
        return "\n".join(lines)


# ── Orchestrator ────────────────────────────────────────────────


class AgentOrchestrator:
    def __init__(
        self,
        adapter: ChatAdapter,
        executor: ToolRegistry,
        verifier: VerificationRunner | None = None,
        history: HistoryStore | None = None,
        context_gatherer: ContextGatherer | None = None,
        *,
        base_timeout: float | None = None,
        max_consecutive_timeouts: int | None = None,
    ) -> None:
        self.adapter = adapter
        self.executor = executor
        self.verifier = verifier
        self.history = history
        self.context_gatherer = context_gatherer
        self.base_timeout = base_timeout or settings.AGENT_API_TIMEOUT_SECONDS
        self.max_consecutive_timeouts = (
            max_consecutive_timeouts or constants.MAX_CONSECUTIVE_TIMEOUTS
        )

    async def run(
        self, prompt: str, project: ProjectContext, options: AgentOptions | None = None
    ) -> AgentResult:
        options = options or AgentOptions()
        run = _Run(
            project=project,
            options=options,
            observer=options.observer or AgentObserver(),
            token=options.cancel_token or CancellationToken(),
        )
        try:
            if self.history is not None:
                run.session_id = await self.history.start_session(prompt, project.root)
            return await self._run(prompt, run)
        except UserCancelled:
            logger.info("Agent stopped by user at iteration %d", run.iteration)
            return self._aborted(run)
        except _RunFailed as exc:
            logger.warning("Agent run failed: %s", exc)
            return AgentResult(
                success=False,
                iterations=run.iteration,
                actions=run.actions,
                final_response=exc.final_response,
                error=str(exc),
            )
        except Exception as exc:
            logger.exception("Agent run crashed at iteration %d", run.iteration)
            return AgentResult(
                success=False,
                iterations=run.iteration,
                actions=run.actions,
                error=str(exc) or type(exc).__name__,
            )
        finally:
            await self._end_session(run)

    async def _end_session(self, run: _Run) -> None:
        if self.history is None or run.session_id is None:
            return
        try:
            await self.history.end_session(run.session_id)
        except Exception:
            logger.exception("Failed to close history session %s", run.session_id)

    @staticmethod
    def _aborted(run: _Run) -> AgentResult:
        return AgentResult(
            success=False,
            iterations=run.iteration,
            actions=run.actions,
            final_response=STOPPED_BY_USER,
            aborted=True,
        )

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _run(self, prompt: str, run: _Run) -> AgentResult:
        options = run.options
        run.system_prompt = await self._build_system_prompt(prompt, run)
        run.messages.append(Message("user", prompt))

        completed = False
        while run.iteration < options.max_iterations:
            self._check_duration(run)
            if run.token.cancelled:
                return self._aborted(run)

            run.iteration += 1
            run.observer.on_iteration(run.iteration, options.max_iterations)
            logger.debug(
                "Iteration %d/%d, %d action(s) so far",
                run.iteration,
                options.max_iterations,
                len(run.actions),
            )

            response = await self._chat_round(run)
            if response is None:
                continue

            if not response.tool_calls:
                final = strip_tool_markup(response.content)
                if run.nudges < constants.CONTINUE_MAX_NUDGES and wants_to_continue(
                    final, run.iteration
                ):
                    run.nudges += 1
                    run.messages.append(Message("assistant", response.content))
                    run.messages.append(Message("user", CONTINUE_NUDGE))
                    continue
                run.final_response = final
                run.messages.append(Message("assistant", response.content))
                completed = True
                break

            run.messages.append(Message("assistant", response.content))
            folded = await self._dispatch(run, response.tool_calls)
            run.messages.append(
                Message(
                    "user",
                    "Tool results:\n\n" + "\n\n".join(folded) + "\n\n" + TOOL_RESULTS_FOOTER,
                )
            )

        if not completed:
            raise _RunFailed(
                f"max iterations reached: exceeded maximum of {options.max_iterations} iterations",
                run.partial_progress(
                    f"Agent reached the iteration limit ({options.max_iterations} steps).",
                    "The task may be incomplete. You can continue by running the agent again.",
                ),
            )

        await self._verify_and_fix(run)
        logger.info("Agent completed in %d iteration(s)", run.iteration)
        return AgentResult(
            success=True,
            iterations=run.iteration,
            actions=run.actions,
            final_response=run.final_response,
        )

    def _check_duration(self, run: _Run) -> None:
        if time.monotonic() - run.started < run.options.max_duration:
            return
        minutes = round(run.options.max_duration / 60)
        raise _RunFailed(
            f"timeout: exceeded maximum duration of {minutes} min",
            run.partial_progress(
                f"Agent reached the time limit ({minutes} min).",
                "You can continue by running the agent again.",
            ),
        )

    async def _build_system_prompt(self, prompt: str, run: _Run) -> str:
        extra = ""
        if self.context_gatherer is not None:
            extra = await self.context_gatherer.gather(prompt, run.project)
        system_prompt = render_system_prompt(run.project, extra)
        system_prompt += load_project_rules(run.project.root)
        system_prompt += format_chat_history_for_agent(run.options.chat_history)
        return system_prompt

    # ------------------------------------------------------------------
    # One model round with the timeout policy
    # ------------------------------------------------------------------

    async def _chat_round(self, run: _Run) -> ChatResponse | None:
        """Ask the model once. ``None`` means the round was skipped.

        Timeouts are retried in place with a growing budget. Once the
        in-round cap is reached, or the retry wrapper gives up on a transient
        error, a "continue" message is appended and the round is skipped.
        Each skipped call counts toward the consecutive-failure ceiling.
        """
        on_chunk = run.observer.on_chunk if run.options.stream else None
        view = compress_messages(run.messages, run.actions)
        retry_count = 0

        while True:
            budget = calculate_dynamic_timeout(run.iteration, self.base_timeout, retry_count)
            try:
                response = await with_retry(
                    lambda: self.adapter.send(
                        view,
                        run.system_prompt,
                        cancel_token=run.token,
                        timeout=budget,
                        on_chunk=on_chunk,
                        iteration=run.iteration,
                    ),
                    cancel_token=run.token,
                )
            except RequestTimeout:
                retry_count += 1
                run.consecutive_failures += 1
                logger.warning(
                    "API timeout at iteration %d (retry %d/%d, consecutive %d)",
                    run.iteration,
                    retry_count,
                    constants.MAX_TIMEOUT_RETRIES,
                    run.consecutive_failures,
                )
                if retry_count >= constants.MAX_TIMEOUT_RETRIES:
                    self._skip_round(
                        run,
                        TIMEOUT_CONTINUE,
                        f"API timed out {run.consecutive_failures} times consecutively. "
                        "Try increasing the timeout or simplifying the task.",
                        "Agent stopped due to repeated API timeouts",
                    )
                    return None
                await cancellable_sleep(
                    backoff_delay(
                        retry_count,
                        constants.TIMEOUT_RETRY_BASE_DELAY_SECONDS,
                        constants.TIMEOUT_RETRY_MAX_DELAY_SECONDS,
                    ),
                    run.token,
                )
                continue
            except (RateLimited, ServerError, NetworkError) as exc:
                run.consecutive_failures += 1
                logger.warning("API request failed at iteration %d: %s", run.iteration, exc)
                self._skip_round(
                    run,
                    FAILURE_CONTINUE,
                    f"API failed after retries: {exc}",
                    (
                        f"Agent made progress ({len(run.actions)} actions) but API errors "
                        "prevented completion. You can continue by running the agent again."
                    )
                    if run.actions
                    else "Agent could not complete the task due to repeated API errors.",
                )
                return None

            run.consecutive_failures = 0
            thinking = extract_thinking(response.content)
            if thinking:
                run.observer.on_thinking(thinking)
            return response

    def _skip_round(self, run: _Run, note: str, error: str, final_response: str) -> None:
        if run.consecutive_failures >= self.max_consecutive_timeouts:
            raise _RunFailed(error, final_response)
        run.messages.append(Message("user", note))

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    async def _dispatch(self, run: _Run, calls: list[ToolCall]) -> list[str]:
        """Execute calls in order; return one folded text entry per call."""
        folded: list[str] = []
        root = run.project.root
        for call in calls:
            run.observer.on_tool_call(call)

            snapshot: Snapshot | None = None
            if run.options.dry_run:
                result = ToolResult(
                    success=True,
                    output=f"[DRY RUN] Would execute: {call.tool}",
                    tool=call.tool,
                    parameters=dict(call.parameters),
                )
            else:
                if self.history is not None:
                    snapshot = self.history.capture(call, root)
                result = await self.executor.execute(call, root)

            action = create_action_log(call, result)
            run.actions.append(action)
            run.observer.on_tool_result(result, action)
            if self.history is not None and run.session_id and not run.options.dry_run:
                await self.history.append(run.session_id, call, action, snapshot)

            folded.append(self._fold_result(run, call, result))
        return folded

    def _fold_result(self, run: _Run, call: ToolCall, result: ToolResult) -> str:
        path = str(call.parameters.get("path") or "")

        if call.tool in ("write_file", "edit_file"):
            key = json.dumps(call.parameters, sort_keys=True, default=str)[:500]
            if result.success:
                run.read_cache.pop(path, None)
            if run.last_write_by_path.get(path) == key:
                run.duplicate_writes += 1
                if run.duplicate_writes >= constants.DUPLICATE_WRITE_LIMIT:
                    run.duplicate_writes = 0
                    return (
                        f"[WARNING] You have written the same content to `{path}` "
                        f"{constants.DUPLICATE_WRITE_LIMIT + 1} times in a row. You are stuck "
                        "in a loop. Read the file to check its current state, then try a "
                        "completely different approach."
                    )
                if result.success:
                    return (
                        f"Tool {call.tool} succeeded (note: same content as previous "
                        f"write to this file):\n{result.output}"
                    )
            else:
                run.duplicate_writes = 0
                run.last_write_by_path[path] = key

        elif call.tool == "read_file" and result.success:
            if path in run.read_cache:
                return (
                    "Tool read_file succeeded (cached, file unchanged since last read):\n"
                    + run.read_cache[path]
                )
            run.read_cache[path] = truncate_tool_result(result.output)
            return f"Tool read_file succeeded:\n{run.read_cache[path]}"

        elif call.tool == "execute_command" and result.success:
            # Commands can modify arbitrary files
            run.read_cache.clear()

        if result.success:
            return f"Tool {call.tool} succeeded:\n{truncate_tool_result(result.output)}"
        return f"Tool {call.tool} failed:\n{result.error or 'Unknown error'}"

    # ------------------------------------------------------------------
    # Self-verification
    # ------------------------------------------------------------------

    async def _verify_and_fix(self, run: _Run) -> None:
        options = run.options
        if self.verifier is None or not options.auto_verify or options.dry_run:
            return
        if not any(a.type in MUTATING_ACTIONS for a in run.actions):
            return

        fix_round = 0
        previous_signature = ""
        while True:
            run.token.raise_if_cancelled()
            raw_results = await self.verifier.run_all(run.project.root, VerifyOptions())
            run.observer.on_verification(raw_results)
            results = filter_to_touched_files(raw_results, run.touched_files)

            if not has_verification_errors(results):
                summary = verification_summary(results)
                if summary["total"]:
                    run.final_response += (
                        f"\n\n✓ Verification passed: {summary['passed']}/{summary['total']} checks"
                    )
                return

            if fix_round >= options.max_fix_attempts or run.iteration >= options.max_iterations:
                summary = verification_summary(results)
                logger.warning(
                    "Verification still failing after %d fix attempt(s)", fix_round
                )
                run.final_response += (
                    f"\n\n✗ Verification failed after {fix_round} fix attempt(s): "
                    f"{summary['failed']}/{summary['total']} checks failing"
                )
                return

            fix_round += 1
            error_message = format_errors_for_agent(results)
            signature = error_message[:200]
            repeating = previous_signature == signature
            previous_signature = signature
            run.messages.append(
                Message("user", self._fix_prompt(error_message, fix_round, options, repeating))
            )

            run.iteration += 1
            run.observer.on_iteration(run.iteration, options.max_iterations)
            logger.warning(
                "Verification failed, fix attempt %d/%d", fix_round, options.max_fix_attempts
            )

            response = await self._chat_round(run)
            if response is None:
                continue
            run.messages.append(Message("assistant", response.content))
            if not response.tool_calls:
                run.final_response = strip_tool_markup(response.content)
                continue

            folded = await self._dispatch(run, response.tool_calls)
            run.messages.append(
                Message(
                    "user",
                    "Fix results:\n\n" + "\n\n".join(folded)
                    + "\n\nContinue fixing if needed. Re-running verification...",
                )
            )

    @staticmethod
    def _fix_prompt(error_message: str, attempt: int, options: AgentOptions, repeating: bool) -> str:
        if repeating:
            return (
                f"{error_message}\n\nYour previous fix attempt did NOT resolve these errors; "
                "they are still the same. You MUST try a completely different approach:\n"
                "- Re-read the affected files to understand the current state\n"
                "- Consider whether the root cause is different from what you assumed\n"
                "- Try an alternative implementation strategy\n"
                "- If it's a missing dependency, install it with execute_command"
            )
        if attempt == 1:
            return (
                f"{error_message}\n\nFix these errors. Read the affected files first to "
                "understand the current state before making changes."
            )
        return (
            f"{error_message}\n\nAttempt {attempt}/{options.max_fix_attempts}: your previous "
            "fix was partially successful but errors remain. Re-read ALL affected files and "
            "take a fresh look for related issues you missed."
        )


# ── Entry point ─────────────────────────────────────────────────


def default_options(**overrides) -> AgentOptions:
    options = AgentOptions(
        max_iterations=settings.AGENT_MAX_ITERATIONS,
        max_duration=settings.AGENT_MAX_DURATION_MINUTES * 60,
        auto_verify=settings.AGENT_AUTO_VERIFY,
        max_fix_attempts=settings.AGENT_MAX_FIX_ATTEMPTS,
    )
    return dataclasses.replace(options, **overrides)


async def run_agent(
    prompt: str,
    project_root: str | Path,
    options: AgentOptions | None = None,
    *,
    history: HistoryStore | None = None,
) -> AgentResult:
    """Run one agent task against a project with the configured provider."""
    registry = create_default_registry()
    async with ChatAdapter(
        settings.AGENT_PROVIDER,
        resolve_protocol(settings.AGENT_PROVIDER, settings.AGENT_PROTOCOL),
        resolve_model(settings.AGENT_PROVIDER, settings.AGENT_MODEL),
        resolve_api_key(settings.AGENT_PROVIDER, settings.AGENT_API_KEY),
        registry=registry,
        temperature=settings.AGENT_TEMPERATURE,
        max_tokens=settings.AGENT_MAX_TOKENS,
        base_timeout=settings.AGENT_API_TIMEOUT_SECONDS,
    ) as adapter:
        orchestrator = AgentOrchestrator(
            adapter,
            registry,
            VerificationRunner(),
            history if history is not None else HistoryStore(),
            ContextGatherer(),
        )
        result = await orchestrator.run(
            prompt, gather_project_context(project_root), options or default_options()
        )
        logger.info("Token usage: %s", adapter.usage.summary())
        return result
