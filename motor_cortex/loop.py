"""Attempt loop: model turn, sequential tool calls, pause/fail/complete transitions.

One AttemptLoop.run() call drives a single attempt until it completes, fails,
pauses for the user, or is cancelled. State is persisted after every full
iteration and immediately before a pause, so a crash loses at most the
in-flight iteration. Resume (see resume.py) re-enters at attempt.step_cursor.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from pydantic import ValidationError

from motor_cortex.artifacts import persist_artifacts
from motor_cortex.credentials import (
    REDACTION_MARKER,
    Redactor,
    missing_credentials_message,
    resolve_args,
)
from motor_cortex.failure import classify, classify_crash, get_failure_hint
from motor_cortex.llm.protocol import (
    CompletionRequest,
    CompletionResponse,
    ModelBackend,
    ModelBackendError,
    ToolCall,
)
from motor_cortex.models import (
    Attempt,
    FailureSummary,
    PendingApproval,
    Run,
    RunEvidence,
    StepTrace,
    TaskResult,
    TaskStats,
    ToolCallTrace,
    ToolResult,
    utc_now,
)
from motor_cortex.secrets import CredentialStore, credential_to_runtime_key
from motor_cortex.signals import SignalSink, make_signal
from motor_cortex.skills import LoadedSkill, SkillError, extract_skills
from motor_cortex.state.store import RunStore
from motor_cortex.task_log import TaskLogger, create_task_logger
from motor_cortex.tools.args import SYNTHETIC_TOOL_ARGS, synthetic_schemas
from motor_cortex.tools.context import ContainerHandle, FetchFn, SearchFn, ToolContext, ToolLimits
from motor_cortex.tools.executor import ToolExecutor, build_default_executor, invalid_args_result
from motor_cortex.tools.truncation import truncate_tool_output

logger = logging.getLogger(__name__)

# Text that imitates a tool call instead of using the tool API.
_XML_TOOL_CALL_RE = re.compile(r"<invoke\s|<tool_call>|<\w+_call>")
_XML_OPEN_TAG_RE = re.compile(r"^<\w+[\s>]", re.MULTILINE)
_XML_CLOSE_TAG_RE = re.compile(r"</\w+>")
_BLOCKED_DOMAIN_RE = re.compile(r"^BLOCKED: Domain (\S+)")

XML_FAILURE_HINT = (
    "Model attempted tool calls via XML text instead of the tool API. "
    "The requested tools may not be available."
)
EMPTY_FAILURE_HINT = "Model stopped producing output after encountering errors."
SKIPPED_CALL_OUTPUT = "Skipped: the attempt stopped before this call ran."
NO_SUMMARY = "Task completed without summary"


class PauseReason(str, Enum):
    ASK_USER = "ask_user"
    APPROVAL = "request_approval"
    BLOCKED_DOMAIN = "blocked_domain"


@dataclass(frozen=True)
class StepOutcome:
    """What one iteration decided. status "continue" means run the next iteration."""

    status: str
    pause_reason: PauseReason | None = None

    @property
    def done(self) -> bool:
        return self.status != "continue"


CONTINUE = StepOutcome("continue")
COMPLETED = StepOutcome("completed")
FAILED = StepOutcome("failed")
CANCELLED = StepOutcome("cancelled")


@dataclass
class AttemptOutcome:
    """Returned by AttemptLoop.run() once the loop stops for this invocation."""

    status: str
    pause_reason: PauseReason | None = None
    failure: FailureSummary | None = None
    result: TaskResult | None = None
    cancelled: bool = False


@dataclass(frozen=True)
class LoopConfig:
    max_tokens: int = 4096
    llm_max_retries: int = 2
    llm_retry_backoff_sec: float = 2.0
    consecutive_failure_threshold: int = 3
    approval_timeout_sec: float = 900.0
    auto_ask_on_blocked_domain: bool = True
    energy_per_llm_call: float = 0.01

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "LoopConfig":
        cfg = settings.get("motor") or {}
        return cls(
            max_tokens=int(cfg.get("max_tokens", 4096)),
            llm_max_retries=int(cfg.get("llm_max_retries", 2)),
            llm_retry_backoff_sec=float(cfg.get("llm_retry_backoff_sec", 2.0)),
            consecutive_failure_threshold=int(cfg.get("consecutive_failure_threshold", 3)),
            approval_timeout_sec=float(cfg.get("approval_timeout_sec", 900)),
            auto_ask_on_blocked_domain=bool(cfg.get("auto_ask_on_blocked_domain", True)),
            energy_per_llm_call=float(cfg.get("energy_per_llm_call", 0.01)),
        )


def looks_like_xml_tool_call(content: str) -> bool:
    if _XML_TOOL_CALL_RE.search(content):
        return True
    return bool(_XML_OPEN_TAG_RE.search(content) and _XML_CLOSE_TAG_RE.search(content))


def collect_evidence(run: Run) -> RunEvidence:
    """Summarize what the run actually touched, across all attempts."""
    domains: list[str] = []
    saved: list[str] = []
    tools: list[str] = []
    for attempt in run.attempts:
        for step in attempt.trace.steps:
            for call in step.tool_calls:
                tools.append(call.tool)
                if call.tool == "fetch" and call.result.ok:
                    host = urlparse(str(call.args.get("url", ""))).hostname
                    if host:
                        domains.append(host)
                elif call.tool == "save_credential" and call.result.ok:
                    name = call.args.get("name")
                    if isinstance(name, str):
                        saved.append(name)
    return RunEvidence(
        fetched_domains=sorted(set(domains)),
        saved_credentials=sorted(set(saved)),
        tools_used=sorted(set(tools)),
        bash_used="bash" in tools,
    )


async def settle_failure(
    run: Run, attempt: Attempt, store: RunStore, sink: SignalSink, error: str | None = None
) -> None:
    """Mark the run failed for good and emit the single failed signal."""
    run.status = "failed"
    run.completed_at = utc_now()
    await store.update_run(run)
    failure = attempt.failure.model_dump(mode="json") if attempt.failure else None
    message = error or (attempt.failure.hint if attempt.failure else None) or "Task failed"
    sink.emit(make_signal(run.id, attempt.index, "failed", failure=failure, error=message))
    logger.info("motor_loop: run %s failed (attempt %d)", run.id, attempt.index)


class _FailureTracker:
    """Counts identical consecutive failures: same tool, error code and arguments."""

    def __init__(self) -> None:
        self._key: tuple[str, str, str] | None = None
        self.count = 0

    def update(self, tool: str, args: dict[str, Any], result: ToolResult) -> int:
        if result.ok:
            self._key = None
            self.count = 0
            return 0
        key = (tool, result.error_code or "unknown", json.dumps(args, sort_keys=True, default=str))
        if key == self._key:
            self.count += 1
        else:
            self._key = key
            self.count = 1
        return self.count


@dataclass
class _Session:
    """Per-invocation state of one attempt."""

    run: Run
    attempt: Attempt
    ctx: ToolContext
    redactor: Redactor
    schemas: list[dict[str, Any]]
    synthetic: frozenset[str]
    skill: LoadedSkill | None
    settle_failures: bool
    task_log: TaskLogger | None
    cancel: asyncio.Event | None
    tracker: _FailureTracker = field(default_factory=_FailureTracker)
    # Calls after the one in flight, in the current batch.
    remaining: list[ToolCall] = field(default_factory=list)

    def log(self, line: str) -> None:
        if self.task_log is not None:
            self.task_log.log(line)

    @property
    def cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.is_set()


class AttemptLoop:
    """Drives attempts of runs. One instance can serve many runs; it holds no per-run state."""

    def __init__(
        self,
        backend: ModelBackend,
        store: RunStore,
        sink: SignalSink,
        executor: ToolExecutor | None = None,
        credentials: CredentialStore | None = None,
        config: LoopConfig | None = None,
        artifacts_dir: Path | None = None,
        skills_dir: Path | None = None,
        limits: ToolLimits | None = None,
    ) -> None:
        self.backend = backend
        self.store = store
        self.sink = sink
        self.executor = executor or build_default_executor()
        self.credentials = credentials
        self.config = config or LoopConfig()
        self.artifacts_dir = artifacts_dir
        self.skills_dir = skills_dir
        self.limits = limits or ToolLimits()
        self._delivered: set[tuple[str, str]] = set()

    def forget_run(self, run_id: str) -> None:
        """Drop credential-delivery markers of a run whose container is gone."""
        self._delivered = {key for key in self._delivered if key[0] != run_id}

    def synthetic_tools(self) -> tuple[str, ...]:
        if self.credentials is None:
            return ("ask_user", "request_approval")
        return ("ask_user", "request_approval", "save_credential")

    async def run(
        self,
        run: Run,
        attempt: Attempt,
        workspace: Path,
        cancel: asyncio.Event | None = None,
        container: ContainerHandle | None = None,
        skill: LoadedSkill | None = None,
        settle_failures: bool = True,
        fetch_fn: FetchFn | None = None,
        search_fn: SearchFn | None = None,
    ) -> AttemptOutcome:
        """Run attempt from its step cursor until it stops. Never raises for model or tool errors.

        With settle_failures=False a failed attempt is persisted but the run is
        left for the caller to retry or settle (see settle_failure).
        """
        workspace.mkdir(parents=True, exist_ok=True)
        allowed_roots = [workspace]
        if skill is not None:
            allowed_roots.append(skill.path)
        ctx = ToolContext(
            workspace=workspace,
            allowed_roots=allowed_roots,
            write_roots=[workspace],
            container=container,
            allowed_domains=list(run.domains) or None,
            fetch_fn=fetch_fn,
            search_fn=search_fn,
            limits=self.limits,
        )
        synthetic = self.synthetic_tools()
        session = _Session(
            run=run,
            attempt=attempt,
            ctx=ctx,
            redactor=Redactor.from_store(self.credentials),
            schemas=self.executor.schemas(run.tools) + synthetic_schemas(list(synthetic)),
            synthetic=frozenset(synthetic),
            skill=skill,
            settle_failures=settle_failures,
            task_log=create_task_logger(self.artifacts_dir, run.id),
            cancel=cancel,
        )
        attempt.status = "running"
        run.status = "running"
        session.log(
            f"ATTEMPT {attempt.index} enter at step {attempt.step_cursor}/{attempt.max_iterations}"
            f" tools=[{', '.join(run.tools)}]"
        )
        logger.info(
            "motor_loop: run %s attempt %d entering at step %d",
            run.id,
            attempt.index,
            attempt.step_cursor,
        )
        await self._deliver_credentials(session)
        await self.store.update_run(run)

        try:
            for i in range(attempt.step_cursor, attempt.max_iterations):
                if session.cancelled:
                    return await self._cancelled(session)
                outcome = await self._step(session, i)
                if outcome is CANCELLED:
                    return await self._cancelled(session)
                if outcome.done:
                    return self._result(session, outcome)
                attempt.step_cursor = i + 1
                attempt.trace.total_iterations = i + 1
                await self.store.update_run(run)
        except ModelBackendError as e:
            logger.warning("motor_loop: run %s model backend failed: %s", run.id, e)
            return await self._fail(session, classify_crash(attempt.trace, str(e)))
        except Exception as e:
            logger.exception("motor_loop: run %s crashed", run.id)
            message = session.redactor.redact(f"{type(e).__name__}: {e}")
            return await self._fail(session, classify_crash(attempt.trace, message))

        if session.cancelled:
            return await self._cancelled(session)
        session.log(f"BUDGET EXHAUSTED after {attempt.max_iterations} iterations")
        summary = classify(
            attempt.trace, session.tracker.count, category="budget_exhausted"
        )
        return await self._fail(session, summary)

    # --- one iteration ---

    async def _step(self, s: _Session, i: int) -> StepOutcome:
        run, attempt = s.run, s.attempt
        s.log(f"--- ITERATION {i + 1}/{attempt.max_iterations} ---")
        response = await self._complete(s)
        run.energy_consumed += self.config.energy_per_llm_call
        attempt.trace.llm_calls += 1
        attempt.trace.total_energy_cost += self.config.energy_per_llm_call

        calls = [
            ToolCall(id=c.id or f"call_{i}_{n}", name=c.name, arguments=c.arguments or "{}")
            for n, c in enumerate(response.tool_calls)
        ]
        assistant: dict[str, Any] = {
            "role": "assistant",
            "content": s.redactor.redact(response.content or "") or None,
        }
        if calls:
            assistant["tool_calls"] = [
                s.redactor.redact_tree(c.to_message()) for c in calls
            ]
        attempt.messages.append(assistant)
        s.log(
            f"LLM [{response.model or '?'}] finish={response.finish_reason} "
            f"tool_calls={len(calls)} content={len(response.content or '')} chars"
        )

        step = StepTrace(iteration=i, model=response.model)
        if not calls:
            return await self._finish(s, i, step, response.content or "")

        for n, call in enumerate(calls):
            s.remaining = calls[n + 1 :]
            outcome = await self._process_call(s, i, step, assistant, call)
            if outcome is None:
                if s.cancelled and s.remaining:
                    # Let the in-flight call finish, skip the rest of the batch.
                    self._stop_at(s, i, step)
                    return CANCELLED
                continue
            if outcome.status == "failed":
                # Trace and transcript are complete; ask for a hint, then fail.
                return await self._fail_on_repeat(s, i, step)
            return outcome
        attempt.trace.steps.append(step)
        return CONTINUE

    async def _complete(self, s: _Session) -> CompletionResponse:
        request = CompletionRequest(
            messages=s.attempt.messages,
            tools=s.schemas,
            tool_choice="auto",
            max_tokens=self.config.max_tokens,
            role="motor",
        )
        retries = self.config.llm_max_retries
        for retry in range(retries + 1):
            try:
                return await self.backend.complete(request)
            except Exception as e:
                s.log(f"LLM ERROR (try {retry + 1}/{retries + 1}): {e}")
                if retry == retries:
                    if isinstance(e, ModelBackendError):
                        raise
                    raise ModelBackendError(f"{type(e).__name__}: {e}") from e
                delay = self.config.llm_retry_backoff_sec * (retry + 1)
                logger.warning(
                    "motor_loop: run %s model request failed (%s), retrying in %.1fs",
                    s.run.id,
                    e,
                    delay,
                )
                await asyncio.sleep(delay)
        raise ModelBackendError("unreachable")

    # --- tool calls ---

    async def _process_call(
        self,
        s: _Session,
        i: int,
        step: StepTrace,
        assistant: dict[str, Any],
        call: ToolCall,
    ) -> StepOutcome | None:
        """Handle one tool call. Returns None to go on with the batch."""
        try:
            args = json.loads(call.arguments) if call.arguments.strip() else {}
        except ValueError:
            args = None
        if not isinstance(args, dict):
            result = ToolResult.failure(
                "invalid_args",
                f"Arguments for {call.name} are not a valid JSON object. Send a JSON object.",
                retryable=True,
            )
            return self._record(s, step, call, {"raw": call.arguments[:2000]}, result)

        if call.name in s.synthetic:
            return await self._synthetic(s, i, step, assistant, call, args)

        if call.name not in s.run.tools:
            granted = ", ".join(s.run.tools) or "none"
            result = ToolResult.failure(
                "tool_not_available",
                f'Tool "{call.name}" is not available for this task. Granted tools: {granted}.',
            )
            return self._record(s, step, call, args, result)

        resolution = resolve_args(call.name, args, self.credentials)
        if resolution.missing:
            result = ToolResult.failure(
                "auth_failed", missing_credentials_message(resolution.missing)
            )
            return self._record(s, step, call, args, result)

        if call.name == "bash" and args.get("description"):
            s.log(f"BASH: {args['description']}")
        result = await self.executor.execute(call.name, resolution.args, s.ctx)
        self._enrich_domain_error(s.run, result)

        blocked = _BLOCKED_DOMAIN_RE.match(result.output) if not result.ok else None
        if (
            blocked
            and result.error_code == "permission_denied"
            and self.config.auto_ask_on_blocked_domain
        ):
            # The user's answer becomes this call's result, unless the failure repeats.
            if self._record(s, step, call, args, result, append=False) is FAILED:
                s.attempt.messages.append(
                    {"role": "tool", "tool_call_id": call.id, "content": result.to_message_content()}
                )
                return FAILED
            question = (
                f'The task needs access to domain "{blocked.group(1)}" which is not in the '
                "allowed list. Grant access?"
            )
            return await self._pause_for_input(s, i, step, call, question, PauseReason.BLOCKED_DOMAIN)

        # Redact before spilling so the saved full output holds no secrets either.
        result.output = s.redactor.redact(result.output)
        result.output = truncate_tool_output(
            result.output, call.name, call.id, s.ctx.workspace
        ).content
        return self._record(s, step, call, args, result)

    async def _synthetic(
        self,
        s: _Session,
        i: int,
        step: StepTrace,
        assistant: dict[str, Any],
        call: ToolCall,
        args: dict[str, Any],
    ) -> StepOutcome | None:
        try:
            parsed = SYNTHETIC_TOOL_ARGS[call.name].model_validate(args)
        except ValidationError as e:
            trace_args = args if call.name != "save_credential" else _masked_credential_args(args)
            return self._record(s, step, call, trace_args, invalid_args_result(call.name, e))

        if call.name == "ask_user":
            step.tool_calls.append(
                ToolCallTrace(
                    tool=call.name,
                    args=s.redactor.redact_tree(args),
                    result=ToolResult.success("Awaiting user input", provenance="user"),
                )
            )
            s.attempt.trace.tool_calls += 1
            return await self._pause_for_input(s, i, step, call, parsed.question, PauseReason.ASK_USER)

        if call.name == "request_approval":
            step.tool_calls.append(
                ToolCallTrace(
                    tool=call.name,
                    args=s.redactor.redact_tree(args),
                    result=ToolResult.success("Awaiting approval", provenance="user"),
                )
            )
            s.attempt.trace.tool_calls += 1
            return await self._pause_for_approval(s, i, step, call, parsed.action)

        result = await self._save_credential(s, parsed.name, parsed.value)
        _mask_credential_in_message(assistant, call.id, parsed.value, s.redactor)
        return self._record(s, step, call, _masked_credential_args(args), result)

    async def _save_credential(self, s: _Session, name: str, value: str) -> ToolResult:
        store = self.credentials
        if store is None:
            return ToolResult.failure("tool_not_available", "No credential store is configured.")
        if s.skill is not None:
            required = s.skill.policy.required_credentials
            if not required:
                return ToolResult.failure(
                    "permission_denied",
                    f'Skill "{s.skill.name}" declares no required_credentials; '
                    "credentials cannot be saved from this run.",
                )
            if name not in required:
                return ToolResult.failure(
                    "permission_denied",
                    f'Credential "{name}" is not declared by skill "{s.skill.name}". '
                    f"Allowed: {', '.join(required)}.",
                )
        try:
            store.set(name, value)
        except Exception as e:
            logger.warning("motor_loop: run %s failed to save credential %s: %s", s.run.id, name, e)
            return ToolResult.failure(
                "execution_error", f"Failed to save credential: {type(e).__name__}", retryable=True
            )
        s.redactor.add(value)
        if s.ctx.container is not None:
            try:
                await s.ctx.container.deliver_credential(credential_to_runtime_key(name), value)
            except Exception as e:
                logger.debug("motor_loop: container delivery of %s failed: %s", name, e)
        if s.skill is None and name not in s.run.pending_credentials:
            s.run.pending_credentials.append(name)
        logger.info("motor_loop: run %s saved credential %s", s.run.id, name)
        return ToolResult.success(
            f'Credential "{name}" saved. Available as ${credential_to_runtime_key(name)} '
            f"or <credential:{name}> in this and future runs."
        )

    def _record(
        self,
        s: _Session,
        step: StepTrace,
        call: ToolCall,
        args: dict[str, Any],
        result: ToolResult,
        append: bool = True,
    ) -> StepOutcome | None:
        """Add the call to trace and transcript, update the failure tracker.

        Returns FAILED when the identical-failure threshold is reached.
        """
        result.output = s.redactor.redact(result.output)
        trace_args = s.redactor.redact_tree(args)
        step.tool_calls.append(
            ToolCallTrace(
                tool=call.name, args=trace_args, result=result, duration_ms=result.duration_ms
            )
        )
        trace = s.attempt.trace
        trace.tool_calls += 1
        if not result.ok:
            trace.errors += 1
        if append:
            s.attempt.messages.append(
                {"role": "tool", "tool_call_id": call.id, "content": result.to_message_content()}
            )
        status = "OK" if result.ok else f"FAIL {result.error_code}"
        s.log(
            f"TOOL {call.name}({json.dumps(trace_args, ensure_ascii=False)[:300]}) -> "
            f"{status} ({result.duration_ms}ms): {result.output[:200]!r}"
        )
        count = s.tracker.update(call.name, trace_args, result)
        if count >= self.config.consecutive_failure_threshold:
            s.log(f"REPEATED FAILURE: {call.name} failed {count} times with {result.error_code}")
            return FAILED
        return None

    def _enrich_domain_error(self, run: Run, result: ToolResult) -> None:
        if result.ok or not run.domains or "Allowed domains:" in result.output:
            return
        text = result.output.lower()
        if "domain" in text or "allowed" in text:
            result.output += (
                f"\nAllowed domains: {', '.join(run.domains)}. "
                "You MUST call ask_user to request access, do not work around this."
            )

    def _skip_remaining(self, s: _Session) -> None:
        """Answer the calls left in the batch so the transcript stays well-formed."""
        for call in s.remaining:
            s.attempt.messages.append(
                {
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": ToolResult.failure(
                        "execution_error", SKIPPED_CALL_OUTPUT, retryable=True
                    ).to_message_content(),
                }
            )
        s.remaining = []

    async def _deliver_credentials(self, s: _Session) -> None:
        container = s.ctx.container
        if container is None or self.credentials is None:
            return
        key = (s.run.id, s.attempt.id)
        if key in self._delivered:
            return
        names = self.credentials.list()
        if s.skill is not None and s.skill.policy.required_credentials:
            required = set(s.skill.policy.required_credentials)
            names = [n for n in names if n in required]
        delivered = 0
        for name in names:
            value = self.credentials.get(name)
            if not value:
                continue
            try:
                await container.deliver_credential(credential_to_runtime_key(name), value)
                delivered += 1
            except Exception as e:
                logger.warning("motor_loop: credential %s not delivered to container: %s", name, e)
        self._delivered.add(key)
        if delivered:
            s.log(f"CREDENTIALS delivered to container: {delivered}")

    # --- transitions ---

    async def _pause_for_input(
        self,
        s: _Session,
        i: int,
        step: StepTrace,
        call: ToolCall,
        question: str,
        reason: PauseReason,
    ) -> StepOutcome:
        if s.cancelled:
            self._stop_at(s, i, step)
            return CANCELLED
        run, attempt = s.run, s.attempt
        question = s.redactor.redact(question)
        attempt.pending_question = question
        attempt.pending_tool_call_id = call.id
        self._stop_at(s, i, step)
        attempt.status = "awaiting_input"
        run.status = "awaiting_input"
        await self.store.update_run(run)
        if s.cancelled:
            return CANCELLED
        self.sink.emit(make_signal(run.id, attempt.index, "awaiting_input", question=question))
        s.log(f"PAUSED ({reason.value}): {question}")
        logger.info("motor_loop: run %s awaiting input (%s)", run.id, reason.value)
        return StepOutcome("paused", reason)

    async def _pause_for_approval(
        self, s: _Session, i: int, step: StepTrace, call: ToolCall, action: str
    ) -> StepOutcome:
        if s.cancelled:
            self._stop_at(s, i, step)
            return CANCELLED
        run, attempt = s.run, s.attempt
        action = s.redactor.redact(action)
        expires_at = utc_now() + timedelta(seconds=self.config.approval_timeout_sec)
        attempt.pending_approval = PendingApproval(
            action=action, step_cursor=i + 1, expires_at=expires_at
        )
        attempt.pending_tool_call_id = call.id
        self._stop_at(s, i, step)
        attempt.status = "awaiting_approval"
        run.status = "awaiting_approval"
        await self.store.update_run(run)
        if s.cancelled:
            return CANCELLED
        self.sink.emit(
            make_signal(
                run.id,
                attempt.index,
                "awaiting_approval",
                action=action,
                expires_at=expires_at.isoformat(),
            )
        )
        s.log(f"PAUSED (approval): {action}")
        logger.info("motor_loop: run %s awaiting approval", run.id)
        return StepOutcome("paused", PauseReason.APPROVAL)

    def _stop_at(self, s: _Session, i: int, step: StepTrace) -> None:
        self._skip_remaining(s)
        attempt = s.attempt
        attempt.trace.steps.append(step)
        attempt.step_cursor = i + 1
        attempt.trace.total_iterations = i + 1
        attempt.trace.total_duration_ms = _elapsed_ms(attempt)

    async def _finish(self, s: _Session, i: int, step: StepTrace, content: str) -> StepOutcome:
        """No tool calls: genuine completion, or a degenerate stop after errors."""
        run, attempt = s.run, s.attempt
        if s.cancelled:
            self._stop_at(s, i, step)
            return CANCELLED
        if attempt.trace.errors > 0 and (not content.strip() or looks_like_xml_tool_call(content)):
            self._stop_at(s, i, step)
            summary = classify(attempt.trace, s.tracker.count, category="model_failure")
            summary.hint = XML_FAILURE_HINT if content.strip() else EMPTY_FAILURE_HINT
            s.log(f"DEGENERATE STOP: {summary.hint}")
            await self._fail(s, summary)
            return FAILED

        self._stop_at(s, i, step)
        artifacts: list[str] = []
        if self.artifacts_dir is not None:
            artifacts = await asyncio.to_thread(
                persist_artifacts, s.ctx.workspace, self.artifacts_dir, run.id
            )
        installed = None
        if self.skills_dir is not None:
            try:
                installed = await asyncio.to_thread(
                    extract_skills,
                    s.ctx.workspace,
                    self.skills_dir,
                    run.id,
                    run.pending_credentials,
                )
            except (SkillError, OSError) as e:
                logger.warning("motor_loop: run %s skill extraction failed: %s", run.id, e)
                s.log(f"SKILL EXTRACTION FAILED: {e}")

        if s.cancelled:
            return CANCELLED

        attempt.status = "completed"
        attempt.completed_at = utc_now()
        result = TaskResult(
            summary=s.redactor.redact(content.strip()) or NO_SUMMARY,
            run_id=run.id,
            artifacts=artifacts,
            installed_skills=installed if installed and (installed.created or installed.updated) else None,
            stats=TaskStats(
                iterations=i + 1,
                duration_ms=attempt.trace.total_duration_ms,
                energy_cost=round(run.energy_consumed, 6),
                errors=attempt.trace.errors,
            ),
            evidence=collect_evidence(run),
        )
        run.result = result
        run.status = "completed"
        run.completed_at = attempt.completed_at
        await self.store.update_run(run)
        self.sink.emit(
            make_signal(run.id, attempt.index, "completed", result=result.model_dump(mode="json"))
        )
        s.log(f"COMPLETED in {i + 1} iterations: {result.summary[:300]}")
        logger.info("motor_loop: run %s completed in %d iterations", run.id, i + 1)
        return COMPLETED

    async def _fail_on_repeat(self, s: _Session, i: int, step: StepTrace) -> StepOutcome:
        attempt = s.attempt
        last = step.tool_calls[-1]
        self._stop_at(s, i, step)
        summary = classify(
            attempt.trace, s.tracker.count, last_error_code=last.result.error_code
        )
        reason = f"Tool {last.tool} failed {s.tracker.count} times with {last.result.error_code}"
        hint = await get_failure_hint(self.backend, attempt.messages, reason)
        if s.cancelled:
            return CANCELLED
        summary.hint = s.redactor.redact(hint) if hint else reason
        await self._fail(s, summary)
        return FAILED

    async def _fail(self, s: _Session, summary: FailureSummary) -> AttemptOutcome:
        if s.cancelled:
            return await self._cancelled(s)
        run, attempt = s.run, s.attempt
        if summary.hint:
            summary.hint = s.redactor.redact(summary.hint)
        attempt.status = "failed"
        attempt.failure = summary
        attempt.completed_at = utc_now()
        attempt.clear_pending()
        attempt.trace.total_duration_ms = _elapsed_ms(attempt)
        s.log(f"FAILED [{summary.category}] action={summary.suggested_action}: {summary.hint or ''}")
        logger.info(
            "motor_loop: run %s attempt %d failed (%s)", run.id, attempt.index, summary.category
        )
        if s.settle_failures:
            await settle_failure(run, attempt, self.store, self.sink)
        else:
            await self.store.update_run(run)
        return AttemptOutcome("failed", failure=summary)

    async def _cancelled(self, s: _Session) -> AttemptOutcome:
        run, attempt = s.run, s.attempt
        attempt.status = "failed"
        attempt.completed_at = utc_now()
        attempt.clear_pending()
        attempt.trace.total_duration_ms = _elapsed_ms(attempt)
        # Cancellation is terminal and emits no signal.
        run.status = "failed"
        run.completed_at = run.completed_at or attempt.completed_at
        await self.store.update_run(run)
        s.log("CANCELLED")
        logger.info("motor_loop: run %s cancelled", run.id)
        return AttemptOutcome("failed", cancelled=True)

    def _result(self, s: _Session, outcome: StepOutcome) -> AttemptOutcome:
        attempt = s.attempt
        if outcome.status == "completed":
            return AttemptOutcome("completed", result=s.run.result)
        if outcome.status == "failed":
            return AttemptOutcome("failed", failure=attempt.failure)
        return AttemptOutcome(attempt.status, pause_reason=outcome.pause_reason)


def _elapsed_ms(attempt: Attempt) -> int:
    return int((utc_now() - attempt.started_at).total_seconds() * 1000)


def _masked_credential_args(args: dict[str, Any]) -> dict[str, Any]:
    masked = dict(args)
    if "value" in masked:
        masked["value"] = REDACTION_MARKER
    return masked


def _mask_credential_in_message(
    assistant: dict[str, Any], call_id: str, value: str, redactor: Redactor
) -> None:
    """Strip a just-saved secret from the assistant turn that carried it."""
    for tool_call in assistant.get("tool_calls") or []:
        function = tool_call.get("function") or {}
        if tool_call.get("id") == call_id:
            try:
                args = json.loads(function.get("arguments") or "{}")
            except ValueError:
                args = None
            if isinstance(args, dict):
                function["arguments"] = json.dumps(_masked_credential_args(args), ensure_ascii=False)
            else:
                function["arguments"] = (function.get("arguments") or "").replace(
                    value, REDACTION_MARKER
                )
        elif function.get("arguments"):
            function["arguments"] = redactor.redact(function["arguments"])
    if assistant.get("content"):
        assistant["content"] = redactor.redact(assistant["content"])
