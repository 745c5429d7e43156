"""MotorCortex: run lifecycle manager.

Owns the run registry for this process: starts runs as asyncio tasks, retries
failed attempts with recovery guidance, resumes paused runs, cancels, and
recovers persisted runs after a restart. Only one run may be active at a time.
"""

import asyncio
import logging
import re
import uuid
from pathlib import Path
from typing import Any, Iterable, Protocol, runtime_checkable

from motor_cortex.llm.protocol import ModelBackend
from motor_cortex.loop import (
    XML_FAILURE_HINT,
    AttemptLoop,
    LoopConfig,
    settle_failure,
)
from motor_cortex.failure import classify_crash
from motor_cortex.models import (
    DEFAULT_MAX_ATTEMPTS,
    PAUSED_STATUSES,
    Attempt,
    RecoveryContext,
    Run,
    new_attempt,
    utc_now,
)
from motor_cortex.resume import apply_approval, apply_user_answer
from motor_cortex.secrets import CredentialStore
from motor_cortex.settings import get_setting
from motor_cortex.signals import LoggingSignalSink, SignalSink, make_signal
from motor_cortex.skills import (
    BASELINE_FILE,
    LoadedSkill,
    SkillError,
    load_skill,
    prepare_skill_workspace,
)
from motor_cortex.state.store import RunStore
from motor_cortex.system_prompt import build_initial_messages
from motor_cortex.tools.context import ContainerHandle, FetchFn, SearchFn, ToolLimits
from motor_cortex.tools.executor import ToolExecutor, build_default_executor

logger = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(r"\b(?:[a-z0-9](?:[a-z0-9-]*[a-z0-9])?\.)+[a-z]{2,10}\b", re.IGNORECASE)
# Domain-shaped words that show up in questions but are never real grants.
_DOMAIN_BLOCKLIST = frozenset(
    {
        "e.g",
        "i.e",
        "etc.com",
        "example.com",
        "example.org",
        "domain1.com",
        "domain2.com",
        "their.answer",
    }
)
_GITHUB_HOSTS = ("raw.githubusercontent.com", "api.github.com", "codeload.github.com")


class MotorCortexError(Exception):
    """Misuse of the run manager API."""


class RunNotFound(MotorCortexError):
    pass


class InvalidRunState(MotorCortexError):
    pass


class ActiveRunExists(MotorCortexError):
    pass


class MaxAttemptsReached(MotorCortexError):
    pass


@runtime_checkable
class ContainerFactory(Protocol):
    """Creates and tears down the isolated environment a run executes in."""

    async def create(
        self, run_id: str, workspace: Path, allowed_domains: list[str]
    ) -> ContainerHandle: ...

    async def destroy(self, run_id: str) -> None: ...


def extract_domains(text: str) -> list[str]:
    """Domains mentioned in free text, e.g. a pending question. github.com pulls in its API hosts."""
    domains = list(dict.fromkeys(m.group(0).lower() for m in _DOMAIN_RE.finditer(text or "")))
    domains = [d for d in domains if d not in _DOMAIN_BLOCKLIST]
    if "github.com" in domains:
        domains.extend(h for h in _GITHUB_HOSTS if h not in domains)
    return domains


def merge_domains(*groups: Iterable[str] | None) -> list[str]:
    merged: list[str] = []
    for group in groups:
        for domain in group or ():
            domain = domain.strip().lower()
            if domain and domain not in merged:
                merged.append(domain)
    return merged


def auto_retry_guidance(attempt: Attempt) -> str:
    failure = attempt.failure
    if failure is None:
        return "Previous attempt failed. Try again with a different approach."
    if failure.category == "model_failure" and failure.hint == XML_FAILURE_HINT:
        return (
            "Previous attempt failed: model produced XML text instead of tool calls. "
            "Use the tool API to call tools."
        )
    if failure.category == "tool_failure":
        guidance = (
            f'Previous attempt failed: tool error "{failure.last_error_code or "unknown"}". '
            "Try a different approach."
        )
        if failure.hint:
            guidance += f" {failure.hint}"
        return guidance
    return "Previous attempt failed. Try again with a different approach."


class MotorCortex:
    """Run registry and lifecycle API.

    Runs execute as background asyncio tasks; results arrive through the
    signal sink. wait() lets callers block until a run stops for now.
    """

    def __init__(
        self,
        backend: ModelBackend,
        store: RunStore,
        workspaces_dir: Path,
        sink: SignalSink | None = None,
        credentials: CredentialStore | None = None,
        settings: dict[str, Any] | None = None,
        artifacts_dir: Path | None = None,
        skills_dir: Path | None = None,
        container_factory: ContainerFactory | None = None,
        executor: ToolExecutor | None = None,
        fetch_fn: FetchFn | None = None,
        search_fn: SearchFn | None = None,
    ) -> None:
        settings = settings or {}
        self.store = store
        self.sink = sink or LoggingSignalSink()
        self.workspaces_dir = workspaces_dir
        self.skills_dir = skills_dir
        self.container_factory = container_factory
        self.fetch_fn = fetch_fn
        self.search_fn = search_fn
        self.loop = AttemptLoop(
            backend=backend,
            store=store,
            sink=self.sink,
            executor=executor or build_default_executor(),
            credentials=credentials,
            config=LoopConfig.from_settings(settings),
            artifacts_dir=artifacts_dir,
            skills_dir=skills_dir,
            limits=ToolLimits.from_settings(settings),
        )
        self.max_iterations = int(get_setting(settings, "motor.max_iterations", 20))
        self.retry_max_iterations = int(get_setting(settings, "motor.retry_max_iterations", 15))
        self.max_attempts = int(get_setting(settings, "motor.max_attempts", DEFAULT_MAX_ATTEMPTS))
        self.auto_retry = bool(get_setting(settings, "motor.auto_retry", True))
        self.stale_run_sec = float(get_setting(settings, "motor.stale_run_sec", 300))

        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancels: dict[str, asyncio.Event] = {}
        self._containers: dict[str, ContainerHandle] = {}
        # Runs currently driven by a task; the task and the API share this object.
        self._live: dict[str, Run] = {}

    # --- queries ---

    async def get_run(self, run_id: str) -> Run | None:
        live = self._live.get(run_id)
        if live is not None:
            return live
        return await self.store.get_run(run_id)

    async def list_runs(self, status: str | None = None, limit: int | None = None) -> list[Run]:
        return await self.store.list_runs(status=status, limit=limit)

    async def wait(self, run_id: str) -> Run:
        """Block until the run has no driving task (completed, failed or paused)."""
        while (task := self._tasks.get(run_id)) is not None and not task.done():
            await asyncio.shield(task)
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run not found: {run_id}")
        return run

    # --- lifecycle ---

    async def start_run(
        self,
        task: str,
        tools: Iterable[str],
        domains: Iterable[str] | None = None,
        max_iterations: int | None = None,
        skill: str | None = None,
    ) -> Run:
        """Create a run with attempt 0 and start it in the background."""
        task = (task or "").strip()
        if not task:
            raise MotorCortexError("Task must not be empty")
        granted = list(dict.fromkeys(tools))
        unknown = [t for t in granted if self.loop.executor.get(t) is None]
        if unknown:
            raise MotorCortexError(f"Unknown tools: {', '.join(unknown)}")

        active = await self.store.get_active_run()
        if active is not None:
            raise ActiveRunExists(
                f"Cannot start new run: active run exists ({active.id}, status: {active.status})"
            )

        loaded = self._load_skill(skill) if skill else None
        run = Run(
            id=str(uuid.uuid4()),
            task=task,
            skill=loaded.name if loaded else None,
            tools=tuple(granted),
            domains=merge_domains(loaded.policy.domains if loaded else None, domains),
            max_attempts=self.max_attempts,
        )
        iterations = max_iterations or self.max_iterations
        messages = build_initial_messages(
            run, iterations, loaded, synthetic_tools=self.loop.synthetic_tools()
        )
        run.attempts.append(new_attempt(run, 0, iterations, messages))
        await self.store.create_run(run)
        logger.info("motor_cortex: run %s created (tools=%s)", run.id, ",".join(run.tools))
        self._spawn(run, run.attempts[0], loaded)
        return run

    async def retry_run(
        self,
        run_id: str,
        guidance: str,
        constraints: list[str] | None = None,
        domains: Iterable[str] | None = None,
    ) -> Run:
        """Start a new attempt on a failed run, carrying recovery guidance."""
        run = await self._require_run(run_id)
        running = self._tasks.get(run_id)
        if running is not None and not running.done():
            raise InvalidRunState(f"Run {run_id} is still executing")
        last = run.current_attempt
        if last is None or last.status != "failed":
            status = last.status if last else "none"
            raise InvalidRunState(
                f"Cannot retry run {run_id}: last attempt is not failed (status: {status})"
            )
        if len(run.attempts) >= run.max_attempts:
            raise MaxAttemptsReached(
                f"Cannot retry run {run_id}: max attempts ({run.max_attempts}) reached"
            )
        active = await self.store.get_active_run()
        if active is not None and active.id != run_id:
            raise ActiveRunExists(
                f"Cannot retry: active run exists ({active.id}, status: {active.status})"
            )
        run.domains = merge_domains(run.domains, domains)
        skill = self._load_run_skill(run)
        attempt = await self._new_retry_attempt(
            run, last, guidance, constraints or [], "supervisor", skill
        )
        logger.info(
            "motor_cortex: run %s retrying as attempt %d: %s",
            run.id,
            attempt.index,
            guidance[:100],
        )
        self._spawn(run, attempt, skill)
        return run

    async def cancel_run(self, run_id: str) -> Run:
        """Fail the run now. The in-flight tool call finishes; no signal is emitted."""
        run = await self._require_run(run_id)
        if not run.is_active:
            raise InvalidRunState(f"Run {run_id} is not active (status: {run.status})")
        previous = run.status
        attempt = run.current_attempt
        if attempt is not None and attempt.status not in ("completed", "failed"):
            attempt.status = "failed"
            attempt.completed_at = utc_now()
            attempt.clear_pending()
        run.status = "failed"
        run.completed_at = utc_now()
        # Set before the first await so a live loop cannot settle the run in between.
        cancel = self._cancels.get(run_id)
        if cancel is not None:
            cancel.set()
        await self.store.update_run(run)
        if run_id not in self._tasks:
            await self._release_container(run_id)
        logger.info("motor_cortex: run %s cancelled (was %s)", run_id, previous)
        return run

    async def respond_to_run(
        self, run_id: str, answer: str, domains: Iterable[str] | None = None
    ) -> Run:
        """Answer a pending ask_user and resume. Domains named in the question are granted
        when none are given explicitly."""
        run = await self._require_run(run_id)
        await self._join(run_id)
        if run.status != "awaiting_input":
            raise InvalidRunState(f"Run {run_id} is not awaiting input (status: {run.status})")
        attempt = self._require_attempt(run)
        granted = list(domains or [])
        if not granted and attempt.pending_question:
            granted = extract_domains(attempt.pending_question)
            if granted:
                logger.info(
                    "motor_cortex: run %s auto-extracted domains %s", run_id, ",".join(granted)
                )
        granted = merge_domains(granted)
        run.domains = merge_domains(run.domains, granted)
        apply_user_answer(attempt, answer, granted)
        run.status = "running"
        await self.store.update_run(run)
        logger.info("motor_cortex: run %s resumed after user answer", run_id)
        self._spawn(run, attempt, self._load_run_skill(run))
        return run

    async def respond_to_approval(self, run_id: str, approved: bool) -> Run:
        run = await self._require_run(run_id)
        await self._join(run_id)
        if run.status != "awaiting_approval":
            raise InvalidRunState(
                f"Run {run_id} is not awaiting approval (status: {run.status})"
            )
        attempt = self._require_attempt(run)
        pending = attempt.pending_approval
        if pending is not None and utc_now() > pending.expires_at:
            await self._fail_paused(run, attempt, "Approval timed out")
            raise InvalidRunState(f"Approval for run {run_id} expired at {pending.expires_at}")

        apply_approval(attempt, approved)
        if approved:
            run.status = "running"
            await self.store.update_run(run)
            logger.info("motor_cortex: run %s approval granted, resuming", run_id)
            self._spawn(run, attempt, self._load_run_skill(run))
            return run

        await self._fail_paused(run, attempt, "Approval denied by user")
        logger.info("motor_cortex: run %s approval denied", run_id)
        return run

    async def recover_on_restart(self) -> dict[str, int]:
        """Resume or settle persisted active runs after a process restart."""
        counts = {"resumed": 0, "re_emitted": 0, "failed": 0}
        for run in await self.store.list_runs():
            attempt = run.current_attempt
            if attempt is None or run.id in self._tasks:
                continue
            if run.status == "running":
                age = (utc_now() - run.started_at).total_seconds()
                if attempt.step_cursor == 0 and age > self.stale_run_sec:
                    logger.info("motor_cortex: failing stale run %s (no progress)", run.id)
                    attempt.status = "failed"
                    attempt.completed_at = utc_now()
                    attempt.failure = classify_crash(
                        attempt.trace, "Run stale on restart (no progress before crash)"
                    )
                    await settle_failure(run, attempt, self.store, self.sink)
                    counts["failed"] += 1
                    continue
                logger.info(
                    "motor_cortex: resuming run %s at step %d", run.id, attempt.step_cursor
                )
                self._spawn(run, attempt, self._load_run_skill(run))
                counts["resumed"] += 1
            elif run.status == "awaiting_input":
                if attempt.pending_question:
                    self.sink.emit(
                        make_signal(
                            run.id,
                            attempt.index,
                            "awaiting_input",
                            question=attempt.pending_question,
                        )
                    )
                counts["re_emitted"] += 1
            elif run.status == "awaiting_approval":
                pending = attempt.pending_approval
                if pending is None or utc_now() > pending.expires_at:
                    logger.info("motor_cortex: run %s approval timed out", run.id)
                    await self._fail_paused(run, attempt, "Approval timed out")
                    counts["failed"] += 1
                    continue
                self.sink.emit(
                    make_signal(
                        run.id,
                        attempt.index,
                        "awaiting_approval",
                        action=pending.action,
                        expires_at=pending.expires_at.isoformat(),
                    )
                )
                counts["re_emitted"] += 1
            elif run.status == "created":
                logger.info("motor_cortex: starting created run %s", run.id)
                self._spawn(run, attempt, self._load_run_skill(run))
                counts["resumed"] += 1
        logger.info(
            "motor_cortex: recovery complete (resumed=%d, re_emitted=%d, failed=%d)",
            counts["resumed"],
            counts["re_emitted"],
            counts["failed"],
        )
        return counts

    async def shutdown(self) -> None:
        """Stop driving tasks. Progress is persisted per iteration; recover_on_restart resumes."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for run_id in list(self._containers):
            await self._release_container(run_id)

    # --- internals ---

    async def _require_run(self, run_id: str) -> Run:
        run = await self.get_run(run_id)
        if run is None:
            raise RunNotFound(f"Run not found: {run_id}")
        return run

    async def _join(self, run_id: str) -> None:
        """Let a task that just paused the run finish before the run is resumed."""
        task = self._tasks.get(run_id)
        if task is not None and not task.done() and task is not asyncio.current_task():
            await asyncio.shield(task)

    def _require_attempt(self, run: Run) -> Attempt:
        attempt = run.current_attempt
        if attempt is None:
            raise InvalidRunState(f"Run {run.id} has no current attempt")
        return attempt

    def _load_skill(self, name: str) -> LoadedSkill:
        if self.skills_dir is None:
            raise MotorCortexError("Skills directory is not configured")
        try:
            return load_skill(name, self.skills_dir)
        except SkillError as e:
            raise MotorCortexError(str(e)) from e

    def _load_run_skill(self, run: Run) -> LoadedSkill | None:
        if not run.skill or self.skills_dir is None:
            return None
        try:
            return load_skill(run.skill, self.skills_dir)
        except SkillError as e:
            logger.warning("motor_cortex: run %s skill %s unavailable: %s", run.id, run.skill, e)
            return None

    async def _new_retry_attempt(
        self,
        run: Run,
        last: Attempt,
        guidance: str,
        constraints: list[str],
        source: str,
        skill: LoadedSkill | None,
    ) -> Attempt:
        recovery = RecoveryContext(
            source=source,
            previous_attempt_id=last.id,
            guidance=guidance,
            constraints=constraints,
        )
        index = len(run.attempts)
        messages = build_initial_messages(
            run,
            self.retry_max_iterations,
            skill,
            recovery,
            synthetic_tools=self.loop.synthetic_tools(),
        )
        attempt = new_attempt(run, index, self.retry_max_iterations, messages, recovery)
        run.attempts.append(attempt)
        run.current_attempt_index = index
        run.status = "running"
        run.completed_at = None
        await self.store.update_run(run)
        return attempt

    def _next_auto_retry_allowed(self, run: Run, attempt: Attempt) -> bool:
        failure = attempt.failure
        return (
            self.auto_retry
            and failure is not None
            and failure.retryable
            and len(run.attempts) < run.max_attempts
        )

    def _spawn(self, run: Run, attempt: Attempt, skill: LoadedSkill | None) -> None:
        self._live[run.id] = run
        cancel = asyncio.Event()
        self._cancels[run.id] = cancel
        task = asyncio.create_task(self._drive(run, attempt, skill, cancel), name=f"motor-run-{run.id}")
        self._tasks[run.id] = task

        def _done(t: asyncio.Task[None]) -> None:
            if self._tasks.get(run.id) is t:
                del self._tasks[run.id]
                self._cancels.pop(run.id, None)
                self._live.pop(run.id, None)

        task.add_done_callback(_done)

    def _prepare_workspace(self, run: Run, skill: LoadedSkill | None) -> Path:
        if run.workspace_path and Path(run.workspace_path).is_dir():
            return Path(run.workspace_path)
        workspace = (self.workspaces_dir / run.id).resolve()
        workspace.mkdir(parents=True, exist_ok=True)
        run.workspace_path = str(workspace)
        if skill is not None and not (workspace / BASELINE_FILE).exists():
            try:
                prepare_skill_workspace(skill, workspace)
            except (OSError, SkillError) as e:
                logger.warning(
                    "motor_cortex: run %s could not copy skill %s: %s", run.id, skill.name, e
                )
        return workspace

    async def _ensure_container(self, run: Run, workspace: Path) -> ContainerHandle | None:
        container = self._containers.get(run.id)
        if container is not None or self.container_factory is None:
            return container
        container = await self.container_factory.create(run.id, workspace, list(run.domains))
        self._containers[run.id] = container
        run.container_id = container.container_id
        logger.info("motor_cortex: run %s container %s", run.id, container.container_id[:12])
        return container

    async def _release_container(self, run_id: str) -> None:
        self.loop.forget_run(run_id)
        if self._containers.pop(run_id, None) is None or self.container_factory is None:
            return
        try:
            await self.container_factory.destroy(run_id)
        except Exception as e:
            logger.warning("motor_cortex: run %s container teardown failed: %s", run_id, e)

    async def _drive(
        self, run: Run, attempt: Attempt, skill: LoadedSkill | None, cancel: asyncio.Event
    ) -> None:
        """Run attempts until the run completes, pauses, is cancelled or fails for good."""
        try:
            workspace = await asyncio.to_thread(self._prepare_workspace, run, skill)
            while True:
                container = await self._ensure_container(run, workspace)
                outcome = await self.loop.run(
                    run,
                    attempt,
                    workspace,
                    cancel=cancel,
                    container=container,
                    skill=skill,
                    settle_failures=False,
                    fetch_fn=self.fetch_fn,
                    search_fn=self.search_fn,
                )
                if outcome.cancelled or cancel.is_set():
                    await self._enforce_cancel(run, attempt)
                    return
                if outcome.status != "failed":
                    return
                if not self._next_auto_retry_allowed(run, attempt):
                    await settle_failure(run, attempt, self.store, self.sink)
                    return
                logger.info(
                    "motor_cortex: run %s auto-retrying %s failure",
                    run.id,
                    attempt.failure.category if attempt.failure else "unknown",
                )
                await self._release_container(run.id)
                attempt = await self._new_retry_attempt(
                    run, attempt, auto_retry_guidance(attempt), [], "auto_retry", skill
                )
        except Exception as e:
            # Infrastructure outside the loop: workspace, container, store.
            logger.exception("motor_cortex: run %s crashed", run.id)
            attempt.status = "failed"
            attempt.completed_at = utc_now()
            attempt.clear_pending()
            attempt.failure = classify_crash(attempt.trace, f"{type(e).__name__}: {e}")
            try:
                await settle_failure(run, attempt, self.store, self.sink)
            except Exception:
                logger.exception("motor_cortex: run %s failed state not persisted", run.id)
        finally:
            if run.status not in PAUSED_STATUSES:
                await self._release_container(run.id)

    async def _enforce_cancel(self, run: Run, attempt: Attempt) -> None:
        """Keep a cancelled run failed whatever the loop last wrote."""
        if attempt.status != "failed":
            attempt.status = "failed"
            attempt.completed_at = attempt.completed_at or utc_now()
            attempt.clear_pending()
        run.status = "failed"
        run.completed_at = run.completed_at or utc_now()
        await self.store.update_run(run)

    async def _fail_paused(self, run: Run, attempt: Attempt, message: str) -> None:
        attempt.status = "failed"
        attempt.completed_at = utc_now()
        attempt.clear_pending()
        await settle_failure(run, attempt, self.store, self.sink, error=message)
        await self._release_container(run.id)

