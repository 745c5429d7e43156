"""Motor Cortex data model: runs, attempts, traces, tool results, failure summaries.

Everything here is persisted as JSON by the State Store, so all types are
pydantic models. Timestamps are timezone-aware UTC datetimes.
"""

import json
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

RunStatus = Literal[
    "created",
    "running",
    "awaiting_input",
    "awaiting_approval",
    "completed",
    "failed",
]
AttemptStatus = Literal[
    "running", "awaiting_input", "awaiting_approval", "completed", "failed"
]
ErrorCode = Literal[
    "invalid_args",
    "not_found",
    "permission_denied",
    "auth_failed",
    "tool_not_available",
    "execution_error",
    "timeout",
    "unknown",
]
Provenance = Literal["internal", "web", "user"]
FailureCategory = Literal[
    "tool_failure",
    "model_failure",
    "budget_exhausted",
    "invalid_task",
    "infra_failure",
    "unknown",
]
SuggestedAction = Literal["retry_with_guidance", "ask_user", "stop"]

ACTIVE_STATUSES: tuple[str, ...] = (
    "created",
    "running",
    "awaiting_input",
    "awaiting_approval",
)
PAUSED_STATUSES: tuple[str, ...] = ("awaiting_input", "awaiting_approval")
DEFAULT_MAX_ATTEMPTS = 3


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def json_dumps_unicode(obj: object) -> str:
    """Serialize to JSON; Unicode is stored as-is (no \\uXXXX escaping)."""
    return json.dumps(obj, ensure_ascii=False)


class ToolResult(BaseModel):
    """Uniform output of any tool invocation. error_code is set iff ok is False."""

    ok: bool
    output: str = ""
    error_code: ErrorCode | None = None
    retryable: bool = False
    provenance: Provenance = "internal"
    duration_ms: int = 0

    @model_validator(mode="after")
    def _error_code_matches_ok(self) -> "ToolResult":
        if self.ok:
            self.error_code = None
        elif self.error_code is None:
            self.error_code = "unknown"
        return self

    @classmethod
    def success(cls, output: str, provenance: Provenance = "internal") -> "ToolResult":
        return cls(ok=True, output=output, provenance=provenance)

    @classmethod
    def failure(
        cls,
        error_code: ErrorCode,
        output: str,
        retryable: bool = False,
        provenance: Provenance = "internal",
    ) -> "ToolResult":
        return cls(
            ok=False,
            output=output,
            error_code=error_code,
            retryable=retryable,
            provenance=provenance,
        )

    def to_message_content(self) -> str:
        """JSON body of the tool-result transcript entry."""
        body: dict[str, Any] = {"ok": self.ok, "output": self.output}
        if self.error_code:
            body["error"] = self.error_code
        return json_dumps_unicode(body)


class ToolCallTrace(BaseModel):
    """One tool invocation inside a step. args keep placeholders, never secrets."""

    tool: str
    args: dict[str, Any] = Field(default_factory=dict)
    result: ToolResult
    duration_ms: int = 0


class StepTrace(BaseModel):
    """One loop iteration."""

    iteration: int
    timestamp: datetime = Field(default_factory=utc_now)
    model: str = ""
    tool_calls: list[ToolCallTrace] = Field(default_factory=list)


class RunTrace(BaseModel):
    """Append-only audit log for one attempt."""

    run_id: str
    task: str
    skill: str | None = None
    steps: list[StepTrace] = Field(default_factory=list)
    total_iterations: int = 0
    total_duration_ms: int = 0
    total_energy_cost: float = 0.0
    llm_calls: int = 0
    tool_calls: int = 0
    errors: int = 0


class ToolOutcome(BaseModel):
    """Bounded view of a recent tool result, carried in a FailureSummary."""

    tool: str
    ok: bool
    error_code: str | None = None
    output: str = ""


class FailureSummary(BaseModel):
    """Structured explanation of why an attempt failed."""

    category: FailureCategory
    retryable: bool
    suggested_action: SuggestedAction
    last_error_code: str | None = None
    last_tool_results: list[ToolOutcome] = Field(default_factory=list)
    hint: str | None = None


class RecoveryContext(BaseModel):
    """Guidance carried from a failed attempt into the next one."""

    source: Literal["supervisor", "auto_retry"] = "supervisor"
    previous_attempt_id: str
    guidance: str
    constraints: list[str] = Field(default_factory=list)


class PendingApproval(BaseModel):
    action: str
    step_cursor: int
    expires_at: datetime


class Attempt(BaseModel):
    """One execution pass over a run; owns its transcript exclusively."""

    id: str
    index: int
    status: AttemptStatus = "running"
    messages: list[dict[str, Any]] = Field(default_factory=list)
    step_cursor: int = 0
    max_iterations: int
    trace: RunTrace
    pending_question: str | None = None
    pending_approval: PendingApproval | None = None
    pending_tool_call_id: str | None = None
    recovery_context: RecoveryContext | None = None
    failure: FailureSummary | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None

    def clear_pending(self) -> None:
        self.pending_question = None
        self.pending_approval = None
        self.pending_tool_call_id = None


class InstalledSkills(BaseModel):
    created: list[str] = Field(default_factory=list)
    updated: list[str] = Field(default_factory=list)


class TaskStats(BaseModel):
    iterations: int
    duration_ms: int
    energy_cost: float
    errors: int


class RunEvidence(BaseModel):
    """Observations collected from the trace, used when reviewing a run."""

    fetched_domains: list[str] = Field(default_factory=list)
    saved_credentials: list[str] = Field(default_factory=list)
    tools_used: list[str] = Field(default_factory=list)
    bash_used: bool = False


class TaskResult(BaseModel):
    """Final result of a successful run."""

    ok: bool = True
    summary: str
    run_id: str
    artifacts: list[str] = Field(default_factory=list)
    installed_skills: InstalledSkills | None = None
    stats: TaskStats
    evidence: RunEvidence = Field(default_factory=RunEvidence)


class Run(BaseModel):
    """One externally requested task with a fixed tool and domain grant."""

    id: str
    status: RunStatus = "created"
    task: str
    skill: str | None = None
    # Fixed at creation; attempts never widen it.
    tools: tuple[str, ...]
    domains: list[str] = Field(default_factory=list)
    attempts: list[Attempt] = Field(default_factory=list)
    current_attempt_index: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    result: TaskResult | None = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    energy_consumed: float = 0.0
    container_id: str | None = None
    workspace_path: str | None = None
    # Names saved via save_credential before a skill directory exists.
    pending_credentials: list[str] = Field(default_factory=list)

    @property
    def current_attempt(self) -> Attempt | None:
        if 0 <= self.current_attempt_index < len(self.attempts):
            return self.attempts[self.current_attempt_index]
        return None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


def new_attempt(
    run: Run,
    index: int,
    max_iterations: int,
    messages: list[dict[str, Any]],
    recovery_context: RecoveryContext | None = None,
) -> Attempt:
    """Build a fresh attempt for run with an empty trace."""
    return Attempt(
        id=f"att_{index}",
        index=index,
        messages=messages,
        max_iterations=max_iterations,
        trace=RunTrace(run_id=run.id, task=run.task, skill=run.skill),
        recovery_context=recovery_context,
    )
