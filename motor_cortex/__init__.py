"""Motor Cortex: sandboxed, resumable tool-calling runtime for delegated tasks."""

from motor_cortex.loop import AttemptLoop, AttemptOutcome, LoopConfig, PauseReason
from motor_cortex.manager import (
    ActiveRunExists,
    ContainerFactory,
    InvalidRunState,
    MaxAttemptsReached,
    MotorCortex,
    MotorCortexError,
    RunNotFound,
)
from motor_cortex.models import Attempt, FailureSummary, Run, TaskResult, ToolResult

__all__ = [
    "ActiveRunExists",
    "Attempt",
    "AttemptLoop",
    "AttemptOutcome",
    "ContainerFactory",
    "FailureSummary",
    "InvalidRunState",
    "LoopConfig",
    "MaxAttemptsReached",
    "MotorCortex",
    "MotorCortexError",
    "PauseReason",
    "Run",
    "RunNotFound",
    "TaskResult",
    "ToolResult",
]
