"""Sandboxed tools available to a run."""

from motor_cortex.tools.context import (
    ContainerHandle,
    FetchResponse,
    SearchHit,
    ToolContext,
    ToolLimits,
)
from motor_cortex.tools.executor import ToolExecutor, ToolSpec, build_default_executor
from motor_cortex.tools.sandbox import resolve_allowed_path

__all__ = [
    "ContainerHandle",
    "FetchResponse",
    "SearchHit",
    "ToolContext",
    "ToolExecutor",
    "ToolLimits",
    "ToolSpec",
    "build_default_executor",
    "resolve_allowed_path",
]
