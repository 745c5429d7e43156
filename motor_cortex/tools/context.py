"""Execution context handed to every tool."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from pydantic import BaseModel

from motor_cortex.models import ToolResult


class FetchResponse(BaseModel):
    """What a fetch callback returns. Status >= 400 is reported as a failure."""

    url: str
    status: int
    content_type: str = ""
    text: str = ""


class SearchHit(BaseModel):
    title: str
    url: str
    snippet: str = ""


FetchFn = Callable[..., Awaitable[FetchResponse]]
SearchFn = Callable[..., Awaitable[list[SearchHit]]]


@runtime_checkable
class ContainerHandle(Protocol):
    """Isolated execution environment owned by one run.

    Created and torn down by the run manager; the loop only delivers
    credentials into it and routes container-capable tools through it.
    """

    container_id: str

    async def deliver_credential(self, name: str, value: str) -> None:
        """One-way, in-memory secret delivery. Never written to the container filesystem."""
        ...

    async def execute(self, tool: str, args: dict[str, Any], timeout_sec: float) -> ToolResult:
        """Run a tool inside the container."""
        ...


@dataclass(frozen=True)
class ToolLimits:
    shell_timeout_sec: float = 60.0
    code_timeout_sec: float = 30.0
    fetch_timeout_sec: float = 30.0
    max_fetch_chars: int = 15000

    @classmethod
    def from_settings(cls, settings: dict[str, Any]) -> "ToolLimits":
        cfg = settings.get("tools") or {}
        return cls(
            shell_timeout_sec=float(cfg.get("shell_timeout_sec", 60)),
            code_timeout_sec=float(cfg.get("code_timeout_sec", 30)),
            fetch_timeout_sec=float(cfg.get("fetch_timeout_sec", 30)),
            max_fetch_chars=int(cfg.get("max_fetch_chars", 15000)),
        )


@dataclass
class ToolContext:
    """Sandbox boundary for one attempt.

    allowed_roots covers reads (workspace plus an optional read-only skill
    directory); write_roots is the workspace only.
    """

    workspace: Path
    allowed_roots: list[Path] = field(default_factory=list)
    write_roots: list[Path] = field(default_factory=list)
    container: ContainerHandle | None = None
    allowed_domains: list[str] | None = None
    fetch_fn: FetchFn | None = None
    search_fn: SearchFn | None = None
    limits: ToolLimits = field(default_factory=ToolLimits)

    def __post_init__(self) -> None:
        if not self.allowed_roots:
            self.allowed_roots = [self.workspace]
        if not self.write_roots:
            self.write_roots = [self.workspace]
