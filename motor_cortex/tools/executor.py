"""ToolExecutor: registry of named tools, argument validation, dispatch."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from motor_cortex.models import ToolResult
from motor_cortex.tools import code_exec, file_ops, shell, web
from motor_cortex.tools.args import TOOL_ARGS, function_schema
from motor_cortex.tools.context import ToolContext

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Any, ToolContext], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: ToolHandler
    # Routed through ContainerHandle.execute when the run owns a container.
    container_capable: bool = False

    def schema(self) -> dict[str, Any]:
        return function_schema(self.name, self.description, self.args_model)


def invalid_args_result(tool: str, error: ValidationError) -> ToolResult:
    """Describe a validation failure. Missing required fields are not retryable."""
    problems = []
    missing = False
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "(root)"
        problems.append(f"{loc}: {item.get('msg', 'invalid')}")
        missing = missing or item.get("type") == "missing"
    return ToolResult.failure(
        "invalid_args",
        f"Invalid arguments for {tool}: " + "; ".join(problems),
        retryable=not missing,
    )


class ToolExecutor:
    """Executes granted tools. Capability checks happen in the loop, not here."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def names(self) -> list[str]:
        return list(self._tools)

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def schemas(self, names: list[str] | tuple[str, ...]) -> list[dict[str, Any]]:
        return [self._tools[n].schema() for n in names if n in self._tools]

    def validate(self, name: str, args: dict[str, Any]) -> BaseModel | ToolResult:
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult.failure("tool_not_available", f'Unknown tool "{name}"')
        try:
            return spec.args_model.model_validate(args)
        except ValidationError as e:
            return invalid_args_result(name, e)

    async def execute(self, name: str, args: dict[str, Any], context: ToolContext) -> ToolResult:
        started = time.monotonic()
        result = await self._dispatch(name, args, context)
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _dispatch(self, name: str, args: dict[str, Any], context: ToolContext) -> ToolResult:
        parsed = self.validate(name, args)
        if isinstance(parsed, ToolResult):
            return parsed
        spec = self._tools[name]
        try:
            if context.container is not None and spec.container_capable:
                return await context.container.execute(
                    name, parsed.model_dump(), context.limits.shell_timeout_sec
                )
            return await spec.handler(parsed, context)
        except OSError as e:
            logger.warning("tool_executor: %s failed: %s", name, e)
            return ToolResult.failure("execution_error", f"{type(e).__name__}: {e}", retryable=True)
        except Exception as e:
            logger.exception("tool_executor: %s raised", name)
            return ToolResult.failure("execution_error", f"{type(e).__name__}: {e}", retryable=True)


TOOL_DESCRIPTIONS: dict[str, str] = {
    "read": "Read a file with line numbers. Use offset/limit to page (max 2000 lines).",
    "write": "Write content to a file in the workspace, creating parent directories.",
    "list": "List files and directories, optionally recursive.",
    "glob": 'Find files by glob pattern (e.g. "**/*.py").',
    "grep": "Search file contents with a regular expression (max 100 matches).",
    "patch": "Replace old_text with new_text in a file. old_text must match exactly once.",
    "bash": (
        "Run an allowlisted command or single-pipe pipeline in the workspace "
        "(echo, cat, grep, sed, awk, jq, curl, ...). No ;, &&, ||, $() or redirects."
    ),
    "code": "Run a Python snippet in a fresh interpreter with the workspace as cwd.",
    "fetch": "Fetch a URL (GET/POST) from an allowed domain. Preferred over curl.",
    "search": "Web search. Results are limited to the allowed domains when the run has them.",
}

_HANDLERS: dict[str, tuple[ToolHandler, bool]] = {
    "read": (file_ops.read_file, True),
    "write": (file_ops.write_file, True),
    "list": (file_ops.list_dir, True),
    "glob": (file_ops.glob_files, True),
    "grep": (file_ops.grep_files, True),
    "patch": (file_ops.patch_file, True),
    "bash": (shell.bash_tool, True),
    "code": (code_exec.code_tool, True),
    "fetch": (web.fetch_tool, False),
    "search": (web.search_tool, False),
}


def build_default_executor() -> ToolExecutor:
    executor = ToolExecutor()
    for name, (handler, container_capable) in _HANDLERS.items():
        executor.register(
            ToolSpec(
                name=name,
                description=TOOL_DESCRIPTIONS[name],
                args_model=TOOL_ARGS[name],
                handler=handler,
                container_capable=container_capable,
            )
        )
    return executor
