"""code tool: run a Python snippet in an isolated interpreter subprocess."""

import asyncio
import os
import sys

from motor_cortex.models import ToolResult
from motor_cortex.tools.args import CodeArgs
from motor_cortex.tools.context import ToolContext

MAX_OUTPUT_CHARS = 10 * 1024


async def code_tool(args: CodeArgs, ctx: ToolContext) -> ToolResult:
    """Execute args.code with `python -I` (no user site, no env-derived paths).

    Credentials are not passed: the snippet sees only PATH and a HOME inside
    the workspace.
    """
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "HOME": str(ctx.workspace)}
    proc = await asyncio.create_subprocess_exec(
        sys.executable,
        "-I",
        "-c",
        args.code,
        cwd=ctx.workspace,
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout_bytes, stderr_bytes = await asyncio.wait_for(
            proc.communicate(), timeout=ctx.limits.code_timeout_sec
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.communicate()
        return ToolResult.failure(
            "timeout",
            f"Code execution timed out after {ctx.limits.code_timeout_sec:g}s",
            retryable=True,
        )

    stdout = stdout_bytes.decode("utf-8", errors="replace")[:MAX_OUTPUT_CHARS]
    if proc.returncode != 0:
        stderr = stderr_bytes.decode("utf-8", errors="replace")[-MAX_OUTPUT_CHARS:]
        return ToolResult.failure(
            "execution_error",
            f"Exit code {proc.returncode}\n{stdout}\n{stderr}".strip(),
            retryable=True,
        )
    return ToolResult.success(stdout or "(no output)")
