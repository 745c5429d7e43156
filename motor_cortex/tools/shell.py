"""bash tool: allowlisted commands joined by single pipes, run in the workspace.

No shell is involved. The command line is split into argv lists here and each
segment is started with create_subprocess_exec, stdout wired to the next
segment's stdin.
"""

import asyncio
import glob
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from motor_cortex.models import ToolResult
from motor_cortex.tools.args import BashArgs
from motor_cortex.tools.context import ToolContext
from motor_cortex.tools.web import blocked_domain_result, host_matches

logger = logging.getLogger(__name__)

DEFAULT_ALLOWLIST = frozenset(
    {
        "echo", "cat", "head", "tail", "wc", "grep", "sort", "uniq", "cut", "awk", "sed",
        "ls", "pwd", "mkdir", "cp", "mv", "find", "date",
        "curl", "wget", "jq",
        "uname", "whoami", "id",
    }
)
NETWORK_COMMANDS = frozenset({"curl", "wget"})
MAX_OUTPUT_CHARS = 10 * 1024

# Rejected anywhere outside quotes.
_METACHARS = frozenset(";`$()><!\n\\&")
# Inside double quotes sh would still expand these.
_DOUBLE_QUOTED_METACHARS = frozenset("`$")
_GLOB_CHARS = frozenset("*?[")
_BARE_HOST = re.compile(r"^[A-Za-z0-9.-]+\.[A-Za-z]{2,}(:\d+)?(/\S*)?$")


class PipelineError(ValueError):
    """The command line cannot be run as an allowlisted pipeline."""


@dataclass
class Word:
    """One argv entry. pattern is set when an unquoted glob character was seen."""

    text: str
    pattern: str | None = None


def _metachar_error(char: str) -> PipelineError:
    return PipelineError(f"Shell metacharacter not allowed: {char!r}")


def split_pipeline(command: str) -> list[list[Word]]:
    """Split a command line into pipeline segments of words, honouring sh quoting.

    Single quotes are literal. Double quotes are literal except that `$` and
    backticks are refused and `\\"` / `\\\\` are escapes. Outside quotes only
    spaces, tabs and a single `|` are structural; every other shell
    metacharacter is refused.
    """
    segments: list[list[Word]] = [[]]
    text: list[str] = []
    pattern: list[str] = []
    globbed = False
    in_word = False
    quote: str | None = None

    def flush() -> None:
        nonlocal globbed, in_word
        if in_word:
            literal = "".join(text)
            segments[-1].append(Word(literal, "".join(pattern) if globbed else None))
        text.clear()
        pattern.clear()
        globbed = in_word = False

    def add(char: str, quoted: bool) -> None:
        nonlocal globbed, in_word
        text.append(char)
        if quoted:
            pattern.append(glob.escape(char))
        else:
            pattern.append(char)
            globbed = globbed or char in _GLOB_CHARS
        in_word = True

    i, n = 0, len(command)
    while i < n:
        char = command[i]
        if quote == "'":
            if char == "'":
                quote = None
            else:
                add(char, quoted=True)
        elif quote == '"':
            if char == '"':
                quote = None
            elif char == "\\" and i + 1 < n and command[i + 1] in '"\\':
                i += 1
                add(command[i], quoted=True)
            elif char in _DOUBLE_QUOTED_METACHARS:
                raise _metachar_error(char)
            else:
                add(char, quoted=True)
        elif char in "'\"":
            quote = char
            in_word = True
        elif char in " \t":
            flush()
        elif char == "|" or (char == "&" and command[i + 1 : i + 2] == "&"):
            if command[i + 1 : i + 2] == char:
                raise PipelineError("Operators || and && are not allowed; run one pipeline per call.")
            flush()
            segments.append([])
        elif char in _METACHARS:
            raise _metachar_error(char)
        else:
            add(char, quoted=False)
        i += 1

    if quote is not None:
        raise PipelineError(f"Malformed command: unterminated {quote} quote")
    flush()
    return segments


@dataclass
class PipelineCheck:
    ok: bool
    reason: str = ""
    commands: list[str] = field(default_factory=list)
    segments: list[list[str]] = field(default_factory=list)
    words: list[list[Word]] = field(default_factory=list)

    @property
    def has_network(self) -> bool:
        return any(c in NETWORK_COMMANDS for c in self.commands)


def _command_name(token: str) -> str:
    return token.rsplit("/", 1)[-1]


def validate_pipeline(command: str, allowlist: frozenset[str] = DEFAULT_ALLOWLIST) -> PipelineCheck:
    """Check a command line: single `|` pipes only, every segment an allowlisted command."""
    try:
        words = split_pipeline(command)
    except PipelineError as e:
        return PipelineCheck(False, str(e))

    commands: list[str] = []
    for seg in words:
        if not seg:
            return PipelineCheck(False, "Empty command in pipeline")
        if seg[0].pattern is not None:
            return PipelineCheck(False, f"Command name cannot be a pattern: {seg[0].text}")
        name = _command_name(seg[0].text)
        if name not in allowlist:
            return PipelineCheck(False, f"Command not allowed: {name}")
        commands.append(name)
    segments = [[w.text for w in seg] for seg in words]
    return PipelineCheck(True, commands=commands, segments=segments, words=words)


def network_hosts(check: PipelineCheck) -> list[str]:
    """Hosts named by URL arguments of curl/wget segments."""
    hosts: list[str] = []
    for seg in check.segments:
        if _command_name(seg[0]) not in NETWORK_COMMANDS:
            continue
        for arg in seg[1:]:
            if arg.startswith("-"):
                continue
            if "://" in arg:
                host = urlparse(arg).hostname
            elif _BARE_HOST.match(arg):
                host = urlparse(f"http://{arg}").hostname
            else:
                continue
            if host:
                hosts.append(host.lower())
    return hosts


def build_argv(words: list[Word], cwd: Path) -> list[str]:
    """Expand unquoted glob words against cwd like sh does; unmatched patterns stay literal.

    The program is always looked up on PATH by its bare name, so a path
    prefix cannot point the allowlisted name at another binary.
    """
    argv = [_command_name(words[0].text)]
    for word in words[1:]:
        if word.pattern is None:
            argv.append(word.text)
            continue
        matches = sorted(glob.glob(word.pattern, root_dir=cwd))
        argv.extend(matches or [word.text])
    return argv


def _clip(text: str) -> str:
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    return text[:MAX_OUTPUT_CHARS] + f"\n\n[... output truncated ({len(text)} chars) ...]"


async def _drain(stream: asyncio.StreamReader, sink: bytearray) -> None:
    while True:
        chunk = await stream.read(65536)
        if not chunk:
            return
        sink.extend(chunk)


def _kill_all(procs: list[asyncio.subprocess.Process]) -> None:
    for proc in procs:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass


async def _spawn_pipeline(
    argvs: list[list[str]], cwd: Path, env: dict[str, str]
) -> list[asyncio.subprocess.Process]:
    procs: list[asyncio.subprocess.Process] = []
    stdin: int = asyncio.subprocess.DEVNULL
    try:
        for index, argv in enumerate(argvs):
            last = index == len(argvs) - 1
            read_fd, write_fd = (None, None) if last else os.pipe()
            try:
                proc = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=cwd,
                    env=env,
                    stdin=stdin,
                    stdout=asyncio.subprocess.PIPE if last else write_fd,
                    stderr=asyncio.subprocess.PIPE,
                )
            except BaseException:
                if read_fd is not None:
                    os.close(read_fd)
                raise
            finally:
                if stdin >= 0:
                    os.close(stdin)
                    stdin = asyncio.subprocess.DEVNULL
                if write_fd is not None:
                    os.close(write_fd)
            procs.append(proc)
            if read_fd is not None:
                stdin = read_fd
    except BaseException:
        _kill_all(procs)
        raise
    return procs


async def bash_tool(args: BashArgs, ctx: ToolContext) -> ToolResult:
    check = validate_pipeline(args.command)
    if not check.ok:
        return ToolResult.failure("invalid_args", check.reason)

    provenance = "internal"
    if check.has_network:
        provenance = "web"
        if not ctx.allowed_domains:
            hosts = network_hosts(check)
            return blocked_domain_result(hosts[0] if hosts else "(unknown)", ctx.allowed_domains)
        for host in network_hosts(check):
            if not host_matches(host, ctx.allowed_domains):
                return blocked_domain_result(host, ctx.allowed_domains)

    timeout_sec = ctx.limits.shell_timeout_sec
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "HOME": str(ctx.workspace), "LANG": "C.UTF-8"}
    argvs = [build_argv(seg, ctx.workspace) for seg in check.words]
    try:
        procs = await _spawn_pipeline(argvs, ctx.workspace, env)
    except FileNotFoundError as e:
        return ToolResult.failure("not_found", f"Command not found: {e.filename or argvs[0][0]}")
    except PermissionError as e:
        return ToolResult.failure("permission_denied", str(e))

    stdout_buf = bytearray()
    stderr_bufs = [bytearray() for _ in procs]
    readers = [_drain(procs[-1].stdout, stdout_buf)]
    readers += [_drain(p.stderr, buf) for p, buf in zip(procs, stderr_bufs)]
    timed_out = False
    try:
        await asyncio.wait_for(
            asyncio.gather(*readers, *(p.wait() for p in procs)), timeout=timeout_sec
        )
    except asyncio.TimeoutError:
        timed_out = True
    finally:
        _kill_all(procs)
        for proc in procs:
            await proc.wait()

    stdout = stdout_buf.decode("utf-8", errors="replace")
    stderr = b"".join(stderr_bufs).decode("utf-8", errors="replace")
    output = _clip(stdout + (f"\n{stderr}" if stderr else ""))

    if timed_out:
        logger.info("bash: command timed out after %ss", timeout_sec)
        return ToolResult.failure(
            "timeout", f"Command timed out after {timeout_sec:g}s\n{output}".rstrip(),
            retryable=True, provenance=provenance,
        )
    # Like sh, the pipeline's status is the last command's.
    returncode = procs[-1].returncode
    if returncode != 0:
        return ToolResult.failure(
            "execution_error",
            f"Exit code {returncode}\n{output}".rstrip(),
            provenance=provenance,
        )
    return ToolResult.success(output or "(no output)", provenance=provenance)
