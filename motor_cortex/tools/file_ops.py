"""File tools: read, write, list, glob, grep, patch.

STRICT RESTRICTION: every path goes through resolve_allowed_path first.
Reads may use any allowed root; writes only the write roots (the workspace).
"""

import re
from pathlib import Path

from motor_cortex.models import ToolResult
from motor_cortex.tools.args import GlobArgs, GrepArgs, ListArgs, PatchArgs, ReadArgs, WriteArgs
from motor_cortex.tools.context import ToolContext
from motor_cortex.tools.sandbox import denied_result, display_path, resolve_allowed_path

READ_MAX_LINES = 2000
READ_MAX_BYTES = 50 * 1024
LIST_MAX_ENTRIES = 200
GLOB_MAX_RESULTS = 100
GREP_MAX_MATCHES = 100
GREP_MAX_LINE_CHARS = 200
_BINARY_SNIFF_BYTES = 8192


def _is_binary(path: Path) -> bool:
    with path.open("rb") as f:
        return b"\x00" in f.read(_BINARY_SNIFF_BYTES)


def _hidden(rel: Path) -> bool:
    return any(part.startswith(".") for part in rel.parts)


async def read_file(args: ReadArgs, ctx: ToolContext) -> ToolResult:
    target = resolve_allowed_path(ctx.allowed_roots, args.path)
    if target is None:
        return denied_result(args.path)
    if not target.exists():
        return ToolResult.failure("not_found", f"File not found: {args.path}")
    if target.is_dir():
        return ToolResult.failure("invalid_args", f"Is a directory, use list: {args.path}")
    if _is_binary(target):
        return ToolResult.failure(
            "invalid_args", f"Binary file, cannot display as text: {args.path}"
        )

    lines = target.read_text(encoding="utf-8", errors="replace").splitlines()
    total = len(lines)
    if total == 0:
        return ToolResult.success("(empty file)")
    start = args.offset - 1
    if start >= total:
        return ToolResult.failure(
            "invalid_args", f"Offset {args.offset} is past the end of the file ({total} lines)"
        )

    out: list[str] = []
    size = 0
    end = start
    for n, line in enumerate(lines[start : start + min(args.limit, READ_MAX_LINES)], start + 1):
        numbered = f"{n:>6}\t{line}"
        if size + len(numbered.encode("utf-8")) + 1 > READ_MAX_BYTES:
            break
        out.append(numbered)
        size += len(numbered.encode("utf-8")) + 1
        end = n
    if end < total:
        out.append(
            f"\n(showing lines {start + 1}-{end} of {total}; use offset={end + 1} to continue)"
        )
    return ToolResult.success("\n".join(out))


async def write_file(args: WriteArgs, ctx: ToolContext) -> ToolResult:
    target = resolve_allowed_path(ctx.write_roots, args.path)
    if target is None:
        return denied_result(args.path)
    if target.is_dir():
        return ToolResult.failure("invalid_args", f"Is a directory: {args.path}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(args.content, encoding="utf-8")
    size = len(args.content.encode("utf-8"))
    return ToolResult.success(f"Wrote {display_path(target, ctx.write_roots)} ({size} bytes)")


async def list_dir(args: ListArgs, ctx: ToolContext) -> ToolResult:
    target = resolve_allowed_path(ctx.allowed_roots, args.path)
    if target is None:
        return denied_result(args.path)
    if not target.exists():
        return ToolResult.failure("not_found", f"Directory not found: {args.path}")
    if not target.is_dir():
        return ToolResult.failure("invalid_args", f"Not a directory: {args.path}")

    entries = target.rglob("*") if args.recursive else target.iterdir()
    items = sorted(entries, key=lambda p: (not p.is_dir(), str(p).lower()))
    lines: list[str] = []
    for p in items:
        rel = p.relative_to(target)
        if args.recursive and _hidden(rel):
            continue
        if len(lines) >= LIST_MAX_ENTRIES:
            lines.append(f"... (truncated at {LIST_MAX_ENTRIES} entries)")
            break
        lines.append(f"{'[DIR]' if p.is_dir() else '[FILE]'} {rel.as_posix()}")
    return ToolResult.success("\n".join(lines) if lines else "(empty)")


async def glob_files(args: GlobArgs, ctx: ToolContext) -> ToolResult:
    base = resolve_allowed_path(ctx.allowed_roots, args.path)
    if base is None:
        return denied_result(args.path)
    if not base.is_dir():
        return ToolResult.failure("not_found", f"Directory not found: {args.path}")
    if Path(args.pattern).is_absolute() or ".." in Path(args.pattern).parts:
        return denied_result(args.pattern)

    matches: list[str] = []
    for p in sorted(base.glob(args.pattern)):
        # Symlinked entries may point outside; keep only what resolves inside.
        if resolve_allowed_path(ctx.allowed_roots, str(p)) is None or not p.is_file():
            continue
        matches.append(p.relative_to(base).as_posix())
        if len(matches) >= GLOB_MAX_RESULTS:
            break
    if not matches:
        return ToolResult.success(f"No files match {args.pattern}")
    return ToolResult.success("\n".join(matches))


async def grep_files(args: GrepArgs, ctx: ToolContext) -> ToolResult:
    base = resolve_allowed_path(ctx.allowed_roots, args.path)
    if base is None:
        return denied_result(args.path)
    if not base.exists():
        return ToolResult.failure("not_found", f"Path not found: {args.path}")
    try:
        regex = re.compile(args.pattern, re.IGNORECASE if args.ignore_case else 0)
    except re.error as e:
        return ToolResult.failure("invalid_args", f"Invalid regex: {e}")

    if base.is_file():
        files = [base]
        rel_base = base.parent
    else:
        files = sorted(base.rglob(args.glob or "*"))
        rel_base = base
    out: list[str] = []
    for path in files:
        rel = path.relative_to(rel_base)
        if not path.is_file() or _hidden(rel):
            continue
        if resolve_allowed_path(ctx.allowed_roots, str(path)) is None or _is_binary(path):
            continue
        text = path.read_text(encoding="utf-8", errors="replace")
        for n, line in enumerate(text.splitlines(), 1):
            if regex.search(line):
                out.append(f"{rel.as_posix()}:{n}: {line[:GREP_MAX_LINE_CHARS]}")
                if len(out) >= GREP_MAX_MATCHES:
                    out.append(f"... (stopped at {GREP_MAX_MATCHES} matches)")
                    return ToolResult.success("\n".join(out))
    if not out:
        return ToolResult.success(f"No matches for {args.pattern}")
    return ToolResult.success("\n".join(out))


async def patch_file(args: PatchArgs, ctx: ToolContext) -> ToolResult:
    """Replace old_text with new_text; old_text must occur exactly once."""
    target = resolve_allowed_path(ctx.write_roots, args.path)
    if target is None:
        return denied_result(args.path)
    if not target.is_file():
        return ToolResult.failure("not_found", f"File not found: {args.path}")

    content = target.read_text(encoding="utf-8")
    count = content.count(args.old_text)
    if count == 0:
        return ToolResult.failure(
            "not_found", f"old_text not found in {args.path}. Read the file and copy the text exactly."
        )
    if count > 1:
        # Retryable: the model can add surrounding context and try again.
        return ToolResult.failure(
            "invalid_args",
            f"old_text matches {count} times in {args.path}. "
            "Include more surrounding context so it matches exactly once.",
            retryable=True,
        )
    target.write_text(content.replace(args.old_text, args.new_text, 1), encoding="utf-8")
    return ToolResult.success(f"Patched {display_path(target, ctx.write_roots)}")
