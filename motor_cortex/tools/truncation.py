"""Spill oversized tool output to the workspace and hand the model a preview."""

import re
from dataclasses import dataclass
from pathlib import Path

TRUNCATION_MAX_LINES = 2000
TRUNCATION_MAX_BYTES = 12 * 1024
TRUNCATION_DIR = ".motor-output"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


@dataclass
class TruncationResult:
    content: str
    truncated: bool
    original_bytes: int | None = None
    saved_path: str | None = None


def truncate_tool_output(
    output: str, tool: str, call_id: str, workspace: Path
) -> TruncationResult:
    """Return output unchanged if it fits, else a head preview plus a pointer to the full file.

    Limits are checked on line count and UTF-8 size. The full text goes to
    <workspace>/.motor-output/<tool>-<last 8 chars of call id>.txt so the model
    can page through it with read or grep.
    """
    lines = output.split("\n")
    total_bytes = len(output.encode("utf-8"))
    if len(lines) <= TRUNCATION_MAX_LINES and total_bytes <= TRUNCATION_MAX_BYTES:
        return TruncationResult(content=output, truncated=False)

    kept: list[str] = []
    size = 0
    hit_bytes = False
    for i, line in enumerate(lines[:TRUNCATION_MAX_LINES]):
        line_size = len(line.encode("utf-8")) + (1 if i else 0)
        if size + line_size > TRUNCATION_MAX_BYTES:
            hit_bytes = True
            break
        kept.append(line)
        size += line_size

    removed = total_bytes - size if hit_bytes else len(lines) - len(kept)
    unit = "bytes" if hit_bytes else "lines"

    suffix = _UNSAFE_NAME_CHARS.sub("_", call_id[-8:]) or "output"
    filename = f"{_UNSAFE_NAME_CHARS.sub('_', tool)}-{suffix}.txt"
    spill_dir = workspace / TRUNCATION_DIR
    spill_dir.mkdir(parents=True, exist_ok=True)
    (spill_dir / filename).write_text(output, encoding="utf-8")
    rel = f"{TRUNCATION_DIR}/{filename}"

    hint = (
        f"Output truncated. Full output saved to: {rel}. "
        "Use read with offset/limit or grep to access specific sections."
    )
    content = "\n".join(kept) + f"\n\n...{removed} {unit} truncated...\n\n{hint}"
    return TruncationResult(
        content=content, truncated=True, original_bytes=total_bytes, saved_path=rel
    )
