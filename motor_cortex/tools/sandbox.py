"""Sandboxed path resolution. Every file-touching tool routes its paths through here."""

import os
from pathlib import Path
from typing import Sequence

from motor_cortex.models import ToolResult

ACCESS_DENIED_MSG = "Access denied: path must stay within the allowed directories."


def _canonical(path: Path | str) -> Path:
    return Path(os.path.realpath(path))


def _is_under(path: Path, roots: Sequence[Path]) -> bool:
    return any(path == root or path.is_relative_to(root) for root in roots)


def resolve_allowed_path(roots: Sequence[Path | str], path: str) -> Path | None:
    """Resolve path against the allowed roots. Returns None when denied.

    For each root (canonicalized, so a symlinked root is fine) the candidate
    is root/path. A candidate whose lexical offset from the root climbs out
    with '..' or is an absolute path elsewhere is rejected for that root.
    The candidate is then resolved with every existing symlink followed;
    components that do not exist yet (create-on-write) are kept as given.
    That real path must still lie under some canonical root, which defeats
    links inside the sandbox pointing outside it. The first root where the
    path exists wins, else the first root that validates; the real path is
    returned so callers never touch the unresolved one.
    """
    if not path or "\x00" in path:
        return None
    canonical_roots = [_canonical(r) for r in roots]
    fallback: Path | None = None
    for root in canonical_roots:
        joined = root / path
        if not _is_under(Path(os.path.normpath(joined)), [root]):
            continue
        real = _canonical(joined)
        if not _is_under(real, canonical_roots):
            continue
        if os.path.lexists(real):
            return real
        if fallback is None:
            fallback = real
    return fallback


def denied_result(path: str) -> ToolResult:
    """Non-retryable permission_denied result for a path outside the sandbox."""
    return ToolResult.failure(
        "permission_denied", f"{ACCESS_DENIED_MSG} Path: {path}", retryable=False
    )


def display_path(target: Path, roots: Sequence[Path | str]) -> str:
    """Path relative to the first root containing it, for tool output."""
    for root in roots:
        real_root = _canonical(root)
        if target == real_root:
            return "."
        if target.is_relative_to(real_root):
            return target.relative_to(real_root).as_posix()
    return target.name
