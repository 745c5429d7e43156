"""Copy workspace output to <artifacts>/<run_id>/artifacts after a successful run."""

import logging
import os
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)


def _ignore_hidden(src: str, names: list[str]) -> set[str]:
    return {n for n in names if n.startswith(".") or os.path.islink(os.path.join(src, n))}


def persist_artifacts(workspace: Path, artifacts_dir: Path, run_id: str) -> list[str]:
    """Return the top-level entries copied. Best-effort: failures are logged, never raised."""
    try:
        entries = sorted(p.name for p in workspace.iterdir() if not p.name.startswith("."))
        if not entries:
            return []
        target = artifacts_dir / run_id / "artifacts"
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copytree(workspace, target, ignore=_ignore_hidden, dirs_exist_ok=True)
    except OSError as e:
        logger.warning("artifacts: failed to persist for run %s: %s", run_id, e)
        return []
    logger.debug("artifacts: run %s persisted %d entries to %s", run_id, len(entries), target)
    return entries
