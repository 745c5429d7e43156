"""Per-run human-readable log at <artifacts>/<run_id>/log.txt."""

import logging
from datetime import datetime
from pathlib import Path

from motor_cortex.credentials import mask_placeholders

logger = logging.getLogger(__name__)


class TaskLogger:
    """Appends timestamped lines. Best-effort: IO errors never reach the run."""

    def __init__(self, base_dir: Path, run_id: str) -> None:
        base = base_dir.resolve()
        path = (base / run_id / "log.txt").resolve()
        # A run id that escapes the base dir disables logging for the run.
        self._path: Path | None = path if path.is_relative_to(base) and path != base else None
        self._dir_created = False

    @property
    def path(self) -> Path | None:
        return self._path

    def log(self, line: str) -> None:
        if self._path is None:
            return
        try:
            if not self._dir_created:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                self._dir_created = True
            ts = datetime.now().strftime("%H:%M:%S.%f")[:12]
            with self._path.open("a", encoding="utf-8") as f:
                f.write(f"[{ts}] {mask_placeholders(line)}\n")
        except OSError as e:
            logger.debug("task_log: write to %s failed: %s", self._path, e)


def create_task_logger(artifacts_dir: Path | None, run_id: str) -> TaskLogger | None:
    if artifacts_dir is None:
        return None
    return TaskLogger(artifacts_dir, run_id)
