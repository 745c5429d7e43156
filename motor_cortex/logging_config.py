"""Process-wide logging for the motor runtime."""

import logging
import logging.handlers
from pathlib import Path
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Client libraries that log every request at INFO.
_CHATTY_LOGGERS = ("httpx", "httpcore", "openai", "aiosqlite")


def _resolve_level(value: Any) -> int:
    if isinstance(value, int):
        return value
    level = logging.getLevelName(str(value).upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(project_root: Path, settings: dict[str, Any]) -> None:
    """Route the root logger to a rotating file under project_root.

    Driven by settings["logging"]: file, level, max_bytes, backup_count and
    log_to_console. The console stays quiet by default because the CLI
    talks to the user on stdout. Existing root handlers are replaced.
    """
    cfg = settings.get("logging") or {}
    level = _resolve_level(cfg.get("level", "INFO"))

    log_path = Path(project_root) / cfg.get("file", "data/logs/motor.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=int(cfg.get("max_bytes", 10 * 1024 * 1024)),
            backupCount=int(cfg.get("backup_count", 3)),
            encoding="utf-8",
        )
    ]
    if cfg.get("log_to_console"):
        handlers.append(logging.StreamHandler())

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.setLevel(level)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    quiet = max(level, logging.WARNING)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(quiet)
