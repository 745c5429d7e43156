"""Entry point: bootstrap settings, logging, store and backend; run one task from the command line."""

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Sequence

from dotenv import load_dotenv

from motor_cortex.llm import ModelBackend, build_backend
from motor_cortex.logging_config import setup_logging
from motor_cortex.manager import MotorCortex, MotorCortexError
from motor_cortex.models import Run
from motor_cortex.secrets import build_credential_store, get_secret
from motor_cortex.settings import get_setting, load_settings
from motor_cortex.signals import LoggingSignalSink
from motor_cortex.state import SqliteRunStore

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_TOOLS = "read,write,list,glob,grep,patch"


def _project_path(settings: dict[str, Any], key: str, default: str) -> Path:
    path = Path(get_setting(settings, key, default))
    return path if path.is_absolute() else _PROJECT_ROOT / path


@dataclass
class Runtime:
    cortex: MotorCortex
    store: SqliteRunStore

    async def close(self) -> None:
        await self.cortex.shutdown()
        await self.store.close()


def build_runtime(settings: dict[str, Any], backend: ModelBackend | None = None) -> Runtime:
    """Wire store, credential store, model backend and the run manager from settings."""
    store = SqliteRunStore(
        _project_path(settings, "state.db_path", "data/motor_state.db"),
        busy_timeout=int(get_setting(settings, "state.busy_timeout", 5000)),
    )
    cortex = MotorCortex(
        backend=backend or build_backend(settings, get_secret),
        store=store,
        workspaces_dir=_project_path(settings, "paths.workspaces", "data/workspaces"),
        sink=LoggingSignalSink(),
        credentials=build_credential_store(settings),
        settings=settings,
        artifacts_dir=_project_path(settings, "paths.artifacts", "data/artifacts"),
        skills_dir=_project_path(settings, "paths.skills", "data/skills"),
    )
    return Runtime(cortex=cortex, store=store)


async def _prompt(text: str) -> str:
    try:
        return (await asyncio.to_thread(input, text)).strip()
    except (EOFError, KeyboardInterrupt):
        return ""


async def drive_interactively(cortex: MotorCortex, run_id: str) -> Run:
    """Wait for the run; answer pauses from stdin until it completes or fails."""
    while True:
        run = await cortex.wait(run_id)
        attempt = run.current_attempt
        if run.status == "awaiting_input" and attempt is not None:
            print(f"\n[Question] {attempt.pending_question}")
            answer = await _prompt("> ")
            if not answer:
                await cortex.cancel_run(run_id)
                return run
            await cortex.respond_to_run(run_id, answer)
        elif run.status == "awaiting_approval" and attempt is not None:
            action = attempt.pending_approval.action if attempt.pending_approval else "?"
            print(f"\n[Approval] {action}")
            answer = (await _prompt("Approve? [y/N]: ")).lower()
            await cortex.respond_to_approval(run_id, answer in ("y", "yes"))
        else:
            return run


def _print_outcome(run: Run) -> None:
    if run.status == "completed" and run.result is not None:
        print(run.result.summary)
        if run.result.artifacts:
            print(f"\nArtifacts: {', '.join(run.result.artifacts)}")
        skills = run.result.installed_skills
        if skills and (skills.created or skills.updated):
            print(f"Skills pending review: {', '.join(skills.created + skills.updated)}")
        return
    attempt = run.current_attempt
    failure = attempt.failure.model_dump(mode="json") if attempt and attempt.failure else None
    print(f"Run {run.id} {run.status}.")
    if failure:
        print(json.dumps(failure, ensure_ascii=False, indent=2))


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="motor_cortex", description="Run a task with the Motor Cortex sub-agent."
    )
    parser.add_argument("task", nargs="?", help="Task description")
    parser.add_argument(
        "--tools", default=DEFAULT_TOOLS, help=f"Comma-separated tool grant (default: {DEFAULT_TOOLS})"
    )
    parser.add_argument(
        "--domain", action="append", default=[], help="Allowed network domain (repeatable)"
    )
    parser.add_argument("--max-iterations", type=int, default=None)
    parser.add_argument("--skill", default=None, help="Installed skill to run with")
    parser.add_argument(
        "--recover", action="store_true", help="Recover persisted runs before anything else"
    )
    parser.add_argument("--list", action="store_true", help="List recent runs and exit")
    parser.add_argument("--config-dir", type=Path, default=None)
    return parser.parse_args(argv)


async def main_async(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = load_settings(args.config_dir)
    setup_logging(_PROJECT_ROOT, settings)
    runtime = build_runtime(settings)
    cortex = runtime.cortex
    try:
        if args.list:
            for run in await cortex.list_runs(limit=20):
                print(f"{run.id}  {run.status:<18} {run.task[:60]}")
            return 0
        if args.recover:
            counts = await cortex.recover_on_restart()
            print(f"Recovered: {counts}")
        if not args.task:
            return 0
        tools = [t.strip() for t in args.tools.split(",") if t.strip()]
        try:
            run = await cortex.start_run(
                args.task,
                tools,
                domains=args.domain,
                max_iterations=args.max_iterations,
                skill=args.skill,
            )
        except MotorCortexError as e:
            print(f"Error: {e}")
            return 2
        run = await drive_interactively(cortex, run.id)
        _print_outcome(run)
        return 0 if run.status == "completed" else 1
    finally:
        await runtime.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Synchronous entry for `python -m motor_cortex`."""
    load_dotenv(_PROJECT_ROOT / ".env")
    try:
        return asyncio.run(main_async(argv))
    except KeyboardInterrupt:
        return 130


__all__ = ["Runtime", "build_runtime", "drive_interactively", "main"]
