"""Tests for the command-line entry point wiring."""

from pathlib import Path

import pytest

from motor_cortex import runner
from motor_cortex.runner import DEFAULT_TOOLS, _parse_args, build_runtime, drive_interactively

from fakes import ScriptedBackend, call, final, tool_turn


def _settings(tmp_path: Path) -> dict:
    return {
        "motor": {"llm_retry_backoff_sec": 0, "auto_retry": False},
        "credentials": {"backend": "memory"},
        "state": {"db_path": str(tmp_path / "motor_state.db")},
        "paths": {
            "workspaces": str(tmp_path / "workspaces"),
            "artifacts": str(tmp_path / "artifacts"),
            "skills": str(tmp_path / "skills"),
        },
    }


def test_parse_args() -> None:
    args = _parse_args(["Fetch the forecast", "--tools", "fetch,write", "--domain", "wttr.in", "--domain", "api.weather.gov"])
    assert args.task == "Fetch the forecast"
    assert args.tools == "fetch,write"
    assert args.domain == ["wttr.in", "api.weather.gov"]
    assert args.max_iterations is None


def test_parse_args_defaults() -> None:
    args = _parse_args([])
    assert args.task is None
    assert args.tools == DEFAULT_TOOLS
    assert args.list is False and args.recover is False


@pytest.mark.asyncio
async def test_runtime_answers_questions_from_stdin(tmp_path: Path, monkeypatch) -> None:
    answers = iter(["Berlin"])

    async def fake_prompt(text: str) -> str:
        return next(answers)

    monkeypatch.setattr(runner, "_prompt", fake_prompt)
    backend = ScriptedBackend(
        tool_turn(call("ask_user", {"question": "Which city?"})),
        tool_turn(call("write", {"path": "city.txt", "content": "Berlin"})),
        final("Saved the city."),
    )
    runtime = build_runtime(_settings(tmp_path), backend=backend)
    try:
        run = await runtime.cortex.start_run("Save the city", ["write"])
        done = await drive_interactively(runtime.cortex, run.id)
    finally:
        await runtime.close()

    assert done.status == "completed"
    assert (tmp_path / "workspaces" / run.id / "city.txt").read_text(encoding="utf-8") == "Berlin"
    assert (tmp_path / "artifacts" / run.id / "artifacts" / "city.txt").is_file()
    assert (tmp_path / "motor_state.db").exists()


@pytest.mark.asyncio
async def test_empty_answer_cancels(tmp_path: Path, monkeypatch) -> None:
    async def fake_prompt(text: str) -> str:
        return ""

    monkeypatch.setattr(runner, "_prompt", fake_prompt)
    backend = ScriptedBackend(tool_turn(call("ask_user", {"question": "Which city?"})))
    runtime = build_runtime(_settings(tmp_path), backend=backend)
    try:
        run = await runtime.cortex.start_run("Save the city", ["write"])
        await drive_interactively(runtime.cortex, run.id)
        stored = await runtime.store.get_run(run.id)
    finally:
        await runtime.close()
    assert stored.status == "failed"
