"""Shared fixtures: in-memory store, queue sink, workspace and a fast loop config."""

from pathlib import Path

import pytest

from motor_cortex.loop import LoopConfig
from motor_cortex.signals import QueueSignalSink
from motor_cortex.state import MemoryRunStore


@pytest.fixture
def store() -> MemoryRunStore:
    return MemoryRunStore()


@pytest.fixture
def sink() -> QueueSignalSink:
    return QueueSignalSink()


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def loop_config() -> LoopConfig:
    return LoopConfig(llm_retry_backoff_sec=0.0, approval_timeout_sec=60.0)


@pytest.fixture
def fast_settings() -> dict:
    """Settings for MotorCortex with no retry backoff."""
    return {
        "motor": {
            "max_iterations": 6,
            "retry_max_iterations": 4,
            "max_attempts": 3,
            "llm_retry_backoff_sec": 0.0,
            "approval_timeout_sec": 60,
            "auto_retry": False,
        }
    }
