"""Run state persistence."""

from motor_cortex.state.schema import MotorStateDb
from motor_cortex.state.store import MemoryRunStore, RunExistsError, RunStore, SqliteRunStore

__all__ = ["MemoryRunStore", "MotorStateDb", "RunExistsError", "RunStore", "SqliteRunStore"]
