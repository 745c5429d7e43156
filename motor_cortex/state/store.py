"""Run store: durable persistence of runs and their nested attempts."""

import asyncio
import logging
import sqlite3
import time
import weakref
from pathlib import Path
from typing import Protocol, runtime_checkable

from motor_cortex.models import ACTIVE_STATUSES, Run
from motor_cortex.state.schema import MotorStateDb

logger = logging.getLogger(__name__)


class RunExistsError(ValueError):
    """create_run was called with an id that is already stored."""


@runtime_checkable
class RunStore(Protocol):
    """Persistence contract used by the loop and the manager.

    update_run must have durably stored the whole run when it returns.
    """

    async def create_run(self, run: Run) -> None: ...
    async def update_run(self, run: Run) -> None: ...
    async def get_run(self, run_id: str) -> Run | None: ...
    async def list_runs(self, status: str | None = None, limit: int | None = None) -> list[Run]: ...
    async def get_active_run(self) -> Run | None: ...


class SqliteRunStore:
    """aiosqlite-backed store. Writes to the same run are serialized with a per-run lock."""

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db = MotorStateDb(db_path, busy_timeout=busy_timeout)
        # Held only while a write is in progress or waiting.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    async def close(self) -> None:
        await self._db.close()

    def _lock(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_id] = lock
        return lock

    async def create_run(self, run: Run) -> None:
        conn = await self._db.ensure_conn()
        async with self._lock(run.id):
            try:
                await conn.execute(
                    """INSERT INTO motor_run (run_id, status, task, payload, started_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?)""",
                    (
                        run.id,
                        run.status,
                        run.task,
                        run.model_dump_json(),
                        run.started_at.timestamp(),
                        time.time(),
                    ),
                )
            except sqlite3.IntegrityError:
                raise RunExistsError(f"Run {run.id} already exists") from None
            await conn.commit()
        logger.debug("motor_state: created run %s", run.id)

    async def update_run(self, run: Run) -> None:
        conn = await self._db.ensure_conn()
        async with self._lock(run.id):
            await conn.execute(
                """INSERT INTO motor_run (run_id, status, task, payload, started_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(run_id) DO UPDATE SET
                       status = excluded.status,
                       payload = excluded.payload,
                       updated_at = excluded.updated_at""",
                (
                    run.id,
                    run.status,
                    run.task,
                    run.model_dump_json(),
                    run.started_at.timestamp(),
                    time.time(),
                ),
            )
            await conn.commit()

    async def get_run(self, run_id: str) -> Run | None:
        conn = await self._db.ensure_conn()
        async with conn.execute("SELECT payload FROM motor_run WHERE run_id = ?", (run_id,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        return Run.model_validate_json(row["payload"])

    async def list_runs(self, status: str | None = None, limit: int | None = None) -> list[Run]:
        conn = await self._db.ensure_conn()
        sql = "SELECT payload FROM motor_run"
        params: list[object] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY started_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(int(limit))
        async with conn.execute(sql, params) as cur:
            rows = await cur.fetchall()
        return [Run.model_validate_json(r["payload"]) for r in rows]

    async def get_active_run(self) -> Run | None:
        conn = await self._db.ensure_conn()
        placeholders = ",".join("?" for _ in ACTIVE_STATUSES)
        async with conn.execute(
            f"SELECT payload FROM motor_run WHERE status IN ({placeholders}) "
            "ORDER BY started_at DESC LIMIT 1",
            ACTIVE_STATUSES,
        ) as cur:
            row = await cur.fetchone()
        return Run.model_validate_json(row["payload"]) if row else None


class MemoryRunStore:
    """In-process store for tests and one-shot CLI runs. Keeps deep copies."""

    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}

    async def create_run(self, run: Run) -> None:
        if run.id in self._runs:
            raise RunExistsError(f"Run {run.id} already exists")
        self._runs[run.id] = run.model_copy(deep=True)

    async def update_run(self, run: Run) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> Run | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, status: str | None = None, limit: int | None = None) -> list[Run]:
        runs = sorted(self._runs.values(), key=lambda r: r.started_at, reverse=True)
        if status:
            runs = [r for r in runs if r.status == status]
        if limit:
            runs = runs[:limit]
        return [r.model_copy(deep=True) for r in runs]

    async def get_active_run(self) -> Run | None:
        active = [r for r in self._runs.values() if r.status in ACTIVE_STATUSES]
        if not active:
            return None
        return max(active, key=lambda r: r.started_at).model_copy(deep=True)
