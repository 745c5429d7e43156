"""SQLite layout for the run store.

Each run is one row in motor_run. The status and started_at columns are kept
alongside the JSON payload so listings and the active-run lookup stay on an
index; everything else (attempts, traces, pauses) lives only in payload.
"""

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

# Applied in order; PRAGMA user_version records how many have run.
_MIGRATIONS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS motor_run (
        run_id      TEXT PRIMARY KEY,
        status      TEXT NOT NULL,
        task        TEXT NOT NULL,
        payload     TEXT NOT NULL,
        started_at  REAL NOT NULL,
        updated_at  REAL NOT NULL
    );
    CREATE INDEX IF NOT EXISTS idx_motor_run_status ON motor_run(status, started_at);
    """,
)

SCHEMA_VERSION = len(_MIGRATIONS)


async def _migrate(conn: aiosqlite.Connection) -> int:
    async with conn.execute("PRAGMA user_version") as cur:
        row = await cur.fetchone()
    version = row[0] if row else 0
    if version > SCHEMA_VERSION:
        raise RuntimeError(
            f"motor state db is at schema version {version}, newer than supported {SCHEMA_VERSION}"
        )
    for script in _MIGRATIONS[version:]:
        await conn.executescript(script)
    if version < SCHEMA_VERSION:
        await conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")
    await conn.commit()
    return version


class MotorStateDb:
    """Lazily opened aiosqlite connection in WAL mode, migrated on first use."""

    def __init__(self, db_path: Path, busy_timeout: int = 5000) -> None:
        self._db_path = Path(db_path)
        self._busy_timeout = int(busy_timeout)
        self._conn: aiosqlite.Connection | None = None

    async def ensure_conn(self) -> aiosqlite.Connection:
        if self._conn is not None:
            return self._conn
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self._db_path))
        try:
            conn.row_factory = aiosqlite.Row
            for pragma in (
                "journal_mode=WAL",
                "synchronous=NORMAL",
                f"busy_timeout={self._busy_timeout}",
            ):
                await conn.execute(f"PRAGMA {pragma}")
            previous = await _migrate(conn)
        except Exception:
            await conn.close()
            raise
        if previous != SCHEMA_VERSION:
            logger.info(
                "motor_state: migrated %s from v%d to v%d", self._db_path, previous, SCHEMA_VERSION
            )
        self._conn = conn
        return conn

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            await conn.close()
