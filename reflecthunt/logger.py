"""
ReflectHunt - Run Log
SQLite-based record of runs, stage transitions and per-chunk probe outcomes.
"""

import aiosqlite
import json
import time
from pathlib import Path
from typing import Optional, List, Dict, Any


RUN_LOG_NAME = "runs.db"

SCHEMA = """
CREATE TABLE IF NOT EXISTS runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    domain TEXT NOT NULL,
    started_at REAL NOT NULL,
    finished_at REAL,
    status TEXT DEFAULT 'running',
    config TEXT DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS stage_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    timestamp REAL NOT NULL,
    stage TEXT NOT NULL,
    status TEXT NOT NULL,
    detail TEXT DEFAULT '',
    FOREIGN KEY (run_id) REFERENCES runs(id)
);

CREATE TABLE IF NOT EXISTS chunk_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id INTEGER NOT NULL,
    chunk_index INTEGER NOT NULL,
    tool_name TEXT NOT NULL,
    size INTEGER NOT NULL,
    started_at REAL NOT NULL,
    status TEXT DEFAULT 'running',
    exit_code INTEGER,
    output_lines INTEGER DEFAULT 0,
    duration_ms REAL,
    reason TEXT DEFAULT '',
    FOREIGN KEY (run_id) REFERENCES runs(id)
);

CREATE INDEX IF NOT EXISTS idx_stage_events_run ON stage_events(run_id);
CREATE INDEX IF NOT EXISTS idx_chunk_runs_run ON chunk_runs(run_id);
CREATE INDEX IF NOT EXISTS idx_chunk_runs_status ON chunk_runs(status);
"""


class RunLog:
    """Async SQLite run log kept in the run workdir."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self):
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA foreign_keys=ON")
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self):
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "RunLog":
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.close()

    # ── Runs ────────────────────────────────────────────────────

    async def start_run(self, domain: str, config: Optional[Dict[str, Any]] = None) -> int:
        """Record the start of a pipeline run."""
        cursor = await self._db.execute(
            "INSERT INTO runs (domain, started_at, config) VALUES (?, ?, ?)",
            (domain, time.time(), json.dumps(config or {}))
        )
        await self._db.commit()
        return cursor.lastrowid

    async def finish_run(self, run_id: int, status: str = "completed"):
        await self._db.execute(
            "UPDATE runs SET status = ?, finished_at = ? WHERE id = ?",
            (status, time.time(), run_id)
        )
        await self._db.commit()

    async def get_run(self, run_id: int) -> Optional[Dict]:
        async with self._db.execute("SELECT * FROM runs WHERE id = ?", (run_id,)) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    # ── Stages ──────────────────────────────────────────────────

    async def log_stage(self, run_id: int, stage: str, status: str, detail: str = ""):
        """Record a stage transition (completed, skipped, ...)."""
        await self._db.execute(
            "INSERT INTO stage_events (run_id, timestamp, stage, status, detail) VALUES (?, ?, ?, ?, ?)",
            (run_id, time.time(), stage, status, detail)
        )
        await self._db.commit()

    async def get_stage_events(self, run_id: int) -> List[Dict]:
        async with self._db.execute(
            "SELECT * FROM stage_events WHERE run_id = ? ORDER BY id",
            (run_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    # ── Chunk Runs ──────────────────────────────────────────────

    async def log_chunk_start(self, run_id: int, chunk_index: int,
                              tool_name: str, size: int) -> int:
        """Log the start of a probe chunk."""
        cursor = await self._db.execute(
            """INSERT INTO chunk_runs
               (run_id, chunk_index, tool_name, size, started_at)
               VALUES (?, ?, ?, ?, ?)""",
            (run_id, chunk_index, tool_name, size, time.time())
        )
        await self._db.commit()
        return cursor.lastrowid

    async def finish_chunk(self, chunk_run_id: int, status: str,
                           exit_code: Optional[int] = None, output_lines: int = 0,
                           duration_ms: float = 0, reason: str = ""):
        """Mark a probe chunk as finished."""
        await self._db.execute(
            """UPDATE chunk_runs
               SET status = ?, exit_code = ?, output_lines = ?, duration_ms = ?, reason = ?
               WHERE id = ?""",
            (status, exit_code, output_lines, duration_ms, reason, chunk_run_id)
        )
        await self._db.commit()

    async def get_chunk_runs(self, run_id: int) -> List[Dict]:
        """Get chunk history for a run."""
        async with self._db.execute(
            "SELECT * FROM chunk_runs WHERE run_id = ? ORDER BY chunk_index",
            (run_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    # ── Stats ───────────────────────────────────────────────────

    async def get_run_stats(self, run_id: int) -> Dict:
        """Chunk counts for a run, grouped by status."""
        stats = {"chunks_total": 0, "chunks_by_status": {}}
        async with self._db.execute(
            """SELECT status, COUNT(*) as count FROM chunk_runs
               WHERE run_id = ? GROUP BY status""",
            (run_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            stats["chunks_by_status"] = {r["status"]: r["count"] for r in rows}
        stats["chunks_total"] = sum(stats["chunks_by_status"].values())
        return stats
