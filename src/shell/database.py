"""SQLite database — single source of truth for review history."""

from __future__ import annotations

import asyncio

import aiosqlite
import structlog

log = structlog.get_logger()

SCHEMA = """
-- Versioned asset reviews (append-only; only is_active changes after insert)
CREATE TABLE IF NOT EXISTS asset_analyses (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    portfolio_name TEXT NOT NULL,
    ticker TEXT NOT NULL,
    asset_name TEXT NOT NULL,
    asset_type TEXT NOT NULL,
    current_price REAL,
    ceiling_price REAL,
    recommendation TEXT NOT NULL,       -- 'KEEP', 'REPLACE', 'WATCH'
    analysis_text TEXT,
    substitution_suggestion TEXT,
    confidence_score INTEGER,           -- 0-100
    key_factors TEXT,                   -- JSON array
    source TEXT NOT NULL DEFAULT 'deterministic',
    analysis_date TEXT NOT NULL,
    next_review_date TEXT,
    is_active INTEGER NOT NULL DEFAULT 1
);

-- Finished batch runs
CREATE TABLE IF NOT EXISTS review_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    scope TEXT NOT NULL,                -- 'full' or a portfolio name
    trigger TEXT NOT NULL,              -- 'scheduled' or 'manual'
    started_at TEXT NOT NULL,
    finished_at TEXT,
    assets_reviewed INTEGER DEFAULT 0,
    status TEXT
);

-- Token usage tracking
CREATE TABLE IF NOT EXISTS token_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    model TEXT NOT NULL,
    input_tokens INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    cost_usd REAL NOT NULL,
    purpose TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Indexes for common queries
CREATE INDEX IF NOT EXISTS idx_analyses_ticker ON asset_analyses(ticker, is_active);
CREATE INDEX IF NOT EXISTS idx_analyses_portfolio ON asset_analyses(portfolio_name, is_active, analysis_date);
CREATE INDEX IF NOT EXISTS idx_analyses_next_review ON asset_analyses(is_active, next_review_date);
CREATE INDEX IF NOT EXISTS idx_review_runs_started ON review_runs(started_at);
CREATE INDEX IF NOT EXISTS idx_token_usage_date ON token_usage(created_at);
"""

# Migrations for existing databases (columns added after initial schema)
MIGRATIONS = [
    ("asset_analyses", "key_factors", "ALTER TABLE asset_analyses ADD COLUMN key_factors TEXT"),
    ("asset_analyses", "source",
     "ALTER TABLE asset_analyses ADD COLUMN source TEXT NOT NULL DEFAULT 'deterministic'"),
]


class Database:
    def __init__(self, db_path: str):
        self._path = db_path
        self._conn: aiosqlite.Connection | None = None
        # One connection means one open transaction: every writer takes this lock
        self.write_lock = asyncio.Lock()

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self._path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA)
        await self._run_migrations()
        await self._conn.commit()
        log.info("database.connected", path=self._path)

    async def _run_migrations(self) -> None:
        """Apply column additions to existing databases."""
        for table, column, sql in MIGRATIONS:
            cursor = await self._conn.execute(f"PRAGMA table_info({table})")
            columns = [row[1] for row in await cursor.fetchall()]
            if column not in columns:
                await self._conn.execute(sql)
                log.info("database.migration", table=table, column=column)

    async def close(self) -> None:
        if self._conn:
            await self._conn.commit()
            await self._conn.close()
            self._conn = None
            log.info("database.closed")

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Database not connected")
        return self._conn

    async def execute(self, sql: str, params: tuple = ()) -> aiosqlite.Cursor:
        return await self.conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple = ()) -> dict | None:
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, sql: str, params: tuple = ()) -> list[dict]:
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    async def commit(self) -> None:
        await self.conn.commit()

    async def rollback(self) -> None:
        await self.conn.rollback()
