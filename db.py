# db.py

"""
potcycle: db.py
Canonical schema + async (aiosqlite) connection wrapper.
Target DB path: /data/potcycle.db
"""

from __future__ import annotations
from typing import Any, Iterable, Optional
from datetime import datetime, timezone
from contextlib import asynccontextmanager
import asyncio
import os
import aiosqlite

# =========================================================
# Canonical Schema
# =========================================================
SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS games (
  game_id                TEXT PRIMARY KEY,
  game_name              TEXT NOT NULL,
  game_pot_public_key    TEXT NOT NULL UNIQUE,
  tax_percentage         INTEGER NOT NULL DEFAULT 10
                         CHECK (tax_percentage BETWEEN 0 AND 100),
  current_pot            INTEGER NOT NULL DEFAULT 0 CHECK (current_pot >= 0),
  total_tax_collected    INTEGER NOT NULL DEFAULT 0,
  player_count           INTEGER NOT NULL DEFAULT 0,
  cycle_duration_seconds INTEGER NOT NULL,
  last_distribution      TEXT NOT NULL,
  cycle_end_time         TEXT NOT NULL,
  created_at             TEXT NOT NULL
);

-- one row per (game, player) per cycle; the PK is the set semantics
CREATE TABLE IF NOT EXISTS active_players (
  game_id   TEXT NOT NULL,
  user_id   TEXT NOT NULL,
  joined_at TEXT NOT NULL,
  PRIMARY KEY (game_id, user_id),
  FOREIGN KEY(game_id) REFERENCES games(game_id) ON DELETE CASCADE
);

-- escrow secrets, read only through custody.py
CREATE TABLE IF NOT EXISTS escrow_keys (
  game_id    TEXT PRIMARY KEY,
  public_key TEXT NOT NULL,
  secret_key TEXT NOT NULL,
  created_at TEXT NOT NULL
);

-- cycle_end NULL = live score of the current cycle
CREATE TABLE IF NOT EXISTS scores (
  id         INTEGER PRIMARY KEY AUTOINCREMENT,
  game_id    TEXT NOT NULL,
  user_id    TEXT NOT NULL,
  score      REAL NOT NULL,
  cycle_end  TEXT,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS players (
  user_id        TEXT PRIMARY KEY,
  total_bets     INTEGER NOT NULL DEFAULT 0,
  total_winnings INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS distributions (
  id                 INTEGER PRIMARY KEY AUTOINCREMENT,
  game_id            TEXT NOT NULL,
  winner_user_id     TEXT NOT NULL,
  total_pot          INTEGER NOT NULL,
  tax                INTEGER NOT NULL,
  winnings           INTEGER NOT NULL,
  fee_signature      TEXT,
  winnings_signature TEXT,
  timestamp          TEXT NOT NULL
);

-- credited deposits; a signature is credited at most once
CREATE TABLE IF NOT EXISTS bet_signatures (
  signature  TEXT PRIMARY KEY,
  game_id    TEXT NOT NULL,
  user_id    TEXT NOT NULL,
  lamports   INTEGER NOT NULL,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS settlement_locks (
  game_id    TEXT PRIMARY KEY,
  owner      TEXT NOT NULL,
  expires_at TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_scores_live ON scores(game_id, user_id) WHERE cycle_end IS NULL;
CREATE INDEX IF NOT EXISTS idx_scores_game        ON scores(game_id, cycle_end);
CREATE INDEX IF NOT EXISTS idx_games_cycle_end    ON games(cycle_end_time);
CREATE INDEX IF NOT EXISTS idx_distributions_game ON distributions(game_id, timestamp);
""".strip()

# =========================================================
# Timestamps
# =========================================================
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """
    Canonical storage form: UTC, microseconds, explicit offset.
    A fixed width keeps TEXT comparisons in SQL chronological.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(s: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp. Accepts trailing 'Z' by converting to +00:00."""
    if not s:
        return None
    s2 = str(s).strip()
    if s2.endswith("Z"):
        s2 = s2[:-1] + "+00:00"
    dt = datetime.fromisoformat(s2)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt

# =========================================================
# Connection
# =========================================================
DB_PATH = os.getenv("DB_PATH", "/data/potcycle.db")


class Database:
    """
    Two aiosqlite connections per process: one writer, one reader.

    Write transactions are serialized with an asyncio lock so coroutines
    interleaving on the writer never share a transaction. Plain reads go to
    the reader, which under WAL only ever sees committed data.
    """

    def __init__(self, conn: aiosqlite.Connection, reader: Optional[aiosqlite.Connection] = None):
        self.conn = conn
        self.reader = reader or conn
        self._write_lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self):
        """
        Usage:
            async with db.transaction() as conn:
                await conn.execute(...)
                await conn.execute(...)
        """
        async with self._write_lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            else:
                await self.conn.commit()

    async def fetchone(self, sql: str, params: Iterable[Any] = ()) -> Optional[aiosqlite.Row]:
        async with self.reader.execute(sql, tuple(params)) as cur:
            return await cur.fetchone()

    async def fetchall(self, sql: str, params: Iterable[Any] = ()) -> list[aiosqlite.Row]:
        async with self.reader.execute(sql, tuple(params)) as cur:
            return list(await cur.fetchall())

    async def close(self) -> None:
        if self.reader is not self.conn:
            await self.reader.close()
        await self.conn.close()


async def _open(db_path: str) -> aiosqlite.Connection:
    conn = await aiosqlite.connect(db_path, isolation_level=None)

    # Per-connection PRAGMAs to reduce locking and keep WAL fast
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute("PRAGMA temp_store=MEMORY")
    await conn.execute("PRAGMA busy_timeout=5000")

    # Use aiosqlite.Row for dict-like access
    conn.row_factory = aiosqlite.Row
    return conn


async def connect(db_path: str = DB_PATH) -> Database:
    """
    Async connections for FastAPI handlers; ensures schema and sets PRAGMAs.
    Transactions are explicit (see Database.transaction), so the driver runs in autocommit.
    """
    parent = os.path.dirname(db_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    conn = await _open(db_path)
    await ensure_schema(conn)

    reader = await _open(db_path)
    await reader.execute("PRAGMA query_only=ON")
    return Database(conn, reader)


async def ensure_schema(conn: aiosqlite.Connection) -> None:
    """Apply canonical schema (idempotent)."""
    await conn.executescript(SCHEMA)
