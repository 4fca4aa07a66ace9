# locks.py
"""
potcycle: per-game settlement locks.

Two layers:
  * a lease row in settlement_locks (TTL) so settlement and sweeps for one game
    never overlap, whoever triggers them and in whichever process;
  * an in-process asyncio lock per game, held by settlement for its whole run
    and by bet crediting for its store write, so a bet confirmed mid-settlement
    lands after the pot reset instead of being erased by it.
"""

from __future__ import annotations
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Dict
import asyncio
import logging
import uuid

from db import Database, to_iso, utcnow

logger = logging.getLogger(__name__)


class SettlementLocks:
    def __init__(self, db: Database, ttl_seconds: int = 300):
        self.db = db
        self.ttl_seconds = int(ttl_seconds)
        self._local: Dict[str, asyncio.Lock] = {}

    def local(self, game_id: str) -> asyncio.Lock:
        lock = self._local.get(game_id)
        if lock is None:
            lock = self._local[game_id] = asyncio.Lock()
        return lock

    async def try_acquire(self, game_id: str, owner: str) -> bool:
        """Take the lease unless a live one exists. Expired leases are reclaimed."""
        now = utcnow()
        async with self.db.transaction() as conn:
            await conn.execute(
                "DELETE FROM settlement_locks WHERE game_id=? AND expires_at <= ?", (game_id, to_iso(now))
            )
            cur = await conn.execute(
                "INSERT OR IGNORE INTO settlement_locks(game_id, owner, expires_at) VALUES(?,?,?)",
                (game_id, owner, to_iso(now + timedelta(seconds=self.ttl_seconds))),
            )
            return cur.rowcount == 1

    async def release(self, game_id: str, owner: str) -> None:
        async with self.db.transaction() as conn:
            await conn.execute("DELETE FROM settlement_locks WHERE game_id=? AND owner=?", (game_id, owner))

    @asynccontextmanager
    async def hold(self, game_id: str, purpose: str = "settlement") -> AsyncIterator[bool]:
        """
        Yields True with both layers held, or False (nothing held) when another
        holder has the lease.
        """
        owner = f"{purpose}:{uuid.uuid4().hex}"
        if not await self.try_acquire(game_id, owner):
            logger.info("[locks] %s for %s skipped: lease held elsewhere", purpose, game_id)
            yield False
            return
        try:
            async with self.local(game_id):
                yield True
        finally:
            await self.release(game_id, owner)
