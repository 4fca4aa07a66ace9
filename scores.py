# scores.py
"""
potcycle: Score Ledger
Best score per (game, player) for the live cycle. Scores only go up: a report
that does not beat the stored value is a no-op. Closing a cycle stamps the
live rows with the settlement time, after which they are history.
"""

from __future__ import annotations
from datetime import datetime
from typing import List, Optional
import logging
import math

import aiosqlite

from db import Database, to_iso, utcnow
from errors import GameNotFound, ValidationError
from models import Score, ScoreUpdate

logger = logging.getLogger(__name__)


class ScoreLedger:
    def __init__(self, db: Database):
        self.db = db

    async def record_score(self, game_id: str, user_id: str, score: float) -> ScoreUpdate:
        if not user_id:
            raise ValidationError("userId is required")
        try:
            score = float(score)
        except (TypeError, ValueError) as exc:
            raise ValidationError("score must be a number") from exc
        if not math.isfinite(score):
            raise ValidationError("score must be finite")

        async with self.db.transaction() as conn:
            async with conn.execute("SELECT 1 FROM games WHERE game_id=?", (game_id,)) as cur:
                if await cur.fetchone() is None:
                    raise GameNotFound(game_id)
            async with conn.execute(
                "SELECT score FROM scores WHERE game_id=? AND user_id=? AND cycle_end IS NULL",
                (game_id, user_id),
            ) as cur:
                row = await cur.fetchone()
            current = float(row["score"]) if row else 0.0

            if score <= current:
                return ScoreUpdate(updated=False, previous_score=current, new_score=score)

            now = to_iso(utcnow())
            if row:
                await conn.execute(
                    "UPDATE scores SET score=?, updated_at=? WHERE game_id=? AND user_id=? AND cycle_end IS NULL",
                    (score, now, game_id, user_id),
                )
            else:
                await conn.execute(
                    "INSERT INTO scores(game_id, user_id, score, cycle_end, updated_at) VALUES(?,?,?,NULL,?)",
                    (game_id, user_id, score, now),
                )

        logger.debug("[scores] %s/%s %s -> %s", game_id, user_id, current, score)
        return ScoreUpdate(updated=True, previous_score=current, new_score=score)

    async def list_live_scores(self, game_id: str) -> List[Score]:
        """Best first: highest score, then whoever reached it earliest."""
        rows = await self.db.fetchall(
            "SELECT * FROM scores WHERE game_id=? AND cycle_end IS NULL "
            "ORDER BY score DESC, updated_at ASC, user_id ASC",
            (game_id,),
        )
        return [Score.from_row(r) for r in rows]

    async def close_cycle(self, game_id: str, at: Optional[datetime] = None,
                          conn: Optional[aiosqlite.Connection] = None) -> int:
        at_iso = to_iso(at or utcnow())
        sql = "UPDATE scores SET cycle_end=? WHERE game_id=? AND cycle_end IS NULL"
        if conn is not None:
            cur = await conn.execute(sql, (at_iso, game_id))
        else:
            async with self.db.transaction() as c:
                cur = await c.execute(sql, (at_iso, game_id))
        return cur.rowcount
