# games.py
"""
potcycle: Game Registry Store
CRUD over game records plus the atomic mutations the bet and cycle code need.
Every mutation is a single write transaction.
"""

from __future__ import annotations
from datetime import datetime, timedelta
from typing import List, Optional
import logging
import secrets
import sqlite3

import aiosqlite

from custody import KeyCustody
from db import Database, from_iso, to_iso, utcnow
from errors import GameNotFound, ValidationError
from ledger import generate_escrow_keypair
from models import Distribution, Game, Player

logger = logging.getLogger(__name__)


class GameRegistry:
    def __init__(self, db: Database, custody: KeyCustody, default_tax: int = 10, default_cycle_seconds: int = 7200):
        self.db = db
        self.custody = custody
        self.default_tax = int(default_tax)
        self.default_cycle_seconds = int(default_cycle_seconds)

    # =========================================================
    # Reads
    # =========================================================
    async def _active_players(self, game_id: str) -> List[str]:
        rows = await self.db.fetchall(
            "SELECT user_id FROM active_players WHERE game_id=? ORDER BY joined_at, user_id", (game_id,)
        )
        return [r["user_id"] for r in rows]

    async def find(self, game_id: str) -> Optional[Game]:
        row = await self.db.fetchone("SELECT * FROM games WHERE game_id=?", (game_id,))
        if not row:
            return None
        return Game.from_row(row, await self._active_players(game_id))

    async def get(self, game_id: str) -> Game:
        game = await self.find(game_id)
        if game is None:
            raise GameNotFound(game_id)
        return game

    async def list_all(self) -> List[Game]:
        rows = await self.db.fetchall("SELECT * FROM games ORDER BY created_at, game_id")
        return [Game.from_row(r, await self._active_players(r["game_id"])) for r in rows]

    async def due_for_settlement(self, now: Optional[datetime] = None) -> List[Game]:
        now = now or utcnow()
        rows = await self.db.fetchall(
            "SELECT * FROM games WHERE cycle_end_time <= ? ORDER BY cycle_end_time, game_id", (to_iso(now),)
        )
        return [Game.from_row(r, await self._active_players(r["game_id"])) for r in rows]

    async def get_pot_amount(self, game_id: str) -> int:
        row = await self.db.fetchone("SELECT current_pot FROM games WHERE game_id=?", (game_id,))
        return int(row["current_pot"]) if row else 0

    async def get_player(self, user_id: str) -> Optional[Player]:
        row = await self.db.fetchone("SELECT * FROM players WHERE user_id=?", (user_id,))
        return Player.from_row(row) if row else None

    async def list_distributions(self, game_id: str) -> List[Distribution]:
        """Payout history, oldest first."""
        rows = await self.db.fetchall(
            "SELECT * FROM distributions WHERE game_id=? ORDER BY timestamp, id", (game_id,)
        )
        return [Distribution.from_row(r) for r in rows]

    # =========================================================
    # Writes
    # =========================================================
    async def create(
        self,
        game_name: str,
        game_id: Optional[str] = None,
        tax_percentage: Optional[int] = None,
        cycle_duration_seconds: Optional[int] = None,
    ) -> Game:
        """New game with its own escrow keypair; the secret goes to custody in the same transaction."""
        if not game_name or not str(game_name).strip():
            raise ValidationError("gameName is required")
        game_id = (game_id or "").strip() or secrets.token_hex(6)
        tax = self.default_tax if tax_percentage is None else _check_tax(tax_percentage)
        duration = self.default_cycle_seconds if cycle_duration_seconds is None else _check_duration(cycle_duration_seconds)

        kp = generate_escrow_keypair()
        now = utcnow()
        try:
            async with self.db.transaction() as conn:
                await conn.execute(
                    "INSERT INTO games(game_id, game_name, game_pot_public_key, tax_percentage, current_pot, "
                    "total_tax_collected, player_count, cycle_duration_seconds, last_distribution, cycle_end_time, created_at) "
                    "VALUES(?,?,?,?,0,0,0,?,?,?,?)",
                    (
                        game_id,
                        str(game_name).strip(),
                        str(kp.pubkey()),
                        tax,
                        duration,
                        to_iso(now),
                        to_iso(now + timedelta(seconds=duration)),
                        to_iso(now),
                    ),
                )
                await self.custody.store(game_id, kp, conn=conn)
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Game {game_id} already exists") from exc

        logger.info("[registry] created game %s escrow=%s tax=%s%% cycle=%ss", game_id, kp.pubkey(), tax, duration)
        return await self.get(game_id)

    async def update(
        self,
        game_id: str,
        game_name: Optional[str] = None,
        tax_percentage: Optional[int] = None,
        cycle_duration_seconds: Optional[int] = None,
    ) -> Game:
        sets, params = [], []
        if game_name is not None:
            if not str(game_name).strip():
                raise ValidationError("gameName must not be empty")
            sets.append("game_name=?")
            params.append(str(game_name).strip())
        if tax_percentage is not None:
            sets.append("tax_percentage=?")
            params.append(_check_tax(tax_percentage))
        if cycle_duration_seconds is not None:
            duration = _check_duration(cycle_duration_seconds)
            sets += ["cycle_duration_seconds=?", "cycle_end_time=?"]
            params += [duration, to_iso(utcnow() + timedelta(seconds=duration))]

        if sets:
            async with self.db.transaction() as conn:
                cur = await conn.execute(f"UPDATE games SET {', '.join(sets)} WHERE game_id=?", (*params, game_id))
                if cur.rowcount == 0:
                    raise GameNotFound(game_id)
            logger.info("[registry] updated game %s fields=%s", game_id, [s.split("=")[0] for s in sets])
        return await self.get(game_id)

    async def delete(self, game_id: str) -> None:
        async with self.db.transaction() as conn:
            async with conn.execute("SELECT current_pot FROM games WHERE game_id=?", (game_id,)) as cur:
                row = await cur.fetchone()
            if not row:
                raise GameNotFound(game_id)
            if int(row["current_pot"]) > 0:
                raise ValidationError(f"Game {game_id} still holds a pot of {row['current_pot']}; sweep it first")
            await conn.execute("DELETE FROM active_players WHERE game_id=?", (game_id,))
            await conn.execute("DELETE FROM games WHERE game_id=?", (game_id,))
            await self.custody.delete(game_id, conn=conn)
        logger.info("[registry] deleted game %s", game_id)

    async def advance_cycle(self, game_id: str, now: Optional[datetime] = None) -> datetime:
        """
        Next deadline = now + the game's cycle length. Never moves a deadline
        backwards, e.g. past one a settlement committed after `now`.
        """
        now = now or utcnow()
        async with self.db.transaction() as conn:
            async with conn.execute(
                "SELECT cycle_duration_seconds, cycle_end_time FROM games WHERE game_id=?", (game_id,)
            ) as cur:
                row = await cur.fetchone()
            if not row:
                raise GameNotFound(game_id)
            new_end = max(
                from_iso(row["cycle_end_time"]), now + timedelta(seconds=int(row["cycle_duration_seconds"]))
            )
            await conn.execute("UPDATE games SET cycle_end_time=? WHERE game_id=?", (to_iso(new_end), game_id))
        return new_end

    async def credit_bet(self, game_id: str, user_id: str, lamports: int, signature: str) -> bool:
        """
        Pot += lamports, player joins the active set (once per cycle), lifetime bets += lamports.
        Returns True when the player was new to this cycle.
        """
        now = to_iso(utcnow())
        try:
            async with self.db.transaction() as conn:
                cur = await conn.execute(
                    "UPDATE games SET current_pot = current_pot + ? WHERE game_id=?", (lamports, game_id)
                )
                if cur.rowcount == 0:
                    raise GameNotFound(game_id)
                await conn.execute(
                    "INSERT INTO bet_signatures(signature, game_id, user_id, lamports, created_at) VALUES(?,?,?,?,?)",
                    (signature, game_id, user_id, lamports, now),
                )
                cur = await conn.execute(
                    "INSERT OR IGNORE INTO active_players(game_id, user_id, joined_at) VALUES(?,?,?)",
                    (game_id, user_id, now),
                )
                is_new = cur.rowcount == 1
                if is_new:
                    await conn.execute("UPDATE games SET player_count = player_count + 1 WHERE game_id=?", (game_id,))
                await add_player_totals(conn, Player(user_id=user_id, total_bets=lamports))
        except sqlite3.IntegrityError as exc:
            raise ValidationError(f"Signature {signature} was already credited") from exc
        return is_new

    async def reconcile_players(self, game_id: str) -> Game:
        """Resync player_count with the active-player set."""
        async with self.db.transaction() as conn:
            cur = await conn.execute(
                "UPDATE games SET player_count = "
                "(SELECT COUNT(*) FROM active_players ap WHERE ap.game_id = games.game_id) "
                "WHERE game_id=?",
                (game_id,),
            )
            if cur.rowcount == 0:
                raise GameNotFound(game_id)
        game = await self.get(game_id)
        logger.info("[registry] reconciled players for %s: %s active", game_id, game.player_count)
        return game

    async def zero_pot(self, game_id: str, conn: Optional[aiosqlite.Connection] = None) -> None:
        if conn is not None:
            await conn.execute("UPDATE games SET current_pot = 0 WHERE game_id=?", (game_id,))
            return
        async with self.db.transaction() as c:
            await c.execute("UPDATE games SET current_pot = 0 WHERE game_id=?", (game_id,))


async def add_player_totals(conn: aiosqlite.Connection, delta: Player) -> None:
    """Adds delta.total_bets / delta.total_winnings onto the lifetime row."""
    await conn.execute(
        "INSERT INTO players(user_id, total_bets, total_winnings) VALUES(?,?,?) "
        "ON CONFLICT(user_id) DO UPDATE SET "
        "total_bets = total_bets + excluded.total_bets, "
        "total_winnings = total_winnings + excluded.total_winnings",
        (delta.user_id, delta.total_bets, delta.total_winnings),
    )


def _check_tax(v) -> int:
    try:
        tax = int(v)
    except (TypeError, ValueError) as exc:
        raise ValidationError("taxPercentage must be an integer") from exc
    if tax != v or not 0 <= tax <= 100:
        raise ValidationError("taxPercentage must be an integer within 0..100")
    return tax


def _check_duration(v) -> int:
    try:
        secs = int(v)
    except (TypeError, ValueError) as exc:
        raise ValidationError("cycleDurationSeconds must be an integer") from exc
    if secs <= 0:
        raise ValidationError("cycleDurationSeconds must be > 0")
    return secs
