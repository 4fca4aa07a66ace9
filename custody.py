# custody.py
"""
potcycle: escrow key custody.
Settlement and sweeps only ever ask custody for a game's signing keypair;
where the secret lives is this module's concern. The SQLite backend keeps
base58 secrets in their own table of the main database.
"""

from __future__ import annotations
from typing import Optional
import logging

import aiosqlite
import base58 as _b58
from solders.keypair import Keypair

from db import Database, to_iso, utcnow
from errors import KeyMismatch, PotCycleError

logger = logging.getLogger(__name__)


def kp_from_base58(b58: str) -> Keypair:
    """Accepts a 64-byte secret key or a 32-byte seed, base58 encoded."""
    if not b58:
        raise ValueError("Empty secret key provided")
    raw = _b58.b58decode(b58)
    if len(raw) == 64:
        return Keypair.from_bytes(raw)
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ValueError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def kp_to_base58(kp: Keypair) -> str:
    return _b58.b58encode(bytes(kp)).decode("ascii")


def assert_owner_matches(expected_pubkey: str, kp: Keypair, label: str) -> None:
    if str(expected_pubkey) != str(kp.pubkey()):
        raise KeyMismatch(
            f"{label} signer does not match stored escrow public key. "
            f"({expected_pubkey} != {kp.pubkey()})"
        )


class KeyCustody:
    """Interface: store / load / delete one escrow keypair per game."""

    async def store(self, game_id: str, kp: Keypair, conn: Optional[aiosqlite.Connection] = None) -> None:
        raise NotImplementedError

    async def load(self, game_id: str) -> Keypair:
        raise NotImplementedError

    async def delete(self, game_id: str, conn: Optional[aiosqlite.Connection] = None) -> None:
        raise NotImplementedError

    async def load_verified(self, game_id: str, expected_pubkey: str) -> Keypair:
        kp = await self.load(game_id)
        assert_owner_matches(expected_pubkey, kp, f"escrow[{game_id}]")
        return kp


class SqliteKeyCustody(KeyCustody):
    """
    Secrets stored recoverably in the escrow_keys table.
    Callers may pass an open transaction so a key is written together with its game.
    """

    def __init__(self, db: Database):
        self.db = db

    async def store(self, game_id: str, kp: Keypair, conn: Optional[aiosqlite.Connection] = None) -> None:
        sql = "INSERT INTO escrow_keys(game_id, public_key, secret_key, created_at) VALUES(?,?,?,?)"
        params = (game_id, str(kp.pubkey()), kp_to_base58(kp), to_iso(utcnow()))
        if conn is not None:
            await conn.execute(sql, params)
            return
        async with self.db.transaction() as c:
            await c.execute(sql, params)

    async def load(self, game_id: str) -> Keypair:
        row = await self.db.fetchone("SELECT public_key, secret_key FROM escrow_keys WHERE game_id=?", (game_id,))
        if not row:
            raise PotCycleError(f"No escrow key in custody for game {game_id}")
        try:
            kp = kp_from_base58(row["secret_key"])
        except ValueError as exc:
            raise KeyMismatch(f"Escrow key for game {game_id} is unreadable: {exc}") from exc
        # custody's own record must agree with the secret it holds
        assert_owner_matches(row["public_key"], kp, f"custody[{game_id}]")
        return kp

    async def delete(self, game_id: str, conn: Optional[aiosqlite.Connection] = None) -> None:
        if conn is not None:
            await conn.execute("DELETE FROM escrow_keys WHERE game_id=?", (game_id,))
        else:
            async with self.db.transaction() as c:
                await c.execute("DELETE FROM escrow_keys WHERE game_id=?", (game_id,))
        logger.info("[custody] deleted escrow key for game %s", game_id)
