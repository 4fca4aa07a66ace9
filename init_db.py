"""
potcycle: init_db.py
One-shot initializer for the SQLite database:
- Ensures schema (PRAGMA + tables + indexes)
- Creates a default game with its own escrow if no game exists yet
"""

import asyncio
import logging
import os
from typing import Optional

import db as dbmod
from config import settings  # keeps DB path consistent with app
from custody import SqliteKeyCustody
from games import GameRegistry
from models import Game

logger = logging.getLogger("init_db")

# =========================================================
# Config
# =========================================================
DB_PATH = os.getenv("DB_PATH", settings.DB_PATH)
DEFAULT_GAME_ID = os.getenv("DEFAULT_GAME_ID", "cube-rush")
DEFAULT_GAME_NAME = os.getenv("DEFAULT_GAME_NAME", "Cube Rush")


# =========================================================
# Helpers
# =========================================================
async def ensure_default_game(registry: GameRegistry) -> Optional[Game]:
    """Returns the seeded game, or None when games already exist."""
    existing = await registry.list_all()
    if existing:
        logger.info("Games exist: %s", ", ".join(g.game_id for g in existing))
        return None

    game = await registry.create(DEFAULT_GAME_NAME, game_id=DEFAULT_GAME_ID)
    logger.info(
        "Initialized first game: %s escrow=%s cycle_end=%s",
        game.game_id, game.game_pot_public_key, game.cycle_end_time.isoformat(),
    )
    return game


# =========================================================
# Main
# =========================================================
async def main():
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s %(name)s %(message)s")
    logger.info("Using DB_PATH=%s", DB_PATH)
    database = await dbmod.connect(DB_PATH)
    try:
        registry = GameRegistry(
            database,
            SqliteKeyCustody(database),
            default_tax=settings.DEFAULT_TAX_PERCENTAGE,
            default_cycle_seconds=settings.cycle_seconds,
        )
        await ensure_default_game(registry)
    finally:
        await database.close()


if __name__ == "__main__":
    asyncio.run(main())
