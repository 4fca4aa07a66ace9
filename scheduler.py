# scheduler.py
"""
potcycle: Cycle Monitor
Fixed-period sweep: settle every game whose cycle has ended, then give it a
fresh deadline whether or not the settlement paid out. A tick that arrives
while a sweep is still running is skipped.
"""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Optional
import asyncio
import logging

from db import utcnow
from games import GameRegistry
from settlement import SettlementEngine

logger = logging.getLogger(__name__)


class MonitorState(str, Enum):
    IDLE = "idle"
    SWEEPING = "sweeping"


class CycleMonitor:
    def __init__(self, registry: GameRegistry, engine: SettlementEngine, interval_seconds: float = 60.0):
        self.registry = registry
        self.engine = engine
        self.interval_seconds = float(interval_seconds)
        self.state = MonitorState.IDLE
        self._task: Optional[asyncio.Task] = None

    async def tick(self, now: Optional[datetime] = None) -> bool:
        """One sweep. False when skipped because another sweep is in flight."""
        if self.state is MonitorState.SWEEPING:
            logger.info("[cycle_monitor] skipping tick: sweep already in progress")
            return False

        self.state = MonitorState.SWEEPING
        try:
            now = now or utcnow()
            games = await self.registry.due_for_settlement(now)
            if not games:
                logger.debug("[cycle_monitor] no game cycles have ended at %s", now)
            for game in games:
                await self._sweep_one(game.game_id, now)
        finally:
            self.state = MonitorState.IDLE
        return True

    async def _sweep_one(self, game_id: str, now: datetime) -> None:
        logger.info("[cycle_monitor] cycle ended for %s, distributing winnings", game_id)
        try:
            outcome = await self.engine.distribute_winnings(game_id)
            if not outcome.paid:
                logger.info("[cycle_monitor] %s not paid out: %s", game_id, outcome.reason.value)
        except Exception:
            logger.exception("[cycle_monitor] settlement failed for %s", game_id)

        try:
            next_end = await self.registry.advance_cycle(game_id, now)
            logger.info("[cycle_monitor] new cycle for %s, next end %s", game_id, next_end.isoformat())
        except Exception:
            logger.exception("[cycle_monitor] could not advance cycle for %s", game_id)

    async def run(self) -> None:
        logger.info("[cycle_monitor] started, interval=%ss", self.interval_seconds)
        while True:
            try:
                await self.tick()
            except Exception:
                # e.g. the due-games query itself failed; next tick retries
                logger.exception("[cycle_monitor] sweep error")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="cycle-monitor")
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("[cycle_monitor] stopped")
