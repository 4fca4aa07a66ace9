# models.py
"""
potcycle: typed records.
Rows leaving the store are validated into these models; a row that does
not fit raises pydantic.ValidationError instead of flowing onward.
Wire names are camelCase (gameId, currentPot, ...).
"""

from __future__ import annotations
import math
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from db import from_iso


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Game(Record):
    game_id: str = Field(min_length=1)
    game_name: str = Field(min_length=1)
    game_pot_public_key: str = Field(min_length=32, max_length=44)
    tax_percentage: int = Field(ge=0, le=100)
    current_pot: int = Field(ge=0)
    total_tax_collected: int = Field(ge=0)
    player_count: int = Field(ge=0)
    active_players: List[str] = Field(default_factory=list)
    cycle_duration_seconds: int = Field(gt=0)
    last_distribution: datetime
    cycle_end_time: datetime

    @field_validator("active_players")
    @classmethod
    def _unique_players(cls, v: List[str]) -> List[str]:
        if len(set(v)) != len(v):
            raise ValueError("activePlayers contains duplicates")
        return v

    @classmethod
    def from_row(cls, row: Mapping[str, Any], active_players: List[str]) -> "Game":
        return cls(
            game_id=row["game_id"],
            game_name=row["game_name"],
            game_pot_public_key=row["game_pot_public_key"],
            tax_percentage=row["tax_percentage"],
            current_pot=row["current_pot"],
            total_tax_collected=row["total_tax_collected"],
            player_count=row["player_count"],
            active_players=active_players,
            cycle_duration_seconds=row["cycle_duration_seconds"],
            last_distribution=from_iso(row["last_distribution"]),
            cycle_end_time=from_iso(row["cycle_end_time"]),
        )

    def time_left(self, now: datetime) -> int:
        """Whole seconds until the cycle ends, never negative."""
        return max(0, math.floor((self.cycle_end_time - now).total_seconds()))

    def cycle_active(self, now: datetime) -> bool:
        return now < self.cycle_end_time


class Score(Record):
    game_id: str
    user_id: str
    score: float
    cycle_end: Optional[datetime] = None
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Score":
        return cls(
            game_id=row["game_id"],
            user_id=row["user_id"],
            score=row["score"],
            cycle_end=from_iso(row["cycle_end"]),
            updated_at=from_iso(row["updated_at"]),
        )


class ScoreUpdate(Record):
    success: bool = True
    updated: bool
    previous_score: float
    new_score: float


class Player(Record):
    user_id: str
    total_bets: int = Field(default=0, ge=0)
    total_winnings: int = Field(default=0, ge=0)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Player":
        return cls(user_id=row["user_id"], total_bets=row["total_bets"], total_winnings=row["total_winnings"])


class Distribution(Record):
    game_id: str
    winner_user_id: str
    total_pot: int = Field(ge=0)
    tax: int = Field(ge=0)
    winnings: int = Field(ge=0)
    fee_signature: Optional[str] = None
    winnings_signature: Optional[str] = None
    timestamp: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Distribution":
        return cls(
            game_id=row["game_id"],
            winner_user_id=row["winner_user_id"],
            total_pot=row["total_pot"],
            tax=row["tax"],
            winnings=row["winnings"],
            fee_signature=row["fee_signature"],
            winnings_signature=row["winnings_signature"],
            timestamp=from_iso(row["timestamp"]),
        )


class GameStatus(Record):
    game_id: str
    game_name: str
    time_left: int
    cycle_active: bool
    current_pot: int
    player_count: int

    @classmethod
    def of(cls, game: Game, now: datetime) -> "GameStatus":
        return cls(
            game_id=game.game_id,
            game_name=game.game_name,
            time_left=game.time_left(now),
            cycle_active=game.cycle_active(now),
            current_pot=game.current_pot,
            player_count=game.player_count,
        )


class SkipReason(str, Enum):
    GAME_NOT_FOUND = "game_not_found"
    EMPTY_POT = "empty_pot"
    NO_PLAYERS = "no_players"
    NO_SCORES = "no_scores"
    IN_PROGRESS = "in_progress"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    FEE_TOO_LOW = "fee_too_low"
    INVALID_WINNER = "invalid_winner"


class SettlementOutcome(Record):
    game_id: str
    paid: bool
    reason: Optional[SkipReason] = None
    winner_user_id: Optional[str] = None
    total_pot: int = 0
    fee_reserve: int = 0
    working_total: int = 0
    fee: int = 0
    winnings: int = 0
    fee_signature: Optional[str] = None
    winnings_signature: Optional[str] = None

    @classmethod
    def skipped(cls, game_id: str, reason: SkipReason, **extra: Any) -> "SettlementOutcome":
        return cls(game_id=game_id, paid=False, reason=reason, **extra)


class SweepResult(Record):
    game_id: str
    signature: str
    amount: int
