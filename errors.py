# errors.py
"""
potcycle: error taxonomy.
Every domain failure carries the HTTP status the API answers with.
"""

from __future__ import annotations


class PotCycleError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class ValidationError(PotCycleError):
    """Missing or malformed input."""
    status_code = 400


class GameNotFound(PotCycleError):
    status_code = 404

    def __init__(self, game_id: str):
        super().__init__(f"Game {game_id} not found")
        self.game_id = game_id


class InsufficientBalance(PotCycleError):
    """Escrow cannot cover the transfer plus fees and rent."""


class FeeTooLow(PotCycleError):
    """Computed service fee is zero or negative."""


class LedgerError(PotCycleError):
    """Network / consensus failure. The original exception is chained as __cause__."""


class TransferFailed(LedgerError):
    """Transfer rejected, expired, or confirmed with an error."""


class SimulationFailed(LedgerError):
    """Simulation reported an error; nothing was submitted."""


class KeyMismatch(PotCycleError):
    """Custody key does not derive the stored escrow public key."""


class SettlementInProgress(PotCycleError):
    """Another settlement or sweep holds the game's lease."""
