# treasury.py
"""
potcycle: Treasury Sweep
Operator cash-out: drain one game's escrow (minus the transfer fee) to the
operator wallet and zero the recorded pot. Players, scores and the cycle
deadline are left alone.
Closing a game drains whatever the escrow still holds (rent, stray
deposits) before its row and key are deleted.
"""

from __future__ import annotations
import logging
from typing import Optional

from custody import KeyCustody
from errors import InsufficientBalance, SettlementInProgress, ValidationError
from games import GameRegistry
from ledger import LedgerGateway, to_public_key
from locks import SettlementLocks
from models import SweepResult

logger = logging.getLogger(__name__)


class TreasurySweep:
    def __init__(self, registry: GameRegistry, ledger: LedgerGateway, custody: KeyCustody,
                 locks: SettlementLocks, operator_wallet: str):
        self.registry = registry
        self.ledger = ledger
        self.custody = custody
        self.locks = locks
        self.operator_wallet = to_public_key(operator_wallet)

    async def sweep_to_operator(self, game_id: str) -> SweepResult:
        async with self.locks.hold(game_id, "sweep") as acquired:
            if not acquired:
                raise SettlementInProgress(f"Game {game_id} is being settled; retry the sweep later")

            game = await self.registry.get(game_id)
            if game.current_pot <= 0:
                raise InsufficientBalance(f"Game {game_id} has no pot to sweep")

            escrow = await self.custody.load_verified(game_id, game.game_pot_public_key)
            balance = await self.ledger.get_balance(escrow.pubkey())
            if balance <= 0:
                raise InsufficientBalance(f"Escrow for game {game_id} is empty")

            fee_reserve = await self.ledger.transfer_fee(escrow.pubkey(), self.operator_wallet)
            amount = balance - fee_reserve
            if amount <= 0:
                raise InsufficientBalance(
                    f"Escrow balance {balance} does not cover the fee reserve {fee_reserve}"
                )

            sig = await self.ledger.submit_transfer(escrow, self.operator_wallet, amount)
            await self.registry.zero_pot(game_id)

        logger.info("[treasury] swept %s lamports from %s to %s sig=%s", amount, game_id, self.operator_wallet, sig)
        return SweepResult(game_id=game_id, signature=sig, amount=amount)

    async def close_game(self, game_id: str) -> Optional[SweepResult]:
        """
        Delete a game with no recorded pot. Returns the escrow drain, or None
        when the escrow held nothing the fee leaves room to move.
        """
        async with self.locks.hold(game_id, "close") as acquired:
            if not acquired:
                raise SettlementInProgress(f"Game {game_id} is being settled; retry the delete later")

            game = await self.registry.get(game_id)
            if game.current_pot > 0:
                raise ValidationError(f"Game {game_id} still holds a pot of {game.current_pot}; sweep it first")

            escrow = await self.custody.load_verified(game_id, game.game_pot_public_key)
            balance = await self.ledger.get_balance(escrow.pubkey())
            result = None
            if balance > 0:
                fee_reserve = await self.ledger.transfer_fee(escrow.pubkey(), self.operator_wallet)
                if balance > fee_reserve:
                    amount = balance - fee_reserve
                    sig = await self.ledger.submit_transfer(escrow, self.operator_wallet, amount)
                    result = SweepResult(game_id=game_id, signature=sig, amount=amount)
                    logger.info("[treasury] drained %s lamports from %s before delete sig=%s", amount, game_id, sig)
                else:
                    logger.warning(
                        "[treasury] %s escrow %s keeps %s lamports, below the fee %s",
                        game_id, escrow.pubkey(), balance, fee_reserve,
                    )

            await self.registry.delete(game_id)
        return result
