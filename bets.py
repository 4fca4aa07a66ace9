# bets.py
"""
potcycle: Bet Intake
Client flow: prepare_bet -> wallet signs & submits -> confirm_bet(signature).
Nothing touches the pot until the deposit is confirmed on-chain.
"""

from __future__ import annotations
from typing import Union
from decimal import Decimal
import logging

from games import GameRegistry
from ledger import LedgerGateway, to_lamports, to_public_key, to_signature
from locks import SettlementLocks

logger = logging.getLogger(__name__)

Amount = Union[int, float, str, Decimal]


class BetIntake:
    def __init__(self, registry: GameRegistry, ledger: LedgerGateway, locks: SettlementLocks):
        self.registry = registry
        self.ledger = ledger
        self.locks = locks

    async def prepare_bet(self, payer_pubkey: str, amount_native: Amount, game_id: str) -> str:
        """Unsigned base64 transfer payer -> game escrow; the payer signs and pays the fee."""
        lamports = to_lamports(amount_native)
        payer = to_public_key(payer_pubkey)
        game = await self.registry.get(game_id)
        tx_b64 = await self.ledger.build_unsigned_transfer(payer, game.game_pot_public_key, lamports)
        logger.info("[bets] prepared %s lamports %s -> %s", lamports, payer, game.game_id)
        return tx_b64

    async def confirm_bet(self, payer_pubkey: str, amount_native: Amount, game_id: str, signature: str) -> bool:
        """
        Credit a confirmed deposit once the chain shows it moved `amount_native`
        from the payer to the game escrow. Returns True when the payer joined
        the cycle with this bet.
        """
        lamports = to_lamports(amount_native)
        user_id = str(to_public_key(payer_pubkey))
        sig = str(to_signature(signature))
        # fail fast on unknown games before waiting on the network
        game = await self.registry.get(game_id)

        await self.ledger.confirm_signature(sig)
        await self.ledger.verify_deposit(sig, user_id, game.game_pot_public_key, lamports)

        async with self.locks.local(game_id):
            is_new = await self.registry.credit_bet(game_id, user_id, lamports, sig)
        logger.info(
            "[bets] credited %s lamports from %s to %s (new_player=%s) sig=%s",
            lamports, user_id, game_id, is_new, sig,
        )
        return is_new
