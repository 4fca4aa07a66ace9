# settlement.py
"""
potcycle: Settlement Engine

distribute_winnings(game_id) closes one game's cycle:

  1. lease the game (skip if someone else is settling / sweeping it)
  2. preconditions: game exists, pot > 0, players, live scores
  3. winner = best live score
  4. reconcile recorded pot against the escrow's on-chain balance
  5. fee transfer -> SERVICE_WALLET, then winnings transfer -> winner
     (winnings are simulated first; a failing simulation submits nothing)
  6. only with both signatures in hand, commit the outcome and the next
     cycle deadline in one transaction

Unmet preconditions and unaffordable payouts are skips, not errors: the cycle
stays as it is and can be retried. Ledger failures raise and leave the store
untouched.
"""

from __future__ import annotations
from datetime import timedelta
from typing import Optional
import logging

import aiosqlite
from solders.keypair import Keypair

from custody import KeyCustody
from db import Database, from_iso, to_iso, utcnow
from errors import FeeTooLow, InsufficientBalance, SimulationFailed, ValidationError
from games import GameRegistry, add_player_totals
from ledger import LedgerGateway, to_public_key
from locks import SettlementLocks
from models import Distribution, Game, Player, SettlementOutcome, SkipReason
from scores import ScoreLedger

logger = logging.getLogger(__name__)


class SettlementEngine:
    def __init__(
        self,
        db: Database,
        registry: GameRegistry,
        scores: ScoreLedger,
        ledger: LedgerGateway,
        custody: KeyCustody,
        locks: SettlementLocks,
        service_wallet: str,
    ):
        self.db = db
        self.registry = registry
        self.scores = scores
        self.ledger = ledger
        self.custody = custody
        self.locks = locks
        self.service_wallet = to_public_key(service_wallet)

    async def distribute_winnings(self, game_id: str) -> SettlementOutcome:
        async with self.locks.hold(game_id, "settlement") as acquired:
            if not acquired:
                return SettlementOutcome.skipped(game_id, SkipReason.IN_PROGRESS)
            outcome = await self._settle(game_id)
        if outcome.paid:
            logger.info(
                "[settlement] %s paid winner=%s fee=%s winnings=%s working_total=%s reserve=%s",
                game_id, outcome.winner_user_id, outcome.fee, outcome.winnings,
                outcome.working_total, outcome.fee_reserve,
            )
        else:
            logger.info("[settlement] %s skipped: %s", game_id, outcome.reason.value)
        return outcome

    async def _settle(self, game_id: str) -> SettlementOutcome:
        game = await self.registry.find(game_id)
        if game is None:
            return SettlementOutcome.skipped(game_id, SkipReason.GAME_NOT_FOUND)
        if game.current_pot <= 0:
            return SettlementOutcome.skipped(game_id, SkipReason.EMPTY_POT)
        if not game.active_players:
            return SettlementOutcome.skipped(game_id, SkipReason.NO_PLAYERS)
        live = await self.scores.list_live_scores(game_id)
        if not live:
            return SettlementOutcome.skipped(game_id, SkipReason.NO_SCORES)

        winner = live[0]
        try:
            winner_pk = to_public_key(winner.user_id)
        except ValidationError:
            logger.error("[settlement] %s winner %r is not a wallet address", game_id, winner.user_id)
            return SettlementOutcome.skipped(game_id, SkipReason.INVALID_WINNER, winner_user_id=winner.user_id)

        escrow = await self.custody.load_verified(game_id, game.game_pot_public_key)
        return await self._pay_out(game, escrow, winner.user_id, winner_pk)

    async def _pay_out(self, game: Game, escrow: Keypair, winner_id: str, winner_pk) -> SettlementOutcome:
        game_id = game.game_id
        escrow_pk = escrow.pubkey()

        # ---------------- Reconcile ----------------
        balance = await self.ledger.get_balance(escrow_pk)
        rent = await self.ledger.get_rent_exempt_minimum()
        if balance <= rent:
            logger.warning("[settlement] %s escrow balance %s <= rent minimum %s", game_id, balance, rent)
            return SettlementOutcome.skipped(game_id, SkipReason.INSUFFICIENT_BALANCE, total_pot=game.current_pot)

        tx_fee = await self.ledger.transfer_fee(escrow_pk, self.service_wallet)
        fee_reserve = 2 * tx_fee
        spendable = min(game.current_pot, balance - rent)
        working_total = spendable - fee_reserve
        if working_total <= 0:
            return SettlementOutcome.skipped(
                game_id, SkipReason.INSUFFICIENT_BALANCE,
                total_pot=game.current_pot, fee_reserve=fee_reserve, working_total=working_total,
            )

        fee, winnings = split_pot(working_total, game.tax_percentage)
        amounts = dict(
            winner_user_id=winner_id, total_pot=game.current_pot, fee_reserve=fee_reserve,
            working_total=working_total, fee=fee, winnings=winnings,
        )
        try:
            require_fee(fee, working_total, game.tax_percentage)
        except FeeTooLow as exc:
            logger.warning("[settlement] %s %s", game_id, exc)
            return SettlementOutcome.skipped(game_id, SkipReason.FEE_TOO_LOW, **amounts)

        # ---------------- Fee transfer ----------------
        try:
            _require_balance(balance, fee, tx_fee, rent, "fee")
        except InsufficientBalance as exc:
            logger.warning("[settlement] %s %s", game_id, exc)
            return SettlementOutcome.skipped(game_id, SkipReason.INSUFFICIENT_BALANCE, **amounts)
        fee_sig = await self.ledger.submit_transfer(escrow, self.service_wallet, fee)

        # ---------------- Winnings transfer ----------------
        balance = await self.ledger.get_balance(escrow_pk)
        try:
            _require_balance(balance, winnings, tx_fee, rent, "winnings")
        except InsufficientBalance as exc:
            # fee already left the escrow; the recorded pot now overstates it until the next attempt
            logger.error("[settlement] %s %s (fee sig=%s already confirmed)", game_id, exc, fee_sig)
            return SettlementOutcome.skipped(game_id, SkipReason.INSUFFICIENT_BALANCE, fee_signature=fee_sig, **amounts)

        winnings_tx = await self.ledger.build_transfer(escrow, winner_pk, winnings)
        sim_err = await self.ledger.simulate(winnings_tx)
        if sim_err is not None:
            logger.error("[settlement] %s winnings simulation failed: %s (fee sig=%s)", game_id, sim_err, fee_sig)
            raise SimulationFailed(f"Winnings transfer for game {game_id} failed simulation: {sim_err}")
        win_sig = await self.ledger.send_and_confirm(winnings_tx)

        # ---------------- Commit ----------------
        await self._commit(game, winner_id, fee, winnings, fee_sig, win_sig)
        return SettlementOutcome(
            game_id=game_id, paid=True, fee_signature=fee_sig, winnings_signature=win_sig, **amounts
        )

    async def _commit(self, game: Game, winner_id: str, fee: int, winnings: int,
                      fee_sig: Optional[str], win_sig: Optional[str]) -> None:
        now = utcnow()
        record = Distribution(
            game_id=game.game_id,
            winner_user_id=winner_id,
            total_pot=game.current_pot,
            tax=fee,
            winnings=winnings,
            fee_signature=fee_sig,
            winnings_signature=win_sig,
            timestamp=now,
        )
        async with self.db.transaction() as conn:
            await self.scores.close_cycle(game.game_id, now, conn=conn)
            async with conn.execute("SELECT cycle_end_time FROM games WHERE game_id=?", (game.game_id,)) as cur:
                row = await cur.fetchone()
            next_end = max(from_iso(row["cycle_end_time"]), now + timedelta(seconds=game.cycle_duration_seconds))
            await conn.execute(
                "UPDATE games SET current_pot = 0, player_count = 0, last_distribution = ?, cycle_end_time = ?, "
                "total_tax_collected = total_tax_collected + ? WHERE game_id=?",
                (to_iso(now), to_iso(next_end), fee, game.game_id),
            )
            await conn.execute("DELETE FROM active_players WHERE game_id=?", (game.game_id,))
            await add_player_totals(conn, Player(user_id=winner_id, total_winnings=winnings))
            await insert_distribution(conn, record)


def split_pot(working_total: int, tax_percentage: int) -> tuple[int, int]:
    """(fee, winnings); integer lamports, the rounding remainder goes to the winner."""
    fee = working_total * int(tax_percentage) // 100
    return fee, working_total - fee


def require_fee(fee: int, working_total: int, tax_percentage: int) -> None:
    if fee <= 0:
        raise FeeTooLow(f"{tax_percentage}% of {working_total} lamports leaves no service fee")


def _require_balance(balance: int, amount: int, tx_fee: int, rent: int, label: str) -> None:
    needed = amount + tx_fee + rent
    if balance < needed:
        raise InsufficientBalance(f"{label} transfer needs {needed} lamports, escrow holds {balance}")


async def insert_distribution(conn: aiosqlite.Connection, record: Distribution) -> None:
    await conn.execute(
        "INSERT INTO distributions(game_id, winner_user_id, total_pot, tax, winnings, "
        "fee_signature, winnings_signature, timestamp) VALUES(?,?,?,?,?,?,?,?)",
        (
            record.game_id,
            record.winner_user_id,
            record.total_pot,
            record.tax,
            record.winnings,
            record.fee_signature,
            record.winnings_signature,
            to_iso(record.timestamp),
        ),
    )
