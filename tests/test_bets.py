import asyncio

import pytest

from errors import GameNotFound, LedgerError, ValidationError
from mocks import tx_sig, wallet


class TestPrepareBet:
    async def test_builds_transfer_to_escrow(self, bets, ledger, game):
        payer = wallet()
        tx = await bets.prepare_bet(payer, 0.001, game.game_id)

        assert isinstance(tx, str)
        prepared = ledger.prepared[-1]
        assert prepared.sender == payer
        assert prepared.recipient == game.game_pot_public_key
        assert prepared.lamports == 1_000_000

    async def test_nothing_credited(self, bets, registry, game):
        await bets.prepare_bet(wallet(), 1, game.game_id)
        assert await registry.get_pot_amount(game.game_id) == 0

    @pytest.mark.parametrize("amount", [0, -1, "abc", "0.0000000001"])
    async def test_invalid_amount(self, bets, game, amount):
        with pytest.raises(ValidationError):
            await bets.prepare_bet(wallet(), amount, game.game_id)

    async def test_invalid_payer(self, bets, game):
        with pytest.raises(ValidationError):
            await bets.prepare_bet("not-a-key", 1, game.game_id)

    async def test_unknown_game(self, bets):
        with pytest.raises(GameNotFound):
            await bets.prepare_bet(wallet(), 1, "missing")


class TestConfirmBet:
    async def test_credits_pot_and_player(self, bets, registry, ledger, game):
        payer = wallet()
        sig = ledger.deposit(payer, game.game_pot_public_key, 500_000_000)
        assert await bets.confirm_bet(payer, "0.5", game.game_id, sig) is True

        g = await registry.get(game.game_id)
        assert g.current_pot == 500_000_000
        assert g.active_players == [payer]
        assert ledger.confirmed == [sig]
        player = await registry.get_player(payer)
        assert player.total_bets == 500_000_000

    async def test_unconfirmed_signature_credits_nothing(self, bets, registry, ledger, game):
        payer = wallet()
        sig = ledger.deposit(payer, game.game_pot_public_key, 1_000_000_000)
        ledger.unconfirmed.add(sig)
        with pytest.raises(LedgerError):
            await bets.confirm_bet(payer, 1, game.game_id, sig)
        assert await registry.get_pot_amount(game.game_id) == 0

    async def test_unknown_game_fails_before_network(self, bets, ledger):
        with pytest.raises(GameNotFound):
            await bets.confirm_bet(wallet(), 1, "missing", tx_sig())
        assert "confirm_signature" not in ledger.calls

    async def test_malformed_signature(self, bets, game):
        with pytest.raises(ValidationError):
            await bets.confirm_bet(wallet(), 1, game.game_id, "xyz")

    async def test_replayed_signature_rejected(self, bets, registry, ledger, game):
        payer = wallet()
        sig = ledger.deposit(payer, game.game_pot_public_key, 1_000_000_000)
        await bets.confirm_bet(payer, 1, game.game_id, sig)
        with pytest.raises(ValidationError):
            await bets.confirm_bet(payer, 1, game.game_id, sig)
        assert await registry.get_pot_amount(game.game_id) == 1_000_000_000

    async def test_concurrent_confirms(self, bets, registry, ledger, game):
        payers = [wallet() for _ in range(5)]
        wagers = [(payers[i % 5], i % 9 + 1) for i in range(25)]
        results = await asyncio.gather(
            *(
                bets.confirm_bet(
                    p, "0.00%d" % n, game.game_id, ledger.deposit(p, game.game_pot_public_key, n * 1_000_000)
                )
                for p, n in wagers
            )
        )

        g = await registry.get(game.game_id)
        assert g.current_pot == sum((i % 9 + 1) * 1_000_000 for i in range(25))
        assert sorted(g.active_players) == sorted(payers)
        assert g.player_count == 5
        assert results.count(True) == 5


class TestDepositVerification:
    async def test_claimed_amount_above_deposit(self, bets, registry, ledger, game):
        payer = wallet()
        sig = ledger.deposit(payer, game.game_pot_public_key, 1_000)
        with pytest.raises(ValidationError, match="is not a transfer of"):
            await bets.confirm_bet(payer, 1000, game.game_id, sig)
        assert await registry.get_pot_amount(game.game_id) == 0
        assert (await registry.get(game.game_id)).active_players == []

    async def test_deposit_to_another_wallet(self, bets, registry, ledger, game):
        payer = wallet()
        sig = ledger.deposit(payer, wallet(), 1_000_000)
        with pytest.raises(ValidationError):
            await bets.confirm_bet(payer, "0.001", game.game_id, sig)
        assert await registry.get_pot_amount(game.game_id) == 0

    async def test_someone_elses_deposit(self, bets, registry, ledger, game):
        sig = ledger.deposit(wallet(), game.game_pot_public_key, 1_000_000)
        with pytest.raises(ValidationError):
            await bets.confirm_bet(wallet(), "0.001", game.game_id, sig)
        assert await registry.get_pot_amount(game.game_id) == 0

    async def test_unknown_transaction(self, bets, registry, game):
        with pytest.raises(LedgerError, match="not found"):
            await bets.confirm_bet(wallet(), "0.001", game.game_id, tx_sig())
        assert await registry.get_pot_amount(game.game_id) == 0

    async def test_rejected_signature_can_be_retried(self, bets, registry, ledger, game):
        payer = wallet()
        sig = ledger.deposit(payer, game.game_pot_public_key, 2_000_000)
        with pytest.raises(ValidationError):
            await bets.confirm_bet(payer, "0.003", game.game_id, sig)
        assert await bets.confirm_bet(payer, "0.002", game.game_id, sig) is True
        assert await registry.get_pot_amount(game.game_id) == 2_000_000
