import asyncio
import base64
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from errors import LedgerError, TransferFailed, ValidationError
from ledger import LedgerGateway, _transfer_message, to_lamports, to_public_key, to_signature


def resp(value):
    return SimpleNamespace(value=value)


@pytest.fixture
def gateway():
    gw = LedgerGateway("http://127.0.0.1:8899", default_signature_fee=5_000, confirm_timeout=0.05)
    gw._client = AsyncMock()
    gw._client.get_latest_blockhash.return_value = resp(
        SimpleNamespace(blockhash=Hash.default(), last_valid_block_height=1_000)
    )
    return gw


class TestConversions:
    @pytest.mark.parametrize(
        "amount, lamports",
        [(0.001, 1_000_000), ("1.5", 1_500_000_000), (2, 2_000_000_000), (Decimal("0.000000001"), 1)],
    )
    def test_to_lamports(self, amount, lamports):
        assert to_lamports(amount) == lamports

    @pytest.mark.parametrize("amount", [0, -0.5, "1e-10", "abc"])
    def test_to_lamports_rejects(self, amount):
        with pytest.raises(ValidationError):
            to_lamports(amount)

    def test_public_key(self):
        pk = Keypair().pubkey()
        assert to_public_key(str(pk)) == pk
        assert to_public_key(bytes(pk)) == pk

    @pytest.mark.parametrize("bad", ["", None, "0OIl", "abc"])
    def test_public_key_rejects(self, bad):
        with pytest.raises(ValidationError):
            to_public_key(bad)

    def test_signature_rejects(self):
        with pytest.raises(ValidationError):
            to_signature("not a signature")


class TestQueries:
    async def test_balance(self, gateway):
        gateway._client.get_balance.return_value = resp(1_234)
        assert await gateway.get_balance(str(Keypair().pubkey())) == 1_234

    async def test_rpc_failure_is_wrapped(self, gateway):
        gateway._client.get_balance.side_effect = OSError("connection refused")
        with pytest.raises(LedgerError) as info:
            await gateway.get_balance(Keypair().pubkey())
        assert isinstance(info.value.__cause__, OSError)

    async def test_rent_minimum(self, gateway):
        gateway._client.get_minimum_balance_for_rent_exemption.return_value = resp(890_880)
        assert await gateway.get_rent_exempt_minimum() == 890_880

    async def test_transfer_fee(self, gateway):
        gateway._client.get_fee_for_message.return_value = resp(5_000)
        assert await gateway.transfer_fee(Keypair().pubkey(), Keypair().pubkey()) == 5_000

    async def test_fee_falls_back_when_unpriced(self, gateway):
        gateway._client.get_fee_for_message.return_value = resp(None)
        assert await gateway.transfer_fee(Keypair().pubkey(), Keypair().pubkey()) == 5_000


class TestTransfers:
    async def test_unsigned_transfer(self, gateway):
        payer, escrow = Keypair().pubkey(), Keypair().pubkey()
        encoded = await gateway.build_unsigned_transfer(str(payer), str(escrow), 1_000_000)

        tx = Transaction.from_bytes(base64.b64decode(encoded))
        assert tx.message.account_keys[0] == payer
        assert escrow in tx.message.account_keys

    async def test_build_transfer_signed_by_sender(self, gateway):
        sender, recipient = Keypair(), Keypair().pubkey()
        signed = await gateway.build_transfer(sender, recipient, 10)
        assert signed.sender == sender.pubkey()
        assert signed.lamports == 10
        assert signed.last_valid_block_height == 1_000
        signed.transaction.verify()

    async def test_build_transfer_rejects_zero(self, gateway):
        with pytest.raises(ValidationError):
            await gateway.build_transfer(Keypair(), Keypair().pubkey(), 0)

    async def test_simulation_clean(self, gateway):
        gateway._client.simulate_transaction.return_value = resp(SimpleNamespace(err=None, logs=[]))
        signed = await gateway.build_transfer(Keypair(), Keypair().pubkey(), 10)
        assert await gateway.simulate(signed) is None

    async def test_simulation_error(self, gateway):
        gateway._client.simulate_transaction.return_value = resp(
            SimpleNamespace(err="InsufficientFundsForRent", logs=["log"])
        )
        signed = await gateway.build_transfer(Keypair(), Keypair().pubkey(), 10)
        assert await gateway.simulate(signed) == "InsufficientFundsForRent"

    async def test_send_and_confirm(self, gateway):
        sig = Keypair().sign_message(b"tx")
        gateway._client.send_raw_transaction.return_value = resp(sig)
        gateway._client.confirm_transaction.return_value = resp([SimpleNamespace(err=None)])

        signed = await gateway.build_transfer(Keypair(), Keypair().pubkey(), 10)
        assert await gateway.send_and_confirm(signed) == str(sig)
        _, kwargs = gateway._client.confirm_transaction.call_args
        assert kwargs["last_valid_block_height"] == 1_000

    async def test_on_chain_error(self, gateway):
        gateway._client.send_raw_transaction.return_value = resp(Keypair().sign_message(b"tx"))
        gateway._client.confirm_transaction.return_value = resp([SimpleNamespace(err="InstructionError")])

        signed = await gateway.build_transfer(Keypair(), Keypair().pubkey(), 10)
        with pytest.raises(TransferFailed, match="failed on-chain"):
            await gateway.send_and_confirm(signed)

    async def test_send_failure_is_wrapped(self, gateway):
        gateway._client.send_raw_transaction.side_effect = OSError("reset")
        signed = await gateway.build_transfer(Keypair(), Keypair().pubkey(), 10)
        with pytest.raises(TransferFailed):
            await gateway.send_and_confirm(signed)


class TestConfirmSignature:
    async def test_confirmed(self, gateway):
        gateway._client.confirm_transaction.return_value = resp([SimpleNamespace(err=None)])
        await gateway.confirm_signature(str(Keypair().sign_message(b"bet")))

    async def test_timeout(self, gateway):
        async def never(*args, **kwargs):
            await asyncio.sleep(10)

        gateway._client.confirm_transaction.side_effect = never
        with pytest.raises(LedgerError, match="not confirmed within"):
            await gateway.confirm_signature(str(Keypair().sign_message(b"bet")))

    async def test_failed_on_chain(self, gateway):
        gateway._client.confirm_transaction.return_value = resp([SimpleNamespace(err="boom")])
        with pytest.raises(LedgerError):
            await gateway.confirm_signature(str(Keypair().sign_message(b"bet")))


def fetched(tx, err=None):
    return resp(SimpleNamespace(transaction=SimpleNamespace(transaction=tx, meta=SimpleNamespace(err=err))))


class TestVerifyDeposit:
    @pytest.fixture
    def deposit(self):
        payer, escrow = Keypair(), Keypair().pubkey()
        message = _transfer_message(payer.pubkey(), escrow, 1_000_000, Hash.default())
        tx = Transaction([payer], message, Hash.default())
        return SimpleNamespace(payer=payer.pubkey(), escrow=escrow, tx=tx, sig=str(tx.signatures[0]))

    async def test_matching_transfer(self, gateway, deposit):
        gateway._client.get_transaction.return_value = fetched(deposit.tx)
        await gateway.verify_deposit(deposit.sig, str(deposit.payer), str(deposit.escrow), 1_000_000)

        args, kwargs = gateway._client.get_transaction.call_args
        assert str(args[0]) == deposit.sig
        assert kwargs["encoding"] == "base64"

    async def test_sponsored_fee_payer(self, gateway):
        sponsor, payer, escrow = Keypair(), Keypair(), Keypair().pubkey()
        ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=escrow, lamports=500))
        message = Message.new_with_blockhash([ix], sponsor.pubkey(), Hash.default())
        tx = Transaction([sponsor, payer], message, Hash.default())
        gateway._client.get_transaction.return_value = fetched(tx)

        await gateway.verify_deposit(str(tx.signatures[0]), payer.pubkey(), escrow, 500)

    @pytest.mark.parametrize("field, value", [("lamports", 2_000_000), ("recipient", None), ("payer", None)])
    async def test_mismatch(self, gateway, deposit, field, value):
        claim = {"payer": deposit.payer, "recipient": deposit.escrow, "lamports": 1_000_000}
        claim[field] = value if value is not None else Keypair().pubkey()
        gateway._client.get_transaction.return_value = fetched(deposit.tx)

        with pytest.raises(ValidationError, match="is not a transfer of"):
            await gateway.verify_deposit(deposit.sig, **claim)

    async def test_not_found(self, gateway, deposit):
        gateway._client.get_transaction.return_value = resp(None)
        with pytest.raises(LedgerError, match="not found"):
            await gateway.verify_deposit(deposit.sig, deposit.payer, deposit.escrow, 1_000_000)

    async def test_failed_transaction(self, gateway, deposit):
        gateway._client.get_transaction.return_value = fetched(deposit.tx, err="InstructionError")
        with pytest.raises(ValidationError, match="failed on-chain"):
            await gateway.verify_deposit(deposit.sig, deposit.payer, deposit.escrow, 1_000_000)

    async def test_rpc_failure_is_wrapped(self, gateway, deposit):
        gateway._client.get_transaction.side_effect = OSError("timeout")
        with pytest.raises(LedgerError, match="could not be fetched"):
            await gateway.verify_deposit(deposit.sig, deposit.payer, deposit.escrow, 1_000_000)
