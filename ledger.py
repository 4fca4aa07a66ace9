# ledger.py
"""
potcycle: Ledger Gateway
Native SOL transfers from per-game escrow keypairs, plus the balance / rent /
fee / blockhash queries settlement needs. Stateless: every call is an RPC.
Any RPC failure surfaces as errors.LedgerError with the cause chained.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Union
import asyncio
import base64
import logging

import base58 as _b58
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import (
    RPCException,
    TransactionExpiredBlockheightExceededError,
    UnconfirmedTxError,
)
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID, TransferParams, transfer
from solders.transaction import Transaction

from errors import LedgerError, TransferFailed, ValidationError

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000
# SystemInstruction::Transfer discriminant
_SYSTEM_TRANSFER = 2

# RPC-side failures we translate; anything else is a programming error and propagates as-is
_RPC_ERRORS = (
    RPCException,
    SolanaRpcException,
    UnconfirmedTxError,
    TransactionExpiredBlockheightExceededError,
    OSError,
)

# =========================================================
# Helpers
# =========================================================
def to_public_key(addr: Optional[Union[str, Pubkey, bytes, bytearray]]) -> Pubkey:
    if addr is None or addr == "":
        raise ValidationError("Empty public key provided")
    if isinstance(addr, Pubkey):
        return addr
    try:
        if isinstance(addr, (bytes, bytearray)):
            return Pubkey.from_bytes(bytes(addr))
        raw = _b58.b58decode(str(addr).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid public key: {addr!r}") from exc
    if len(raw) != 32:
        raise ValidationError(f"Decoded key length != 32 ({len(raw)})")
    return Pubkey.from_bytes(raw)


def to_signature(sig: Union[str, Signature]) -> Signature:
    if isinstance(sig, Signature):
        return sig
    try:
        return Signature.from_string(str(sig).strip())
    except ValueError as exc:
        raise ValidationError(f"Invalid transaction signature: {sig!r}") from exc


def to_lamports(amount_native: Union[int, float, str, Decimal]) -> int:
    """Whole SOL -> lamports. Exact for decimal input; sub-lamport precision is rejected."""
    try:
        amount = Decimal(str(amount_native))
    except InvalidOperation as exc:
        raise ValidationError(f"Invalid amount: {amount_native!r}") from exc
    lamports = amount * LAMPORTS_PER_SOL
    if lamports != lamports.to_integral_value():
        raise ValidationError("Amount has more precision than one lamport")
    if lamports <= 0:
        raise ValidationError("Amount must be > 0")
    return int(lamports)


def generate_escrow_keypair() -> Keypair:
    """Fresh escrow keypair for a new game. Local; no network."""
    return Keypair()


@dataclass(frozen=True)
class Blockhash:
    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class SignedTransfer:
    transaction: Transaction
    sender: Pubkey
    recipient: Pubkey
    lamports: int
    last_valid_block_height: int


# =========================================================
# Gateway
# =========================================================
class LedgerGateway:
    """Thin async facade over solana-py's AsyncClient."""

    def __init__(self, rpc_url: str, default_signature_fee: int = 5_000, confirm_timeout: float = 60.0):
        self._client = AsyncClient(rpc_url, commitment=Confirmed)
        self._default_fee = int(default_signature_fee)
        self._confirm_timeout = float(confirm_timeout)

    async def close(self) -> None:
        await self._client.close()

    async def is_connected(self) -> bool:
        return await self._client.is_connected()

    # ---------------- Queries ----------------
    async def get_balance(self, pubkey: Union[str, Pubkey]) -> int:
        key = to_public_key(pubkey)
        try:
            resp = await self._client.get_balance(key, commitment=Confirmed)
        except _RPC_ERRORS as exc:
            raise LedgerError(f"get_balance failed for {key}: {exc}") from exc
        return int(resp.value)

    async def get_rent_exempt_minimum(self) -> int:
        """Minimum balance for a zero-data system account to stay alive."""
        try:
            resp = await self._client.get_minimum_balance_for_rent_exemption(0, commitment=Confirmed)
        except _RPC_ERRORS as exc:
            raise LedgerError(f"rent exemption query failed: {exc}") from exc
        return int(resp.value)

    async def get_latest_blockhash(self) -> Blockhash:
        try:
            resp = await self._client.get_latest_blockhash(commitment=Confirmed)
        except _RPC_ERRORS as exc:
            raise LedgerError(f"Unable to fetch recent blockhash: {exc}") from exc
        return Blockhash(resp.value.blockhash, int(resp.value.last_valid_block_height))

    async def estimate_fee(self, message: Message) -> int:
        try:
            resp = await self._client.get_fee_for_message(message, commitment=Confirmed)
        except _RPC_ERRORS as exc:
            raise LedgerError(f"fee estimate failed: {exc}") from exc
        if resp.value is None:
            # blockhash already expired on the node; price it at the signature fee
            return self._default_fee
        return int(resp.value)

    async def transfer_fee(self, sender: Union[str, Pubkey], recipient: Union[str, Pubkey]) -> int:
        """Fee for one single-signer transfer sender -> recipient."""
        bh = await self.get_latest_blockhash()
        msg = _transfer_message(to_public_key(sender), to_public_key(recipient), 1, bh.blockhash)
        return await self.estimate_fee(msg)

    # ---------------- Building ----------------
    async def build_unsigned_transfer(self, payer: Union[str, Pubkey], recipient: Union[str, Pubkey], lamports: int) -> str:
        """Base64 wire transaction for the client wallet to sign; payer pays the fee."""
        payer_pk = to_public_key(payer)
        bh = await self.get_latest_blockhash()
        msg = _transfer_message(payer_pk, to_public_key(recipient), lamports, bh.blockhash)
        tx = Transaction.new_unsigned(msg)
        return base64.b64encode(bytes(tx)).decode("ascii")

    async def build_transfer(self, sender: Keypair, recipient: Union[str, Pubkey], lamports: int) -> SignedTransfer:
        if lamports <= 0:
            raise ValidationError("lamports must be > 0")
        to_pk = to_public_key(recipient)
        bh = await self.get_latest_blockhash()
        msg = _transfer_message(sender.pubkey(), to_pk, lamports, bh.blockhash)
        tx = Transaction([sender], msg, bh.blockhash)
        return SignedTransfer(tx, sender.pubkey(), to_pk, int(lamports), bh.last_valid_block_height)

    # ---------------- Submission ----------------
    async def simulate(self, transfer_: SignedTransfer) -> Optional[str]:
        """None when the simulation is clean, otherwise the reported error."""
        try:
            resp = await self._client.simulate_transaction(transfer_.transaction, commitment=Confirmed)
        except _RPC_ERRORS as exc:
            raise LedgerError(f"simulation request failed: {exc}") from exc
        err = resp.value.err
        if err is None:
            return None
        logs = list(resp.value.logs or [])
        logger.warning("[ledger] simulation error=%s logs=%s", err, logs[-5:])
        return str(err)

    async def send_and_confirm(self, transfer_: SignedTransfer) -> str:
        """Submit and wait until confirmed or the blockhash expires."""
        raw = bytes(transfer_.transaction)
        try:
            resp = await self._client.send_raw_transaction(
                raw, opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed)
            )
            sig = resp.value
            status = await self._client.confirm_transaction(
                sig, Confirmed, last_valid_block_height=transfer_.last_valid_block_height
            )
        except _RPC_ERRORS as exc:
            raise TransferFailed(
                f"transfer {transfer_.lamports} lamports {transfer_.sender} -> {transfer_.recipient} failed: {exc}"
            ) from exc
        _raise_on_status_error(status, str(sig))
        logger.info(
            "[ledger] transfer confirmed sig=%s lamports=%s to=%s", sig, transfer_.lamports, transfer_.recipient
        )
        return str(sig)

    async def submit_transfer(self, sender: Keypair, recipient: Union[str, Pubkey], lamports: int) -> str:
        return await self.send_and_confirm(await self.build_transfer(sender, recipient, lamports))

    async def confirm_signature(self, signature: Union[str, Signature]) -> None:
        """Wait for a transaction the client submitted itself."""
        sig = to_signature(signature)
        try:
            status = await asyncio.wait_for(
                self._client.confirm_transaction(sig, Confirmed, sleep_seconds=0.5),
                timeout=self._confirm_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise LedgerError(f"Transaction {sig} not confirmed within {self._confirm_timeout}s") from exc
        except _RPC_ERRORS as exc:
            raise LedgerError(f"Transaction {sig} was not confirmed: {exc}") from exc
        _raise_on_status_error(status, str(sig), exc_type=LedgerError)

    async def verify_deposit(
        self,
        signature: Union[str, Signature],
        payer: Union[str, Pubkey],
        recipient: Union[str, Pubkey],
        lamports: int,
    ) -> None:
        """
        The confirmed transaction behind `signature` must carry a system transfer
        of exactly `lamports` from `payer` to `recipient`, signed by `payer`.
        """
        sig = to_signature(signature)
        expected = (to_public_key(payer), to_public_key(recipient), int(lamports), True)
        try:
            resp = await self._client.get_transaction(
                sig, encoding="base64", commitment=Confirmed, max_supported_transaction_version=0
            )
        except _RPC_ERRORS as exc:
            raise LedgerError(f"Transaction {sig} could not be fetched: {exc}") from exc
        if resp.value is None:
            raise LedgerError(f"Transaction {sig} not found at confirmed commitment")

        tx_meta = resp.value.transaction
        if tx_meta.meta is not None and tx_meta.meta.err is not None:
            raise ValidationError(f"Transaction {sig} failed on-chain: {tx_meta.meta.err}")
        if expected not in _system_transfers(tx_meta.transaction.message):
            raise ValidationError(
                f"Transaction {sig} is not a transfer of {lamports} lamports from {expected[0]} to {expected[1]}"
            )


def _transfer_message(sender: Pubkey, recipient: Pubkey, lamports: int, blockhash: Hash) -> Message:
    ix = transfer(TransferParams(from_pubkey=sender, to_pubkey=recipient, lamports=int(lamports)))
    return Message.new_with_blockhash([ix], sender, blockhash)


def _raise_on_status_error(status, sig: str, exc_type: type = TransferFailed) -> None:
    statuses = getattr(status, "value", None) or []
    first = statuses[0] if statuses else None
    if first is None:
        raise exc_type(f"Transaction {sig} has no confirmation status")
    if first.err is not None:
        raise exc_type(f"Transaction {sig} failed on-chain: {first.err}")


def _system_transfers(message) -> list:
    """(source, destination, lamports, source_signed) for each System transfer in a message."""
    keys = list(message.account_keys)
    n_signers = message.header.num_required_signatures
    found = []
    for ix in message.instructions:
        if ix.program_id_index >= len(keys) or keys[ix.program_id_index] != SYSTEM_PROGRAM_ID:
            continue
        data, accounts = bytes(ix.data), list(ix.accounts)
        if len(data) != 12 or int.from_bytes(data[:4], "little") != _SYSTEM_TRANSFER or len(accounts) < 2:
            continue
        src, dst = accounts[0], accounts[1]
        # accounts loaded through lookup tables are not in the static key list
        if max(src, dst) >= len(keys):
            continue
        found.append((keys[src], keys[dst], int.from_bytes(data[4:], "little"), src < n_signers))
    return found
