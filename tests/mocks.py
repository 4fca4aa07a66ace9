"""
In-memory stand-in for ledger.LedgerGateway.

Balances are plain ints keyed by base58 address; a confirmed transfer debits
the sender by amount + fee and credits the recipient. Deposits registered
with deposit() are what verify_deposit accepts; they leave balances alone.
"""

from types import SimpleNamespace
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from solders.keypair import Keypair

from errors import LedgerError, TransferFailed, ValidationError

RENT = 890_880
FEE = 5_000

SERVICE_WALLET = str(Keypair.from_seed(bytes([1] * 32)).pubkey())
OPERATOR_WALLET = str(Keypair.from_seed(bytes([2] * 32)).pubkey())


def wallet() -> str:
    return str(Keypair().pubkey())


def tx_sig() -> str:
    return str(Keypair().sign_message(b"potcycle"))


class FakeLedger:
    def __init__(self, rent: int = RENT, fee: int = FEE):
        self.rent = rent
        self.fee = fee
        self.balances: Dict[str, int] = {}
        self.transfers: List[SimpleNamespace] = []
        self.prepared: List[SimpleNamespace] = []
        self.confirmed: List[str] = []
        self.deposits: Dict[str, Tuple[str, str, int]] = {}
        self.unconfirmed: set = set()
        self.simulation_error: Optional[str] = None
        self.fail_sends = 0
        self.on_send: Optional[Callable[[SimpleNamespace], Awaitable[None]]] = None
        self.calls: List[str] = []
        self.closed = False

    def fund(self, pubkey, lamports: int) -> None:
        self.balances[str(pubkey)] = self.balances.get(str(pubkey), 0) + int(lamports)

    def balance(self, pubkey) -> int:
        return self.balances.get(str(pubkey), 0)

    def deposit(self, payer, recipient, lamports: int) -> str:
        sig = tx_sig()
        self.deposits[sig] = (str(payer), str(recipient), int(lamports))
        return sig

    async def close(self) -> None:
        self.closed = True

    async def is_connected(self) -> bool:
        return True

    async def get_balance(self, pubkey) -> int:
        self.calls.append("get_balance")
        return self.balance(pubkey)

    async def get_rent_exempt_minimum(self) -> int:
        self.calls.append("get_rent_exempt_minimum")
        return self.rent

    async def transfer_fee(self, sender, recipient) -> int:
        self.calls.append("transfer_fee")
        return self.fee

    async def build_unsigned_transfer(self, payer, recipient, lamports: int) -> str:
        self.calls.append("build_unsigned_transfer")
        self.prepared.append(SimpleNamespace(sender=str(payer), recipient=str(recipient), lamports=lamports))
        return "AQID"

    async def build_transfer(self, sender: Keypair, recipient, lamports: int) -> SimpleNamespace:
        self.calls.append("build_transfer")
        return SimpleNamespace(sender=str(sender.pubkey()), recipient=str(recipient), lamports=int(lamports))

    async def simulate(self, transfer_) -> Optional[str]:
        self.calls.append("simulate")
        return self.simulation_error

    async def send_and_confirm(self, transfer_) -> str:
        self.calls.append("send_and_confirm")
        if self.on_send is not None:
            await self.on_send(transfer_)
        if self.fail_sends > 0:
            self.fail_sends -= 1
            raise TransferFailed(f"transfer of {transfer_.lamports} to {transfer_.recipient} failed")
        if self.balance(transfer_.sender) < transfer_.lamports + self.fee:
            raise TransferFailed("insufficient funds for transfer")
        self.balances[transfer_.sender] -= transfer_.lamports + self.fee
        self.fund(transfer_.recipient, transfer_.lamports)
        self.transfers.append(transfer_)
        return tx_sig()

    async def submit_transfer(self, sender: Keypair, recipient, lamports: int) -> str:
        return await self.send_and_confirm(await self.build_transfer(sender, recipient, lamports))

    async def confirm_signature(self, signature) -> None:
        self.calls.append("confirm_signature")
        if str(signature) in self.unconfirmed:
            raise LedgerError(f"Transaction {signature} was not confirmed")
        self.confirmed.append(str(signature))

    async def verify_deposit(self, signature, payer, recipient, lamports: int) -> None:
        self.calls.append("verify_deposit")
        found = self.deposits.get(str(signature))
        if found is None:
            raise LedgerError(f"Transaction {signature} not found at confirmed commitment")
        if found != (str(payer), str(recipient), int(lamports)):
            raise ValidationError(
                f"Transaction {signature} is not a transfer of {lamports} lamports from {payer} to {recipient}"
            )
