"""Shared fakes: an in-memory ledger and token account builders."""

import base64
import struct

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from purser.constants import TOKEN_PROGRAM_ID
from purser.errors import RpcError
from purser.rpc import AccountInfo, LatestBlockhash, SimulationOutcome
from purser.signers import KeypairSigner
from purser.verifier import decode_transaction

TOKEN_PROGRAM = str(TOKEN_PROGRAM_ID)
BLOCKHASH = str(Hash.from_bytes(bytes([7] * 32)))


def new_address() -> str:
    return str(Keypair().pubkey())


def new_signer() -> KeypairSigner:
    return KeypairSigner(Keypair())


def token_account_data(
    mint: str,
    owner: str,
    amount: int = 0,
    delegate: str | None = None,
    delegated_amount: int = 0,
    state: int = 1,
) -> bytes:
    data = bytearray(165)
    data[0:32] = bytes(Pubkey.from_string(mint))
    data[32:64] = bytes(Pubkey.from_string(owner))
    struct.pack_into("<Q", data, 64, amount)
    if delegate:
        struct.pack_into("<I", data, 72, 1)
        data[76:108] = bytes(Pubkey.from_string(delegate))
    data[108] = state
    struct.pack_into("<Q", data, 121, delegated_amount)
    return bytes(data)


class FakeLedger:
    """In-memory ``LedgerRpc`` with switchable failures."""

    def __init__(self):
        self.blockhash = BLOCKHASH
        self.accounts: dict[str, AccountInfo] = {}
        self.balances: dict[str, int] = {}
        self.simulation = SimulationOutcome(logs=["Program log: ok"], units_consumed=1200)
        self.simulate_error: Exception | None = None
        self.send_error: Exception | None = None
        self.balance_error: Exception | None = None
        self.account_error: Exception | None = None
        self.blockhash_error: Exception | None = None
        self.blockhash_valid = True
        self.simulated: list[str] = []
        self.sent: list[str] = []
        self.calls: list[str] = []
        self._height = 1_000

    def set_token_account(self, address: str, data: bytes, owner: str = TOKEN_PROGRAM):
        self.accounts[address] = AccountInfo(owner=owner, data=data)

    def delegate(self, address: str, mint: str, owner: str, delegate: str | None, remaining: int, state: int = 1):
        self.set_token_account(
            address,
            token_account_data(mint, owner, amount=10_000_000, delegate=delegate,
                               delegated_amount=remaining, state=state),
        )

    def get_latest_blockhash(self):
        # a fresh blockhash per call keeps otherwise identical payments distinct
        self.calls.append("get_latest_blockhash")
        self._height += 1
        self.blockhash = str(Hash.from_bytes(self._height.to_bytes(32, "big")))
        return LatestBlockhash(self.blockhash, self._height + 150)

    def get_account_info(self, address):
        self.calls.append("get_account_info")
        if self.account_error:
            raise self.account_error
        return self.accounts.get(address)

    def get_balance(self, address):
        self.calls.append("get_balance")
        if self.balance_error:
            raise self.balance_error
        return self.balances.get(address, 0)

    def simulate_transaction(self, transaction_b64):
        self.calls.append("simulate_transaction")
        if self.simulate_error:
            raise self.simulate_error
        self.simulated.append(transaction_b64)
        return self.simulation

    def send_transaction(self, transaction_b64):
        self.calls.append("send_transaction")
        if self.send_error:
            raise self.send_error
        self.sent.append(transaction_b64)
        decoded = decode_transaction(base64.b64decode(transaction_b64))
        return str(Signature.from_bytes(decoded.signatures[0]))

    def is_blockhash_valid(self, blockhash):
        self.calls.append("is_blockhash_valid")
        if self.blockhash_error:
            raise self.blockhash_error
        return self.blockhash_valid


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def rpc_down():
    return RpcError("connection refused")
