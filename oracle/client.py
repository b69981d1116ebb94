"""
Clients for the external token ledger.

Both clients sign locally, so a transaction hash is known before it is
broadcast. ``Web3LedgerClient`` talks to the deployed token contract over
JSON-RPC; ``InMemoryLedgerClient`` implements the same contract rules in
process for local runs and tests.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from eth_utils import keccak, to_checksum_address, to_hex
from pydantic import BaseModel
from requests.exceptions import RequestException
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from rewards.errors import (
    DuplicateSubmission,
    ExternalLedgerError,
    ExternalLedgerRetryable,
    ExternalLedgerTerminal,
)

from .signer import OracleSigner

logger = logging.getLogger(__name__)

TOKEN_ABI = [
    {
        "type": "function",
        "name": "transfer",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "completeQuest",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "questId", "type": "uint256"},
            {"name": "user", "type": "address"},
            {"name": "proofHash", "type": "bytes32"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "recordRedemption",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "tokensSpent", "type": "uint256"},
            {"name": "shopName", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "recordRedemptionRefund",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "user", "type": "address"},
            {"name": "tokensRefunded", "type": "uint256"},
            {"name": "reason", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

DUPLICATE_MARKERS = ("proof already used",)
STALE_NONCE_MARKERS = ("nonce too low",)
TERMINAL_MARKERS = (
    "insufficient funds",
    "exceeds balance",
    "insufficient token balance",
    "caller is not",
    "not the oracle",
    "unauthorized",
    "user not registered",
    "quest not active",
    "quest does not exist",
    "execution reverted",
)


class StaleNonce(ExternalLedgerRetryable):
    """The signed transaction's nonce was consumed by another transaction; it must be re-signed."""


@dataclass(frozen=True)
class SignedTransaction:
    tx_hash: str
    raw: Any
    nonce: int
    function: str
    args: tuple


class TransactionReceipt(BaseModel):
    tx_hash: str
    block_number: int
    status: int
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


class LedgerClient(Protocol):
    def build_call(self, signer: OracleSigner, function: str, args: tuple) -> SignedTransaction: ...

    def broadcast(self, signed: SignedTransaction) -> str: ...

    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1, timeout: float = 120.0) -> TransactionReceipt: ...

    def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]: ...

    def balance_of(self, address: str) -> int: ...


def classify_error(exc: Exception) -> ExternalLedgerError:
    if isinstance(exc, ExternalLedgerError):
        return exc
    message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if any(marker in lowered for marker in DUPLICATE_MARKERS):
        return DuplicateSubmission(message)
    if any(marker in lowered for marker in STALE_NONCE_MARKERS):
        return StaleNonce(message)
    if isinstance(exc, ContractLogicError) or any(marker in lowered for marker in TERMINAL_MARKERS):
        return ExternalLedgerTerminal(message)
    return ExternalLedgerRetryable(message)


class Web3LedgerClient:
    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        request_timeout: float = 30.0,
        poll_interval: float = 2.0,
        w3: Optional[Web3] = None,
    ):
        self.w3 = w3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.contract = self.w3.eth.contract(address=to_checksum_address(contract_address), abi=TOKEN_ABI)
        self.poll_interval = poll_interval

    def build_call(self, signer: OracleSigner, function: str, args: tuple) -> SignedTransaction:
        try:
            call = getattr(self.contract.functions, function)(*args)
            nonce = self.w3.eth.get_transaction_count(signer.address, "pending")
            tx = call.build_transaction({
                "from": signer.address,
                "nonce": nonce,
                "chainId": self.w3.eth.chain_id,
            })
        except (Web3Exception, RequestException, ValueError) as e:
            raise classify_error(e) from e
        signed = signer.sign_transaction(tx)
        return SignedTransaction(
            tx_hash=to_hex(signed.hash),
            raw=signed.raw_transaction,
            nonce=nonce,
            function=function,
            args=tuple(args),
        )

    def broadcast(self, signed: SignedTransaction) -> str:
        try:
            self.w3.eth.send_raw_transaction(signed.raw)
        except (Web3Exception, RequestException, ValueError) as e:
            if "already known" in str(e).lower():
                return signed.tx_hash
            raise classify_error(e) from e
        return signed.tx_hash

    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1, timeout: float = 120.0) -> TransactionReceipt:
        deadline = time.monotonic() + timeout
        try:
            raw = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout, poll_latency=self.poll_interval)
            while self.w3.eth.block_number - raw["blockNumber"] + 1 < confirmations:
                if time.monotonic() > deadline:
                    raise ExternalLedgerRetryable(
                        f"Transaction {tx_hash} has fewer than {confirmations} confirmations",
                        {"transaction_hash": tx_hash},
                    )
                time.sleep(self.poll_interval)
        except TimeExhausted as e:
            raise ExternalLedgerRetryable(
                f"Transaction {tx_hash} not confirmed within {timeout}s", {"transaction_hash": tx_hash}
            ) from e
        except (Web3Exception, RequestException) as e:
            raise classify_error(e) from e
        return self._to_receipt(raw)

    def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        try:
            return self._to_receipt(self.w3.eth.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        except (Web3Exception, RequestException) as e:
            raise classify_error(e) from e

    def balance_of(self, address: str) -> int:
        try:
            return self.contract.functions.balanceOf(to_checksum_address(address)).call()
        except (Web3Exception, RequestException) as e:
            raise classify_error(e) from e

    def _to_receipt(self, raw) -> TransactionReceipt:
        return TransactionReceipt(
            tx_hash=to_hex(raw["transactionHash"]),
            block_number=raw["blockNumber"],
            status=raw["status"],
            gas_used=raw.get("gasUsed", 0),
        )


class InMemoryLedgerClient:
    def __init__(self):
        self.balances: dict[str, int] = {}
        self.authorized: set[str] = set()
        self.used_proofs: dict[str, tuple] = {}
        self.nonces: dict[str, int] = {}
        self.receipts: dict[str, TransactionReceipt] = {}
        self.applied: list[SignedTransaction] = []
        self.block_number = 0
        self._broadcast_failures: list[Exception] = []
        self._unconfirmed_waits = 0
        self._lock = threading.Lock()

    # --- test and setup hooks ---

    def authorize(self, address: str, holdings: int = 0) -> None:
        address = address.lower()
        self.authorized.add(address)
        self.balances[address] = self.balances.get(address, 0) + holdings

    def fail_next_broadcast(self, *errors: Exception) -> None:
        self._broadcast_failures.extend(errors)

    def delay_confirmations(self, waits: int) -> None:
        """Make the next ``waits`` receipt waits time out even though the transaction landed."""
        self._unconfirmed_waits += waits

    # --- ledger client ---

    def build_call(self, signer: OracleSigner, function: str, args: tuple) -> SignedTransaction:
        sender = signer.address.lower()
        with self._lock:
            nonce = self.nonces.get(sender, 0)
        tx_hash = to_hex(keccak(text=f"{sender}:{nonce}:{function}:{args!r}"))
        return SignedTransaction(tx_hash=tx_hash, raw={"from": sender}, nonce=nonce, function=function, args=tuple(args))

    def broadcast(self, signed: SignedTransaction) -> str:
        with self._lock:
            if self._broadcast_failures:
                raise self._broadcast_failures.pop(0)
            if signed.tx_hash in self.receipts:
                return signed.tx_hash

            sender = signed.raw["from"]
            if signed.nonce != self.nonces.get(sender, 0):
                raise StaleNonce("nonce too low")
            if sender not in self.authorized:
                raise ExternalLedgerTerminal("Caller is not the oracle")

            if signed.function == "transfer":
                to, value = signed.args
                if self.balances.get(sender, 0) < value:
                    raise ExternalLedgerTerminal("ERC20: transfer amount exceeds balance")
                self.balances[sender] -= value
                self.balances[to.lower()] = self.balances.get(to.lower(), 0) + value
            elif signed.function == "completeQuest":
                quest_id, user, proof_hash = signed.args
                if proof_hash in self.used_proofs:
                    raise DuplicateSubmission("Proof already used")
                self.used_proofs[proof_hash] = (user.lower(), quest_id)
            elif signed.function == "recordRedemption":
                user, value, _ = signed.args
                if self.balances.get(user.lower(), 0) < value:
                    raise ExternalLedgerTerminal("Insufficient token balance")
                self.balances[user.lower()] -= value
            elif signed.function == "recordRedemptionRefund":
                user, value, _ = signed.args
                self.balances[user.lower()] = self.balances.get(user.lower(), 0) + value
            else:
                raise ExternalLedgerTerminal(f"Unknown contract function {signed.function}")

            self.nonces[sender] = signed.nonce + 1
            self.block_number += 1
            self.receipts[signed.tx_hash] = TransactionReceipt(
                tx_hash=signed.tx_hash, block_number=self.block_number, status=1, gas_used=21000
            )
            self.applied.append(signed)
            return signed.tx_hash

    def wait_for_receipt(self, tx_hash: str, confirmations: int = 1, timeout: float = 120.0) -> TransactionReceipt:
        with self._lock:
            if self._unconfirmed_waits > 0:
                self._unconfirmed_waits -= 1
                raise ExternalLedgerRetryable(
                    f"Transaction {tx_hash} not confirmed within {timeout}s", {"transaction_hash": tx_hash}
                )
            receipt = self.receipts.get(tx_hash)
        if receipt is None:
            raise ExternalLedgerRetryable(f"Transaction {tx_hash} not found", {"transaction_hash": tx_hash})
        return receipt

    def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        with self._lock:
            return self.receipts.get(tx_hash)

    def balance_of(self, address: str) -> int:
        with self._lock:
            return self.balances.get(address.lower(), 0)
