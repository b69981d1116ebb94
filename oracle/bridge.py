import logging
import threading
import time
from collections import OrderedDict
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Callable, Optional
from uuid import uuid4

from eth_abi import encode
from eth_utils import is_address, keccak, to_checksum_address, to_hex
from pydantic import BaseModel

from rewards.errors import (
    DuplicateSubmission,
    ExternalLedgerError,
    ExternalLedgerRetryable,
    ExternalLedgerTerminal,
    ValidationError,
)

from .client import LedgerClient, SignedTransaction, StaleNonce, TransactionReceipt, Web3LedgerClient
from .signer import OracleSigner

logger = logging.getLogger(__name__)

DEFAULT_PROOF = "quest-completion"


class MintResult(BaseModel):
    success: bool = True
    user_address: str
    amount: Decimal
    base_units: int
    transaction_hash: str
    block_number: int
    status: int


class LedgerRecordResult(MintResult):
    note: str


class CertificationResult(BaseModel):
    success: bool = True
    user_address: str
    quest_id: int
    proof_hash: str
    transaction_hash: Optional[str] = None
    block_number: Optional[int] = None
    already_certified: bool = False


def proof_hash_for(quest_id: int, user_address: str, proof_payload: Optional[str] = None) -> str:
    """keccak256(abi.encode(proof, questId, user)), stable for the same inputs."""
    encoded = encode(
        ["string", "uint256", "address"],
        [proof_payload or DEFAULT_PROOF, quest_id, to_checksum_address(user_address)],
    )
    return to_hex(keccak(encoded))


class OracleBridge:
    """
    Sole writer to the external ledger.

    One submission is in flight at a time because the ledger numbers each
    signer's transactions sequentially. A submission is remembered by key
    (proof hash for certifications, caller-supplied key for mints) from the
    moment it is signed, so a retry after an unobserved confirmation waits on
    or re-broadcasts the same transaction rather than signing a new one.
    """

    def __init__(
        self,
        client: LedgerClient,
        signer: OracleSigner,
        decimals: int = 18,
        confirmations: int = 1,
        receipt_timeout: float = 120.0,
        max_attempts: int = 3,
        backoff_seconds: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        remember_limit: int = 10_000,
    ):
        if confirmations < 1:
            raise ValueError("At least one confirmation is required")
        self.client = client
        self.signer = signer
        self.decimals = decimals
        self.confirmations = confirmations
        self.receipt_timeout = receipt_timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._submit_lock = threading.Lock()
        self._pending: dict[str, SignedTransaction] = {}
        self.remember_limit = remember_limit
        self._completed: OrderedDict[str, tuple[TransactionReceipt, tuple]] = OrderedDict()

    @property
    def address(self) -> str:
        return self.signer.address

    def status(self) -> dict:
        return {
            "status": "ready",
            "oracle_address": self.address,
            "pending_transactions": len(self._pending),
            "confirmations": self.confirmations,
        }

    def to_base_units(self, amount: Decimal) -> int:
        scaled = Decimal(amount) * (Decimal(10) ** self.decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))

    def from_base_units(self, base_units: int) -> Decimal:
        return Decimal(base_units) / (Decimal(10) ** self.decimals)

    def check_mint_request(self, user_address: Optional[str], amount) -> tuple[str, Decimal]:
        if not user_address or amount is None:
            raise ValidationError("Missing required fields: user_address, amount")
        if not is_address(user_address):
            raise ValidationError(f"Invalid user address: {user_address}")
        try:
            amount = Decimal(str(amount))
        except InvalidOperation:
            raise ValidationError("Invalid amount. Must be a positive number")
        if not amount.is_finite() or amount <= 0 or self.to_base_units(amount) <= 0:
            raise ValidationError("Invalid amount. Must be a positive number")
        return user_address.lower(), amount

    def mint_tokens(self, user_address: Optional[str], amount, idempotency_key: Optional[str] = None) -> MintResult:
        address, amount = self.check_mint_request(user_address, amount)
        base_units = self.to_base_units(amount)
        key = idempotency_key or f"mint:{uuid4()}"

        logger.info("Oracle minting %s tokens to %s", amount, address)
        try:
            receipt, args = self._submit(
                key, "transfer", (to_checksum_address(address), base_units), remember=idempotency_key is not None
            )
        except ExternalLedgerError as e:
            e.details.update(user_address=address, amount=str(amount))
            logger.error(
                "Mint of %s tokens to %s failed (%s): %s",
                amount, address, "retryable" if e.retryable else "terminal", e.message,
            )
            raise

        minted = args[1]
        logger.info("Token transfer confirmed: %s (block %d)", receipt.tx_hash, receipt.block_number)
        return MintResult(
            user_address=address,
            amount=self.from_base_units(minted),
            base_units=minted,
            transaction_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            status=receipt.status,
        )

    def record_redemption(
        self, user_address: Optional[str], amount, shop_name: Optional[str] = None, idempotency_key: Optional[str] = None
    ) -> LedgerRecordResult:
        """Burn spent tokens from the user's on-chain holdings."""
        return self._record_movement("recordRedemption", user_address, amount, shop_name or "Direct Redemption", idempotency_key)

    def record_refund(
        self, user_address: Optional[str], amount, reason: Optional[str] = None, idempotency_key: Optional[str] = None
    ) -> LedgerRecordResult:
        """Mint refunded tokens back to the user's on-chain holdings."""
        return self._record_movement("recordRedemptionRefund", user_address, amount, reason or "Redemption cancelled", idempotency_key)

    def _record_movement(
        self, function: str, user_address: Optional[str], amount, note: str, idempotency_key: Optional[str]
    ) -> LedgerRecordResult:
        address, amount = self.check_mint_request(user_address, amount)
        base_units = self.to_base_units(amount)
        key = idempotency_key or f"{function}:{uuid4()}"

        logger.info("Oracle %s of %s tokens for %s (%s)", function, amount, address, note)
        try:
            receipt, args = self._submit(
                key, function, (to_checksum_address(address), base_units, note), remember=idempotency_key is not None
            )
        except ExternalLedgerError as e:
            e.details.update(user_address=address, amount=str(amount))
            logger.error(
                "%s of %s tokens for %s failed (%s): %s",
                function, amount, address, "retryable" if e.retryable else "terminal", e.message,
            )
            raise

        recorded = args[1]
        return LedgerRecordResult(
            user_address=address,
            amount=self.from_base_units(recorded),
            base_units=recorded,
            transaction_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            status=receipt.status,
            note=args[2],
        )

    def certify_quest_completion(
        self, user_address: Optional[str], quest_id: Optional[int], proof_payload: Optional[str] = None
    ) -> CertificationResult:
        if not user_address or quest_id is None:
            raise ValidationError("Missing required fields: user_address, quest_id")
        if not is_address(user_address):
            raise ValidationError(f"Invalid user address: {user_address}")
        if isinstance(quest_id, bool) or not isinstance(quest_id, int) or quest_id < 0:
            raise ValidationError("Invalid quest_id. Must be a non-negative integer")

        address = user_address.lower()
        proof_hash = proof_hash_for(quest_id, address, proof_payload)
        already = proof_hash in self._completed
        logger.info("Completing quest %d on-chain for %s (proof %s)", quest_id, address, proof_hash)
        try:
            receipt, _ = self._submit(
                proof_hash, "completeQuest", (quest_id, to_checksum_address(address), proof_hash)
            )
        except DuplicateSubmission:
            logger.info("Quest %d already certified for %s (proof %s)", quest_id, address, proof_hash)
            return CertificationResult(
                user_address=address, quest_id=quest_id, proof_hash=proof_hash, already_certified=True
            )
        except ExternalLedgerError as e:
            e.details.update(user_address=address, quest_id=quest_id, proof_hash=proof_hash)
            logger.error(
                "Quest completion for %s (quest %d) failed (%s): %s",
                address, quest_id, "retryable" if e.retryable else "terminal", e.message,
            )
            raise

        return CertificationResult(
            user_address=address,
            quest_id=quest_id,
            proof_hash=proof_hash,
            transaction_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            already_certified=already,
        )

    def _submit(self, key: str, function: str, args: tuple, remember: bool = True) -> tuple[TransactionReceipt, tuple]:
        with self._submit_lock:
            if key in self._completed:
                self._completed.move_to_end(key)
                return self._completed[key]

            attempt = 0
            while True:
                attempt += 1
                try:
                    result = self._submit_once(key, function, args)
                    break
                except ExternalLedgerRetryable as e:
                    if attempt >= self.max_attempts:
                        if not remember:
                            # nobody can resume a keyless submission
                            self._pending.pop(key, None)
                        raise
                    delay = self.backoff_seconds * 2 ** (attempt - 1)
                    logger.warning(
                        "Retrying %s (attempt %d/%d) in %.1fs: %s",
                        function, attempt, self.max_attempts, delay, e.message,
                    )
                    self._sleep(delay)

            if remember:
                self._completed[key] = result
                while len(self._completed) > self.remember_limit:
                    self._completed.popitem(last=False)
            return result

    def _submit_once(self, key: str, function: str, args: tuple) -> tuple[TransactionReceipt, tuple]:
        signed = self._pending.get(key)
        fresh = signed is None
        try:
            if fresh:
                signed = self.client.build_call(self.signer, function, args)
                self._pending[key] = signed
                self.client.broadcast(signed)
            elif self.client.get_receipt(signed.tx_hash) is None:
                logger.info("Re-broadcasting pending transaction %s", signed.tx_hash)
                self.client.broadcast(signed)
        except StaleNonce:
            # a rebroadcast is refused this way once the original has been mined
            if fresh or not self._landed(signed):
                self._pending.pop(key, None)
                raise
            logger.info("Pending transaction %s was already mined", signed.tx_hash)
        except ExternalLedgerTerminal:
            self._pending.pop(key, None)
            raise

        receipt = self.client.wait_for_receipt(signed.tx_hash, self.confirmations, self.receipt_timeout)
        self._pending.pop(key, None)
        if not receipt.succeeded:
            raise ExternalLedgerTerminal(
                f"Transaction {receipt.tx_hash} reverted", {"transaction_hash": receipt.tx_hash}
            )
        return receipt, signed.args

    def _landed(self, signed: SignedTransaction) -> bool:
        """Whether a previously broadcast transaction made it into a block."""
        if self.client.get_receipt(signed.tx_hash) is not None:
            return True
        try:
            self.client.wait_for_receipt(signed.tx_hash, 1, self.receipt_timeout)
        except ExternalLedgerRetryable:
            return False
        return True


def build_bridge(settings) -> Optional[OracleBridge]:
    """Create the bridge from configuration, or None when the oracle is not configured."""
    if not settings.oracle_configured:
        logger.warning("Oracle service not configured, on-chain operations are disabled")
        return None
    signer = OracleSigner.from_private_key(settings.ORACLE_PRIVATE_KEY)
    client = Web3LedgerClient(settings.LEDGER_RPC_URL, settings.TOKEN_CONTRACT_ADDRESS)
    return OracleBridge(
        client,
        signer,
        decimals=settings.TOKEN_DECIMALS,
        confirmations=settings.ORACLE_CONFIRMATIONS,
        receipt_timeout=settings.ORACLE_RECEIPT_TIMEOUT,
        max_attempts=settings.ORACLE_MAX_ATTEMPTS,
        backoff_seconds=settings.ORACLE_RETRY_BACKOFF,
    )
