"""
Closes the gap between off-chain balances and the tokens held on-chain.

For each user the job compares ``reward_tokens`` with ``tokens_minted`` (the
net of every journaled on-chain mint and burn). A positive gap is minted
through the oracle bridge and journaled as ``oracle_mint``; a negative gap is
burned with a redemption record and journaled as ``oracle_burn``. The
idempotency key is derived from how many on-chain movements the user already
has, so a run interrupted between the on-chain confirmation and the journal
write resolves to the same transaction next time instead of moving tokens
again.
"""

import asyncio
import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from rewards.cache import TTLCache
from rewards.errors import NotConfigured, RewardsError, ValidationError
from rewards.events import EventBus, Topics
from rewards.models import RewardTransaction
from rewards.store import LedgerStore, checked_address, utcnow

from .bridge import MintResult, OracleBridge

logger = logging.getLogger(__name__)


class UserTransfer(BaseModel):
    wallet_address: str
    amount: int
    transaction_hash: str


class UserFailure(BaseModel):
    wallet_address: str
    amount: int
    error: str
    retryable: bool = False


class ReconciliationReport(BaseModel):
    success: bool = True
    started_at: datetime
    finished_at: Optional[datetime] = None
    skipped: bool = False
    users_checked: int = 0
    minted: list[UserTransfer] = Field(default_factory=list)
    burned: list[UserTransfer] = Field(default_factory=list)
    failures: list[UserFailure] = Field(default_factory=list)

    @property
    def total_minted(self) -> int:
        return sum(m.amount for m in self.minted)

    @property
    def total_burned(self) -> int:
        return sum(b.amount for b in self.burned)


class ReconciliationJob:
    def __init__(
        self,
        store: LedgerStore,
        bridge: Optional[OracleBridge],
        cache: Optional[TTLCache] = None,
        bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.bridge = bridge
        self.cache = cache
        self.bus = bus
        self.last_report: Optional[ReconciliationReport] = None
        self._run_lock = threading.Lock()

    @property
    def configured(self) -> bool:
        return self.bridge is not None

    @property
    def running(self) -> bool:
        return self._run_lock.locked()

    def require_bridge(self) -> OracleBridge:
        if self.bridge is None:
            raise NotConfigured("Oracle service not configured")
        return self.bridge

    def run(self) -> ReconciliationReport:
        bridge = self.require_bridge()
        if not self._run_lock.acquire(blocking=False):
            logger.info("Reconciliation already running, skipping")
            return ReconciliationReport(started_at=utcnow(), finished_at=utcnow(), skipped=True)

        try:
            report = ReconciliationReport(started_at=utcnow())
            for user in self.store.list_users():
                report.users_checked += 1
                self._sync_user(bridge, user.wallet_address, report)

            report.finished_at = utcnow()
            self.last_report = report
            logger.info(
                "Reconciliation finished: %d users checked, %d tokens minted, %d burned, %d failures",
                report.users_checked, report.total_minted, report.total_burned, len(report.failures),
            )
            return report
        finally:
            self._run_lock.release()

    def _sync_user(self, bridge: OracleBridge, wallet_address: str, report: ReconciliationReport) -> None:
        # the user's ledger must not move between computing the gap and journaling the result
        with self.store.user_lock(wallet_address) as address:
            user = self.store.get_user(address)
            delta = user.reward_tokens - user.tokens_minted
            if delta == 0:
                return
            sequence = self.store.onchain_sequence(address)
            try:
                if delta > 0:
                    result = bridge.mint_tokens(address, delta, idempotency_key=f"reconcile:{address}:{sequence}")
                    entry = self._record(address, result, "Reconciliation mint")
                    report.minted.append(UserTransfer(
                        wallet_address=address, amount=entry.amount, transaction_hash=result.transaction_hash
                    ))
                else:
                    result = bridge.record_redemption(
                        address, -delta, "Reconciliation", idempotency_key=f"reconcile-burn:{address}:{sequence}"
                    )
                    entry = self.store.record_burn(
                        address, int(result.amount), result.transaction_hash,
                        f"Reconciliation burn ({result.transaction_hash})",
                    )
                    self._changed()
                    report.burned.append(UserTransfer(
                        wallet_address=address, amount=-entry.amount, transaction_hash=result.transaction_hash
                    ))
            except RewardsError as e:
                logger.error("Reconciliation failed for %s (%+d tokens): %s", address, delta, e.message)
                report.failures.append(UserFailure(
                    wallet_address=address,
                    amount=delta,
                    error=e.message,
                    retryable=getattr(e, "retryable", False),
                ))

    def mint_for_user(self, wallet_address: str, amount) -> tuple[MintResult, RewardTransaction]:
        """Mint an explicit amount for one user and journal it."""
        bridge = self.require_bridge()
        address = checked_address(wallet_address) if wallet_address else wallet_address
        address, amount = bridge.check_mint_request(address, amount)
        if amount != amount.to_integral_value():
            raise ValidationError("Invalid amount. Must be a whole number of tokens")
        with self.store.user_lock(address):
            result = bridge.mint_tokens(address, amount)
            return result, self._record(address, result, "Manual oracle mint")

    def status(self) -> dict:
        return {
            "success": True,
            "configured": self.configured,
            "running": self.running,
            "oracle": self.bridge.status() if self.bridge is not None else None,
            "last_report": self.last_report.model_dump(mode="json") if self.last_report else None,
        }

    def _record(self, address: str, result: MintResult, description: str) -> RewardTransaction:
        amount = int(result.amount.to_integral_value()) if isinstance(result.amount, Decimal) else int(result.amount)
        entry = self.store.record_mint(
            address, amount, result.transaction_hash, f"{description} ({result.transaction_hash})"
        )
        self._changed()
        if self.bus is not None:
            self.bus.publish(Topics.TOKENS_MINTED, {
                "wallet_address": address,
                "amount": amount,
                "transaction_hash": result.transaction_hash,
                "block_number": result.block_number,
            })
        return entry

    def _changed(self) -> None:
        if self.cache is not None:
            self.cache.invalidate_tag("users", "transactions", "dashboard")


async def run_periodically(job: ReconciliationJob, interval: float) -> None:
    """Run the job every ``interval`` seconds off the event loop until cancelled."""
    logger.info("Periodic reconciliation every %.0fs", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(job.run)
        except Exception:
            logger.exception("Periodic reconciliation run failed")
