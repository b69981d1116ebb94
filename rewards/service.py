from typing import TYPE_CHECKING, Optional

from . import tiers
from .cache import CacheKey, CacheTTL, TTLCache
from .events import EventBus
from .models import (
    BalanceResponse,
    DashboardStats,
    RedemptionQuery,
    RedemptionStatus,
    SubmissionQuery,
    TransactionHistoryResponse,
    TransactionQuery,
    UserResponse,
)
from .redemptions import RedemptionService
from .store import InMemoryStorage, LedgerStore, checked_address
from .submissions import QuestVerificationService

if TYPE_CHECKING:
    from oracle.bridge import OracleBridge


class RewardsService:
    """Wires the ledger store, cache and event bus together and serves the cached read paths."""

    def __init__(
        self,
        storage: Optional[InMemoryStorage] = None,
        cache: Optional[TTLCache] = None,
        bus: Optional[EventBus] = None,
        bridge: Optional["OracleBridge"] = None,
        short_ttl: float = CacheTTL.SHORT,
        medium_ttl: float = CacheTTL.MEDIUM,
    ):
        self.store = LedgerStore(storage)
        self.cache = cache if cache is not None else TTLCache()
        self.bus = bus if bus is not None else EventBus()
        self.short_ttl = short_ttl
        self.medium_ttl = medium_ttl
        self.redemptions = RedemptionService(self.store, self.cache, self.bus, bridge=bridge)
        self.submissions = QuestVerificationService(self.store, self.cache, self.bus, bridge)

    def get_user(self, wallet_address: str) -> UserResponse:
        address = checked_address(wallet_address)

        def load() -> UserResponse:
            user = self.store.get_user(address)
            return UserResponse(user=user, summary=tiers.rewards_summary(user))

        return self.cache.get_or_set(CacheKey.of("users", wallet_address=address), load, self.short_ttl)

    def get_balance(self, wallet_address: str) -> BalanceResponse:
        user = self.store.get_user(wallet_address)
        latest = self.store.list_transactions(user.wallet_address, limit=1)
        return BalanceResponse(
            wallet_address=user.wallet_address,
            reward_tokens=user.reward_tokens,
            tokens_minted=user.tokens_minted,
            last_transaction_at=latest[0].created_at if latest else None,
        )

    def list_transactions(self, query: TransactionQuery) -> TransactionHistoryResponse:
        def load() -> TransactionHistoryResponse:
            entries = self.store.list_transactions(query.wallet_address, query.kind, query.limit)
            return TransactionHistoryResponse(
                wallet_address=query.wallet_address, transactions=entries, count=len(entries)
            )

        return self.cache.get_or_set(query.cache_key(), load, self.short_ttl)

    def list_submissions(self, query: SubmissionQuery):
        return self.cache.get_or_set(
            query.cache_key(), lambda: self.submissions.list_submissions(query), self.short_ttl
        )

    def list_redemptions(self, query: RedemptionQuery):
        return self.cache.get_or_set(
            query.cache_key(), lambda: self.redemptions.list_redemptions(query), self.short_ttl
        )

    def dashboard_stats(self) -> DashboardStats:
        return self.cache.get_or_set(CacheKey.of("dashboard"), self._compute_stats, self.medium_ttl)

    def _compute_stats(self) -> DashboardStats:
        storage = self.store.storage
        storage.ensure_available()
        users = self.store.list_users()
        submissions = list(storage.submissions.values())
        statuses = [r["status"] for r in list(storage.redemptions.values())]
        return DashboardStats(
            total_users=len(users),
            total_tokens_outstanding=sum(u.reward_tokens for u in users),
            total_tokens_minted=sum(u.tokens_minted for u in users),
            pending_submissions=sum(1 for s in submissions if not s["verified"]),
            verified_submissions=sum(1 for s in submissions if s["verified"]),
            pending_redemptions=statuses.count(RedemptionStatus.PENDING),
            completed_redemptions=statuses.count(RedemptionStatus.COMPLETED),
            cancelled_redemptions=statuses.count(RedemptionStatus.CANCELLED),
        )
