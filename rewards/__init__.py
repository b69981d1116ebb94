"""
Off-chain Reward Ledger

This package provides:
- Per-user linearizable credits and debits with an append-only journal
- Redemptions driven through a pending -> completed / cancelled state machine
- Idempotent quest rewards on submission approval
- TTL read cache with tag and pattern invalidation
- In-process event bus and SSE stream adapter
"""

from .cache import CacheKey, CacheTTL, TTLCache
from .events import EventBus, StreamSubscription, Topics
from .models import (
    Redemption,
    RedemptionStatus,
    RewardTransaction,
    Stage,
    Submission,
    TransactionKind,
    User,
)
from .service import RewardsService
from .store import InMemoryStorage, LedgerStore

__all__ = [
    "CacheKey",
    "CacheTTL",
    "TTLCache",
    "EventBus",
    "StreamSubscription",
    "Topics",
    "Redemption",
    "RedemptionStatus",
    "RewardTransaction",
    "Stage",
    "Submission",
    "TransactionKind",
    "User",
    "RewardsService",
    "InMemoryStorage",
    "LedgerStore",
]
