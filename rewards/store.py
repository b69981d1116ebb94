import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import uuid4

from . import tiers
from .errors import InsufficientBalance, NotFound, StoreUnavailable, ValidationError
from .models import (
    Quest,
    RewardTransaction,
    Shop,
    Stage,
    TransactionKind,
    User,
    normalize_address,
)

logger = logging.getLogger(__name__)

CREDIT_KINDS = {
    TransactionKind.QUEST_REWARD,
    TransactionKind.REDEMPTION_REFUND,
    TransactionKind.ADJUSTMENT,
}
DEBIT_KINDS = {TransactionKind.REDEMPTION_DEBIT, TransactionKind.ADJUSTMENT}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def checked_address(wallet_address: str) -> str:
    try:
        return normalize_address(wallet_address)
    except ValueError as e:
        raise ValidationError(str(e)) from e


class InMemoryStorage:
    def __init__(self, seed: bool = True):
        self.users: dict[str, dict] = {}
        self.transactions: dict[str, dict] = {}
        self.user_transactions: dict[str, list[str]] = {}
        self.redemptions: dict[str, dict] = {}
        self.redemption_codes: set[str] = set()
        self.submissions: dict[str, dict] = {}
        self.quests: dict[str, dict] = {}
        self.shops: dict[str, dict] = {}
        self.available = True
        if seed:
            self._seed_data()

    def _seed_data(self):
        for quest in (
            Quest(id="beach-cleanup", title="Beach Cleanup", impact_points=50, onchain_quest_id=1),
            Quest(id="plant-a-tree", title="Plant a Tree", impact_points=30, onchain_quest_id=2),
            Quest(id="recycle-run", title="Recycling Drive", impact_points=20, onchain_quest_id=3),
        ):
            self.quests[quest.id] = quest.model_dump()

        for shop in (
            Shop(id="green-grocer", name="Green Grocer", category="groceries"),
            Shop(id="eco-threads", name="Eco Threads", category="clothing", min_stage=Stage.SPROUT),
        ):
            self.shops[shop.id] = shop.model_dump()

    def ensure_available(self) -> None:
        if not self.available:
            raise StoreUnavailable("Ledger store is unavailable")

    def close(self) -> None:
        self.available = False


class LedgerStore:
    """
    Authoritative off-chain balances and their append-only journal.

    Every balance change is written together with its journal entry while the
    owning user's lock is held. Callers that need a multi-step operation on one
    user (check, debit, persist) wrap it in ``user_lock``.
    """

    def __init__(self, storage: Optional[InMemoryStorage] = None):
        self.storage = storage if storage is not None else InMemoryStorage()
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def user_lock(self, wallet_address: str) -> Iterator[str]:
        address = checked_address(wallet_address)
        with self._locks_guard:
            lock = self._locks.setdefault(address, threading.RLock())
        with lock:
            yield address

    # --- users ---

    def get_or_create_user(self, wallet_address: str) -> User:
        with self.user_lock(wallet_address) as address:
            self.storage.ensure_available()
            data = self.storage.users.get(address)
            if data is None:
                now = utcnow()
                data = User(wallet_address=address, created_at=now, updated_at=now).model_dump()
                self.storage.users[address] = data
                self.storage.user_transactions[address] = []
                logger.info("Created user %s", address)
            return User(**data)

    def get_user(self, wallet_address: str) -> User:
        address = checked_address(wallet_address)
        self.storage.ensure_available()
        data = self.storage.users.get(address)
        if data is None:
            raise NotFound(f"User {address} not found")
        return User(**data)

    def list_users(self, min_balance: Optional[int] = None) -> list[User]:
        self.storage.ensure_available()
        users = [User(**u) for u in list(self.storage.users.values())]
        if min_balance is not None:
            users = [u for u in users if u.reward_tokens >= min_balance]
        users.sort(key=lambda u: u.created_at)
        return users

    def add_impact_points(self, wallet_address: str, points: int) -> tuple[Stage, Stage]:
        """Add impact points and re-derive stage, level and discount. Returns (old, new) stage."""
        if points < 0:
            raise ValidationError("Impact points must not be negative")
        self.get_or_create_user(wallet_address)
        with self.user_lock(wallet_address) as address:
            self.storage.ensure_available()
            data = dict(self.storage.users[address])
            previous = Stage(data["current_stage"])
            total = data["total_impact_points"] + points
            stage = tiers.calculate_stage(total)
            data.update(
                total_impact_points=total,
                current_stage=stage,
                level=tiers.calculate_level(total),
                discount_rate=tiers.get_discount_rate(stage),
                updated_at=utcnow(),
            )
            self.storage.users[address] = data
            return previous, stage

    # --- balance mutations ---

    def credit(
        self,
        wallet_address: str,
        amount: int,
        kind: TransactionKind,
        description: str,
        reference_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> RewardTransaction:
        kind = TransactionKind(kind)
        if kind not in CREDIT_KINDS:
            raise ValidationError(f"{kind.value} cannot be used for a credit")
        self._check_amount(amount)
        return self._apply(wallet_address, amount, kind, description, reference_id, metadata)

    def debit(
        self,
        wallet_address: str,
        amount: int,
        kind: TransactionKind,
        description: str,
        reference_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> RewardTransaction:
        kind = TransactionKind(kind)
        if kind not in DEBIT_KINDS:
            raise ValidationError(f"{kind.value} cannot be used for a debit")
        self._check_amount(amount)
        return self._apply(wallet_address, -amount, kind, description, reference_id, metadata)

    def record_mint(self, wallet_address: str, amount: int, tx_hash: str, description: Optional[str] = None) -> RewardTransaction:
        """Journal a confirmed on-chain mint. The off-chain balance is unchanged."""
        self._check_amount(amount)
        return self._apply(
            wallet_address,
            amount,
            TransactionKind.ORACLE_MINT,
            description or f"Minted {amount} tokens on-chain",
            reference_id=tx_hash,
            metadata={"transaction_hash": tx_hash},
        )

    def record_burn(self, wallet_address: str, amount: int, tx_hash: str, description: Optional[str] = None) -> RewardTransaction:
        """Journal a confirmed on-chain burn. The off-chain balance is unchanged."""
        self._check_amount(amount)
        return self._apply(
            wallet_address,
            -amount,
            TransactionKind.ORACLE_BURN,
            description or f"Burned {amount} tokens on-chain",
            reference_id=tx_hash,
            metadata={"transaction_hash": tx_hash},
        )

    def onchain_sequence(self, wallet_address: str) -> int:
        """Number of on-chain movements journaled for the user so far."""
        return sum(1 for e in self.list_transactions(wallet_address) if not e.kind.affects_balance)

    def get_balance(self, wallet_address: str) -> int:
        try:
            return self.get_user(wallet_address).reward_tokens
        except NotFound:
            return 0

    def _check_amount(self, amount: int) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(f"Amount must be a positive integer, got {amount!r}")

    def _apply(
        self,
        wallet_address: str,
        delta: int,
        kind: TransactionKind,
        description: str,
        reference_id: Optional[str],
        metadata: Optional[dict],
    ) -> RewardTransaction:
        self.get_or_create_user(wallet_address)
        with self.user_lock(wallet_address) as address:
            self.storage.ensure_available()
            user = dict(self.storage.users[address])

            if kind.affects_balance:
                new_balance = user["reward_tokens"] + delta
                if new_balance < 0:
                    raise InsufficientBalance(required=-delta, available=user["reward_tokens"])
                user["reward_tokens"] = new_balance
                if kind == TransactionKind.QUEST_REWARD or (kind == TransactionKind.ADJUSTMENT and delta > 0):
                    user["total_rewards_earned"] += delta
            else:
                user["tokens_minted"] += delta

            now = utcnow()
            user["updated_at"] = now
            entry = RewardTransaction(
                id=str(uuid4()),
                wallet_address=address,
                kind=kind,
                amount=delta,
                balance_after=user["reward_tokens"],
                description=description,
                reference_id=reference_id,
                created_at=now,
                metadata=metadata or {},
            )

            # balance row and journal entry are committed together
            self.storage.transactions[entry.id] = entry.model_dump()
            self.storage.user_transactions[address].append(entry.id)
            self.storage.users[address] = user

        logger.debug("%s %+d for %s (balance %d)", kind.value, delta, address, entry.balance_after)
        return entry

    # --- journal reads ---

    def list_transactions(
        self,
        wallet_address: Optional[str] = None,
        kind: Optional[TransactionKind] = None,
        limit: Optional[int] = None,
    ) -> list[RewardTransaction]:
        self.storage.ensure_available()
        if wallet_address:
            address = checked_address(wallet_address)
            ids = list(self.storage.user_transactions.get(address, []))
            entries = [RewardTransaction(**self.storage.transactions[i]) for i in ids]
        else:
            entries = [RewardTransaction(**e) for e in list(self.storage.transactions.values())]
        if kind is not None:
            entries = [e for e in entries if e.kind == kind]
        # storage keeps commit order, newest last
        entries.reverse()
        return entries[:limit] if limit else entries

    def verify_journal(self, wallet_address: str) -> bool:
        """Check that the materialized balance and on-chain tally match the journal."""
        with self.user_lock(wallet_address) as address:
            user = self.get_user(address)
            entries = self.list_transactions(address)
        balance = sum(e.amount for e in entries if e.kind.affects_balance)
        minted = sum(e.amount for e in entries if not e.kind.affects_balance)
        return balance == user.reward_tokens and minted == user.tokens_minted

    # --- reference data ---

    def get_quest(self, quest_id: str) -> Quest:
        self.storage.ensure_available()
        data = self.storage.quests.get(quest_id)
        if data is None:
            raise NotFound(f"Quest {quest_id} not found")
        return Quest(**data)

    def get_shop(self, shop_id: str) -> Shop:
        self.storage.ensure_available()
        data = self.storage.shops.get(shop_id)
        if data is None:
            raise NotFound(f"Shop {shop_id} not found")
        return Shop(**data)

    def close(self) -> None:
        self.storage.close()
