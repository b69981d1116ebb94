import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator, Optional
from uuid import uuid4

from . import tiers
from .cache import TTLCache
from .errors import InvalidTransition, NotFound, RewardsError, ValidationError
from .events import EventBus, Topics
from .models import (
    CreateRedemptionRequest,
    Redemption,
    RedemptionQuery,
    RedemptionResponse,
    RedemptionStatus,
    TransactionKind,
    UpdateRedemptionRequest,
)
from .store import LedgerStore, utcnow

if TYPE_CHECKING:
    from oracle.bridge import OracleBridge

logger = logging.getLogger(__name__)

REVIEW_STATUSES = (RedemptionStatus.COMPLETED, RedemptionStatus.CANCELLED)


class RedemptionService:
    """
    Redemption state machine: pending -> completed or cancelled.

    With an oracle bridge the on-chain holdings follow along on a best-effort
    basis: the redeemed tokens that already exist on-chain are burned, and a
    cancellation mints back what its redemption burned. A failed ledger call
    never undoes the off-chain change; reconciliation closes the gap later.
    """

    def __init__(
        self,
        store: LedgerStore,
        cache: Optional[TTLCache] = None,
        bus: Optional[EventBus] = None,
        code_factory: Callable[[], str] = tiers.generate_redemption_code,
        bridge: Optional["OracleBridge"] = None,
    ):
        self.store = store
        self.cache = cache if cache is not None else TTLCache()
        self.bus = bus if bus is not None else EventBus()
        self.code_factory = code_factory
        self.bridge = bridge

    @property
    def storage(self):
        return self.store.storage

    def create_redemption(self, request: CreateRedemptionRequest) -> RedemptionResponse:
        user = self.store.get_user(request.wallet_address)

        shop = None
        if request.shop_id:
            shop = self.store.get_shop(request.shop_id)
            if not shop.is_active:
                raise NotFound(f"Shop {shop.id} not found or inactive")

        redemption_id = str(uuid4())
        with self.store.user_lock(user.wallet_address) as address:
            # re-read under the lock, the discount rate may have moved
            user = self.store.get_user(address)
            if shop and not tiers.stage_allows(user.current_stage, shop.min_stage):
                raise ValidationError(
                    f"{shop.name} requires stage {shop.min_stage.value}",
                    {"current_stage": user.current_stage.value},
                )

            rate = user.discount_rate
            tokens_required = tiers.tokens_for_purchase(request.purchase_amount, rate)
            if tokens_required <= 0:
                raise ValidationError("Purchase amount is too small to redeem")

            code = self._unique_code()
            transaction = self.store.debit(
                address,
                tokens_required,
                TransactionKind.REDEMPTION_DEBIT,
                f"Redeemed {tokens_required} tokens for {rate}% discount on {request.purchase_amount} cUSD purchase",
                reference_id=redemption_id,
                metadata={"redemption_code": code, "shop_id": request.shop_id},
            )

            redemption = Redemption(
                id=redemption_id,
                wallet_address=address,
                shop_id=shop.id if shop else None,
                tokens_redeemed=tokens_required,
                purchase_amount=request.purchase_amount,
                discount_rate=rate,
                discount_amount=tiers.discount_amount(request.purchase_amount, rate),
                final_amount=tiers.final_amount(request.purchase_amount, rate),
                redemption_code=code,
                status=RedemptionStatus.PENDING,
                debit_transaction_id=transaction.id,
                created_at=transaction.created_at,
            )
            self.storage.redemptions[redemption_id] = redemption.model_dump()

            onchain_error = None
            if self.bridge is not None:
                redemption, onchain_error = self._burn_onchain(redemption, shop.name if shop else None)

        logger.info("Redemption %s created for %s (%d tokens)", code, address, tokens_required)
        self._changed(Topics.REDEMPTION_CREATED, redemption, tokens_redeemed=tokens_required)

        return RedemptionResponse(
            redemption=redemption,
            transaction=transaction,
            remaining_tokens=transaction.balance_after,
            onchain_error=onchain_error,
            message="Redemption created",
        )

    def update_status(self, redemption_id: str, request: UpdateRedemptionRequest) -> RedemptionResponse:
        try:
            target = RedemptionStatus(request.status) if request.status else None
        except ValueError:
            target = None
        if target not in REVIEW_STATUSES:
            raise ValidationError('Invalid status. Must be "completed" or "cancelled"')
        if target == RedemptionStatus.COMPLETED:
            return self.complete_redemption(redemption_id, request.performed_by)
        return self.cancel_redemption(redemption_id, request.performed_by)

    def complete_redemption(self, redemption_id: str, performed_by: Optional[str] = None) -> RedemptionResponse:
        with self._locked_pending(redemption_id) as data:
            data["status"] = RedemptionStatus.COMPLETED
            data["completed_at"] = utcnow()
            self.storage.redemptions[redemption_id] = data
            redemption = Redemption(**data)

        logger.info("Redemption %s completed by %s", redemption.redemption_code, performed_by or "admin")
        self._changed(Topics.REDEMPTION_UPDATED, redemption)
        return RedemptionResponse(redemption=redemption, message="Redemption marked as completed")

    def cancel_redemption(self, redemption_id: str, performed_by: Optional[str] = None) -> RedemptionResponse:
        with self._locked_pending(redemption_id) as data:
            refund = self.store.credit(
                data["wallet_address"],
                data["tokens_redeemed"],
                TransactionKind.REDEMPTION_REFUND,
                f"Refund for cancelled redemption {data['redemption_code']}",
                reference_id=redemption_id,
                metadata={"performed_by": performed_by, "debit_transaction_id": data["debit_transaction_id"]},
            )
            data["status"] = RedemptionStatus.CANCELLED
            data["cancelled_at"] = refund.created_at
            data["refund_transaction_id"] = refund.id
            onchain_error = None
            if self.bridge is not None and data["tokens_burned_onchain"]:
                onchain_error = self._refund_onchain(data)
            self.storage.redemptions[redemption_id] = data
            redemption = Redemption(**data)

        logger.info("Redemption %s cancelled, refunded %d tokens", redemption.redemption_code, refund.amount)
        self._changed(Topics.REDEMPTION_UPDATED, redemption, refunded=refund.amount)
        return RedemptionResponse(
            redemption=redemption,
            transaction=refund,
            remaining_tokens=refund.balance_after,
            onchain_error=onchain_error,
            message="Redemption cancelled and tokens refunded",
        )

    def get_redemption(self, redemption_id: str) -> Redemption:
        self.storage.ensure_available()
        data = self.storage.redemptions.get(redemption_id)
        if not data:
            raise NotFound(f"Redemption {redemption_id} not found")
        return Redemption(**data)

    def list_redemptions(self, query: RedemptionQuery) -> list[Redemption]:
        self.storage.ensure_available()
        redemptions = [Redemption(**r) for r in list(self.storage.redemptions.values())]
        if query.wallet_address:
            redemptions = [r for r in redemptions if r.wallet_address == query.wallet_address]
        if query.status:
            redemptions = [r for r in redemptions if r.status == query.status]
        redemptions.reverse()
        return redemptions[:query.limit]

    # --- helpers ---

    @contextmanager
    def _locked_pending(self, redemption_id: str) -> Iterator[dict]:
        """Hold the owner's lock and yield a mutable copy of a pending redemption."""
        redemption = self.get_redemption(redemption_id)
        with self.store.user_lock(redemption.wallet_address):
            current = self.get_redemption(redemption_id)
            if not current.can_transition():
                raise InvalidTransition(
                    f"Only pending redemptions can be updated (current status: {current.status.value})"
                )
            yield current.model_dump()

    def _burn_onchain(self, redemption: Redemption, shop_name: Optional[str]) -> tuple[Redemption, Optional[str]]:
        """Burn the share of the redeemed tokens that is held on-chain. The caller holds the user lock."""
        user = self.store.get_user(redemption.wallet_address)
        amount = min(redemption.tokens_redeemed, user.tokens_minted - user.reward_tokens)
        if amount <= 0:
            return redemption, None
        try:
            result = self.bridge.record_redemption(
                redemption.wallet_address, amount, shop_name, idempotency_key=f"redeem:{redemption.id}"
            )
            self.store.record_burn(
                redemption.wallet_address,
                amount,
                result.transaction_hash,
                f"Redemption {redemption.redemption_code} burned on-chain",
            )
        except RewardsError as e:
            logger.warning("On-chain burn for redemption %s left to reconciliation: %s", redemption.redemption_code, e.message)
            return redemption, e.message

        redemption = redemption.model_copy(
            update={"tokens_burned_onchain": amount, "burn_transaction_hash": result.transaction_hash}
        )
        self.storage.redemptions[redemption.id] = redemption.model_dump()
        return redemption, None

    def _refund_onchain(self, data: dict) -> Optional[str]:
        amount = data["tokens_burned_onchain"]
        code = data["redemption_code"]
        try:
            result = self.bridge.record_refund(
                data["wallet_address"], amount, f"Redemption {code} cancelled", idempotency_key=f"refund:{data['id']}"
            )
            self.store.record_mint(data["wallet_address"], amount, result.transaction_hash, f"Redemption {code} refunded on-chain")
        except RewardsError as e:
            logger.warning("On-chain refund for redemption %s left to reconciliation: %s", code, e.message)
            return e.message
        data["refund_transaction_hash"] = result.transaction_hash
        return None

    def _unique_code(self) -> str:
        code = self.code_factory()
        while code in self.storage.redemption_codes:
            code = self.code_factory()
        self.storage.redemption_codes.add(code)
        return code

    def _changed(self, topic: str, redemption: Redemption, **extra) -> None:
        self.cache.invalidate_tag("redemptions", "users", "transactions", "dashboard")
        self.bus.publish(topic, {
            "wallet_address": redemption.wallet_address,
            "redemption": redemption.model_dump(mode="json"),
            "timestamp": int(utcnow().timestamp() * 1000),
            **extra,
        })

