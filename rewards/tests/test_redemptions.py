"""
Unit Tests for the Redemption State Machine

Tests cover:
1. Redemption creation and token debit
2. Completion and cancellation (refund) flows
3. Invalid transitions
4. Shop eligibility
5. Listing, codes, cache invalidation and events
6. Mirroring spent and refunded tokens on-chain
"""

import re
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from oracle.reconciliation import ReconciliationJob
from rewards.errors import ExternalLedgerTerminal, InsufficientBalance, InvalidTransition, NotFound, ValidationError
from rewards.events import Topics
from rewards.models import (
    CreateRedemptionRequest,
    RedemptionQuery,
    RedemptionStatus,
    Stage,
    TransactionKind,
    UpdateRedemptionRequest,
)
from rewards.redemptions import RedemptionService
from rewards.store import InMemoryStorage, LedgerStore

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
TOKEN = 10 ** 18


def fund(service, address, amount):
    service.store.credit(address, amount, TransactionKind.ADJUSTMENT, "Starting balance")


def redeem(service, address=ALICE, purchase="100", shop_id=None):
    return service.redemptions.create_redemption(
        CreateRedemptionRequest(wallet_address=address, purchase_amount=Decimal(purchase), shop_id=shop_id)
    )


class TestCreateRedemption:
    """Tests for creating redemptions."""

    def test_create_debits_tokens(self, service):
        """Test a redemption debits ceil(purchase * rate / 100) tokens."""
        fund(service, ALICE, 10)

        response = redeem(service, purchase="25.50")

        # seedling discount is 10%, so 2.55 rounds up to 3 tokens
        assert response.redemption.tokens_redeemed == 3
        assert response.redemption.status == RedemptionStatus.PENDING
        assert response.redemption.discount_rate == 10
        assert response.redemption.discount_amount == Decimal("2.55")
        assert response.redemption.final_amount == Decimal("22.95")
        assert response.remaining_tokens == 7
        assert response.transaction.kind == TransactionKind.REDEMPTION_DEBIT
        assert response.transaction.reference_id == response.redemption.id
        assert response.redemption.debit_transaction_id == response.transaction.id
        assert service.store.get_balance(ALICE) == 7

    def test_insufficient_balance_creates_nothing(self, service):
        """Test a failed debit leaves no redemption behind."""
        fund(service, ALICE, 2)

        with pytest.raises(InsufficientBalance):
            redeem(service, purchase="100")

        assert service.store.storage.redemptions == {}
        assert service.store.get_balance(ALICE) == 2
        assert len(service.store.list_transactions(ALICE)) == 1

    def test_concurrent_redemptions_cannot_overspend(self, service):
        """Test racing redemptions for one user never take the balance below zero."""
        fund(service, ALICE, 25)

        def attempt(_):
            try:
                return redeem(service, purchase="100")
            except InsufficientBalance:
                return None

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(16)))

        succeeded = [r for r in results if r is not None]
        assert len(succeeded) == 2
        assert service.store.get_balance(ALICE) == 5
        assert len(service.store.storage.redemptions) == 2
        assert sorted(r.remaining_tokens for r in succeeded) == [5, 15]
        assert service.store.verify_journal(ALICE)

    def test_unknown_user(self, service):
        """Test redemptions require an existing user."""
        with pytest.raises(NotFound):
            redeem(service, address=BOB)

    def test_shop_stage_requirement(self, service):
        """Test a shop can require a minimum stage."""
        fund(service, ALICE, 50)

        with pytest.raises(ValidationError) as exc_info:
            redeem(service, shop_id="eco-threads")
        assert exc_info.value.details == {"current_stage": Stage.SEEDLING.value}

        service.store.add_impact_points(ALICE, 100)
        response = redeem(service, shop_id="eco-threads")

        # sprout discount is 15%
        assert response.redemption.tokens_redeemed == 15
        assert response.redemption.shop_id == "eco-threads"

    def test_inactive_or_unknown_shop(self, service):
        """Test inactive and unknown shops are rejected."""
        fund(service, ALICE, 50)
        service.store.storage.shops["green-grocer"]["is_active"] = False

        with pytest.raises(NotFound):
            redeem(service, shop_id="green-grocer")
        with pytest.raises(NotFound):
            redeem(service, shop_id="no-such-shop")

        assert service.store.get_balance(ALICE) == 50

    def test_redemption_code_format(self, service):
        """Test codes look like RDM-<base36 time>-<6 chars>."""
        fund(service, ALICE, 10)

        code = redeem(service, purchase="10").redemption.redemption_code

        assert re.fullmatch(r"RDM-[0-9a-z]+-[A-Z0-9]{6}", code)

    def test_redemption_codes_unique(self, cache, bus):
        """Test a colliding generated code is replaced."""
        codes = iter(["RDM-1-AAAAAA", "RDM-1-AAAAAA", "RDM-1-BBBBBB"])
        store = LedgerStore(InMemoryStorage())
        service = RedemptionService(store, cache, bus, code_factory=lambda: next(codes))
        store.credit(ALICE, 10, TransactionKind.ADJUSTMENT, "Starting balance")

        request = CreateRedemptionRequest(wallet_address=ALICE, purchase_amount=Decimal("10"))
        first = service.create_redemption(request)
        second = service.create_redemption(request)

        assert first.redemption.redemption_code == "RDM-1-AAAAAA"
        assert second.redemption.redemption_code == "RDM-1-BBBBBB"

    def test_non_positive_purchase_rejected(self):
        """Test the purchase amount must be positive."""
        with pytest.raises(ValueError):
            CreateRedemptionRequest(wallet_address=ALICE, purchase_amount=Decimal("0"))


class TestRedemptionLifecycle:
    """Tests for the pending -> completed / cancelled transitions."""

    def test_cancel_refunds_exact_amount(self, service):
        """Test +10 quest reward, -10 on redeem, +10 on cancel."""
        service.store.credit(ALICE, 10, TransactionKind.QUEST_REWARD, "Completed quest")
        balance_before = service.store.get_balance(ALICE)

        created = redeem(service, purchase="100")
        assert service.store.get_balance(ALICE) == 0

        cancelled = service.redemptions.cancel_redemption(created.redemption.id, performed_by="admin")

        assert cancelled.redemption.status == RedemptionStatus.CANCELLED
        assert cancelled.redemption.cancelled_at is not None
        assert cancelled.redemption.refund_transaction_id == cancelled.transaction.id
        assert cancelled.transaction.kind == TransactionKind.REDEMPTION_REFUND
        assert cancelled.transaction.amount == 10
        assert service.store.get_balance(ALICE) == balance_before
        assert [t.amount for t in service.store.list_transactions(ALICE)] == [10, -10, 10]
        assert service.store.verify_journal(ALICE)

    def test_second_cancel_fails_without_side_effect(self, service):
        """Test a cancelled redemption cannot be cancelled or completed again."""
        fund(service, ALICE, 10)
        created = redeem(service, purchase="100")
        service.redemptions.cancel_redemption(created.redemption.id)

        with pytest.raises(InvalidTransition):
            service.redemptions.cancel_redemption(created.redemption.id)
        with pytest.raises(InvalidTransition):
            service.redemptions.complete_redemption(created.redemption.id)

        assert service.store.get_balance(ALICE) == 10
        assert len(service.store.list_transactions(ALICE)) == 3

    def test_complete_keeps_tokens_spent(self, service):
        """Test completion changes status only."""
        fund(service, ALICE, 10)
        created = redeem(service, purchase="50")

        completed = service.redemptions.complete_redemption(created.redemption.id)

        assert completed.redemption.status == RedemptionStatus.COMPLETED
        assert completed.redemption.completed_at is not None
        assert completed.transaction is None
        assert service.store.get_balance(ALICE) == 5

        with pytest.raises(InvalidTransition):
            service.redemptions.cancel_redemption(created.redemption.id)
        assert service.store.get_balance(ALICE) == 5

    def test_update_status_dispatch(self, service):
        """Test admin review by target status."""
        fund(service, ALICE, 20)
        first = redeem(service, purchase="50")
        second = redeem(service, purchase="50")

        completed = service.redemptions.update_status(
            first.redemption.id, UpdateRedemptionRequest(status="completed")
        )
        cancelled = service.redemptions.update_status(
            second.redemption.id, UpdateRedemptionRequest(status="cancelled", performed_by="admin")
        )

        assert completed.redemption.status == RedemptionStatus.COMPLETED
        assert cancelled.redemption.status == RedemptionStatus.CANCELLED
        assert service.store.get_balance(ALICE) == 15

    @pytest.mark.parametrize("status", [None, "pending", "refunded"])
    def test_update_status_rejects_other_values(self, service, status):
        """Test only completed and cancelled are accepted."""
        fund(service, ALICE, 10)
        created = redeem(service, purchase="50")

        with pytest.raises(ValidationError) as exc_info:
            service.redemptions.update_status(created.redemption.id, UpdateRedemptionRequest(status=status))

        assert exc_info.value.message == 'Invalid status. Must be "completed" or "cancelled"'
        assert service.redemptions.get_redemption(created.redemption.id).status == RedemptionStatus.PENDING

    def test_unknown_redemption(self, service):
        """Test transitions on a missing redemption."""
        with pytest.raises(NotFound):
            service.redemptions.complete_redemption("missing")


class TestRedemptionReads:
    """Tests for listing, caching and events."""

    def test_list_newest_first_with_filters(self, service):
        """Test listing order, status filter and limit."""
        fund(service, ALICE, 30)
        fund(service, BOB, 30)
        first = redeem(service, purchase="10")
        second = redeem(service, address=BOB, purchase="10")
        third = redeem(service, purchase="10")
        service.redemptions.complete_redemption(first.redemption.id)

        everything = service.redemptions.list_redemptions(RedemptionQuery())
        assert [r.id for r in everything] == [third.redemption.id, second.redemption.id, first.redemption.id]

        alice_pending = service.redemptions.list_redemptions(
            RedemptionQuery(wallet_address=ALICE, status=RedemptionStatus.PENDING)
        )
        assert [r.id for r in alice_pending] == [third.redemption.id]

        assert len(service.redemptions.list_redemptions(RedemptionQuery(limit=1))) == 1

    def test_query_limit_bounds(self):
        """Test the listing limit is bounded to 1..100."""
        with pytest.raises(ValueError):
            RedemptionQuery(limit=0)
        with pytest.raises(ValueError):
            RedemptionQuery(limit=101)

    def test_cached_list_invalidated_on_change(self, service):
        """Test a cached listing is refreshed after a redemption is created."""
        fund(service, ALICE, 10)
        query = RedemptionQuery(wallet_address=ALICE)

        assert service.list_redemptions(query) == []
        redeem(service, purchase="10")

        assert len(service.list_redemptions(query)) == 1

    def test_events_published(self, service, bus):
        """Test creation and review publish events."""
        created_events, updated_events = [], []
        bus.subscribe(Topics.REDEMPTION_CREATED, created_events.append)
        bus.subscribe(Topics.REDEMPTION_UPDATED, updated_events.append)
        fund(service, ALICE, 10)

        created = redeem(service, purchase="10")
        service.redemptions.cancel_redemption(created.redemption.id)

        assert len(created_events) == 1
        assert created_events[0]["wallet_address"] == ALICE
        assert created_events[0]["tokens_redeemed"] == 1
        assert len(updated_events) == 1
        assert updated_events[0]["redemption"]["status"] == "cancelled"
        assert updated_events[0]["refunded"] == 1


class TestOnChainMirroring:
    """Tests for burning and refunding on-chain holdings alongside redemptions."""

    def minted_user(self, service, amount):
        service.store.credit(ALICE, amount, TransactionKind.QUEST_REWARD, "Completed quest")
        job = ReconciliationJob(service.store, service.redemptions.bridge)
        job.run()
        return job

    def test_redemption_burns_and_cancel_refunds(self, oracle_service, ledger_client):
        """Test redeemed tokens held on-chain are burned and a cancellation mints them back."""
        job = self.minted_user(oracle_service, 20)

        created = redeem(oracle_service, purchase="100")

        assert created.onchain_error is None
        assert created.redemption.tokens_burned_onchain == 10
        assert created.redemption.burn_transaction_hash is not None
        assert ledger_client.balance_of(ALICE) == 10 * TOKEN
        assert oracle_service.store.get_user(ALICE).tokens_minted == 10

        cancelled = oracle_service.redemptions.cancel_redemption(created.redemption.id)

        assert cancelled.redemption.refund_transaction_hash is not None
        assert ledger_client.balance_of(ALICE) == 20 * TOKEN
        user = oracle_service.store.get_user(ALICE)
        assert user.reward_tokens == 20
        assert user.tokens_minted == 20
        assert oracle_service.store.verify_journal(ALICE)

        report = job.run()
        assert report.minted == [] and report.burned == []

    def test_unminted_tokens_are_not_burned(self, oracle_service, ledger_client):
        """Test spending tokens that never reached the chain needs no ledger call."""
        oracle_service.store.credit(ALICE, 10, TransactionKind.QUEST_REWARD, "Completed quest")

        created = redeem(oracle_service, purchase="100")
        oracle_service.redemptions.cancel_redemption(created.redemption.id)

        assert created.redemption.tokens_burned_onchain == 0
        assert ledger_client.applied == []

    def test_failed_burn_left_to_reconciliation(self, oracle_service, ledger_client):
        """Test a refused burn keeps the redemption and the next run burns the gap."""
        job = self.minted_user(oracle_service, 20)
        ledger_client.fail_next_broadcast(ExternalLedgerTerminal("execution reverted"))

        created = redeem(oracle_service, purchase="100")

        assert created.onchain_error == "execution reverted"
        assert created.redemption.status == RedemptionStatus.PENDING
        assert oracle_service.store.get_balance(ALICE) == 10
        assert ledger_client.balance_of(ALICE) == 20 * TOKEN

        report = job.run()

        assert report.total_burned == 10
        assert ledger_client.balance_of(ALICE) == 10 * TOKEN
        assert oracle_service.store.verify_journal(ALICE)
