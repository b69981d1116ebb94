from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Optional

from eth_utils import is_address
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .cache import CacheKey


def normalize_address(address: str) -> str:
    address = (address or "").strip()
    if not is_address(address):
        raise ValueError(f"Invalid wallet address: {address!r}")
    return address.lower()


class TransactionKind(str, Enum):
    QUEST_REWARD = "quest_reward"
    REDEMPTION_DEBIT = "redemption_debit"
    REDEMPTION_REFUND = "redemption_refund"
    ORACLE_MINT = "oracle_mint"
    ORACLE_BURN = "oracle_burn"
    ADJUSTMENT = "adjustment"

    @property
    def affects_balance(self) -> bool:
        return self not in (TransactionKind.ORACLE_MINT, TransactionKind.ORACLE_BURN)


class RedemptionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Stage(str, Enum):
    SEEDLING = "seedling"
    SPROUT = "sprout"
    TREE = "tree"
    FOREST = "forest"


class CertificationStatus(str, Enum):
    NOT_REQUESTED = "not_requested"
    CERTIFIED = "certified"
    FAILED = "failed"


class User(BaseModel):
    wallet_address: str
    total_impact_points: int = 0
    reward_tokens: int = 0
    total_rewards_earned: int = 0
    tokens_minted: int = 0
    current_stage: Stage = Stage.SEEDLING
    level: int = 1
    discount_rate: int = 10
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class RewardTransaction(BaseModel):
    id: str
    wallet_address: str
    kind: TransactionKind
    amount: int
    balance_after: int
    description: str
    reference_id: Optional[str] = None
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class Quest(BaseModel):
    id: str
    title: str
    impact_points: int
    onchain_quest_id: Optional[int] = None
    is_active: bool = True


class Shop(BaseModel):
    id: str
    name: str
    category: str = "other"
    is_active: bool = True
    min_stage: Stage = Stage.SEEDLING


class Redemption(BaseModel):
    id: str
    wallet_address: str
    shop_id: Optional[str] = None
    tokens_redeemed: int
    purchase_amount: Decimal
    discount_rate: int
    discount_amount: Decimal
    final_amount: Decimal
    redemption_code: str
    status: RedemptionStatus
    debit_transaction_id: str
    refund_transaction_id: Optional[str] = None
    tokens_burned_onchain: int = 0
    burn_transaction_hash: Optional[str] = None
    refund_transaction_hash: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_transition(self) -> bool:
        return self.status == RedemptionStatus.PENDING


class Submission(BaseModel):
    id: str
    wallet_address: str
    quest_id: str
    proof_reference: str
    verified: bool = False
    impact_points_earned: int = 0
    tokens_awarded: int = 0
    admin_notes: Optional[str] = None
    submitted_at: datetime
    reviewed_at: Optional[datetime] = None
    proof_hash: Optional[str] = None
    certification_status: CertificationStatus = CertificationStatus.NOT_REQUESTED
    certification_tx: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# --- Query specifiers ---

class _Query(BaseModel):
    model_config = ConfigDict(frozen=True)

    resource: ClassVar[str] = "query"

    limit: int = Field(default=50, ge=1, le=100)

    def cache_key(self) -> CacheKey:
        return CacheKey.of(self.resource, **self.model_dump(mode="json"))


class _WalletQuery(_Query):
    wallet_address: Optional[str] = None

    @field_validator("wallet_address")
    @classmethod
    def _normalize(cls, value: Optional[str]) -> Optional[str]:
        return normalize_address(value) if value else None


class TransactionQuery(_WalletQuery):
    resource: ClassVar[str] = "transactions"

    kind: Optional[TransactionKind] = None


class RedemptionQuery(_WalletQuery):
    resource: ClassVar[str] = "redemptions"

    status: Optional[RedemptionStatus] = None


class SubmissionQuery(_WalletQuery):
    resource: ClassVar[str] = "submissions"

    verified: Optional[bool] = None


# --- Requests ---

class CreateSubmissionRequest(BaseModel):
    wallet_address: str
    quest_id: str
    proof_reference: str = Field(..., min_length=1)

    @field_validator("wallet_address")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_address(value)


class ReviewSubmissionRequest(BaseModel):
    verified: bool
    admin_notes: Optional[str] = None


class CreateRedemptionRequest(BaseModel):
    wallet_address: str
    purchase_amount: Decimal = Field(..., gt=0)
    shop_id: Optional[str] = None

    @field_validator("wallet_address")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return normalize_address(value)


class UpdateRedemptionRequest(BaseModel):
    status: Optional[str] = None
    performed_by: Optional[str] = None


class MintTokensRequest(BaseModel):
    user_address: Optional[str] = None
    amount: Optional[Decimal] = None


class CompleteQuestRequest(BaseModel):
    user_address: Optional[str] = None
    quest_id: Optional[int] = None
    proof_data: Optional[str] = None


# --- Responses ---

class BalanceResponse(BaseModel):
    success: bool = True
    wallet_address: str
    reward_tokens: int
    tokens_minted: int
    last_transaction_at: Optional[datetime] = None


class RewardsSummary(BaseModel):
    stage: Stage
    discount_rate: int
    reward_tokens: int
    tokens_per_quest: int
    next_stage_at: int
    next_stage_tokens: int
    total_rewards_earned: int


class UserResponse(BaseModel):
    success: bool = True
    user: User
    summary: RewardsSummary


class TransactionHistoryResponse(BaseModel):
    success: bool = True
    wallet_address: Optional[str] = None
    transactions: list[RewardTransaction]
    count: int


class SubmissionResponse(BaseModel):
    success: bool = True
    submission: Submission
    transactions: list[RewardTransaction] = Field(default_factory=list)
    message: str


class SubmissionListResponse(BaseModel):
    success: bool = True
    submissions: list[Submission]
    count: int


class RedemptionResponse(BaseModel):
    success: bool = True
    redemption: Redemption
    transaction: Optional[RewardTransaction] = None
    remaining_tokens: Optional[int] = None
    onchain_error: Optional[str] = None
    message: str


class RedemptionListResponse(BaseModel):
    success: bool = True
    redemptions: list[Redemption]
    count: int


class DashboardStats(BaseModel):
    success: bool = True
    total_users: int
    total_tokens_outstanding: int
    total_tokens_minted: int
    pending_submissions: int
    verified_submissions: int
    pending_redemptions: int
    completed_redemptions: int
    cancelled_redemptions: int
