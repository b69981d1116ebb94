import math
import random
import string
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .models import RewardsSummary, Stage, User


@dataclass(frozen=True)
class StageRule:
    stage: Stage
    min_points: int
    discount_rate: int
    tokens_per_quest: int
    upgrade_bonus: int


STAGE_RULES = (
    StageRule(Stage.SEEDLING, min_points=0, discount_rate=10, tokens_per_quest=1, upgrade_bonus=0),
    StageRule(Stage.SPROUT, min_points=100, discount_rate=15, tokens_per_quest=2, upgrade_bonus=10),
    StageRule(Stage.TREE, min_points=300, discount_rate=20, tokens_per_quest=3, upgrade_bonus=20),
    StageRule(Stage.FOREST, min_points=600, discount_rate=25, tokens_per_quest=5, upgrade_bonus=50),
)

STAGE_ORDER = [rule.stage for rule in STAGE_RULES]

POINTS_PER_LEVEL = 50
HIGH_IMPACT_POINTS = 50


def get_rule(stage: Stage) -> StageRule:
    for rule in STAGE_RULES:
        if rule.stage == stage:
            return rule
    return STAGE_RULES[0]


def next_rule(stage: Stage) -> Optional[StageRule]:
    index = STAGE_ORDER.index(stage)
    return STAGE_RULES[index + 1] if index + 1 < len(STAGE_RULES) else None


def calculate_stage(points: int) -> Stage:
    stage = Stage.SEEDLING
    for rule in STAGE_RULES:
        if points >= rule.min_points:
            stage = rule.stage
    return stage


def calculate_level(points: int) -> int:
    return points // POINTS_PER_LEVEL + 1


def get_discount_rate(stage: Stage) -> int:
    return get_rule(stage).discount_rate


def stage_allows(stage: Stage, required: Stage) -> bool:
    return STAGE_ORDER.index(stage) >= STAGE_ORDER.index(required)


def quest_reward_tokens(quest_points: int, stage: Stage) -> int:
    """Base tokens for the stage plus one token per 50 points on high-impact quests."""
    bonus = quest_points // HIGH_IMPACT_POINTS if quest_points >= HIGH_IMPACT_POINTS else 0
    return get_rule(stage).tokens_per_quest + bonus


def stage_upgrade_bonus(previous: Stage, new: Stage) -> int:
    if previous == new:
        return 0
    return get_rule(new).upgrade_bonus


def discount_amount(purchase_amount: Decimal, discount_rate: int) -> Decimal:
    amount = Decimal(purchase_amount) * discount_rate / 100
    return amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def final_amount(purchase_amount: Decimal, discount_rate: int) -> Decimal:
    return Decimal(purchase_amount) - discount_amount(purchase_amount, discount_rate)


def tokens_for_purchase(purchase_amount: Decimal, discount_rate: int) -> int:
    # one token covers one unit of discount
    return math.ceil(Decimal(purchase_amount) * discount_rate / 100)


def _base36(number: int) -> str:
    digits = string.digits + string.ascii_lowercase
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


def generate_redemption_code(now_ms: Optional[int] = None) -> str:
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=6))
    return f"RDM-{_base36(now_ms)}-{suffix}"


def rewards_summary(user: User) -> RewardsSummary:
    rule = get_rule(user.current_stage)
    upcoming = next_rule(user.current_stage)
    return RewardsSummary(
        stage=rule.stage,
        discount_rate=rule.discount_rate,
        reward_tokens=user.reward_tokens,
        tokens_per_quest=rule.tokens_per_quest,
        next_stage_at=upcoming.min_points if upcoming else user.total_impact_points,
        next_stage_tokens=upcoming.upgrade_bonus if upcoming else 0,
        total_rewards_earned=user.total_rewards_earned,
    )
