import logging
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from . import tiers
from .cache import TTLCache
from .errors import ExternalLedgerError, NotFound, ValidationError
from .events import EventBus, Topics
from .models import (
    CertificationStatus,
    CreateSubmissionRequest,
    ReviewSubmissionRequest,
    RewardTransaction,
    Submission,
    SubmissionQuery,
    SubmissionResponse,
    TransactionKind,
)
from .store import LedgerStore, utcnow

if TYPE_CHECKING:
    from oracle.bridge import OracleBridge

logger = logging.getLogger(__name__)


class QuestVerificationService:
    """
    Submission intake and admin review.

    The first approval of a submission awards the quest's impact points and
    reward tokens; later approvals are no-ops. When an oracle bridge is
    available the completion is also certified on the external ledger. A failed
    certification leaves the off-chain award in place and is recorded on the
    submission so it can be retried.
    """

    def __init__(
        self,
        store: LedgerStore,
        cache: Optional[TTLCache] = None,
        bus: Optional[EventBus] = None,
        bridge: Optional["OracleBridge"] = None,
    ):
        self.store = store
        self.cache = cache if cache is not None else TTLCache()
        self.bus = bus if bus is not None else EventBus()
        self.bridge = bridge

    @property
    def storage(self):
        return self.store.storage

    def create_submission(self, request: CreateSubmissionRequest) -> SubmissionResponse:
        quest = self.store.get_quest(request.quest_id)
        if not quest.is_active:
            raise ValidationError(f"Quest {quest.id} is not active")
        self.store.get_or_create_user(request.wallet_address)

        submission = Submission(
            id=str(uuid4()),
            wallet_address=request.wallet_address,
            quest_id=quest.id,
            proof_reference=request.proof_reference,
            submitted_at=utcnow(),
        )
        self.storage.submissions[submission.id] = submission.model_dump()

        self.cache.invalidate_tag("submissions", "dashboard")
        self.bus.publish(Topics.SUBMISSION_CREATED, {
            "wallet_address": submission.wallet_address,
            "submission": submission.model_dump(mode="json"),
        })
        return SubmissionResponse(submission=submission, message="Submission received")

    def get_submission(self, submission_id: str) -> Submission:
        self.storage.ensure_available()
        data = self.storage.submissions.get(submission_id)
        if not data:
            raise NotFound(f"Submission {submission_id} not found")
        return Submission(**data)

    def list_submissions(self, query: SubmissionQuery) -> list[Submission]:
        self.storage.ensure_available()
        submissions = [Submission(**s) for s in list(self.storage.submissions.values())]
        if query.wallet_address:
            submissions = [s for s in submissions if s.wallet_address == query.wallet_address]
        if query.verified is not None:
            submissions = [s for s in submissions if s.verified == query.verified]
        submissions.reverse()
        return submissions[:query.limit]

    def review_submission(self, submission_id: str, request: ReviewSubmissionRequest) -> SubmissionResponse:
        submission = self.get_submission(submission_id)
        quest = self.store.get_quest(submission.quest_id)
        awarded: list[RewardTransaction] = []

        with self.store.user_lock(submission.wallet_address) as address:
            data = self.get_submission(submission_id).model_dump()
            data["verified"] = request.verified
            data["reviewed_at"] = utcnow()
            if request.admin_notes:
                data["admin_notes"] = request.admin_notes

            first_approval = request.verified and data["impact_points_earned"] == 0
            if first_approval:
                awarded = self._award(address, submission_id, quest.id, quest.title, quest.impact_points)
                data["impact_points_earned"] = quest.impact_points
                data["tokens_awarded"] = sum(t.amount for t in awarded)

            self.storage.submissions[submission_id] = data

        if first_approval:
            logger.info("Submission %s approved, %d points awarded to %s", submission_id, quest.impact_points, address)
            if self.bridge is not None and quest.onchain_quest_id is not None:
                data = self._certify(submission_id, address, quest.onchain_quest_id, submission.proof_reference)

        result = Submission(**data)
        self.cache.invalidate_tag("submissions", "users", "transactions", "dashboard")
        self.bus.publish(Topics.SUBMISSION_VERIFIED, {
            "wallet_address": address,
            "submission": result.model_dump(mode="json"),
            "awarded": first_approval,
        })
        if first_approval:
            self.bus.publish(Topics.USER_UPDATED, self.store.get_user(address).model_dump(mode="json"))
            self.bus.publish(Topics.QUEST_COMPLETED, {"wallet_address": address, "quest_id": quest.id})

        if not request.verified:
            message = "Submission rejected"
        elif first_approval:
            message = "Submission approved"
        else:
            message = "Submission already approved, no additional reward"
        return SubmissionResponse(submission=result, transactions=awarded, message=message)

    def retry_certification(self, submission_id: str) -> Submission:
        submission = self.get_submission(submission_id)
        if not submission.verified or submission.impact_points_earned == 0:
            raise ValidationError("Only approved submissions can be certified")
        if submission.certification_status == CertificationStatus.CERTIFIED:
            return submission
        if self.bridge is None:
            raise ValidationError("Oracle service not configured")
        quest = self.store.get_quest(submission.quest_id)
        if quest.onchain_quest_id is None:
            raise ValidationError(f"Quest {quest.id} has no on-chain counterpart")
        return Submission(**self._certify(submission_id, submission.wallet_address, quest.onchain_quest_id, submission.proof_reference))

    def _award(self, address: str, submission_id: str, quest_id: str, title: str, points: int) -> list[RewardTransaction]:
        stage_before = self.store.get_user(address).current_stage
        tokens = tiers.quest_reward_tokens(points, stage_before)
        previous, stage = self.store.add_impact_points(address, points)

        awarded = [
            self.store.credit(
                address,
                tokens,
                TransactionKind.QUEST_REWARD,
                f"Completed quest: {title}",
                reference_id=submission_id,
                metadata={"quest_id": quest_id, "impact_points": points},
            )
        ]
        bonus = tiers.stage_upgrade_bonus(previous, stage)
        if bonus:
            awarded.append(
                self.store.credit(
                    address,
                    bonus,
                    TransactionKind.ADJUSTMENT,
                    f"Stage upgrade bonus: {previous.value} -> {stage.value}",
                    reference_id=submission_id,
                    metadata={"stage": stage.value},
                )
            )
        return awarded

    def _certify(self, submission_id: str, address: str, onchain_quest_id: int, proof: str) -> dict:
        try:
            result = self.bridge.certify_quest_completion(address, onchain_quest_id, proof)
        except ExternalLedgerError as e:
            logger.error("Certification failed for submission %s (%s): %s", submission_id, address, e.message)
            changes = {"certification_status": CertificationStatus.FAILED}
        else:
            changes = {
                "certification_status": CertificationStatus.CERTIFIED,
                "proof_hash": result.proof_hash,
                "certification_tx": result.transaction_hash,
            }

        # the review may have changed while the bridge call was in flight
        with self.store.user_lock(address):
            data = self.get_submission(submission_id).model_dump()
            data.update(changes)
            self.storage.submissions[submission_id] = data
        return data
