from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from typing import Optional

from .config import Settings
from .logging_config import get_logger
from .models import (
    OUTSTANDING_STATUSES,
    OutcomeAction,
    Referral,
    ReferralOutcome,
    ReferralStats,
    ReferralStatus,
    SettlementResult,
)
from .storage import ReferralStore, StorageError

logger = get_logger(__name__)

DEFAULT_REWARD_THRESHOLD = Decimal("100000")
DEFAULT_REWARD_AMOUNT = Decimal("1000")


class ReferralServiceError(Exception):
    pass


class UnauthorizedError(ReferralServiceError):
    pass


class InvalidReferrerError(ReferralServiceError):
    pass


class ReferralFetchError(ReferralServiceError):
    pass


class ReferralRewardService:
    """
    Settles outstanding referrals for one referrer at a time.

    Deposit totals are re-derived from the store on every run, so repeated
    invocations converge on the same state. The only write that must not
    repeat is the reward grant, which the store performs as a single
    status-guarded unit.
    """

    def __init__(
        self,
        store: ReferralStore,
        reward_threshold: Decimal = DEFAULT_REWARD_THRESHOLD,
        reward_amount: Decimal = DEFAULT_REWARD_AMOUNT,
        max_workers: int = 1,
    ):
        if reward_threshold <= 0 or reward_amount <= 0:
            raise ValueError("reward_threshold and reward_amount must be positive")
        self.store = store
        self.reward_threshold = Decimal(reward_threshold)
        self.reward_amount = Decimal(reward_amount)
        self.max_workers = max(1, max_workers)

    @classmethod
    def from_settings(cls, settings: Settings, store: ReferralStore) -> "ReferralRewardService":
        return cls(
            store,
            reward_threshold=settings.reward_threshold,
            reward_amount=settings.reward_amount,
            max_workers=settings.settlement_workers,
        )

    def settle(self, referrer_id: Optional[str]) -> SettlementResult:
        if not referrer_id or not str(referrer_id).strip():
            raise InvalidReferrerError("Missing referrer_id")

        try:
            referrals = self.store.list_referrals(referrer_id, OUTSTANDING_STATUSES)
        except StorageError as e:
            logger.error("referral_fetch_failed", referrer_id=referrer_id, error=str(e))
            raise ReferralFetchError(str(e)) from e

        if self.max_workers > 1 and len(referrals) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                outcomes = list(executor.map(self._settle_referral, referrals))
        else:
            outcomes = [self._settle_referral(r) for r in referrals]

        result = SettlementResult(referrer_id=referrer_id, outcomes=outcomes)
        logger.info(
            "referrer_settled",
            referrer_id=referrer_id,
            referrals=len(outcomes),
            rewarded=result.rewards_given,
            qualified=result.qualified,
            failed=len(result.failed_referrals),
        )
        return result

    def stats(self, referrer_id: Optional[str]) -> ReferralStats:
        if not referrer_id or not str(referrer_id).strip():
            raise InvalidReferrerError("Missing referrer_id")
        return self.store.referral_stats(referrer_id)

    def decide(self, status: ReferralStatus, deposit_total: Decimal) -> OutcomeAction:
        if deposit_total >= self.reward_threshold and status != ReferralStatus.REWARDED:
            return OutcomeAction.REWARDED
        if deposit_total > 0 and status == ReferralStatus.PENDING:
            return OutcomeAction.QUALIFIED
        return OutcomeAction.UNCHANGED

    def _settle_referral(self, referral: Referral) -> ReferralOutcome:
        outcome = ReferralOutcome(
            referral_id=referral.id,
            previous_status=referral.status,
            action=OutcomeAction.UNCHANGED,
        )
        try:
            total = self.store.sum_completed_deposits(referral.referred_id)
            outcome.deposit_total = total
            action = self.decide(referral.status, total)

            if action == OutcomeAction.REWARDED:
                applied = self.store.grant_reward(referral, self.reward_amount)
            elif action == OutcomeAction.QUALIFIED:
                applied = self.store.update_referral_status(
                    referral.id, ReferralStatus.QUALIFIED, expected_status=ReferralStatus.PENDING
                )
            else:
                return outcome
        except StorageError as e:
            logger.exception("referral_settle_failed", referral_id=referral.id, error=str(e))
            outcome.action = OutcomeAction.FAILED
            outcome.error = str(e)
            return outcome

        if applied:
            outcome.action = action
            logger.info(
                "referral_advanced",
                referral_id=referral.id,
                referrer_id=referral.referrer_id,
                action=action.value,
                deposit_total=str(total),
            )
        else:
            # Another invocation moved the referral first
            outcome.action = OutcomeAction.SKIPPED
            logger.info("referral_already_advanced", referral_id=referral.id, read_status=referral.status.value)
        return outcome
