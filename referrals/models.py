from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict


class ReferralStatus(str, Enum):
    PENDING = "pending"
    QUALIFIED = "qualified"
    REWARDED = "rewarded"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)

    def can_advance_to(self, new_status: "ReferralStatus") -> bool:
        return new_status.rank > self.rank


_STATUS_ORDER = [ReferralStatus.PENDING, ReferralStatus.QUALIFIED, ReferralStatus.REWARDED]

OUTSTANDING_STATUSES = (ReferralStatus.PENDING, ReferralStatus.QUALIFIED)


class DepositStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class TransactionType(str, Enum):
    REWARD = "reward"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class OutcomeAction(str, Enum):
    REWARDED = "rewarded"
    QUALIFIED = "qualified"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    FAILED = "failed"


class Referral(BaseModel):
    id: str
    referrer_id: str
    referred_id: str
    status: ReferralStatus = ReferralStatus.PENDING

    model_config = ConfigDict(from_attributes=True)


class Deposit(BaseModel):
    user_id: str
    amount: Decimal = Field(..., ge=0)
    status: DepositStatus = DepositStatus.COMPLETED

    model_config = ConfigDict(from_attributes=True)


class Transaction(BaseModel):
    user_id: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus = TransactionStatus.COMPLETED
    reference: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


def reward_reference(referral_id: str) -> str:
    return f"referral-reward:{referral_id}"


class ReferralOutcome(BaseModel):
    referral_id: str
    previous_status: ReferralStatus
    action: OutcomeAction
    deposit_total: Optional[Decimal] = None
    error: Optional[str] = None


class SettlementResult(BaseModel):
    referrer_id: str
    outcomes: list[ReferralOutcome] = Field(default_factory=list)

    @property
    def rewards_given(self) -> int:
        return self._count(OutcomeAction.REWARDED)

    @property
    def qualified(self) -> int:
        return self._count(OutcomeAction.QUALIFIED)

    @property
    def failed_referrals(self) -> list[str]:
        return [o.referral_id for o in self.outcomes if o.action == OutcomeAction.FAILED]

    def _count(self, action: OutcomeAction) -> int:
        return sum(1 for o in self.outcomes if o.action == action)


class RewardReferralsRequest(BaseModel):
    referrer_id: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"referrer_id": "550e8400-e29b-41d4-a716-446655440000"}
    })


class RewardReferralsResponse(BaseModel):
    rewards_given: int = Field(..., alias="rewardsGiven")
    failed_referrals: list[str] = Field(default_factory=list, alias="failedReferrals")

    model_config = ConfigDict(populate_by_name=True)


class ReferralStats(BaseModel):
    referrer_id: str = Field(..., alias="referrerId")
    invited_count: int = Field(0, alias="invitedCount")
    rewarded_count: int = Field(0, alias="rewardedCount")
    total_earned: Decimal = Field(Decimal("0"), alias="totalEarned")

    model_config = ConfigDict(populate_by_name=True)


class ErrorResponse(BaseModel):
    error: str
