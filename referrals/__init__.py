"""
Referral Reward Settlement

This package provides:
- Settlement of pending/qualified referrals against completed deposits
- Status-guarded, at-most-once reward grants (wallet credit + ledger row)
- In-memory and SQLAlchemy-backed stores
- A recurring cycle that settles every referrer with outstanding referrals
"""

from .models import (
    OutcomeAction,
    Referral,
    ReferralOutcome,
    ReferralStats,
    ReferralStatus,
    SettlementResult,
    Transaction,
    TransactionType,
)
from .service import ReferralRewardService
from .storage import InMemoryStorage, ReferralStore, StorageError

__all__ = [
    "OutcomeAction",
    "Referral",
    "ReferralOutcome",
    "ReferralStats",
    "ReferralStatus",
    "SettlementResult",
    "Transaction",
    "TransactionType",
    "ReferralRewardService",
    "InMemoryStorage",
    "ReferralStore",
    "StorageError",
]
