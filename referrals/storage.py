"""
Store collaborators consumed by the settlement job.

`ReferralStore` is the contract; `InMemoryStorage` keeps everything in
process-local dicts behind a single lock and is what tests and local runs use.
`referrals.sql_storage.SqlReferralStore` is the database-backed counterpart.
"""

import threading
from collections.abc import Iterable
from decimal import Decimal
from typing import Optional, Protocol
from uuid import uuid4

from .models import (
    Deposit,
    DepositStatus,
    OUTSTANDING_STATUSES,
    Referral,
    ReferralStats,
    ReferralStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    reward_reference,
)


class StorageError(Exception):
    pass


class InvalidStatusTransitionError(StorageError):
    pass


class ReferralStore(Protocol):
    def list_referrals(self, referrer_id: str, statuses: Iterable[ReferralStatus]) -> list[Referral]: ...

    def sum_completed_deposits(self, user_id: str) -> Decimal: ...

    def increment_wallet_balance(self, user_id: str, amount: Decimal) -> None: ...

    def insert_transaction(self, transaction: Transaction) -> None: ...

    def update_referral_status(
        self,
        referral_id: str,
        new_status: ReferralStatus,
        expected_status: Optional[ReferralStatus] = None,
    ) -> bool: ...

    def grant_reward(self, referral: Referral, amount: Decimal) -> bool: ...

    def list_outstanding_referrers(self) -> list[str]: ...

    def referral_stats(self, referrer_id: str) -> ReferralStats: ...


def reward_transaction(referral: Referral, amount: Decimal) -> Transaction:
    return Transaction(
        user_id=referral.referrer_id,
        type=TransactionType.REWARD,
        amount=amount,
        status=TransactionStatus.COMPLETED,
        reference=reward_reference(referral.id),
    )


class InMemoryStorage:
    def __init__(self):
        self.referrals: dict[str, dict] = {}
        self.deposits: list[dict] = []
        self.transactions: list[dict] = []
        self.wallets: dict[str, Decimal] = {}
        self.reference_index: set[str] = set()
        self._lock = threading.RLock()

    def add_referral(
        self,
        referrer_id: str,
        referred_id: str,
        status: ReferralStatus = ReferralStatus.PENDING,
        referral_id: Optional[str] = None,
    ) -> Referral:
        referral = Referral(
            id=referral_id or str(uuid4()),
            referrer_id=referrer_id,
            referred_id=referred_id,
            status=status,
        )
        with self._lock:
            self.referrals[referral.id] = referral.model_dump()
        return referral

    def add_deposit(self, user_id: str, amount, status: DepositStatus = DepositStatus.COMPLETED) -> Deposit:
        deposit = Deposit(user_id=user_id, amount=Decimal(str(amount)), status=status)
        with self._lock:
            self.deposits.append(deposit.model_dump())
        return deposit

    def get_referral(self, referral_id: str) -> Optional[Referral]:
        data = self.referrals.get(referral_id)
        return Referral(**data) if data else None

    def get_wallet_balance(self, user_id: str) -> Decimal:
        return self.wallets.get(user_id, Decimal("0"))

    def list_transactions(self, user_id: str) -> list[Transaction]:
        return [Transaction(**t) for t in self.transactions if t["user_id"] == user_id]

    def list_referrals(self, referrer_id: str, statuses: Iterable[ReferralStatus]) -> list[Referral]:
        wanted = set(statuses)
        with self._lock:
            return [
                Referral(**r) for r in self.referrals.values()
                if r["referrer_id"] == referrer_id and r["status"] in wanted
            ]

    def sum_completed_deposits(self, user_id: str) -> Decimal:
        with self._lock:
            return sum(
                (d["amount"] for d in self.deposits
                 if d["user_id"] == user_id and d["status"] == DepositStatus.COMPLETED),
                Decimal("0"),
            )

    def increment_wallet_balance(self, user_id: str, amount: Decimal) -> None:
        with self._lock:
            self.wallets[user_id] = self.wallets.get(user_id, Decimal("0")) + amount

    def insert_transaction(self, transaction: Transaction) -> None:
        with self._lock:
            if transaction.reference is not None:
                if transaction.reference in self.reference_index:
                    raise StorageError(f"Transaction {transaction.reference} already recorded")
                self.reference_index.add(transaction.reference)
            self.transactions.append(transaction.model_dump())

    def update_referral_status(
        self,
        referral_id: str,
        new_status: ReferralStatus,
        expected_status: Optional[ReferralStatus] = None,
    ) -> bool:
        with self._lock:
            data = self.referrals.get(referral_id)
            if data is None:
                raise StorageError(f"Referral {referral_id} not found")
            current = data["status"]
            if expected_status is not None and current != expected_status:
                return False
            if not current.can_advance_to(new_status):
                raise InvalidStatusTransitionError(
                    f"Cannot move referral {referral_id} from {current.value} to {new_status.value}"
                )
            data["status"] = new_status
            return True

    def grant_reward(self, referral: Referral, amount: Decimal) -> bool:
        transaction = reward_transaction(referral, amount)
        with self._lock:
            data = self.referrals.get(referral.id)
            if data is None:
                raise StorageError(f"Referral {referral.id} not found")
            if data["status"] != referral.status or data["status"] == ReferralStatus.REWARDED:
                return False
            if transaction.reference in self.reference_index:
                return False
            self.insert_transaction(transaction)
            self.increment_wallet_balance(referral.referrer_id, amount)
            data["status"] = ReferralStatus.REWARDED
            return True

    def list_outstanding_referrers(self) -> list[str]:
        with self._lock:
            referrers = {
                r["referrer_id"] for r in self.referrals.values()
                if r["referrer_id"] and r["status"] in OUTSTANDING_STATUSES
            }
        return sorted(referrers)

    def referral_stats(self, referrer_id: str) -> ReferralStats:
        with self._lock:
            owned = [r for r in self.referrals.values() if r["referrer_id"] == referrer_id]
            earned = sum(
                (t["amount"] for t in self.transactions
                 if t["user_id"] == referrer_id
                 and t["type"] == TransactionType.REWARD
                 and t["status"] == TransactionStatus.COMPLETED),
                Decimal("0"),
            )
        return ReferralStats(
            referrer_id=referrer_id,
            invited_count=len(owned),
            rewarded_count=sum(1 for r in owned if r["status"] == ReferralStatus.REWARDED),
            total_earned=earned,
        )
