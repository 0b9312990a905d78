"""SQLAlchemy-backed referral store."""

from collections.abc import Iterable
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Generator, Optional
from uuid import uuid4

from sqlalchemy import DateTime, Insert, Numeric, String, create_engine, func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .logging_config import get_logger
from .models import (
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
from .storage import InvalidStatusTransitionError, StorageError, reward_transaction

logger = get_logger(__name__)

MONEY = Numeric(18, 2)


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid4())


class ReferralRecord(Base):
    __tablename__ = "referrals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    referrer_id: Mapped[Optional[str]] = mapped_column(String(64), index=True, nullable=True)
    referred_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ReferralStatus.PENDING.value, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)

    def __repr__(self) -> str:
        return f"<ReferralRecord(id={self.id}, referrer={self.referrer_id}, status='{self.status}')>"


class DepositRecord(Base):
    __tablename__ = "deposits"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=DepositStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


class TransactionRecord(Base):
    """Append-only ledger row; `reference` guards one reward per referral."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = mapped_column(MONEY, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(128), unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), nullable=False)


class WalletRecord(Base):
    __tablename__ = "wallets"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(MONEY, nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now(), nullable=False
    )


class Database:
    """Engine and session factory for one database URL."""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        engine_kwargs = {"echo": echo, "pool_pre_ping": True}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in database_url or database_url.rstrip("/") == "sqlite:":
                engine_kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **engine_kwargs)
        self.SessionLocal = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

    def create_tables(self) -> None:
        Base.metadata.create_all(bind=self.engine)
        logger.info("tables_created", url=self.engine.url.render_as_string(hide_password=True))

    def drop_tables(self) -> None:
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Provide a transactional scope; commits on success, rolls back on error."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


def wallet_upsert(dialect_name: str, user_id: str, amount: Decimal) -> Optional[Insert]:
    """Single-statement wallet credit, or None when the dialect has no ON CONFLICT."""
    if dialect_name == "postgresql":
        stmt = postgresql.insert(WalletRecord)
    elif dialect_name == "sqlite":
        stmt = sqlite.insert(WalletRecord)
    else:
        return None
    return stmt.values(user_id=user_id, balance=amount).on_conflict_do_update(
        index_elements=[WalletRecord.user_id],
        set_={"balance": WalletRecord.balance + amount, "updated_at": func.now()},
    )


def _to_referral(record: ReferralRecord) -> Referral:
    return Referral(
        id=record.id,
        referrer_id=record.referrer_id,
        referred_id=record.referred_id,
        status=ReferralStatus(record.status),
    )


class SqlReferralStore:
    def __init__(self, database: Database):
        self.database = database

    @classmethod
    def from_url(cls, database_url: str, create_tables: bool = False) -> "SqlReferralStore":
        database = Database(database_url)
        if create_tables:
            database.create_tables()
        return cls(database)

    @contextmanager
    def _session(self, operation: str) -> Generator[Session, None, None]:
        try:
            with self.database.session() as session:
                yield session
        except SQLAlchemyError as e:
            raise StorageError(f"{operation} failed: {e}") from e

    def list_referrals(self, referrer_id: str, statuses: Iterable[ReferralStatus]) -> list[Referral]:
        wanted = [ReferralStatus(s).value for s in statuses]
        with self._session("list_referrals") as session:
            records = session.scalars(
                select(ReferralRecord)
                .where(ReferralRecord.referrer_id == referrer_id, ReferralRecord.status.in_(wanted))
                .order_by(ReferralRecord.created_at)
            )
            return [_to_referral(r) for r in records]

    def sum_completed_deposits(self, user_id: str) -> Decimal:
        with self._session("sum_completed_deposits") as session:
            total = session.scalar(
                select(func.coalesce(func.sum(DepositRecord.amount), 0))
                .where(DepositRecord.user_id == user_id, DepositRecord.status == DepositStatus.COMPLETED.value)
            )
        return Decimal(str(total or 0))

    def increment_wallet_balance(self, user_id: str, amount: Decimal) -> None:
        with self._session("increment_wallet_balance") as session:
            self._increment_wallet(session, user_id, amount)

    def insert_transaction(self, transaction: Transaction) -> None:
        with self._session("insert_transaction") as session:
            self._add_transaction(session, transaction)

    def update_referral_status(
        self,
        referral_id: str,
        new_status: ReferralStatus,
        expected_status: Optional[ReferralStatus] = None,
    ) -> bool:
        if expected_status is not None:
            if not expected_status.can_advance_to(new_status):
                raise InvalidStatusTransitionError(
                    f"Cannot move referral {referral_id} from {expected_status.value} to {new_status.value}"
                )
            allowed = [expected_status.value]
        else:
            allowed = [s.value for s in ReferralStatus if s.can_advance_to(new_status)]

        with self._session("update_referral_status") as session:
            result = session.execute(
                update(ReferralRecord)
                .where(ReferralRecord.id == referral_id, ReferralRecord.status.in_(allowed))
                .values(status=new_status.value)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount:
                return True
            current = session.scalar(select(ReferralRecord.status).where(ReferralRecord.id == referral_id))

        if current is None:
            raise StorageError(f"Referral {referral_id} not found")
        if expected_status is not None:
            return False
        raise InvalidStatusTransitionError(
            f"Cannot move referral {referral_id} from {current} to {new_status.value}"
        )

    def grant_reward(self, referral: Referral, amount: Decimal) -> bool:
        # Status swap, ledger row and wallet credit commit or roll back together.
        reference = reward_reference(referral.id)
        try:
            with self.database.session() as session:
                result = session.execute(
                    update(ReferralRecord)
                    .where(
                        ReferralRecord.id == referral.id,
                        ReferralRecord.status == referral.status.value,
                        ReferralRecord.status != ReferralStatus.REWARDED.value,
                    )
                    .values(status=ReferralStatus.REWARDED.value)
                    .execution_options(synchronize_session=False)
                )
                if not result.rowcount:
                    return False
                self._add_transaction(session, reward_transaction(referral, amount))
                self._increment_wallet(session, referral.referrer_id, amount)
        except IntegrityError as e:
            if self._reference_exists(reference):
                logger.info("reward_already_recorded", referral_id=referral.id, reference=reference)
                return False
            raise StorageError(f"grant_reward failed: {e}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"grant_reward failed: {e}") from e
        return True

    def list_outstanding_referrers(self) -> list[str]:
        outstanding = [s.value for s in OUTSTANDING_STATUSES]
        with self._session("list_outstanding_referrers") as session:
            return list(session.scalars(
                select(ReferralRecord.referrer_id)
                .where(ReferralRecord.status.in_(outstanding), ReferralRecord.referrer_id.is_not(None))
                .distinct()
                .order_by(ReferralRecord.referrer_id)
            ))

    def referral_stats(self, referrer_id: str) -> ReferralStats:
        with self._session("referral_stats") as session:
            invited = session.scalar(
                select(func.count()).select_from(ReferralRecord).where(ReferralRecord.referrer_id == referrer_id)
            )
            rewarded = session.scalar(
                select(func.count()).select_from(ReferralRecord).where(
                    ReferralRecord.referrer_id == referrer_id,
                    ReferralRecord.status == ReferralStatus.REWARDED.value,
                )
            )
            earned = session.scalar(
                select(func.coalesce(func.sum(TransactionRecord.amount), 0)).where(
                    TransactionRecord.user_id == referrer_id,
                    TransactionRecord.type == TransactionType.REWARD.value,
                    TransactionRecord.status == TransactionStatus.COMPLETED.value,
                )
            )
        return ReferralStats(
            referrer_id=referrer_id,
            invited_count=invited or 0,
            rewarded_count=rewarded or 0,
            total_earned=Decimal(str(earned or 0)),
        )

    def get_wallet_balance(self, user_id: str) -> Decimal:
        with self._session("get_wallet_balance") as session:
            balance = session.scalar(select(WalletRecord.balance).where(WalletRecord.user_id == user_id))
        return Decimal(str(balance or 0))

    def _add_transaction(self, session: Session, transaction: Transaction) -> None:
        session.add(TransactionRecord(
            user_id=transaction.user_id,
            type=transaction.type.value,
            amount=transaction.amount,
            status=transaction.status.value,
            reference=transaction.reference,
        ))
        session.flush()

    def _reference_exists(self, reference: str) -> bool:
        with self._session("grant_reward") as session:
            found = session.scalar(select(TransactionRecord.id).where(TransactionRecord.reference == reference))
        return found is not None

    def _increment_wallet(self, session: Session, user_id: str, amount: Decimal) -> None:
        stmt = wallet_upsert(session.get_bind().dialect.name, user_id, amount)
        if stmt is not None:
            session.execute(stmt)
            return
        result = session.execute(
            update(WalletRecord)
            .where(WalletRecord.user_id == user_id)
            .values(balance=WalletRecord.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            session.add(WalletRecord(user_id=user_id, balance=amount))
            session.flush()
