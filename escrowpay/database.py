"""
SQLAlchemy persistence for the status mirror.

One row per job id, never deleted (audit trail even after the ledger deletes
a cancelled job). Status changes are a single conditional UPDATE
(... WHERE job_id = :id AND payment_status = :expected), which gives the
row-level compare-and-set the handlers and the reconciler rely on.

Usage:
     store = SqlStatusStore.from_url(settings.database_url)
     store.create(42, usd_amount)
     store.compare_and_set_status(42, PaymentStatus.NONE, PaymentStatus.DEPOSIT_INITIATED, tx_hash)
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Iterable, List, Optional

from sqlalchemy import BigInteger, Column, DateTime, String, Text, create_engine, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from escrowpay.errors import MirrorRecordNotFound
from escrowpay.mirror import check_transition
from escrowpay.schema import MirrorRecord, PaymentStatus, utcnow

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class EscrowPayment(Base):
    """Mirror row. job_id is stored as text: uint64 does not fit a signed BIGINT."""

    __tablename__ = "escrow_payments"

    job_id = Column(String(20), primary_key=True)
    payment_status = Column(String(32), nullable=False, default=PaymentStatus.NONE.value, index=True)
    tx_hash_deposit = Column(String(66), nullable=True)
    tx_hash_release = Column(String(66), nullable=True)
    tx_hash_refund = Column(String(66), nullable=True)
    usd_amount = Column(BigInteger, nullable=True)
    divergence = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self):
        return f"<EscrowPayment(job_id={self.job_id}, status={self.payment_status})>"


def make_engine(database_url: str) -> Engine:
    """Engine for DATABASE_URL. In-memory SQLite is shared across threads."""
    if database_url.startswith("sqlite") and (":memory:" in database_url or database_url == "sqlite://"):
        return create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True, pool_recycle=1800)


def _aware(ts: Optional[datetime]) -> datetime:
    if ts is None:
        return utcnow()
    return ts if ts.tzinfo is not None else ts.replace(tzinfo=timezone.utc)


def _to_record(row: EscrowPayment) -> MirrorRecord:
    return MirrorRecord(
        job_id=int(row.job_id),
        payment_status=PaymentStatus(row.payment_status),
        tx_hash_deposit=row.tx_hash_deposit,
        tx_hash_release=row.tx_hash_release,
        tx_hash_refund=row.tx_hash_refund,
        usd_amount=row.usd_amount,
        divergence=row.divergence,
        updated_at=_aware(row.updated_at),
    )


class SqlStatusStore:
    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, create_tables: bool = True) -> "SqlStatusStore":
        store = cls(make_engine(database_url))
        if create_tables:
            store.init_db()
        return store

    def init_db(self) -> None:
        """Create tables if missing. Production deployments may manage the schema themselves."""
        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, job_id: int) -> Optional[MirrorRecord]:
        with self.session() as db:
            row = db.get(EscrowPayment, str(job_id))
            return _to_record(row) if row is not None else None

    def create(self, job_id: int, usd_amount: Optional[int] = None) -> MirrorRecord:
        try:
            with self.session() as db:
                row = db.get(EscrowPayment, str(job_id))
                if row is None:
                    row = EscrowPayment(
                        job_id=str(job_id),
                        payment_status=PaymentStatus.NONE.value,
                        usd_amount=usd_amount,
                        updated_at=utcnow(),
                    )
                    db.add(row)
                elif row.usd_amount is None and usd_amount is not None:
                    row.usd_amount = usd_amount
                db.flush()
                return _to_record(row)
        except IntegrityError:
            logger.debug("Lost insert race for job %s; using existing row", job_id)
            existing = self.get(job_id)
            if existing is None:
                raise
            return existing

    def compare_and_set_status(
        self,
        job_id: int,
        expected: PaymentStatus,
        new: PaymentStatus,
        tx_hash: Optional[str] = None,
    ) -> bool:
        check_transition(expected, new)
        values = {"payment_status": new.value, "divergence": None, "updated_at": utcnow()}
        if tx_hash is not None and new.stage is not None:
            values[new.stage.hash_field] = tx_hash
        with self.session() as db:
            result = db.execute(
                update(EscrowPayment)
                .where(EscrowPayment.job_id == str(job_id), EscrowPayment.payment_status == expected.value)
                .values(**values)
            )
            if result.rowcount == 1:
                return True
            if db.get(EscrowPayment, str(job_id)) is None:
                raise MirrorRecordNotFound(f"No status record for job {job_id}")
            return False

    def mark_divergence(self, job_id: int, reason: str) -> None:
        with self.session() as db:
            row = db.get(EscrowPayment, str(job_id))
            if row is None:
                raise MirrorRecordNotFound(f"No status record for job {job_id}")
            if row.divergence != reason:
                row.divergence = reason
                row.updated_at = utcnow()

    def list_by_status(self, statuses: Iterable[PaymentStatus]) -> List[MirrorRecord]:
        wanted = [s.value for s in statuses]
        with self.session() as db:
            rows = db.scalars(select(EscrowPayment).where(EscrowPayment.payment_status.in_(wanted))).all()
            return [_to_record(r) for r in rows]
