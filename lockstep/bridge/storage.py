"""
Bridge Storage

Durable state for the off-ledger pipeline. Every component coordinates only
through this store; nothing held in memory has to survive a crash.

Tables:

    lock_records          one row per observed lock, unique per (chain, lock_hash)
    unlock_records        unlocks observed on a destination ledger
    merkle_proofs         one proof per lock
    block_commitments     one row per (block, source chain, destination chain)
    relayer_transactions  every outbound transaction, pending -> confirmed/failed
    failed_transactions   terminal failures kept for replay
    indexer_checkpoints   last fully processed block per chain
    work_jobs             durable work queue (commitment builds, root submissions)

Lock status moves forward only:

    pending ──▶ proof_generated ──▶ root_submitted ──▶ unlocked
       │               │                  │               ▲
       └───────────────┴──────────────────┴──▶ failed ────┘

Any attempt outside that table is refused, logged and reported to the
``on_invalid_transition`` callback.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Set

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from lockstep.bridge.observability import BridgeLayer, get_logger
from lockstep.merkle import normalize_hash


def utcnow() -> datetime:
    """Naive UTC timestamp, the only form stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# ERRORS
# =============================================================================

class StorageError(Exception):
    """Base class for storage errors."""


class LockNotFound(StorageError):
    def __init__(self, lock_hash: str):
        self.lock_hash = lock_hash
        super().__init__(f"lock record not found: {lock_hash}")


class ProofNotFound(StorageError):
    def __init__(self, lock_hash: str):
        self.lock_hash = lock_hash
        super().__init__(f"proof not found: {lock_hash}")


class CommitmentConflict(StorageError):
    """A different root was computed for a commitment that is already submitted."""

    def __init__(self, block_number: int, source_chain: str, stored: str, computed: str):
        self.block_number = block_number
        self.source_chain = source_chain
        self.stored = stored
        self.computed = computed
        super().__init__(
            f"block {block_number} on {source_chain}: submitted root {stored} != computed {computed}"
        )


class InvalidStatusTransition(StorageError):
    def __init__(self, lock_hash: str, current: "LockStatus", target: "LockStatus"):
        self.lock_hash = lock_hash
        self.current = current
        self.target = target
        super().__init__(f"{lock_hash}: {current.value} -> {target.value} not allowed")


# =============================================================================
# STATUS ENUMERATIONS
# =============================================================================

class LockStatus(Enum):
    """Lifecycle of a lock record."""
    PENDING = "pending"
    PROOF_GENERATED = "proof_generated"
    ROOT_SUBMITTED = "root_submitted"
    UNLOCKED = "unlocked"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_transition_to(self, target: "LockStatus") -> bool:
        return target in VALID_TRANSITIONS[self]

    def is_terminal(self) -> bool:
        return self is LockStatus.UNLOCKED


_STATUS_RANK = {
    LockStatus.PENDING: 0,
    LockStatus.PROOF_GENERATED: 1,
    LockStatus.ROOT_SUBMITTED: 2,
    LockStatus.UNLOCKED: 3,
    LockStatus.FAILED: 2,
}

VALID_TRANSITIONS: Dict[LockStatus, Set[LockStatus]] = {
    LockStatus.PENDING: {
        LockStatus.PROOF_GENERATED, LockStatus.ROOT_SUBMITTED, LockStatus.UNLOCKED, LockStatus.FAILED,
    },
    LockStatus.PROOF_GENERATED: {LockStatus.ROOT_SUBMITTED, LockStatus.UNLOCKED, LockStatus.FAILED},
    LockStatus.ROOT_SUBMITTED: {LockStatus.UNLOCKED, LockStatus.FAILED},
    # On-ledger truth wins: an observed unlock closes even a quarantined record.
    LockStatus.FAILED: {LockStatus.UNLOCKED},
    LockStatus.UNLOCKED: set(),
}


class TxStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class JobStatus(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# ORM MODELS
# =============================================================================

class Base(DeclarativeBase):
    pass


class LockRecordRow(Base):
    __tablename__ = "lock_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    # uint256 does not fit any SQL integer type
    asset_id: Mapped[str] = mapped_column(String(78), nullable=False, index=True)
    source_owner: Mapped[str] = mapped_column(String(42), nullable=False)
    recipient: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    lock_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(20), default=LockStatus.PENDING.value, index=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("chain", "lock_hash", name="uq_lock_chain_hash"),)


class UnlockRecordRow(Base):
    __tablename__ = "unlock_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(32), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(78), nullable=False, index=True)
    recipient: Mapped[str] = mapped_column(String(42), nullable=False)
    lock_hash: Mapped[str] = mapped_column(String(66), nullable=False, index=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    gas_used: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (UniqueConstraint("chain", "lock_hash", name="uq_unlock_chain_hash"),)


class ProofRow(Base):
    __tablename__ = "merkle_proofs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    chain: Mapped[str] = mapped_column(String(32), nullable=False)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    leaf: Mapped[str] = mapped_column(String(66), nullable=False)
    root: Mapped[str] = mapped_column(String(66), nullable=False)
    proof: Mapped[List[str]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class BlockCommitmentRow(Base):
    __tablename__ = "block_commitments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    source_chain: Mapped[str] = mapped_column(String(32), nullable=False)
    destination_chain: Mapped[str] = mapped_column(String(32), nullable=False)
    root: Mapped[str] = mapped_column(String(66), nullable=False)
    lock_count: Mapped[int] = mapped_column(Integer, nullable=False)
    submitted: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    submission_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    submitted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("block_number", "source_chain", "destination_chain", name="uq_commitment_key"),
    )


class RelayerTransactionRow(Base):
    __tablename__ = "relayer_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain: Mapped[str] = mapped_column(String(32), nullable=False)
    tx_type: Mapped[str] = mapped_column(String(32), nullable=False)
    tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(16), default=TxStatus.PENDING.value, index=True)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    block_number: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    gas_used: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)


class FailedTransactionRow(Base):
    __tablename__ = "failed_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tx_type: Mapped[str] = mapped_column(String(32), nullable=False)
    chain: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    error: Mapped[str] = mapped_column(Text, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class IndexerCheckpointRow(Base):
    __tablename__ = "indexer_checkpoints"

    chain: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class WorkJobRow(Base):
    __tablename__ = "work_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    dedup_key: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(16), default=JobStatus.QUEUED.value, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, default=3)
    backoff_seconds: Mapped[float] = mapped_column(default=5.0)
    run_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


# =============================================================================
# DOMAIN RECORDS
# =============================================================================

@dataclass(frozen=True)
class LockRecord:
    chain: str
    asset_id: int
    source_owner: str
    recipient: str
    block_number: int
    lock_hash: str
    tx_hash: str
    status: LockStatus = LockStatus.PENDING
    log_index: int = 0
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: LockRecordRow) -> "LockRecord":
        return cls(
            chain=row.chain,
            asset_id=int(row.asset_id),
            source_owner=row.source_owner,
            recipient=row.recipient,
            block_number=row.block_number,
            lock_hash=row.lock_hash,
            tx_hash=row.tx_hash,
            status=LockStatus(row.status),
            log_index=row.log_index,
            error=row.error,
        )


@dataclass(frozen=True)
class UnlockRecord:
    chain: str
    asset_id: int
    recipient: str
    lock_hash: str
    tx_hash: str
    block_number: int
    gas_used: Optional[int] = None

    @classmethod
    def from_row(cls, row: UnlockRecordRow) -> "UnlockRecord":
        return cls(row.chain, int(row.asset_id), row.recipient, row.lock_hash, row.tx_hash,
                   row.block_number, row.gas_used)


@dataclass(frozen=True)
class ProofRecord:
    """Proof for one lock. An empty ``proof`` is valid for a single-leaf block."""
    lock_hash: str
    chain: str
    block_number: int
    leaf: str
    root: str
    proof: List[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: ProofRow) -> "ProofRecord":
        return cls(row.lock_hash, row.chain, row.block_number, row.leaf, row.root, list(row.proof or []))


@dataclass(frozen=True)
class BlockCommitment:
    id: int
    block_number: int
    source_chain: str
    destination_chain: str
    root: str
    lock_count: int
    submitted: bool = False
    submission_tx_hash: Optional[str] = None

    @classmethod
    def from_row(cls, row: BlockCommitmentRow) -> "BlockCommitment":
        return cls(row.id, row.block_number, row.source_chain, row.destination_chain, row.root,
                   row.lock_count, bool(row.submitted), row.submission_tx_hash)


@dataclass(frozen=True)
class RelayerTransaction:
    id: int
    chain: str
    tx_type: str
    tx_hash: Optional[str]
    status: TxStatus
    payload: Dict[str, Any]
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    error: Optional[str] = None

    @classmethod
    def from_row(cls, row: RelayerTransactionRow) -> "RelayerTransaction":
        return cls(row.id, row.chain, row.tx_type, row.tx_hash, TxStatus(row.status), dict(row.payload or {}),
                   row.block_number, row.gas_used, row.error)


@dataclass(frozen=True)
class FailedTransaction:
    id: int
    tx_type: str
    chain: str
    payload: Dict[str, Any]
    error: str
    retry_count: int
    max_retries: int
    next_retry_at: datetime
    resolved: bool

    @classmethod
    def from_row(cls, row: FailedTransactionRow) -> "FailedTransaction":
        return cls(row.id, row.tx_type, row.chain, dict(row.payload or {}), row.error, row.retry_count,
                   row.max_retries, row.next_retry_at, bool(row.resolved))


@dataclass(frozen=True)
class Job:
    id: int
    kind: str
    dedup_key: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: int
    backoff_seconds: float


@dataclass
class WindowResult:
    """What one indexer window changed."""
    new_locks: List[LockRecord] = field(default_factory=list)
    unlocked: List[UnlockRecord] = field(default_factory=list)
    jobs_enqueued: int = 0


@dataclass(frozen=True)
class BuildJobSpec:
    """How the indexer schedules commitment builds for new lock blocks.

    The indexer only reads confirmed blocks, so builds are due immediately unless
    a settle delay is configured.
    """
    kind: str = "build_commitment"
    delay_seconds: float = 0.0
    max_attempts: int = 3
    backoff_seconds: float = 5.0


# =============================================================================
# STORE
# =============================================================================

class BridgeStore:
    """
    Repository over the bridge tables.

    Methods open and commit their own session; ``apply_window`` and
    ``mark_commitment_submitted`` group several writes in one transaction.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///lockstep.db",
        on_invalid_transition: Optional[Callable[[str, LockStatus, LockStatus], None]] = None,
        clock: Callable[[], datetime] = utcnow,
        echo: bool = False,
    ):
        kwargs: Dict[str, Any] = {"echo": echo, "future": True}
        self._sqlite = database_url.startswith("sqlite")
        if self._sqlite:
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        self._session_factory = sessionmaker(self.engine, expire_on_commit=False)
        # SQLite allows one writer; serialize scopes instead of surfacing "database is locked".
        self._write_lock: Optional[threading.RLock] = threading.RLock() if self._sqlite else None
        self.on_invalid_transition = on_invalid_transition
        self.clock = clock
        self._log = get_logger("store", BridgeLayer.STORAGE)

    def create_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_schema(self) -> None:
        Base.metadata.drop_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        if self._write_lock is not None:
            self._write_lock.acquire()
        try:
            with self._session_factory() as session:
                try:
                    yield session
                    session.commit()
                except Exception:
                    session.rollback()
                    raise
        finally:
            if self._write_lock is not None:
                self._write_lock.release()

    # -------------------------------------------------------------------------
    # Lock records
    # -------------------------------------------------------------------------

    def _insert_lock(self, session: Session, record: LockRecord) -> Optional[LockRecord]:
        lock_hash = normalize_hash(record.lock_hash)
        existing = session.scalar(
            select(LockRecordRow).where(LockRecordRow.chain == record.chain, LockRecordRow.lock_hash == lock_hash)
        )
        if existing is not None:
            return None
        status = record.status
        # An unlock for this hash may have been indexed first.
        if session.scalar(select(UnlockRecordRow.id).where(UnlockRecordRow.lock_hash == lock_hash)):
            status = LockStatus.UNLOCKED
        row = LockRecordRow(
            chain=record.chain,
            asset_id=str(int(record.asset_id)),
            source_owner=record.source_owner,
            recipient=record.recipient,
            block_number=int(record.block_number),
            lock_hash=lock_hash,
            tx_hash=record.tx_hash,
            log_index=record.log_index,
            status=status.value,
        )
        session.add(row)
        session.flush()
        return LockRecord.from_row(row)

    def create_lock_record(self, record: LockRecord) -> bool:
        """Insert a lock. Returns False when the (chain, lock_hash) already exists."""
        with self.session() as session:
            return self._insert_lock(session, record) is not None

    def get_lock(self, lock_hash: str, chain: Optional[str] = None) -> LockRecord:
        with self.session() as session:
            stmt = select(LockRecordRow).where(LockRecordRow.lock_hash == normalize_hash(lock_hash))
            if chain is not None:
                stmt = stmt.where(LockRecordRow.chain == chain)
            row = session.scalars(stmt.order_by(LockRecordRow.id)).first()
            if row is None:
                raise LockNotFound(lock_hash)
            return LockRecord.from_row(row)

    def get_locks_by_block(self, chain: str, block_number: int) -> List[LockRecord]:
        """Locks of one block in insertion order."""
        with self.session() as session:
            rows = session.scalars(
                select(LockRecordRow)
                .where(LockRecordRow.chain == chain, LockRecordRow.block_number == int(block_number))
                .order_by(LockRecordRow.id)
            ).all()
            return [LockRecord.from_row(r) for r in rows]

    def get_locks_by_status(self, status: LockStatus, chain: Optional[str] = None, limit: int = 100) -> List[LockRecord]:
        with self.session() as session:
            stmt = select(LockRecordRow).where(LockRecordRow.status == status.value)
            if chain is not None:
                stmt = stmt.where(LockRecordRow.chain == chain)
            rows = session.scalars(stmt.order_by(LockRecordRow.id).limit(limit)).all()
            return [LockRecord.from_row(r) for r in rows]

    def _apply_status(
        self, row: LockRecordRow, target: LockStatus, error: Optional[str] = None, strict: bool = False
    ) -> bool:
        current = LockStatus(row.status)
        if current == target:
            return True
        if not current.can_transition_to(target):
            if strict:
                raise InvalidStatusTransition(row.lock_hash, current, target)
            self._log.error(
                "rejected lock status transition",
                error_code="INVALID_TRANSITION",
                lock_hash=row.lock_hash,
                current=current.value,
                target=target.value,
            )
            if self.on_invalid_transition is not None:
                self.on_invalid_transition(row.lock_hash, current, target)
            return False
        row.status = target.value
        if error is not None:
            row.error = error
        return True

    def advance_lock_status(
        self,
        lock_hash: str,
        target: LockStatus,
        error: Optional[str] = None,
        chain: Optional[str] = None,
        strict: bool = False,
    ) -> bool:
        """Move one lock to ``target``.

        Returns True if the lock is now in ``target``. A transition outside the
        table is refused (False), or raises InvalidStatusTransition when strict.
        """
        with self.session() as session:
            stmt = select(LockRecordRow).where(LockRecordRow.lock_hash == normalize_hash(lock_hash))
            if chain is not None:
                stmt = stmt.where(LockRecordRow.chain == chain)
            row = session.scalars(stmt).first()
            if row is None:
                raise LockNotFound(lock_hash)
            return self._apply_status(row, target, error, strict)

    def _advance_rows(self, rows: Iterable[LockRecordRow], target: LockStatus) -> int:
        moved = 0
        for row in rows:
            current = LockStatus(row.status)
            # Records already at or past target, or quarantined, are left alone.
            if current == LockStatus.FAILED or current.rank >= target.rank:
                continue
            if self._apply_status(row, target):
                moved += 1
        return moved

    def advance_locks(self, lock_hashes: Sequence[str], target: LockStatus, chain: Optional[str] = None) -> int:
        """Move several locks forward to ``target``, skipping any already ahead."""
        if not lock_hashes:
            return 0
        with self.session() as session:
            stmt = select(LockRecordRow).where(
                LockRecordRow.lock_hash.in_([normalize_hash(h) for h in lock_hashes])
            )
            if chain is not None:
                stmt = stmt.where(LockRecordRow.chain == chain)
            return self._advance_rows(session.scalars(stmt).all(), target)

    # -------------------------------------------------------------------------
    # Unlock records
    # -------------------------------------------------------------------------

    def _record_unlock(self, session: Session, unlock: UnlockRecord) -> Optional[UnlockRecord]:
        lock_hash = normalize_hash(unlock.lock_hash)
        if session.scalar(
            select(UnlockRecordRow.id).where(
                UnlockRecordRow.chain == unlock.chain, UnlockRecordRow.lock_hash == lock_hash
            )
        ):
            return None
        row = UnlockRecordRow(
            chain=unlock.chain,
            asset_id=str(int(unlock.asset_id)),
            recipient=unlock.recipient,
            lock_hash=lock_hash,
            tx_hash=unlock.tx_hash,
            block_number=int(unlock.block_number),
            gas_used=unlock.gas_used,
        )
        session.add(row)
        for lock_row in session.scalars(
            select(LockRecordRow).where(LockRecordRow.lock_hash == lock_hash, LockRecordRow.chain != unlock.chain)
        ).all():
            self._apply_status(lock_row, LockStatus.UNLOCKED)
        session.flush()
        return UnlockRecord.from_row(row)

    def record_unlock(self, unlock: UnlockRecord) -> bool:
        """Append an UnlockRecord and mark the matching lock unlocked. Idempotent."""
        with self.session() as session:
            return self._record_unlock(session, unlock) is not None

    def get_unlock(self, lock_hash: str) -> Optional[UnlockRecord]:
        with self.session() as session:
            row = session.scalars(
                select(UnlockRecordRow).where(UnlockRecordRow.lock_hash == normalize_hash(lock_hash))
            ).first()
            return UnlockRecord.from_row(row) if row else None

    # -------------------------------------------------------------------------
    # Indexer windows and checkpoints
    # -------------------------------------------------------------------------

    def get_checkpoint(self, chain: str) -> Optional[int]:
        with self.session() as session:
            row = session.get(IndexerCheckpointRow, chain)
            return row.last_block if row else None

    def set_checkpoint(self, chain: str, block_number: int) -> None:
        with self.session() as session:
            self._set_checkpoint(session, chain, block_number)

    def _set_checkpoint(self, session: Session, chain: str, block_number: int) -> None:
        row = session.get(IndexerCheckpointRow, chain)
        if row is None:
            session.add(IndexerCheckpointRow(chain=chain, last_block=int(block_number)))
        elif int(block_number) > row.last_block:
            row.last_block = int(block_number)

    def get_last_processed_block(self, chain: str) -> Optional[int]:
        """Explicit checkpoint, else the highest block with a recorded event on ``chain``."""
        checkpoint = self.get_checkpoint(chain)
        if checkpoint is not None:
            return checkpoint
        with self.session() as session:
            max_lock = session.scalar(
                select(func.max(LockRecordRow.block_number)).where(LockRecordRow.chain == chain)
            )
            max_unlock = session.scalar(
                select(func.max(UnlockRecordRow.block_number)).where(UnlockRecordRow.chain == chain)
            )
        candidates = [b for b in (max_lock, max_unlock) if b is not None]
        return max(candidates) if candidates else None

    def apply_window(
        self,
        chain: str,
        to_block: int,
        locks: Sequence[LockRecord],
        unlocks: Sequence[UnlockRecord],
        build_job: Optional[BuildJobSpec] = None,
    ) -> WindowResult:
        """Persist one indexer window atomically.

        Inserts the window's locks and unlocks, schedules a build per block with
        new locks, and advances the checkpoint to ``to_block``.
        """
        result = WindowResult()
        with self.session() as session:
            for record in locks:
                inserted = self._insert_lock(session, record)
                if inserted is not None:
                    result.new_locks.append(inserted)
            for unlock in unlocks:
                recorded = self._record_unlock(session, unlock)
                if recorded is not None:
                    result.unlocked.append(recorded)
            if build_job is not None:
                for block_number in sorted({r.block_number for r in result.new_locks}):
                    job_id = self._enqueue(
                        session,
                        kind=build_job.kind,
                        dedup_key=f"{chain}:{block_number}",
                        payload={"chain": chain, "block_number": block_number},
                        delay_seconds=build_job.delay_seconds,
                        max_attempts=build_job.max_attempts,
                        backoff_seconds=build_job.backoff_seconds,
                    )
                    if job_id is not None:
                        result.jobs_enqueued += 1
            self._set_checkpoint(session, chain, to_block)
        return result

    # -------------------------------------------------------------------------
    # Proofs and commitments
    # -------------------------------------------------------------------------

    def save_block_proofs(
        self, chain: str, block_number: int, root: str, leaves: Dict[str, str], proofs: Dict[str, List[str]]
    ) -> None:
        """Upsert one proof per lock hash of a block."""
        with self.session() as session:
            for lock_hash, proof in proofs.items():
                lock_hash = normalize_hash(lock_hash)
                row = session.scalar(select(ProofRow).where(ProofRow.lock_hash == lock_hash))
                if row is None:
                    row = ProofRow(lock_hash=lock_hash, chain=chain, block_number=int(block_number))
                    session.add(row)
                row.leaf = leaves[lock_hash]
                row.root = normalize_hash(root)
                row.proof = list(proof)

    def get_proof(self, lock_hash: str) -> ProofRecord:
        """Proof for ``lock_hash``. Raises ProofNotFound; an empty proof is a valid result."""
        with self.session() as session:
            row = session.scalar(select(ProofRow).where(ProofRow.lock_hash == normalize_hash(lock_hash)))
            if row is None:
                raise ProofNotFound(lock_hash)
            return ProofRecord.from_row(row)

    def upsert_block_commitment(
        self, block_number: int, source_chain: str, destination_chain: str, root: str, lock_count: int
    ) -> BlockCommitment:
        root = normalize_hash(root)
        with self.session() as session:
            row = session.scalar(
                select(BlockCommitmentRow).where(
                    BlockCommitmentRow.block_number == int(block_number),
                    BlockCommitmentRow.source_chain == source_chain,
                    BlockCommitmentRow.destination_chain == destination_chain,
                )
            )
            if row is None:
                row = BlockCommitmentRow(
                    block_number=int(block_number),
                    source_chain=source_chain,
                    destination_chain=destination_chain,
                    root=root,
                    lock_count=int(lock_count),
                )
                session.add(row)
            elif row.submitted:
                if row.root != root:
                    raise CommitmentConflict(int(block_number), source_chain, row.root, root)
            else:
                row.root = root
                row.lock_count = int(lock_count)
            session.flush()
            return BlockCommitment.from_row(row)

    def get_commitment(self, block_number: int, source_chain: str, destination_chain: str) -> Optional[BlockCommitment]:
        with self.session() as session:
            row = session.scalar(
                select(BlockCommitmentRow).where(
                    BlockCommitmentRow.block_number == int(block_number),
                    BlockCommitmentRow.source_chain == source_chain,
                    BlockCommitmentRow.destination_chain == destination_chain,
                )
            )
            return BlockCommitment.from_row(row) if row else None

    def list_commitments(
        self, pending_only: bool = False, source_chain: Optional[str] = None, limit: int = 100
    ) -> List[BlockCommitment]:
        with self.session() as session:
            stmt = select(BlockCommitmentRow)
            if pending_only:
                stmt = stmt.where(BlockCommitmentRow.submitted.is_(False))
            if source_chain is not None:
                stmt = stmt.where(BlockCommitmentRow.source_chain == source_chain)
            rows = session.scalars(
                stmt.order_by(BlockCommitmentRow.block_number, BlockCommitmentRow.id).limit(limit)
            ).all()
            return [BlockCommitment.from_row(r) for r in rows]

    def get_pending_commitments(self, source_chain: Optional[str] = None, limit: int = 100) -> List[BlockCommitment]:
        return self.list_commitments(pending_only=True, source_chain=source_chain, limit=limit)

    def mark_commitment_submitted(self, commitment_id: int, tx_hash: Optional[str]) -> int:
        """Mark a commitment submitted and its locks root_submitted in one transaction.

        Returns the number of lock records moved.
        """
        with self.session() as session:
            row = session.get(BlockCommitmentRow, commitment_id)
            if row is None:
                raise StorageError(f"commitment {commitment_id} not found")
            row.submitted = True
            row.submission_tx_hash = tx_hash or row.submission_tx_hash
            row.submitted_at = row.submitted_at or self.clock()
            locks = session.scalars(
                select(LockRecordRow).where(
                    LockRecordRow.chain == row.source_chain,
                    LockRecordRow.block_number == row.block_number,
                )
            ).all()
            return self._advance_rows(locks, LockStatus.ROOT_SUBMITTED)

    # -------------------------------------------------------------------------
    # Relayer transactions
    # -------------------------------------------------------------------------

    def record_relayer_tx(self, chain: str, tx_type: str, payload: Dict[str, Any]) -> int:
        """Record an outbound transaction before it is sent."""
        with self.session() as session:
            row = RelayerTransactionRow(chain=chain, tx_type=tx_type, payload=payload)
            session.add(row)
            session.flush()
            return row.id

    def update_relayer_tx(
        self,
        tx_id: int,
        status: Optional[TxStatus] = None,
        tx_hash: Optional[str] = None,
        block_number: Optional[int] = None,
        gas_used: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        with self.session() as session:
            row = session.get(RelayerTransactionRow, tx_id)
            if row is None:
                raise StorageError(f"relayer transaction {tx_id} not found")
            if status is not None:
                row.status = status.value
                if status == TxStatus.CONFIRMED:
                    row.confirmed_at = self.clock()
            if tx_hash is not None:
                row.tx_hash = tx_hash
            if block_number is not None:
                row.block_number = block_number
            if gas_used is not None:
                row.gas_used = gas_used
            if error is not None:
                row.error = error

    def list_relayer_txs(
        self, status: Optional[TxStatus] = None, tx_type: Optional[str] = None, limit: int = 100
    ) -> List[RelayerTransaction]:
        with self.session() as session:
            stmt = select(RelayerTransactionRow)
            if status is not None:
                stmt = stmt.where(RelayerTransactionRow.status == status.value)
            if tx_type is not None:
                stmt = stmt.where(RelayerTransactionRow.tx_type == tx_type)
            rows = session.scalars(stmt.order_by(RelayerTransactionRow.id).limit(limit)).all()
            return [RelayerTransaction.from_row(r) for r in rows]

    # -------------------------------------------------------------------------
    # Failed transactions
    # -------------------------------------------------------------------------

    def record_failed_transaction(
        self,
        tx_type: str,
        chain: str,
        payload: Dict[str, Any],
        error: str,
        max_retries: int = 3,
        retry_delay_seconds: float = 300.0,
    ) -> int:
        with self.session() as session:
            row = FailedTransactionRow(
                tx_type=tx_type,
                chain=chain,
                payload=payload,
                error=error,
                max_retries=max_retries,
                next_retry_at=self.clock() + timedelta(seconds=retry_delay_seconds),
            )
            session.add(row)
            session.flush()
            return row.id

    def list_failed_transactions(self, include_resolved: bool = False, limit: int = 100) -> List[FailedTransaction]:
        with self.session() as session:
            stmt = select(FailedTransactionRow)
            if not include_resolved:
                stmt = stmt.where(FailedTransactionRow.resolved.is_(False))
            rows = session.scalars(stmt.order_by(FailedTransactionRow.id).limit(limit)).all()
            return [FailedTransaction.from_row(r) for r in rows]

    def get_failed_transaction(self, failed_id: int) -> Optional[FailedTransaction]:
        with self.session() as session:
            row = session.get(FailedTransactionRow, failed_id)
            return FailedTransaction.from_row(row) if row else None

    def find_open_failed_transaction(self, tx_type: str, **match: Any) -> Optional[FailedTransaction]:
        """First unresolved entry of ``tx_type`` whose payload contains every ``match`` item."""
        with self.session() as session:
            rows = session.scalars(
                select(FailedTransactionRow)
                .where(FailedTransactionRow.tx_type == tx_type, FailedTransactionRow.resolved.is_(False))
                .order_by(FailedTransactionRow.id)
            ).all()
            for row in rows:
                payload = row.payload or {}
                if all(payload.get(k) == v for k, v in match.items()):
                    return FailedTransaction.from_row(row)
        return None

    def due_failed_transactions(self, now: Optional[datetime] = None, limit: int = 50) -> List[FailedTransaction]:
        now = now or self.clock()
        with self.session() as session:
            rows = session.scalars(
                select(FailedTransactionRow)
                .where(
                    FailedTransactionRow.resolved.is_(False),
                    FailedTransactionRow.retry_count < FailedTransactionRow.max_retries,
                    FailedTransactionRow.next_retry_at <= now,
                )
                .order_by(FailedTransactionRow.next_retry_at, FailedTransactionRow.id)
                .limit(limit)
            ).all()
            return [FailedTransaction.from_row(r) for r in rows]

    def note_failed_retry(self, failed_id: int, error: str, retry_delay_seconds: float) -> None:
        with self.session() as session:
            row = session.get(FailedTransactionRow, failed_id)
            if row is None:
                raise StorageError(f"failed transaction {failed_id} not found")
            row.retry_count += 1
            row.error = error
            row.next_retry_at = self.clock() + timedelta(seconds=retry_delay_seconds)

    def resolve_failed_transaction(self, failed_id: int) -> None:
        with self.session() as session:
            row = session.get(FailedTransactionRow, failed_id)
            if row is None:
                raise StorageError(f"failed transaction {failed_id} not found")
            row.resolved = True
            row.resolved_at = self.clock()

    # -------------------------------------------------------------------------
    # Work queue
    # -------------------------------------------------------------------------

    def _enqueue(
        self,
        session: Session,
        kind: str,
        dedup_key: str,
        payload: Dict[str, Any],
        delay_seconds: float,
        max_attempts: int,
        backoff_seconds: float,
    ) -> Optional[int]:
        active = session.scalar(
            select(WorkJobRow.id).where(
                WorkJobRow.kind == kind,
                WorkJobRow.dedup_key == dedup_key,
                WorkJobRow.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value]),
            )
        )
        if active is not None:
            return None
        row = WorkJobRow(
            kind=kind,
            dedup_key=dedup_key,
            payload=payload,
            max_attempts=max_attempts,
            backoff_seconds=backoff_seconds,
            run_at=self.clock() + timedelta(seconds=max(0.0, delay_seconds)),
        )
        session.add(row)
        session.flush()
        return row.id

    def enqueue_job(
        self,
        kind: str,
        dedup_key: str,
        payload: Dict[str, Any],
        delay_seconds: float = 0.0,
        max_attempts: int = 3,
        backoff_seconds: float = 5.0,
    ) -> Optional[int]:
        """Queue a job unless one with the same kind and key is queued or running."""
        with self.session() as session:
            return self._enqueue(session, kind, dedup_key, payload, delay_seconds, max_attempts, backoff_seconds)

    def claim_jobs(self, kind: str, limit: int, now: Optional[datetime] = None) -> List[Job]:
        now = now or self.clock()
        with self.session() as session:
            rows = session.scalars(
                select(WorkJobRow)
                .where(
                    WorkJobRow.kind == kind,
                    WorkJobRow.status == JobStatus.QUEUED.value,
                    WorkJobRow.run_at <= now,
                )
                .order_by(WorkJobRow.run_at, WorkJobRow.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).all()
            jobs = []
            for row in rows:
                row.status = JobStatus.RUNNING.value
                row.attempts += 1
                jobs.append(Job(row.id, row.kind, row.dedup_key, dict(row.payload or {}), row.attempts,
                                row.max_attempts, row.backoff_seconds))
            return jobs

    def complete_job(self, job_id: int) -> None:
        with self.session() as session:
            row = session.get(WorkJobRow, job_id)
            if row is not None:
                row.status = JobStatus.DONE.value
                row.last_error = None

    def fail_job(self, job_id: int, error: str) -> bool:
        """Record a failed attempt. Returns True if the job will be retried."""
        with self.session() as session:
            row = session.get(WorkJobRow, job_id)
            if row is None:
                return False
            row.last_error = error
            if row.attempts < row.max_attempts:
                delay = row.backoff_seconds * (2 ** (row.attempts - 1))
                row.status = JobStatus.QUEUED.value
                row.run_at = self.clock() + timedelta(seconds=delay)
                return True
            row.status = JobStatus.FAILED.value
            return False

    def reset_running_jobs(self) -> int:
        """Requeue jobs left running by a crashed process."""
        with self.session() as session:
            result = session.execute(
                update(WorkJobRow)
                .where(WorkJobRow.status == JobStatus.RUNNING.value)
                .values(status=JobStatus.QUEUED.value)
            )
            return result.rowcount or 0

    def count_jobs(self, kind: Optional[str] = None, status: Optional[JobStatus] = None) -> int:
        with self.session() as session:
            stmt = select(func.count(WorkJobRow.id))
            if kind is not None:
                stmt = stmt.where(WorkJobRow.kind == kind)
            if status is not None:
                stmt = stmt.where(WorkJobRow.status == status.value)
            return int(session.scalar(stmt) or 0)

    # -------------------------------------------------------------------------
    # Status queries
    # -------------------------------------------------------------------------

    def get_bridge_status(self, asset_id: int, chain: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Latest lock for an asset with its proof, commitment and unlock, if any."""
        with self.session() as session:
            stmt = select(LockRecordRow).where(LockRecordRow.asset_id == str(int(asset_id)))
            if chain is not None:
                stmt = stmt.where(LockRecordRow.chain == chain)
            row = session.scalars(stmt.order_by(LockRecordRow.id.desc())).first()
            if row is None:
                return None
            proof = session.scalar(select(ProofRow).where(ProofRow.lock_hash == row.lock_hash))
            commitment = session.scalar(
                select(BlockCommitmentRow).where(
                    BlockCommitmentRow.source_chain == row.chain,
                    BlockCommitmentRow.block_number == row.block_number,
                )
            )
            unlock = session.scalar(select(UnlockRecordRow).where(UnlockRecordRow.lock_hash == row.lock_hash))
            return {
                "asset_id": int(row.asset_id),
                "chain": row.chain,
                "status": row.status,
                "source_owner": row.source_owner,
                "recipient": row.recipient,
                "block_number": row.block_number,
                "lock_hash": row.lock_hash,
                "lock_tx_hash": row.tx_hash,
                "root": proof.root if proof else None,
                "proof": list(proof.proof) if proof else None,
                "root_submitted": bool(commitment.submitted) if commitment else False,
                "submission_tx_hash": commitment.submission_tx_hash if commitment else None,
                "unlock_tx_hash": unlock.tx_hash if unlock else None,
                "unlock_chain": unlock.chain if unlock else None,
                "error": row.error,
            }

    def get_recent_activity(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self.session() as session:
            locks = session.scalars(select(LockRecordRow).order_by(LockRecordRow.id.desc()).limit(limit)).all()
            unlocks = session.scalars(select(UnlockRecordRow).order_by(UnlockRecordRow.id.desc()).limit(limit)).all()
            items = [
                {"type": "lock", "chain": r.chain, "asset_id": int(r.asset_id), "lock_hash": r.lock_hash,
                 "tx_hash": r.tx_hash, "status": r.status, "at": r.created_at}
                for r in locks
            ] + [
                {"type": "unlock", "chain": r.chain, "asset_id": int(r.asset_id), "lock_hash": r.lock_hash,
                 "tx_hash": r.tx_hash, "status": LockStatus.UNLOCKED.value, "at": r.created_at}
                for r in unlocks
            ]
        items.sort(key=lambda i: i["at"], reverse=True)
        return items[:limit]

    def status_counts(self) -> Dict[str, int]:
        with self.session() as session:
            rows = session.execute(
                select(LockRecordRow.status, func.count(LockRecordRow.id)).group_by(LockRecordRow.status)
            ).all()
            return {status: int(count) for status, count in rows}
