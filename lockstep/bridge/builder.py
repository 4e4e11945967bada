"""
Commitment Builder

Turns one source block's recorded locks into a merkle commitment and one proof
per lock:

    lock_records(chain, block)
        │  validate (bad records -> failed, excluded)
        ▼
    leaves = keccak(assetId, recipient, lockHash, block)   in insertion order
        │
        ▼
    pair-sorted tree ──▶ merkle_proofs (one per lock)
                     ──▶ block_commitments (block, source, destination)
                     ──▶ locks -> proof_generated
                     ──▶ submit_root job

At most one build per (chain, block) runs in this process; a second request
for a key already building is dropped, not queued. The in-flight set belongs
to the builder instance. Storage upserts make a duplicate build from another
process harmless.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from lockstep.bridge.alerts import AlertSink, LoggingAlertSink, Severity
from lockstep.bridge.events import EventBus, ProofGenerated
from lockstep.bridge.observability import BridgeLayer, get_logger, timed_operation
from lockstep.bridge.queue import SUBMIT_ROOT
from lockstep.bridge.storage import (
    BlockCommitment,
    BridgeStore,
    CommitmentConflict,
    LockRecord,
    LockStatus,
    ProofRecord,
)
from lockstep.merkle import _is_hex_32, block_commitment, is_zero_address

_log = get_logger("builder", BridgeLayer.BUILDER)


@dataclass(frozen=True)
class SubmitJobSpec:
    delay_seconds: float = 0.0
    max_attempts: int = 5
    backoff_seconds: float = 10.0


@dataclass
class BuildResult:
    chain: str
    block_number: int
    root: str
    lock_count: int
    commitment: BlockCommitment
    excluded: List[str] = field(default_factory=list)


def _record_problem(record: LockRecord, block_number: int) -> Optional[str]:
    if record.block_number != block_number:
        return f"block mismatch: record {record.block_number} != {block_number}"
    if not _is_hex_32(record.lock_hash):
        return "malformed lock hash"
    if is_zero_address(record.recipient):
        return "null recipient"
    return None


class CommitmentBuilder:
    """Builds per-block commitments for every source ledger in ``routes``."""

    def __init__(
        self,
        store: BridgeStore,
        routes: Dict[str, str],
        bus: Optional[EventBus] = None,
        alerts: Optional[AlertSink] = None,
        submit_job: SubmitJobSpec = SubmitJobSpec(),
    ):
        self.store = store
        self.routes = dict(routes)
        self.bus = bus
        self.alerts = alerts or LoggingAlertSink()
        self.submit_job = submit_job
        self._in_flight: Set[Tuple[str, int]] = set()
        self._in_flight_lock = threading.Lock()

    def is_building(self, chain: str, block_number: int) -> bool:
        with self._in_flight_lock:
            return (chain, int(block_number)) in self._in_flight

    def handle_job(self, payload: Dict[str, Any]) -> Optional[BuildResult]:
        """Work queue entry point."""
        return self.build_block(str(payload["chain"]), int(payload["block_number"]))

    def build_block(self, chain: str, block_number: int) -> Optional[BuildResult]:
        """Build the commitment for one block. Returns None if skipped."""
        key = (chain, int(block_number))
        with self._in_flight_lock:
            if key in self._in_flight:
                _log.warning("build already in flight, dropping request", chain=chain, block=block_number)
                return None
            self._in_flight.add(key)
        try:
            return self._build(chain, int(block_number))
        finally:
            with self._in_flight_lock:
                self._in_flight.discard(key)

    @timed_operation(_log, "build_commitment")
    def _build(self, chain: str, block_number: int) -> Optional[BuildResult]:
        destination = self.routes.get(chain)
        if destination is None:
            raise ValueError(f"no route for source chain {chain!r}")

        records = [
            r for r in self.store.get_locks_by_block(chain, block_number)
            if r.status is not LockStatus.FAILED
        ]
        usable: List[LockRecord] = []
        excluded: List[str] = []
        for record in records:
            problem = _record_problem(record, block_number)
            if problem is None:
                usable.append(record)
                continue
            self._quarantine(record, problem)
            excluded.append(record.lock_hash)

        if not usable:
            _log.warning("no locks to commit", chain=chain, block=block_number)
            return None

        computed = block_commitment([
            {"asset_id": r.asset_id, "recipient": r.recipient, "lock_hash": r.lock_hash,
             "block_number": r.block_number}
            for r in usable
        ])
        root = computed["root"]

        existing = self.store.get_commitment(block_number, chain, destination)
        if existing is not None and existing.submitted and existing.root != root:
            self._conflict(CommitmentConflict(block_number, chain, existing.root, root))
            return None

        leaves = {r.lock_hash: leaf for r, leaf in zip(usable, computed["leaves"])}
        self.store.save_block_proofs(chain, block_number, root, leaves, computed["proofs"])
        try:
            commitment = self.store.upsert_block_commitment(block_number, chain, destination, root, len(usable))
        except CommitmentConflict as exc:
            self._conflict(exc)
            return None
        self.store.advance_locks([r.lock_hash for r in usable], LockStatus.PROOF_GENERATED, chain=chain)

        if not commitment.submitted:
            self.store.enqueue_job(
                SUBMIT_ROOT,
                dedup_key=f"{chain}:{destination}:{block_number}",
                payload={"source_chain": chain, "destination_chain": destination, "block_number": block_number},
                delay_seconds=self.submit_job.delay_seconds,
                max_attempts=self.submit_job.max_attempts,
                backoff_seconds=self.submit_job.backoff_seconds,
            )

        _log.info("commitment built", chain=chain, block=block_number, root=root, locks=len(usable),
                  excluded=len(excluded))
        if self.bus is not None:
            self.bus.publish(ProofGenerated(chain=chain, block_number=block_number, root=root,
                                            lock_count=len(usable)))
        return BuildResult(chain, block_number, root, len(usable), commitment, excluded)

    def _quarantine(self, record: LockRecord, problem: str) -> None:
        _log.error("lock record excluded from commitment", error_code="INVALID_LOCK_RECORD",
                   lock_hash=record.lock_hash, chain=record.chain, problem=problem)
        self.store.advance_lock_status(record.lock_hash, LockStatus.FAILED, error=problem, chain=record.chain)
        self.store.record_failed_transaction(
            tx_type="invalid_lock",
            chain=record.chain,
            payload={"lock_hash": record.lock_hash, "block_number": record.block_number},
            error=problem,
            max_retries=0,
        )
        self.alerts.send("Invalid lock record", f"{record.lock_hash} on {record.chain}: {problem}",
                         Severity.CRITICAL)

    def _conflict(self, exc: CommitmentConflict) -> None:
        _log.critical("computed root disagrees with submitted commitment", error_code="ROOT_CONFLICT",
                      chain=exc.source_chain, block=exc.block_number, stored=exc.stored, computed=exc.computed)
        self.store.record_failed_transaction(
            tx_type="generate_proof",
            chain=exc.source_chain,
            payload={"chain": exc.source_chain, "block_number": exc.block_number, "computed_root": exc.computed},
            error=str(exc),
            max_retries=0,
        )
        self.alerts.send("Commitment root conflict", str(exc), Severity.CRITICAL)

    def get_proof(self, lock_hash: str) -> ProofRecord:
        """Read-only proof lookup. Raises ProofNotFound; an empty proof is valid."""
        return self.store.get_proof(lock_hash)
