"""
Root Relay & Unlock Driver

Gets every built commitment onto its destination verifier, then presents each
lock's proof there:

    pending commitment
        │
        ├─ destination already holds the same root ─▶ mark submitted (race)
        ├─ destination holds a different root ──────▶ failed tx + critical alert
        └─ estimate gas * margin ─▶ send ─▶ wait for confirmations
              │                             │
              │ revert "Root already set"   └─▶ mark submitted, locks root_submitted
              └──────────▶ treated as the race above
                                            │
                                            ▼
                          for each lock not yet unlocked: unlock with its proof
                              "Lock already processed" ─▶ unlocked (idempotent)
                              other revert ─▶ logged, retried on the next sweep

Every outbound transaction is recorded as pending before it is sent and moved
to confirmed or failed afterwards.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from web3 import Web3

from lockstep.bridge.alerts import AlertSink, LoggingAlertSink, Severity
from lockstep.bridge.builder import CommitmentBuilder
from lockstep.bridge.chain import (
    ChainAdapter,
    ChainError,
    ChainUnavailable,
    ContractCall,
    TransactionReverted,
    TxReceipt,
    is_already_processed,
    is_already_submitted,
)
from lockstep.bridge.events import AssetUnlocked, CommitmentSubmitted, EventBus
from lockstep.bridge.observability import BridgeLayer, correlation_scope, get_logger, timed_operation
from lockstep.bridge.storage import (
    BlockCommitment,
    BridgeStore,
    FailedTransaction,
    LockRecord,
    LockStatus,
    ProofNotFound,
    StorageError,
    TxStatus,
    UnlockRecord,
)
from lockstep.bridge.verifier import CommittedRecord, UnlockRequest
from lockstep.merkle import normalize_hash

_log = get_logger("relay", BridgeLayer.RELAYER)


class SubmitOutcome(Enum):
    SUBMITTED = "submitted"
    ALREADY_PRESENT = "already_present"
    CONFLICT = "conflict"


@dataclass
class RelaySettings:
    gas_multiplier: float = 1.2
    confirmation_blocks: int = 3
    tx_timeout_seconds: float = 120.0
    unlock_batch_size: int = 1
    unlock_max_deferrals: int = 5
    relay_interval_seconds: float = 30.0
    balance_check_interval_seconds: float = 300.0
    min_balances: Dict[str, float] = field(default_factory=dict)
    pause_on_error: bool = False
    error_pause_seconds: float = 60.0
    failed_replay_delay_seconds: float = 300.0
    failed_replay_max_retries: int = 3


@dataclass
class BalanceReport:
    chain: str
    address: str
    balance_wei: Optional[int]
    minimum: float
    error: Optional[str] = None

    @property
    def balance(self) -> Optional[float]:
        if self.balance_wei is None:
            return None
        return float(Web3.from_wei(self.balance_wei, "ether"))

    @property
    def low(self) -> bool:
        return self.balance is not None and self.balance < self.minimum

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": self.chain,
            "address": self.address,
            "balance_wei": self.balance_wei,
            "balance": self.balance,
            "minimum": self.minimum,
            "low": self.low,
            "error": self.error,
        }


class RootRelay:
    """Submits commitments and drives unlocks across one pair of ledgers."""

    def __init__(
        self,
        store: BridgeStore,
        adapters: Dict[str, ChainAdapter],
        routes: Dict[str, str],
        settings: Optional[RelaySettings] = None,
        bus: Optional[EventBus] = None,
        alerts: Optional[AlertSink] = None,
        builder: Optional[CommitmentBuilder] = None,
        clock=time.monotonic,
    ):
        for source, destination in routes.items():
            if source not in adapters or destination not in adapters:
                raise ValueError(f"route {source} -> {destination} has no adapter")
        self.store = store
        self.adapters = dict(adapters)
        self.routes = dict(routes)
        self.settings = settings or RelaySettings()
        self.bus = bus
        self.alerts = alerts or LoggingAlertSink()
        self.builder = builder
        self._clock = clock
        self._last_balance_check: Optional[float] = None
        self._deferrals: Dict[str, int] = {}
        self._deferrals_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Balances
    # -------------------------------------------------------------------------

    def check_balances(self) -> Dict[str, BalanceReport]:
        """Read the relayer wallet on every ledger and alert on any below its minimum."""
        reports: Dict[str, BalanceReport] = {}
        for name, adapter in self.adapters.items():
            minimum = float(self.settings.min_balances.get(name, 0.0))
            try:
                report = BalanceReport(name, adapter.relayer_address, adapter.get_balance(), minimum)
            except ChainUnavailable as exc:
                _log.warning("balance check failed", chain=name, error=str(exc))
                report = BalanceReport(name, adapter.relayer_address, None, minimum, error=str(exc))
            reports[name] = report
            if report.balance is not None:
                _log.info("relayer balance", chain=name, address=report.address, balance=report.balance,
                          minimum=minimum)
            if report.low:
                self.alerts.send(
                    "Low relayer balance",
                    f"{name}: {report.balance} below minimum {minimum} ({report.address})",
                    Severity.WARNING,
                )
        self._last_balance_check = self._clock()
        return reports

    # -------------------------------------------------------------------------
    # Root submission
    # -------------------------------------------------------------------------

    def _committed_records(self, commitment: BlockCommitment) -> List[CommittedRecord]:
        locks = [
            r for r in self.store.get_locks_by_block(commitment.source_chain, commitment.block_number)
            if r.status is not LockStatus.FAILED
        ]
        if len(locks) != commitment.lock_count:
            raise StorageError(
                f"block {commitment.block_number} on {commitment.source_chain}: "
                f"{len(locks)} usable locks, commitment covers {commitment.lock_count}"
            )
        return [CommittedRecord.of(r.asset_id, r.recipient, r.lock_hash, r.block_number) for r in locks]

    def _reconcile_existing(self, commitment: BlockCommitment, onchain_root: str) -> SubmitOutcome:
        if normalize_hash(onchain_root) != commitment.root:
            self._root_conflict(commitment, onchain_root)
            return SubmitOutcome.CONFLICT
        _log.info("root already on destination, marking submitted", block=commitment.block_number,
                  source=commitment.source_chain, destination=commitment.destination_chain)
        self._mark_submitted(commitment, None, already_present=True)
        return SubmitOutcome.ALREADY_PRESENT

    def _root_conflict(self, commitment: BlockCommitment, onchain_root: str) -> None:
        message = (
            f"block {commitment.block_number} from {commitment.source_chain}: "
            f"{commitment.destination_chain} holds {onchain_root}, computed {commitment.root}"
        )
        _log.critical("destination root differs from computed root", error_code="ROOT_MISMATCH",
                      block=commitment.block_number, onchain=onchain_root, computed=commitment.root)
        if self.store.find_open_failed_transaction(
            "submit_root", source_chain=commitment.source_chain, block_number=commitment.block_number
        ) is None:
            self.store.record_failed_transaction(
                tx_type="submit_root",
                chain=commitment.destination_chain,
                payload=self._commitment_payload(commitment),
                error=message,
                max_retries=0,
            )
        self.alerts.send("Commitment root mismatch", message, Severity.CRITICAL)

    @staticmethod
    def _commitment_payload(commitment: BlockCommitment) -> Dict[str, Any]:
        return {
            "source_chain": commitment.source_chain,
            "destination_chain": commitment.destination_chain,
            "block_number": commitment.block_number,
            "root": commitment.root,
        }

    def _mark_submitted(self, commitment: BlockCommitment, tx_hash: Optional[str], already_present: bool) -> None:
        moved = self.store.mark_commitment_submitted(commitment.id, tx_hash)
        _log.info("commitment submitted", block=commitment.block_number, source=commitment.source_chain,
                  destination=commitment.destination_chain, tx_hash=tx_hash, locks=moved,
                  already_present=already_present)
        if self.bus is not None:
            self.bus.publish(CommitmentSubmitted(
                source_chain=commitment.source_chain,
                destination_chain=commitment.destination_chain,
                block_number=commitment.block_number,
                root=commitment.root,
                tx_hash=tx_hash or "",
                already_present=already_present,
            ))

    def _send(self, adapter: ChainAdapter, call: ContractCall, payload: Dict[str, Any]) -> TxReceipt:
        """Estimate, record, send and confirm one transaction."""
        gas_limit = int(adapter.estimate_gas(call) * self.settings.gas_multiplier)
        tx_id = self.store.record_relayer_tx(adapter.name, call.tx_type, payload)
        try:
            tx_hash = adapter.send_transaction(call, gas_limit)
            self.store.update_relayer_tx(tx_id, tx_hash=tx_hash)
            receipt = adapter.wait_for_receipt(
                tx_hash, self.settings.confirmation_blocks, self.settings.tx_timeout_seconds
            )
        except ChainError as exc:
            self.store.update_relayer_tx(tx_id, status=TxStatus.FAILED, error=str(exc),
                                         tx_hash=getattr(exc, "tx_hash", None) or None)
            raise
        self.store.update_relayer_tx(tx_id, status=TxStatus.CONFIRMED, block_number=receipt.block_number,
                                     gas_used=receipt.gas_used)
        return receipt

    @timed_operation(_log, "submit_commitment")
    def submit_commitment(self, commitment: BlockCommitment) -> SubmitOutcome:
        """Put one commitment on its destination verifier and drive its unlocks.

        Raises TransactionReverted for a rejection other than the
        already-submitted race, and ChainUnavailable for transient failures.
        """
        destination = self.adapters[commitment.destination_chain]
        onchain = destination.get_commitment_root(commitment.block_number)
        if onchain:
            outcome = self._reconcile_existing(commitment, onchain)
        else:
            call = ContractCall.submit_commitment(
                commitment.block_number, commitment.root, self._committed_records(commitment)
            )
            try:
                receipt = self._send(destination, call, self._commitment_payload(commitment))
            except TransactionReverted as exc:
                if not is_already_submitted(exc):
                    _log.error("root submission reverted", error_code="SUBMIT_REVERTED",
                               block=commitment.block_number, reason=exc.message)
                    self.alerts.send(
                        "Root submission reverted",
                        f"block {commitment.block_number} from {commitment.source_chain}: {exc.message}",
                        Severity.CRITICAL,
                    )
                    raise
                onchain = destination.get_commitment_root(commitment.block_number)
                if not onchain:
                    raise
                outcome = self._reconcile_existing(commitment, onchain)
            else:
                self._mark_submitted(commitment, receipt.tx_hash, already_present=False)
                outcome = SubmitOutcome.SUBMITTED

        if outcome is not SubmitOutcome.CONFLICT:
            self.drive_unlocks(commitment)
        return outcome

    def handle_submit_job(self, payload: Dict[str, Any]) -> SubmitOutcome:
        """Work queue entry point for root submission."""
        commitment = self.store.get_commitment(
            int(payload["block_number"]), str(payload["source_chain"]), str(payload["destination_chain"])
        )
        if commitment is None:
            raise StorageError(f"no commitment for {payload}")
        if commitment.submitted:
            self.drive_unlocks(commitment)
            return SubmitOutcome.ALREADY_PRESENT
        return self.submit_commitment(commitment)

    # -------------------------------------------------------------------------
    # Unlocks
    # -------------------------------------------------------------------------

    def _unlock_request(self, commitment: BlockCommitment, lock: LockRecord) -> Optional[UnlockRequest]:
        try:
            proof = self.store.get_proof(lock.lock_hash)
        except ProofNotFound:
            _log.warning("no proof for lock, skipping", lock_hash=lock.lock_hash, block=lock.block_number)
            return None
        if proof.root != commitment.root:
            _log.warning("proof belongs to a different root, skipping", lock_hash=lock.lock_hash,
                         proof_root=proof.root, root=commitment.root)
            return None
        return UnlockRequest(lock.asset_id, lock.recipient, lock.lock_hash, lock.block_number, tuple(proof.proof))

    def _delivered(self, destination: ChainAdapter, req: UnlockRequest, receipt: TxReceipt) -> None:
        self.store.record_unlock(UnlockRecord(
            chain=destination.name,
            asset_id=req.asset_id,
            recipient=req.recipient,
            lock_hash=req.lock_hash,
            tx_hash=receipt.tx_hash,
            block_number=receipt.block_number,
            gas_used=receipt.gas_used,
        ))
        _log.info("asset unlocked", chain=destination.name, asset_id=req.asset_id, lock_hash=req.lock_hash,
                  tx_hash=receipt.tx_hash)
        if self.bus is not None:
            self.bus.publish(AssetUnlocked(
                chain=destination.name,
                asset_id=req.asset_id,
                recipient=req.recipient,
                lock_hash=req.lock_hash,
                tx_hash=receipt.tx_hash,
            ))

    def _unlock_payload(self, commitment: BlockCommitment, req: UnlockRequest) -> Dict[str, Any]:
        return {
            "source_chain": commitment.source_chain,
            "destination_chain": commitment.destination_chain,
            "block_number": commitment.block_number,
            "asset_id": req.asset_id,
            "lock_hash": req.lock_hash,
        }

    def unlock_one(self, commitment: BlockCommitment, req: UnlockRequest) -> bool:
        """Present one proof. Returns True once the lock is consumed on the destination."""
        destination = self.adapters[commitment.destination_chain]
        try:
            receipt = self._send(destination, ContractCall.unlock_with_proof(req),
                                 self._unlock_payload(commitment, req))
        except TransactionReverted as exc:
            if is_already_processed(exc):
                _log.info("lock already processed on destination", lock_hash=req.lock_hash)
                self.store.advance_lock_status(req.lock_hash, LockStatus.UNLOCKED, chain=commitment.source_chain)
                return True
            _log.error("unlock reverted", error_code="UNLOCK_REVERTED", lock_hash=req.lock_hash,
                       asset_id=req.asset_id, reason=exc.message)
            if self.store.find_open_failed_transaction("unlock", lock_hash=req.lock_hash) is None:
                self.store.record_failed_transaction(
                    tx_type="unlock",
                    chain=destination.name,
                    payload=self._unlock_payload(commitment, req),
                    error=exc.message,
                    max_retries=self.settings.failed_replay_max_retries,
                    retry_delay_seconds=self.settings.failed_replay_delay_seconds,
                )
            return False
        self._delivered(destination, req, receipt)
        return True

    def _unlock_batch(self, commitment: BlockCommitment, requests: Sequence[UnlockRequest]) -> int:
        destination = self.adapters[commitment.destination_chain]
        if len(requests) == 1:
            return int(self.unlock_one(commitment, requests[0]))
        payload = {
            "source_chain": commitment.source_chain,
            "destination_chain": commitment.destination_chain,
            "block_number": commitment.block_number,
            "lock_hashes": [r.lock_hash for r in requests],
        }
        try:
            receipt = self._send(destination, ContractCall.batch_unlock_with_proof(requests), payload)
        except TransactionReverted as exc:
            _log.warning("batch unlock reverted, falling back to single unlocks", size=len(requests),
                         reason=exc.message)
            return sum(1 for req in requests if self.unlock_one(commitment, req))
        for req in requests:
            self._delivered(destination, req, receipt)
        return len(requests)

    def drive_unlocks(self, commitment: BlockCommitment) -> int:
        """Unlock every lock of a submitted commitment that is not unlocked yet.

        Returns the number of locks consumed on the destination during this
        call. Transient errors stop the walk; the next sweep picks it up. A
        lock deferred ``unlock_max_deferrals`` times is also recorded as a
        failed unlock.
        """
        locks = [
            r for r in self.store.get_locks_by_block(commitment.source_chain, commitment.block_number)
            if r.status not in (LockStatus.UNLOCKED, LockStatus.FAILED)
        ]
        requests = [req for req in (self._unlock_request(commitment, r) for r in locks) if req is not None]
        size = max(1, self.settings.unlock_batch_size)
        done = 0
        for start in range(0, len(requests), size):
            chunk = requests[start:start + size]
            try:
                if size == 1:
                    done += int(self.unlock_one(commitment, chunk[0]))
                else:
                    done += self._unlock_batch(commitment, chunk)
            except ChainUnavailable as exc:
                _log.warning("destination unavailable, unlocks deferred", chain=commitment.destination_chain,
                             block=commitment.block_number, error=str(exc))
                self._note_deferred(commitment, chunk, exc)
                break
            self._clear_deferred(chunk)
        return done

    def _clear_deferred(self, requests: Sequence[UnlockRequest]) -> None:
        with self._deferrals_lock:
            for req in requests:
                self._deferrals.pop(req.lock_hash, None)

    def _note_deferred(self, commitment: BlockCommitment, requests: Sequence[UnlockRequest], exc: Exception) -> None:
        with self._deferrals_lock:
            exhausted = []
            for req in requests:
                count = self._deferrals.get(req.lock_hash, 0) + 1
                self._deferrals[req.lock_hash] = count
                if count >= self.settings.unlock_max_deferrals:
                    exhausted.append(req)
        for req in exhausted:
            if self.store.find_open_failed_transaction("unlock", lock_hash=req.lock_hash) is not None:
                continue
            _log.error("unlock deferred too often", error_code="UNLOCK_DEFERRED", lock_hash=req.lock_hash,
                       chain=commitment.destination_chain, deferrals=self.settings.unlock_max_deferrals)
            self.store.record_failed_transaction(
                tx_type="unlock",
                chain=commitment.destination_chain,
                payload=self._unlock_payload(commitment, req),
                error=f"destination unavailable: {exc}",
                max_retries=self.settings.failed_replay_max_retries,
                retry_delay_seconds=self.settings.failed_replay_delay_seconds,
            )

    # -------------------------------------------------------------------------
    # Sweep and replay
    # -------------------------------------------------------------------------

    def sweep(self) -> Dict[str, int]:
        """Submit every pending commitment and retry unlocks of submitted blocks."""
        counts = {"submitted": 0, "already_present": 0, "conflict": 0, "errors": 0, "unlocked": 0}
        with correlation_scope():
            for commitment in self.store.get_pending_commitments():
                try:
                    outcome = self.submit_commitment(commitment)
                except (ChainError, StorageError) as exc:
                    counts["errors"] += 1
                    _log.warning("submission left for next sweep", block=commitment.block_number,
                                 source=commitment.source_chain, error=str(exc))
                    continue
                counts[outcome.value] += 1

            seen: set = set()
            for lock in self.store.get_locks_by_status(LockStatus.ROOT_SUBMITTED, limit=500):
                key = (lock.chain, lock.block_number)
                destination = self.routes.get(lock.chain)
                if key in seen or destination is None:
                    continue
                seen.add(key)
                commitment = self.store.get_commitment(lock.block_number, lock.chain, destination)
                if commitment is not None and commitment.submitted:
                    counts["unlocked"] += self.drive_unlocks(commitment)
        return counts

    def _replay_one(self, failed: FailedTransaction) -> bool:
        payload = failed.payload
        if failed.tx_type == "generate_proof":
            if self.builder is None:
                raise RuntimeError("no builder configured for proof replay")
            return self.builder.build_block(str(payload["chain"]), int(payload["block_number"])) is not None

        commitment = self.store.get_commitment(
            int(payload["block_number"]), str(payload["source_chain"]), str(payload["destination_chain"])
        )
        if commitment is None:
            raise StorageError(f"no commitment for {payload}")

        if failed.tx_type == "submit_root":
            if commitment.submitted:
                return True
            return self.submit_commitment(commitment) is not SubmitOutcome.CONFLICT

        if failed.tx_type == "unlock":
            lock = self.store.get_lock(str(payload["lock_hash"]), chain=commitment.source_chain)
            if lock.status is LockStatus.UNLOCKED:
                return True
            req = self._unlock_request(commitment, lock)
            if req is None:
                raise ProofNotFound(lock.lock_hash)
            return self.unlock_one(commitment, req)

        raise ValueError(f"cannot replay transaction type {failed.tx_type!r}")

    def replay_failed_transactions(self, ids: Optional[Sequence[int]] = None) -> Dict[str, int]:
        """Retry due failed transactions, or exactly ``ids`` when given."""
        if ids is None:
            entries = self.store.due_failed_transactions()
        else:
            entries = [f for f in (self.store.get_failed_transaction(i) for i in ids) if f and not f.resolved]
        counts = {"resolved": 0, "retrying": 0, "exhausted": 0}
        for failed in entries:
            with correlation_scope(f"replay-{failed.id}"):
                try:
                    ok = self._replay_one(failed)
                    error = "" if ok else "replay did not complete"
                except Exception as exc:
                    ok = False
                    error = f"{type(exc).__name__}: {exc}"
                if ok:
                    self.store.resolve_failed_transaction(failed.id)
                    _log.info("failed transaction resolved", failed_id=failed.id, tx_type=failed.tx_type)
                    counts["resolved"] += 1
                    continue
                self.store.note_failed_retry(failed.id, error, self.settings.failed_replay_delay_seconds)
                if failed.retry_count + 1 >= failed.max_retries:
                    counts["exhausted"] += 1
                    _log.error("failed transaction out of retries", error_code="REPLAY_EXHAUSTED",
                               failed_id=failed.id, tx_type=failed.tx_type, error=error)
                    self.alerts.send(
                        "Failed transaction needs manual review",
                        f"{failed.tx_type} #{failed.id} on {failed.chain}: {error}",
                        Severity.CRITICAL,
                    )
                else:
                    counts["retrying"] += 1
                    _log.warning("failed transaction replay did not succeed", failed_id=failed.id, error=error)
        return counts

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    def run_once(self) -> Dict[str, int]:
        if (
            self._last_balance_check is None
            or self._clock() - self._last_balance_check >= self.settings.balance_check_interval_seconds
        ):
            self.check_balances()
        counts = self.sweep()
        replayed = self.replay_failed_transactions()
        counts.update({f"replay_{k}": v for k, v in replayed.items()})
        return counts

    def run(self, stop_event: threading.Event) -> None:
        """Supervised relay loop. Stops starting new cycles once ``stop_event`` is set."""
        _log.info("relay started", interval=self.settings.relay_interval_seconds,
                  routes=", ".join(f"{s}->{d}" for s, d in self.routes.items()))
        while not stop_event.is_set():
            wait = self.settings.relay_interval_seconds
            try:
                self.run_once()
            except Exception:
                _log.error("relay cycle failed", error_code="RELAY_CYCLE", exc_info=True)
                if self.settings.pause_on_error:
                    wait = self.settings.error_pause_seconds
            stop_event.wait(wait)
        _log.info("relay stopped")

