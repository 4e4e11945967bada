"""
Lock Event Indexer

One indexer per ledger. It keeps a monotonically increasing checkpoint in
storage and records every lock and unlock notification up to the confirmed
head exactly once:

    start:      checkpoint  ─or─  max recorded block  ─or─  current head
    catch-up:   (checkpoint, head - confirmations] in windows of window_size
    each window: fetch locks + unlocks ─▶ apply_window (one transaction)
                 ─▶ publish LockObserved / AssetUnlocked

A crash mid catch-up resumes at the last committed window. Recording is
idempotent, so re-delivering a window is harmless.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import Optional

from lockstep.bridge.chain import ChainAdapter, ChainUnavailable
from lockstep.bridge.events import AssetUnlocked, EventBus, LockObserved
from lockstep.bridge.observability import BridgeLayer, correlation_scope, get_logger
from lockstep.bridge.storage import BridgeStore, BuildJobSpec, LockRecord, UnlockRecord, WindowResult
from lockstep.merkle import normalize_address, normalize_hash


class LockEventIndexer:
    """Polls one ledger for verifier notifications and records them."""

    def __init__(
        self,
        adapter: ChainAdapter,
        store: BridgeStore,
        bus: Optional[EventBus] = None,
        window_size: int = 1000,
        confirmation_blocks: int = 0,
        poll_interval: float = 12.0,
        build_job: Optional[BuildJobSpec] = BuildJobSpec(),
    ):
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.adapter = adapter
        self.chain = adapter.name
        self.store = store
        self.bus = bus
        self.window_size = window_size
        self.confirmation_blocks = max(0, confirmation_blocks)
        self.poll_interval = poll_interval
        self.build_job = build_job
        self.last_block: Optional[int] = None
        self._log = get_logger(f"indexer-{self.chain}", BridgeLayer.INDEXER)

    def _safe_head(self) -> int:
        return max(0, self.adapter.get_block_number() - self.confirmation_blocks)

    def start(self) -> int:
        """Resolve the starting block. New deployments begin at the head."""
        last = self.store.get_last_processed_block(self.chain)
        if last is None:
            last = self._safe_head()
            self.store.set_checkpoint(self.chain, last)
            self._log.info("no checkpoint, starting at head", block=last)
        else:
            self._log.info("resuming from checkpoint", block=last)
        self.last_block = last
        return last

    def process_window(self, from_block: int, to_block: int) -> WindowResult:
        """Record every notification in ``[from_block, to_block]`` and advance the checkpoint."""
        lock_events = self.adapter.get_lock_events(from_block, to_block)
        unlock_events = self.adapter.get_unlock_events(from_block, to_block)

        locks = [
            LockRecord(
                chain=self.chain,
                asset_id=e.asset_id,
                source_owner=normalize_address(e.source_owner),
                recipient=normalize_address(e.recipient),
                block_number=e.block_number,
                lock_hash=normalize_hash(e.lock_hash),
                tx_hash=e.tx_hash,
                log_index=e.log_index,
            )
            for e in lock_events
        ]
        unlocks = [
            UnlockRecord(
                chain=self.chain,
                asset_id=e.asset_id,
                recipient=normalize_address(e.recipient),
                lock_hash=normalize_hash(e.lock_hash),
                tx_hash=e.tx_hash,
                block_number=e.block_number,
            )
            for e in unlock_events
        ]
        result = self.store.apply_window(self.chain, to_block, locks, unlocks, self.build_job)
        self.last_block = max(self.last_block or 0, to_block)

        for record in result.new_locks:
            self._log.info("lock recorded", asset_id=record.asset_id, lock_hash=record.lock_hash,
                           block=record.block_number)
            if self.bus is not None:
                self.bus.publish(LockObserved(
                    chain=self.chain,
                    asset_id=record.asset_id,
                    source_owner=record.source_owner,
                    recipient=record.recipient,
                    lock_hash=record.lock_hash,
                    block_number=record.block_number,
                    tx_hash=record.tx_hash,
                ))
        for unlock in result.unlocked:
            self._log.info("unlock recorded", asset_id=unlock.asset_id, lock_hash=unlock.lock_hash,
                           block=unlock.block_number)
            if self.bus is not None:
                self.bus.publish(AssetUnlocked(
                    chain=self.chain,
                    asset_id=unlock.asset_id,
                    recipient=unlock.recipient,
                    lock_hash=unlock.lock_hash,
                    tx_hash=unlock.tx_hash,
                ))
        return result

    def catch_up(self, head: Optional[int] = None) -> int:
        """Process every window up to ``head``. Returns the number of windows."""
        if self.last_block is None:
            self.start()
        head = self._safe_head() if head is None else head
        windows = 0
        while self.last_block < head:
            from_block = self.last_block + 1
            to_block = min(head, self.last_block + self.window_size)
            result = self.process_window(from_block, to_block)
            windows += 1
            if result.new_locks or result.unlocked:
                self._log.debug("window processed", from_block=from_block, to_block=to_block,
                                locks=len(result.new_locks), unlocks=len(result.unlocked),
                                builds=result.jobs_enqueued)
        return windows

    def poll_once(self) -> int:
        with correlation_scope():
            return self.catch_up()

    def run(self, stop_event: threading.Event) -> None:
        """Poll until ``stop_event`` is set. Transient ledger errors wait for the next cycle."""
        self._log.info("indexer started", poll_interval=self.poll_interval, window_size=self.window_size)
        while not stop_event.is_set():
            try:
                if self.last_block is None:
                    self.start()
                self.poll_once()
            except ChainUnavailable as exc:
                self._log.warning("ledger unavailable, retrying next cycle", error=str(exc))
            except Exception:
                self._log.error("indexer cycle failed", error_code="INDEXER_CYCLE", exc_info=True)
            stop_event.wait(self.poll_interval)
        self._log.info("indexer stopped", last_block=self.last_block)
