"""
Lock Event Indexer tests: start position, windowed catch-up, confirmation
depth, resume and idempotent re-delivery.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading

import pytest

from conftest import MIRROR, ORIGIN
from lockstep.bridge.chain import ChainUnavailable, LocalChainAdapter
from lockstep.bridge.events import AssetUnlocked, EventBus, EventRecorder, LockObserved
from lockstep.bridge.indexer import LockEventIndexer
from lockstep.bridge.storage import BridgeStore, JobStatus, LockStatus


class Down:
    name = "down"
    relayer_address = "0x" + "00" * 20

    def get_block_number(self) -> int:
        raise ChainUnavailable("connection refused")


class TestStart:
    """Where a fresh or restarted indexer begins."""

    def test_fresh_indexer_starts_at_head(self, bridge, accounts):
        """Locks mined before the first start are not back-filled."""
        bridge.origin.mint_native(1, accounts.alice)
        bridge.lock(bridge.origin, accounts.alice, 1, accounts.bob)

        indexer = LockEventIndexer(bridge.adapters[ORIGIN], BridgeStore("sqlite://"))
        indexer.store.create_schema()
        assert indexer.start() == bridge.origin.block_number
        assert indexer.catch_up() == 0
        assert indexer.store.get_locks_by_status(LockStatus.PENDING) == []

    def test_restart_resumes_from_checkpoint(self, bridge, accounts):
        bridge.origin.mint_native(1, accounts.alice)
        bridge.lock(bridge.origin, accounts.alice, 1, accounts.bob)
        bridge.index()
        checkpoint = bridge.store.get_checkpoint(ORIGIN)

        bridge.origin.mint_native(2, accounts.alice)
        lock_hash, _ = bridge.lock(bridge.origin, accounts.alice, 2, accounts.bob)

        restarted = LockEventIndexer(bridge.adapters[ORIGIN], bridge.store)
        assert restarted.start() == checkpoint
        restarted.catch_up()
        assert bridge.store.get_lock(lock_hash).asset_id == 2

    def test_window_size_must_be_positive(self, bridge, store):
        with pytest.raises(ValueError):
            LockEventIndexer(bridge.adapters[ORIGIN], store, window_size=0)


class TestCatchUp:
    """Recording locks and scheduling their builds."""

    def test_lock_is_recorded_once_with_a_build_job(self, bridge, accounts):
        bridge.origin.mint_native(7, accounts.alice)
        lock_hash, block = bridge.lock(bridge.origin, accounts.alice, 7, accounts.bob)

        assert bridge.index() >= 1
        record = bridge.store.get_lock(lock_hash)
        assert record.chain == ORIGIN
        assert record.block_number == block
        assert record.recipient == accounts.bob
        assert record.status is LockStatus.PENDING
        assert bridge.store.count_jobs("build_commitment", JobStatus.QUEUED) == 1

        (event,) = bridge.events.of_type(LockObserved)
        assert event.lock_hash == lock_hash
        assert event.asset_id == 7

        # Nothing new on a second pass.
        assert bridge.index() == 0
        assert len(bridge.events.of_type(LockObserved)) == 1

    def test_windows_cover_the_range(self, bridge, store):
        indexer = LockEventIndexer(bridge.adapters[ORIGIN], store, window_size=2)
        start = indexer.start()
        bridge.origin.mine(5)
        assert indexer.catch_up() == 3
        assert indexer.last_block == start + 5
        assert store.get_checkpoint(ORIGIN) == start + 5

    def test_unconfirmed_blocks_wait(self, bridge, store, accounts):
        """Blocks inside the confirmation depth are not read yet."""
        indexer = LockEventIndexer(bridge.adapters[ORIGIN], store, confirmation_blocks=2)
        indexer.start()
        bridge.origin.mint_native(3, accounts.alice)
        lock_hash, _ = bridge.lock(bridge.origin, accounts.alice, 3, accounts.bob)

        indexer.catch_up()
        assert store.get_locks_by_status(LockStatus.PENDING) == []
        bridge.origin.mine(2)
        indexer.catch_up()
        assert store.get_lock(lock_hash).asset_id == 3

    def test_redelivered_window_changes_nothing(self, bridge, accounts):
        bridge.origin.mint_native(4, accounts.alice)
        _, block = bridge.lock(bridge.origin, accounts.alice, 4, accounts.bob)
        bridge.index()

        (origin_indexer, _) = bridge.indexers
        again = origin_indexer.process_window(block, block)
        assert again.new_locks == []
        assert again.jobs_enqueued == 0
        assert bridge.store.count_jobs("build_commitment") == 1

    def test_batch_lock_yields_one_build_for_the_block(self, bridge, accounts):
        for asset_id in (10, 11, 12):
            bridge.origin.mint_native(asset_id, accounts.alice)
        receipt = bridge.origin.execute(accounts.alice, "lock_batch", [10, 11, 12], accounts.bob)
        bridge.index()
        assert len(bridge.store.get_locks_by_block(ORIGIN, receipt.block_number)) == 3
        assert bridge.store.count_jobs("build_commitment") == 1


class TestUnlockNotifications:
    """Unlocks observed on the destination close their locks."""

    def test_unlock_seen_by_an_independent_indexer(self, bridge, accounts):
        bus = EventBus()
        seen = EventRecorder(bus)
        other = BridgeStore("sqlite://")
        other.create_schema()
        watcher = LockEventIndexer(LocalChainAdapter(bridge.mirror, accounts.relayer), other, bus)
        watcher.start()

        bridge.origin.mint_native(5, accounts.alice)
        lock_hash, _ = bridge.lock(bridge.origin, accounts.alice, 5, accounts.bob)
        bridge.deliver()
        assert bridge.store.get_lock(lock_hash).status is LockStatus.UNLOCKED

        watcher.catch_up()
        unlock = other.get_unlock(lock_hash)
        assert unlock.chain == MIRROR
        assert unlock.recipient == accounts.bob
        (event,) = seen.of_type(AssetUnlocked)
        assert event.asset_id == 5

        # The lock arrives later and is stored already closed.
        origin_watcher = LockEventIndexer(LocalChainAdapter(bridge.origin, accounts.relayer), other)
        origin_watcher.process_window(0, bridge.origin.block_number)
        assert other.get_lock(lock_hash).status is LockStatus.UNLOCKED


def test_run_survives_an_unavailable_ledger(store):
    indexer = LockEventIndexer(Down(), store, poll_interval=0.01)
    stop = threading.Event()
    worker = threading.Thread(target=indexer.run, args=(stop,))
    worker.start()
    stop.wait(0.05)
    stop.set()
    worker.join(timeout=2.0)
    assert not worker.is_alive()
    assert indexer.last_block is None


class Flaky(LocalChainAdapter):
    """Fails the first head read with an error no adapter maps."""

    def __init__(self, *args):
        super().__init__(*args)
        self.calls = 0

    def get_block_number(self) -> int:
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("unexpected rpc payload")
        return super().get_block_number()


def test_run_survives_an_unexpected_error(store, ledgers, accounts):
    """One failed cycle is logged and the next cycle starts the indexer."""
    origin, _ = ledgers
    adapter = Flaky(origin, accounts.relayer)
    indexer = LockEventIndexer(adapter, store, poll_interval=0.01)
    stop = threading.Event()
    worker = threading.Thread(target=indexer.run, args=(stop,))
    worker.start()
    try:
        for _ in range(200):
            if indexer.last_block is not None:
                break
            stop.wait(0.01)
        assert worker.is_alive()
    finally:
        stop.set()
        worker.join(timeout=2.0)
    assert adapter.calls >= 2
    assert indexer.last_block == origin.block_number
    assert store.get_checkpoint(ORIGIN) == origin.block_number
