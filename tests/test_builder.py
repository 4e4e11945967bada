"""
Commitment Builder tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import threading

import pytest
from web3 import Web3

from conftest import MIRROR, ORIGIN
from lockstep.bridge.alerts import RecordingAlertSink, Severity
from lockstep.bridge.builder import CommitmentBuilder
from lockstep.bridge.events import ProofGenerated
from lockstep.bridge.queue import SUBMIT_ROOT
from lockstep.bridge.storage import JobStatus, LockRecord, LockStatus, ProofNotFound
from lockstep.merkle import leaf_hash, verify_proof

ZERO = "0x" + "00" * 20
RECIPIENT = Web3.to_checksum_address("0x" + "22" * 20)


def _record(asset_id: int, block: int = 300, recipient: str = RECIPIENT) -> LockRecord:
    return LockRecord(
        chain=ORIGIN,
        asset_id=asset_id,
        source_owner=Web3.to_checksum_address("0x" + "11" * 20),
        recipient=recipient,
        block_number=block,
        lock_hash=Web3.to_hex(Web3.keccak(text=f"lock-{asset_id}-{block}")),
        tx_hash=Web3.to_hex(Web3.keccak(text=f"tx-{asset_id}")),
    )


@pytest.fixture
def alerts():
    return RecordingAlertSink()


@pytest.fixture
def builder(store, alerts):
    return CommitmentBuilder(store, {ORIGIN: MIRROR}, alerts=alerts)


class TestBuild:
    """Commitments and proofs from indexed locks."""

    def test_single_lock_block(self, bridge, accounts):
        """A block with one lock commits to that lock's leaf with an empty proof."""
        bridge.origin.mint_native(1, accounts.alice)
        lock_hash, block = bridge.lock(bridge.origin, accounts.alice, 1, accounts.bob)
        bridge.index()

        result = bridge.builder.build_block(ORIGIN, block)
        assert result.lock_count == 1
        assert result.root == leaf_hash(1, accounts.bob, lock_hash, block)

        proof = bridge.builder.get_proof(lock_hash)
        assert proof.proof == []
        assert proof.root == result.root
        assert bridge.store.get_lock(lock_hash).status is LockStatus.PROOF_GENERATED
        assert bridge.store.count_jobs(SUBMIT_ROOT, JobStatus.QUEUED) == 1
        (event,) = bridge.events.of_type(ProofGenerated)
        assert event.block_number == block

    def test_every_proof_verifies_against_the_root(self, bridge, accounts):
        ids = [20, 21, 22, 23, 24]
        for asset_id in ids:
            bridge.origin.mint_native(asset_id, accounts.alice)
        receipt = bridge.origin.execute(accounts.alice, "lock_batch", ids, accounts.bob)
        bridge.index()

        result = bridge.builder.build_block(ORIGIN, receipt.block_number)
        assert result.lock_count == 5
        commitment = bridge.store.get_commitment(receipt.block_number, ORIGIN, MIRROR)
        assert commitment.root == result.root
        assert commitment.lock_count == 5
        for record in bridge.store.get_locks_by_block(ORIGIN, receipt.block_number):
            proof = bridge.store.get_proof(record.lock_hash)
            leaf = leaf_hash(record.asset_id, record.recipient, record.lock_hash, record.block_number)
            assert proof.leaf == leaf
            assert verify_proof(leaf, proof.proof, result.root)

    def test_rebuild_is_idempotent(self, store, builder):
        store.create_lock_record(_record(1))
        store.create_lock_record(_record(2))
        first = builder.build_block(ORIGIN, 300)
        second = builder.handle_job({"chain": ORIGIN, "block_number": 300})
        assert first.root == second.root
        assert first.commitment.id == second.commitment.id
        assert store.count_jobs(SUBMIT_ROOT) == 1

    def test_empty_block_builds_nothing(self, builder, store):
        assert builder.build_block(ORIGIN, 999) is None
        assert store.list_commitments() == []

    def test_unknown_source_chain(self, builder):
        with pytest.raises(ValueError):
            builder.build_block("solana", 1)

    def test_missing_proof(self, builder):
        with pytest.raises(ProofNotFound):
            builder.get_proof("0x" + "ab" * 32)


class TestInFlight:
    """One build per (chain, block) at a time in a process."""

    def test_concurrent_request_is_dropped(self, store, builder, monkeypatch):
        store.create_lock_record(_record(1))
        entered = threading.Event()
        release = threading.Event()
        original = store.get_locks_by_block

        def slow(chain, block_number):
            entered.set()
            release.wait(2.0)
            return original(chain, block_number)

        monkeypatch.setattr(store, "get_locks_by_block", slow)
        results = []
        worker = threading.Thread(target=lambda: results.append(builder.build_block(ORIGIN, 300)))
        worker.start()
        assert entered.wait(2.0)

        assert builder.is_building(ORIGIN, 300)
        assert builder.build_block(ORIGIN, 300) is None
        release.set()
        worker.join(timeout=5.0)

        assert results[0].lock_count == 1
        assert not builder.is_building(ORIGIN, 300)


class TestValidation:
    """Bad records are quarantined and excluded."""

    def test_null_recipient_is_excluded(self, store, builder, alerts):
        good, bad = _record(1), _record(2, recipient=ZERO)
        store.create_lock_record(good)
        store.create_lock_record(bad)

        result = builder.build_block(ORIGIN, 300)
        assert result.lock_count == 1
        assert result.excluded == [bad.lock_hash]
        assert result.root == leaf_hash(1, RECIPIENT, good.lock_hash, 300)

        quarantined = store.get_lock(bad.lock_hash)
        assert quarantined.status is LockStatus.FAILED
        assert quarantined.error == "null recipient"
        (failed,) = store.list_failed_transactions()
        assert failed.tx_type == "invalid_lock"
        assert alerts.titles() == ["Invalid lock record"]
        assert alerts.alerts[0].severity is Severity.CRITICAL

        # A rebuild skips the quarantined record without alerting again.
        assert builder.build_block(ORIGIN, 300).root == result.root
        assert len(alerts.alerts) == 1

    def test_block_of_only_bad_records(self, store, builder):
        store.create_lock_record(_record(3, recipient=ZERO))
        assert builder.build_block(ORIGIN, 300) is None
        assert store.get_pending_commitments() == []

    def test_conflict_with_submitted_root(self, store, builder, alerts):
        """A different root for an already submitted block is reported, never overwritten."""
        store.create_lock_record(_record(1))
        first = builder.build_block(ORIGIN, 300)
        store.mark_commitment_submitted(first.commitment.id, "0x" + "aa" * 32)

        store.create_lock_record(_record(9))
        assert builder.build_block(ORIGIN, 300) is None
        assert store.get_commitment(300, ORIGIN, MIRROR).root == first.root
        assert "Commitment root conflict" in alerts.titles()
        assert store.find_open_failed_transaction("generate_proof", block_number=300) is not None
