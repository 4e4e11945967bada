"""
Commitment Verifier Test Suite

On-ledger behaviour of the verifier pair, exercised through SimulatedLedger:
- lock custody and lock hashes
- commitment submission rules
- proof-checked unlocks, replay protection and batch atomicity
- the custody round trip origin -> mirror -> origin -> mirror

Run with: pytest tests/test_verifier.py -v

Copyright (c) 2026 Momentum. All rights reserved.
"""

from contextlib import contextmanager
from typing import Dict, List, Sequence, Tuple

import pytest
from web3 import Web3

from lockstep.bridge.ledger import SimulatedLedger, random_address
from lockstep.bridge.verifier import (
    AssetRegistry,
    CallContext,
    CommitmentVerifier,
    CommittedRecord,
    RevertReason,
    UnlockRequest,
    VerifierError,
    VerifierRole,
)
from lockstep.merkle import ZERO_ADDRESS, ZERO_HASH, block_commitment, leaf_hash, lock_commitment_hash


def lock(ledger: SimulatedLedger, sender: str, asset_id: int, recipient: str) -> Tuple[str, int]:
    receipt = ledger.execute(sender, "lock", asset_id, recipient)
    return receipt.logs[0].args["lockHash"], receipt.block_number


def commit(
    ledger: SimulatedLedger, submitter: str, block_number: int, entries: Sequence[Tuple[int, str, str]]
) -> Dict[str, List[str]]:
    """Submit a root over ``entries`` (asset, recipient, lock hash) and return the proofs."""
    locks = [
        {"asset_id": a, "recipient": r, "lock_hash": h, "block_number": block_number}
        for a, r, h in entries
    ]
    computed = block_commitment(locks)
    records = [CommittedRecord.of(a, r, h, block_number) for a, r, h in entries]
    ledger.execute(submitter, "submit_commitment", block_number, computed["root"], len(records), records)
    return computed["proofs"]


@contextmanager
def rejected(reason: RevertReason):
    with pytest.raises(VerifierError) as info:
        yield info
    assert info.value.reason is reason, str(info.value)


def _fake_hash(label: str) -> str:
    return Web3.to_hex(Web3.keccak(text=label))


class TestLock:
    """Taking custody on the source ledger."""

    def test_lock_takes_custody_and_emits_hash(self, ledgers, accounts):
        """A lock moves the asset to the verifier and emits the derived hash."""
        origin, _ = ledgers
        origin.mint_native(1, accounts.alice)
        receipt = origin.execute(accounts.alice, "lock", 1, accounts.bob)
        verifier = origin.verifier

        (log,) = receipt.logs
        assert log.name == "AssetLocked"
        assert log.args["lockHash"] == lock_commitment_hash(
            1, accounts.alice, accounts.bob, receipt.block_number, verifier.address
        )
        assert verifier.is_locked(1)
        assert verifier.registry.owner_of(1) == verifier.address

    def test_lock_rejections(self, ledgers, accounts):
        """Every precondition of lock has its own reason."""
        origin, mirror = ledgers
        origin.mint_native(1, accounts.alice)

        with rejected(RevertReason.INVALID_RECIPIENT):
            origin.execute(accounts.alice, "lock", 1, ZERO_ADDRESS)
        with rejected(RevertReason.NOT_TOKEN_OWNER):
            origin.execute(accounts.eve, "lock", 1, accounts.bob)
        with rejected(RevertReason.TOKEN_NOT_ACTIVE):
            mirror.execute(accounts.alice, "lock", 1, accounts.bob)
        with rejected(RevertReason.TOKEN_NOT_ACTIVE):
            origin.execute(accounts.alice, "lock", 404, accounts.bob)

        lock(origin, accounts.alice, 1, accounts.bob)
        with rejected(RevertReason.TOKEN_ALREADY_LOCKED):
            origin.execute(accounts.alice, "lock", 1, accounts.bob)

    def test_lock_requires_peer(self, accounts):
        """An unlinked verifier refuses to take custody."""
        ledger = SimulatedLedger("lonely", 7)
        ledger.deploy_verifier(VerifierRole.ORIGIN, accounts.owner)
        ledger.mint_native(1, accounts.alice)
        with rejected(RevertReason.PEER_NOT_CONFIGURED):
            ledger.execute(accounts.alice, "lock", 1, accounts.bob)

    def test_batch_lock_salts_each_hash(self, ledgers, accounts):
        """Assets locked in one call share a block but never a hash."""
        origin, _ = ledgers
        for asset_id in (1, 2, 3):
            origin.mint_native(asset_id, accounts.alice)
        receipt = origin.execute(accounts.alice, "lock_batch", [1, 2, 3], accounts.bob)
        hashes = [log.args["lockHash"] for log in receipt.logs]
        assert len(set(hashes)) == 3
        assert hashes[2] == lock_commitment_hash(
            3, accounts.alice, accounts.bob, receipt.block_number, origin.verifier.address, batch_index=2
        )

    def test_batch_lock_is_atomic(self, ledgers, accounts):
        """One unlockable asset rejects the whole batch."""
        origin, _ = ledgers
        origin.mint_native(1, accounts.alice)
        origin.mint_native(2, accounts.eve)
        with rejected(RevertReason.NOT_TOKEN_OWNER):
            origin.execute(accounts.alice, "lock_batch", [1, 2], accounts.bob)
        assert not origin.verifier.is_locked(1)
        with rejected(RevertReason.EMPTY_BATCH):
            origin.execute(accounts.alice, "lock_batch", [], accounts.bob)


class TestCommitments:
    """Root submission on the destination verifier."""

    def test_only_submitter_may_commit(self, ledgers, accounts):
        """Roots come from the configured submitter only."""
        _, mirror = ledgers
        record = CommittedRecord.of(1, accounts.bob, _fake_hash("a"), 10)
        with rejected(RevertReason.ONLY_ROOT_SUBMITTER):
            mirror.execute(accounts.eve, "submit_commitment", 10, _fake_hash("root"), 1, [record])

    def test_root_is_write_once(self, ledgers, accounts):
        """A second root for the same block is refused."""
        _, mirror = ledgers
        commit(mirror, accounts.relayer, 10, [(1, accounts.bob, _fake_hash("a"))])
        with rejected(RevertReason.ROOT_ALREADY_SET):
            commit(mirror, accounts.relayer, 10, [(2, accounts.bob, _fake_hash("b"))])

    def test_submission_validation(self, ledgers, accounts):
        """Malformed submissions are rejected before anything is stored."""
        _, mirror = ledgers
        rec = CommittedRecord.of(1, accounts.bob, _fake_hash("a"), 10)
        with rejected(RevertReason.INVALID_ROOT):
            mirror.execute(accounts.relayer, "submit_commitment", 10, ZERO_HASH, 1, [rec])
        with rejected(RevertReason.LOCK_COUNT_MISMATCH):
            mirror.execute(accounts.relayer, "submit_commitment", 10, _fake_hash("r"), 0, [])
        with rejected(RevertReason.LOCK_COUNT_MISMATCH):
            mirror.execute(accounts.relayer, "submit_commitment", 10, _fake_hash("r"), 2, [rec])
        with rejected(RevertReason.BLOCK_NUMBER_MISMATCH):
            mirror.execute(accounts.relayer, "submit_commitment", 11, _fake_hash("r"), 1, [rec])
        with rejected(RevertReason.DUPLICATE_LOCK_RECORD):
            mirror.execute(accounts.relayer, "submit_commitment", 10, _fake_hash("r"), 2, [rec, rec])
        assert mirror.verifier.commitment_root(10) is None

    def test_clear_root_only_before_use(self, ledgers, accounts):
        """The owner can withdraw an unused root; a used one is permanent."""
        origin, mirror = ledgers
        origin.mint_native(1, accounts.alice)
        lock_hash, block = lock(origin, accounts.alice, 1, accounts.bob)

        commit(mirror, accounts.relayer, block, [(1, accounts.eve, lock_hash)])
        with rejected(RevertReason.ONLY_OWNER):
            mirror.execute(accounts.relayer, "clear_root", block)
        mirror.execute(accounts.owner, "clear_root", block)
        assert mirror.verifier.commitment_root(block) is None

        proofs = commit(mirror, accounts.relayer, block, [(1, accounts.bob, lock_hash)])
        mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block, proofs[lock_hash])
        with rejected(RevertReason.ROOT_ALREADY_USED):
            mirror.execute(accounts.owner, "clear_root", block)


class TestUnlock:
    """Proof-checked delivery on the destination verifier."""

    def _locked(self, ledgers, accounts):
        origin, mirror = ledgers
        origin.mint_native(1, accounts.alice)
        lock_hash, block = lock(origin, accounts.alice, 1, accounts.bob)
        return origin, mirror, lock_hash, block

    def test_first_arrival_mints(self, ledgers, accounts):
        """The mirror mints an asset it has never seen to the recipient."""
        origin, mirror, lock_hash, block = self._locked(ledgers, accounts)
        proofs = commit(mirror, accounts.relayer, block, [(1, accounts.bob, lock_hash)])
        assert proofs[lock_hash] == []

        receipt = mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block, [])
        assert receipt.logs[0].name == "AssetUnlocked"
        assert receipt.logs[0].args["minted"] is True
        assert mirror.verifier.registry.owner_of(1) == accounts.bob
        assert mirror.verifier.is_processed(lock_hash)
        assert mirror.verifier.is_active(1)
        # Custody on the origin is unchanged by a mirror unlock.
        assert origin.verifier.is_locked(1)

    def test_two_lock_block_unlocks_out_of_order(self, ledgers, accounts):
        """Each leaf of a two-lock block is proven by its sibling and unlocks on its own."""
        origin, mirror = ledgers
        origin.mint_native(1, accounts.alice)
        origin.mint_native(2, accounts.alice)
        receipt = origin.execute(accounts.alice, "lock_batch", [1, 2], accounts.bob)
        block = receipt.block_number
        h1, h2 = [log.args["lockHash"] for log in receipt.logs]
        leaf1 = leaf_hash(1, accounts.bob, h1, block)
        leaf2 = leaf_hash(2, accounts.bob, h2, block)

        proofs = commit(mirror, accounts.relayer, block, [(1, accounts.bob, h1), (2, accounts.bob, h2)])
        assert proofs[h1] == [leaf2]
        assert proofs[h2] == [leaf1]

        mirror.execute(accounts.relayer, "unlock_with_proof", 2, accounts.bob, h2, block, proofs[h2])
        assert mirror.verifier.is_processed(h2)
        assert not mirror.verifier.is_processed(h1)
        assert mirror.verifier.registry.owner_of(2) == accounts.bob

        mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, h1, block, proofs[h1])
        assert mirror.verifier.is_processed(h1)
        assert mirror.verifier.registry.assets_of(accounts.bob) == [1, 2]

    def test_replay_is_rejected_without_state_change(self, ledgers, accounts):
        """A consumed lock hash can never unlock again."""
        _, mirror, lock_hash, block = self._locked(ledgers, accounts)
        commit(mirror, accounts.relayer, block, [(1, accounts.bob, lock_hash)])
        mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block, [])

        logs_before = len(mirror.logs)
        with rejected(RevertReason.LOCK_ALREADY_PROCESSED):
            mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block, [])
        receipt = mirror.transact(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block, [])
        assert not receipt.succeeded
        assert receipt.revert_reason.startswith(RevertReason.LOCK_ALREADY_PROCESSED.value)
        assert len(mirror.logs) == logs_before
        assert mirror.verifier.registry.owner_of(1) == accounts.bob

    def test_unlock_needs_a_root(self, ledgers, accounts):
        """No root for the block means no unlock."""
        _, mirror, lock_hash, block = self._locked(ledgers, accounts)
        with rejected(RevertReason.ROOT_NOT_SET):
            mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block, [])

    def test_unlock_must_match_committed_record(self, ledgers, accounts):
        """Redirecting an asset to another recipient fails the record check."""
        _, mirror, lock_hash, block = self._locked(ledgers, accounts)
        commit(mirror, accounts.relayer, block, [(1, accounts.bob, lock_hash)])
        with rejected(RevertReason.LOCK_RECORD_MISMATCH):
            mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.eve, lock_hash, block, [])
        with rejected(RevertReason.LOCK_RECORD_MISMATCH):
            mirror.execute(accounts.relayer, "unlock_with_proof", 2, accounts.bob, lock_hash, block, [])

    def test_bad_proof_is_rejected(self, ledgers, accounts):
        """A proof that does not fold to the root fails."""
        _, mirror, lock_hash, block = self._locked(ledgers, accounts)
        commit(mirror, accounts.relayer, block, [(1, accounts.bob, lock_hash)])
        with rejected(RevertReason.INVALID_PROOF):
            mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block,
                           [_fake_hash("junk")])

    def test_submitter_cannot_release_an_unlocked_origin_asset(self, ledgers, accounts):
        """A committed record for an asset the origin never locked is refused."""
        origin, _ = ledgers
        origin.mint_native(5, accounts.alice)
        fake = _fake_hash("forged")
        proofs = commit(origin, accounts.relayer, 77, [(5, accounts.eve, fake)])
        with rejected(RevertReason.TOKEN_NOT_LOCKED):
            origin.execute(accounts.relayer, "unlock_with_proof", 5, accounts.eve, fake, 77, proofs[fake])
        assert origin.verifier.registry.owner_of(5) == accounts.alice

    def test_pause_blocks_lock_and_unlock(self, ledgers, accounts):
        """Paused verifiers refuse custody changes until unpaused."""
        origin, mirror, lock_hash, block = self._locked(ledgers, accounts)
        commit(mirror, accounts.relayer, block, [(1, accounts.bob, lock_hash)])
        with rejected(RevertReason.ONLY_OWNER):
            mirror.execute(accounts.eve, "pause")
        mirror.execute(accounts.owner, "pause")
        with rejected(RevertReason.BRIDGE_PAUSED):
            mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block, [])
        mirror.execute(accounts.owner, "unpause")
        mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, lock_hash, block, [])

        origin.mint_native(2, accounts.alice)
        origin.execute(accounts.owner, "pause")
        with rejected(RevertReason.BRIDGE_PAUSED):
            origin.execute(accounts.alice, "lock", 2, accounts.bob)


class TestBatchUnlock:
    """Atomic multi-lock delivery."""

    def _batch(self, ledgers, accounts, n=3):
        origin, mirror = ledgers
        ids = list(range(1, n + 1))
        for asset_id in ids:
            origin.mint_native(asset_id, accounts.alice)
        receipt = origin.execute(accounts.alice, "lock_batch", ids, accounts.bob)
        block = receipt.block_number
        hashes = [log.args["lockHash"] for log in receipt.logs]
        proofs = commit(mirror, accounts.relayer, block, [(a, accounts.bob, h) for a, h in zip(ids, hashes)])
        requests = [
            UnlockRequest(a, accounts.bob, h, block, tuple(proofs[h])) for a, h in zip(ids, hashes)
        ]
        return mirror, requests

    def test_batch_unlock_delivers_all(self, ledgers, accounts):
        """Every element of a valid batch is delivered in one transaction."""
        mirror, requests = self._batch(ledgers, accounts)
        receipt = mirror.execute(accounts.relayer, "batch_unlock_with_proof", requests)
        assert [log.name for log in receipt.logs] == ["AssetUnlocked"] * 3
        assert mirror.verifier.registry.assets_of(accounts.bob) == [1, 2, 3]

    def test_one_bad_element_rejects_the_batch(self, ledgers, accounts):
        """A batch is all or nothing."""
        mirror, requests = self._batch(ledgers, accounts)
        bad = UnlockRequest(requests[1].asset_id, requests[1].recipient, requests[1].lock_hash,
                            requests[1].block_number, (_fake_hash("junk"),))
        with rejected(RevertReason.INVALID_PROOF):
            mirror.execute(accounts.relayer, "batch_unlock_with_proof", [requests[0], bad, requests[2]])
        assert mirror.verifier.registry.assets_of(accounts.bob) == []
        assert not mirror.verifier.is_processed(requests[0].lock_hash)

    def test_duplicate_and_empty_batches(self, ledgers, accounts):
        """Duplicates inside a batch and empty batches are refused."""
        mirror, requests = self._batch(ledgers, accounts, n=2)
        with rejected(RevertReason.DUPLICATE_BATCH_ENTRY):
            mirror.execute(accounts.relayer, "batch_unlock_with_proof", [requests[0], requests[0]])
        with rejected(RevertReason.EMPTY_BATCH):
            mirror.execute(accounts.relayer, "batch_unlock_with_proof", [])

    def test_parallel_array_form(self, ledgers, accounts):
        """The array entry point checks lengths, then behaves like the batch form."""
        mirror, requests = self._batch(ledgers, accounts, n=2)
        cols = (
            [r.asset_id for r in requests],
            [r.recipient for r in requests],
            [r.lock_hash for r in requests],
            [r.block_number for r in requests],
            [list(r.proof) for r in requests],
        )
        with rejected(RevertReason.ARRAY_LENGTH_MISMATCH):
            mirror.execute(accounts.relayer, "batch_unlock_arrays", cols[0], cols[1][:1], *cols[2:])
        mirror.execute(accounts.relayer, "batch_unlock_arrays", *cols)
        assert mirror.verifier.registry.assets_of(accounts.bob) == [1, 2]


class TestRoundTrip:
    """Custody across repeated crossings."""

    def test_there_and_back_and_there_again(self, ledgers, accounts):
        """Mint on first arrival, release on return, transfer on the second trip."""
        origin, mirror = ledgers
        origin.mint_native(1, accounts.alice)

        h1, b1 = lock(origin, accounts.alice, 1, accounts.bob)
        commit(mirror, accounts.relayer, b1, [(1, accounts.bob, h1)])
        r1 = mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, h1, b1, [])
        assert r1.logs[0].args["minted"] is True

        h2, b2 = lock(mirror, accounts.bob, 1, accounts.alice)
        assert mirror.verifier.is_locked(1)
        commit(origin, accounts.relayer, b2, [(1, accounts.alice, h2)])
        origin.execute(accounts.relayer, "unlock_with_proof", 1, accounts.alice, h2, b2, [])
        assert origin.verifier.registry.owner_of(1) == accounts.alice
        assert not origin.verifier.is_locked(1)

        h3, b3 = lock(origin, accounts.alice, 1, accounts.eve)
        assert h3 not in (h1, h2)
        commit(mirror, accounts.relayer, b3, [(1, accounts.eve, h3)])
        r3 = mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.eve, h3, b3, [])
        assert r3.logs[0].args["minted"] is False
        assert mirror.verifier.registry.owner_of(1) == accounts.eve
        assert not mirror.verifier.is_locked(1)

    def test_returning_asset_is_not_minted_twice(self, ledgers, accounts):
        """A bridged asset that is not locked on the mirror cannot be unlocked there."""
        origin, mirror = ledgers
        origin.mint_native(1, accounts.alice)
        h1, b1 = lock(origin, accounts.alice, 1, accounts.bob)
        commit(mirror, accounts.relayer, b1, [(1, accounts.bob, h1)])
        mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.bob, h1, b1, [])

        forged = _fake_hash("second-mint")
        proofs = commit(mirror, accounts.relayer, b1 + 1, [(1, accounts.eve, forged)])
        with rejected(RevertReason.TOKEN_NOT_LOCKED):
            mirror.execute(accounts.relayer, "unlock_with_proof", 1, accounts.eve, forged, b1 + 1, proofs[forged])


def test_registry_minting_is_restricted():
    minter = random_address()
    registry = AssetRegistry(minter=minter)
    with pytest.raises(VerifierError):
        registry.mint(random_address(), 1, random_address())
    registry.mint(minter, 1, minter)
    with pytest.raises(VerifierError) as info:
        registry.mint(minter, 1, minter)
    assert info.value.reason is RevertReason.TOKEN_ALREADY_EXISTS


def test_views_on_a_bare_verifier():
    owner = random_address()
    verifier = CommitmentVerifier(random_address(), VerifierRole.MIRROR, AssetRegistry(), owner)
    ctx = CallContext(sender=owner, block_number=1)
    assert verifier.submitter == verifier.owner
    assert not verifier.is_active(1)
    assert not verifier.is_locked(1)
    with pytest.raises(VerifierError):
        verifier.set_peer(ctx, ZERO_ADDRESS)


def test_revert_reason_lookup():
    assert RevertReason.from_message("execution reverted: Root already set") is RevertReason.ROOT_ALREADY_SET
    assert RevertReason.from_message("something else") is None
