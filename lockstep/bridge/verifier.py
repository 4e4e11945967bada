"""
Commitment Verifier

The on-ledger half of the bridge. One verifier is deployed per ledger; the two
instances are linked after deployment with ``set_peer``. A verifier is the only
component that can change asset custody, and it does so only against a merkle
proof checked against a root the submitter committed earlier.

Custody per asset:

    origin ledger                 mirror ledger

    Free ──lock──▶ Locked         Unminted ──unlock (mint)──▶ Active
     ▲               │                                       │   ▲
     └────unlock─────┘                             lock      │   │ unlock (release)
                                                             ▼   │
                                                            Locked

Commitment lifecycle per source block:

    (no root) ──submit_commitment──▶ Root set ──first unlock──▶ Root used
        ▲                               │
        └──────────clear_root───────────┘

Every entry point validates completely before it mutates anything, so a
rejected call leaves no observable change. Rejections raise VerifierError
carrying a RevertReason.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Set, Tuple

from lockstep.merkle import (
    is_zero_address,
    leaf_hash,
    lock_commitment_hash,
    normalize_address,
    normalize_hash,
    verify_proof,
)


# =============================================================================
# ERRORS
# =============================================================================

class RevertReason(Enum):
    """Distinguishing reasons for a rejected verifier call."""
    TOKEN_ALREADY_LOCKED = "Token already locked"
    INVALID_RECIPIENT = "Invalid recipient"
    NOT_TOKEN_OWNER = "Not token owner"
    TOKEN_NOT_ACTIVE = "Token not active"
    TOKEN_NOT_LOCKED = "Token not locked"
    LOCK_ALREADY_PROCESSED = "Lock already processed"
    ROOT_NOT_SET = "Block root not set"
    ROOT_ALREADY_SET = "Root already set"
    ROOT_ALREADY_USED = "Root already used"
    INVALID_ROOT = "Invalid root"
    INVALID_PROOF = "Invalid merkle proof"
    LOCK_COUNT_MISMATCH = "Lock count mismatch"
    BLOCK_NUMBER_MISMATCH = "Block number mismatch"
    LOCK_RECORD_MISMATCH = "Lock record mismatch"
    DUPLICATE_LOCK_RECORD = "Duplicate lock record"
    DUPLICATE_BATCH_ENTRY = "Duplicate batch entry"
    ARRAY_LENGTH_MISMATCH = "Array length mismatch"
    EMPTY_BATCH = "Empty batch"
    ONLY_ROOT_SUBMITTER = "Only root submitter"
    ONLY_OWNER = "Only owner"
    ONLY_BRIDGE = "Only bridge can call"
    PEER_NOT_CONFIGURED = "Peer not configured"
    BRIDGE_PAUSED = "Bridge paused"
    NONEXISTENT_TOKEN = "Nonexistent token"
    TOKEN_ALREADY_EXISTS = "Token already exists"

    @classmethod
    def from_message(cls, message: str) -> Optional["RevertReason"]:
        """Find the reason whose text appears in ``message``."""
        for reason in cls:
            if reason.value.lower() in (message or "").lower():
                return reason
        return None


class VerifierError(Exception):
    """A verifier call was rejected. No state was changed."""

    def __init__(self, reason: RevertReason, detail: str = ""):
        self.reason = reason
        self.detail = detail
        msg = reason.value if not detail else f"{reason.value}: {detail}"
        super().__init__(msg)


def _require(condition: bool, reason: RevertReason, detail: str = "") -> None:
    if not condition:
        raise VerifierError(reason, detail)


# =============================================================================
# CALL CONTEXT AND NOTIFICATIONS
# =============================================================================

class VerifierRole(Enum):
    """Which side of the bridge a verifier serves."""
    ORIGIN = "origin"   # assets are native here
    MIRROR = "mirror"   # assets are minted here on first arrival


@dataclass(frozen=True)
class Notification:
    """An event emitted by a successful verifier call."""
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CallContext:
    """Execution context supplied by the hosting ledger for one call."""
    sender: str
    block_number: int
    emit: Callable[[Notification], None] = lambda n: None


@dataclass(frozen=True)
class CommittedRecord:
    """A lock as committed by the root submitter for one source block."""
    asset_id: int
    recipient: str
    lock_hash: str
    block_number: int

    @classmethod
    def of(cls, asset_id: int, recipient: str, lock_hash: str, block_number: int) -> "CommittedRecord":
        return cls(
            asset_id=int(asset_id),
            recipient=normalize_address(recipient),
            lock_hash=normalize_hash(lock_hash),
            block_number=int(block_number),
        )


@dataclass(frozen=True)
class UnlockRequest:
    """Arguments of one unlock, as passed to the batch entry point."""
    asset_id: int
    recipient: str
    lock_hash: str
    block_number: int
    proof: Tuple[str, ...] = ()


@dataclass(frozen=True)
class LockEntry:
    """Lock recorded by this verifier when it took custody."""
    asset_id: int
    source_owner: str
    recipient: str
    block_number: int
    lock_hash: str
    batch_index: Optional[int] = None


# =============================================================================
# ASSET REGISTRY
# =============================================================================

class AssetRegistry:
    """
    Minimal ownership registry for bridged assets.

    Only the ``minter`` (the verifier on a mirror ledger) may create assets there.
    Origin ledgers pre-mint their native assets with ``genesis_mint``.
    """

    def __init__(self, minter: Optional[str] = None):
        self.minter = normalize_address(minter) if minter else None
        self._owners: Dict[int, str] = {}

    def exists(self, asset_id: int) -> bool:
        return asset_id in self._owners

    def owner_of(self, asset_id: int) -> str:
        _require(asset_id in self._owners, RevertReason.NONEXISTENT_TOKEN, str(asset_id))
        return self._owners[asset_id]

    def genesis_mint(self, asset_id: int, to: str) -> None:
        _require(asset_id not in self._owners, RevertReason.TOKEN_ALREADY_EXISTS, str(asset_id))
        self._owners[asset_id] = normalize_address(to)

    def mint(self, caller: str, asset_id: int, to: str) -> None:
        _require(
            self.minter is not None and normalize_address(caller) == self.minter,
            RevertReason.ONLY_BRIDGE,
        )
        _require(asset_id not in self._owners, RevertReason.TOKEN_ALREADY_EXISTS, str(asset_id))
        self._owners[asset_id] = normalize_address(to)

    def transfer(self, caller: str, asset_id: int, to: str) -> None:
        _require(self.owner_of(asset_id) == normalize_address(caller), RevertReason.NOT_TOKEN_OWNER)
        self._owners[asset_id] = normalize_address(to)

    def assets_of(self, owner: str) -> List[int]:
        owner = normalize_address(owner)
        return sorted(a for a, o in self._owners.items() if o == owner)


# =============================================================================
# VERIFIER
# =============================================================================

class CommitmentVerifier:
    """
    Lock/unlock state machine for one ledger.

    Roots are keyed by the source block number on the peer ledger. A root is
    write-once: it can be cleared by the owner only until an unlock has relied
    on it.
    """

    def __init__(
        self,
        address: str,
        role: VerifierRole,
        registry: AssetRegistry,
        owner: str,
        submitter: Optional[str] = None,
    ):
        self.address = normalize_address(address)
        self.role = role
        self.registry = registry
        self.owner = normalize_address(owner)
        self.submitter = normalize_address(submitter) if submitter else self.owner
        self.peer: Optional[str] = None
        self.paused = False

        self.locked: Dict[int, bool] = {}
        self.ever_bridged: Set[int] = set()
        self.locks: Dict[str, LockEntry] = {}
        self.roots: Dict[int, str] = {}
        self.root_lock_counts: Dict[int, int] = {}
        self.roots_used: Set[int] = set()
        self.committed: Dict[str, CommittedRecord] = {}
        self.processed: Set[str] = set()

    # -------------------------------------------------------------------------
    # Views
    # -------------------------------------------------------------------------

    def is_locked(self, asset_id: int) -> bool:
        return self.locked.get(int(asset_id), False)

    def is_active(self, asset_id: int) -> bool:
        """True if the asset may be locked on this ledger."""
        if self.role is VerifierRole.ORIGIN:
            return self.registry.exists(int(asset_id))
        return int(asset_id) in self.ever_bridged

    def is_processed(self, lock_hash: str) -> bool:
        return normalize_hash(lock_hash) in self.processed

    def commitment_root(self, block_number: int) -> Optional[str]:
        return self.roots.get(int(block_number))

    # -------------------------------------------------------------------------
    # Administration
    # -------------------------------------------------------------------------

    def _only_owner(self, ctx: CallContext) -> None:
        _require(normalize_address(ctx.sender) == self.owner, RevertReason.ONLY_OWNER)

    def set_peer(self, ctx: CallContext, peer: str) -> None:
        self._only_owner(ctx)
        _require(not is_zero_address(peer), RevertReason.PEER_NOT_CONFIGURED)
        self.peer = normalize_address(peer)
        ctx.emit(Notification("PeerSet", {"peer": self.peer}))

    def set_submitter(self, ctx: CallContext, submitter: str) -> None:
        self._only_owner(ctx)
        self.submitter = normalize_address(submitter)
        ctx.emit(Notification("SubmitterSet", {"submitter": self.submitter}))

    def pause(self, ctx: CallContext) -> None:
        self._only_owner(ctx)
        self.paused = True
        ctx.emit(Notification("Paused", {}))

    def unpause(self, ctx: CallContext) -> None:
        self._only_owner(ctx)
        self.paused = False
        ctx.emit(Notification("Unpaused", {}))

    def clear_root(self, ctx: CallContext, block_number: int) -> None:
        """Remove a root that no unlock has used yet."""
        self._only_owner(ctx)
        block_number = int(block_number)
        _require(block_number in self.roots, RevertReason.ROOT_NOT_SET)
        _require(block_number not in self.roots_used, RevertReason.ROOT_ALREADY_USED)

        del self.roots[block_number]
        self.root_lock_counts.pop(block_number, None)
        for lock_hash in [h for h, r in self.committed.items() if r.block_number == block_number]:
            del self.committed[lock_hash]
        ctx.emit(Notification("CommitmentCleared", {"blockNumber": block_number}))

    # -------------------------------------------------------------------------
    # Lock
    # -------------------------------------------------------------------------

    def _check_lockable(self, ctx: CallContext, asset_id: int, recipient: str) -> None:
        _require(not self.paused, RevertReason.BRIDGE_PAUSED)
        _require(self.peer is not None, RevertReason.PEER_NOT_CONFIGURED)
        _require(not is_zero_address(recipient), RevertReason.INVALID_RECIPIENT)
        _require(not self.is_locked(asset_id), RevertReason.TOKEN_ALREADY_LOCKED, str(asset_id))
        _require(self.is_active(asset_id), RevertReason.TOKEN_NOT_ACTIVE, str(asset_id))
        _require(
            self.registry.owner_of(asset_id) == normalize_address(ctx.sender),
            RevertReason.NOT_TOKEN_OWNER,
            str(asset_id),
        )

    def _take_custody(
        self, ctx: CallContext, asset_id: int, recipient: str, batch_index: Optional[int]
    ) -> str:
        sender = normalize_address(ctx.sender)
        recipient = normalize_address(recipient)
        lock_hash = lock_commitment_hash(
            asset_id, sender, recipient, ctx.block_number, self.address, batch_index
        )
        self.registry.transfer(sender, asset_id, self.address)
        self.locked[asset_id] = True
        self.locks[lock_hash] = LockEntry(
            asset_id=asset_id,
            source_owner=sender,
            recipient=recipient,
            block_number=ctx.block_number,
            lock_hash=lock_hash,
            batch_index=batch_index,
        )
        ctx.emit(Notification("AssetLocked", {
            "assetId": asset_id,
            "sourceOwner": sender,
            "recipient": recipient,
            "lockHash": lock_hash,
            "blockNumber": ctx.block_number,
        }))
        return lock_hash

    def lock(self, ctx: CallContext, asset_id: int, recipient: str) -> str:
        """Take custody of ``asset_id`` for delivery to ``recipient`` on the peer ledger."""
        asset_id = int(asset_id)
        self._check_lockable(ctx, asset_id, recipient)
        return self._take_custody(ctx, asset_id, recipient, None)

    def lock_batch(self, ctx: CallContext, asset_ids: Sequence[int], recipient: str) -> List[str]:
        """Lock several assets in one call, salting each hash with its batch position."""
        ids = [int(a) for a in asset_ids]
        _require(len(ids) > 0, RevertReason.EMPTY_BATCH)
        _require(len(set(ids)) == len(ids), RevertReason.TOKEN_ALREADY_LOCKED, "duplicate asset in batch")
        for asset_id in ids:
            self._check_lockable(ctx, asset_id, recipient)
        return [self._take_custody(ctx, asset_id, recipient, i) for i, asset_id in enumerate(ids)]

    # -------------------------------------------------------------------------
    # Commitments
    # -------------------------------------------------------------------------

    def submit_commitment(
        self,
        ctx: CallContext,
        block_number: int,
        root: str,
        lock_count: int,
        records: Sequence[CommittedRecord],
    ) -> None:
        """Store the root for a peer block together with the records it commits to."""
        block_number = int(block_number)
        _require(normalize_address(ctx.sender) == self.submitter, RevertReason.ONLY_ROOT_SUBMITTER)
        _require(self.peer is not None, RevertReason.PEER_NOT_CONFIGURED)
        _require(block_number not in self.roots, RevertReason.ROOT_ALREADY_SET, str(block_number))
        try:
            root = normalize_hash(root)
        except ValueError:
            raise VerifierError(RevertReason.INVALID_ROOT) from None
        _require(int(root, 16) != 0, RevertReason.INVALID_ROOT)
        _require(int(lock_count) > 0, RevertReason.LOCK_COUNT_MISMATCH)
        _require(len(records) == int(lock_count), RevertReason.LOCK_COUNT_MISMATCH)

        seen: Set[str] = set()
        for record in records:
            _require(record.block_number == block_number, RevertReason.BLOCK_NUMBER_MISMATCH)
            _require(
                record.lock_hash not in seen and record.lock_hash not in self.committed,
                RevertReason.DUPLICATE_LOCK_RECORD,
                record.lock_hash,
            )
            seen.add(record.lock_hash)

        self.roots[block_number] = root
        self.root_lock_counts[block_number] = int(lock_count)
        for record in records:
            self.committed[record.lock_hash] = record
        ctx.emit(Notification("CommitmentSubmitted", {
            "blockNumber": block_number,
            "root": root,
            "lockCount": int(lock_count),
        }))

    # -------------------------------------------------------------------------
    # Unlock
    # -------------------------------------------------------------------------

    def _check_unlockable(self, req: UnlockRequest) -> Tuple[int, str, str, int]:
        asset_id = int(req.asset_id)
        block_number = int(req.block_number)
        _require(not is_zero_address(req.recipient), RevertReason.INVALID_RECIPIENT)
        recipient = normalize_address(req.recipient)
        lock_hash = normalize_hash(req.lock_hash)

        _require(lock_hash not in self.processed, RevertReason.LOCK_ALREADY_PROCESSED, lock_hash)
        _require(block_number in self.roots, RevertReason.ROOT_NOT_SET, str(block_number))
        record = self.committed.get(lock_hash)
        _require(
            record is not None
            and record.asset_id == asset_id
            and record.recipient == recipient
            and record.block_number == block_number,
            RevertReason.LOCK_RECORD_MISMATCH,
            lock_hash,
        )
        leaf = leaf_hash(asset_id, recipient, lock_hash, block_number)
        _require(verify_proof(leaf, req.proof, self.roots[block_number]), RevertReason.INVALID_PROOF)

        if not self.is_locked(asset_id):
            _require(
                self.role is VerifierRole.MIRROR and asset_id not in self.ever_bridged,
                RevertReason.TOKEN_NOT_LOCKED,
                str(asset_id),
            )
        return asset_id, recipient, lock_hash, block_number

    def _deliver(self, ctx: CallContext, asset_id: int, recipient: str, lock_hash: str, block_number: int) -> None:
        self.processed.add(lock_hash)
        self.roots_used.add(block_number)
        minted = not self.is_locked(asset_id)
        if minted:
            self.registry.mint(self.address, asset_id, recipient)
            self.ever_bridged.add(asset_id)
        else:
            self.registry.transfer(self.address, asset_id, recipient)
            self.locked[asset_id] = False
        ctx.emit(Notification("AssetUnlocked", {
            "assetId": asset_id,
            "recipient": recipient,
            "lockHash": lock_hash,
            "blockNumber": block_number,
            "minted": minted,
        }))

    def unlock_with_proof(
        self,
        ctx: CallContext,
        asset_id: int,
        recipient: str,
        lock_hash: str,
        block_number: int,
        proof: Sequence[str],
    ) -> None:
        """Deliver an asset to ``recipient`` once its lock is proven under the block root."""
        _require(not self.paused, RevertReason.BRIDGE_PAUSED)
        req = UnlockRequest(asset_id, recipient, lock_hash, block_number, tuple(proof))
        self._deliver(ctx, *self._check_unlockable(req))

    def batch_unlock_with_proof(self, ctx: CallContext, requests: Sequence[UnlockRequest]) -> None:
        """Apply several unlocks atomically. One bad element rejects the whole call."""
        _require(not self.paused, RevertReason.BRIDGE_PAUSED)
        _require(len(requests) > 0, RevertReason.EMPTY_BATCH)
        checked = [self._check_unlockable(req) for req in requests]
        assets = [c[0] for c in checked]
        hashes = [c[2] for c in checked]
        _require(len(set(assets)) == len(assets), RevertReason.DUPLICATE_BATCH_ENTRY)
        _require(len(set(hashes)) == len(hashes), RevertReason.DUPLICATE_BATCH_ENTRY)
        for asset_id, recipient, lock_hash, block_number in checked:
            self._deliver(ctx, asset_id, recipient, lock_hash, block_number)

    def batch_unlock_arrays(
        self,
        ctx: CallContext,
        asset_ids: Sequence[int],
        recipients: Sequence[str],
        lock_hashes: Sequence[str],
        block_numbers: Sequence[int],
        proofs: Sequence[Sequence[str]],
    ) -> None:
        """Parallel-array form of the batch entry point."""
        n = len(asset_ids)
        _require(
            len(recipients) == n and len(lock_hashes) == n and len(block_numbers) == n and len(proofs) == n,
            RevertReason.ARRAY_LENGTH_MISMATCH,
        )
        self.batch_unlock_with_proof(ctx, [
            UnlockRequest(asset_ids[i], recipients[i], lock_hashes[i], block_numbers[i], tuple(proofs[i]))
            for i in range(n)
        ])
