"""Keccak merkle commitments for bridged asset locks.

This module implements the hashing half of the bridge: the lock commitment hash a
verifier stores when it takes custody, the leaf that binds one lock to its
recipient, and a pair-sorted binary merkle tree with inclusion proofs.

Design goals:
- Byte-for-byte compatible with an EVM verifier (Solidity packed encoding, Keccak-256)
- Proof verification independent of leaf insertion order
- Valid for any number of leaves, including one

Hashing:
- Keccak-256
- lock hash = keccak(uint256 assetId || address owner || address recipient ||
  uint256 blockNumber || address verifier [|| uint256 batchIndex])
- leaf = keccak(uint256 assetId || address recipient || bytes32 lockHash || uint256 blockNumber)
- node = keccak(min(a, b) || max(a, b))

Tree shape:
- Levels are reduced left to right, two nodes at a time.
- An odd trailing node is promoted to the next level unchanged and has no sibling
  at that level.
- A single-leaf tree has root == leaf and an empty proof.

All digests are exchanged as 0x-prefixed lowercase hex strings.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from web3 import Web3


ZERO_ADDRESS = "0x" + "00" * 20
ZERO_HASH = "0x" + "00" * 32


def _is_hex_32(s: Any) -> bool:
    if not isinstance(s, str):
        return False
    ss = s.strip().lower()
    if ss.startswith("0x"):
        ss = ss[2:]
    if len(ss) != 64:
        return False
    try:
        bytes.fromhex(ss)
        return True
    except ValueError:
        return False


def normalize_hash(value: Any) -> str:
    """Return a 32-byte digest as 0x-prefixed lowercase hex."""
    if isinstance(value, (bytes, bytearray)):
        if len(value) != 32:
            raise ValueError("digest must be 32 bytes")
        return "0x" + bytes(value).hex()
    if not _is_hex_32(value):
        raise ValueError(f"not a 32-byte hex digest: {value!r}")
    ss = value.strip().lower()
    return ss if ss.startswith("0x") else "0x" + ss


def normalize_address(value: str) -> str:
    """Checksum an address, rejecting anything that is not 20 bytes of hex."""
    if not isinstance(value, str) or not Web3.is_address(value):
        raise ValueError(f"not an address: {value!r}")
    return Web3.to_checksum_address(value)


def is_zero_address(value: Optional[str]) -> bool:
    if not value:
        return True
    return value.lower() == ZERO_ADDRESS


def hash_to_bytes(value: str) -> bytes:
    return bytes.fromhex(normalize_hash(value)[2:])


def lock_commitment_hash(
    asset_id: int,
    source_owner: str,
    recipient: str,
    block_number: int,
    verifier_address: str,
    batch_index: Optional[int] = None,
) -> str:
    """Compute the deterministic commitment hash recorded when an asset is locked.

    The hash depends only on data visible in the lock transaction, so any observer
    can reproduce it. Batch locks append the position in the batch so that two
    assets locked by the same call never share a hash.
    """
    types = ["uint256", "address", "address", "uint256", "address"]
    values: List[Any] = [
        int(asset_id),
        normalize_address(source_owner),
        normalize_address(recipient),
        int(block_number),
        normalize_address(verifier_address),
    ]
    if batch_index is not None:
        types.append("uint256")
        values.append(int(batch_index))
    return Web3.to_hex(Web3.solidity_keccak(types, values))


def leaf_hash(asset_id: int, recipient: str, lock_hash: str, block_number: int) -> str:
    """Compute the merkle leaf for one lock."""
    return Web3.to_hex(
        Web3.solidity_keccak(
            ["uint256", "address", "bytes32", "uint256"],
            [int(asset_id), normalize_address(recipient), hash_to_bytes(lock_hash), int(block_number)],
        )
    )


def pair_hash(a: str, b: str) -> str:
    """Hash two sibling nodes after sorting them."""
    left = hash_to_bytes(a)
    right = hash_to_bytes(b)
    if right < left:
        left, right = right, left
    return Web3.to_hex(Web3.keccak(left + right))


@dataclass(frozen=True)
class MerkleTree:
    """A fully materialized pair-sorted tree.

    levels[0] holds the leaves; levels[-1] holds exactly the root.
    """

    levels: List[List[str]] = field(default_factory=list)

    @property
    def leaves(self) -> List[str]:
        return list(self.levels[0]) if self.levels else []

    @property
    def root(self) -> str:
        if not self.levels:
            raise ValueError("empty tree has no root")
        return self.levels[-1][0]

    def proof(self, index: int) -> List[str]:
        """Sibling hashes from leaf to root for the leaf at ``index``."""
        if not self.levels:
            raise ValueError("empty tree has no proofs")
        if index < 0 or index >= len(self.levels[0]):
            raise ValueError("leaf index out of range")
        path: List[str] = []
        pos = index
        for level in self.levels[:-1]:
            sibling = pos ^ 1
            if sibling < len(level):
                path.append(level[sibling])
            pos //= 2
        return path

    def proof_for(self, leaf: str) -> List[str]:
        leaf = normalize_hash(leaf)
        try:
            return self.proof(self.levels[0].index(leaf))
        except ValueError:
            raise ValueError(f"leaf {leaf} not in tree") from None


def build_tree(leaves: Sequence[str]) -> MerkleTree:
    """Build a tree over ``leaves`` in the given order."""
    if not leaves:
        raise ValueError("leaves must be non-empty")
    level = [normalize_hash(x) for x in leaves]
    levels = [level]
    while len(level) > 1:
        nxt: List[str] = []
        for i in range(0, len(level) - 1, 2):
            nxt.append(pair_hash(level[i], level[i + 1]))
        if len(level) % 2 == 1:
            # Odd node is promoted without hashing.
            nxt.append(level[-1])
        level = nxt
        levels.append(level)
    return MerkleTree(levels=levels)


def merkle_root(leaves: Sequence[str]) -> str:
    return build_tree(leaves).root


def process_proof(leaf: str, proof: Sequence[str]) -> str:
    """Fold ``proof`` left to right into ``leaf`` and return the computed root."""
    cur = normalize_hash(leaf)
    for sibling in proof:
        cur = pair_hash(cur, sibling)
    return cur


def verify_proof(leaf: str, proof: Sequence[str], root: str) -> bool:
    """Check that ``leaf`` is included under ``root``. Malformed input verifies False."""
    try:
        return process_proof(leaf, proof) == normalize_hash(root)
    except (TypeError, ValueError):
        return False


def block_commitment(locks: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Compute the root and per-lock proofs for one block's locks.

    Each lock is a mapping with ``asset_id``, ``recipient``, ``lock_hash`` and
    ``block_number``. The result keeps input order:

        {"root": ..., "leaves": [...], "proofs": {lock_hash: [...]}}
    """
    if not locks:
        raise ValueError("cannot commit an empty block")
    leaves = [
        leaf_hash(lk["asset_id"], lk["recipient"], lk["lock_hash"], lk["block_number"])
        for lk in locks
    ]
    tree = build_tree(leaves)
    proofs = {
        normalize_hash(lk["lock_hash"]): tree.proof(i) for i, lk in enumerate(locks)
    }
    return {"root": tree.root, "leaves": tree.leaves, "proofs": proofs}
