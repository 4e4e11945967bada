"""
Lockstep Bridge Runtime

Moves assets between two independent ledgers. Trust reduces to a single root
submitter whose commitments are checked by merkle proof before any custody
changes.

Architecture
────────────

    ┌─────────────────────────────────────────────────────────────────────────┐
    │                          BRIDGE RUNTIME                                  │
    │                                                                          │
    │  ON-LEDGER                                                              │
    │    verifier.py       Lock/unlock state machine, roots, replay guard     │
    │    ledger.py         In-process ledger hosting one verifier             │
    │                                                                          │
    │  PIPELINE                                                               │
    │    indexer.py        Lock/unlock notifications -> storage               │
    │    builder.py        Per-block merkle commitment and proofs             │
    │    relayer.py        Root submission, unlock driving, replay            │
    │    queue.py          Storage-backed worker pools                        │
    │    service.py        Threads, start/stop                                │
    │                                                                          │
    │  SUPPORT                                                                │
    │    chain.py          Ledger adapters (local, web3, resilient)           │
    │    storage.py        SQLAlchemy repository                              │
    │    config.py         Layered YAML/env configuration                     │
    │    observability.py  Structured logging                                 │
    │    resilience.py     Retry and circuit breaker                          │
    │    events.py         Push channel                                       │
    │    alerts.py         Alert sinks                                        │
    │                                                                          │
    └─────────────────────────────────────────────────────────────────────────┘

Copyright (c) 2026 Momentum. All rights reserved.
"""

from lockstep import __version__


# Lazy imports keep ``import lockstep.bridge`` free of web3 and SQLAlchemy
def __getattr__(name):
    """Lazy import bridge modules on first access."""

    if name in ("CommitmentVerifier", "VerifierRole", "VerifierError", "RevertReason",
                "AssetRegistry", "UnlockRequest", "CommittedRecord"):
        from lockstep.bridge import verifier
        return getattr(verifier, name)

    if name in ("SimulatedLedger", "link_ledgers"):
        from lockstep.bridge import ledger
        return getattr(ledger, name)

    if name in ("BridgeStore", "LockStatus", "LockRecord", "BlockCommitment", "ProofRecord"):
        from lockstep.bridge import storage
        return getattr(storage, name)

    if name in ("LocalChainAdapter", "Web3ChainAdapter", "ResilientChainAdapter"):
        from lockstep.bridge import chain
        return getattr(chain, name)

    if name == "LockEventIndexer":
        from lockstep.bridge.indexer import LockEventIndexer
        return LockEventIndexer

    if name == "CommitmentBuilder":
        from lockstep.bridge.builder import CommitmentBuilder
        return CommitmentBuilder

    if name == "RootRelay":
        from lockstep.bridge.relayer import RootRelay
        return RootRelay

    if name == "BridgeService":
        from lockstep.bridge.service import BridgeService
        return BridgeService

    raise AttributeError(f"module 'lockstep.bridge' has no attribute '{name}'")


__all__ = [
    "__version__",
    "CommitmentVerifier",
    "VerifierRole",
    "VerifierError",
    "RevertReason",
    "AssetRegistry",
    "UnlockRequest",
    "CommittedRecord",
    "SimulatedLedger",
    "link_ledgers",
    "BridgeStore",
    "LockStatus",
    "LockRecord",
    "BlockCommitment",
    "ProofRecord",
    "LocalChainAdapter",
    "Web3ChainAdapter",
    "ResilientChainAdapter",
    "LockEventIndexer",
    "CommitmentBuilder",
    "RootRelay",
    "BridgeService",
]
