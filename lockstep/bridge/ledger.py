"""
Simulated Ledger

An in-process ledger hosting one CommitmentVerifier and its AssetRegistry.
Every transaction mines exactly one block; a reverted transaction still mines,
records a failed receipt and leaves verifier state untouched. The ledger is what
LocalChainAdapter talks to, and it is how the bridge runs end to end without an
RPC node.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import copy
import secrets
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from web3 import Web3

from lockstep.bridge.verifier import (
    AssetRegistry,
    CallContext,
    CommitmentVerifier,
    Notification,
    VerifierError,
    VerifierRole,
)
from lockstep.merkle import normalize_address


GAS_PRICE_WEI = Web3.to_wei(1, "gwei")
BASE_GAS = 50_000
GAS_PER_ITEM = 30_000


@dataclass(frozen=True)
class LedgerLog:
    """A notification as stored in a mined block."""
    block_number: int
    tx_hash: str
    log_index: int
    name: str
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int
    sender: str
    method: str
    revert_reason: str = ""
    logs: tuple = ()

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def _gas_for(method: str, args: tuple) -> int:
    items = 1
    for a in args:
        if isinstance(a, (list, tuple)):
            items = max(items, len(a))
    return BASE_GAS + GAS_PER_ITEM * items


def random_address() -> str:
    return Web3.to_checksum_address("0x" + secrets.token_hex(20))


class SimulatedLedger:
    """
    A single-verifier ledger with a block counter, logs, receipts and balances.

    Thread-safe: transactions from concurrent workers are serialized.
    """

    def __init__(self, name: str, chain_id: int, start_block: int = 0):
        self.name = name
        self.chain_id = chain_id
        self.block_number = start_block
        self.verifier: Optional[CommitmentVerifier] = None
        self.logs: List[LedgerLog] = []
        self.receipts: Dict[str, Receipt] = {}
        self.balances: Dict[str, int] = {}
        self._lock = threading.RLock()

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def deploy_verifier(
        self,
        role: VerifierRole,
        owner: str,
        submitter: Optional[str] = None,
        address: Optional[str] = None,
    ) -> CommitmentVerifier:
        address = normalize_address(address) if address else random_address()
        registry = AssetRegistry(minter=address if role is VerifierRole.MIRROR else None)
        self.verifier = CommitmentVerifier(address, role, registry, owner=owner, submitter=submitter)
        return self.verifier

    def fund(self, account: str, amount_wei: int) -> None:
        with self._lock:
            key = normalize_address(account)
            self.balances[key] = self.balances.get(key, 0) + int(amount_wei)

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self.balances.get(normalize_address(account), 0)

    def mint_native(self, asset_id: int, to: str) -> None:
        """Create an asset that is native to this ledger."""
        with self._lock:
            self._require_verifier().registry.genesis_mint(int(asset_id), to)

    def _require_verifier(self) -> CommitmentVerifier:
        if self.verifier is None:
            raise RuntimeError(f"no verifier deployed on {self.name}")
        return self.verifier

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    def mine(self, blocks: int = 1) -> int:
        with self._lock:
            self.block_number += max(0, int(blocks))
            return self.block_number

    def call(self, sender: str, method: str, *args: Any) -> Any:
        """Execute against a throwaway copy of the verifier. Raises VerifierError."""
        with self._lock:
            scratch = copy.deepcopy(self._require_verifier())
            ctx = CallContext(sender=sender, block_number=self.block_number + 1)
            return getattr(scratch, method)(ctx, *args)

    def estimate_gas(self, sender: str, method: str, *args: Any) -> int:
        self.call(sender, method, *args)
        return _gas_for(method, args)

    def transact(self, sender: str, method: str, *args: Any, gas_limit: Optional[int] = None) -> Receipt:
        """Mine one block containing a call to ``method``.

        A revert is recorded as a failed receipt; it never raises.
        """
        verifier = self._require_verifier()
        with self._lock:
            self.block_number += 1
            block = self.block_number
            tx_hash = "0x" + secrets.token_hex(32)
            pending: List[Notification] = []
            ctx = CallContext(sender=sender, block_number=block, emit=pending.append)
            gas = _gas_for(method, args)
            status, reason = 1, ""
            if gas_limit is not None and gas_limit < gas:
                status, reason = 0, "out of gas"
            else:
                try:
                    getattr(verifier, method)(ctx, *args)
                except VerifierError as exc:
                    status, reason = 0, str(exc)
                    pending = []

            logs = tuple(
                LedgerLog(block, tx_hash, len(self.logs) + i, n.name, dict(n.args))
                for i, n in enumerate(pending)
            )
            self.logs.extend(logs)
            key = normalize_address(sender)
            self.balances[key] = max(0, self.balances.get(key, 0) - gas * GAS_PRICE_WEI)
            receipt = Receipt(
                tx_hash=tx_hash,
                block_number=block,
                status=status,
                gas_used=gas,
                sender=key,
                method=method,
                revert_reason=reason,
                logs=logs,
            )
            self.receipts[tx_hash] = receipt
            return receipt

    def execute(self, sender: str, method: str, *args: Any) -> Receipt:
        """Transact and raise VerifierError on revert. For setup code and tests."""
        with self._lock:
            self.call(sender, method, *args)
            return self.transact(sender, method, *args)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_logs(self, from_block: int, to_block: int, name: Optional[str] = None) -> List[LedgerLog]:
        with self._lock:
            return [
                log for log in self.logs
                if from_block <= log.block_number <= to_block and (name is None or log.name == name)
            ]

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        with self._lock:
            return self.receipts.get(tx_hash)

    def read(self, fn: Callable[[CommitmentVerifier], Any]) -> Any:
        with self._lock:
            return fn(self._require_verifier())


def link_ledgers(origin: SimulatedLedger, mirror: SimulatedLedger, owner: str) -> None:
    """Point each verifier at the other."""
    origin.execute(owner, "set_peer", mirror._require_verifier().address)
    mirror.execute(owner, "set_peer", origin._require_verifier().address)
