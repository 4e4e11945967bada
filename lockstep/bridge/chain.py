"""
Ledger Adapters

The off-ledger pipeline talks to each ledger through a ChainAdapter. Three
implementations are provided:

    LocalChainAdapter      in-process SimulatedLedger (tests, demos, dry runs)
    Web3ChainAdapter       JSON-RPC node through web3.py
    ResilientChainAdapter  retry + circuit breaker around another adapter's reads

Error mapping:

    deterministic revert            -> TransactionReverted   (never retried here)
    dropped connection / timeout    -> ChainUnavailable      (retried with backoff)
    receipt wait exceeded bound     -> TransactionTimeout    (a ChainUnavailable)

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from lockstep.bridge.ledger import SimulatedLedger
from lockstep.bridge.observability import BridgeLayer, get_logger
from lockstep.bridge.resilience import CircuitBreaker, CircuitBreakerError, RetryExhaustedError, RetryPolicy
from lockstep.bridge.verifier import CommittedRecord, RevertReason, UnlockRequest, VerifierError
from lockstep.merkle import hash_to_bytes, normalize_address, normalize_hash


# =============================================================================
# ERRORS
# =============================================================================

class ChainError(Exception):
    """Base class for ledger interaction errors."""


class ChainUnavailable(ChainError):
    """Transient: the node could not be reached or did not answer in time."""


class TransactionTimeout(ChainUnavailable):
    """A transaction did not reach the requested confirmation depth in time."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"transaction {tx_hash} not confirmed within {timeout}s")


class TransactionReverted(ChainError):
    """Deterministic on-ledger rejection."""

    def __init__(self, message: str, tx_hash: str = ""):
        self.message = message
        self.tx_hash = tx_hash
        self.reason = RevertReason.from_message(message)
        super().__init__(message)


def is_already_submitted(exc: BaseException) -> bool:
    """Revert meaning the destination already holds a root for this block."""
    return isinstance(exc, TransactionReverted) and (
        exc.reason is RevertReason.ROOT_ALREADY_SET
        or "already submitted" in exc.message.lower()
    )


def is_already_processed(exc: BaseException) -> bool:
    """Revert meaning the lock was consumed by an earlier unlock."""
    return isinstance(exc, TransactionReverted) and exc.reason is RevertReason.LOCK_ALREADY_PROCESSED


# =============================================================================
# DATA
# =============================================================================

@dataclass(frozen=True)
class LockEvent:
    chain: str
    asset_id: int
    source_owner: str
    recipient: str
    lock_hash: str
    block_number: int
    tx_hash: str
    log_index: int = 0


@dataclass(frozen=True)
class UnlockEvent:
    chain: str
    asset_id: int
    recipient: str
    lock_hash: str
    block_number: int
    tx_hash: str
    log_index: int = 0
    minted: bool = False


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    block_number: int
    status: int
    gas_used: int


@dataclass(frozen=True)
class ContractCall:
    """A verifier entry point and its arguments."""
    method: str
    args: Tuple[Any, ...] = field(default_factory=tuple)

    @classmethod
    def submit_commitment(
        cls, block_number: int, root: str, records: Sequence[CommittedRecord]
    ) -> "ContractCall":
        return cls("submit_commitment", (int(block_number), normalize_hash(root), len(records), tuple(records)))

    @classmethod
    def unlock_with_proof(cls, req: UnlockRequest) -> "ContractCall":
        return cls("unlock_with_proof", (
            int(req.asset_id), req.recipient, normalize_hash(req.lock_hash), int(req.block_number), tuple(req.proof)
        ))

    @classmethod
    def batch_unlock_with_proof(cls, requests: Sequence[UnlockRequest]) -> "ContractCall":
        return cls("batch_unlock_with_proof", (tuple(requests),))

    @property
    def tx_type(self) -> str:
        return {
            "submit_commitment": "submit_root",
            "unlock_with_proof": "unlock",
            "batch_unlock_with_proof": "batch_unlock",
        }.get(self.method, self.method)


@runtime_checkable
class ChainAdapter(Protocol):
    """Everything the pipeline needs from one ledger."""

    name: str

    @property
    def relayer_address(self) -> str: ...

    def get_block_number(self) -> int: ...

    def get_lock_events(self, from_block: int, to_block: int) -> List[LockEvent]: ...

    def get_unlock_events(self, from_block: int, to_block: int) -> List[UnlockEvent]: ...

    def get_commitment_root(self, block_number: int) -> Optional[str]: ...

    def is_lock_processed(self, lock_hash: str) -> bool: ...

    def estimate_gas(self, call: ContractCall) -> int: ...

    def send_transaction(self, call: ContractCall, gas_limit: int) -> str: ...

    def wait_for_receipt(self, tx_hash: str, confirmations: int, timeout: float) -> TxReceipt: ...

    def get_balance(self, address: Optional[str] = None) -> int: ...


# =============================================================================
# LOCAL ADAPTER
# =============================================================================

class LocalChainAdapter:
    """
    Adapter over an in-process SimulatedLedger.

    With ``auto_mine`` the adapter mines empty blocks while waiting for
    confirmations instead of sleeping, so a full round trip runs instantly.
    """

    def __init__(
        self,
        ledger: SimulatedLedger,
        relayer_address: str,
        auto_mine: bool = True,
        poll_interval: float = 0.05,
    ):
        self.ledger = ledger
        self.name = ledger.name
        self._relayer = normalize_address(relayer_address)
        self.auto_mine = auto_mine
        self.poll_interval = poll_interval
        self._log = get_logger(f"local-{ledger.name}", BridgeLayer.CHAIN)

    @property
    def relayer_address(self) -> str:
        return self._relayer

    def get_block_number(self) -> int:
        return self.ledger.block_number

    def get_lock_events(self, from_block: int, to_block: int) -> List[LockEvent]:
        return [
            LockEvent(
                chain=self.name,
                asset_id=int(log.args["assetId"]),
                source_owner=log.args["sourceOwner"],
                recipient=log.args["recipient"],
                lock_hash=log.args["lockHash"],
                block_number=log.block_number,
                tx_hash=log.tx_hash,
                log_index=log.log_index,
            )
            for log in self.ledger.get_logs(from_block, to_block, "AssetLocked")
        ]

    def get_unlock_events(self, from_block: int, to_block: int) -> List[UnlockEvent]:
        return [
            UnlockEvent(
                chain=self.name,
                asset_id=int(log.args["assetId"]),
                recipient=log.args["recipient"],
                lock_hash=log.args["lockHash"],
                block_number=log.block_number,
                tx_hash=log.tx_hash,
                log_index=log.log_index,
                minted=bool(log.args.get("minted", False)),
            )
            for log in self.ledger.get_logs(from_block, to_block, "AssetUnlocked")
        ]

    def get_commitment_root(self, block_number: int) -> Optional[str]:
        return self.ledger.read(lambda v: v.commitment_root(block_number))

    def is_lock_processed(self, lock_hash: str) -> bool:
        return self.ledger.read(lambda v: v.is_processed(lock_hash))

    def estimate_gas(self, call: ContractCall) -> int:
        try:
            return self.ledger.estimate_gas(self._relayer, call.method, *call.args)
        except VerifierError as exc:
            raise TransactionReverted(str(exc)) from exc

    def send_transaction(self, call: ContractCall, gas_limit: int) -> str:
        receipt = self.ledger.transact(self._relayer, call.method, *call.args, gas_limit=gas_limit)
        self._log.debug("transaction mined", tx_hash=receipt.tx_hash, method=call.method,
                        status=receipt.status)
        return receipt.tx_hash

    def wait_for_receipt(self, tx_hash: str, confirmations: int, timeout: float) -> TxReceipt:
        deadline = time.monotonic() + timeout
        while True:
            receipt = self.ledger.get_receipt(tx_hash)
            if receipt is not None:
                if not receipt.succeeded:
                    raise TransactionReverted(receipt.revert_reason or "execution reverted", tx_hash)
                depth = self.ledger.block_number - receipt.block_number + 1
                if depth >= confirmations:
                    return TxReceipt(tx_hash, receipt.block_number, receipt.status, receipt.gas_used)
                if self.auto_mine:
                    self.ledger.mine(confirmations - depth)
                    continue
            if time.monotonic() >= deadline:
                raise TransactionTimeout(tx_hash, timeout)
            time.sleep(self.poll_interval)

    def get_balance(self, address: Optional[str] = None) -> int:
        return self.ledger.balance_of(address or self._relayer)


# =============================================================================
# WEB3 ADAPTER
# =============================================================================

_RECORD_COMPONENTS = [
    {"name": "assetId", "type": "uint256"},
    {"name": "recipient", "type": "address"},
    {"name": "lockHash", "type": "bytes32"},
    {"name": "blockNumber", "type": "uint256"},
]

VERIFIER_ABI: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": "AssetLocked",
        "anonymous": False,
        "inputs": [
            {"name": "assetId", "type": "uint256", "indexed": True},
            {"name": "sourceOwner", "type": "address", "indexed": True},
            {"name": "recipient", "type": "address", "indexed": False},
            {"name": "lockHash", "type": "bytes32", "indexed": False},
            {"name": "blockNumber", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "AssetUnlocked",
        "anonymous": False,
        "inputs": [
            {"name": "assetId", "type": "uint256", "indexed": True},
            {"name": "recipient", "type": "address", "indexed": True},
            {"name": "lockHash", "type": "bytes32", "indexed": False},
            {"name": "minted", "type": "bool", "indexed": False},
        ],
    },
    {
        "type": "function",
        "name": "submitCommitment",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "blockNumber", "type": "uint256"},
            {"name": "root", "type": "bytes32"},
            {"name": "lockCount", "type": "uint256"},
            {"name": "records", "type": "tuple[]", "components": _RECORD_COMPONENTS},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "unlockWithProof",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "assetId", "type": "uint256"},
            {"name": "recipient", "type": "address"},
            {"name": "lockHash", "type": "bytes32"},
            {"name": "blockNumber", "type": "uint256"},
            {"name": "proof", "type": "bytes32[]"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "batchUnlockWithProof",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "assetIds", "type": "uint256[]"},
            {"name": "recipients", "type": "address[]"},
            {"name": "lockHashes", "type": "bytes32[]"},
            {"name": "blockNumbers", "type": "uint256[]"},
            {"name": "proofs", "type": "bytes32[][]"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "commitmentRoots",
        "stateMutability": "view",
        "inputs": [{"name": "blockNumber", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bytes32"}],
    },
    {
        "type": "function",
        "name": "processedLocks",
        "stateMutability": "view",
        "inputs": [{"name": "lockHash", "type": "bytes32"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


def _to_hex32(value: Any) -> str:
    return normalize_hash(bytes(value))


class Web3ChainAdapter:
    """
    Adapter for a live EVM ledger.

    Reads map connection failures to ChainUnavailable; contract logic errors map
    to TransactionReverted with the node's revert string.
    """

    def __init__(
        self,
        name: str,
        rpc_url: str,
        verifier_address: str,
        private_key: str,
        chain_id: Optional[int] = None,
        request_timeout: float = 25.0,
    ):
        self.name = name
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.contract = self.w3.eth.contract(address=normalize_address(verifier_address), abi=VERIFIER_ABI)
        self.account = self.w3.eth.account.from_key(private_key)
        self.chain_id = chain_id
        self._log = get_logger(f"web3-{name}", BridgeLayer.CHAIN)

    @property
    def relayer_address(self) -> str:
        return self.account.address

    def _rpc(self, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except ContractLogicError as exc:
            raise TransactionReverted(getattr(exc, "message", None) or str(exc)) from exc
        except (TimeExhausted, requests.exceptions.RequestException, OSError) as exc:
            raise ChainUnavailable(f"{self.name}: {exc}") from exc

    def get_block_number(self) -> int:
        return int(self._rpc(lambda: self.w3.eth.block_number))

    def get_lock_events(self, from_block: int, to_block: int) -> List[LockEvent]:
        logs = self._rpc(self.contract.events.AssetLocked.get_logs, from_block=from_block, to_block=to_block)
        return [
            LockEvent(
                chain=self.name,
                asset_id=int(log["args"]["assetId"]),
                source_owner=log["args"]["sourceOwner"],
                recipient=log["args"]["recipient"],
                lock_hash=_to_hex32(log["args"]["lockHash"]),
                block_number=int(log["blockNumber"]),
                tx_hash=self.w3.to_hex(log["transactionHash"]),
                log_index=int(log["logIndex"]),
            )
            for log in logs
        ]

    def get_unlock_events(self, from_block: int, to_block: int) -> List[UnlockEvent]:
        logs = self._rpc(self.contract.events.AssetUnlocked.get_logs, from_block=from_block, to_block=to_block)
        return [
            UnlockEvent(
                chain=self.name,
                asset_id=int(log["args"]["assetId"]),
                recipient=log["args"]["recipient"],
                lock_hash=_to_hex32(log["args"]["lockHash"]),
                block_number=int(log["blockNumber"]),
                tx_hash=self.w3.to_hex(log["transactionHash"]),
                log_index=int(log["logIndex"]),
                minted=bool(log["args"]["minted"]),
            )
            for log in logs
        ]

    def get_commitment_root(self, block_number: int) -> Optional[str]:
        raw = self._rpc(self.contract.functions.commitmentRoots(int(block_number)).call)
        root = _to_hex32(raw)
        return None if int(root, 16) == 0 else root

    def is_lock_processed(self, lock_hash: str) -> bool:
        return bool(self._rpc(self.contract.functions.processedLocks(hash_to_bytes(lock_hash)).call))

    def _function(self, call: ContractCall):
        fns = self.contract.functions
        if call.method == "submit_commitment":
            block_number, root, lock_count, records = call.args
            return fns.submitCommitment(
                block_number,
                hash_to_bytes(root),
                lock_count,
                [(r.asset_id, r.recipient, hash_to_bytes(r.lock_hash), r.block_number) for r in records],
            )
        if call.method == "unlock_with_proof":
            asset_id, recipient, lock_hash, block_number, proof = call.args
            return fns.unlockWithProof(
                asset_id, normalize_address(recipient), hash_to_bytes(lock_hash), block_number,
                [hash_to_bytes(p) for p in proof],
            )
        if call.method == "batch_unlock_with_proof":
            (requests,) = call.args
            return fns.batchUnlockWithProof(
                [int(r.asset_id) for r in requests],
                [normalize_address(r.recipient) for r in requests],
                [hash_to_bytes(r.lock_hash) for r in requests],
                [int(r.block_number) for r in requests],
                [[hash_to_bytes(p) for p in r.proof] for r in requests],
            )
        raise ValueError(f"unsupported verifier call: {call.method}")

    def estimate_gas(self, call: ContractCall) -> int:
        fn = self._function(call)
        return int(self._rpc(fn.estimate_gas, {"from": self.account.address}))

    def send_transaction(self, call: ContractCall, gas_limit: int) -> str:
        fn = self._function(call)
        params: Dict[str, Any] = {
            "from": self.account.address,
            "nonce": self._rpc(self.w3.eth.get_transaction_count, self.account.address, "pending"),
            "gas": int(gas_limit),
        }
        if self.chain_id is not None:
            params["chainId"] = self.chain_id
        tx = self._rpc(fn.build_transaction, params)
        signed = self.account.sign_transaction(tx)
        tx_hash = self._rpc(self.w3.eth.send_raw_transaction, signed.raw_transaction)
        return self.w3.to_hex(tx_hash)

    def wait_for_receipt(self, tx_hash: str, confirmations: int, timeout: float) -> TxReceipt:
        deadline = time.monotonic() + timeout
        try:
            receipt = self._rpc(self.w3.eth.wait_for_transaction_receipt, tx_hash, timeout=timeout)
        except ChainUnavailable:
            raise TransactionTimeout(tx_hash, timeout) from None
        if int(receipt["status"]) != 1:
            raise TransactionReverted("execution reverted", tx_hash)
        mined = int(receipt["blockNumber"])
        while self.get_block_number() - mined + 1 < confirmations:
            if time.monotonic() >= deadline:
                raise TransactionTimeout(tx_hash, timeout)
            time.sleep(1.0)
        return TxReceipt(tx_hash, mined, 1, int(receipt["gasUsed"]))

    def get_balance(self, address: Optional[str] = None) -> int:
        target = normalize_address(address) if address else self.account.address
        return int(self._rpc(self.w3.eth.get_balance, target))


# =============================================================================
# RESILIENT WRAPPER
# =============================================================================

class ResilientChainAdapter:
    """
    Wraps another adapter's reads in a RetryPolicy and a per-ledger CircuitBreaker.

    Writes pass straight through. Exhausted retries and an open circuit both
    surface as ChainUnavailable so callers handle a single transient type.
    """

    def __init__(
        self,
        inner: ChainAdapter,
        retry: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.inner = inner
        self.name = inner.name
        self.retry = retry or RetryPolicy(
            max_attempts=3, base_delay_seconds=1.0, retryable_exceptions=(ChainUnavailable,)
        )
        self.breaker = breaker or CircuitBreaker(
            f"{inner.name}-rpc", failure_threshold=5, timeout_seconds=30.0,
            counted_exceptions=(ChainUnavailable,),
        )
        self._log = get_logger(f"resilient-{inner.name}", BridgeLayer.CHAIN)

    @property
    def relayer_address(self) -> str:
        return self.inner.relayer_address

    def _read(self, fn, *args):
        try:
            return self.retry.execute(lambda: self.breaker.call(fn, *args))
        except RetryExhaustedError as exc:
            self._log.warning("rpc retries exhausted", attempts=exc.attempts, error=str(exc.last_exception))
            raise ChainUnavailable(f"{self.name}: {exc.last_exception}") from exc
        except CircuitBreakerError as exc:
            raise ChainUnavailable(str(exc)) from exc

    def get_block_number(self) -> int:
        return self._read(self.inner.get_block_number)

    def get_lock_events(self, from_block: int, to_block: int) -> List[LockEvent]:
        return self._read(self.inner.get_lock_events, from_block, to_block)

    def get_unlock_events(self, from_block: int, to_block: int) -> List[UnlockEvent]:
        return self._read(self.inner.get_unlock_events, from_block, to_block)

    def get_commitment_root(self, block_number: int) -> Optional[str]:
        return self._read(self.inner.get_commitment_root, block_number)

    def is_lock_processed(self, lock_hash: str) -> bool:
        return self._read(self.inner.is_lock_processed, lock_hash)

    def get_balance(self, address: Optional[str] = None) -> int:
        return self._read(self.inner.get_balance, address)

    def estimate_gas(self, call: ContractCall) -> int:
        return self._read(self.inner.estimate_gas, call)

    def send_transaction(self, call: ContractCall, gas_limit: int) -> str:
        return self.inner.send_transaction(call, gas_limit)

    def wait_for_receipt(self, tx_hash: str, confirmations: int, timeout: float) -> TxReceipt:
        return self.inner.wait_for_receipt(tx_hash, confirmations, timeout)
