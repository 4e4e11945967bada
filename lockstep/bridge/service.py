"""
Bridge Service

Wires one chain pair into a running process:

    ┌──────────────┐   ┌──────────────┐
    │ indexer (A)  │   │ indexer (B)  │      one polling thread per ledger
    └──────┬───────┘   └──────┬───────┘
           │ build_commitment jobs│
           ▼                      ▼
    ┌───────────────────────────────────┐
    │ build pool (bounded)              │──▶ submit_root jobs
    └───────────────────────────────────┘
    ┌───────────────────────────────────┐
    │ submit pool (bounded)             │──▶ roots + unlocks on the peer ledger
    └───────────────────────────────────┘
    ┌───────────────────────────────────┐
    │ relay loop                        │──▶ balances, sweep, failed-tx replay
    └───────────────────────────────────┘

Components talk only through the store. Stopping is cooperative: in-flight
ledger calls finish, no new cycle starts.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, List, Optional

from lockstep.bridge.alerts import AlertSink, Severity, make_alert_sink
from lockstep.bridge.builder import CommitmentBuilder, SubmitJobSpec
from lockstep.bridge.chain import (
    ChainAdapter,
    ChainUnavailable,
    ResilientChainAdapter,
    Web3ChainAdapter,
)
from lockstep.bridge.config import BridgeConfig, ConfigError
from lockstep.bridge.events import EventBus
from lockstep.bridge.indexer import LockEventIndexer
from lockstep.bridge.observability import BridgeLayer, get_logger
from lockstep.bridge.queue import BUILD_COMMITMENT, SUBMIT_ROOT, WorkerPool
from lockstep.bridge.relayer import RelaySettings, RootRelay
from lockstep.bridge.resilience import CircuitBreaker, RetryPolicy
from lockstep.bridge.storage import BridgeStore, BuildJobSpec, JobStatus, LockStatus

_log = get_logger("service", BridgeLayer.SERVICE)


def relay_settings(config: BridgeConfig) -> RelaySettings:
    r = config.relayer
    return RelaySettings(
        gas_multiplier=r.gas_multiplier.get(),
        confirmation_blocks=r.confirmation_blocks.get(),
        tx_timeout_seconds=r.tx_timeout_seconds.get(),
        unlock_batch_size=r.unlock_batch_size.get(),
        unlock_max_deferrals=r.unlock_max_deferrals.get(),
        relay_interval_seconds=r.relay_interval_seconds.get(),
        balance_check_interval_seconds=r.balance_check_interval_seconds.get(),
        min_balances={
            config.origin.name.get(): config.origin.min_balance.get(),
            config.mirror.name.get(): config.mirror.min_balance.get(),
        },
        pause_on_error=config.safety.pause_on_error.get(),
        error_pause_seconds=config.safety.error_pause_seconds.get(),
        failed_replay_delay_seconds=config.safety.failed_replay_delay_seconds.get(),
        failed_replay_max_retries=config.safety.failed_replay_max_retries.get(),
    )


def web3_adapter(section: Any, private_key: str, config: BridgeConfig) -> ChainAdapter:
    """Web3 adapter for one chain section, with retry and a circuit breaker on reads."""
    name = section.name.get()
    if not section.rpc_url.get() or not section.verifier_address.get():
        raise ConfigError(f"{name}: rpc_url and verifier_address are required")
    inner = Web3ChainAdapter(
        name=name,
        rpc_url=section.rpc_url.get(),
        verifier_address=section.verifier_address.get(),
        private_key=private_key,
        chain_id=section.chain_id.get(),
    )
    retry = RetryPolicy(
        max_attempts=config.relayer.rpc_max_attempts.get(),
        base_delay_seconds=config.relayer.rpc_base_delay_seconds.get(),
        retryable_exceptions=(ChainUnavailable,),
    )
    breaker = CircuitBreaker(f"{name}-rpc", counted_exceptions=(ChainUnavailable,))
    return ResilientChainAdapter(inner, retry=retry, breaker=breaker)


class BridgeService:
    """Owns the components and threads of one bridge process."""

    def __init__(
        self,
        store: BridgeStore,
        origin: ChainAdapter,
        mirror: ChainAdapter,
        config: Optional[BridgeConfig] = None,
        bus: Optional[EventBus] = None,
        alerts: Optional[AlertSink] = None,
    ):
        config = config or BridgeConfig()
        if origin.name == mirror.name:
            raise ConfigError("origin and mirror ledgers need distinct names")
        self.config = config
        self.store = store
        self.bus = bus or EventBus()
        self.alerts = alerts or make_alert_sink(config.alerts.webhook_url.get(), config.alerts.timeout_seconds.get())
        if store.on_invalid_transition is None:
            store.on_invalid_transition = self._report_invalid_transition
        self.adapters: Dict[str, ChainAdapter] = {origin.name: origin, mirror.name: mirror}
        self.routes = {origin.name: mirror.name, mirror.name: origin.name}

        q = config.queue
        self.builder = CommitmentBuilder(
            store, self.routes, self.bus, self.alerts,
            SubmitJobSpec(max_attempts=q.submit_max_attempts.get(), backoff_seconds=q.submit_backoff_seconds.get()),
        )
        build_job = BuildJobSpec(max_attempts=q.build_max_attempts.get(), backoff_seconds=q.build_backoff_seconds.get())
        poll = {
            origin.name: config.origin.poll_interval_seconds.get(),
            mirror.name: config.mirror.poll_interval_seconds.get(),
        }
        self.indexers = [
            LockEventIndexer(
                adapter, store, self.bus,
                window_size=config.indexer.window_size.get(),
                confirmation_blocks=config.indexer.confirmation_blocks.get(),
                poll_interval=poll[adapter.name],
                build_job=build_job,
            )
            for adapter in (origin, mirror)
        ]
        self.relay = RootRelay(store, self.adapters, self.routes, relay_settings(config), self.bus, self.alerts,
                               self.builder)
        pool_args = dict(
            poll_interval=q.poll_interval_seconds.get(),
            alerts=self.alerts,
            failed_max_retries=config.safety.failed_replay_max_retries.get(),
            failed_retry_delay_seconds=config.safety.failed_replay_delay_seconds.get(),
        )
        self.build_pool = WorkerPool(store, BUILD_COMMITMENT, self.builder.handle_job,
                                     concurrency=q.build_concurrency.get(), **pool_args)
        self.submit_pool = WorkerPool(store, SUBMIT_ROOT, self.relay.handle_submit_job,
                                      concurrency=q.submit_concurrency.get(), **pool_args)

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    @classmethod
    def from_config(
        cls,
        config: BridgeConfig,
        bus: Optional[EventBus] = None,
        alerts: Optional[AlertSink] = None,
    ) -> "BridgeService":
        private_key = config.relayer.private_key.get()
        if not private_key:
            raise ConfigError("relayer.private_key is required")
        store = BridgeStore(config.storage.database_url.get())
        store.create_schema()
        return cls(
            store,
            web3_adapter(config.origin, private_key, config),
            web3_adapter(config.mirror, private_key, config),
            config=config,
            bus=bus,
            alerts=alerts,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _spawn(self, name: str, target: Callable[[threading.Event], None]) -> None:
        thread = threading.Thread(target=target, args=(self._stop,), name=name, daemon=True)
        thread.start()
        self._threads.append(thread)

    def start(self) -> None:
        if self.running:
            raise RuntimeError("service already running")
        self._stop.clear()
        self.store.create_schema()
        requeued = self.store.reset_running_jobs()
        if requeued:
            _log.warning("requeued jobs left running by a previous process", jobs=requeued)
        for indexer in self.indexers:
            self._spawn(f"lockstep-indexer-{indexer.chain}", indexer.run)
        self._spawn("lockstep-build-pool", self.build_pool.run)
        self._spawn("lockstep-submit-pool", self.submit_pool.run)
        self._spawn("lockstep-relay", self.relay.run)
        _log.info("bridge service started", routes=", ".join(f"{s}->{d}" for s, d in self.routes.items()))

    def request_stop(self) -> None:
        """Signal every loop to finish its current cycle."""
        self._stop.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = [t for t in self._threads if t.is_alive()]
        _log.info("bridge service stopped", lingering=len(self._threads))

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._stop.wait(timeout)

    def step(self) -> Dict[str, int]:
        """One synchronous pass of every component, in pipeline order."""
        windows = 0
        for indexer in self.indexers:
            windows += indexer.poll_once()
        built = self.build_pool.run_pending()
        submitted = self.submit_pool.run_pending()
        counts = self.relay.sweep()
        counts.update({"windows": windows, "builds": built, "submissions": submitted})
        return counts

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def _report_invalid_transition(self, lock_hash: str, current: LockStatus, target: LockStatus) -> None:
        self.alerts.send(
            "Invalid lock status transition",
            f"lock {lock_hash}: {current.value} -> {target.value} refused",
            Severity.CRITICAL,
        )

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "checkpoints": {name: self.store.get_checkpoint(name) for name in self.adapters},
            "locks": self.store.status_counts(),
            "pending_commitments": len(self.store.get_pending_commitments()),
            "queued_jobs": self.store.count_jobs(status=JobStatus.QUEUED),
            "failed_transactions": len(self.store.list_failed_transactions()),
        }
