"""
End-to-end tests: the bridge service moves one asset origin -> mirror ->
origin -> mirror over two simulated ledgers.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import time

import pytest

from lockstep.bridge.alerts import RecordingAlertSink, Severity
from lockstep.bridge.chain import LocalChainAdapter
from lockstep.bridge.config import BridgeConfig
from lockstep.bridge.service import BridgeService
from lockstep.bridge.storage import LockStatus

from conftest import MIRROR, ORIGIN


def _config(**sections):
    config = BridgeConfig()
    config.apply_dict({
        "origin": {"min_balance": 0.1, "poll_interval_seconds": 0.01},
        "mirror": {"min_balance": 0.1, "poll_interval_seconds": 0.01},
        "indexer": {"confirmation_blocks": 0},
        "relayer": {"confirmation_blocks": 1, "tx_timeout_seconds": 5.0, "relay_interval_seconds": 0.05},
        "queue": {"poll_interval_seconds": 0.01},
        "safety": {"failed_replay_delay_seconds": 0},
    })
    config.apply_dict(sections)
    return config


@pytest.fixture
def service(store, ledgers, accounts):
    origin, mirror = ledgers
    svc = BridgeService(
        store,
        LocalChainAdapter(origin, accounts.relayer),
        LocalChainAdapter(mirror, accounts.relayer),
        config=_config(),
        alerts=RecordingAlertSink(),
    )
    yield svc
    svc.stop(timeout=5.0)


def _lock(ledger, sender, asset_id, recipient):
    receipt = ledger.execute(sender, "lock", asset_id, recipient)
    return receipt.logs[0].args["lockHash"]


def _unlock_logs(ledger):
    return [log.args for log in ledger.get_logs(0, ledger.block_number, "AssetUnlocked")]


class TestRoundTrip:
    """Synchronous passes through the whole pipeline."""

    def test_first_step_starts_at_the_head(self, service, ledgers):
        origin, mirror = ledgers
        counts = service.step()
        assert counts["windows"] == 0
        assert counts["submitted"] == 0
        assert service.status()["checkpoints"] == {ORIGIN: origin.block_number, MIRROR: mirror.block_number}

    def test_asset_travels_there_and_back(self, service, ledgers, accounts):
        origin, mirror = ledgers
        service.step()
        origin.mint_native(1, accounts.alice)

        # origin -> mirror: the mirror mints on first arrival
        outbound = _lock(origin, accounts.alice, 1, accounts.bob)
        counts = service.step()
        assert counts["builds"] == 1
        assert counts["submissions"] == 1
        assert mirror.read(lambda v: v.registry.owner_of(1)) == accounts.bob
        assert origin.read(lambda v: v.is_locked(1))
        assert service.store.get_lock(outbound).status is LockStatus.UNLOCKED
        (first,) = _unlock_logs(mirror)
        assert first["minted"] is True

        # mirror -> origin: the origin releases its custody
        inbound = _lock(mirror, accounts.bob, 1, accounts.eve)
        service.step()
        assert origin.read(lambda v: v.registry.owner_of(1)) == accounts.eve
        assert not origin.read(lambda v: v.is_locked(1))
        assert mirror.read(lambda v: v.is_locked(1))
        assert service.store.get_lock(inbound).status is LockStatus.UNLOCKED
        (back,) = _unlock_logs(origin)
        assert back["minted"] is False

        # origin -> mirror again: the mirror releases instead of minting twice
        again = _lock(origin, accounts.eve, 1, accounts.alice)
        service.step()
        assert mirror.read(lambda v: v.registry.owner_of(1)) == accounts.alice
        assert not mirror.read(lambda v: v.is_locked(1))
        assert service.store.get_lock(again).status is LockStatus.UNLOCKED
        assert [log["minted"] for log in _unlock_logs(mirror)] == [True, False]

        status = service.status()
        assert status["locks"] == {"unlocked": 3}
        assert status["pending_commitments"] == 0
        assert status["failed_transactions"] == 0
        assert status["running"] is False

    def test_replayed_step_is_idempotent(self, service, ledgers, accounts):
        origin, mirror = ledgers
        service.step()
        origin.mint_native(5, accounts.alice)
        lock_hash = _lock(origin, accounts.alice, 5, accounts.bob)
        service.step()

        counts = service.step()
        assert counts["submitted"] == 0
        assert counts["unlocked"] == 0
        assert service.store.get_lock(lock_hash).status is LockStatus.UNLOCKED
        assert len(_unlock_logs(mirror)) == 1

    def test_refused_transition_is_alerted(self, service, ledgers, accounts):
        """A backward status move is refused by the store and reaches the service's alerts."""
        origin, _ = ledgers
        service.step()
        origin.mint_native(6, accounts.alice)
        lock_hash = _lock(origin, accounts.alice, 6, accounts.bob)
        service.step()

        assert not service.store.advance_lock_status(lock_hash, LockStatus.PENDING)
        assert service.store.get_lock(lock_hash).status is LockStatus.UNLOCKED
        (alert,) = service.alerts.alerts
        assert alert.title == "Invalid lock status transition"
        assert alert.severity is Severity.CRITICAL
        assert "unlocked -> pending" in alert.message


def test_threaded_service_delivers(service, ledgers, accounts):
    origin, mirror = ledgers
    service.start()
    assert service.running
    with pytest.raises(RuntimeError):
        service.start()

    deadline = time.monotonic() + 5.0
    while None in service.status()["checkpoints"].values() and time.monotonic() < deadline:
        time.sleep(0.01)

    origin.mint_native(9, accounts.alice)
    lock_hash = _lock(origin, accounts.alice, 9, accounts.bob)
    while service.store.status_counts().get("unlocked") != 1 and time.monotonic() < deadline:
        time.sleep(0.02)

    service.stop(timeout=5.0)
    assert not service.running
    assert mirror.read(lambda v: v.registry.owner_of(9)) == accounts.bob
    assert service.store.get_lock(lock_hash).status is LockStatus.UNLOCKED
