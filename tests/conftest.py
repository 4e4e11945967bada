import pathlib
import sys
from dataclasses import dataclass, field
from typing import Dict, List, Tuple

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import lockstep`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from lockstep.bridge.alerts import RecordingAlertSink  # noqa: E402
from lockstep.bridge.builder import CommitmentBuilder  # noqa: E402
from lockstep.bridge.chain import LocalChainAdapter  # noqa: E402
from lockstep.bridge.config import ConfigManager  # noqa: E402
from lockstep.bridge.events import EventBus, EventRecorder  # noqa: E402
from lockstep.bridge.indexer import LockEventIndexer  # noqa: E402
from lockstep.bridge.ledger import SimulatedLedger, link_ledgers, random_address  # noqa: E402
from lockstep.bridge.queue import BUILD_COMMITMENT, SUBMIT_ROOT, WorkerPool  # noqa: E402
from lockstep.bridge.relayer import RelaySettings, RootRelay  # noqa: E402
from lockstep.bridge.storage import BridgeStore  # noqa: E402
from lockstep.bridge.verifier import VerifierRole  # noqa: E402

ORIGIN = "ethereum"
MIRROR = "megaeth"
RELAYER_FUNDS = 10 * 10**18


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def fresh_config():
    """Every test starts from a default configuration singleton."""
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def store():
    s = BridgeStore("sqlite://")
    s.create_schema()
    yield s
    s.close()


@dataclass
class Accounts:
    owner: str = field(default_factory=random_address)
    relayer: str = field(default_factory=random_address)
    alice: str = field(default_factory=random_address)
    bob: str = field(default_factory=random_address)
    eve: str = field(default_factory=random_address)


@pytest.fixture
def accounts() -> Accounts:
    return Accounts()


@pytest.fixture
def ledgers(accounts) -> Tuple[SimulatedLedger, SimulatedLedger]:
    """An origin and a mirror ledger, linked, with the relayer as root submitter on both."""
    origin = SimulatedLedger(ORIGIN, 1, start_block=100)
    mirror = SimulatedLedger(MIRROR, 42069, start_block=5000)
    origin.deploy_verifier(VerifierRole.ORIGIN, accounts.owner, submitter=accounts.relayer)
    mirror.deploy_verifier(VerifierRole.MIRROR, accounts.owner, submitter=accounts.relayer)
    link_ledgers(origin, mirror, accounts.owner)
    for ledger in (origin, mirror):
        ledger.fund(accounts.relayer, RELAYER_FUNDS)
    return origin, mirror


@dataclass
class Bridge:
    """The off-ledger pipeline wired over two simulated ledgers."""
    store: BridgeStore
    origin: SimulatedLedger
    mirror: SimulatedLedger
    accounts: Accounts
    adapters: Dict[str, LocalChainAdapter]
    bus: EventBus
    events: EventRecorder
    alerts: RecordingAlertSink
    builder: CommitmentBuilder
    relay: RootRelay
    indexers: List[LockEventIndexer]
    build_pool: WorkerPool
    submit_pool: WorkerPool

    def lock(self, ledger: SimulatedLedger, sender: str, asset_id: int, recipient: str) -> Tuple[str, int]:
        receipt = ledger.execute(sender, "lock", asset_id, recipient)
        return receipt.logs[0].args["lockHash"], receipt.block_number

    def index(self) -> int:
        return sum(ix.catch_up() for ix in self.indexers)

    def build(self) -> int:
        self.index()
        return self.build_pool.run_pending()

    def deliver(self) -> int:
        """Index, build and submit everything that is due."""
        self.build()
        return self.submit_pool.run_pending()


def make_bridge(store, ledgers, accounts, settings=None) -> Bridge:
    origin, mirror = ledgers
    adapters = {
        ORIGIN: LocalChainAdapter(origin, accounts.relayer),
        MIRROR: LocalChainAdapter(mirror, accounts.relayer),
    }
    routes = {ORIGIN: MIRROR, MIRROR: ORIGIN}
    bus = EventBus()
    events = EventRecorder(bus)
    alerts = RecordingAlertSink()
    builder = CommitmentBuilder(store, routes, bus, alerts)
    settings = settings or RelaySettings(
        confirmation_blocks=1,
        tx_timeout_seconds=5.0,
        min_balances={ORIGIN: 0.1, MIRROR: 0.1},
        failed_replay_delay_seconds=0.0,
    )
    relay = RootRelay(store, adapters, routes, settings, bus, alerts, builder)
    indexers = [LockEventIndexer(a, store, bus, window_size=100) for a in adapters.values()]
    for indexer in indexers:
        indexer.start()
    return Bridge(
        store=store,
        origin=origin,
        mirror=mirror,
        accounts=accounts,
        adapters=adapters,
        bus=bus,
        events=events,
        alerts=alerts,
        builder=builder,
        relay=relay,
        indexers=indexers,
        build_pool=WorkerPool(store, BUILD_COMMITMENT, builder.handle_job, alerts=alerts),
        submit_pool=WorkerPool(store, SUBMIT_ROOT, relay.handle_submit_job, alerts=alerts),
    )


@pytest.fixture
def bridge(store, ledgers, accounts) -> Bridge:
    return make_bridge(store, ledgers, accounts)
