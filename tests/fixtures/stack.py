"""Settlement stack wired against a FakeLedger."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from meridian.core.config import ConfigManager
from meridian.domain.allocation import InstrumentRef, PartyDirectory
from meridian.integrations.ledger.session import LedgerSession
from meridian.matching.instruments import InstrumentRegistry
from meridian.matching.matcher import OrderMatcher
from meridian.matching.sinks import InMemoryTradeSink
from meridian.services.metrics import MetricsEmitter
from meridian.settlement.allocations import AllocationManager
from meridian.settlement.executor import SettlementExecutor
from meridian.settlement.keystore import InMemoryKeyStore, generate_signing_key
from meridian.settlement.serializer import PartyContextSerializer
from meridian.settlement.signing import InteractiveSigningProtocol
from meridian.settlement.strategies import default_strategies
from tests.fixtures.fake_ledger import FakeLedger

OPERATOR = "venue::1220aa01"
ALICE = "alice::1220bb02"
BOB = "bob::1220cc03"
CAROL = "carol::1220dd04"  # self-custodied
DAVE = "dave::1220ee05"    # self-custodied

CC = InstrumentRef(symbol="CC", id="Amulet", admin="dso::1220ff06")
USDC = InstrumentRef(symbol="USDC", id="USDC", admin="issuer::1220ff07")

TEST_CONFIG = {
    "settlement": {
        "min_window_seconds": 600,
        "default_settle_window_seconds": 86400,
        "default_allocate_window_seconds": 3600,
    },
    "matching": {
        "interval_seconds": 0.05,
        "max_matches_per_cycle": 10,
        "trading_pairs": ["CC/USDC"],
        "prevent_self_trade": True,
        "market_buy_buffer": "0.05",
        "trigger_min_interval_seconds": 0.0,
    },
}


@dataclass
class SettlementStack:
    ledger: FakeLedger
    directory: PartyDirectory
    session: LedgerSession
    serializer: PartyContextSerializer
    key_store: InMemoryKeyStore
    signing: InteractiveSigningProtocol
    executor: SettlementExecutor
    allocations: AllocationManager
    matcher: OrderMatcher
    trades: InMemoryTradeSink
    metrics: MetricsEmitter

    def add_external_party(self, party: str) -> None:
        """Store a fresh key for ``party`` and teach the ledger its public half."""
        key = generate_signing_key(party)
        self.key_store.put(key)
        self.ledger.register_key(key)

    def fund(self, party: str, instrument: InstrumentRef, amount: str) -> str:
        return self.ledger.credit(party, instrument, Decimal(amount))


def build_stack(
    config: Optional[ConfigManager] = None,
    ledger: Optional[FakeLedger] = None,
    internal_parties: tuple[str, ...] = (ALICE, BOB),
) -> SettlementStack:
    config = config or ConfigManager(data=TEST_CONFIG)
    ledger = ledger or FakeLedger()
    metrics = MetricsEmitter()
    directory = PartyDirectory(OPERATOR, internal_parties)
    session = LedgerSession(ledger, ledger.templates)
    serializer = PartyContextSerializer(session, metrics=metrics)
    key_store = InMemoryKeyStore()
    signing = InteractiveSigningProtocol(serializer, ledger, key_store)
    executor = SettlementExecutor(
        default_strategies(serializer, signing),
        directory=directory,
        templates=ledger.templates,
        serializer=serializer,
        metrics=metrics,
    )
    allocations = AllocationManager(
        config,
        serializer=serializer,
        executor=executor,
        directory=directory,
        templates=ledger.templates,
        signing=signing,
        metrics=metrics,
    )
    trades = InMemoryTradeSink()
    matcher = OrderMatcher(
        config,
        allocations=allocations,
        instruments=InstrumentRegistry([CC, USDC]),
        executor_party=OPERATOR,
        trade_sink=trades,
        metrics=metrics,
    )
    return SettlementStack(
        ledger=ledger,
        directory=directory,
        session=session,
        serializer=serializer,
        key_store=key_store,
        signing=signing,
        executor=executor,
        allocations=allocations,
        matcher=matcher,
        trades=trades,
        metrics=metrics,
    )
