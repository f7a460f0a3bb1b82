"""
Prometheus metrics emission for Meridian.

All metrics use the 'meridian_' prefix and live in a private registry so
several app instances (or tests) never collide.
"""
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from meridian import __version__


class MetricsEmitter:
    """Prometheus metrics emission (emit only, no reading).

    Usage:
        emitter = MetricsEmitter()
        emitter.record_settlement_attempt("operator_only", "success")
        output = emitter.get_metrics()
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self._registry = registry or CollectorRegistry()

        self._info = Info(
            "meridian",
            "Meridian settlement core information",
            registry=self._registry,
        )
        self._info.info({"version": __version__, "component": "meridian"})

        self._ledger_ready = Gauge(
            "meridian_ledger_ready",
            "1 when the ledger gateway passed its readiness probe",
            registry=self._registry,
        )

        # Settlement
        self._settlement_attempts = Counter(
            "meridian_settlement_attempts_total",
            "Settlement strategy attempts",
            ["strategy", "outcome"],
            registry=self._registry,
        )
        self._settlements = Counter(
            "meridian_settlements_total",
            "Settlement calls by final outcome",
            ["outcome"],
            registry=self._registry,
        )
        self._settlement_latency = Histogram(
            "meridian_settlement_latency_seconds",
            "End-to-end settlement latency in seconds",
            buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self._registry,
        )
        self._allocation_transitions = Counter(
            "meridian_allocation_transitions_total",
            "Allocation lifecycle transitions",
            ["state"],
            registry=self._registry,
        )
        self._serializer_queue_depth = Gauge(
            "meridian_party_serializer_queue_depth",
            "Operations waiting for the ledger session",
            registry=self._registry,
        )

        # Matching
        self._trades = Counter(
            "meridian_trades_total",
            "Trades settled",
            ["trading_pair"],
            registry=self._registry,
        )
        self._orders = Counter(
            "meridian_orders_total",
            "Orders placed or cancelled",
            ["side", "event"],
            registry=self._registry,
        )
        self._matching_cycles = Counter(
            "meridian_matching_cycles_total",
            "Matching cycles run",
            ["trigger"],
            registry=self._registry,
        )
        self._matching_cycle_seconds = Histogram(
            "meridian_matching_cycle_seconds",
            "Matching cycle duration in seconds",
            buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 25.0],
            registry=self._registry,
        )
        self._open_orders = Gauge(
            "meridian_open_orders",
            "Orders resting in the book",
            ["trading_pair"],
            registry=self._registry,
        )

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def set_ledger_ready(self, ready: bool) -> None:
        self._ledger_ready.set(1 if ready else 0)

    def record_settlement_attempt(self, strategy: str, outcome: str) -> None:
        self._settlement_attempts.labels(strategy=strategy, outcome=outcome).inc()

    def record_settlement(self, outcome: str, latency_seconds: float) -> None:
        self._settlements.labels(outcome=outcome).inc()
        self._settlement_latency.observe(latency_seconds)

    def record_allocation_transition(self, state: str) -> None:
        self._allocation_transitions.labels(state=state).inc()

    def set_serializer_queue_depth(self, depth: int) -> None:
        self._serializer_queue_depth.set(depth)

    def record_trade(self, trading_pair: str) -> None:
        self._trades.labels(trading_pair=trading_pair).inc()

    def record_order(self, side: str, event: str) -> None:
        self._orders.labels(side=side, event=event).inc()

    def record_matching_cycle(self, trigger: str, duration_seconds: float) -> None:
        self._matching_cycles.labels(trigger=trigger).inc()
        self._matching_cycle_seconds.observe(duration_seconds)

    def set_open_orders(self, trading_pair: str, count: int) -> None:
        self._open_orders.labels(trading_pair=trading_pair).set(count)

    def get_metrics(self) -> bytes:
        """Prometheus exposition format for the registry."""
        return generate_latest(self._registry)
