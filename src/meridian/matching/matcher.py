"""Order Matcher - price/time-priority matching that drives ledger settlement.

Each cycle walks every trading pair with open orders on both sides:

1. Pick the best crossing buy/sell pair whose allocations are still usable.
2. Execute both allocations in one atomic ledger transaction (buyer's quote
   to the seller, seller's base to the buyer).
3. On success advance fills, emit one Trade and re-lock any unfilled
   remainder with a fresh allocation.
4. On failure classify and move on:
   - STALE: the affected allocation is invalidated, the order stays put.
   - SIGNING_KEY_MISSING: that party's orders sit out the rest of the cycle.
   - TRANSIENT: both orders are left for a later cycle.
   - anything else: the pair is skipped for this cycle.

Cycles run on a fixed interval. Placement also triggers an out-of-band
cycle for its pair without waiting on it; a trigger arriving while a cycle
is running queues the pair until that cycle ends.

Event channels published:
- trade.executed.{trading_pair} (via EventBusTradeSink)
- settlement.failed - A match could not settle
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterable, Optional

import structlog

from meridian.core.config import ConfigManager
from meridian.core.events import EventBus
from meridian.core.lifecycle import BaseComponent, HealthCheckResult
from meridian.core.retry import MeridianError, ResourceNotFoundError, ValidationError
from meridian.domain.allocation import InstrumentRef
from meridian.domain.events import SettlementFailedEvent
from meridian.domain.order import Order, OrderMode, OrderRequest, OrderSide, Trade, split_trading_pair
from meridian.integrations.ledger.errors import FailureClassification, UnknownLedgerError
from meridian.matching.instruments import InstrumentRegistry
from meridian.matching.orderbook import OrderBook, crosses, match_price
from meridian.matching.sinks import InMemoryTradeSink, TradeSink
from meridian.services.metrics import MetricsEmitter
from meridian.settlement.allocations import AllocationManager, ExecutionLeg
from meridian.settlement.executor import Clock, SettlementResult, utcnow

log = structlog.get_logger()

# Matching parameters
DEFAULT_INTERVAL_SECONDS = 1.0
DEFAULT_MAX_MATCHES_PER_CYCLE = 10
DEFAULT_MARKET_BUY_BUFFER = Decimal("0.05")

# Guards
DEFAULT_RECENT_MATCH_TTL_SECONDS = 30
DEFAULT_STALE_ALLOCATION_TTL_SECONDS = 120
DEFAULT_TRIGGER_MIN_INTERVAL_SECONDS = 2.0
DEFAULT_STUCK_CYCLE_SECONDS = 25
DEFAULT_TERMINAL_ORDER_RETENTION_SECONDS = 3600


@dataclass
class _CycleState:
    """Per-cycle bookkeeping."""

    budget: int
    blocked_parties: set[str] = field(default_factory=set)
    skipped: set[tuple[str, str]] = field(default_factory=set)


class OrderMatcher(BaseComponent):
    """Matches crossing orders and settles them through the AllocationManager."""

    def __init__(
        self,
        config: ConfigManager,
        allocations: AllocationManager,
        instruments: InstrumentRegistry,
        executor_party: str,
        trade_sink: Optional[TradeSink] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsEmitter] = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the matcher.

        Args:
            config: Configuration manager.
            allocations: Allocation lifecycle manager.
            instruments: Symbol to ledger instrument mapping.
            executor_party: Venue party named as executor on every allocation.
            trade_sink: Destination for settled trades.
            event_bus: Optional bus for settlement failure events.
            metrics: Optional metrics emitter.
            clock: Source of "now" for trade timestamps.
        """
        super().__init__(name="OrderMatcher")
        self._allocations = allocations
        self._instruments = instruments
        self._executor_party = executor_party
        self._trade_sink: TradeSink = trade_sink or InMemoryTradeSink()
        self._event_bus = event_bus
        self._metrics = metrics
        self._clock = clock
        self._log = log.bind(component="order_matcher")

        self._interval = config.get_float("matching.interval_seconds", DEFAULT_INTERVAL_SECONDS)
        self._max_matches = config.get_int(
            "matching.max_matches_per_cycle", DEFAULT_MAX_MATCHES_PER_CYCLE
        )
        self._market_buy_buffer = config.get_decimal(
            "matching.market_buy_buffer", DEFAULT_MARKET_BUY_BUFFER
        )
        self._prevent_self_trade = config.get_bool("matching.prevent_self_trade", True)
        self._recent_match_ttl = config.get_float(
            "matching.recent_match_ttl_seconds", DEFAULT_RECENT_MATCH_TTL_SECONDS
        )
        self._stale_allocation_ttl = config.get_float(
            "matching.stale_allocation_ttl_seconds", DEFAULT_STALE_ALLOCATION_TTL_SECONDS
        )
        self._trigger_min_interval = config.get_float(
            "matching.trigger_min_interval_seconds", DEFAULT_TRIGGER_MIN_INTERVAL_SECONDS
        )
        self._stuck_cycle_seconds = config.get_float(
            "matching.stuck_cycle_seconds", DEFAULT_STUCK_CYCLE_SECONDS
        )
        self._order_retention = timedelta(seconds=config.get_float(
            "matching.terminal_order_retention_seconds", DEFAULT_TERMINAL_ORDER_RETENTION_SECONDS
        ))

        self._books: dict[str, OrderBook] = {}
        self._orders: dict[str, Order] = {}
        for pair in config.get_list("matching.trading_pairs", []):
            self._book_for(pair)

        # Guards (monotonic timestamps)
        self._recent_matches: dict[tuple[str, str], float] = {}
        self._stale_allocations: dict[str, float] = {}
        self._last_trigger: dict[str, float] = {}
        self._pending_pairs: set[str] = set()
        self._cycle_running = False
        self._cycle_started = 0.0

        self._should_run = False
        self._loop_task: Optional[asyncio.Task] = None
        self._trigger_tasks: set[asyncio.Task] = set()

        # Stats
        self._cycles_run = 0
        self._matches_attempted = 0
        self._trades_executed = 0
        self._last_cycle_at = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _do_start(self) -> None:
        self._should_run = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="order-matcher")
        self._log.info(
            "order_matcher_started",
            interval=self._interval,
            max_matches_per_cycle=self._max_matches,
            pairs=sorted(self._books),
        )

    async def _do_stop(self) -> None:
        self._should_run = False
        tasks = [t for t in [self._loop_task, *self._trigger_tasks] if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._loop_task = None
        self._trigger_tasks.clear()
        self._log.info(
            "order_matcher_stopped",
            cycles=self._cycles_run,
            trades=self._trades_executed,
        )

    async def _do_health_check(self) -> HealthCheckResult:
        return HealthCheckResult.healthy(
            "Matching active",
            cycles_run=self._cycles_run,
            matches_attempted=self._matches_attempted,
            trades_executed=self._trades_executed,
            open_orders=sum(book.open_count for book in self._books.values()),
            last_cycle_at=self._last_cycle_at.isoformat() if self._last_cycle_at else None,
        )

    async def _run_loop(self) -> None:
        while self._should_run:
            try:
                await self.run_matching_cycle(trigger="interval")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self._log.error("matching_cycle_error", error=str(e))
            await asyncio.sleep(self._interval)

    # -------------------------------------------------------------------------
    # Books
    # -------------------------------------------------------------------------

    def _book_for(self, trading_pair: str) -> OrderBook:
        book = self._books.get(trading_pair)
        if book is None:
            split_trading_pair(trading_pair)
            book = self._books[trading_pair] = OrderBook(trading_pair)
        return book

    def book(self, trading_pair: str) -> Optional[OrderBook]:
        return self._books.get(trading_pair)

    def get_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise ResourceNotFoundError(f"unknown order {order_id}")
        return order

    def prune_finished(self, now: Optional[datetime] = None) -> int:
        """Forget FILLED and CANCELLED orders past the retention window.

        Also prunes terminal allocations. Returns the number of orders removed.
        """
        now = now or self._clock()
        for book in self._books.values():
            book.prune()
        cutoff = now - self._order_retention
        done = [
            order_id for order_id, order in self._orders.items()
            if order.is_terminal and order.updated_at <= cutoff
        ]
        for order_id in done:
            del self._orders[order_id]
        self._allocations.prune_terminal(now)
        if done:
            self._log.debug("finished_orders_pruned", count=len(done))
        return len(done)

    def open_orders(self, trading_pair: Optional[str] = None) -> list[Order]:
        if trading_pair is None:
            books = list(self._books.values())
        else:
            books = [self._books[trading_pair]] if trading_pair in self._books else []
        return [o for book in books for o in book.orders() if o.is_open]

    # -------------------------------------------------------------------------
    # Placement and cancellation
    # -------------------------------------------------------------------------

    async def place_order(self, request: OrderRequest) -> Order:
        """Lock the order's funds, add it to the book and trigger matching.

        Raises:
            ValidationError: Unknown instrument, duplicate id, or a market
                buy with no priced ask to size its lock.
            InsufficientFundsError: The owner cannot cover the lock.
        """
        if request.client_order_id in self._orders:
            raise ValidationError(f"order {request.client_order_id} already exists")

        book = self._book_for(request.trading_pair)
        order = Order.from_request(request)

        if order.side == OrderSide.BUY and order.mode == OrderMode.MARKET:
            best_ask = book.best_ask()
            if best_ask is None:
                raise ValidationError(
                    f"no resting ask on {order.trading_pair} to price a market buy"
                )
            order.lock_price = best_ask * (Decimal("1") + self._market_buy_buffer)

        instrument, amount = self._lock_terms(order)
        allocation = await self._allocations.create(
            sender=order.owner,
            amount=amount,
            instrument=instrument,
            executor=self._executor_party,
        )
        order.allocation_ref = allocation.contract_ref

        book.add(order)
        self._orders[order.order_id] = order

        if self._metrics:
            self._metrics.record_order(order.side.value.lower(), "placed")
            self._metrics.set_open_orders(order.trading_pair, book.open_count)

        self._log.info(
            "order_placed",
            order_id=order.order_id,
            owner=order.owner,
            trading_pair=order.trading_pair,
            side=order.side.value,
            mode=order.mode.value,
            quantity=str(order.quantity),
            price=str(order.price) if order.price is not None else None,
            allocation_ref=order.allocation_ref,
        )

        self.trigger(order.trading_pair)
        return order

    def _lock_terms(self, order: Order) -> tuple[InstrumentRef, Decimal]:
        """Instrument and amount that must be locked for the order's remainder."""
        if order.side == OrderSide.SELL:
            return self._instruments.get(order.base_symbol), order.remaining
        if order.lock_price is None:
            raise ValidationError(f"buy order {order.order_id} has no lock price")
        return self._instruments.get(order.quote_symbol), order.remaining * order.lock_price

    async def cancel_order(self, order_id: str) -> Order:
        """Release the order's allocation and mark it CANCELLED.

        Cancelling a terminal order returns it unchanged.

        Raises:
            ResourceNotFoundError: Unknown order id.
            MeridianError: The ledger refused to release the allocation.
        """
        order = self.get_order(order_id)
        if order.is_terminal:
            return order

        ref = order.allocation_ref
        if ref and self._allocations.find(ref) is not None:
            outcome = await self._allocations.cancel(ref, order.owner, self._executor_party)
            if not outcome.success:
                error = outcome.error
                if isinstance(error, MeridianError):
                    raise error
                raise UnknownLedgerError(f"cancel of allocation {ref} failed", cause=error)

        if order.is_terminal:
            # filled by a settlement that held the allocation lock
            return order

        order.cancel()
        book = self._books[order.trading_pair]
        book.remove(order.order_id)

        if self._metrics:
            self._metrics.record_order(order.side.value.lower(), "cancelled")
            self._metrics.set_open_orders(order.trading_pair, book.open_count)

        self._log.info("order_cancelled", order_id=order.order_id, allocation_ref=ref)
        return order

    # -------------------------------------------------------------------------
    # Triggers
    # -------------------------------------------------------------------------

    def trigger(self, trading_pair: str) -> bool:
        """Request an out-of-band cycle for one pair without waiting on it.

        Returns False when the matcher is stopped or the pair was triggered
        within the rate limit; the interval loop still picks it up.
        """
        if not self._should_run:
            return False

        now = time.monotonic()
        last = self._last_trigger.get(trading_pair)
        if last is not None and now - last < self._trigger_min_interval:
            return False
        self._last_trigger[trading_pair] = now

        if self._cycle_running and not self._cycle_is_stuck(now):
            self._pending_pairs.add(trading_pair)
            return True

        task = asyncio.create_task(self._run_triggered(trading_pair))
        self._trigger_tasks.add(task)
        task.add_done_callback(self._trigger_tasks.discard)
        return True

    async def _run_triggered(self, trading_pair: str) -> None:
        try:
            await self.run_matching_cycle(pairs=[trading_pair], trigger="placement")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._log.error("triggered_cycle_error", trading_pair=trading_pair, error=str(e))

    def _cycle_is_stuck(self, now: float) -> bool:
        return now - self._cycle_started >= self._stuck_cycle_seconds

    # -------------------------------------------------------------------------
    # Matching
    # -------------------------------------------------------------------------

    async def run_matching_cycle(
        self,
        pairs: Optional[Iterable[str]] = None,
        trigger: str = "manual",
    ) -> list[Trade]:
        """Run one matching cycle over ``pairs`` (default: every book).

        Returns:
            Trades settled during the cycle.
        """
        now = time.monotonic()
        if self._cycle_running:
            if not self._cycle_is_stuck(now):
                self._pending_pairs.update(pairs if pairs is not None else self._books)
                return []
            self._log.warning(
                "matching_cycle_stuck_reset",
                running_for=round(now - self._cycle_started, 1),
            )

        self._cycle_running = True
        self._cycle_started = now
        self._expire_guards(now)

        cycle = _CycleState(budget=self._max_matches)
        trades: list[Trade] = []
        try:
            targets = list(pairs) if pairs is not None else list(self._books)
            trades.extend(await self._match_pairs(targets, cycle))
            while self._pending_pairs and cycle.budget > 0:
                pending = sorted(self._pending_pairs)
                self._pending_pairs.clear()
                trades.extend(await self._match_pairs(pending, cycle))
        finally:
            self._cycle_running = False
            self._cycles_run += 1
            self._last_cycle_at = self._clock()
            if self._metrics:
                self._metrics.record_matching_cycle(trigger, time.monotonic() - now)

        self.prune_finished()
        if trades:
            self._log.info("matching_cycle_complete", trigger=trigger, trades=len(trades))
        return trades

    async def _match_pairs(self, pairs: Iterable[str], cycle: _CycleState) -> list[Trade]:
        trades: list[Trade] = []
        for pair in pairs:
            if cycle.budget <= 0:
                self._pending_pairs.add(pair)
                continue
            book = self._books.get(pair)
            if book is None or not book.has_both_sides():
                continue
            trades.extend(await self._match_book(book, cycle))
        return trades

    async def _match_book(self, book: OrderBook, cycle: _CycleState) -> list[Trade]:
        trades: list[Trade] = []
        while cycle.budget > 0:
            candidate = self._next_candidate(book, cycle)
            if candidate is None:
                break
            buy, sell = candidate
            cycle.budget -= 1
            self._matches_attempted += 1
            trade = await self._settle_match(buy, sell, cycle)
            if trade is not None:
                trades.append(trade)

        book.prune()
        if self._metrics:
            self._metrics.set_open_orders(book.trading_pair, book.open_count)
        return trades

    def _next_candidate(
        self,
        book: OrderBook,
        cycle: _CycleState,
    ) -> Optional[tuple[Order, Order]]:
        """Highest-priority crossing pair not excluded by a guard."""
        sells = [s for s in book.asks() if self._is_matchable(s, cycle)]
        for buy in book.bids():
            if not self._is_matchable(buy, cycle):
                continue
            for sell in sells:
                if not crosses(buy, sell):
                    if sell.is_market:
                        continue
                    # asks are price ascending, nothing further crosses
                    break
                key = (buy.order_id, sell.order_id)
                if key in cycle.skipped or key in self._recent_matches:
                    continue
                if self._prevent_self_trade and buy.owner == sell.owner:
                    continue
                return buy, sell
        return None

    def _is_matchable(self, order: Order, cycle: _CycleState) -> bool:
        if not order.is_open or order.owner in cycle.blocked_parties:
            return False
        ref = order.allocation_ref
        if ref is None or ref in self._stale_allocations:
            return False
        return self._allocations.is_usable(ref)

    def _expire_guards(self, now: float) -> None:
        self._recent_matches = {
            k: t for k, t in self._recent_matches.items() if now - t < self._recent_match_ttl
        }
        self._stale_allocations = {
            k: t for k, t in self._stale_allocations.items()
            if now - t < self._stale_allocation_ttl
        }

    async def _settle_match(
        self,
        buy: Order,
        sell: Order,
        cycle: _CycleState,
    ) -> Optional[Trade]:
        key = (buy.order_id, sell.order_id)
        quantity = min(buy.remaining, sell.remaining)
        price = match_price(buy, sell)
        legs = [
            ExecutionLeg(buy.allocation_ref, receiver=sell.owner, amount=quantity * price),
            ExecutionLeg(sell.allocation_ref, receiver=buy.owner, amount=quantity),
        ]

        try:
            result = await self._allocations.execute_legs(legs, self._executor_party)
        except MeridianError as e:
            cycle.skipped.add(key)
            self._log.warning(
                "match_rejected",
                buy_order_id=buy.order_id,
                sell_order_id=sell.order_id,
                error=str(e),
            )
            return None

        if not result.success:
            await self._handle_failure(buy, sell, result, cycle)
            return None

        self._recent_matches[key] = time.monotonic()
        buy.apply_fill(quantity)
        sell.apply_fill(quantity)

        trade = Trade(
            trade_id=str(uuid.uuid4()),
            buy_order_id=buy.order_id,
            sell_order_id=sell.order_id,
            price=price,
            quantity=quantity,
            trading_pair=buy.trading_pair,
            buyer=buy.owner,
            seller=sell.owner,
            update_id=result.update_id,
            timestamp=self._clock(),
        )
        self._trades_executed += 1
        if self._metrics:
            self._metrics.record_trade(trade.trading_pair)
            for order in (buy, sell):
                if order.is_terminal:
                    self._metrics.record_order(order.side.value.lower(), "filled")

        self._log.info(
            "trade_executed",
            trade_id=trade.trade_id,
            trading_pair=trade.trading_pair,
            price=str(price),
            quantity=str(quantity),
            buy_order_id=buy.order_id,
            sell_order_id=sell.order_id,
            strategy=result.strategy,
            update_id=result.update_id,
        )

        try:
            await self._trade_sink.publish(trade)
        except Exception as e:
            self._log.warning("trade_publish_failed", trade_id=trade.trade_id, error=str(e))

        for order in (buy, sell):
            if order.is_open:
                await self._relock(order)
        return trade

    async def _handle_failure(
        self,
        buy: Order,
        sell: Order,
        result: SettlementResult,
        cycle: _CycleState,
    ) -> None:
        classification = result.classification or FailureClassification.UNKNOWN
        cycle.skipped.add((buy.order_id, sell.order_id))

        if classification == FailureClassification.STALE:
            now = time.monotonic()
            for order in (buy, sell):
                if order.allocation_ref in result.stale_refs:
                    self._stale_allocations[order.allocation_ref] = now
                    self._log.info(
                        "order_allocation_invalidated",
                        order_id=order.order_id,
                        allocation_ref=order.allocation_ref,
                    )
        elif classification == FailureClassification.SIGNING_KEY_MISSING:
            cycle.blocked_parties.update(result.missing_key_parties)

        self._log.warning(
            "match_settlement_failed",
            buy_order_id=buy.order_id,
            sell_order_id=sell.order_id,
            classification=classification.value,
            retryable=result.retryable,
            error=str(result.error) if result.error else None,
        )

        if self._event_bus is not None and self._event_bus.is_connected:
            event = SettlementFailedEvent(
                trading_pair=buy.trading_pair,
                buy_order_id=buy.order_id,
                sell_order_id=sell.order_id,
                classification=classification.value,
                error=str(result.error) if result.error else "",
                retryable=result.retryable,
                timestamp=self._clock().isoformat(),
            )
            try:
                await self._event_bus.publish("settlement.failed", event)
            except Exception as e:
                self._log.warning("settlement_event_publish_failed", error=str(e))

    async def _relock(self, order: Order) -> None:
        """Lock the unfilled remainder of a partially filled order."""
        previous = order.allocation_ref
        try:
            instrument, amount = self._lock_terms(order)
            allocation = await self._allocations.create(
                sender=order.owner,
                amount=amount,
                instrument=instrument,
                executor=self._executor_party,
            )
        except Exception as e:
            order.allocation_ref = None
            self._log.warning(
                "order_relock_failed",
                order_id=order.order_id,
                previous_allocation=previous,
                error=str(e),
            )
            return

        if order.is_terminal:
            # cancelled while the new lock was being created
            await self._allocations.cancel(
                allocation.contract_ref, order.owner, self._executor_party
            )
            return

        order.allocation_ref = allocation.contract_ref
        self._log.info(
            "order_relocked",
            order_id=order.order_id,
            allocation_ref=allocation.contract_ref,
            amount=str(amount),
        )

    @property
    def stats(self) -> dict[str, int]:
        return {
            "cycles_run": self._cycles_run,
            "matches_attempted": self._matches_attempted,
            "trades_executed": self._trades_executed,
        }
