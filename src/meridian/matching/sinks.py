"""Trade sinks: where settled trades go after a match."""

from typing import Protocol, runtime_checkable

import structlog

from meridian.core.events import EventBus
from meridian.domain.events import TradeExecutedEvent
from meridian.domain.order import Trade

log = structlog.get_logger()


@runtime_checkable
class TradeSink(Protocol):
    async def publish(self, trade: Trade) -> None:
        ...


class InMemoryTradeSink:
    """Collects trades in a list."""

    def __init__(self) -> None:
        self.trades: list[Trade] = []

    async def publish(self, trade: Trade) -> None:
        self.trades.append(trade)


class EventBusTradeSink:
    """Publishes TradeExecutedEvent to trade.executed.{trading_pair}."""

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus
        self._log = log.bind(component="trade_sink")

    async def publish(self, trade: Trade) -> None:
        if not self._event_bus.is_connected:
            self._log.debug("trade_not_published_bus_offline", trade_id=trade.trade_id)
            return
        await self._event_bus.publish(
            f"trade.executed.{trade.trading_pair}",
            TradeExecutedEvent.from_trade(trade),
        )
