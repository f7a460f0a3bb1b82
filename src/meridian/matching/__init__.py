"""Order matching: book, matcher, instruments and trade sinks."""

from meridian.matching.instruments import InstrumentRegistry
from meridian.matching.matcher import OrderMatcher
from meridian.matching.orderbook import OrderBook, crosses, match_price
from meridian.matching.sinks import EventBusTradeSink, InMemoryTradeSink, TradeSink

__all__ = [
    "OrderMatcher",
    "OrderBook",
    "InstrumentRegistry",
    "TradeSink",
    "EventBusTradeSink",
    "InMemoryTradeSink",
    "crosses",
    "match_price",
]
