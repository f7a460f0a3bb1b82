"""In-memory central limit order book.

One OrderBook per trading pair keeps its resting orders in price/time
priority:

- Buys: market orders first, then price descending, then time ascending.
- Sells: market orders first, then price ascending, then time ascending.

Sort keys only use fields fixed at placement (mode, price, created_at,
order_id), so fills never reorder the book.
"""

from decimal import Decimal
from typing import Iterator, Optional

from sortedcontainers import SortedKeyList

from meridian.domain.order import Order, OrderSide


def _buy_key(order: Order) -> tuple:
    if order.is_market or order.price is None:
        return (0, Decimal("0"), order.created_at, order.order_id)
    return (1, -order.price, order.created_at, order.order_id)


def _sell_key(order: Order) -> tuple:
    if order.is_market or order.price is None:
        return (0, Decimal("0"), order.created_at, order.order_id)
    return (1, order.price, order.created_at, order.order_id)


def crosses(buy: Order, sell: Order) -> bool:
    """True if the pair can trade at some price.

    Two market orders never cross: neither side carries a price. A market
    buy only crosses sells priced within the quote it locked.
    """
    if buy.is_market and sell.is_market:
        return False
    if buy.is_market:
        return buy.lock_price is not None and sell.price <= buy.lock_price
    if sell.is_market:
        return True
    return buy.price >= sell.price


def match_price(buy: Order, sell: Order) -> Decimal:
    """Trade price: the sell's price, or the buy's when the sell is a market order."""
    if sell.is_market or sell.price is None:
        return buy.price
    return sell.price


class OrderBook:
    """Resting orders for a single trading pair."""

    def __init__(self, trading_pair: str) -> None:
        self.trading_pair = trading_pair
        self._bids = SortedKeyList(key=_buy_key)
        self._asks = SortedKeyList(key=_sell_key)
        self._orders: dict[str, Order] = {}

    def __len__(self) -> int:
        return len(self._orders)

    def __contains__(self, order_id: str) -> bool:
        return order_id in self._orders

    def add(self, order: Order) -> None:
        """Insert an order.

        Raises:
            ValueError: Wrong pair, duplicate id or terminal order.
        """
        if order.trading_pair != self.trading_pair:
            raise ValueError(
                f"order {order.order_id} is for {order.trading_pair}, not {self.trading_pair}"
            )
        if order.order_id in self._orders:
            raise ValueError(f"order {order.order_id} is already in the book")
        if not order.is_open:
            raise ValueError(f"order {order.order_id} is not open")
        self._orders[order.order_id] = order
        self._side(order.side).add(order)

    def remove(self, order_id: str) -> Optional[Order]:
        order = self._orders.pop(order_id, None)
        if order is not None:
            self._side(order.side).remove(order)
        return order

    def get(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def prune(self) -> list[Order]:
        """Remove filled and cancelled orders, returning them."""
        done = [o for o in self._orders.values() if not o.is_open]
        for order in done:
            self.remove(order.order_id)
        return done

    def _side(self, side: OrderSide) -> SortedKeyList:
        return self._bids if side == OrderSide.BUY else self._asks

    def bids(self) -> Iterator[Order]:
        """Open buys in priority order."""
        return (o for o in self._bids if o.is_open)

    def asks(self) -> Iterator[Order]:
        """Open sells in priority order."""
        return (o for o in self._asks if o.is_open)

    def has_both_sides(self) -> bool:
        return any(True for _ in self.bids()) and any(True for _ in self.asks())

    def best_bid(self) -> Optional[Decimal]:
        for order in self.bids():
            if order.price is not None and not order.is_market:
                return order.price
        return None

    def best_ask(self) -> Optional[Decimal]:
        """Lowest priced resting sell, ignoring market sells."""
        for order in self.asks():
            if order.price is not None and not order.is_market:
                return order.price
        return None

    @property
    def open_count(self) -> int:
        return sum(1 for o in self._orders.values() if o.is_open)

    def orders(self) -> list[Order]:
        return list(self._orders.values())
