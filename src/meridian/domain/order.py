"""
Order domain models.

These models represent resting orders, placement requests and the trades
produced when two orders settle against each other.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderSide(str, Enum):
    """Order side (buy or sell)."""
    BUY = "BUY"
    SELL = "SELL"


class OrderMode(str, Enum):
    """Order pricing mode."""
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class OrderStatus(str, Enum):
    """Order lifecycle status. Transitions only move forward."""
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.FILLED, OrderStatus.CANCELLED})


def split_trading_pair(trading_pair: str) -> tuple[str, str]:
    """Split "BASE/QUOTE" into its symbols."""
    base, sep, quote = trading_pair.partition("/")
    if not sep or not base or not quote:
        raise ValueError(f"trading pair must look like BASE/QUOTE, got {trading_pair!r}")
    return base, quote


@dataclass
class OrderRequest:
    """Request to place an order."""
    owner: str
    trading_pair: str
    side: OrderSide
    quantity: Decimal
    mode: OrderMode = OrderMode.LIMIT
    price: Optional[Decimal] = None
    client_order_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        split_trading_pair(self.trading_pair)
        if not self.owner:
            raise ValueError("owner is required")
        if self.quantity <= 0:
            raise ValueError(f"quantity must be positive, got {self.quantity}")
        if self.mode == OrderMode.LIMIT:
            if self.price is None:
                raise ValueError("limit orders require a price")
            if self.price <= 0:
                raise ValueError(f"price must be positive, got {self.price}")


@dataclass
class Order:
    """An order resting in the book."""
    order_id: str
    owner: str
    trading_pair: str
    side: OrderSide
    mode: OrderMode
    quantity: Decimal
    price: Optional[Decimal] = None
    filled: Decimal = Decimal("0")
    status: OrderStatus = OrderStatus.OPEN
    allocation_ref: Optional[str] = None
    # Per-unit quote price a BUY lock was sized with
    lock_price: Optional[Decimal] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def from_request(cls, request: OrderRequest) -> "Order":
        return cls(
            order_id=request.client_order_id,
            owner=request.owner,
            trading_pair=request.trading_pair,
            side=request.side,
            mode=request.mode,
            quantity=request.quantity,
            price=request.price,
            lock_price=request.price,
        )

    @property
    def remaining(self) -> Decimal:
        return self.quantity - self.filled

    @property
    def base_symbol(self) -> str:
        return split_trading_pair(self.trading_pair)[0]

    @property
    def quote_symbol(self) -> str:
        return split_trading_pair(self.trading_pair)[1]

    @property
    def is_market(self) -> bool:
        return self.mode == OrderMode.MARKET

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    @property
    def is_open(self) -> bool:
        return not self.is_terminal and self.remaining > 0

    def apply_fill(self, quantity: Decimal) -> None:
        """Record a settled fill and advance status.

        Raises:
            ValueError: If the order is terminal or the fill overflows it.
        """
        if self.is_terminal:
            raise ValueError(f"cannot fill order {self.order_id} in status {self.status.value}")
        if quantity <= 0:
            raise ValueError(f"fill quantity must be positive, got {quantity}")
        if self.filled + quantity > self.quantity:
            raise ValueError(
                f"fill of {quantity} exceeds remaining {self.remaining} on {self.order_id}"
            )
        self.filled += quantity
        self.status = (
            OrderStatus.FILLED if self.filled == self.quantity
            else OrderStatus.PARTIALLY_FILLED
        )
        self.updated_at = _utcnow()

    def cancel(self) -> None:
        """Move to CANCELLED. Raises ValueError from a terminal status."""
        if self.is_terminal:
            raise ValueError(f"cannot cancel order {self.order_id} in status {self.status.value}")
        self.status = OrderStatus.CANCELLED
        self.updated_at = _utcnow()


@dataclass(frozen=True)
class Trade:
    """A settled match between one buy and one sell order."""
    trade_id: str
    buy_order_id: str
    sell_order_id: str
    price: Decimal
    quantity: Decimal
    trading_pair: str
    buyer: str
    seller: str
    update_id: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def notional(self) -> Decimal:
        """Quote amount that changed hands."""
        return self.price * self.quantity
