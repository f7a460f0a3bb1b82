"""Domain models for orders, allocations and settlement events."""

from meridian.domain.allocation import (
    TERMINAL_ALLOCATION_STATES,
    Allocation,
    AllocationState,
    AuthorizationMode,
    Balance,
    Holding,
    InstrumentRef,
    PartyDirectory,
    SigningKey,
)
from meridian.domain.events import (
    AllocationStateEvent,
    SettlementFailedEvent,
    TradeExecutedEvent,
)
from meridian.domain.order import (
    TERMINAL_ORDER_STATUSES,
    Order,
    OrderMode,
    OrderRequest,
    OrderSide,
    OrderStatus,
    Trade,
    split_trading_pair,
)

__all__ = [
    # Allocation
    "Allocation",
    "AllocationState",
    "AuthorizationMode",
    "Balance",
    "Holding",
    "InstrumentRef",
    "PartyDirectory",
    "SigningKey",
    "TERMINAL_ALLOCATION_STATES",
    # Orders
    "Order",
    "OrderMode",
    "OrderRequest",
    "OrderSide",
    "OrderStatus",
    "Trade",
    "TERMINAL_ORDER_STATUSES",
    "split_trading_pair",
    # Events
    "AllocationStateEvent",
    "SettlementFailedEvent",
    "TradeExecutedEvent",
]
