"""Event payload dataclasses for EventBus publishing.

Payloads carry Decimals and timestamps as strings so any subscriber can
decode them without Meridian's types.

Event Channel Naming Convention:
- trade.executed.{trading_pair} - A match settled on the ledger
- allocation.{state} - An allocation reached a terminal state (executed, cancelled, expired)
- settlement.failed - A match could not settle this cycle
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from meridian.domain.allocation import Allocation
from meridian.domain.order import Trade


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class TradeExecutedEvent:
    """Published to: trade.executed.{trading_pair}"""

    trade_id: str
    trading_pair: str
    buy_order_id: str
    sell_order_id: str
    buyer: str
    seller: str
    price: str
    quantity: str
    timestamp: str
    update_id: Optional[str] = None

    @classmethod
    def from_trade(cls, trade: Trade) -> "TradeExecutedEvent":
        return cls(
            trade_id=trade.trade_id,
            trading_pair=trade.trading_pair,
            buy_order_id=trade.buy_order_id,
            sell_order_id=trade.sell_order_id,
            buyer=trade.buyer,
            seller=trade.seller,
            price=str(trade.price),
            quantity=str(trade.quantity),
            timestamp=trade.timestamp.isoformat(),
            update_id=trade.update_id,
        )


@dataclass(frozen=True)
class AllocationStateEvent:
    """Published to: allocation.{state}

    Attributes:
        allocation_ref: Ledger contract id of the allocation.
        state: Terminal state reached (lowercase).
        sender: Party whose funds were locked.
        receiver: Bound receiver, if the allocation was executed.
        amount: Locked amount as a string.
        instrument: Instrument symbol.
    """

    allocation_ref: str
    state: str
    sender: str
    amount: str
    instrument: str
    receiver: Optional[str] = None
    timestamp: str = ""

    @classmethod
    def from_allocation(cls, allocation: Allocation) -> "AllocationStateEvent":
        return cls(
            allocation_ref=allocation.contract_ref,
            state=allocation.state.value.lower(),
            sender=allocation.sender,
            amount=str(allocation.amount),
            instrument=allocation.instrument.symbol,
            receiver=allocation.receiver,
            timestamp=_now_iso(),
        )

    @property
    def channel(self) -> str:
        return f"allocation.{self.state}"


@dataclass(frozen=True)
class SettlementFailedEvent:
    """Published to: settlement.failed"""

    trading_pair: str
    buy_order_id: str
    sell_order_id: str
    classification: str
    error: str
    retryable: bool
    timestamp: str = ""
