"""
Allocation domain models.

An Allocation is a ledger-visible lock on a sender's funds that names the
venue as executor. It is consumed exactly once, by Execute (funds move to
the receiver) or by Cancel (funds return to the sender), unless its
settle-before deadline passes first.

State machine (NONE is implicit, an untracked reference):

    NONE -> LOCKED -> EXECUTED | CANCELLED | EXPIRED
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Iterable, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AllocationState(str, Enum):
    """Lifecycle state of a tracked allocation."""
    LOCKED = "LOCKED"
    EXECUTED = "EXECUTED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_ALLOCATION_STATES = frozenset({
    AllocationState.EXECUTED,
    AllocationState.CANCELLED,
    AllocationState.EXPIRED,
})


class AuthorizationMode(str, Enum):
    """Who holds a party's signing key."""
    PLATFORM = "platform"   # operator-custodied, non-interactive submission
    EXTERNAL = "external"   # self-custodied, interactive signing required


@dataclass(frozen=True)
class InstrumentRef:
    """A token instrument as the ledger identifies it."""
    symbol: str
    id: str
    admin: str

    def to_json(self) -> dict[str, str]:
        return {"admin": self.admin, "id": self.id}

    def matches(self, instrument_id: str, instrument_admin: str) -> bool:
        return self.id == instrument_id and self.admin == instrument_admin


@dataclass
class Allocation:
    """Funds locked by ``sender`` under the control of ``executor``.

    ``receiver`` may be unknown while the order rests and is bound when the
    allocation is executed.
    """
    contract_ref: str
    sender: str
    executor: str
    amount: Decimal
    instrument: InstrumentRef
    allocate_before: datetime
    settle_before: datetime
    authorization_mode: AuthorizationMode
    receiver: Optional[str] = None
    state: AllocationState = AllocationState.LOCKED
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ALLOCATION_STATES

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.settle_before

    def transition(self, new_state: AllocationState) -> None:
        """Move LOCKED to a terminal state.

        Raises:
            ValueError: On any transition out of a terminal state.
        """
        if self.is_terminal:
            raise ValueError(
                f"allocation {self.contract_ref} is already {self.state.value}, "
                f"cannot move to {new_state.value}"
            )
        if new_state == AllocationState.LOCKED:
            raise ValueError("allocations cannot re-enter LOCKED")
        self.state = new_state
        self.updated_at = _utcnow()


@dataclass(frozen=True)
class SigningKey:
    """Stored Ed25519 key of a self-custodied party.

    ``private_key_material`` is base64 (32-byte seed or 64-byte seed+public key).
    """
    party_id: str
    private_key_material: str = field(repr=False)
    fingerprint: str = ""


@dataclass(frozen=True)
class Holding:
    """Holding-interface view of a token contract owned by a party."""
    contract_id: str
    owner: str
    instrument_id: str
    instrument_admin: str
    amount: Decimal
    locked: bool = False


@dataclass(frozen=True)
class Balance:
    """Aggregated holdings of one party in one instrument."""
    instrument: InstrumentRef
    total: Decimal
    available: Decimal
    locked: Decimal

    @classmethod
    def from_holdings(cls, instrument: InstrumentRef, holdings: Iterable[Holding]) -> "Balance":
        available = Decimal("0")
        locked = Decimal("0")
        for holding in holdings:
            if not instrument.matches(holding.instrument_id, holding.instrument_admin):
                continue
            if holding.locked:
                locked += holding.amount
            else:
                available += holding.amount
        return cls(
            instrument=instrument,
            total=available + locked,
            available=available,
            locked=locked,
        )


class PartyDirectory:
    """Resolves each party's authorization mode.

    The operator party and configured internal parties are platform
    custodied; every other party is treated as self-custodied.
    """

    def __init__(self, operator_party: str, internal_parties: Iterable[str] = ()) -> None:
        self._operator = operator_party
        self._internal = {operator_party, *internal_parties}

    @property
    def operator_party(self) -> str:
        return self._operator

    def mode_of(self, party: str) -> AuthorizationMode:
        if party in self._internal:
            return AuthorizationMode.PLATFORM
        return AuthorizationMode.EXTERNAL

    def is_external(self, party: str) -> bool:
        return self.mode_of(party) == AuthorizationMode.EXTERNAL

    def add_internal(self, party: str) -> None:
        self._internal.add(party)
