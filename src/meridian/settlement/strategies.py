"""Authorization strategies for settling allocations.

Each strategy is one way of getting the Execute commands for a set of
allocation legs authorized on the ledger. The executor walks an ordered
list of them; a strategy only says whether it applies to a context, how to
attempt it, and how to classify its failures.

Default order:

1. OperatorOnlyStrategy - the venue submits alone, relying on the
   allocation's signatories having delegated the consuming choice.
2. InteractiveStrategy(minimal) then InteractiveStrategy(broad) - for
   settlements involving self-custodied parties, sign interactively with
   the smallest actor set first, then widen it after an authorization
   rejection.
3. BroadenedActorStrategy - every involved party acts non-interactively;
   only possible when nobody is self-custodied.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from meridian.domain.allocation import Allocation, PartyDirectory
from meridian.integrations.ledger.errors import FailureClassification, classify_ledger_error
from meridian.integrations.ledger.types import Command, TransactionResult
from meridian.settlement.serializer import PartyContextSerializer
from meridian.settlement.signing import InteractiveSigningProtocol


def _unique(parties) -> list[str]:
    return list(dict.fromkeys(p for p in parties if p))


@dataclass
class SettlementLeg:
    """One allocation to execute, with its bound receiver and amount."""

    allocation: Allocation
    receiver: str
    amount: Decimal

    @property
    def allocation_ref(self) -> str:
        return self.allocation.contract_ref

    @property
    def sender(self) -> str:
        return self.allocation.sender


@dataclass
class SettlementContext:
    """Everything a strategy needs to attempt one settlement."""

    legs: list[SettlementLeg]
    executor: str
    directory: PartyDirectory
    commands: list[Command] = field(default_factory=list)

    @property
    def allocation_refs(self) -> tuple[str, ...]:
        return tuple(leg.allocation_ref for leg in self.legs)

    @property
    def senders(self) -> list[str]:
        return _unique(leg.sender for leg in self.legs)

    @property
    def receivers(self) -> list[str]:
        return _unique(leg.receiver for leg in self.legs)

    @property
    def parties(self) -> list[str]:
        return _unique([self.executor, *self.senders, *self.receivers])

    @property
    def counterparties(self) -> list[str]:
        return [p for p in self.parties if p != self.executor]

    @property
    def external_parties(self) -> list[str]:
        return [p for p in self.parties if self.directory.is_external(p)]

    @property
    def involves_external(self) -> bool:
        return bool(self.external_parties)


class SettlementStrategy(ABC):
    """One way of authorizing a settlement."""

    name: str = "strategy"

    @abstractmethod
    def applies(self, ctx: SettlementContext) -> bool:
        ...

    @abstractmethod
    async def attempt(self, ctx: SettlementContext) -> TransactionResult:
        ...

    def classify(self, error: BaseException) -> FailureClassification:
        return classify_ledger_error(error)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.name}>"


class OperatorOnlyStrategy(SettlementStrategy):
    """Submit with only the executor acting."""

    name = "operator_only"

    def __init__(self, serializer: PartyContextSerializer) -> None:
        self._serializer = serializer

    def applies(self, ctx: SettlementContext) -> bool:
        return not ctx.directory.is_external(ctx.executor)

    async def attempt(self, ctx: SettlementContext) -> TransactionResult:
        return await self._serializer.run_as(
            ctx.executor,
            lambda session: session.submit(ctx.commands, read_as=ctx.counterparties),
            label=self.name,
        )


class InteractiveStrategy(SettlementStrategy):
    """Interactive multi-party signing over a minimal or broad actor set.

    The minimal set is the self-custodied parties among the executor and
    the senders; the broad set adds self-custodied receivers.
    """

    def __init__(self, signing: InteractiveSigningProtocol, broad: bool = False) -> None:
        self._signing = signing
        self._broad = broad
        self.name = "interactive_broad" if broad else "interactive_minimal"

    def minimal_actors(self, ctx: SettlementContext) -> list[str]:
        candidates = _unique([ctx.executor, *ctx.senders])
        return [p for p in candidates if ctx.directory.is_external(p)]

    def broad_actors(self, ctx: SettlementContext) -> list[str]:
        return [p for p in ctx.parties if ctx.directory.is_external(p)]

    def actors(self, ctx: SettlementContext) -> list[str]:
        return self.broad_actors(ctx) if self._broad else self.minimal_actors(ctx)

    def applies(self, ctx: SettlementContext) -> bool:
        if not ctx.involves_external:
            return False
        actors = self.actors(ctx)
        if not actors:
            return False
        if self._broad:
            return actors != self.minimal_actors(ctx)
        return True

    async def attempt(self, ctx: SettlementContext) -> TransactionResult:
        actors = self.actors(ctx)
        read_as = [p for p in ctx.parties if p not in actors]
        return await self._signing.prepare_sign_execute(actors, ctx.commands, read_as=read_as)


class BroadenedActorStrategy(SettlementStrategy):
    """Every involved party acts in a single non-interactive submission."""

    name = "broadened_actors"

    def __init__(self, serializer: PartyContextSerializer) -> None:
        self._serializer = serializer

    def applies(self, ctx: SettlementContext) -> bool:
        return not ctx.involves_external and len(ctx.parties) > 1

    async def attempt(self, ctx: SettlementContext) -> TransactionResult:
        return await self._serializer.run_as(
            ctx.executor,
            lambda session: session.submit(ctx.commands, extra_act_as=ctx.counterparties),
            label=self.name,
        )


def default_strategies(
    serializer: PartyContextSerializer,
    signing: Optional[InteractiveSigningProtocol],
) -> list[SettlementStrategy]:
    """The standard strategy order; interactive steps need a signing protocol."""
    strategies: list[SettlementStrategy] = [OperatorOnlyStrategy(serializer)]
    if signing is not None:
        strategies.append(InteractiveStrategy(signing, broad=False))
        strategies.append(InteractiveStrategy(signing, broad=True))
    strategies.append(BroadenedActorStrategy(serializer))
    return strategies
