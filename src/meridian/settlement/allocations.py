"""Allocation Lifecycle Manager.

Owns the state machine of every allocation the venue created or was told
about:

    NONE -> LOCKED (create) -> EXECUTED | CANCELLED | EXPIRED

- create() selects unlocked holdings covering the amount and submits the
  lock-creating command with the sender's authorization mode.
- execute() hands the allocation to the SettlementExecutor. A stale result
  (lock gone or deadline passed) moves it to EXPIRED for good.
- cancel() is a single submission and is idempotent: cancelling a terminal
  or expired allocation is a successful no-op.

Execute and cancel on one allocation are serialized by a per-allocation
lock, and a second call on a terminal allocation never reaches the ledger.
"""

import asyncio
import uuid
from contextlib import AsyncExitStack
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Sequence

import structlog

from meridian.core.config import ConfigManager
from meridian.core.events import EventBus
from meridian.core.retry import InsufficientFundsError, ResourceNotFoundError, ValidationError
from meridian.domain.allocation import (
    Allocation,
    AllocationState,
    Balance,
    Holding,
    InstrumentRef,
    PartyDirectory,
)
from meridian.domain.events import AllocationStateEvent
from meridian.integrations.ledger.errors import (
    FailureClassification,
    SigningKeyMissingError,
    UnknownLedgerError,
    classify_ledger_error,
)
from meridian.integrations.ledger.types import (
    Command,
    ExerciseCommand,
    TemplateIds,
    TransactionResult,
    empty_extra_args,
    template_entity,
)
from meridian.services.metrics import MetricsEmitter
from meridian.settlement.executor import Clock, SettlementExecutor, SettlementResult, utcnow
from meridian.settlement.serializer import PartyContextSerializer
from meridian.settlement.signing import InteractiveSigningProtocol
from meridian.settlement.strategies import SettlementLeg

log = structlog.get_logger()

# Lock windows
DEFAULT_MIN_WINDOW_SECONDS = 600
DEFAULT_SETTLE_WINDOW_SECONDS = 24 * 3600
DEFAULT_ALLOCATE_WINDOW_SECONDS = 3600
# Terminal allocations stay queryable (idempotent execute/cancel) this long
DEFAULT_TERMINAL_RETENTION_SECONDS = 3600


def ledger_timestamp(value: datetime) -> str:
    """Timestamp in the JSON API's microsecond UTC form."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def select_holdings(
    holdings: Sequence[Holding],
    instrument: InstrumentRef,
    amount: Decimal,
) -> list[Holding]:
    """Pick unlocked holdings of ``instrument`` covering ``amount``, largest first.

    Raises:
        InsufficientFundsError: If the holdings do not cover the amount.
    """
    candidates = sorted(
        (
            h for h in holdings
            if not h.locked and instrument.matches(h.instrument_id, h.instrument_admin)
        ),
        key=lambda h: h.amount,
        reverse=True,
    )
    selected: list[Holding] = []
    covered = Decimal("0")
    for holding in candidates:
        if covered >= amount:
            break
        selected.append(holding)
        covered += holding.amount
    if covered < amount:
        raise InsufficientFundsError(
            f"available {covered} {instrument.symbol} does not cover {amount}"
        )
    return selected


@dataclass
class ExecutionLeg:
    """Request to execute one allocation towards ``receiver``."""

    allocation_ref: str
    receiver: str
    amount: Optional[Decimal] = None


@dataclass
class AllocationOutcome:
    """Result of execute() or cancel() on one allocation."""

    allocation_ref: str
    state: AllocationState
    success: bool
    no_op: bool = False
    classification: Optional[FailureClassification] = None
    error: Optional[BaseException] = None
    settlement: Optional[SettlementResult] = None

    @property
    def retryable(self) -> bool:
        return self.classification == FailureClassification.TRANSIENT


class AllocationManager:
    """Creates, executes and cancels allocations and tracks their state."""

    def __init__(
        self,
        config: ConfigManager,
        serializer: PartyContextSerializer,
        executor: SettlementExecutor,
        directory: PartyDirectory,
        templates: TemplateIds,
        signing: Optional[InteractiveSigningProtocol] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsEmitter] = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the manager.

        Args:
            config: Configuration manager.
            serializer: Party-context serializer guarding the ledger session.
            executor: Settlement executor used by execute().
            directory: Resolves authorization modes.
            templates: Ledger identifiers (factory, interfaces, choices).
            signing: Interactive signing for self-custodied senders.
            event_bus: Optional bus for allocation state events.
            metrics: Optional metrics emitter.
            clock: Source of "now".
        """
        self._serializer = serializer
        self._executor = executor
        self._directory = directory
        self._templates = templates
        self._signing = signing
        self._event_bus = event_bus
        self._metrics = metrics
        self._clock = clock
        self._log = log.bind(component="allocation_manager")

        self._min_window = timedelta(seconds=config.get_int(
            "settlement.min_window_seconds", DEFAULT_MIN_WINDOW_SECONDS
        ))
        self._settle_window = timedelta(seconds=config.get_int(
            "settlement.default_settle_window_seconds", DEFAULT_SETTLE_WINDOW_SECONDS
        ))
        self._allocate_window = timedelta(seconds=config.get_int(
            "settlement.default_allocate_window_seconds", DEFAULT_ALLOCATE_WINDOW_SECONDS
        ))
        self._retention = timedelta(seconds=config.get_int(
            "settlement.terminal_retention_seconds", DEFAULT_TERMINAL_RETENTION_SECONDS
        ))

        self._allocations: dict[str, Allocation] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def find(self, allocation_ref: str) -> Optional[Allocation]:
        return self._allocations.get(allocation_ref)

    def get(self, allocation_ref: str) -> Allocation:
        """Tracked allocation by reference.

        Raises:
            ResourceNotFoundError: If the reference is not tracked.
        """
        allocation = self._allocations.get(allocation_ref)
        if allocation is None:
            raise ResourceNotFoundError(f"unknown allocation {allocation_ref}")
        return allocation

    def state(self, allocation_ref: str) -> Optional[AllocationState]:
        allocation = self._allocations.get(allocation_ref)
        return allocation.state if allocation else None

    def track(self, allocation: Allocation) -> None:
        """Register an allocation created outside this manager."""
        self._allocations.setdefault(allocation.contract_ref, allocation)

    def prune_terminal(self, now: Optional[datetime] = None) -> int:
        """Forget terminal allocations that left LOCKED before the retention window."""
        cutoff = (now or self._clock()) - self._retention
        done = [
            ref for ref, allocation in self._allocations.items()
            if allocation.is_terminal and allocation.updated_at <= cutoff
        ]
        for ref in done:
            del self._allocations[ref]
        if done:
            self._log.debug("terminal_allocations_pruned", count=len(done))
        return len(done)

    def __len__(self) -> int:
        return len(self._allocations)

    def is_usable(self, allocation_ref: Optional[str]) -> bool:
        """True if the allocation is tracked, LOCKED and not past its deadline."""
        if not allocation_ref:
            return False
        allocation = self._allocations.get(allocation_ref)
        if allocation is None or allocation.is_terminal:
            return False
        return not allocation.is_expired(self._clock())

    def _lock_for(self, allocation_ref: str) -> asyncio.Lock:
        lock = self._locks.get(allocation_ref)
        if lock is None:
            lock = self._locks[allocation_ref] = asyncio.Lock()
        return lock

    # -------------------------------------------------------------------------
    # Holdings
    # -------------------------------------------------------------------------

    async def list_holdings(self, party: str, include_locked: bool = False) -> list[Holding]:
        return await self._serializer.run_as(
            party,
            lambda session: session.list_holdings(include_locked=include_locked),
            label="list_holdings",
        )

    async def get_balance(self, party: str, instrument: InstrumentRef) -> Balance:
        """Total, available and locked amounts of ``instrument`` held by ``party``."""
        holdings = await self.list_holdings(party, include_locked=True)
        return Balance.from_holdings(instrument, holdings)

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(
        self,
        sender: str,
        amount: Decimal,
        instrument: InstrumentRef,
        executor: str,
        allocate_before: Optional[datetime] = None,
        settle_before: Optional[datetime] = None,
        receiver: Optional[str] = None,
        settlement_ref: Optional[str] = None,
    ) -> Allocation:
        """Lock ``amount`` of ``instrument`` from ``sender`` under ``executor``.

        Raises:
            ValidationError: Bad amount or lock window.
            InsufficientFundsError: Unlocked holdings do not cover the amount.
            SigningKeyMissingError: A self-custodied sender has no stored key.
            LedgerError: Other ledger failures, typed by classification.
        """
        if amount <= 0:
            raise ValidationError(f"allocation amount must be positive, got {amount}")
        if not self._templates.allocation_factory_cid:
            raise ValidationError("ledger.templates.allocation_factory_cid is not configured")

        now = self._clock()
        settle_before = settle_before or now + self._settle_window
        allocate_before = allocate_before or min(now + self._allocate_window, settle_before)

        if settle_before - now < self._min_window:
            raise ValidationError(
                f"settlement window {settle_before - now} is shorter than "
                f"the minimum {self._min_window}"
            )
        if allocate_before > settle_before:
            raise ValidationError("allocate_before must not be later than settle_before")
        if allocate_before <= now:
            raise ValidationError("allocate_before is already in the past")

        holdings = await self.list_holdings(sender)
        selected = select_holdings(holdings, instrument, amount)

        command = self._allocate_command(
            sender=sender,
            receiver=receiver or executor,
            executor=executor,
            amount=amount,
            instrument=instrument,
            inputs=selected,
            now=now,
            allocate_before=allocate_before,
            settle_before=settle_before,
            settlement_ref=settlement_ref or str(uuid.uuid4()),
        )
        transaction = await self._submit_for(sender, executor, [command])

        created = transaction.first_created(template_entity(self._templates.allocation_interface))
        if created is None:
            raise UnknownLedgerError(
                f"allocation submission {transaction.update_id} created no allocation contract"
            )

        allocation = Allocation(
            contract_ref=created.contract_id,
            sender=sender,
            executor=executor,
            amount=amount,
            instrument=instrument,
            allocate_before=allocate_before,
            settle_before=settle_before,
            authorization_mode=self._directory.mode_of(sender),
            receiver=receiver,
        )
        self._allocations[allocation.contract_ref] = allocation
        if self._metrics:
            self._metrics.record_allocation_transition(AllocationState.LOCKED.value.lower())

        self._log.info(
            "allocation_created",
            allocation_ref=allocation.contract_ref,
            sender=sender,
            amount=str(amount),
            instrument=instrument.symbol,
            mode=allocation.authorization_mode.value,
            inputs=len(selected),
            settle_before=settle_before.isoformat(),
        )
        return allocation

    def _allocate_command(
        self,
        sender: str,
        receiver: str,
        executor: str,
        amount: Decimal,
        instrument: InstrumentRef,
        inputs: Sequence[Holding],
        now: datetime,
        allocate_before: datetime,
        settle_before: datetime,
        settlement_ref: str,
    ) -> ExerciseCommand:
        argument = {
            "expectedAdmin": instrument.admin,
            "allocation": {
                "settlement": {
                    "executor": executor,
                    "settlementRef": {"id": settlement_ref, "cid": None},
                    "requestedAt": ledger_timestamp(now),
                    "allocateBefore": ledger_timestamp(allocate_before),
                    "settleBefore": ledger_timestamp(settle_before),
                    "meta": {"values": {}},
                },
                "transferLegId": f"{settlement_ref}-leg",
                "transferLeg": {
                    "sender": sender,
                    "receiver": receiver,
                    "amount": str(amount),
                    "instrumentId": instrument.to_json(),
                    "meta": {"values": {}},
                },
            },
            "requestedAt": ledger_timestamp(now),
            "inputHoldingCids": [h.contract_id for h in inputs],
            "extraArgs": empty_extra_args(),
        }
        return ExerciseCommand(
            template_id=self._templates.allocation_factory_interface,
            contract_id=self._templates.allocation_factory_cid,
            choice=self._templates.allocate_choice,
            argument=argument,
        )

    async def _submit_for(
        self,
        party: str,
        executor: str,
        commands: Sequence[Command],
        co_actors: Sequence[str] = (),
    ) -> TransactionResult:
        """Submit with ``party``'s own authority, interactively if it is self-custodied."""
        if self._directory.is_external(party):
            if self._signing is None:
                raise SigningKeyMissingError([party], "interactive signing is not configured")
            return await self._signing.prepare_sign_execute(
                [party], commands, read_as=[executor]
            )
        return await self._serializer.run_as(
            party,
            lambda session: session.submit(
                commands,
                extra_act_as=co_actors,
                read_as=[executor],
            ),
            label="submit_for_sender",
        )

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    async def execute(
        self,
        allocation_ref: str,
        executor: str,
        receiver: str,
        amount: Optional[Decimal] = None,
    ) -> AllocationOutcome:
        """Execute one allocation towards ``receiver``.

        Terminal allocations return a no-op outcome without touching the
        ledger; a passed deadline expires the allocation without a call.
        """
        allocation = self.get(allocation_ref)
        async with self._lock_for(allocation_ref):
            if allocation.is_terminal:
                return AllocationOutcome(
                    allocation_ref=allocation_ref,
                    state=allocation.state,
                    success=allocation.state == AllocationState.EXECUTED,
                    no_op=True,
                )
            self._check_amount(allocation, amount)
            result = await self._executor.settle(
                allocation,
                executor=executor,
                owner=allocation.sender,
                receiver=receiver,
                amount=amount,
            )
            await self._apply_result(result, {allocation_ref: (allocation, receiver)})

        return AllocationOutcome(
            allocation_ref=allocation_ref,
            state=allocation.state,
            success=result.success,
            classification=result.classification,
            error=result.error,
            settlement=result,
        )

    async def execute_legs(
        self,
        legs: Sequence[ExecutionLeg],
        executor: str,
    ) -> SettlementResult:
        """Execute several allocations atomically in one transaction.

        Legs whose allocation is already terminal make the whole call
        return STALE for those legs without a submission.
        """
        if not legs:
            raise ValueError("execute_legs requires at least one leg")

        allocations = {leg.allocation_ref: self.get(leg.allocation_ref) for leg in legs}
        refs = tuple(leg.allocation_ref for leg in legs)

        async with AsyncExitStack() as stack:
            for ref in sorted(allocations):
                await stack.enter_async_context(self._lock_for(ref))

            terminal = frozenset(ref for ref, a in allocations.items() if a.is_terminal)
            if terminal:
                return SettlementResult(
                    success=False,
                    allocation_refs=refs,
                    classification=FailureClassification.STALE,
                    stale_refs=terminal,
                )

            settlement_legs = []
            for leg in legs:
                allocation = allocations[leg.allocation_ref]
                self._check_amount(allocation, leg.amount)
                settlement_legs.append(
                    SettlementLeg(
                        allocation=allocation,
                        receiver=leg.receiver,
                        amount=allocation.amount if leg.amount is None else leg.amount,
                    )
                )

            result = await self._executor.settle_legs(settlement_legs, executor)
            await self._apply_result(
                result,
                {leg.allocation_ref: (allocations[leg.allocation_ref], leg.receiver) for leg in legs},
            )
        return result

    @staticmethod
    def _check_amount(allocation: Allocation, amount: Optional[Decimal]) -> None:
        if amount is None:
            return
        if amount <= 0 or amount > allocation.amount:
            raise ValidationError(
                f"execute amount {amount} outside (0, {allocation.amount}] "
                f"for allocation {allocation.contract_ref}"
            )

    async def _apply_result(
        self,
        result: SettlementResult,
        legs: dict[str, tuple[Allocation, str]],
    ) -> None:
        if result.success:
            for allocation, receiver in legs.values():
                allocation.receiver = receiver
                await self._transition(allocation, AllocationState.EXECUTED)
        elif result.is_stale:
            for ref in result.stale_refs:
                if ref in legs:
                    await self._transition(legs[ref][0], AllocationState.EXPIRED)

    # -------------------------------------------------------------------------
    # Cancel
    # -------------------------------------------------------------------------

    async def cancel(self, allocation_ref: str, sender: str, executor: str) -> AllocationOutcome:
        """Release the lock back to ``sender``.

        Already-terminal, locally expired and ledger-consumed allocations
        return a successful no-op.

        Raises:
            ValidationError: If ``sender`` does not own the allocation.
        """
        allocation = self.get(allocation_ref)
        if allocation.sender != sender:
            raise ValidationError(f"{sender} does not own allocation {allocation_ref}")

        async with self._lock_for(allocation_ref):
            if allocation.is_terminal:
                return AllocationOutcome(
                    allocation_ref=allocation_ref,
                    state=allocation.state,
                    success=True,
                    no_op=True,
                )

            if allocation.is_expired(self._clock()):
                await self._transition(allocation, AllocationState.EXPIRED)
                return AllocationOutcome(
                    allocation_ref=allocation_ref,
                    state=allocation.state,
                    success=True,
                    no_op=True,
                    classification=FailureClassification.STALE,
                )

            command = ExerciseCommand(
                template_id=self._templates.allocation_interface,
                contract_id=allocation_ref,
                choice=self._templates.cancel_choice,
                argument={"extraArgs": empty_extra_args()},
            )
            co_actors = [executor] if executor != sender and not self._directory.is_external(executor) else []

            try:
                await self._submit_for(sender, executor, [command], co_actors=co_actors)
            except Exception as e:
                classification = classify_ledger_error(e)
                if classification == FailureClassification.STALE:
                    await self._transition(allocation, AllocationState.EXPIRED)
                    self._log.info("allocation_already_consumed", allocation_ref=allocation_ref)
                    return AllocationOutcome(
                        allocation_ref=allocation_ref,
                        state=allocation.state,
                        success=True,
                        no_op=True,
                        classification=classification,
                    )
                self._log.warning(
                    "allocation_cancel_failed",
                    allocation_ref=allocation_ref,
                    classification=classification.value,
                    error=str(e),
                )
                return AllocationOutcome(
                    allocation_ref=allocation_ref,
                    state=allocation.state,
                    success=False,
                    classification=classification,
                    error=e,
                )

            await self._transition(allocation, AllocationState.CANCELLED)
            return AllocationOutcome(
                allocation_ref=allocation_ref,
                state=allocation.state,
                success=True,
            )

    # -------------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------------

    async def _transition(self, allocation: Allocation, state: AllocationState) -> None:
        allocation.transition(state)
        self._locks.pop(allocation.contract_ref, None)
        self._log.info(
            "allocation_state_changed",
            allocation_ref=allocation.contract_ref,
            state=state.value,
            sender=allocation.sender,
            receiver=allocation.receiver,
        )
        if self._metrics:
            self._metrics.record_allocation_transition(state.value.lower())
        if self._event_bus is not None and self._event_bus.is_connected:
            event = AllocationStateEvent.from_allocation(allocation)
            try:
                await self._event_bus.publish(event.channel, event)
            except Exception as e:
                self._log.warning("allocation_event_publish_failed", error=str(e))
