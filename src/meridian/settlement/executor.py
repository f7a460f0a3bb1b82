"""Multi-strategy settlement executor.

Walks an ordered list of authorization strategies until one succeeds or a
failure classification says to stop:

- STALE, SIGNING_KEY_MISSING, INSUFFICIENT_FUNDS, UNKNOWN: abort now.
- AUTHORIZATION_REJECTED: try the next applicable strategy.
- TRANSIENT: stop and hand back a retryable result; the caller decides
  whether a later cycle tries again.

Legs whose settle-before deadline already passed are reported STALE
before any submission is made.
"""

import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional, Sequence

import structlog

from meridian.domain.allocation import Allocation, PartyDirectory
from meridian.integrations.ledger.errors import (
    AuthorizationRejectedError,
    FailureClassification,
    SigningKeyMissingError,
)
from meridian.integrations.ledger.types import (
    ExerciseCommand,
    TemplateIds,
    TransactionResult,
    empty_extra_args,
)
from meridian.services.metrics import MetricsEmitter
from meridian.settlement.serializer import PartyContextSerializer
from meridian.settlement.strategies import SettlementContext, SettlementLeg, SettlementStrategy

log = structlog.get_logger()

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SettlementAttempt:
    """One strategy attempt within a settlement call (never persisted)."""

    allocation_refs: tuple[str, ...]
    strategy_index: int
    strategy_name: str
    classification: Optional[FailureClassification] = None
    last_error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.classification is None and self.last_error is None


@dataclass
class SettlementResult:
    """Outcome of a settlement call."""

    success: bool
    allocation_refs: tuple[str, ...]
    strategy: Optional[str] = None
    classification: Optional[FailureClassification] = None
    error: Optional[BaseException] = None
    attempts: list[SettlementAttempt] = field(default_factory=list)
    stale_refs: frozenset[str] = frozenset()
    missing_key_parties: tuple[str, ...] = ()
    update_id: Optional[str] = None
    transaction: Optional[TransactionResult] = None

    @property
    def retryable(self) -> bool:
        return self.classification == FailureClassification.TRANSIENT

    @property
    def is_stale(self) -> bool:
        return self.classification == FailureClassification.STALE


def build_execute_command(templates: TemplateIds, leg: SettlementLeg) -> ExerciseCommand:
    """Execute choice on one allocation, binding receiver and amount.

    Any locked amount above ``leg.amount`` is returned to the sender as
    change by the allocation contract.
    """
    argument = {
        "receiver": leg.receiver,
        "amount": str(leg.amount),
        "extraArgs": empty_extra_args(),
    }
    return ExerciseCommand(
        template_id=templates.allocation_interface,
        contract_id=leg.allocation_ref,
        choice=templates.execute_choice,
        argument=argument,
    )


class SettlementExecutor:
    """Settles allocation legs through an ordered list of strategies."""

    def __init__(
        self,
        strategies: Sequence[SettlementStrategy],
        directory: PartyDirectory,
        templates: TemplateIds,
        serializer: Optional[PartyContextSerializer] = None,
        metrics: Optional[MetricsEmitter] = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the executor.

        Args:
            strategies: Strategies in the order they are attempted.
            directory: Resolves each party's authorization mode.
            templates: Ledger identifiers for the execute command.
            serializer: Used to locate which legs went stale.
            metrics: Optional metrics emitter.
            clock: Source of "now" for deadline checks.
        """
        if not strategies:
            raise ValueError("SettlementExecutor needs at least one strategy")
        self._strategies = list(strategies)
        self._directory = directory
        self._templates = templates
        self._serializer = serializer
        self._metrics = metrics
        self._clock = clock
        self._log = log.bind(component="settlement_executor")

    @property
    def strategies(self) -> list[SettlementStrategy]:
        return list(self._strategies)

    def build_context(self, legs: Sequence[SettlementLeg], executor: str) -> SettlementContext:
        return SettlementContext(
            legs=list(legs),
            executor=executor,
            directory=self._directory,
            commands=[build_execute_command(self._templates, leg) for leg in legs],
        )

    async def settle(
        self,
        allocation: Allocation,
        executor: str,
        owner: str,
        receiver: str,
        amount: Optional[Decimal] = None,
    ) -> SettlementResult:
        """Settle a single allocation owned by ``owner`` to ``receiver``."""
        if allocation.sender != owner:
            raise ValueError(
                f"allocation {allocation.contract_ref} is owned by {allocation.sender}, not {owner}"
            )
        leg = SettlementLeg(
            allocation=allocation,
            receiver=receiver,
            amount=allocation.amount if amount is None else amount,
        )
        return await self.settle_legs([leg], executor)

    async def settle_legs(
        self,
        legs: Sequence[SettlementLeg],
        executor: str,
    ) -> SettlementResult:
        """Settle all legs atomically in one ledger transaction."""
        if not legs:
            raise ValueError("settle_legs requires at least one leg")

        refs = tuple(leg.allocation_ref for leg in legs)
        started = time.monotonic()

        now = self._clock()
        expired = frozenset(
            leg.allocation_ref for leg in legs if now >= leg.allocation.settle_before
        )
        if expired:
            self._log.info("settlement_deadline_passed", allocation_refs=sorted(expired))
            return self._finish(
                SettlementResult(
                    success=False,
                    allocation_refs=refs,
                    classification=FailureClassification.STALE,
                    stale_refs=expired,
                ),
                started,
            )

        ctx = self.build_context(legs, executor)
        attempts: list[SettlementAttempt] = []
        last_error: Optional[BaseException] = None
        last_classification: Optional[FailureClassification] = None

        for index, strategy in enumerate(self._strategies):
            if not strategy.applies(ctx):
                continue

            attempt = SettlementAttempt(
                allocation_refs=refs,
                strategy_index=index,
                strategy_name=strategy.name,
            )
            attempts.append(attempt)

            try:
                transaction = await strategy.attempt(ctx)
            except Exception as e:
                classification = strategy.classify(e)
                attempt.classification = classification
                attempt.last_error = e
                last_error, last_classification = e, classification
                self._record_attempt(strategy.name, classification.value)
                self._log.info(
                    "settlement_strategy_failed",
                    strategy=strategy.name,
                    classification=classification.value,
                    allocation_refs=list(refs),
                    error=str(e),
                )

                if classification == FailureClassification.AUTHORIZATION_REJECTED:
                    continue

                stale_refs: frozenset[str] = frozenset()
                if classification == FailureClassification.STALE:
                    stale_refs = await self._locate_stale(ctx, e)
                missing = e.parties if isinstance(e, SigningKeyMissingError) else ()
                return self._finish(
                    SettlementResult(
                        success=False,
                        allocation_refs=refs,
                        classification=classification,
                        error=e,
                        attempts=attempts,
                        stale_refs=stale_refs,
                        missing_key_parties=missing,
                    ),
                    started,
                )

            self._record_attempt(strategy.name, "success")
            self._log.info(
                "settlement_succeeded",
                strategy=strategy.name,
                allocation_refs=list(refs),
                update_id=transaction.update_id,
            )
            return self._finish(
                SettlementResult(
                    success=True,
                    allocation_refs=refs,
                    strategy=strategy.name,
                    attempts=attempts,
                    update_id=transaction.update_id,
                    transaction=transaction,
                ),
                started,
            )

        if last_error is None:
            last_error = AuthorizationRejectedError(
                f"no settlement strategy applies to executor {executor} "
                f"with parties {ctx.parties}"
            )
            last_classification = FailureClassification.AUTHORIZATION_REJECTED

        self._log.warning(
            "settlement_strategies_exhausted",
            allocation_refs=list(refs),
            attempts=len(attempts),
            error=str(last_error),
        )
        return self._finish(
            SettlementResult(
                success=False,
                allocation_refs=refs,
                classification=last_classification,
                error=last_error,
                attempts=attempts,
            ),
            started,
        )

    async def _locate_stale(
        self,
        ctx: SettlementContext,
        error: BaseException,
    ) -> frozenset[str]:
        """Work out which legs' allocations are gone.

        Refs named in the error win; otherwise one active-contract query
        as the executor decides. If neither is conclusive every leg is
        treated as stale.
        """
        refs = set(ctx.allocation_refs)
        text = str(error)
        named = {ref for ref in refs if ref in text}
        if named:
            return frozenset(named)

        if len(refs) > 1 and self._serializer is not None:
            try:
                active = await self._serializer.run_as(
                    ctx.executor,
                    lambda session: session.active_allocation_ids(),
                    label="locate_stale",
                )
            except Exception as e:
                self._log.warning("stale_lookup_failed", error=str(e))
            else:
                gone = refs - active
                if gone:
                    return frozenset(gone)

        return frozenset(refs)

    def _record_attempt(self, strategy: str, outcome: str) -> None:
        if self._metrics:
            self._metrics.record_settlement_attempt(strategy, outcome)

    def _finish(self, result: SettlementResult, started: float) -> SettlementResult:
        if self._metrics:
            outcome = "success" if result.success else (
                result.classification.value if result.classification else "failed"
            )
            self._metrics.record_settlement(outcome, time.monotonic() - started)
        return result
