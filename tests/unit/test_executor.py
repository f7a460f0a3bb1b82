"""
Unit tests for settlement strategies and the SettlementExecutor.

Tests cover:
- Strategy applicability per authorization mode
- Operator-only success without extra actors
- AUTHORIZATION_REJECTED falls through to the next strategy
- Interactive signing for self-custodied senders
- Transient failures return a retryable result
- Stale allocations are located and reported without trying later strategies
- Passed deadlines are reported without a submission
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from meridian.domain.allocation import PartyDirectory
from meridian.integrations.ledger.errors import (
    AuthorizationRejectedError,
    FailureClassification,
    StaleContractError,
    TransientSynchronizerError,
)
from meridian.integrations.ledger.types import TemplateIds
from meridian.settlement.executor import SettlementExecutor
from meridian.settlement.strategies import (
    BroadenedActorStrategy,
    InteractiveStrategy,
    OperatorOnlyStrategy,
    SettlementLeg,
)
from tests.fixtures.stack import ALICE, BOB, CAROL, CC, DAVE, OPERATOR, USDC


async def _lock(stack, sender, instrument, amount):
    stack.fund(sender, instrument, amount)
    return await stack.allocations.create(
        sender=sender,
        amount=Decimal(amount),
        instrument=instrument,
        executor=OPERATOR,
    )


def _execute_submissions(stack):
    return [s for s in stack.ledger.submissions if "Allocation_ExecuteTransfer" in s.choices]


class TestStrategyApplicability:
    """Test which strategies apply to a settlement context."""

    @pytest.mark.asyncio
    async def test_internal_only_context(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")
        ctx = stack.executor.build_context(
            [SettlementLeg(allocation=allocation, receiver=BOB, amount=Decimal("10"))],
            OPERATOR,
        )
        names = [s.name for s in stack.executor.strategies if s.applies(ctx)]
        assert names == ["operator_only", "broadened_actors"]
        assert ctx.parties == [OPERATOR, ALICE, BOB]
        assert ctx.counterparties == [ALICE, BOB]

    @pytest.mark.asyncio
    async def test_external_sender_context(self, stack):
        stack.add_external_party(CAROL)
        allocation = await _lock(stack, CAROL, CC, "10")
        ctx = stack.executor.build_context(
            [SettlementLeg(allocation=allocation, receiver=DAVE, amount=Decimal("10"))],
            OPERATOR,
        )
        minimal = InteractiveStrategy(stack.signing, broad=False)
        broad = InteractiveStrategy(stack.signing, broad=True)

        assert minimal.actors(ctx) == [CAROL]
        assert broad.actors(ctx) == [CAROL, DAVE]
        assert OperatorOnlyStrategy(stack.serializer).applies(ctx)
        assert minimal.applies(ctx) and broad.applies(ctx)
        assert not BroadenedActorStrategy(stack.serializer).applies(ctx)

    @pytest.mark.asyncio
    async def test_broad_skipped_when_same_as_minimal(self, stack):
        stack.add_external_party(CAROL)
        allocation = await _lock(stack, CAROL, CC, "10")
        ctx = stack.executor.build_context(
            [SettlementLeg(allocation=allocation, receiver=ALICE, amount=Decimal("10"))],
            OPERATOR,
        )
        assert not InteractiveStrategy(stack.signing, broad=True).applies(ctx)

    def test_executor_requires_strategies(self):
        with pytest.raises(ValueError):
            SettlementExecutor([], directory=PartyDirectory(OPERATOR), templates=TemplateIds())


class TestSettle:
    """Test settlement through the strategy chain."""

    @pytest.mark.asyncio
    async def test_operator_only_success(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")

        result = await stack.executor.settle(allocation, OPERATOR, owner=ALICE, receiver=BOB)

        assert result.success
        assert result.strategy == "operator_only"
        assert len(result.attempts) == 1
        assert result.update_id is not None
        submission = _execute_submissions(stack)[0]
        assert submission.act_as == [OPERATOR]
        assert stack.ledger.balance(BOB, CC) == Decimal("10")

    @pytest.mark.asyncio
    async def test_partial_amount_returns_change(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")

        result = await stack.executor.settle(
            allocation, OPERATOR, owner=ALICE, receiver=BOB, amount=Decimal("4")
        )

        assert result.success
        assert stack.ledger.balance(BOB, CC) == Decimal("4")
        assert stack.ledger.balance(ALICE, CC, include_locked=False) == Decimal("6")

    @pytest.mark.asyncio
    async def test_owner_mismatch(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")
        with pytest.raises(ValueError):
            await stack.executor.settle(allocation, OPERATOR, owner=BOB, receiver=BOB)

    @pytest.mark.asyncio
    async def test_auth_rejection_falls_through_to_broadened(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")
        stack.ledger.execute_rule = "executor_and_sender"

        result = await stack.executor.settle(allocation, OPERATOR, owner=ALICE, receiver=BOB)

        assert result.success
        assert result.strategy == "broadened_actors"
        assert [a.strategy_name for a in result.attempts] == ["operator_only", "broadened_actors"]
        assert result.attempts[0].classification == FailureClassification.AUTHORIZATION_REJECTED
        assert _execute_submissions(stack)[-1].act_as == [OPERATOR, ALICE, BOB]

    @pytest.mark.asyncio
    async def test_external_sender_settles_interactively(self, stack):
        stack.add_external_party(CAROL)
        allocation = await _lock(stack, CAROL, CC, "10")
        stack.ledger.execute_rule = "sender"

        result = await stack.executor.settle(allocation, OPERATOR, owner=CAROL, receiver=ALICE)

        assert result.success
        assert result.strategy == "interactive_minimal"
        prepared = [s for s in stack.ledger.submissions if s.kind == "prepare"][-1]
        assert prepared.act_as == [CAROL]
        assert stack.ledger.balance(ALICE, CC) == Decimal("10")

    @pytest.mark.asyncio
    async def test_missing_key_aborts(self, stack):
        stack.add_external_party(CAROL)
        allocation = await _lock(stack, CAROL, CC, "10")
        stack.key_store.remove(CAROL)
        stack.ledger.execute_rule = "sender"

        result = await stack.executor.settle(allocation, OPERATOR, owner=CAROL, receiver=ALICE)

        assert not result.success
        assert result.classification == FailureClassification.SIGNING_KEY_MISSING
        assert result.missing_key_parties == (CAROL,)
        assert allocation.contract_ref in stack.ledger.allocations

    @pytest.mark.asyncio
    async def test_transient_failure_is_retryable(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")
        stack.ledger.fail_next.append(TransientSynchronizerError("NOT_CONNECTED_TO_ANY_SYNCHRONIZER"))

        result = await stack.executor.settle(allocation, OPERATOR, owner=ALICE, receiver=BOB)

        assert not result.success
        assert result.retryable
        assert len(result.attempts) == 1
        assert allocation.contract_ref in stack.ledger.allocations

    @pytest.mark.asyncio
    async def test_all_strategies_rejected(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")
        stack.ledger.execute_rule = "sender"
        # only the operator-only strategy is available
        executor = SettlementExecutor(
            [OperatorOnlyStrategy(stack.serializer)],
            directory=stack.directory,
            templates=stack.ledger.templates,
        )

        result = await executor.settle(allocation, OPERATOR, owner=ALICE, receiver=BOB)

        assert not result.success
        assert result.classification == FailureClassification.AUTHORIZATION_REJECTED


class TestStaleDetection:
    """Test stale allocation handling."""

    @pytest.mark.asyncio
    async def test_consumed_allocation_is_stale(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")
        stack.ledger.consume_allocation(allocation.contract_ref)
        before = len(stack.ledger.submissions)

        result = await stack.executor.settle(allocation, OPERATOR, owner=ALICE, receiver=BOB)

        assert result.is_stale
        assert result.stale_refs == frozenset({allocation.contract_ref})
        # broadened_actors applies here but is never tried
        assert [a.strategy_name for a in result.attempts] == ["operator_only"]
        submitted = stack.ledger.submissions[before:]
        assert [(s.kind, s.act_as) for s in submitted] == [("submit", [OPERATOR])]

    @pytest.mark.asyncio
    async def test_stale_interactive_attempt_stops_fallthrough(self, stack):
        stack.add_external_party(CAROL)
        stack.add_external_party(DAVE)
        allocation = await _lock(stack, CAROL, CC, "10")
        stack.ledger.consume_allocation(allocation.contract_ref)
        stack.ledger.fail_next.extend([
            AuthorizationRejectedError("DAML_AUTHORIZATION_ERROR(8,0): requires authorizers"),
            StaleContractError(
                f"CONTRACT_NOT_FOUND(11,0): contract {allocation.contract_ref} not found"
            ),
        ])
        before = len(stack.ledger.submissions)

        result = await stack.executor.settle(allocation, OPERATOR, owner=CAROL, receiver=DAVE)

        assert result.is_stale
        assert result.stale_refs == frozenset({allocation.contract_ref})
        assert [a.strategy_name for a in result.attempts] == [
            "operator_only",
            "interactive_minimal",
        ]
        submitted = stack.ledger.submissions[before:]
        assert [(s.kind, s.act_as) for s in submitted] == [
            ("submit", [OPERATOR]),
            ("prepare", [CAROL]),
        ]

    @pytest.mark.asyncio
    async def test_stale_leg_located_by_active_contract_query(self, stack):
        buyer_lock = await _lock(stack, ALICE, USDC, "100")
        seller_lock = await _lock(stack, BOB, CC, "10")
        stack.ledger.consume_allocation(seller_lock.contract_ref)
        # error text names neither contract
        stack.ledger.fail_next.append(StaleContractError("CONTRACT_NOT_ACTIVE(11,0): inactive"))

        result = await stack.executor.settle_legs(
            [
                SettlementLeg(allocation=buyer_lock, receiver=BOB, amount=Decimal("100")),
                SettlementLeg(allocation=seller_lock, receiver=ALICE, amount=Decimal("10")),
            ],
            OPERATOR,
        )

        assert result.is_stale
        assert result.stale_refs == frozenset({seller_lock.contract_ref})

    @pytest.mark.asyncio
    async def test_passed_deadline_skips_submission(self, stack):
        allocation = await _lock(stack, ALICE, CC, "10")
        allocation.settle_before = allocation.created_at - timedelta(seconds=1)
        before = len(stack.ledger.submissions)

        result = await stack.executor.settle(allocation, OPERATOR, owner=ALICE, receiver=BOB)

        assert result.is_stale
        assert result.stale_refs == frozenset({allocation.contract_ref})
        assert len(stack.ledger.submissions) == before

    @pytest.mark.asyncio
    async def test_legs_settle_atomically(self, stack):
        buyer_lock = await _lock(stack, ALICE, USDC, "100")
        seller_lock = await _lock(stack, BOB, CC, "10")

        result = await stack.executor.settle_legs(
            [
                SettlementLeg(allocation=buyer_lock, receiver=BOB, amount=Decimal("95")),
                SettlementLeg(allocation=seller_lock, receiver=ALICE, amount=Decimal("10")),
            ],
            OPERATOR,
        )

        assert result.success
        assert stack.ledger.balance(BOB, USDC) == Decimal("95")
        assert stack.ledger.balance(ALICE, USDC) == Decimal("5")
        assert stack.ledger.balance(ALICE, CC) == Decimal("10")
        assert len(_execute_submissions(stack)) == 1
