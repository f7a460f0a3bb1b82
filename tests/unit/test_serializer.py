"""
Unit tests for PartyContextSerializer.

Tests cover:
- FIFO execution of queued operations
- Acting-party switching only when needed
- Failure isolation between callers
- Lifecycle (not running, stop drains the mailbox)
"""

import asyncio

import pytest

from meridian.integrations.ledger.errors import UnknownLedgerError
from meridian.integrations.ledger.session import LedgerSession
from meridian.settlement.serializer import PartyContextSerializer, SerializerNotRunningError
from tests.fixtures.fake_ledger import FakeLedger
from tests.fixtures.stack import ALICE, BOB


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def serializer(ledger):
    return PartyContextSerializer(LedgerSession(ledger, ledger.templates))


class TestSerializerOrdering:
    """Test one-at-a-time execution."""

    @pytest.mark.asyncio
    async def test_operations_run_in_submission_order(self, serializer):
        await serializer.start()
        order = []

        async def op(session, name):
            order.append((name, session.acting_party, "start"))
            await asyncio.sleep(0)
            order.append((name, session.acting_party, "end"))
            return name

        try:
            results = await asyncio.gather(
                serializer.run_as(ALICE, lambda s: op(s, "first")),
                serializer.run_as(BOB, lambda s: op(s, "second")),
                serializer.run_as(ALICE, lambda s: op(s, "third")),
            )
        finally:
            await serializer.stop()

        assert results == ["first", "second", "third"]
        assert order == [
            ("first", ALICE, "start"), ("first", ALICE, "end"),
            ("second", BOB, "start"), ("second", BOB, "end"),
            ("third", ALICE, "start"), ("third", ALICE, "end"),
        ]

    @pytest.mark.asyncio
    async def test_switches_only_when_party_changes(self, serializer, ledger):
        await serializer.start()
        try:
            await serializer.run_as(ALICE, lambda s: s.list_holdings())
            await serializer.run_as(ALICE, lambda s: s.list_holdings())
            await serializer.run_as(BOB, lambda s: s.list_holdings())
        finally:
            await serializer.stop()

        assert ledger.party_lookups == [ALICE, BOB]
        assert serializer.session.switch_count == 2


class TestSerializerFailures:
    """Test error propagation."""

    @pytest.mark.asyncio
    async def test_failure_reaches_only_its_caller(self, serializer):
        await serializer.start()

        async def boom(session):
            raise RuntimeError("boom")

        async def fine(session):
            return session.acting_party

        try:
            results = await asyncio.gather(
                serializer.run_as(ALICE, boom),
                serializer.run_as(BOB, fine),
                return_exceptions=True,
            )
        finally:
            await serializer.stop()

        assert isinstance(results[0], RuntimeError)
        assert results[1] == BOB

    @pytest.mark.asyncio
    async def test_unhosted_party_is_rejected(self):
        ledger = FakeLedger(hosted_parties={ALICE})
        serializer = PartyContextSerializer(LedgerSession(ledger, ledger.templates))
        await serializer.start()
        try:
            with pytest.raises(UnknownLedgerError):
                await serializer.run_as(BOB, lambda s: s.list_holdings())
            assert serializer.session.acting_party is None
        finally:
            await serializer.stop()


class TestSerializerLifecycle:
    @pytest.mark.asyncio
    async def test_not_running(self, serializer):
        with pytest.raises(SerializerNotRunningError):
            await serializer.run_as(ALICE, lambda s: s.list_holdings())

    @pytest.mark.asyncio
    async def test_health_check(self, serializer):
        await serializer.start()
        try:
            result = await serializer.health_check()
            assert result.details["queue_depth"] == 0
        finally:
            await serializer.stop()
