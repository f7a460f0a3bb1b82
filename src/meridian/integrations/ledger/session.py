"""Stateful ledger session with a single acting party.

A LedgerSession mirrors a wallet-style client: it acts as one party at a
time, and its helpers (holdings, submission, preparation) implicitly use
that party. Switching parties is only safe through the party-context
serializer, which owns the one session instance and runs one operation at
a time against it.
"""

from typing import Optional, Sequence

import structlog

from meridian.domain.allocation import Holding
from meridian.integrations.ledger.errors import UnknownLedgerError
from meridian.integrations.ledger.gateway import LedgerGateway
from meridian.integrations.ledger.types import (
    Command,
    DisclosedContract,
    PreparedTransaction,
    TemplateIds,
    TransactionResult,
    holding_from_event,
)

log = structlog.get_logger()


class LedgerSession:
    """Ledger client bound to a current acting party."""

    def __init__(self, gateway: LedgerGateway, templates: TemplateIds) -> None:
        self._gateway = gateway
        self._templates = templates
        self._acting_party: Optional[str] = None
        self._switches = 0
        self._log = log.bind(component="ledger_session")

    @property
    def acting_party(self) -> Optional[str]:
        return self._acting_party

    @property
    def switch_count(self) -> int:
        return self._switches

    async def switch_party(self, party: str) -> None:
        """Make ``party`` the acting party after confirming the participant hosts it.

        Raises:
            UnknownLedgerError: If the participant does not positively
                confirm the party. Ambiguous answers are not treated as
                success.
        """
        details = await self._gateway.get_party(party)
        entries = details.get("partyDetails") if isinstance(details, dict) else None
        hosted = any(
            isinstance(entry, dict) and entry.get("party") == party
            for entry in entries or []
        )
        if not hosted:
            raise UnknownLedgerError(f"participant did not confirm party {party}")

        previous = self._acting_party
        self._acting_party = party
        self._switches += 1
        self._log.debug("acting_party_switched", previous=previous, party=party)

    def _require_party(self) -> str:
        if self._acting_party is None:
            raise UnknownLedgerError("no acting party selected on ledger session")
        return self._acting_party

    async def list_holdings(self, include_locked: bool = False) -> list[Holding]:
        """Holdings owned by the acting party."""
        party = self._require_party()
        events = await self._gateway.query_active_contracts(
            [party],
            interface_ids=[self._templates.holding_interface],
        )
        holdings: list[Holding] = []
        for event in events:
            holding = holding_from_event(event, self._templates.holding_interface)
            if holding is None or holding.owner != party:
                continue
            if holding.locked and not include_locked:
                continue
            holdings.append(holding)
        return holdings

    async def active_allocation_ids(self) -> set[str]:
        """Contract ids of allocations visible to the acting party."""
        party = self._require_party()
        events = await self._gateway.query_active_contracts(
            [party],
            interface_ids=[self._templates.allocation_interface],
        )
        return {event.contract_id for event in events}

    async def submit(
        self,
        commands: Sequence[Command],
        extra_act_as: Sequence[str] = (),
        read_as: Sequence[str] = (),
        disclosed: Sequence[DisclosedContract] = (),
    ) -> TransactionResult:
        """Submit as the acting party plus ``extra_act_as``."""
        party = self._require_party()
        return await self._gateway.submit_and_wait(
            commands,
            act_as=[party, *extra_act_as],
            read_as=read_as,
            disclosed=disclosed,
        )

    async def prepare(
        self,
        commands: Sequence[Command],
        extra_actors: Sequence[str] = (),
        read_as: Sequence[str] = (),
        disclosed: Sequence[DisclosedContract] = (),
    ) -> PreparedTransaction:
        """Prepare an interactive submission with the acting party as first actor."""
        party = self._require_party()
        return await self._gateway.prepare_submission(
            commands,
            act_as=[party, *extra_actors],
            read_as=read_as,
            disclosed=disclosed,
        )
