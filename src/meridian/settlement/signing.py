"""Interactive signing protocol for self-custodied parties.

Three steps:

1. Prepare - submit the unsigned commands with the full actor set and get
   back the prepared transaction plus its canonical hash. This depends on
   the session's acting party, so it runs through the serializer.
2. Sign - sign the hash with every actor's stored Ed25519 key.
3. Execute - submit the prepared transaction with all signatures. This
   does not depend on session state and runs outside the serializer.

Every actor's key is checked before anything is prepared, so a missing key
fails with SigningKeyMissingError and nothing reaches Execute.
"""

import base64
import binascii
from typing import Optional, Sequence

import structlog

from meridian.integrations.ledger.errors import SigningKeyMissingError, UnknownLedgerError
from meridian.integrations.ledger.gateway import LedgerGateway
from meridian.integrations.ledger.types import (
    Command,
    DisclosedContract,
    PartySignature,
    PreparedTransaction,
    TransactionResult,
)
from meridian.settlement.keystore import Ed25519Signer, KeyStore
from meridian.settlement.serializer import PartyContextSerializer

log = structlog.get_logger()


class InteractiveSigningProtocol:
    """Prepare, sign and execute a multi-party interactive submission."""

    def __init__(
        self,
        serializer: PartyContextSerializer,
        gateway: LedgerGateway,
        key_store: KeyStore,
        signer: Optional[Ed25519Signer] = None,
    ) -> None:
        self._serializer = serializer
        self._gateway = gateway
        self._key_store = key_store
        self._signer = signer or Ed25519Signer()
        self._log = log.bind(component="interactive_signing")

    async def missing_keys(self, actors: Sequence[str]) -> list[str]:
        """Actors with no stored signing key, in the order given."""
        missing = []
        for actor in actors:
            if not await self._key_store.has_key(actor):
                missing.append(actor)
        return missing

    async def prepare_sign_execute(
        self,
        actors: Sequence[str],
        commands: Sequence[Command],
        read_as: Sequence[str] = (),
        disclosed: Sequence[DisclosedContract] = (),
    ) -> TransactionResult:
        """Run the full interactive submission for ``actors``.

        Raises:
            SigningKeyMissingError: If any actor lacks a stored key.
            LedgerError: Typed failures from prepare or execute.
        """
        actors = list(dict.fromkeys(a for a in actors if a))
        if not actors:
            raise ValueError("interactive submission requires at least one actor")

        missing = await self.missing_keys(actors)
        if missing:
            self._log.warning("signing_keys_missing", parties=missing)
            raise SigningKeyMissingError(missing)

        first, others = actors[0], actors[1:]
        prepared = await self._serializer.run_as(
            first,
            lambda session: session.prepare(
                commands,
                extra_actors=others,
                read_as=read_as,
                disclosed=disclosed,
            ),
            label="interactive_prepare",
        )

        signatures = await self._sign(prepared, actors)
        return await self._gateway.execute_submission(prepared, signatures)

    async def _sign(
        self,
        prepared: PreparedTransaction,
        actors: Sequence[str],
    ) -> list[PartySignature]:
        try:
            digest = base64.b64decode(prepared.transaction_hash, validate=True)
        except (binascii.Error, ValueError) as e:
            raise UnknownLedgerError("prepared transaction hash is not base64", cause=e) from e

        signatures: list[PartySignature] = []
        for actor in actors:
            key = await self._key_store.get_key(actor)
            if key is None:
                # removed between the pre-check and signing
                raise SigningKeyMissingError([actor])
            signatures.append(
                PartySignature(
                    party=actor,
                    signature=self._signer.sign(key, digest),
                    signed_by=key.fingerprint,
                )
            )
        self._log.debug("transaction_signed", signers=list(actors))
        return signatures
