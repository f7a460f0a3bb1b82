"""Ledger Gateway: async client for the v2 JSON Ledger API.

The gateway is stateless with respect to parties: every call names its
acting and reading parties explicitly. The stateful "current acting party"
lives in LedgerSession and is guarded by the party-context serializer.

Endpoints used:
- POST /v2/commands/submit-and-wait-for-transaction
- POST /v2/state/active-contracts
- GET  /v2/state/ledger-end
- GET  /v2/parties/{party}
- POST /v2/interactive-submission/prepare
- POST /v2/interactive-submission/executeAndWaitForTransaction

Read-only calls retry transient failures; submissions never do.
"""

import uuid
from typing import Any, Iterable, Optional, Sequence

import httpx
import structlog

from meridian.core.retry import retry_transient
from meridian.integrations.ledger.auth import TokenProvider
from meridian.integrations.ledger.errors import (
    LedgerAuthenticationError,
    UnknownLedgerError,
    error_from_exception,
    error_from_response,
)
from meridian.integrations.ledger.types import (
    Command,
    CreatedEvent,
    DisclosedContract,
    LedgerSettings,
    PartySignature,
    PreparedTransaction,
    TransactionResult,
    normalize_template_id,
    parse_active_contracts,
)

log = structlog.get_logger()

# Retry configuration for read-only calls
RETRY_ATTEMPTS = 3
RETRY_WAIT_MIN = 0.5
RETRY_WAIT_MAX = 5.0

SUBMIT_PATH = "/v2/commands/submit-and-wait-for-transaction"
ACTIVE_CONTRACTS_PATH = "/v2/state/active-contracts"
LEDGER_END_PATH = "/v2/state/ledger-end"
PARTIES_PATH = "/v2/parties"
PREPARE_PATH = "/v2/interactive-submission/prepare"
EXECUTE_PATH = "/v2/interactive-submission/executeAndWaitForTransaction"

DEFAULT_DEDUPLICATION = "30s"


def new_command_id(prefix: str = "meridian") -> str:
    return f"{prefix}-{uuid.uuid4()}"


def _dedupe(parties: Iterable[str]) -> list[str]:
    seen: list[str] = []
    for party in parties:
        if party and party not in seen:
            seen.append(party)
    return seen


class LedgerGateway:
    """Async HTTP client for the JSON Ledger API.

    Usage:
        async with LedgerGateway(settings, StaticTokenProvider(token)) as gateway:
            offset = await gateway.ledger_end()
    """

    def __init__(
        self,
        settings: LedgerSettings,
        token_provider: TokenProvider,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the gateway.

        Args:
            settings: Ledger connection settings.
            token_provider: Source of bearer tokens.
            transport: Optional httpx transport (proxies, tests).
        """
        self._settings = settings
        self._base_url = settings.json_api_url.rstrip("/")
        self._timeout = settings.timeout_seconds
        self._token_provider = token_provider
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._log = log.bind(component="ledger_gateway")

    @property
    def settings(self) -> LedgerSettings:
        return self._settings

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Initialize the HTTP client."""
        if self._client is not None:
            return

        transport = self._transport
        if transport is None and self._settings.http_proxy:
            transport = httpx.AsyncHTTPTransport(proxy=self._settings.http_proxy)

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )
        self._log.info("ledger_gateway_connected", base_url=self._base_url)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._log.info("ledger_gateway_closed")

    async def __aenter__(self) -> "LedgerGateway":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _ensure_connected(self) -> httpx.AsyncClient:
        if self._client is None:
            raise UnknownLedgerError("Ledger gateway not connected. Call connect() first.")
        return self._client

    async def _request(
        self,
        method: str,
        path: str,
        operation: str,
        body: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Send one request and return the decoded JSON body.

        Raises:
            LedgerError: Typed by classification of the failure.
        """
        client = self._ensure_connected()
        token = await self._token_provider.get_token()
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = await client.request(method, path, json=body, headers=headers)
        except httpx.HTTPError as e:
            self._log.warning("ledger_request_failed", operation=operation, error=str(e))
            raise error_from_exception(e, operation) from e

        if response.status_code >= 400:
            try:
                payload: Any = response.json()
            except ValueError:
                payload = response.text
            error = error_from_response(response.status_code, payload, operation)
            if isinstance(error, LedgerAuthenticationError):
                self._token_provider.invalidate()
            self._log.warning(
                "ledger_request_rejected",
                operation=operation,
                status=response.status_code,
                code=error.code,
                classification=error.classification.value,
                correlation_id=error.correlation_id,
            )
            raise error

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise UnknownLedgerError(f"{operation} returned a non-JSON body", cause=e) from e

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @retry_transient(
        max_attempts=RETRY_ATTEMPTS,
        min_wait=RETRY_WAIT_MIN,
        max_wait=RETRY_WAIT_MAX,
        log_context={"operation": "ledger_end"},
    )
    async def ledger_end(self) -> int:
        """Current ledger-end offset."""
        data = await self._request("GET", LEDGER_END_PATH, "ledger_end")
        try:
            return int(data["offset"])
        except (KeyError, TypeError, ValueError) as e:
            raise UnknownLedgerError("ledger_end response had no offset", cause=e) from e

    @retry_transient(
        max_attempts=RETRY_ATTEMPTS,
        min_wait=RETRY_WAIT_MIN,
        max_wait=RETRY_WAIT_MAX,
        log_context={"operation": "get_party"},
    )
    async def get_party(self, party: str) -> dict[str, Any]:
        """Party details as reported by the participant."""
        return await self._request("GET", f"{PARTIES_PATH}/{party}", "get_party")

    @retry_transient(
        max_attempts=RETRY_ATTEMPTS,
        min_wait=RETRY_WAIT_MIN,
        max_wait=RETRY_WAIT_MAX,
        log_context={"operation": "active_contracts"},
    )
    async def query_active_contracts(
        self,
        parties: Sequence[str],
        template_ids: Sequence[str] = (),
        interface_ids: Sequence[str] = (),
        active_at_offset: Optional[int] = None,
    ) -> list[CreatedEvent]:
        """Active contracts visible to ``parties``, filtered by template/interface.

        Interface filters request the interface view, which is how holdings
        and allocations are read.
        """
        if active_at_offset is None:
            active_at_offset = await self.ledger_end()

        cumulative: list[dict[str, Any]] = []
        for interface_id in interface_ids:
            cumulative.append({
                "identifierFilter": {
                    "InterfaceFilter": {
                        "value": {
                            "interfaceId": normalize_template_id(interface_id),
                            "includeInterfaceView": True,
                            "includeCreatedEventBlob": False,
                        }
                    }
                }
            })
        for template_id in template_ids:
            cumulative.append({
                "identifierFilter": {
                    "TemplateFilter": {
                        "value": {
                            "templateId": normalize_template_id(template_id),
                            "includeCreatedEventBlob": False,
                        }
                    }
                }
            })

        body = {
            "filter": {
                "filtersByParty": {
                    party: {"cumulative": cumulative} for party in _dedupe(parties)
                }
            },
            "verbose": False,
            "activeAtOffset": active_at_offset,
        }
        data = await self._request("POST", ACTIVE_CONTRACTS_PATH, "active_contracts", body)
        if not isinstance(data, list):
            raise UnknownLedgerError("active_contracts response was not a list")
        return parse_active_contracts(data)

    # -------------------------------------------------------------------------
    # Submissions
    # -------------------------------------------------------------------------

    def _command_body(
        self,
        commands: Sequence[Command],
        act_as: Sequence[str],
        read_as: Sequence[str],
        disclosed: Sequence[DisclosedContract],
        command_id: str,
    ) -> dict[str, Any]:
        acting = _dedupe(act_as)
        body: dict[str, Any] = {
            "commands": [command.to_json() for command in commands],
            "commandId": command_id,
            "userId": self._settings.user_id,
            "actAs": acting,
            "readAs": [p for p in _dedupe(read_as) if p not in acting],
            "disclosedContracts": [d.to_json() for d in disclosed],
        }
        if self._settings.synchronizer_id:
            body["synchronizerId"] = self._settings.synchronizer_id
        return body

    async def submit_and_wait(
        self,
        commands: Sequence[Command],
        act_as: Sequence[str],
        read_as: Sequence[str] = (),
        disclosed: Sequence[DisclosedContract] = (),
        command_id: Optional[str] = None,
    ) -> TransactionResult:
        """Submit commands non-interactively and wait for the transaction.

        All ``act_as`` parties must be hosted with submission rights for the
        gateway's user; self-custodied parties cannot appear here.
        """
        if not commands:
            raise ValueError("submit_and_wait requires at least one command")
        if not act_as:
            raise ValueError("submit_and_wait requires at least one acting party")

        command_id = command_id or new_command_id()
        body = {
            "commands": self._command_body(commands, act_as, read_as, disclosed, command_id)
        }
        self._log.debug(
            "ledger_submit",
            command_id=command_id,
            act_as=list(act_as),
            commands=len(commands),
        )
        data = await self._request("POST", SUBMIT_PATH, "submit_and_wait", body)
        result = TransactionResult.from_json(data)
        self._log.info(
            "ledger_submit_committed",
            command_id=command_id,
            update_id=result.update_id,
            created=len(result.created),
        )
        return result

    async def prepare_submission(
        self,
        commands: Sequence[Command],
        act_as: Sequence[str],
        read_as: Sequence[str] = (),
        disclosed: Sequence[DisclosedContract] = (),
        command_id: Optional[str] = None,
    ) -> PreparedTransaction:
        """Prepare an unsigned transaction for interactive signing."""
        if not commands:
            raise ValueError("prepare_submission requires at least one command")
        if not act_as:
            raise ValueError("prepare_submission requires at least one actor")

        command_id = command_id or new_command_id()
        body = self._command_body(commands, act_as, read_as, disclosed, command_id)
        body["packageIdSelectionPreference"] = []
        body["verboseHashing"] = False
        data = await self._request("POST", PREPARE_PATH, "prepare_submission", body)
        try:
            prepared = PreparedTransaction.from_json(data, act_as)
        except (KeyError, TypeError) as e:
            raise UnknownLedgerError("prepare response missing transaction or hash", cause=e) from e
        self._log.info(
            "ledger_prepared",
            command_id=command_id,
            actors=list(act_as),
            hashing_scheme=prepared.hashing_scheme_version,
        )
        return prepared

    async def execute_submission(
        self,
        prepared: PreparedTransaction,
        signatures: Sequence[PartySignature],
        submission_id: Optional[str] = None,
    ) -> TransactionResult:
        """Execute a prepared transaction with the parties' signatures."""
        if not signatures:
            raise ValueError("execute_submission requires at least one signature")

        submission_id = submission_id or new_command_id("meridian-exec")
        body = {
            "preparedTransaction": prepared.prepared_transaction,
            "partySignatures": {"signatures": [s.to_json() for s in signatures]},
            "submissionId": submission_id,
            "userId": self._settings.user_id,
            "hashingSchemeVersion": prepared.hashing_scheme_version,
            "deduplicationPeriod": {
                "DeduplicationDuration": {"value": {"duration": DEFAULT_DEDUPLICATION}}
            },
        }
        data = await self._request("POST", EXECUTE_PATH, "execute_submission", body)
        result = TransactionResult.from_json(data)
        self._log.info(
            "ledger_execute_committed",
            submission_id=submission_id,
            update_id=result.update_id,
            signers=[s.party for s in signatures],
        )
        return result
