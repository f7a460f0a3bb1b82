"""Ledger JSON API types and data models.

Request payloads follow the v2 JSON Ledger API:

    {"CreateCommand":   {"templateId": ..., "createArguments": {...}}}
    {"ExerciseCommand": {"templateId": ..., "contractId": ..., "choice": ..., "choiceArgument": {...}}}

Template identifiers are ``<packageId>:<Module>:<Entity>`` or the
package-name form ``#<package-name>:<Module>:<Entity>``. They always come
from configuration.
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Union

from meridian.core.retry import ValidationError
from meridian.domain.allocation import Holding

TemplateIdLike = Union[str, Mapping[str, str]]


def normalize_template_id(value: TemplateIdLike) -> str:
    """Normalize a template or interface identifier to its string form.

    Accepts the string form (surrounding whitespace is stripped) or a
    ``{packageId, moduleName, entityName}`` mapping.

    Raises:
        ValidationError: If the identifier does not have three parts.
    """
    if isinstance(value, Mapping):
        package = value.get("packageId") or value.get("package_id")
        module = value.get("moduleName") or value.get("module_name")
        entity = value.get("entityName") or value.get("entity_name")
        if not (package and module and entity):
            raise ValidationError(f"incomplete template identifier: {dict(value)!r}")
        return f"{package}:{module}:{entity}"

    text = str(value).strip()
    parts = text.split(":")
    if len(parts) < 3 or not all(parts):
        raise ValidationError(f"template identifier must be <package>:<module>:<entity>, got {text!r}")
    return text


def template_entity(template_id: str) -> str:
    """Last component of a template id (``Splice...:Allocation`` -> ``Allocation``)."""
    return template_id.rsplit(":", 1)[-1]


@dataclass(frozen=True)
class LedgerSettings:
    """Connection settings for the JSON Ledger API.

    Attributes:
        json_api_url: Base URL of the participant's JSON API.
        user_id: Ledger API user the submissions are made under.
        operator_party: Venue party; acts as executor of every allocation.
        synchronizer_id: Optional synchronizer to pin submissions to.
        timeout_seconds: Per-request HTTP timeout.
        http_proxy: Optional proxy URL.
        internal_parties: Additional platform-custodied parties.
    """

    json_api_url: str
    user_id: str = "meridian"
    operator_party: str = ""
    synchronizer_id: Optional[str] = None
    timeout_seconds: float = 30.0
    http_proxy: Optional[str] = None
    internal_parties: tuple[str, ...] = ()


@dataclass(frozen=True)
class TemplateIds:
    """Ledger identifiers used by the settlement core, all from configuration.

    Attributes:
        holding_interface: Holding interface id (balances, lock selection).
        allocation_interface: Allocation interface id (execute/cancel).
        allocation_factory_interface: AllocationFactory interface id (create).
        allocation_factory_cid: Contract id of the allocation factory.
        allocate_choice: Choice on the factory that creates a lock.
        execute_choice: Choice that transfers a lock to its receiver.
        cancel_choice: Choice that releases a lock back to its sender.
    """

    holding_interface: str = "#splice-api-token-holding-v1:Splice.Api.Token.HoldingV1:Holding"
    allocation_interface: str = (
        "#splice-api-token-allocation-v1:Splice.Api.Token.AllocationV1:Allocation"
    )
    allocation_factory_interface: str = (
        "#splice-api-token-allocation-instruction-v1:"
        "Splice.Api.Token.AllocationInstructionV1:AllocationFactory"
    )
    allocation_factory_cid: str = ""
    allocate_choice: str = "AllocationFactory_Allocate"
    execute_choice: str = "Allocation_ExecuteTransfer"
    cancel_choice: str = "Allocation_Cancel"


def empty_extra_args() -> dict[str, Any]:
    return {"context": {"values": {}}, "meta": {"values": {}}}


@dataclass(frozen=True)
class CreateCommand:
    template_id: str
    arguments: dict[str, Any]

    def to_json(self) -> dict[str, Any]:
        return {
            "CreateCommand": {
                "templateId": normalize_template_id(self.template_id),
                "createArguments": self.arguments,
            }
        }


@dataclass(frozen=True)
class ExerciseCommand:
    template_id: str
    contract_id: str
    choice: str
    argument: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return {
            "ExerciseCommand": {
                "templateId": normalize_template_id(self.template_id),
                "contractId": self.contract_id,
                "choice": self.choice,
                "choiceArgument": self.argument,
            }
        }


Command = Union[CreateCommand, ExerciseCommand]


@dataclass(frozen=True)
class DisclosedContract:
    """A contract shown to the submitting participant for one command."""

    template_id: str
    contract_id: str
    created_event_blob: str
    synchronizer_id: Optional[str] = None

    def to_json(self) -> dict[str, Any]:
        payload = {
            "templateId": normalize_template_id(self.template_id),
            "contractId": self.contract_id,
            "createdEventBlob": self.created_event_blob,
        }
        if self.synchronizer_id:
            payload["synchronizerId"] = self.synchronizer_id
        return payload


@dataclass(frozen=True)
class CreatedEvent:
    """A contract created by a transaction, or listed in the active set."""

    contract_id: str
    template_id: str
    arguments: dict[str, Any] = field(default_factory=dict)
    interface_views: dict[str, dict[str, Any]] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "CreatedEvent":
        views: dict[str, dict[str, Any]] = {}
        for view in data.get("interfaceViews") or []:
            interface_id = view.get("interfaceId")
            if interface_id and isinstance(view.get("viewValue"), dict):
                views[interface_id] = view["viewValue"]
        return cls(
            contract_id=data["contractId"],
            template_id=data.get("templateId", ""),
            arguments=data.get("createArgument") or data.get("createArguments") or {},
            interface_views=views,
        )

    def view(self, interface_id: str) -> dict[str, Any]:
        """Interface view by id, matching on entity name when package refs differ."""
        if interface_id in self.interface_views:
            return self.interface_views[interface_id]
        entity = template_entity(interface_id)
        for key, value in self.interface_views.items():
            if template_entity(key) == entity:
                return value
        return {}


@dataclass
class TransactionResult:
    """Outcome of a committed submission."""

    update_id: Optional[str]
    created: list[CreatedEvent] = field(default_factory=list)
    archived: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_json(cls, data: Mapping[str, Any]) -> "TransactionResult":
        transaction = data.get("transaction") or data
        created: list[CreatedEvent] = []
        archived: list[str] = []
        for event in transaction.get("events") or []:
            body = event.get("CreatedEvent") or event.get("created")
            if body:
                created.append(CreatedEvent.from_json(body))
                continue
            body = event.get("ArchivedEvent") or event.get("archived")
            if body and body.get("contractId"):
                archived.append(body["contractId"])
        return cls(
            update_id=transaction.get("updateId") or data.get("updateId"),
            created=created,
            archived=archived,
            raw=dict(data),
        )

    def first_created(self, entity: str) -> Optional[CreatedEvent]:
        """First created contract whose template (or an implemented interface) ends with ``entity``."""
        for event in self.created:
            if template_entity(event.template_id).endswith(entity):
                return event
            if any(template_entity(i).endswith(entity) for i in event.interface_views):
                return event
        return None


def parse_active_contracts(entries: Iterable[Mapping[str, Any]]) -> list[CreatedEvent]:
    """Flatten an active-contracts response into created events."""
    contracts: list[CreatedEvent] = []
    for entry in entries:
        contract_entry = entry.get("contractEntry", entry)
        active = contract_entry.get("JsActiveContract") or contract_entry.get("activeContract")
        if not active:
            continue
        created = active.get("createdEvent")
        if created:
            contracts.append(CreatedEvent.from_json(created))
    return contracts


def holding_from_event(event: CreatedEvent, holding_interface: str) -> Optional[Holding]:
    """Read a Holding from a contract's holding-interface view, if it has one."""
    view = event.view(holding_interface)
    if not view:
        return None
    instrument = view.get("instrumentId") or {}
    try:
        amount = Decimal(str(view.get("amount", "0")))
    except InvalidOperation:
        return None
    return Holding(
        contract_id=event.contract_id,
        owner=view.get("owner", ""),
        instrument_id=instrument.get("id", ""),
        instrument_admin=instrument.get("admin", ""),
        amount=amount,
        locked=view.get("lock") is not None,
    )


@dataclass(frozen=True)
class PreparedTransaction:
    """Unsigned transaction returned by interactive prepare."""

    prepared_transaction: str
    transaction_hash: str
    hashing_scheme_version: str
    actors: tuple[str, ...] = ()

    @classmethod
    def from_json(cls, data: Mapping[str, Any], actors: Iterable[str]) -> "PreparedTransaction":
        return cls(
            prepared_transaction=data["preparedTransaction"],
            transaction_hash=data["preparedTransactionHash"],
            hashing_scheme_version=data.get("hashingSchemeVersion", "HASHING_SCHEME_VERSION_V2"),
            actors=tuple(actors),
        )


@dataclass(frozen=True)
class PartySignature:
    """One party's signature over a prepared transaction hash."""

    party: str
    signature: str
    signed_by: str
    signing_algorithm: str = "SIGNING_ALGORITHM_SPEC_ED25519"
    format: str = "SIGNATURE_FORMAT_RAW"

    def to_json(self) -> dict[str, Any]:
        return {
            "party": self.party,
            "signatures": [
                {
                    "format": self.format,
                    "signature": self.signature,
                    "signedBy": self.signed_by,
                    "signingAlgorithmSpec": self.signing_algorithm,
                }
            ],
        }
