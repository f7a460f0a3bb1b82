"""JSON Ledger API integration: gateway, session, auth and error taxonomy."""

from meridian.integrations.ledger.auth import (
    ClientCredentialsTokenProvider,
    StaticTokenProvider,
    TokenProvider,
)
from meridian.integrations.ledger.errors import (
    AuthorizationRejectedError,
    FailureClassification,
    LedgerAuthenticationError,
    LedgerError,
    LedgerInsufficientFundsError,
    SigningKeyMissingError,
    StaleContractError,
    TransientSynchronizerError,
    UnknownLedgerError,
    classify_ledger_error,
)
from meridian.integrations.ledger.gateway import LedgerGateway
from meridian.integrations.ledger.session import LedgerSession
from meridian.integrations.ledger.types import (
    CreateCommand,
    CreatedEvent,
    DisclosedContract,
    ExerciseCommand,
    LedgerSettings,
    PartySignature,
    PreparedTransaction,
    TemplateIds,
    TransactionResult,
    normalize_template_id,
)

__all__ = [
    # Clients
    "LedgerGateway",
    "LedgerSession",
    # Auth
    "TokenProvider",
    "StaticTokenProvider",
    "ClientCredentialsTokenProvider",
    # Errors
    "FailureClassification",
    "LedgerError",
    "StaleContractError",
    "SigningKeyMissingError",
    "AuthorizationRejectedError",
    "TransientSynchronizerError",
    "LedgerInsufficientFundsError",
    "LedgerAuthenticationError",
    "UnknownLedgerError",
    "classify_ledger_error",
    # Types
    "LedgerSettings",
    "TemplateIds",
    "CreateCommand",
    "ExerciseCommand",
    "DisclosedContract",
    "CreatedEvent",
    "TransactionResult",
    "PreparedTransaction",
    "PartySignature",
    "normalize_template_id",
]
