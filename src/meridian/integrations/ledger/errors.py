"""Ledger error taxonomy and failure classification.

Every failure that crosses the ledger boundary is mapped onto one of a
small set of classifications, because the settlement executor decides
retry-versus-abort from the classification alone:

- STALE: the lock or contract is gone, or its deadline passed. Terminal.
- SIGNING_KEY_MISSING: a required self-custodied signer has no stored key. Terminal.
- AUTHORIZATION_REJECTED: the actor set was insufficient. Try the next strategy.
- TRANSIENT: synchronizer/network trouble. The caller may retry later.
- INSUFFICIENT_FUNDS: the sender cannot cover the lock.
- UNKNOWN: anything unrecognized. Treated as non-retryable.

The JSON API reports failures as ``JsCantonError`` bodies
(``{code, cause, errorCategory, correlationId, context}``); the HTTP status
code is used when the body is missing or unhelpful.
"""

import asyncio
import json
import re
from enum import Enum
from typing import Any, ClassVar, Optional, Sequence

import httpx

from meridian.core.retry import (
    InsufficientFundsError,
    MeridianError,
    PermanentError,
    TransientError,
)


class FailureClassification(str, Enum):
    """How a failed ledger interaction should be handled."""

    STALE = "stale"
    SIGNING_KEY_MISSING = "signing_key_missing"
    AUTHORIZATION_REJECTED = "authorization_rejected"
    TRANSIENT = "transient"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    UNKNOWN = "unknown"


TERMINAL_CLASSIFICATIONS = frozenset({
    FailureClassification.STALE,
    FailureClassification.SIGNING_KEY_MISSING,
    FailureClassification.INSUFFICIENT_FUNDS,
    FailureClassification.UNKNOWN,
})


class LedgerError(MeridianError):
    """Base class for errors raised at the ledger boundary.

    Attributes:
        code: Canton error code id (e.g. CONTRACT_NOT_FOUND), if known.
        status_code: HTTP status of the failed call, if any.
        correlation_id: Ledger correlation id for support lookups.
        details: Raw error body.
    """

    classification: ClassVar[FailureClassification] = FailureClassification.UNKNOWN

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        correlation_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, cause)
        self.code = code
        self.status_code = status_code
        self.correlation_id = correlation_id
        self.details = details or {}


class StaleContractError(LedgerError, PermanentError):
    """The allocation or contract is no longer active, or its deadline passed."""

    classification = FailureClassification.STALE


class SigningKeyMissingError(LedgerError, PermanentError):
    """A self-custodied party that must co-sign has no stored key."""

    classification = FailureClassification.SIGNING_KEY_MISSING

    def __init__(self, parties: Sequence[str], message: Optional[str] = None):
        self.parties = tuple(parties)
        super().__init__(message or f"no signing key stored for: {', '.join(self.parties)}")


class AuthorizationRejectedError(LedgerError, PermanentError):
    """The submitted actor set did not satisfy the ledger's authorization rules."""

    classification = FailureClassification.AUTHORIZATION_REJECTED


class TransientSynchronizerError(LedgerError, TransientError):
    """Network, synchronizer or contention failure; the caller may retry later."""

    classification = FailureClassification.TRANSIENT


class LedgerInsufficientFundsError(LedgerError, InsufficientFundsError):
    """The ledger rejected a lock because holdings do not cover it."""

    classification = FailureClassification.INSUFFICIENT_FUNDS


class LedgerAuthenticationError(LedgerError, PermanentError):
    """The bearer token was rejected (HTTP 401)."""

    classification = FailureClassification.UNKNOWN


class UnknownLedgerError(LedgerError, PermanentError):
    """Unrecognized or inconclusive ledger failure; never assumed to be success."""

    classification = FailureClassification.UNKNOWN


# =============================================================================
# Classification rules
# =============================================================================

STALE_CODES = frozenset({
    "CONTRACT_NOT_FOUND",
    "CONTRACT_NOT_ACTIVE",
    "LOCAL_VERDICT_INACTIVE_CONTRACTS",
    "ALLOCATION_EXPIRED",
})

AUTHORIZATION_CODES = frozenset({
    "DAML_AUTHORIZATION_ERROR",
    "PERMISSION_DENIED",
    "AUTHORIZATION_ERROR",
})

TRANSIENT_CODES = frozenset({
    "NOT_CONNECTED_TO_ANY_SYNCHRONIZER",
    "NOT_CONNECTED_TO_SYNCHRONIZER",
    "SEQUENCER_BACKPRESSURE",
    "SEQUENCER_REQUEST_REFUSED",
    "PARTICIPANT_BACKPRESSURE",
    "SUBMISSION_ALREADY_IN_FLIGHT",
    "MEDIATOR_SAYS_TX_TIMED_OUT",
    "LOCAL_VERDICT_TIMEOUT",
    "LOCAL_VERDICT_LOCKED_CONTRACTS",
    "SERVICE_NOT_RUNNING",
    "REQUEST_TIME_OUT",
})

INSUFFICIENT_FUNDS_CODES = frozenset({"INSUFFICIENT_FUNDS"})

TRANSIENT_CATEGORIES = frozenset({
    "ContentionOnSharedResources",
    "TransientServerFailure",
    "DeadlineExceededRequestStateUnknown",
})

TRANSIENT_STATUS_CODES = frozenset({408, 429, 502, 503, 504})

AUTHORIZATION_PATTERNS = (
    "requires authorizers",
    "missing authorization",
    "not authorized",
    "authorization error",
    "failed authorization",
    "permission denied",
)

TRANSIENT_PATTERNS = (
    "not connected to",
    "timed out",
    "timeout",
    "backpressure",
    "temporarily unavailable",
    "service unavailable",
    "connection reset",
    "try again",
)

STALE_PATTERNS = (
    "contract not found",
    "could not find contract",
    "contract_not_found",
    "not active",
    "inactive contract",
    "already archived",
    "settlebefore",
    "settle_before",
    "deadline has passed",
    "deadline exceeded",
    "expired",
)

INSUFFICIENT_FUNDS_PATTERNS = ("insufficient",)

# Calls that reference contracts; elsewhere a 404 or "not found" is no
# evidence that a contract was consumed.
CONTRACT_OPERATIONS = frozenset({
    "submit_and_wait",
    "prepare_submission",
    "execute_submission",
})

_EMBEDDED_CODE = re.compile(r"^([A-Z][A-Z0-9_]{3,})\(")


def extract_error_code(text: str) -> Optional[str]:
    """Pull a Canton error code id off the front of a message like ``CODE(11,abcd): ...``."""
    match = _EMBEDDED_CODE.match(text.strip())
    return match.group(1) if match else None


def classify_error_text(
    message: str,
    code: Optional[str] = None,
    status_code: Optional[int] = None,
    category: Optional[str] = None,
) -> FailureClassification:
    """Classify a raw ledger failure from its code, text, HTTP status and category.

    Explicit codes win over categories, categories over status codes, and
    free-text patterns are consulted last.
    """
    text = message.lower()
    code = code or extract_error_code(message)

    if code in STALE_CODES:
        return FailureClassification.STALE
    if code in AUTHORIZATION_CODES:
        return FailureClassification.AUTHORIZATION_REJECTED
    if code in TRANSIENT_CODES:
        return FailureClassification.TRANSIENT
    if code in INSUFFICIENT_FUNDS_CODES:
        return FailureClassification.INSUFFICIENT_FUNDS

    if category in TRANSIENT_CATEGORIES:
        return FailureClassification.TRANSIENT

    if status_code == 403:
        return FailureClassification.AUTHORIZATION_REJECTED
    if status_code in TRANSIENT_STATUS_CODES:
        return FailureClassification.TRANSIENT
    if status_code == 404:
        return FailureClassification.STALE

    if any(p in text for p in AUTHORIZATION_PATTERNS):
        return FailureClassification.AUTHORIZATION_REJECTED
    if any(p in text for p in TRANSIENT_PATTERNS):
        return FailureClassification.TRANSIENT
    if any(p in text for p in STALE_PATTERNS):
        return FailureClassification.STALE
    if any(p in text for p in INSUFFICIENT_FUNDS_PATTERNS):
        return FailureClassification.INSUFFICIENT_FUNDS

    return FailureClassification.UNKNOWN


def classify_ledger_error(error: BaseException) -> FailureClassification:
    """Classify any exception raised while talking to the ledger."""
    if isinstance(error, LedgerError):
        return error.classification
    if isinstance(error, InsufficientFundsError):
        return FailureClassification.INSUFFICIENT_FUNDS
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return FailureClassification.TRANSIENT
    if isinstance(error, TransientError):
        return FailureClassification.TRANSIENT
    return classify_error_text(str(error))


_ERROR_TYPES: dict[FailureClassification, type[LedgerError]] = {
    FailureClassification.STALE: StaleContractError,
    FailureClassification.AUTHORIZATION_REJECTED: AuthorizationRejectedError,
    FailureClassification.TRANSIENT: TransientSynchronizerError,
    FailureClassification.INSUFFICIENT_FUNDS: LedgerInsufficientFundsError,
    FailureClassification.UNKNOWN: UnknownLedgerError,
}


def _parse_body(body: Any) -> dict[str, Any]:
    if isinstance(body, dict):
        return body
    if isinstance(body, (bytes, str)) and body:
        try:
            parsed = json.loads(body)
        except ValueError:
            return {"cause": body.decode() if isinstance(body, bytes) else body}
        if isinstance(parsed, dict):
            return parsed
    return {}


def error_from_response(
    status_code: int,
    body: Any,
    operation: str,
) -> LedgerError:
    """Build the typed error for a failed JSON API response.

    Args:
        status_code: HTTP status of the response.
        body: Parsed JSON body, or raw text/bytes.
        operation: Short name of the call, used in the message.
    """
    payload = _parse_body(body)
    code = payload.get("code")
    cause = str(payload.get("cause") or payload.get("message") or payload.get("error") or "")
    category = payload.get("errorCategory")
    correlation_id = payload.get("correlationId")
    message = f"{operation} failed with HTTP {status_code}"
    if code:
        message += f" [{code}]"
    if cause:
        message += f": {cause}"

    if status_code == 401:
        return LedgerAuthenticationError(
            message,
            code=code,
            status_code=status_code,
            correlation_id=correlation_id,
            details=payload,
        )

    classification = classify_error_text(
        cause or message,
        code=code,
        status_code=status_code,
        category=category if isinstance(category, str) else None,
    )
    if (
        classification == FailureClassification.STALE
        and operation not in CONTRACT_OPERATIONS
    ):
        classification = FailureClassification.UNKNOWN
    error_type = _ERROR_TYPES[classification]
    return error_type(
        message,
        code=code,
        status_code=status_code,
        correlation_id=correlation_id,
        details=payload,
    )


def error_from_exception(error: BaseException, operation: str) -> LedgerError:
    """Wrap a transport-level exception in the matching ledger error type."""
    if isinstance(error, LedgerError):
        return error
    classification = classify_ledger_error(error)
    error_type = _ERROR_TYPES.get(classification, UnknownLedgerError)
    return error_type(f"{operation} failed: {type(error).__name__}", cause=error)
