"""
Unit tests for ledger failure classification.

Tests cover:
- Error code, category, status and text classification
- Typed errors built from JSON API responses
- Wrapping of transport exceptions
"""

import asyncio

import httpx
import pytest

from meridian.core.retry import InsufficientFundsError, is_retryable
from meridian.integrations.ledger.errors import (
    AuthorizationRejectedError,
    FailureClassification,
    LedgerAuthenticationError,
    LedgerInsufficientFundsError,
    SigningKeyMissingError,
    StaleContractError,
    TransientSynchronizerError,
    UnknownLedgerError,
    classify_error_text,
    classify_ledger_error,
    error_from_exception,
    error_from_response,
    extract_error_code,
)


class TestClassifyErrorText:
    """Test raw failure classification."""

    @pytest.mark.parametrize("message,expected", [
        ("CONTRACT_NOT_FOUND(11,0): contract 00ab not found", FailureClassification.STALE),
        ("LOCAL_VERDICT_INACTIVE_CONTRACTS(2,1): inactive", FailureClassification.STALE),
        ("DAML_AUTHORIZATION_ERROR(8,0): requires authorizers bob", FailureClassification.AUTHORIZATION_REJECTED),
        ("NOT_CONNECTED_TO_ANY_SYNCHRONIZER(1,0): retry", FailureClassification.TRANSIENT),
        ("SEQUENCER_BACKPRESSURE(2,0): slow down", FailureClassification.TRANSIENT),
        ("allocation expired: settleBefore is in the past", FailureClassification.STALE),
        ("Interpretation error: requires authorizers venue", FailureClassification.AUTHORIZATION_REJECTED),
        ("insufficient holdings to cover lock", FailureClassification.INSUFFICIENT_FUNDS),
        ("something nobody anticipated", FailureClassification.UNKNOWN),
    ])
    def test_classification_table(self, message, expected):
        assert classify_error_text(message) == expected

    def test_explicit_code_beats_text(self):
        result = classify_error_text("request timed out", code="CONTRACT_NOT_FOUND")
        assert result == FailureClassification.STALE

    def test_category_beats_status(self):
        result = classify_error_text(
            "oops", status_code=404, category="ContentionOnSharedResources"
        )
        assert result == FailureClassification.TRANSIENT

    @pytest.mark.parametrize("status,expected", [
        (403, FailureClassification.AUTHORIZATION_REJECTED),
        (404, FailureClassification.STALE),
        (429, FailureClassification.TRANSIENT),
        (503, FailureClassification.TRANSIENT),
        (500, FailureClassification.UNKNOWN),
    ])
    def test_status_codes(self, status, expected):
        assert classify_error_text("failure", status_code=status) == expected

    def test_extract_error_code(self):
        assert extract_error_code("CONTRACT_NOT_FOUND(11,abcd): gone") == "CONTRACT_NOT_FOUND"
        assert extract_error_code("no code here") is None


class TestErrorFromResponse:
    """Test typed error construction from HTTP responses."""

    def test_stale_response(self):
        error = error_from_response(
            409,
            {"code": "CONTRACT_NOT_FOUND", "cause": "contract 00ab not found",
             "correlationId": "corr-1"},
            "submit_and_wait",
        )
        assert isinstance(error, StaleContractError)
        assert error.code == "CONTRACT_NOT_FOUND"
        assert error.correlation_id == "corr-1"
        assert error.status_code == 409
        assert "submit_and_wait failed with HTTP 409" in str(error)

    @pytest.mark.parametrize("operation", ["get_party", "active_contracts", "ledger_end"])
    def test_not_found_outside_submissions_is_unknown(self, operation):
        error = error_from_response(
            404, {"code": "CONTRACT_NOT_FOUND", "cause": "party ghost::1 not found"}, operation
        )
        assert isinstance(error, UnknownLedgerError)
        assert error.classification == FailureClassification.UNKNOWN

    @pytest.mark.parametrize("operation", ["prepare_submission", "execute_submission"])
    def test_not_found_in_interactive_submission_is_stale(self, operation):
        error = error_from_response(404, {"cause": "contract 00ab not found"}, operation)
        assert isinstance(error, StaleContractError)

    def test_unauthorized_is_authentication_error(self):
        error = error_from_response(401, b'{"error": "token expired"}', "ledger_end")
        assert isinstance(error, LedgerAuthenticationError)
        assert not is_retryable(error)

    def test_raw_text_body(self):
        error = error_from_response(503, b"upstream not ready", "query")
        assert isinstance(error, TransientSynchronizerError)
        assert is_retryable(error)

    def test_unknown_body(self):
        error = error_from_response(500, None, "submit")
        assert isinstance(error, UnknownLedgerError)
        assert error.classification == FailureClassification.UNKNOWN


class TestClassifyLedgerError:
    """Test classification of arbitrary exceptions."""

    def test_typed_errors_keep_their_classification(self):
        assert classify_ledger_error(SigningKeyMissingError(["carol::1"])) == (
            FailureClassification.SIGNING_KEY_MISSING
        )
        assert classify_ledger_error(AuthorizationRejectedError("no")) == (
            FailureClassification.AUTHORIZATION_REJECTED
        )

    def test_insufficient_funds(self):
        assert classify_ledger_error(InsufficientFundsError("short")) == (
            FailureClassification.INSUFFICIENT_FUNDS
        )
        assert isinstance(LedgerInsufficientFundsError("short"), InsufficientFundsError)

    def test_transport_errors_are_transient(self):
        assert classify_ledger_error(httpx.ConnectError("refused")) == (
            FailureClassification.TRANSIENT
        )
        assert classify_ledger_error(asyncio.TimeoutError()) == (
            FailureClassification.TRANSIENT
        )

    def test_error_from_exception_wraps(self):
        cause = httpx.ReadTimeout("slow")
        wrapped = error_from_exception(cause, "submit")
        assert isinstance(wrapped, TransientSynchronizerError)
        assert wrapped.cause is cause

    def test_error_from_exception_passthrough(self):
        original = StaleContractError("gone")
        assert error_from_exception(original, "submit") is original

    def test_signing_key_missing_lists_parties(self):
        error = SigningKeyMissingError(["carol::1", "dave::2"])
        assert error.parties == ("carol::1", "dave::2")
        assert "carol::1, dave::2" in str(error)
