"""
Unit tests for logging setup.

Tests cover:
- Secret redaction in the processor chain
- Renderer choice
"""

import structlog

from meridian.core.logging import REDACTED, build_processors, redact_secrets


class TestRedaction:
    """Test that secrets never reach a renderer."""

    def test_secret_keys_are_masked(self):
        event = redact_secrets(None, "info", {
            "event": "signing_key_loaded",
            "party": "carol::1220dd04",
            "private_key_material": "c2VlZA==",
            "client_secret": "s3cret",
        })
        assert event["private_key_material"] == REDACTED
        assert event["client_secret"] == REDACTED
        assert event["party"] == "carol::1220dd04"

    def test_events_without_secrets_are_untouched(self):
        event = {"event": "order_placed", "order_id": "o-1"}
        assert redact_secrets(None, "info", dict(event)) == event


class TestProcessors:
    """Test processor chain assembly."""

    def test_json_output_ends_with_json_renderer(self):
        processors = build_processors(json_output=True)
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
        assert redact_secrets in processors

    def test_console_output(self):
        processors = build_processors(json_output=False)
        assert isinstance(processors[-1], structlog.dev.ConsoleRenderer)
