"""
Unit tests for MeridianApp wiring and startup.

Tests cover:
- Settings, template, token and signing-key helpers
- Startup readiness probe against a mocked JSON API
- Health reporting and shutdown
"""

from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from meridian.app import (
    MeridianApp,
    ledger_settings_from_config,
    load_signing_keys,
    templates_from_config,
    token_provider_from_config,
)
from meridian.core.config import ConfigManager
from meridian.core.lifecycle import HealthStatus
from meridian.core.retry import ValidationError
from meridian.integrations.ledger.auth import (
    ClientCredentialsTokenProvider,
    StaticTokenProvider,
)
from meridian.integrations.ledger.errors import LedgerAuthenticationError
from meridian.settlement.keystore import (
    InMemoryKeyStore,
    fingerprint_of,
    generate_signing_key,
    public_key_bytes,
)

OPERATOR = "venue::1220aa01"


def app_config(**ledger_overrides):
    ledger = {
        "json_api_url": "http://ledger.test:7575",
        "operator_party": OPERATOR,
        "internal_parties": ["alice::1220bb02"],
        "auth": {"token": "static-token"},
        "templates": {
            "allocation_factory_cid": "factory-0001",
            "holding_interface": "  pkg:Splice.Api.Token.HoldingV1:Holding ",
        },
    }
    ledger.update(ledger_overrides)
    return ConfigManager(data={
        "ledger": ledger,
        "settlement": {"startup_retry": {"max_attempts": 2, "min_wait_seconds": 0}},
        "matching": {"interval_seconds": 0.05, "trading_pairs": ["CC/USDC"]},
        "instruments": {
            "CC": {"id": "Amulet", "admin": "dso::1220ff06"},
            "USDC": {"admin": "issuer::1220ff07"},
        },
    })


@pytest.fixture
def offline_bus():
    bus = MagicMock()
    bus.is_connected = False
    bus.connect = AsyncMock(side_effect=ConnectionError("no redis"))
    bus.disconnect = AsyncMock()
    bus.publish = AsyncMock()
    return bus


class TestConfigHelpers:
    """Test configuration helpers."""

    def test_ledger_settings(self):
        settings = ledger_settings_from_config(app_config())
        assert settings.operator_party == OPERATOR
        assert settings.internal_parties == ("alice::1220bb02",)
        assert settings.user_id == "meridian"

    def test_ledger_settings_require_url_and_operator(self):
        with pytest.raises(ValidationError):
            ledger_settings_from_config(app_config(json_api_url=""))
        with pytest.raises(ValidationError):
            ledger_settings_from_config(app_config(operator_party=""))

    def test_templates_are_normalized(self):
        templates = templates_from_config(app_config())
        assert templates.holding_interface == "pkg:Splice.Api.Token.HoldingV1:Holding"
        assert templates.allocation_factory_cid == "factory-0001"
        assert templates.execute_choice == "Allocation_ExecuteTransfer"

    def test_bad_template_id(self):
        config = app_config(templates={"allocation_interface": "Allocation"})
        with pytest.raises(ValidationError):
            templates_from_config(config)

    def test_token_providers(self):
        assert isinstance(token_provider_from_config(app_config()), StaticTokenProvider)

        oauth = app_config(auth={
            "token_url": "http://auth.test/token",
            "client_id": "meridian",
            "client_secret": "s3cret",
        })
        assert isinstance(token_provider_from_config(oauth), ClientCredentialsTokenProvider)

        with pytest.raises(ValidationError):
            token_provider_from_config(app_config(auth={}))

    def test_load_signing_keys(self):
        key = generate_signing_key("carol::1220dd04")
        config = ConfigManager(data={"signing_keys": [
            {"party": key.party_id, "private_key": key.private_key_material},
        ]})
        store = InMemoryKeyStore()

        assert load_signing_keys(config, store) == 1
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_loaded_key_gets_derived_fingerprint(self):
        key = generate_signing_key("carol::1220dd04")
        config = ConfigManager(data={"signing_keys": [
            {"party": key.party_id, "private_key": key.private_key_material},
        ]})
        store = InMemoryKeyStore()
        load_signing_keys(config, store)

        stored = await store.get_key(key.party_id)
        assert stored.fingerprint == fingerprint_of(public_key_bytes(key))

    def test_signing_key_entry_needs_material(self):
        config = ConfigManager(data={"signing_keys": [{"party": "carol::1"}]})
        with pytest.raises(ValidationError):
            load_signing_keys(config, InMemoryKeyStore())


class TestAppLifecycle:
    """Test startup and shutdown."""

    @pytest.mark.asyncio
    async def test_start_probes_ledger_and_stops(self, offline_bus):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"offset": 12})

        app = MeridianApp(
            app_config(),
            transport=httpx.MockTransport(handler),
            event_bus=offline_bus,
        )
        assert not app.is_ready
        assert app.directory.is_external("carol::1220dd04")
        assert not app.directory.is_external("alice::1220bb02")
        assert app.instruments.symbols == ["CC", "USDC"]

        await app.start()
        try:
            assert app.is_ready
            assert app.serializer.is_running
            assert app.matcher.is_running
            assert requests[0].url.path == "/v2/state/ledger-end"
            assert requests[0].headers["Authorization"] == "Bearer static-token"
            assert app.metrics.registry.get_sample_value("meridian_ledger_ready") == 1.0

            health = await app.health_check()
            assert health.status == HealthStatus.DEGRADED
            assert "event_bus_disconnected" in health.message
        finally:
            await app.stop()

        assert not app.is_ready
        assert not app.matcher.is_running
        assert not app.gateway.is_connected

    @pytest.mark.asyncio
    async def test_start_fails_when_ledger_rejects(self, offline_bus):
        def handler(request):
            return httpx.Response(401, json={"error": "bad token"})

        app = MeridianApp(
            app_config(),
            transport=httpx.MockTransport(handler),
            event_bus=offline_bus,
        )
        with pytest.raises(LedgerAuthenticationError):
            await app.start()
        assert not app.is_ready
        await app.gateway.close()

    @pytest.mark.asyncio
    async def test_request_stop_ends_run_forever(self, offline_bus):
        app = MeridianApp(
            app_config(),
            transport=httpx.MockTransport(lambda r: httpx.Response(200, json={"offset": 1})),
            event_bus=offline_bus,
        )
        app.request_stop()
        await app.run_forever()
        assert not app.is_running
