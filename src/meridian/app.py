"""
Meridian application lifecycle and component wiring.

Every collaborator is built here and handed to its users explicitly;
nothing is a module-level singleton. Startup order:

1. Connect the event bus (optional, the app runs without it)
2. Connect the ledger gateway
3. Probe ledger-end with retry/backoff, then flag the app ready
4. Start the party-context serializer
5. Start the order matcher

Shutdown runs the same steps in reverse.
"""
import asyncio
import signal
from pathlib import Path
from typing import Any, Optional

import httpx
import structlog

from meridian import __version__
from meridian.core.config import ConfigManager
from meridian.core.events import EventBus
from meridian.core.lifecycle import BaseComponent, HealthCheckResult, HealthStatus
from meridian.core.retry import MeridianError, RetryConfig, RetryContext, ValidationError
from meridian.domain.allocation import PartyDirectory, SigningKey
from meridian.integrations.ledger.auth import (
    ClientCredentialsTokenProvider,
    StaticTokenProvider,
    TokenProvider,
)
from meridian.integrations.ledger.gateway import LedgerGateway
from meridian.integrations.ledger.session import LedgerSession
from meridian.integrations.ledger.types import LedgerSettings, TemplateIds, normalize_template_id
from meridian.matching.instruments import InstrumentRegistry
from meridian.matching.matcher import OrderMatcher
from meridian.matching.sinks import EventBusTradeSink, TradeSink
from meridian.services.metrics import MetricsEmitter
from meridian.settlement.allocations import AllocationManager
from meridian.settlement.executor import SettlementExecutor
from meridian.settlement.keystore import InMemoryKeyStore, KeyStore, fingerprint_of, public_key_bytes
from meridian.settlement.serializer import PartyContextSerializer
from meridian.settlement.signing import InteractiveSigningProtocol
from meridian.settlement.strategies import default_strategies

_TEMPLATE_ID_FIELDS = ("holding_interface", "allocation_interface", "allocation_factory_interface")
_TEMPLATE_FIELDS = _TEMPLATE_ID_FIELDS + (
    "allocation_factory_cid",
    "allocate_choice",
    "execute_choice",
    "cancel_choice",
)


def ledger_settings_from_config(config: ConfigManager) -> LedgerSettings:
    """Build LedgerSettings from the [ledger] section."""
    url = config.get("ledger.json_api_url")
    if not url:
        raise ValidationError("ledger.json_api_url is required")
    operator = config.get("ledger.operator_party", "")
    if not operator:
        raise ValidationError("ledger.operator_party is required")
    return LedgerSettings(
        json_api_url=url,
        user_id=config.get("ledger.user_id", "meridian"),
        operator_party=operator,
        synchronizer_id=config.get("ledger.synchronizer_id") or None,
        timeout_seconds=config.get_float("ledger.timeout_seconds", 30.0),
        http_proxy=config.get("ledger.http_proxy") or None,
        internal_parties=tuple(config.get_list("ledger.internal_parties", [])),
    )


def templates_from_config(config: ConfigManager) -> TemplateIds:
    """Build TemplateIds from [ledger.templates]; unset fields keep their defaults."""
    section = config.get_section("ledger.templates")
    overrides: dict[str, Any] = {}
    for name in _TEMPLATE_FIELDS:
        value = config.get(f"ledger.templates.{name}", section.get(name))
        if value in (None, ""):
            continue
        overrides[name] = normalize_template_id(value) if name in _TEMPLATE_ID_FIELDS else str(value)
    return TemplateIds(**overrides)


def token_provider_from_config(
    config: ConfigManager,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> TokenProvider:
    """Static token if ``ledger.auth.token`` is set, otherwise client credentials."""
    token = config.get("ledger.auth.token")
    if token:
        return StaticTokenProvider(token)
    token_url = config.get("ledger.auth.token_url")
    if not token_url:
        raise ValidationError("ledger.auth needs either token or token_url")
    return ClientCredentialsTokenProvider(
        token_url=token_url,
        client_id=config.get("ledger.auth.client_id", ""),
        client_secret=config.get("ledger.auth.client_secret", ""),
        scope=config.get("ledger.auth.scope") or None,
        audience=config.get("ledger.auth.audience") or None,
        transport=transport,
    )


def load_signing_keys(config: ConfigManager, key_store: InMemoryKeyStore) -> int:
    """Register every [[signing_keys]] entry (party, private_key, fingerprint)."""
    loaded = 0
    for entry in config.get("signing_keys", []) or []:
        party = entry.get("party")
        material = entry.get("private_key")
        if not party or not material:
            raise ValidationError("signing_keys entries need party and private_key")
        key = SigningKey(party_id=party, private_key_material=material, fingerprint="")
        fingerprint = entry.get("fingerprint") or fingerprint_of(public_key_bytes(key))
        key_store.put(SigningKey(party_id=party, private_key_material=material, fingerprint=fingerprint))
        loaded += 1
    return loaded


class MeridianApp(BaseComponent):
    """Main Meridian application.

    Usage:
        app = MeridianApp(ConfigManager(Path("config/default.toml")))
        await app.start()
        order = await app.matcher.place_order(request)
        await app.stop()
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        key_store: Optional[KeyStore] = None,
        trade_sink: Optional[TradeSink] = None,
        event_bus: Optional[EventBus] = None,
        metrics: Optional[MetricsEmitter] = None,
    ) -> None:
        """Wire all components.

        Args:
            config: Configuration (defaults to config/default.toml when present).
            transport: Optional httpx transport for the ledger and token calls.
            key_store: Signing key store (defaults to an in-memory store
                populated from [[signing_keys]]).
            trade_sink: Trade destination (defaults to the event bus).
            event_bus: Event bus (defaults to redis.url).
            metrics: Metrics emitter.
        """
        super().__init__(name="MeridianApp")

        if config is None:
            default_path = Path("config/default.toml")
            config = ConfigManager(default_path if default_path.exists() else None)
        self._config = config
        self._log = structlog.get_logger("meridian.app").bind(component="app")

        self._metrics = metrics or MetricsEmitter()
        self._event_bus = event_bus or EventBus(
            redis_url=config.get("redis.url", "redis://localhost:6379")
        )
        self._ready = False

        # Ledger
        self._settings = ledger_settings_from_config(config)
        self._templates = templates_from_config(config)
        self._directory = PartyDirectory(
            self._settings.operator_party, self._settings.internal_parties
        )
        self._gateway = LedgerGateway(
            self._settings,
            token_provider_from_config(config, transport=transport),
            transport=transport,
        )
        self._session = LedgerSession(self._gateway, self._templates)
        self._serializer = PartyContextSerializer(self._session, metrics=self._metrics)

        # Signing
        if key_store is None:
            key_store = InMemoryKeyStore()
            load_signing_keys(config, key_store)
        self._key_store = key_store
        self._signing = InteractiveSigningProtocol(self._serializer, self._gateway, key_store)

        # Settlement
        self._executor = SettlementExecutor(
            default_strategies(self._serializer, self._signing),
            directory=self._directory,
            templates=self._templates,
            serializer=self._serializer,
            metrics=self._metrics,
        )
        self._allocations = AllocationManager(
            config,
            serializer=self._serializer,
            executor=self._executor,
            directory=self._directory,
            templates=self._templates,
            signing=self._signing,
            event_bus=self._event_bus,
            metrics=self._metrics,
        )

        # Matching
        self._instruments = InstrumentRegistry.from_config(config)
        self._matcher = OrderMatcher(
            config,
            allocations=self._allocations,
            instruments=self._instruments,
            executor_party=self._settings.operator_party,
            trade_sink=trade_sink or EventBusTradeSink(self._event_bus),
            event_bus=self._event_bus,
            metrics=self._metrics,
        )

        self._startup_retry = RetryConfig.from_dict(
            config.get_section("settlement.startup_retry")
        )
        self._stop_event = asyncio.Event()

    # Accessors

    @property
    def config(self) -> ConfigManager:
        return self._config

    @property
    def is_ready(self) -> bool:
        """True once the ledger answered its readiness probe."""
        return self._ready

    @property
    def gateway(self) -> LedgerGateway:
        return self._gateway

    @property
    def serializer(self) -> PartyContextSerializer:
        return self._serializer

    @property
    def allocations(self) -> AllocationManager:
        return self._allocations

    @property
    def executor(self) -> SettlementExecutor:
        return self._executor

    @property
    def matcher(self) -> OrderMatcher:
        return self._matcher

    @property
    def directory(self) -> PartyDirectory:
        return self._directory

    @property
    def instruments(self) -> InstrumentRegistry:
        return self._instruments

    @property
    def metrics(self) -> MetricsEmitter:
        return self._metrics

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    # Lifecycle

    async def _do_start(self) -> None:
        self._log.info(
            "starting_meridian",
            version=__version__,
            ledger=self._settings.json_api_url,
            operator=self._settings.operator_party,
        )

        try:
            await self._event_bus.connect()
        except Exception as e:
            self._log.warning(
                "event_bus_connection_failed",
                error=str(e),
                message="Running without event bus",
            )

        await self._gateway.connect()
        await self._await_ledger()

        await self._serializer.start()
        await self._matcher.start()
        self._log.info("meridian_started", instruments=self._instruments.symbols)

    async def _await_ledger(self) -> None:
        """Probe ledger-end until it answers; raises once retries are spent."""
        async with RetryContext.from_config(self._startup_retry) as ctx:
            while ctx.should_retry():
                try:
                    offset = await self._gateway.ledger_end()
                    ctx.success()
                except MeridianError as e:
                    await ctx.handle_error(e)

        self._ready = True
        self._metrics.set_ledger_ready(True)
        self._log.info("ledger_ready", offset=offset, attempts=ctx.attempt)

    async def _do_stop(self) -> None:
        self._log.info("stopping_meridian")
        self._ready = False
        self._metrics.set_ledger_ready(False)

        await self._matcher.stop()
        await self._serializer.stop()
        await self._gateway.close()
        if self._event_bus.is_connected:
            await self._event_bus.disconnect()

        self._log.info("meridian_stopped", uptime_seconds=round(self.uptime_seconds, 1))

    async def _do_health_check(self) -> HealthCheckResult:
        issues = []
        if not self._ready:
            issues.append("ledger_not_ready")
        if not self._event_bus.is_connected:
            issues.append("event_bus_disconnected")

        for name, component in (("serializer", self._serializer), ("matcher", self._matcher)):
            result = await component.health_check()
            if result.status == HealthStatus.UNHEALTHY:
                issues.append(f"{name}_unhealthy")

        if issues:
            return HealthCheckResult.degraded(
                message=f"Issues: {', '.join(issues)}",
                uptime_seconds=self.uptime_seconds,
            )
        return HealthCheckResult.healthy(
            uptime_seconds=self.uptime_seconds,
            ready=self._ready,
        )

    def request_stop(self) -> None:
        self._stop_event.set()

    async def run_forever(self) -> None:
        """Start, run until SIGTERM/SIGINT or request_stop(), then stop."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_stop)

        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            await self.stop()
