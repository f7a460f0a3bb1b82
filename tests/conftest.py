"""
Shared pytest fixtures for Meridian tests.
"""
import pytest
import pytest_asyncio
from unittest.mock import MagicMock, AsyncMock

from meridian.core.config import ConfigManager
from tests.fixtures.fake_ledger import FakeLedger
from tests.fixtures.stack import TEST_CONFIG, build_stack


@pytest.fixture
def mock_config():
    """Mock ConfigManager for unit tests."""
    config = MagicMock()
    config.get.return_value = None
    return config


@pytest.fixture
def mock_event_bus():
    """Mock EventBus for unit tests."""
    bus = MagicMock()
    bus.is_connected = True
    bus.publish = AsyncMock()
    return bus


@pytest.fixture
def mock_metrics():
    """Mock MetricsEmitter for unit tests."""
    return MagicMock()


@pytest.fixture
def test_config():
    """Real ConfigManager over the in-memory test configuration."""
    return ConfigManager(data=TEST_CONFIG)


@pytest.fixture
def fake_ledger():
    """Fresh in-memory ledger."""
    return FakeLedger()


@pytest_asyncio.fixture
async def stack(test_config, fake_ledger):
    """Settlement stack over the fake ledger with a running serializer."""
    built = build_stack(config=test_config, ledger=fake_ledger)
    await built.serializer.start()
    try:
        yield built
    finally:
        await built.matcher.stop()
        await built.serializer.stop()
