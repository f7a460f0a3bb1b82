"""
Unit tests for ConfigManager.

Tests verify:
- TOML loading
- In-memory configuration
- Environment variable overrides
- Type-specific getters
"""
import os
import tempfile
from decimal import Decimal
from pathlib import Path

from meridian.core.config import ConfigManager


class TestConfigBasics:
    """Tests for basic ConfigManager functionality."""

    def test_empty_config(self):
        """Verify ConfigManager works without a config file."""
        config = ConfigManager()
        assert config.get("any.key") is None
        assert config.get("any.key", "default") == "default"

    def test_load_toml_file(self):
        """Verify ConfigManager loads TOML config file."""
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write("""
[ledger]
json_api_url = "http://ledger:7575"
operator_party = "venue::1220"

[instruments.CC]
id = "Amulet"
admin = "dso::1220"
""")
            f.flush()
            config_path = Path(f.name)

        try:
            config = ConfigManager(config_path=config_path)
            assert config.get("ledger.json_api_url") == "http://ledger:7575"
            assert config.get("instruments.CC.id") == "Amulet"
            assert config.get_section("instruments") == {
                "CC": {"id": "Amulet", "admin": "dso::1220"}
            }
        finally:
            os.unlink(config_path)

    def test_in_memory_data(self):
        """Verify pre-parsed data is used when no file is given."""
        config = ConfigManager(data={"matching": {"max_matches_per_cycle": 4}})
        assert config.get_int("matching.max_matches_per_cycle") == 4

    def test_missing_section_is_empty(self):
        config = ConfigManager()
        assert config.get_section("ledger.templates") == {}

    def test_get_decimal(self):
        """Verify get_decimal avoids float artifacts."""
        config = ConfigManager(data={"matching": {"market_buy_buffer": 0.05}})
        assert config.get_decimal("matching.market_buy_buffer") == Decimal("0.05")
        assert config.get_decimal("matching.missing", Decimal("1")) == Decimal("1")

    def test_get_list_splits_strings(self):
        config = ConfigManager(data={"ledger": {"internal_parties": "a::1, b::2"}})
        assert config.get_list("ledger.internal_parties") == ["a::1", "b::2"]
        assert config.get_list("ledger.missing") == []


class TestEnvOverrides:
    """Tests for environment variable overrides."""

    def test_env_overrides_data(self):
        """Verify environment variables override file values."""
        os.environ["MERIDIAN_LEDGER_USER_ID"] = "ops-user"
        try:
            config = ConfigManager(data={"ledger": {"user_id": "meridian"}})
            assert config.get("ledger.user_id") == "ops-user"
        finally:
            del os.environ["MERIDIAN_LEDGER_USER_ID"]

    def test_env_boolean_and_number_parsing(self):
        os.environ["MERIDIAN_MATCHING_PREVENT_SELF_TRADE"] = "false"
        os.environ["MERIDIAN_MATCHING_MAX_MATCHES_PER_CYCLE"] = "25"
        try:
            config = ConfigManager()
            assert config.get_bool("matching.prevent_self_trade", True) is False
            assert config.get_int("matching.max_matches_per_cycle") == 25
        finally:
            del os.environ["MERIDIAN_MATCHING_PREVENT_SELF_TRADE"]
            del os.environ["MERIDIAN_MATCHING_MAX_MATCHES_PER_CYCLE"]


class TestReload:
    def test_reload_picks_up_file_changes(self):
        with tempfile.NamedTemporaryFile(mode="w", suffix=".toml", delete=False) as f:
            f.write('[ledger]\nuser_id = "before"\n')
            f.flush()
            config_path = Path(f.name)

        try:
            config = ConfigManager(config_path=config_path)
            with open(config_path, "w") as f:
                f.write('[ledger]\nuser_id = "after"\n')
            config.reload()
            assert config.get("ledger.user_id") == "after"
        finally:
            os.unlink(config_path)
