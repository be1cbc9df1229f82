"""Tests for configuration management."""

from datetime import date, datetime, timezone

import pytest
import yaml

from tibber_bridge.config.settings import (
    DEFAULT_QUERY_URL,
    BridgeSettings,
    env_overrides,
    load_settings,
    substitute_env_vars,
)
from tibber_bridge.exceptions import ConfigurationError


REQUIRED_ENV = {
    "TIBBER_ACCESS_TOKEN": "tibber-token",
    "TIBBER_HOME_ID": "home-42",
    "INFLUXDB_TOKEN": "influx-token",
}


class TestBridgeSettings:
    """Test BridgeSettings defaults and validation."""

    def test_default_settings(self):
        """Test default settings creation."""
        settings = load_settings(environ={})

        assert settings.service_name == "tibber-influx-bridge"
        assert settings.tibber.query_url == DEFAULT_QUERY_URL
        assert settings.tibber.feed_timeout == 60
        assert settings.tibber.connection_timeout == 30
        assert settings.influxdb.url == "http://localhost:8086"
        assert settings.influxdb.org is None
        assert settings.influxdb.bucket == "tibber"
        assert settings.influxdb.measurement == "live_data"
        assert settings.backfill.enabled is False
        assert settings.backfill.page_size == 24
        assert settings.backfill.delay_ms == 2000

    def test_trailing_slash_removed_from_influx_url(self):
        settings = BridgeSettings(influxdb={"url": "http://influx:8086/"})

        assert settings.influxdb.url == "http://influx:8086"

    def test_empty_query_url_uses_default(self):
        settings = BridgeSettings(tibber={"query_url": ""})

        assert settings.tibber.query_url == DEFAULT_QUERY_URL

    def test_invalid_values_rejected(self):
        with pytest.raises(ValueError, match="Page size"):
            BridgeSettings(backfill={"page_size": 0})

        with pytest.raises(ValueError, match="Timeouts must be positive"):
            BridgeSettings(tibber={"feed_timeout": 0})

        with pytest.raises(ValueError, match="Log format"):
            BridgeSettings(logging={"format": "xml"})

    def test_settings_are_immutable(self, settings):
        with pytest.raises(ValueError):
            settings.service_name = "other"

    def test_backfill_start_instant(self):
        settings = BridgeSettings(backfill={"from_date": "2024-02-29", "delay_ms": 1500})

        assert settings.backfill.from_date == date(2024, 2, 29)
        assert settings.backfill.start_instant == datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert settings.backfill.delay_seconds == 1.5

    def test_masked_hides_credentials(self, settings):
        masked = settings.masked()

        assert masked["tibber"]["access_token"] == "****"
        assert masked["influxdb"]["token"] == "****"
        assert masked["tibber"]["home_id"] == "home-1"


class TestRequiredSettings:
    """Test the start-up check of mandatory settings."""

    @pytest.mark.parametrize("missing, message", [
        ("TIBBER_ACCESS_TOKEN", "TIBBER_ACCESS_TOKEN environment variable must be set"),
        ("TIBBER_HOME_ID", "TIBBER_HOME_ID environment variable must be set"),
        ("INFLUXDB_TOKEN", "INFLUXDB_TOKEN environment variable must be set"),
    ])
    def test_missing_required_variable(self, missing, message):
        environ = {k: v for k, v in REQUIRED_ENV.items() if k != missing}

        with pytest.raises(ConfigurationError, match=message):
            load_settings(environ=environ).validate_required()

    def test_backfill_requires_start_date(self):
        environ = dict(REQUIRED_ENV, BACKFILL_ENABLED="true")

        with pytest.raises(ConfigurationError, match="BACKFILL_FROM_DATE"):
            load_settings(environ=environ).validate_required()

    def test_complete_settings_pass(self):
        environ = dict(REQUIRED_ENV, BACKFILL_ENABLED="true", BACKFILL_FROM_DATE="2024-01-01")

        load_settings(environ=environ).validate_required()


class TestConfigLoading:
    """Test configuration loading from files and environment."""

    def test_flat_environment_variables(self):
        settings = load_settings(environ=dict(
            REQUIRED_ENV,
            INFLUXDB_URL="http://influx:8086",
            INFLUXDB_ORG="home",
            INFLUXDB_BUCKET="energy",
            BACKFILL_ENABLED="true",
            BACKFILL_FROM_DATE="2023-06-01",
            BACKFILL_PAGE_SIZE="48",
            BACKFILL_DELAY_MS="500",
            LOG_LEVEL="DEBUG",
        ))

        assert settings.tibber.access_token == "tibber-token"
        assert settings.tibber.home_id == "home-42"
        assert settings.influxdb.org == "home"
        assert settings.influxdb.bucket == "energy"
        assert settings.backfill.enabled is True
        assert settings.backfill.from_date == date(2023, 6, 1)
        assert settings.backfill.page_size == 48
        assert settings.backfill.delay_ms == 500
        assert settings.logging.level == "DEBUG"

    def test_empty_variables_are_ignored(self):
        overrides = env_overrides({"INFLUXDB_ORG": "", "TIBBER_HOME_ID": "home-1"})

        assert overrides == {"tibber": {"home_id": "home-1"}}

    def test_load_from_yaml_file(self, tmp_path, monkeypatch):
        """Test loading configuration from YAML file with substitution."""
        monkeypatch.setenv("TEST_TIBBER_TOKEN", "from-env")
        config_file = tmp_path / "bridge.yaml"
        config_file.write_text(yaml.safe_dump({
            "service_name": "test-bridge",
            "tibber": {"access_token": "${TEST_TIBBER_TOKEN}", "home_id": "yaml-home"},
            "influxdb": {"bucket": "${TEST_BUCKET:-fallback}"},
        }))

        settings = load_settings(str(config_file), environ={})

        assert settings.service_name == "test-bridge"
        assert settings.tibber.access_token == "from-env"
        assert settings.influxdb.bucket == "fallback"

    def test_environment_overrides_yaml(self, tmp_path):
        config_file = tmp_path / "bridge.yaml"
        config_file.write_text(yaml.safe_dump({"tibber": {"home_id": "yaml-home", "feed_timeout": 90}}))

        settings = load_settings(str(config_file), environ={"TIBBER_HOME_ID": "env-home"})

        assert settings.tibber.home_id == "env-home"
        assert settings.tibber.feed_timeout == 90

    def test_missing_config_file(self):
        with pytest.raises(ConfigurationError, match="Configuration file not found"):
            load_settings("/nonexistent/bridge.yaml", environ={})

    def test_invalid_value_is_configuration_error(self):
        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            load_settings(environ={"BACKFILL_PAGE_SIZE": "many"})

    def test_missing_substitution_variable(self, monkeypatch):
        monkeypatch.delenv("TEST_UNSET_VARIABLE", raising=False)

        with pytest.raises(ConfigurationError, match="TEST_UNSET_VARIABLE"):
            substitute_env_vars({"token": "${TEST_UNSET_VARIABLE}"})
