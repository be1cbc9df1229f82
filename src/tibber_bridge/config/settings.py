"""Configuration settings using Pydantic for validation."""

import logging
import os
import re
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError


logger = logging.getLogger(__name__)

DEFAULT_QUERY_URL = "https://api.tibber.com/v1-beta/gql"

# Flat variable names of the deployment environment -> (section, field)
ENV_MAP: Dict[str, Tuple[str, str]] = {
    "TIBBER_ACCESS_TOKEN": ("tibber", "access_token"),
    "TIBBER_HOME_ID": ("tibber", "home_id"),
    "TIBBER_QUERY_URL": ("tibber", "query_url"),
    "TIBBER_FEED_TIMEOUT": ("tibber", "feed_timeout"),
    "TIBBER_CONNECTION_TIMEOUT": ("tibber", "connection_timeout"),
    "INFLUXDB_URL": ("influxdb", "url"),
    "INFLUXDB_TOKEN": ("influxdb", "token"),
    "INFLUXDB_ORG": ("influxdb", "org"),
    "INFLUXDB_BUCKET": ("influxdb", "bucket"),
    "INFLUXDB_MEASUREMENT": ("influxdb", "measurement"),
    "BACKFILL_ENABLED": ("backfill", "enabled"),
    "BACKFILL_FROM_DATE": ("backfill", "from_date"),
    "BACKFILL_PAGE_SIZE": ("backfill", "page_size"),
    "BACKFILL_DELAY_MS": ("backfill", "delay_ms"),
    "LOG_LEVEL": ("logging", "level"),
    "LOG_FORMAT": ("logging", "format"),
}


class TibberConfig(BaseModel):
    """Tibber API configuration."""
    model_config = ConfigDict(frozen=True)

    access_token: str = Field(default="", description="Tibber personal access token")
    home_id: str = Field(default="", description="Tibber home identifier")
    query_url: str = Field(default=DEFAULT_QUERY_URL, description="GraphQL query endpoint")
    feed_timeout: int = Field(default=60, description="Seconds without a feed message before reconnecting")
    connection_timeout: int = Field(default=30, description="Seconds to wait for the subscription ack")
    request_timeout_seconds: int = Field(default=30, description="HTTP request timeout")

    @field_validator('query_url', mode='before')
    @classmethod
    def default_query_url(cls, v):
        return v or DEFAULT_QUERY_URL

    @field_validator('feed_timeout', 'connection_timeout')
    @classmethod
    def positive_timeout(cls, v):
        if v <= 0:
            raise ValueError("Timeouts must be positive")
        return v


class InfluxConfig(BaseModel):
    """InfluxDB storage configuration."""
    model_config = ConfigDict(frozen=True)

    url: str = Field(default="http://localhost:8086", description="InfluxDB base URL")
    token: str = Field(default="", description="InfluxDB API token")
    org: Optional[str] = Field(default=None, description="InfluxDB organization (v2 only)")
    bucket: str = Field(default="tibber", description="Bucket, or database/retention for 1.8")
    measurement: str = Field(default="live_data", description="Measurement written by both ingestors")
    batch_size: int = Field(default=500, description="Points buffered before a flush")
    flush_interval_seconds: float = Field(default=10.0, description="Maximum time a point stays buffered")
    max_retries: int = Field(default=3, description="Attempts per batch before re-queueing")

    @field_validator('url')
    @classmethod
    def strip_trailing_slash(cls, v):
        if v.endswith('/'):
            logger.info(f"Removed trailing slash from InfluxDB URL: {v[:-1]}")
            return v[:-1]
        return v

    @field_validator('org', mode='before')
    @classmethod
    def empty_org_is_none(cls, v):
        return v or None


class BackfillConfig(BaseModel):
    """Historical consumption backfill configuration."""
    model_config = ConfigDict(frozen=True)

    enabled: bool = Field(default=False, description="Run the backfill alongside the live feed")
    from_date: Optional[date] = Field(default=None, description="Earliest day to backfill")
    page_size: int = Field(default=24, description="Hourly records requested per page")
    delay_ms: int = Field(default=2000, description="Pause between page requests")

    @field_validator('from_date', mode='before')
    @classmethod
    def empty_date_is_none(cls, v):
        return v or None

    @field_validator('page_size')
    @classmethod
    def validate_page_size(cls, v):
        if v < 1:
            raise ValueError("Page size must be at least 1")
        return v

    @field_validator('delay_ms')
    @classmethod
    def validate_delay(cls, v):
        if v < 0:
            raise ValueError("Delay must not be negative")
        return v

    @property
    def delay_seconds(self) -> float:
        return self.delay_ms / 1000.0

    @property
    def start_instant(self) -> Optional[datetime]:
        """Midnight UTC of the configured start day."""
        if self.from_date is None:
            return None
        return datetime.combine(self.from_date, time.min, tzinfo=timezone.utc)


class LoggingConfig(BaseModel):
    """Logging configuration."""
    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json, pretty or plain")
    output: str = Field(default="stdout", description="Log output destination")

    @field_validator('format')
    @classmethod
    def validate_format(cls, v):
        v = v.lower()
        if v not in ['json', 'pretty', 'plain']:
            raise ValueError("Log format must be 'json', 'pretty' or 'plain'")
        return v


class BridgeSettings(BaseSettings):
    """Main bridge service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    service_name: str = Field(default="tibber-influx-bridge", description="Service name")

    tibber: TibberConfig = Field(default_factory=TibberConfig)
    influxdb: InfluxConfig = Field(default_factory=InfluxConfig)
    backfill: BackfillConfig = Field(default_factory=BackfillConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def validate_required(self) -> None:
        """Raise ConfigurationError for the first missing mandatory setting."""
        if not self.tibber.access_token:
            raise ConfigurationError("TIBBER_ACCESS_TOKEN environment variable must be set")
        if not self.tibber.home_id:
            raise ConfigurationError("TIBBER_HOME_ID environment variable must be set")
        if not self.influxdb.token:
            raise ConfigurationError("INFLUXDB_TOKEN environment variable must be set")
        if self.backfill.enabled and self.backfill.from_date is None:
            raise ConfigurationError("BACKFILL_FROM_DATE must be set when BACKFILL_ENABLED is true")

    def masked(self) -> Dict[str, Any]:
        """Settings as a dict with credentials hidden, for logging."""
        data = self.model_dump(mode="json")
        for section, key in (("tibber", "access_token"), ("influxdb", "token")):
            if data[section][key]:
                data[section][key] = "****"
        return data


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ConfigurationError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)
            else:
                var_name = var_expr.strip()
                value = os.getenv(var_name)
                if value is None:
                    raise ConfigurationError(f"Required environment variable '{var_name}' is not set")
                return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def env_overrides(environ: Optional[Dict[str, str]] = None) -> Dict[str, Dict[str, str]]:
    """Collect the flat deployment variables into nested settings sections."""
    environ = os.environ if environ is None else environ
    sections: Dict[str, Dict[str, str]] = {}
    for env_name, (section, key) in ENV_MAP.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        sections.setdefault(section, {})[key] = value
    return sections


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_settings(config_file: Optional[str] = None,
                  environ: Optional[Dict[str, str]] = None) -> BridgeSettings:
    """
    Load settings from an optional YAML file and the environment.

    The config file supports environment variable substitution using ${VAR_NAME}
    syntax. The flat deployment variables (TIBBER_*, INFLUXDB_*, BACKFILL_*,
    LOG_*) take precedence over config file values.

    Raises:
        ConfigurationError: If the file is missing or a setting is invalid
    """
    config_data: Dict[str, Any] = {}

    if config_file:
        if not os.path.exists(config_file):
            raise ConfigurationError(f"Configuration file not found: {config_file}")

        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)

    config_data = _merge(config_data, env_overrides(environ))

    try:
        return BridgeSettings(**config_data)
    except ValueError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e
