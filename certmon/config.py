"""
Configuration management for CertMon.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_DOMAINS = [
    "codesearch.wmcloud.org",
    "query.wikidata.org",
    "toolforge.org",
    "wmcloud.org",
]

_DURATION_PATTERN = r"^(\d+)(ms|s|m|h|d)$"
_DURATION_MULTIPLIERS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def _parse_bool(value: str) -> bool:
    return value.lower() in ("true", "1", "yes")


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Config(BaseModel):
    """Configuration model for CertMon."""

    # Monitored domains
    domains: List[str] = Field(default_factory=lambda: list(DEFAULT_DOMAINS))

    # Server settings
    port: int = Field(default=8080, ge=1, le=65535)
    bind_address: str = Field(default="0.0.0.0")  # nosec B104

    # TLS settings for the status/metrics endpoints
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None

    # Probe settings
    probe_interval: str = Field(default="10s")
    probe_jitter: str = Field(default="5000ms")
    probe_timeout: str = Field(default="10s")
    probe_port: int = Field(default=443, ge=1, le=65535)
    workers: int = Field(default=4, ge=1, le=64)

    # Status page
    stale_after: str = Field(default="1h")
    unknown_first: bool = Field(default=True)

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = None

    # Operation modes
    dry_run: bool = Field(default=False)

    @field_validator("domains")
    @classmethod
    def validate_domains(cls, v: List[str]) -> List[str]:
        """Strip whitespace, drop empty entries and collapse duplicates."""
        seen = set()
        domains = []
        for domain in v:
            domain = domain.strip()
            if not domain:
                continue
            if domain in seen:
                logging.warning(f"Ignoring duplicate domain: {domain}")
                continue
            seen.add(domain)
            domains.append(domain)

        if not domains:
            raise ValueError("At least one domain must be configured")
        return domains

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @field_validator("probe_interval", "probe_jitter", "probe_timeout", "stale_after")
    @classmethod
    def validate_duration(cls, v: str) -> str:
        """Validate duration format (e.g., '500ms', '10s', '5m', '1h')."""
        if not v:
            raise ValueError("Duration cannot be empty")

        if not re.match(_DURATION_PATTERN, v):
            raise ValueError("Duration must be in format like '500ms', '30s', '5m', '1h', '1d'")
        return v

    def parse_duration_seconds(self, duration: str) -> float:
        """Parse duration string to seconds."""
        match = re.match(_DURATION_PATTERN, duration)
        if not match:
            raise ValueError(f"Invalid duration format: {duration}")

        value, unit = match.groups()
        return int(value) * _DURATION_MULTIPLIERS[unit]

    @property
    def probe_interval_seconds(self) -> float:
        """Get the base interval between probes in seconds."""
        return self.parse_duration_seconds(self.probe_interval)

    @property
    def probe_jitter_ms(self) -> int:
        """Get the upper bound of the pre-probe jitter in milliseconds."""
        return int(round(self.parse_duration_seconds(self.probe_jitter) * 1000))

    @property
    def probe_timeout_seconds(self) -> float:
        """Get the connect/handshake timeout in seconds."""
        return self.parse_duration_seconds(self.probe_timeout)

    @property
    def stale_after_seconds(self) -> float:
        """Get the age after which a successful probe is considered stale."""
        return self.parse_duration_seconds(self.stale_after)


def load_config(config_path: Optional[str] = None) -> Config:
    """
    Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Config object
    """
    config_data: Dict[str, Any] = {}

    if config_path:
        config_file = Path(config_path)
        if config_file.exists():
            with open(config_file, "r", encoding="utf-8") as f:
                config_data = yaml.safe_load(f) or {}
        else:
            raise FileNotFoundError(f"Configuration file not found: {config_path}")

    env_overrides = _get_env_overrides()
    config_data.update(env_overrides)

    return Config(**config_data)


def _get_env_overrides() -> dict:
    """Get configuration overrides from environment variables."""
    env_mapping: Dict[str, tuple[str, Callable[[str], Any]]] = {
        "CERTMON_PORT": ("port", int),
        "CERTMON_BIND_ADDRESS": ("bind_address", str),
        "CERTMON_TLS_CERT": ("tls_cert", str),
        "CERTMON_TLS_KEY": ("tls_key", str),
        "CERTMON_PROBE_INTERVAL": ("probe_interval", str),
        "CERTMON_PROBE_JITTER": ("probe_jitter", str),
        "CERTMON_PROBE_TIMEOUT": ("probe_timeout", str),
        "CERTMON_PROBE_PORT": ("probe_port", int),
        "CERTMON_WORKERS": ("workers", int),
        "CERTMON_STALE_AFTER": ("stale_after", str),
        "CERTMON_UNKNOWN_FIRST": ("unknown_first", _parse_bool),
        "CERTMON_LOG_LEVEL": ("log_level", str),
        "CERTMON_LOG_FILE": ("log_file", str),
        "CERTMON_DRY_RUN": ("dry_run", _parse_bool),
    }

    overrides = {}

    # Plain PORT is honoured for hosting platforms that inject it
    port = os.getenv("PORT")
    if port:
        try:
            overrides["port"] = int(port)
        except ValueError as e:
            logging.warning(f"Invalid value for PORT: {port} - {e}")

    for env_var, (config_key, converter) in env_mapping.items():
        value = os.getenv(env_var)
        if value is not None:
            try:
                overrides[config_key] = converter(value)
            except (ValueError, TypeError) as e:
                logging.warning(f"Invalid value for {env_var}: {value} - {e}")

    domains = os.getenv("CERTMON_DOMAINS")
    if domains:
        overrides["domains"] = _split_list(domains)

    return overrides


def create_example_config(output_path: str = "config.example.yaml") -> None:
    """Create an example configuration file."""
    example_config = {
        "domains": list(DEFAULT_DOMAINS),
        "port": 8080,
        "bind_address": "0.0.0.0",  # nosec B104
        "probe_interval": "10s",
        "probe_jitter": "5000ms",
        "probe_timeout": "10s",
        "probe_port": 443,
        "workers": 4,
        "stale_after": "1h",
        "unknown_first": True,
        "log_level": "INFO",
        "dry_run": False,
    }

    with open(output_path, "w", encoding="utf-8") as f:
        yaml.dump(example_config, f, default_flow_style=False, sort_keys=False)
