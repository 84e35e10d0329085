"""
Configuration management for the Hitachi Pool Capacity Report.

This module handles loading and validating connection parameters
for the Hitachi Configuration Manager REST API, together with the
report settings that the engine, row builder and renderers consume.

A single HitachiConfig value is built once at startup and passed
explicitly into every component.
"""

import json
import os
from dataclasses import dataclass, replace
from typing import Optional


OUTPUT_STYLES = ('stdout', 'csv')
REPORT_TYPES = ('pool', 'reserve')
UNCLASSIFIED_POLICIES = ('skip', 'error')
MISSING_FIELD_POLICIES = ('abort', 'skip')

# Maximum number of elements the REST API returns in one response
MAX_ELEMENT_COUNT = 16348


@dataclass(frozen=True)
class HitachiConfig:
    """Configuration for a Configuration Manager connection and report run."""

    username: str
    password: str
    host: str = 'localhost'
    port: int = 443
    protocol: str = 'https'
    verify_ssl: bool = False
    timeout: float = 30.0
    output_style: str = 'stdout'
    report_type: str = 'pool'
    storage_device_id: Optional[str] = None
    round_precision: int = 2
    max_element_count: int = MAX_ELEMENT_COUNT
    min_api_version: str = '1.5.0'
    data_element: str = 'data'
    element_start: str = 'Hitachi-Element-Start'
    element_end: str = 'Hitachi-Element-End'
    csv_separator: str = ','
    unclassified_pool_policy: str = 'skip'
    missing_field_policy: str = 'abort'

    @property
    def base_url(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    def validate(self) -> None:
        """Validate required configuration parameters."""
        if not self.host:
            raise ValueError("Host is required")
        if not self.username:
            raise ValueError("You must specify a user for your request")
        if not self.password:
            raise ValueError("You must specify a password for your request")
        if not isinstance(self.port, int) or self.port <= 0:
            raise ValueError("Port must be a positive integer")
        if self.protocol not in ('http', 'https'):
            raise ValueError(
                "The protocol specified is not correct. "
                "The only available options are 'http' or 'https'."
            )
        if self.output_style not in OUTPUT_STYLES:
            raise ValueError(
                f"The output type '{self.output_style}' is not valid. "
                f"Please specify one of {', '.join(OUTPUT_STYLES)}."
            )
        if self.report_type not in REPORT_TYPES:
            raise ValueError(
                f"The type '{self.report_type}' is not valid. "
                f"Please specify one of {', '.join(REPORT_TYPES)}."
            )
        if self.unclassified_pool_policy not in UNCLASSIFIED_POLICIES:
            raise ValueError(
                f"Unknown unclassified pool policy: {self.unclassified_pool_policy}"
            )
        if self.missing_field_policy not in MISSING_FIELD_POLICIES:
            raise ValueError(
                f"Unknown missing field policy: {self.missing_field_policy}"
            )
        if self.round_precision < 0:
            raise ValueError("Round precision must not be negative")
        if not 0 < self.max_element_count <= MAX_ELEMENT_COUNT:
            raise ValueError(
                f"Max element count must be between 1 and {MAX_ELEMENT_COUNT}"
            )
        if self.element_start == self.element_end:
            raise ValueError("Element start and end markers must differ")

    def with_overrides(self, **overrides) -> 'HitachiConfig':
        """
        Return a validated copy with the given fields replaced.

        Overrides whose value is None are ignored so that unset
        command line flags keep the loaded value.
        """
        changes = {k: v for k, v in overrides.items() if v is not None}
        config = replace(self, **changes)
        config.validate()
        return config


def load_config(config_path: str = "config.json") -> HitachiConfig:
    """
    Load configuration from JSON file.

    Args:
        config_path: Path to the configuration file

    Returns:
        HitachiConfig object with validated parameters

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If configuration is invalid
        json.JSONDecodeError: If JSON is malformed
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(
            f"Configuration file not found: {config_path}\n"
            f"Please create {config_path} based on config.example.json"
        )

    with open(config_path, 'r') as f:
        config_data = json.load(f)

    config = HitachiConfig(
        host=config_data.get('host', 'localhost'),
        port=config_data.get('port', 443),
        username=config_data.get('username', ''),
        password=config_data.get('password', ''),
        protocol=config_data.get('protocol', 'https'),
        verify_ssl=config_data.get('verify_ssl', False),
        timeout=float(config_data.get('timeout', 30.0)),
        output_style=config_data.get('output', 'stdout'),
        report_type=config_data.get('type', 'pool'),
        storage_device_id=config_data.get('storage_device_id'),
        unclassified_pool_policy=config_data.get('unclassified_pool_policy', 'skip'),
        missing_field_policy=config_data.get('missing_field_policy', 'abort'),
    )

    config.validate()
    return config


def load_config_from_env() -> HitachiConfig:
    """
    Load configuration from environment variables.

    Expected environment variables:
    - HITACHI_HOST (default: localhost)
    - HITACHI_PORT (default: 443)
    - HITACHI_USER
    - HITACHI_PASSWORD
    - HITACHI_PROTOCOL (default: https)
    - HITACHI_VERIFY_SSL (default: false)
    - HITACHI_STORAGE_DEVICE_ID (optional)

    Returns:
        HitachiConfig object with validated parameters

    Raises:
        ValueError: If required environment variables are missing
    """
    config = HitachiConfig(
        host=os.environ.get('HITACHI_HOST', 'localhost'),
        port=int(os.environ.get('HITACHI_PORT', '443')),
        username=os.environ.get('HITACHI_USER', ''),
        password=os.environ.get('HITACHI_PASSWORD', ''),
        protocol=os.environ.get('HITACHI_PROTOCOL', 'https'),
        verify_ssl=os.environ.get('HITACHI_VERIFY_SSL', 'false').lower() == 'true',
        storage_device_id=os.environ.get('HITACHI_STORAGE_DEVICE_ID') or None,
    )

    config.validate()
    return config
