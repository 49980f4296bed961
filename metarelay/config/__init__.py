"""Configuration utilities for metarelay."""

from .loader import (
    ChainConfig,
    ConfigError,
    DefaultsConfig,
    HubConfig,
    RelayerConfig,
    load_config,
    parse_config,
)

__all__ = [
    "ChainConfig",
    "ConfigError",
    "DefaultsConfig",
    "HubConfig",
    "RelayerConfig",
    "load_config",
    "parse_config",
]
