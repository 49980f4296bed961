"""Config loader for metarelay."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, MutableMapping, Optional

from web3 import Web3

from metarelay.core.forward import (
    DEFAULT_DEADLINE_SEC,
    DEFAULT_DOMAIN_NAME,
    DEFAULT_DOMAIN_VERSION,
    ForwardSchema,
)


class ConfigError(ValueError):
    """Raised when configuration data is invalid or missing."""


def _require_keys(data: Mapping[str, Any], keys: Iterable[str], context: str) -> None:
    missing = [key for key in keys if key not in data]
    if missing:
        raise ConfigError(f"{context} missing required keys: {', '.join(missing)}")


def _to_checksum(value: str, *, field_name: str) -> str:
    try:
        return Web3.to_checksum_address(value)
    except Exception as exc:  # web3 raises ValueError for malformed inputs
        raise ConfigError(f"Invalid address for {field_name}: {value}") from exc


@dataclass(frozen=True)
class ChainConfig:
    """Configuration for the network the hub lives on."""

    chain_id: int
    rpc_url: Optional[str] = None

    def ensure_rpc_url(self) -> str:
        """Return the RPC URL or raise if it is missing."""
        if not self.rpc_url:
            raise ConfigError("RPC URL required but not configured")
        return self.rpc_url


@dataclass(frozen=True)
class HubConfig:
    """The verifying hub and the forward schema it expects."""

    address: str
    domain_name: str = DEFAULT_DOMAIN_NAME
    domain_version: str = DEFAULT_DOMAIN_VERSION
    schema: ForwardSchema = ForwardSchema.WITH_CALLER
    check_allowlist: bool = True


@dataclass(frozen=True)
class DefaultsConfig:
    """Default operational parameters."""

    deadline_sec: int = DEFAULT_DEADLINE_SEC
    gas_buffer: float = 1.1
    confirmation_timeout: float = 120.0
    poll_interval: float = 0.5
    fee_bump_percent: int = 0
    read_retries: int = 3


@dataclass(frozen=True)
class RelayerConfig:
    """Typed wrapper around the relayer configuration."""

    chain: ChainConfig
    hub: HubConfig
    defaults: DefaultsConfig
    raw: Mapping[str, Any] = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        """Return the original configuration mapping."""
        return dict(self.raw)


def _load_json(path: Path) -> MutableMapping[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file contains invalid JSON: {path}") from exc


def _parse_schema(value: Any) -> ForwardSchema:
    try:
        return ForwardSchema(value)
    except ValueError as exc:
        options = ", ".join(member.value for member in ForwardSchema)
        raise ConfigError(f"hub.schema must be one of: {options} (got {value!r})") from exc


def _parse_defaults(defaults: Mapping[str, Any]) -> DefaultsConfig:
    base = DefaultsConfig()
    try:
        config = DefaultsConfig(
            deadline_sec=int(defaults.get("deadline_sec", base.deadline_sec)),
            gas_buffer=float(defaults.get("gas_buffer", base.gas_buffer)),
            confirmation_timeout=float(defaults.get("confirmation_timeout", base.confirmation_timeout)),
            poll_interval=float(defaults.get("poll_interval", base.poll_interval)),
            fee_bump_percent=int(defaults.get("fee_bump_percent", base.fee_bump_percent)),
            read_retries=int(defaults.get("read_retries", base.read_retries)),
        )
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"defaults contains a non-numeric value: {exc}") from exc

    if config.deadline_sec <= 0:
        raise ConfigError("defaults.deadline_sec must be positive")
    if config.gas_buffer < 1:
        raise ConfigError("defaults.gas_buffer must be at least 1")
    if config.confirmation_timeout <= 0:
        raise ConfigError("defaults.confirmation_timeout must be positive")
    if config.poll_interval <= 0:
        raise ConfigError("defaults.poll_interval must be positive")
    if config.fee_bump_percent < 0:
        raise ConfigError("defaults.fee_bump_percent cannot be negative")
    if config.read_retries < 1:
        raise ConfigError("defaults.read_retries must be at least 1")
    return config


def parse_config(data: Mapping[str, Any]) -> RelayerConfig:
    """Validate an already-loaded configuration mapping."""
    _require_keys(data, ["chain", "hub"], "config")

    chain_data = data["chain"]
    _require_keys(chain_data, ["chain_id"], "chain")
    chain = ChainConfig(chain_id=int(chain_data["chain_id"]), rpc_url=chain_data.get("rpc_url"))

    hub_data = data["hub"]
    _require_keys(hub_data, ["address"], "hub")
    hub_address = _to_checksum(hub_data["address"], field_name="hub.address")
    if int(hub_address, 16) == 0:
        raise ConfigError("hub.address cannot be the zero address")
    hub = HubConfig(
        address=hub_address,
        domain_name=str(hub_data.get("domain_name", DEFAULT_DOMAIN_NAME)),
        domain_version=str(hub_data.get("domain_version", DEFAULT_DOMAIN_VERSION)),
        schema=_parse_schema(hub_data.get("schema", ForwardSchema.WITH_CALLER.value)),
        check_allowlist=bool(hub_data.get("check_allowlist", True)),
    )

    return RelayerConfig(
        chain=chain,
        hub=hub,
        defaults=_parse_defaults(data.get("defaults", {})),
        raw=data,
    )


def load_config(config_path: Optional[Path] = None) -> RelayerConfig:
    """Load and validate relayer configuration data."""
    config_path = config_path or Path("config.json")
    return parse_config(_load_json(config_path))


__all__ = [
    "ChainConfig",
    "ConfigError",
    "DefaultsConfig",
    "HubConfig",
    "RelayerConfig",
    "load_config",
    "parse_config",
]
