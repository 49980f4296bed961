"""Utility helpers shared across metarelay core modules."""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar, Union

import requests
from web3 import Web3

from metarelay.core.errors import InvalidArgument

T = TypeVar("T")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Transport failures a read-only query may be retried on.
TRANSIENT_ERRORS = (requests.exceptions.ConnectionError, requests.exceptions.Timeout, ConnectionError, TimeoutError)


def get_logger(name: str = "metarelay") -> logging.Logger:
    """Return a configured logger that prints to stdout."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
    return logger


LOGGER = get_logger("metarelay.utils")


def ensure_web3_connected(web3: Web3, *, expected_chain_id: Optional[int] = None) -> None:
    """Validate that ``web3`` is connected and optionally matches the expected chain id."""
    if not web3.is_connected():
        raise ConnectionError("Failed to connect to the configured RPC endpoint")
    if expected_chain_id is not None and web3.eth.chain_id != expected_chain_id:
        raise ValueError(f"RPC chain ID mismatch: expected {expected_chain_id}, got {web3.eth.chain_id}")


def hex_to_bytes(data: str) -> bytes:
    """Convert a hex string (with or without ``0x``) to bytes."""
    data = data[2:] if data.startswith("0x") else data
    return bytes.fromhex(data)


def to_bytes(data: Union[str, bytes, bytearray], *, field_name: str = "data") -> bytes:
    """Normalize hex strings and bytes-likes into ``bytes``."""
    if isinstance(data, (bytes, bytearray)):
        return bytes(data)
    if isinstance(data, str):
        try:
            return hex_to_bytes(data)
        except ValueError as exc:
            raise InvalidArgument(f"{field_name} is not valid hex: {data[:20]}...", cause=exc) from exc
    raise InvalidArgument(f"{field_name} must be bytes or a hex string, got {type(data).__name__}")


def to_checksum(value: Optional[str], *, field_name: str) -> str:
    """Checksum ``value`` or raise ``InvalidArgument`` for malformed addresses."""
    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidArgument(f"Invalid address for {field_name}: {value}")
    return Web3.to_checksum_address(value)


def call_with_retries(
    fn: Callable[[], T],
    *,
    attempts: int = 3,
    backoff_factor: float = 0.5,
    description: str = "read",
) -> T:
    """Run an idempotent read, retrying on transient transport failures only."""
    attempt = 0
    while True:
        try:
            return fn()
        except TRANSIENT_ERRORS as exc:
            attempt += 1
            if attempt >= attempts:
                LOGGER.error("%s failed after %s attempts: %s", description, attempt, exc)
                raise
            wait_time = backoff_factor * (2 ** (attempt - 1))
            LOGGER.warning("Retrying %s after %ss due to transport error: %s", description, wait_time, exc)
            time.sleep(wait_time)


__all__ = [
    "TRANSIENT_ERRORS",
    "ZERO_ADDRESS",
    "call_with_retries",
    "ensure_web3_connected",
    "get_logger",
    "hex_to_bytes",
    "to_bytes",
    "to_checksum",
]
