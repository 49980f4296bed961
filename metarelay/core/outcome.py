"""Relay outcomes and receipt log extraction."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import rlp
from eth_abi.exceptions import DecodingError
from web3 import Web3
from web3.exceptions import InvalidEventABI, LogTopicError, MismatchedABI

from metarelay.core.signing import SignedForward
from metarelay.core.utils import get_logger, to_checksum

LOGGER = get_logger("metarelay.outcome")

DEPLOY_EVENT = "ContractDeployed"


class SubmissionState(str, Enum):
    """Lifecycle of one relayed forward."""

    BUILT = "built"
    SIGNED = "signed"
    ENCODED = "encoded"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self in (SubmissionState.CONFIRMED, SubmissionState.REVERTED, SubmissionState.SUPERSEDED)


@dataclass(frozen=True)
class ExecutionOutcome:
    """Terminal result of a relayed transaction."""

    status: SubmissionState
    tx_hash: str
    tx_nonce: int
    receipt: Optional[Mapping[str, Any]] = None
    signed: Optional[SignedForward] = None
    deployed_address: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status is SubmissionState.CONFIRMED

    @property
    def block_number(self) -> Optional[int]:
        return None if self.receipt is None else self.receipt.get("blockNumber")

    @property
    def gas_used(self) -> Optional[int]:
        return None if self.receipt is None else self.receipt.get("gasUsed")


def decode_event(log: Mapping[str, Any], event) -> Optional[Dict[str, Any]]:
    """Decode ``log`` against ``event``; ``None`` when the log is something else."""
    try:
        decoded = event.process_log(log)
    except (MismatchedABI, LogTopicError, InvalidEventABI, DecodingError, KeyError, IndexError):
        return None
    return dict(decoded["args"])


def find_event(receipt: Mapping[str, Any], event) -> Optional[Dict[str, Any]]:
    """Return the args of the first log in ``receipt`` matching ``event``."""
    for log in receipt.get("logs", []):
        args = decode_event(log, event)
        if args is not None:
            return args
    return None


def get_deployed_address(receipt: Mapping[str, Any], hub) -> Optional[str]:
    """Return the address carried by the hub's deployment event, if any."""
    args = find_event(receipt, getattr(hub.events, DEPLOY_EVENT)())
    if args is None:
        LOGGER.warning("Could not find %s event in receipt", DEPLOY_EVENT)
        return None
    address = Web3.to_checksum_address(args["deployed"])
    LOGGER.info("Deployed address: %s", address)
    return address


def compute_create_address(sender: str, counter: int) -> str:
    """Address of a contract created by ``sender`` at transaction counter ``counter``."""
    sender_bytes = bytes.fromhex(to_checksum(sender, field_name="sender")[2:])
    digest = Web3.keccak(rlp.encode([sender_bytes, counter]))
    return Web3.to_checksum_address(digest[12:])


def verify_deployment(web3: Web3, address: str) -> bool:
    """Return True when code exists at ``address``."""
    try:
        code = web3.eth.get_code(to_checksum(address, field_name="address"))
    except Exception as exc:
        LOGGER.warning("Could not read code at %s: %s", address, exc)
        return False
    return len(code) > 0


__all__ = [
    "DEPLOY_EVENT",
    "ExecutionOutcome",
    "SubmissionState",
    "compute_create_address",
    "decode_event",
    "find_event",
    "get_deployed_address",
    "verify_deployment",
]
