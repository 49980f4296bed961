"""Forward request construction.

A ``ForwardRequest`` is the record a principal signs to let a relayer submit
one operation on their behalf. The record binds the payload by hash only, so
the payload bytes kept in ``PreparedForward`` must be exactly the bytes that
are later submitted next to the signature.
"""

from __future__ import annotations

import secrets
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from web3 import Web3

from metarelay.core.errors import InvalidArgument
from metarelay.core.utils import ZERO_ADDRESS, call_with_retries, get_logger, to_bytes, to_checksum

LOGGER = get_logger("metarelay.forward")

UINT32_MAX = 2**32 - 1
UINT256_MAX = 2**256 - 1
DEFAULT_DEADLINE_SEC = 600
DEFAULT_DOMAIN_NAME = "PermissionedMetaTxHub"
DEFAULT_DOMAIN_VERSION = "1"

# Wire order of the Forward struct. Signing and encoding both read it from here.
_BASE_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("from", "address"),
    ("to", "address"),
    ("value", "uint256"),
    ("space", "uint32"),
    ("nonce", "uint256"),
    ("deadline", "uint256"),
    ("dataHash", "bytes32"),
)
_CALLER_FIELD = ("caller", "address")

Payload = Union[str, bytes, bytearray]


class ForwardSchema(str, Enum):
    """Forward struct variant a hub deployment verifies against."""

    WITH_CALLER = "with_caller"
    WITHOUT_CALLER = "without_caller"

    @property
    def has_caller(self) -> bool:
        return self is ForwardSchema.WITH_CALLER

    @property
    def fields(self) -> Tuple[Tuple[str, str], ...]:
        if self.has_caller:
            return _BASE_FIELDS + (_CALLER_FIELD,)
        return _BASE_FIELDS

    def eip712_types(self) -> Dict[str, List[Dict[str, str]]]:
        return {"Forward": [{"name": name, "type": type_} for name, type_ in self.fields]}

    @classmethod
    def parse(cls, value: Union[str, "ForwardSchema"]) -> "ForwardSchema":
        try:
            return cls(value)
        except ValueError as exc:
            options = ", ".join(member.value for member in cls)
            raise InvalidArgument(f"Unknown forward schema {value!r}, expected one of: {options}") from exc


@dataclass(frozen=True)
class TypedDataDomain:
    """EIP-712 domain of the verifying hub."""

    name: str
    version: str
    chain_id: int
    verifying_contract: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "chainId": self.chain_id,
            "verifyingContract": self.verifying_contract,
        }


@dataclass(frozen=True)
class ForwardRequest:
    """The authorization record signed by ``from_address``."""

    from_address: str
    to: str
    value: int
    space: int
    nonce: int
    deadline: int
    data_hash: bytes
    caller: Optional[str] = None

    @property
    def is_deployment(self) -> bool:
        return self.to == ZERO_ADDRESS

    def to_message(self, schema: ForwardSchema) -> Dict[str, Any]:
        """Return the EIP-712 message for ``schema``."""
        if schema.has_caller and self.caller is None:
            raise InvalidArgument("Forward schema with_caller requires a caller address")
        values = {
            "from": self.from_address,
            "to": self.to,
            "value": self.value,
            "space": self.space,
            "nonce": self.nonce,
            "deadline": self.deadline,
            "dataHash": self.data_hash,
            "caller": self.caller,
        }
        return {name: values[name] for name, _ in schema.fields}

    def to_tuple(self, schema: ForwardSchema) -> Tuple[Any, ...]:
        """Return the ordered ABI tuple for ``schema``."""
        message = self.to_message(schema)
        return tuple(message[name] for name, _ in schema.fields)


@dataclass(frozen=True)
class PreparedForward:
    """A built forward together with the payload and domain it was built for."""

    forward: ForwardRequest
    payload: bytes
    domain: TypedDataDomain
    schema: ForwardSchema

    @property
    def data_hash_hex(self) -> str:
        return "0x" + self.forward.data_hash.hex()


def payload_hash(payload: Payload) -> bytes:
    """Return keccak256 of the payload bytes."""
    return bytes(Web3.keccak(to_bytes(payload, field_name="payload")))


def generate_nonce() -> int:
    """Return a time-prefixed random nonce.

    The high bits carry the current UNIX time and the low 128 bits are random,
    so concurrent requests for the same ``(from, space)`` never collide in
    practice. Values are not sequential.
    """
    return (int(time.time()) << 128) | secrets.randbits(128)


class NonceRegistry:
    """Process-local record of ``(from, space, nonce)`` triples already built."""

    def __init__(self, max_entries: int = 10_000) -> None:
        self._max_entries = max_entries
        self._claimed: "OrderedDict[Tuple[str, int, int], None]" = OrderedDict()
        self._lock = threading.Lock()

    def claim(self, from_address: str, space: int, nonce: int) -> None:
        key = (from_address.lower(), space, nonce)
        with self._lock:
            if key in self._claimed:
                raise InvalidArgument(f"Nonce {nonce} already used for {from_address} in space {space}")
            self._claimed[key] = None
            if len(self._claimed) > self._max_entries:
                self._claimed.popitem(last=False)

    def __contains__(self, key: Tuple[str, int, int]) -> bool:
        from_address, space, nonce = key
        with self._lock:
            return (from_address.lower(), space, nonce) in self._claimed

    def __len__(self) -> int:
        with self._lock:
            return len(self._claimed)


def _require_int(value: Any, *, field_name: str, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{field_name} must be an integer, got {type(value).__name__}")
    if value < 0 or value > maximum:
        raise InvalidArgument(f"{field_name} out of range: {value}")
    return value


class ForwardBuilder:
    """Builds ``PreparedForward`` records for one hub deployment."""

    def __init__(
        self,
        web3: Web3,
        hub_address: str,
        *,
        domain_name: str = DEFAULT_DOMAIN_NAME,
        domain_version: str = DEFAULT_DOMAIN_VERSION,
        schema: Union[str, ForwardSchema] = ForwardSchema.WITH_CALLER,
        deadline_sec: int = DEFAULT_DEADLINE_SEC,
        registry: Optional[NonceRegistry] = None,
        read_retries: int = 3,
    ) -> None:
        self.web3 = web3
        self.hub_address = to_checksum(hub_address, field_name="hub_address")
        if self.hub_address == ZERO_ADDRESS:
            raise InvalidArgument("Invalid hub_address: zero address")
        self.domain_name = domain_name
        self.domain_version = domain_version
        self.schema = ForwardSchema.parse(schema)
        self.deadline_sec = deadline_sec
        self.registry = registry
        self.read_retries = read_retries
        self._chain_id: Optional[int] = None

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(
                call_with_retries(
                    lambda: self.web3.eth.chain_id,
                    attempts=self.read_retries,
                    description="chain id lookup",
                )
            )
        return self._chain_id

    def domain(self) -> TypedDataDomain:
        return TypedDataDomain(
            name=self.domain_name,
            version=self.domain_version,
            chain_id=self.chain_id,
            verifying_contract=self.hub_address,
        )

    def build(
        self,
        *,
        from_address: str,
        to: str,
        payload: Payload,
        nonce: Optional[int],
        value: int = 0,
        space: int = 0,
        deadline: Optional[int] = None,
        deadline_sec: Optional[int] = None,
        caller: Optional[str] = None,
    ) -> PreparedForward:
        """Build a forward binding ``payload`` and compute its ``dataHash``."""
        if nonce is None:
            raise InvalidArgument("The parameter 'nonce' is required")
        nonce = _require_int(nonce, field_name="nonce", maximum=UINT256_MAX)
        value = _require_int(value, field_name="value", maximum=UINT256_MAX)
        space = _require_int(space, field_name="space", maximum=UINT32_MAX)

        payload_bytes = to_bytes(payload, field_name="payload")
        if not payload_bytes:
            raise InvalidArgument("Empty payload")

        sender = to_checksum(from_address, field_name="from")
        target = to_checksum(to, field_name="to")

        if self.schema.has_caller:
            if caller is None:
                raise InvalidArgument("caller is required by the with_caller forward schema")
            caller = to_checksum(caller, field_name="caller")
        elif caller is not None:
            LOGGER.warning("Ignoring caller %s: forward schema %s has no caller field", caller, self.schema.value)
            caller = None

        now = int(time.time())
        if deadline is None:
            window = deadline_sec if deadline_sec is not None else self.deadline_sec
            deadline = now + int(window)
        deadline = _require_int(deadline, field_name="deadline", maximum=UINT256_MAX)
        if deadline <= now:
            LOGGER.warning("Forward deadline %s is not in the future (now=%s); the hub will reject it", deadline, now)

        domain = self.domain()

        if self.registry is not None:
            self.registry.claim(sender, space, nonce)

        forward = ForwardRequest(
            from_address=sender,
            to=target,
            value=value,
            space=space,
            nonce=nonce,
            deadline=deadline,
            data_hash=payload_hash(payload_bytes),
            caller=caller,
        )
        LOGGER.debug(
            "Built forward from=%s to=%s space=%s nonce=%s deadline=%s dataHash=0x%s",
            forward.from_address,
            forward.to,
            forward.space,
            forward.nonce,
            forward.deadline,
            forward.data_hash.hex(),
        )
        return PreparedForward(forward=forward, payload=payload_bytes, domain=domain, schema=self.schema)


__all__ = [
    "DEFAULT_DEADLINE_SEC",
    "DEFAULT_DOMAIN_NAME",
    "DEFAULT_DOMAIN_VERSION",
    "ForwardBuilder",
    "ForwardRequest",
    "ForwardSchema",
    "NonceRegistry",
    "PreparedForward",
    "TypedDataDomain",
    "generate_nonce",
    "payload_hash",
]
