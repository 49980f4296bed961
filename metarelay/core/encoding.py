"""ABI encoding of the hub ``execute`` call and of relayed payloads."""

from __future__ import annotations

import functools
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import encode as abi_encode
from web3 import Web3

from metarelay.core.errors import EncodingError, InvalidArgument
from metarelay.core.forward import ForwardSchema, Payload
from metarelay.core.signing import SignedForward
from metarelay.core.utils import get_logger, hex_to_bytes, to_bytes, to_checksum

LOGGER = get_logger("metarelay.encoding")


@dataclass(frozen=True)
class EncodedCall:
    """Calldata for the hub's ``execute`` entry point."""

    to: str
    data: bytes
    value: int
    signed: SignedForward

    @property
    def data_hex(self) -> str:
        return "0x" + self.data.hex()


def execute_abi(schema: ForwardSchema) -> Dict[str, Any]:
    """Return the ``execute(Forward, bytes, bytes)`` ABI entry for ``schema``."""
    return {
        "type": "function",
        "stateMutability": "payable",
        "name": "execute",
        "inputs": [
            {
                "name": "forward",
                "type": "tuple",
                "components": [{"name": name, "type": type_} for name, type_ in schema.fields],
            },
            {"name": "callData", "type": "bytes"},
            {"name": "signature", "type": "bytes"},
        ],
        "outputs": [],
    }


def execute_signature(schema: ForwardSchema) -> str:
    """Return the canonical signature, e.g. ``execute((address,...),bytes,bytes)``."""
    components = ",".join(type_ for _, type_ in schema.fields)
    return f"execute(({components}),bytes,bytes)"


def execute_selector(schema: ForwardSchema) -> bytes:
    return bytes(Web3.keccak(text=execute_signature(schema))[:4])


@functools.lru_cache(maxsize=2)
def _execute_contract(schema: ForwardSchema):
    return Web3().eth.contract(abi=[execute_abi(schema)])


def encode_execute(signed: SignedForward, hub_address: str, *, value: Optional[int] = None) -> EncodedCall:
    """Encode ``signed`` into calldata for ``hub_address``."""
    schema = signed.schema
    hub = to_checksum(hub_address, field_name="hub_address")
    try:
        encoded = _execute_contract(schema).encode_abi(
            "execute",
            args=[signed.forward.to_tuple(schema), signed.payload, signed.signature],
        )
    except InvalidArgument:
        raise
    except Exception as exc:
        raise EncodingError("Failed to ABI-encode execute call", cause=exc) from exc

    data = hex_to_bytes(encoded) if encoded else b""
    if not data or data[:4] != execute_selector(schema):
        raise EncodingError("Empty execute calldata")

    call_value = signed.forward.value if value is None else value
    LOGGER.debug("Encoded execute call hub=%s bytes=%s value=%s", hub, len(data), call_value)
    return EncodedCall(to=hub, data=data, value=call_value, signed=signed)


def decode_execute(data: Payload, schema: ForwardSchema) -> Tuple[Tuple[Any, ...], bytes, bytes]:
    """Decode ``execute`` calldata into ``(forward_tuple, payload, signature)``."""
    raw = to_bytes(data)
    if raw[:4] != execute_selector(schema):
        raise EncodingError(f"Calldata selector 0x{raw[:4].hex()} is not {execute_signature(schema)}")
    _, params = _execute_contract(schema).decode_function_input(raw)
    forward = params["forward"]
    if isinstance(forward, dict):
        forward = tuple(forward[name] for name, _ in schema.fields)
    return tuple(forward), bytes(params["callData"]), bytes(params["signature"])


def build_call_data(abi: Sequence[Dict[str, Any]], fn_name: str, args: Sequence[Any] = ()) -> bytes:
    """Encode a call to ``fn_name`` on any contract described by ``abi``."""
    abi_list: List[Dict[str, Any]] = list(abi) if isinstance(abi, (list, tuple)) else [abi]
    try:
        encoded = Web3().eth.contract(abi=abi_list).encode_abi(fn_name, args=list(args))
    except Exception as exc:
        raise EncodingError(f"Failed to encode call to {fn_name}", cause=exc) from exc
    if not encoded or encoded == "0x":
        raise EncodingError(f"Empty calldata for {fn_name}")
    LOGGER.debug("Encoded %s(%s) -> %s bytes", fn_name, len(args), (len(encoded) - 2) // 2)
    return hex_to_bytes(encoded)


def prepare_deploy_bytecode(
    bytecode: Payload,
    constructor_types: Sequence[str] = (),
    constructor_args: Sequence[Any] = (),
) -> bytes:
    """Append ABI-encoded constructor arguments to creation ``bytecode``."""
    code = to_bytes(bytecode, field_name="bytecode")
    if not code:
        raise InvalidArgument("contractBytecode is required")
    if len(constructor_types) != len(constructor_args):
        raise InvalidArgument("constructorTypes and constructorArgs length mismatch")
    if not constructor_args:
        return code
    return code + abi_encode(list(constructor_types), list(constructor_args))


__all__ = [
    "EncodedCall",
    "build_call_data",
    "decode_execute",
    "encode_execute",
    "execute_abi",
    "execute_selector",
    "execute_signature",
    "prepare_deploy_bytecode",
]
