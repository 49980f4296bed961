#!/usr/bin/env python3
"""Decode hub ``execute`` calldata into its forward fields."""

from pathlib import Path
import sys

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from metarelay.core.encoding import decode_execute
from metarelay.core.forward import ForwardSchema


def decode_call(calldata: str, schema: ForwardSchema) -> None:
    """Decode the execute call data and print the details."""
    forward, payload, signature = decode_execute(calldata, schema)

    for (name, _), value in zip(schema.fields, forward):
        if isinstance(value, bytes):
            value = "0x" + value.hex()
        print(f"{name}: {value}")
    print(f"callData: 0x{payload.hex()}")
    print(f"signature: 0x{signature.hex()}")


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: decode_execute.py <calldata> [with_caller|without_caller]")
        sys.exit(1)
    decode_call(sys.argv[1], ForwardSchema.parse(sys.argv[2] if len(sys.argv) > 2 else "with_caller"))
