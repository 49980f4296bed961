#!/usr/bin/env python3
"""Debug script to inspect a forward before relaying it."""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from metarelay.cli.main import build_relayer
from metarelay.config import load_config
from metarelay.core.encoding import encode_execute
from metarelay.core.signing import verify_forward

load_dotenv()


def main() -> None:
    """Build, sign and encode a forward, then print everything without sending."""
    if len(sys.argv) < 3:
        print("usage: debug_forward.py <target> <calldata>")
        sys.exit(1)
    target, call_data = sys.argv[1], sys.argv[2]

    config = load_config()
    relayer = build_relayer(
        config=config,
        rpc_url=os.getenv("RPC_URL"),
        relayer_key=os.environ["RELAYER_PK"],
        sender_key=os.environ["SENDER_PK"],
    )

    try:
        signed = relayer.prepare_call(target, call_data)
        forward = signed.forward
        encoded = encode_execute(signed, relayer.submitter.hub_address)

        print("✅ Forward prepared!\n")
        print("=" * 60)
        print("FORWARD")
        print("=" * 60)
        print(f"\n🧾 Domain: {signed.prepared.domain.as_dict()}")
        print(f"📐 Schema: {signed.schema.value}")
        for (name, _), value in zip(signed.schema.fields, forward.to_tuple(signed.schema)):
            if isinstance(value, bytes):
                value = "0x" + value.hex()
            print(f"   {name}: {value}")
        print(f"\n✍️  Signature recovers to sender: {verify_forward(signed)}")
        print(f"🧮 Execute calldata length: {len(encoded.data)} bytes")
        print(f"   {encoded.data_hex[:100]}...")

        used = relayer.submitter.is_nonce_used(forward.from_address, forward.space, forward.nonce)
        print(f"\n🔁 Nonce already used: {used}")
        if signed.schema.has_caller:
            allowed = relayer.submitter.is_caller_allowed(forward.caller)
            print(f"🔐 Caller {forward.caller} allowed: {allowed}")

        gas = relayer.submitter.estimate_gas(encoded)
        print(f"⛽ Gas limit (buffered): {gas}")
        print("\n✅ Forward inspection complete.")
    except Exception as exc:  # pragma: no cover - debugging script
        print(f"\n❌ Error inspecting forward: {exc}")
        import traceback

        traceback.print_exc()


if __name__ == "__main__":
    main()
