"""CLI entrypoint for relaying meta-transactions through a hub."""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Callable, List, Optional

from dotenv import load_dotenv
from eth_account import Account
from web3 import Web3

from metarelay.config import RelayerConfig, load_config
from metarelay.core.forward import ForwardBuilder, NonceRegistry
from metarelay.core.outcome import ExecutionOutcome, verify_deployment
from metarelay.core.relayer import MetaTxRelayer, RelayOptions
from metarelay.core.signing import SignedForward
from metarelay.core.submitter import GasPolicy, RelaySubmitter, ReplacementPolicy
from metarelay.core.utils import ensure_web3_connected, get_logger, hex_to_bytes

LOGGER = get_logger("metarelay.cli")

load_dotenv()


def build_relayer(
    *,
    config: RelayerConfig,
    rpc_url: Optional[str],
    relayer_key: str,
    sender_key: str,
    gas_price: Optional[int] = None,
    web3_factory: Callable[[str], Web3] = lambda url: Web3(Web3.HTTPProvider(url)),
) -> MetaTxRelayer:
    """Wire builder, submitter and sender from configuration."""
    resolved_rpc = rpc_url or config.chain.ensure_rpc_url()
    web3 = web3_factory(resolved_rpc)

    ensure_web3_connected(web3, expected_chain_id=config.chain.chain_id)

    relayer_account = Account.from_key(relayer_key)
    sender_account = Account.from_key(sender_key)
    LOGGER.info(
        "Connected to chain %s as relayer %s for sender %s",
        config.chain.chain_id,
        relayer_account.address,
        sender_account.address,
    )

    defaults = config.defaults
    builder = ForwardBuilder(
        web3,
        config.hub.address,
        domain_name=config.hub.domain_name,
        domain_version=config.hub.domain_version,
        schema=config.hub.schema,
        deadline_sec=defaults.deadline_sec,
        registry=NonceRegistry(),
        read_retries=defaults.read_retries,
    )
    submitter = RelaySubmitter(
        web3,
        relayer_account,
        config.hub.address,
        schema=config.hub.schema,
        gas_policy=GasPolicy(gas_buffer=defaults.gas_buffer, gas_price=gas_price),
        replacement=ReplacementPolicy(fee_bump_percent=defaults.fee_bump_percent),
        check_allowlist=config.hub.check_allowlist,
        confirmation_timeout=defaults.confirmation_timeout,
        poll_interval=defaults.poll_interval,
        read_retries=defaults.read_retries,
    )
    return MetaTxRelayer(builder, submitter, sender_account)


def _read_bytecode(args: argparse.Namespace) -> bytes:
    if args.bytecode_file:
        text = Path(args.bytecode_file).read_text(encoding="utf-8").strip()
        try:
            text = json.loads(text)["bytecode"]
        except (ValueError, KeyError, TypeError):
            pass  # plain hex file
        return hex_to_bytes(text)
    return hex_to_bytes(args.bytecode)


def _log_signed(signed: SignedForward) -> None:
    forward = signed.forward
    LOGGER.info(
        "Forward from=%s to=%s value=%s space=%s nonce=%s deadline=%s dataHash=%s",
        forward.from_address,
        forward.to,
        forward.value,
        forward.space,
        forward.nonce,
        forward.deadline,
        signed.prepared.data_hash_hex,
    )


def _report(outcome: ExecutionOutcome) -> None:
    print(f"Status: {outcome.status.value}")
    print(f"Transaction hash: {outcome.tx_hash}")
    print(f"Relayer counter: {outcome.tx_nonce}")
    if outcome.block_number is not None:
        print(f"Block: {outcome.block_number} (gasUsed={outcome.gas_used})")
    if outcome.deployed_address:
        print(f"Deployed address: {outcome.deployed_address}")


def _options(args: argparse.Namespace) -> RelayOptions:
    return RelayOptions(gas_limit=args.gas_limit, tx_nonce=args.tx_nonce, timeout=args.timeout)


def _run_execute(relayer: MetaTxRelayer, args: argparse.Namespace) -> int:
    signed = relayer.prepare_call(
        args.target,
        args.data,
        value=args.value,
        space=args.space,
        nonce=args.nonce,
        deadline_sec=args.deadline_sec,
    )
    _log_signed(signed)
    if args.dry_run:
        result = relayer.simulate(signed)
        print(f"✅ Simulation succeeded: 0x{result.hex()}")
        return 0
    outcome = relayer.relay(signed, _options(args))
    _report(outcome)
    return 0 if outcome.success else 1


def _run_deploy(relayer: MetaTxRelayer, args: argparse.Namespace) -> int:
    signed = relayer.prepare_deploy(
        _read_bytecode(args),
        constructor_types=args.constructor_types,
        constructor_args=json.loads(args.constructor_args) if args.constructor_args else [],
        space=args.space,
        nonce=args.nonce,
        deadline_sec=args.deadline_sec,
    )
    _log_signed(signed)
    if args.dry_run:
        relayer.simulate(signed)
        print("✅ Simulation succeeded")
        return 0
    outcome = relayer.relay(signed, _options(args))
    _report(outcome)
    if outcome.deployed_address and not verify_deployment(relayer.submitter.web3, outcome.deployed_address):
        print("⚠️  No code found at the deployed address")
    return 0 if outcome.success else 1


def _run_nonce_used(relayer: MetaTxRelayer, args: argparse.Namespace) -> int:
    used = relayer.submitter.is_nonce_used(args.from_address, args.space, args.nonce)
    print(f"Nonce {args.nonce} in space {args.space} for {args.from_address}: {'used' if used else 'unused'}")
    return 0


def _run_caller_allowed(relayer: MetaTxRelayer, args: argparse.Namespace) -> int:
    caller = args.caller or relayer.submitter.address
    allowed = relayer.submitter.is_caller_allowed(caller)
    print(f"Caller {caller}: {'allowed' if allowed else 'NOT allowed'}")
    return 0


def _add_forward_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--space", type=int, default=0, help="Nonce space of the forward")
    parser.add_argument("--nonce", type=int, help="Forward nonce (random when omitted)")
    parser.add_argument("--deadline-sec", type=int, help="Seconds until the forward expires")
    parser.add_argument("--gas-limit", type=int, help="Gas limit (estimated when omitted)")
    parser.add_argument("--tx-nonce", type=int, help="Relayer transaction counter override")
    parser.add_argument("--timeout", type=float, help="Seconds to wait for confirmation")
    parser.add_argument("--dry-run", action="store_true", help="Simulate without sending")


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Relay meta-transactions through a PermissionedMetaTxHub")
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    parser.add_argument("--gas-price", type=int, default=None, help="Legacy gas price in wei (0 on gasless networks)")
    sub = parser.add_subparsers(dest="command", required=True)

    execute = sub.add_parser("execute", help="Relay a call to a target contract")
    execute.add_argument("--target", required=True, help="Target contract address")
    execute.add_argument("--data", required=True, help="Hex-encoded call data")
    execute.add_argument("--value", type=int, default=0, help="Native value to forward in wei")
    _add_forward_args(execute)

    deploy = sub.add_parser("deploy", help="Relay a contract deployment")
    source = deploy.add_mutually_exclusive_group(required=True)
    source.add_argument("--bytecode", help="Hex-encoded creation bytecode")
    source.add_argument("--bytecode-file", help="File with hex bytecode or a JSON artifact")
    deploy.add_argument("--constructor-types", nargs="*", default=[], help="Constructor ABI types")
    deploy.add_argument("--constructor-args", help="JSON list of constructor arguments")
    _add_forward_args(deploy)

    nonce_used = sub.add_parser("nonce-used", help="Check whether a forward nonce was consumed")
    nonce_used.add_argument("--from", dest="from_address", required=True)
    nonce_used.add_argument("--space", type=int, default=0)
    nonce_used.add_argument("--nonce", type=int, required=True)

    caller_allowed = sub.add_parser("caller-allowed", help="Check the hub allowlist")
    caller_allowed.add_argument("--caller", help="Caller address (defaults to the relayer)")

    return parser.parse_args(argv)


COMMANDS = {
    "execute": _run_execute,
    "deploy": _run_deploy,
    "nonce-used": _run_nonce_used,
    "caller-allowed": _run_caller_allowed,
}


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)

    rpc_url = (os.getenv("RPC_URL") or "").strip() or None
    relayer_key = (os.getenv("RELAYER_PK") or "").strip()
    sender_key = (os.getenv("SENDER_PK") or "").strip()

    if not relayer_key or not sender_key:
        print("❌ Error: RELAYER_PK and SENDER_PK environment variables must be set")
        sys.exit(1)

    try:
        relayer = build_relayer(
            config=load_config(args.config),
            rpc_url=rpc_url,
            relayer_key=relayer_key,
            sender_key=sender_key,
            gas_price=args.gas_price,
        )
        exit_code = COMMANDS[args.command](relayer, args)
    except Exception as exc:
        print(f"\n❌ Error: {exc}")
        sys.exit(1)
    sys.exit(exit_code)


if __name__ == "__main__":  # pragma: no cover - CLI entry
    main()
