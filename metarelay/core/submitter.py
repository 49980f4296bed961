"""Relayer-side transaction submission.

The relayer's account-level transaction counter is owned by a single
``TransactionCounter``. Reading the counter, signing and broadcasting happen
under its lock so concurrent pipelines never claim the same value by accident.
Two transactions share a counter only through an explicit ``replace=``
submission; the network then includes at most one of them. Which one wins
depends on the node's admission policy (with a zero fee bump, usually the
last one accepted), so the result is only known after re-querying receipts.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Mapping, Optional

from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, TransactionNotFound

from metarelay.contracts import HUB_ABI_FILE, load_contract_abi
from metarelay.core.encoding import EncodedCall, execute_abi
from metarelay.core.errors import (
    CallerNotAllowed,
    EstimationError,
    InvalidArgument,
    SigningError,
    SubmissionError,
    UnconfirmedTimeout,
)
from metarelay.core.forward import ForwardSchema
from metarelay.core.outcome import ExecutionOutcome, SubmissionState
from metarelay.core.signing import SignedForward
from metarelay.core.utils import call_with_retries, get_logger, to_checksum

LOGGER = get_logger("metarelay.submitter")


@dataclass(frozen=True)
class GasPolicy:
    """How gas limit and fees are chosen when the caller does not pass them."""

    gas_buffer: float = 1.1
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None


@dataclass(frozen=True)
class ReplacementPolicy:
    """Minimum fee increase, in percent, applied to a replacement transaction."""

    fee_bump_percent: int = 0


@dataclass(frozen=True)
class FeeParameters:
    """Legacy ``gasPrice`` or EIP-1559 fee fields."""

    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None

    @property
    def is_legacy(self) -> bool:
        return self.gas_price is not None

    def as_tx_fields(self) -> Dict[str, int]:
        if self.is_legacy:
            return {"gasPrice": self.gas_price}
        return {
            "maxFeePerGas": self.max_fee_per_gas or 0,
            "maxPriorityFeePerGas": self.max_priority_fee_per_gas or 0,
        }

    def bumped(self, percent: int) -> "FeeParameters":
        def bump(value: Optional[int]) -> Optional[int]:
            if value is None:
                return None
            return -(-value * (100 + percent) // 100)

        return FeeParameters(
            gas_price=bump(self.gas_price),
            max_fee_per_gas=bump(self.max_fee_per_gas),
            max_priority_fee_per_gas=bump(self.max_priority_fee_per_gas),
        )

    def at_least(self, floor: "FeeParameters") -> "FeeParameters":
        if self.is_legacy != floor.is_legacy:
            LOGGER.warning("Replacement fee type differs from the replaced transaction, using bumped fees")
            return floor
        if self.is_legacy:
            return FeeParameters(gas_price=max(self.gas_price, floor.gas_price))
        return FeeParameters(
            max_fee_per_gas=max(self.max_fee_per_gas or 0, floor.max_fee_per_gas or 0),
            max_priority_fee_per_gas=max(self.max_priority_fee_per_gas or 0, floor.max_priority_fee_per_gas or 0),
        )


@dataclass(frozen=True)
class SubmittedTransaction:
    """A relayer transaction accepted for broadcast."""

    tx_hash: str
    tx_nonce: int
    sender: str
    gas_limit: int
    fees: FeeParameters
    encoded: EncodedCall
    replaces: Optional[str] = None

    @property
    def signed(self) -> SignedForward:
        return self.encoded.signed


class TransactionCounter:
    """Single owner of the relayer account's transaction counter."""

    def __init__(self, web3: Web3, address: str, *, read_retries: int = 3) -> None:
        self.web3 = web3
        self.address = to_checksum(address, field_name="relayer address")
        self.read_retries = read_retries
        self._lock = threading.RLock()
        self._next: Optional[int] = None

    def _pending_count(self) -> int:
        return int(
            call_with_retries(
                lambda: self.web3.eth.get_transaction_count(self.address, "pending"),
                attempts=self.read_retries,
                description="transaction count lookup",
            )
        )

    @property
    def next_value(self) -> int:
        with self._lock:
            if self._next is None:
                self._next = self._pending_count()
            return self._next

    def reset(self) -> None:
        with self._lock:
            self._next = None

    @contextmanager
    def reserve(self) -> Iterator[int]:
        """Hold the counter for one submission; advance only if it succeeds."""
        with self._lock:
            value = self.next_value
            try:
                yield value
            except BaseException:
                self._next = None
                raise
            self._next = value + 1

    @contextmanager
    def claim(self, value: int) -> Iterator[int]:
        """Hold the counter while submitting at an explicit ``value``."""
        with self._lock:
            yield value
            if self._next is not None and value >= self._next:
                self._next = value + 1


class RelaySubmitter:
    """Submits encoded forwards from the relayer account and tracks their fate."""

    def __init__(
        self,
        web3: Web3,
        account: LocalAccount,
        hub_address: str,
        *,
        schema: ForwardSchema = ForwardSchema.WITH_CALLER,
        counter: Optional[TransactionCounter] = None,
        gas_policy: GasPolicy = GasPolicy(),
        replacement: ReplacementPolicy = ReplacementPolicy(),
        check_allowlist: bool = True,
        confirmation_timeout: float = 120,
        poll_interval: float = 0.5,
        read_retries: int = 3,
    ) -> None:
        self.web3 = web3
        self.account = account
        self.address = account.address
        self.hub_address = to_checksum(hub_address, field_name="hub_address")
        self.schema = ForwardSchema.parse(schema)
        self.counter = counter or TransactionCounter(web3, self.address, read_retries=read_retries)
        self.gas_policy = gas_policy
        self.replacement = replacement
        self.check_allowlist = check_allowlist
        self.confirmation_timeout = confirmation_timeout
        self.poll_interval = poll_interval
        self.read_retries = read_retries
        self._chain_id: Optional[int] = None
        self.hub: Contract = web3.eth.contract(
            address=self.hub_address,
            abi=load_contract_abi(HUB_ABI_FILE) + [execute_abi(self.schema)],
        )

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self._read(lambda: self.web3.eth.chain_id, "chain id lookup"))
        return self._chain_id

    def _read(self, fn, description: str):
        return call_with_retries(fn, attempts=self.read_retries, description=description)

    # Hub queries

    def is_caller_allowed(self, caller: str) -> bool:
        checksum = to_checksum(caller, field_name="caller")
        return bool(self._read(lambda: self.hub.functions.isCallerAllowed(checksum).call(), "allowlist check"))

    def is_nonce_used(self, from_address: str, space: int, nonce: int) -> bool:
        sender = to_checksum(from_address, field_name="from")
        return bool(self._read(lambda: self.hub.functions.isNonceUsed(sender, space, nonce).call(), "nonce lookup"))

    def ensure_caller_allowed(self, signed: SignedForward) -> None:
        """Fail fast when the hub's allowlist does not include the forward's caller."""
        if not (self.check_allowlist and signed.schema.has_caller):
            return
        caller = signed.forward.caller
        allowed = self.is_caller_allowed(caller)
        LOGGER.info("Allowlist check: %s -> %s", caller, allowed)
        if not allowed:
            raise CallerNotAllowed(caller)

    # Gas

    def _call_params(self, encoded: EncodedCall) -> Dict[str, Any]:
        return {"from": self.address, "to": encoded.to, "data": encoded.data_hex, "value": encoded.value}

    def estimate_gas(self, encoded: EncodedCall) -> int:
        """Simulate the call and return a buffered gas limit."""
        try:
            estimate = self.web3.eth.estimate_gas(self._call_params(encoded))
        except ContractLogicError as exc:
            reason = getattr(exc, "message", None) or str(exc)
            raise EstimationError("Relayed call would revert", revert_reason=reason, cause=exc) from exc
        except Exception as exc:
            raise EstimationError("Gas estimation failed", cause=exc) from exc
        gas_limit = int(estimate * self.gas_policy.gas_buffer)
        LOGGER.debug("Estimated gas: %s (limit %s)", estimate, gas_limit)
        return gas_limit

    def resolve_fees(self) -> FeeParameters:
        policy = self.gas_policy
        if policy.gas_price is not None:
            return FeeParameters(gas_price=policy.gas_price)
        if policy.max_fee_per_gas is not None:
            return FeeParameters(
                max_fee_per_gas=policy.max_fee_per_gas,
                max_priority_fee_per_gas=policy.max_priority_fee_per_gas or 0,
            )
        gas_price = self.web3.eth.gas_price
        max_priority_fee = getattr(self.web3.eth, "max_priority_fee", gas_price)
        return FeeParameters(max_fee_per_gas=gas_price + max_priority_fee, max_priority_fee_per_gas=max_priority_fee)

    def simulate(self, encoded: EncodedCall) -> bytes:
        """Dry-run the call with ``eth_call``."""
        try:
            return bytes(self.web3.eth.call(self._call_params(encoded)))
        except ContractLogicError as exc:
            reason = getattr(exc, "message", None) or str(exc)
            raise EstimationError("Simulated call reverted", revert_reason=reason, stage="simulate", cause=exc) from exc

    # Submission

    def submit(
        self,
        encoded: EncodedCall,
        *,
        gas_limit: Optional[int] = None,
        fees: Optional[FeeParameters] = None,
        tx_nonce: Optional[int] = None,
        replace: Optional[SubmittedTransaction] = None,
    ) -> SubmittedTransaction:
        """Sign and broadcast ``encoded``; returns once the node accepts it."""
        if replace is not None and tx_nonce is not None and tx_nonce != replace.tx_nonce:
            raise InvalidArgument("tx_nonce must match the counter of the replaced transaction", stage="submit")

        self.ensure_caller_allowed(encoded.signed)
        if gas_limit is None:
            gas_limit = self.estimate_gas(encoded)
        fees = fees or self.resolve_fees()

        if replace is not None:
            fees = fees.at_least(replace.fees.bumped(self.replacement.fee_bump_percent))
            slot = self.counter.claim(replace.tx_nonce)
        elif tx_nonce is not None:
            slot = self.counter.claim(tx_nonce)
        else:
            slot = self.counter.reserve()

        with slot as counter_value:
            tx = {
                "from": self.address,
                "to": encoded.to,
                "data": encoded.data_hex,
                "value": encoded.value,
                "gas": gas_limit,
                "nonce": counter_value,
                "chainId": self.chain_id,
                **fees.as_tx_fields(),
            }
            try:
                signed_tx = self.account.sign_transaction(tx)
            except Exception as exc:
                raise SigningError("Relayer failed to sign the transaction", stage="submit", cause=exc) from exc

            try:
                tx_hash = self.web3.eth.send_raw_transaction(signed_tx.raw_transaction)
            except Exception as exc:
                LOGGER.error("Failed to send transaction at counter %s: %s", counter_value, exc)
                raise SubmissionError(f"Network rejected transaction at counter {counter_value}", cause=exc) from exc

        tx_hex = Web3.to_hex(tx_hash)
        if replace is not None:
            LOGGER.info("Replacement %s sent at counter %s (replaces %s)", tx_hex, counter_value, replace.tx_hash)
        else:
            LOGGER.info("Transaction sent: %s (counter %s, gas %s)", tx_hex, counter_value, gas_limit)

        return SubmittedTransaction(
            tx_hash=tx_hex,
            tx_nonce=counter_value,
            sender=self.address,
            gas_limit=gas_limit,
            fees=fees,
            encoded=encoded,
            replaces=replace.tx_hash if replace is not None else None,
        )

    # Confirmation

    def receipt_or_none(self, tx_hash: str) -> Optional[Mapping[str, Any]]:
        """Return the receipt, or ``None`` while the transaction is not mined."""

        def fetch():
            try:
                return self.web3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        return self._read(fetch, "receipt lookup")

    def _counter_consumed(self, submitted: SubmittedTransaction) -> bool:
        mined = self._read(
            lambda: self.web3.eth.get_transaction_count(submitted.sender, "latest"),
            "mined transaction count lookup",
        )
        return int(mined) > submitted.tx_nonce

    def _outcome(self, submitted: SubmittedTransaction, receipt: Mapping[str, Any]) -> ExecutionOutcome:
        status = SubmissionState.CONFIRMED if receipt.get("status") == 1 else SubmissionState.REVERTED
        if status is SubmissionState.CONFIRMED:
            LOGGER.info(
                "Transaction %s confirmed in block %s (gasUsed=%s)",
                submitted.tx_hash,
                receipt.get("blockNumber"),
                receipt.get("gasUsed"),
            )
        else:
            LOGGER.error("Transaction %s reverted in block %s", submitted.tx_hash, receipt.get("blockNumber"))
        return ExecutionOutcome(
            status=status,
            tx_hash=submitted.tx_hash,
            tx_nonce=submitted.tx_nonce,
            receipt=receipt,
            signed=submitted.signed,
        )

    def wait(
        self,
        submitted: SubmittedTransaction,
        *,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> ExecutionOutcome:
        """Block until ``submitted`` is mined, reverted or superseded.

        Raises ``UnconfirmedTimeout`` after ``timeout`` seconds. The submitter
        never replaces a transaction on its own.
        """
        timeout = self.confirmation_timeout if timeout is None else timeout
        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        deadline = time.monotonic() + timeout

        while True:
            receipt = self.receipt_or_none(submitted.tx_hash)
            if receipt is not None:
                return self._outcome(submitted, receipt)

            if self._counter_consumed(submitted):
                # The counter may have been consumed by this very transaction between the two reads.
                receipt = self.receipt_or_none(submitted.tx_hash)
                if receipt is not None:
                    return self._outcome(submitted, receipt)
                LOGGER.warning(
                    "Transaction %s superseded: counter %s was consumed by another transaction",
                    submitted.tx_hash,
                    submitted.tx_nonce,
                )
                return ExecutionOutcome(
                    status=SubmissionState.SUPERSEDED,
                    tx_hash=submitted.tx_hash,
                    tx_nonce=submitted.tx_nonce,
                    signed=submitted.signed,
                )

            if time.monotonic() >= deadline:
                LOGGER.warning("Transaction %s unconfirmed after %ss", submitted.tx_hash, timeout)
                raise UnconfirmedTimeout(submitted.tx_hash, submitted.tx_nonce, timeout)
            time.sleep(poll_interval)

    def relay(self, encoded: EncodedCall, *, timeout: Optional[float] = None, **submit_kwargs: Any) -> ExecutionOutcome:
        """Submit ``encoded`` and wait for its terminal state."""
        submitted = self.submit(encoded, **submit_kwargs)
        return self.wait(submitted, timeout=timeout)


__all__ = [
    "FeeParameters",
    "GasPolicy",
    "RelaySubmitter",
    "ReplacementPolicy",
    "SubmittedTransaction",
    "TransactionCounter",
]
