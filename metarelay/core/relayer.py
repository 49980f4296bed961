"""High-level orchestration of the forward pipeline.

Builder -> Signer -> Encoder -> Submitter -> Outcome extractor, one request
at a time. Each call is self-contained; the only state shared between
concurrent callers is the submitter's transaction counter.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence

from metarelay.core.encoding import EncodedCall, build_call_data, encode_execute, prepare_deploy_bytecode
from metarelay.core.errors import InvalidArgument, MetaRelayError
from metarelay.core.forward import ForwardBuilder, Payload, generate_nonce
from metarelay.core.outcome import ExecutionOutcome, SubmissionState, get_deployed_address
from metarelay.core.signing import ForwardSigner, SignedForward, sign_forward
from metarelay.core.submitter import FeeParameters, RelaySubmitter, SubmittedTransaction
from metarelay.core.utils import ZERO_ADDRESS, get_logger, to_checksum

LOGGER = get_logger("metarelay.relayer")


@dataclass(frozen=True)
class BatchCall:
    """One entry of ``MetaTxRelayer.execute_batch``."""

    fn_name: str
    args: Sequence[Any] = ()
    value: int = 0


@dataclass(frozen=True)
class BatchResult:
    """Outcome or failure of one batch entry."""

    index: int
    call: BatchCall
    outcome: Optional[ExecutionOutcome] = None
    error: Optional[MetaRelayError] = None

    @property
    def success(self) -> bool:
        return self.outcome is not None and self.outcome.success


@dataclass
class RelayOptions:
    """Per-call transaction options."""

    gas_limit: Optional[int] = None
    fees: Optional[FeeParameters] = None
    tx_nonce: Optional[int] = None
    timeout: Optional[float] = None


class MetaTxRelayer:
    """Relays forwards signed by ``sender`` through ``submitter``."""

    def __init__(self, builder: ForwardBuilder, submitter: RelaySubmitter, sender: ForwardSigner) -> None:
        if builder.schema is not submitter.schema:
            raise InvalidArgument(
                f"Builder schema {builder.schema.value} does not match submitter schema {submitter.schema.value}"
            )
        if builder.hub_address != submitter.hub_address:
            raise InvalidArgument("Builder and submitter target different hubs")
        self.builder = builder
        self.submitter = submitter
        self.sender = sender

    @staticmethod
    def _log_state(nonce: int, state: SubmissionState) -> None:
        LOGGER.debug("forward nonce=%s -> %s", nonce, state.value)

    def _prepare(
        self,
        *,
        to: str,
        payload: Payload,
        value: int,
        space: int,
        nonce: Optional[int],
        deadline: Optional[int],
        deadline_sec: Optional[int],
    ) -> SignedForward:
        nonce = generate_nonce() if nonce is None else nonce
        prepared = self.builder.build(
            from_address=self.sender.address,
            to=to,
            payload=payload,
            nonce=nonce,
            value=value,
            space=space,
            deadline=deadline,
            deadline_sec=deadline_sec,
            caller=self.submitter.address if self.builder.schema.has_caller else None,
        )
        self._log_state(nonce, SubmissionState.BUILT)
        signed = sign_forward(self.sender, prepared)
        self._log_state(signed.forward.nonce, SubmissionState.SIGNED)
        return signed

    def prepare_call(
        self,
        target: str,
        call_data: Payload,
        *,
        value: int = 0,
        space: int = 0,
        nonce: Optional[int] = None,
        deadline: Optional[int] = None,
        deadline_sec: Optional[int] = None,
    ) -> SignedForward:
        """Build and sign a forward calling ``target`` with ``call_data``."""
        if to_checksum(target, field_name="target") == ZERO_ADDRESS:
            raise InvalidArgument("Invalid targetAddress: zero address")
        return self._prepare(
            to=target,
            payload=call_data,
            value=value,
            space=space,
            nonce=nonce,
            deadline=deadline,
            deadline_sec=deadline_sec,
        )

    def prepare_deploy(
        self,
        bytecode: Payload,
        *,
        constructor_types: Sequence[str] = (),
        constructor_args: Sequence[Any] = (),
        space: int = 0,
        nonce: Optional[int] = None,
        deadline: Optional[int] = None,
        deadline_sec: Optional[int] = None,
    ) -> SignedForward:
        """Build and sign a forward deploying ``bytecode`` from the hub."""
        code = prepare_deploy_bytecode(bytecode, constructor_types, constructor_args)
        return self._prepare(
            to=ZERO_ADDRESS,
            payload=code,
            value=0,
            space=space,
            nonce=nonce,
            deadline=deadline,
            deadline_sec=deadline_sec,
        )

    def encode(self, signed: SignedForward) -> EncodedCall:
        encoded = encode_execute(signed, self.submitter.hub_address)
        self._log_state(signed.forward.nonce, SubmissionState.ENCODED)
        return encoded

    def submit(
        self,
        signed: SignedForward,
        options: Optional[RelayOptions] = None,
        *,
        replace: Optional[SubmittedTransaction] = None,
    ) -> SubmittedTransaction:
        """Encode and broadcast ``signed`` without waiting for inclusion."""
        options = options or RelayOptions()
        submitted = self.submitter.submit(
            self.encode(signed),
            gas_limit=options.gas_limit,
            fees=options.fees,
            tx_nonce=options.tx_nonce,
            replace=replace,
        )
        self._log_state(signed.forward.nonce, SubmissionState.SUBMITTED)
        return submitted

    def wait(self, submitted: SubmittedTransaction, *, timeout: Optional[float] = None) -> ExecutionOutcome:
        """Wait for ``submitted`` and attach the deployed address for deployments."""
        outcome = self.submitter.wait(submitted, timeout=timeout)
        self._log_state(submitted.signed.forward.nonce, outcome.status)
        if outcome.success and submitted.signed.forward.is_deployment:
            deployed = get_deployed_address(outcome.receipt, self.submitter.hub)
            outcome = dataclasses.replace(outcome, deployed_address=deployed)
        return outcome

    def relay(self, signed: SignedForward, options: Optional[RelayOptions] = None) -> ExecutionOutcome:
        options = options or RelayOptions()
        submitted = self.submit(signed, options)
        return self.wait(submitted, timeout=options.timeout)

    def replace(
        self,
        previous: SubmittedTransaction,
        signed: SignedForward,
        options: Optional[RelayOptions] = None,
    ) -> SubmittedTransaction:
        """Broadcast ``signed`` at the same relayer counter as ``previous``."""
        return self.submit(signed, options, replace=previous)

    def simulate(self, signed: SignedForward) -> bytes:
        """Dry-run ``signed`` against the hub without broadcasting."""
        encoded = self.encode(signed)
        self.submitter.ensure_caller_allowed(signed)
        return self.submitter.simulate(encoded)

    def execute(
        self,
        target: str,
        call_data: Payload,
        *,
        value: int = 0,
        space: int = 0,
        nonce: Optional[int] = None,
        deadline: Optional[int] = None,
        deadline_sec: Optional[int] = None,
        options: Optional[RelayOptions] = None,
    ) -> ExecutionOutcome:
        """Relay a call to ``target``."""
        signed = self.prepare_call(
            target,
            call_data,
            value=value,
            space=space,
            nonce=nonce,
            deadline=deadline,
            deadline_sec=deadline_sec,
        )
        return self.relay(signed, options)

    def execute_function(
        self,
        target: str,
        abi: Sequence[Dict[str, Any]],
        fn_name: str,
        args: Sequence[Any] = (),
        **kwargs: Any,
    ) -> ExecutionOutcome:
        """Encode ``fn_name(*args)`` against ``abi`` and relay it to ``target``."""
        return self.execute(target, build_call_data(abi, fn_name, args), **kwargs)

    def deploy(
        self,
        bytecode: Payload,
        *,
        constructor_types: Sequence[str] = (),
        constructor_args: Sequence[Any] = (),
        space: int = 0,
        nonce: Optional[int] = None,
        deadline: Optional[int] = None,
        deadline_sec: Optional[int] = None,
        options: Optional[RelayOptions] = None,
    ) -> ExecutionOutcome:
        """Relay a deployment of ``bytecode``."""
        signed = self.prepare_deploy(
            bytecode,
            constructor_types=constructor_types,
            constructor_args=constructor_args,
            space=space,
            nonce=nonce,
            deadline=deadline,
            deadline_sec=deadline_sec,
        )
        return self.relay(signed, options)

    def execute_batch(
        self,
        target: str,
        abi: Sequence[Dict[str, Any]],
        calls: Sequence[BatchCall],
        *,
        space: int = 0,
        deadline_sec: Optional[int] = None,
        options: Optional[RelayOptions] = None,
        on_progress: Optional[Callable[[int, int, BatchResult], None]] = None,
    ) -> List[BatchResult]:
        """Relay ``calls`` one after another, each with its own forward nonce.

        A failing entry is recorded and the batch moves on. Every entry takes
        its own relayer counter, so ``options.tx_nonce`` is rejected.
        """
        if options is not None and options.tx_nonce is not None:
            raise InvalidArgument("tx_nonce cannot be shared by batch entries", stage="submit")
        results: List[BatchResult] = []
        for index, call in enumerate(calls):
            try:
                outcome = self.execute_function(
                    target,
                    abi,
                    call.fn_name,
                    call.args,
                    value=call.value,
                    space=space,
                    deadline_sec=deadline_sec,
                    options=options,
                )
                result = BatchResult(index=index, call=call, outcome=outcome)
            except MetaRelayError as exc:
                LOGGER.error("Call %s (%s) failed: %s", index + 1, call.fn_name, exc)
                result = BatchResult(index=index, call=call, error=exc)
            results.append(result)
            if on_progress is not None:
                on_progress(index, len(calls), result)

        succeeded = sum(1 for result in results if result.success)
        LOGGER.info("Batch finished: %s/%s calls confirmed", succeeded, len(calls))
        return results


__all__ = ["BatchCall", "BatchResult", "MetaTxRelayer", "RelayOptions"]
