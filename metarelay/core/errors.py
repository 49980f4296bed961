"""Error taxonomy for the meta-transaction pipeline.

Every error names the pipeline ``stage`` it came from, a human readable
``reason`` and, where one exists, the underlying transport or library error as
``cause``. ``retryable`` tells the caller whether trying again later can help
or whether the input has to change first.
"""

from __future__ import annotations

from typing import Optional


class MetaRelayError(Exception):
    """Base class for all pipeline failures."""

    stage = "relay"
    retryable = False

    def __init__(self, reason: str, *, stage: Optional[str] = None, cause: Optional[BaseException] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        if stage is not None:
            self.stage = stage
        self.cause = cause

    def __str__(self) -> str:
        message = f"[{self.stage}] {self.reason}"
        if self.cause is not None:
            message = f"{message} ({self.cause})"
        return message


class InvalidArgument(MetaRelayError, ValueError):
    """Malformed or missing input. Never retried."""

    stage = "build"


class SigningError(MetaRelayError):
    """The signing principal was unavailable or declined."""

    stage = "sign"


class EncodingError(MetaRelayError):
    """Calldata construction produced an empty or invalid result."""

    stage = "encode"


class EstimationError(MetaRelayError):
    """Simulation of the relayed call failed, usually because it would revert."""

    stage = "estimate"

    def __init__(
        self,
        reason: str,
        *,
        revert_reason: Optional[str] = None,
        stage: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(reason, stage=stage, cause=cause)
        self.revert_reason = revert_reason


class CallerNotAllowed(MetaRelayError):
    """The hub's allowlist rejected the forward's caller."""

    stage = "allowlist"

    def __init__(self, caller: str) -> None:
        super().__init__(f"Caller {caller} not allowed")
        self.caller = caller


class SubmissionError(MetaRelayError):
    """The network refused the relayer's transaction."""

    stage = "submit"
    retryable = True


class UnconfirmedTimeout(MetaRelayError):
    """No receipt within the caller's bound. The caller decides whether to replace."""

    stage = "confirm"
    retryable = True

    def __init__(self, tx_hash: str, tx_nonce: int, timeout: float) -> None:
        super().__init__(f"Transaction {tx_hash} (counter {tx_nonce}) unconfirmed after {timeout}s")
        self.tx_hash = tx_hash
        self.tx_nonce = tx_nonce
        self.timeout = timeout


__all__ = [
    "CallerNotAllowed",
    "EncodingError",
    "EstimationError",
    "InvalidArgument",
    "MetaRelayError",
    "SigningError",
    "SubmissionError",
    "UnconfirmedTimeout",
]
