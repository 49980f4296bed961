"""EIP-712 signing and local verification of forward requests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Tuple

from eth_account import Account
from eth_account.messages import encode_typed_data

from metarelay.core.errors import SigningError
from metarelay.core.forward import ForwardRequest, ForwardSchema, PreparedForward
from metarelay.core.utils import get_logger

LOGGER = get_logger("metarelay.signing")


class ForwardSigner(Protocol):
    """Anything able to produce an EIP-712 signature for ``address``."""

    address: str

    def sign_typed_data(
        self,
        domain_data: Dict[str, Any],
        message_types: Dict[str, List[Dict[str, str]]],
        message_data: Dict[str, Any],
    ) -> Any:
        ...


@dataclass(frozen=True)
class SignedForward:
    """A prepared forward and the signature its principal produced."""

    prepared: PreparedForward
    signature: bytes

    @property
    def forward(self) -> ForwardRequest:
        return self.prepared.forward

    @property
    def payload(self) -> bytes:
        return self.prepared.payload

    @property
    def schema(self) -> ForwardSchema:
        return self.prepared.schema


def typed_data(
    prepared: PreparedForward, schema: Optional[ForwardSchema] = None
) -> Tuple[Dict[str, Any], Dict[str, List[Dict[str, str]]], Dict[str, Any]]:
    """Return ``(domain, types, message)`` for ``prepared`` under ``schema``."""
    schema = schema or prepared.schema
    return prepared.domain.as_dict(), schema.eip712_types(), prepared.forward.to_message(schema)


def sign_forward(signer: ForwardSigner, prepared: PreparedForward) -> SignedForward:
    """Sign ``prepared`` on behalf of its ``from`` address."""
    signer_address = getattr(signer, "address", None)
    if signer_address is None or signer_address.lower() != prepared.forward.from_address.lower():
        raise SigningError(
            f"Signer {signer_address} does not match forward principal {prepared.forward.from_address}"
        )

    domain, types, message = typed_data(prepared)
    try:
        signed = signer.sign_typed_data(domain, types, message)
    except Exception as exc:
        raise SigningError("Signing principal failed to sign the forward", cause=exc) from exc

    signature = getattr(signed, "signature", signed)
    if not signature:
        raise SigningError("Signing principal returned an empty signature")

    LOGGER.info(
        "Signed forward from=%s nonce=%s schema=%s",
        prepared.forward.from_address,
        prepared.forward.nonce,
        prepared.schema.value,
    )
    return SignedForward(prepared=prepared, signature=bytes(signature))


def recover_signer(prepared: PreparedForward, signature: bytes, schema: Optional[ForwardSchema] = None) -> str:
    """Recover the address that produced ``signature`` under ``schema``."""
    domain, types, message = typed_data(prepared, schema)
    signable = encode_typed_data(domain_data=domain, message_types=types, message_data=message)
    return Account.recover_message(signable, signature=signature)


def verify_forward(signed: SignedForward, schema: Optional[ForwardSchema] = None) -> bool:
    """Return True when the signature recovers to the forward's ``from`` address."""
    schema = schema or signed.schema
    if schema.has_caller and signed.forward.caller is None:
        return False
    try:
        recovered = recover_signer(signed.prepared, signed.signature, schema)
    except ValueError as exc:
        LOGGER.warning("Signature recovery failed: %s", exc)
        return False
    return recovered.lower() == signed.forward.from_address.lower()


__all__ = [
    "ForwardSigner",
    "SignedForward",
    "recover_signer",
    "sign_forward",
    "typed_data",
    "verify_forward",
]
