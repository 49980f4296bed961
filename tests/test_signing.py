"""
Tests for EIP-712 signing and local signature verification.
"""
import dataclasses

import pytest
from eth_account import Account

from metarelay.core.errors import SigningError
from metarelay.core.forward import ForwardSchema
from metarelay.core.signing import recover_signer, sign_forward, typed_data, verify_forward
from tests.conftest import OTHER_KEY, TEST_TARGET


def test_signature_recovers_to_principal(prepared, sender):
    signed = sign_forward(sender, prepared)

    assert len(signed.signature) == 65
    assert recover_signer(prepared, signed.signature) == sender.address
    assert verify_forward(signed)


def test_signing_is_deterministic(prepared, sender):
    assert sign_forward(sender, prepared).signature == sign_forward(sender, prepared).signature


def test_typed_data_follows_struct_order(prepared):
    domain, types, message = typed_data(prepared)

    assert [entry["name"] for entry in types["Forward"]] == [
        "from",
        "to",
        "value",
        "space",
        "nonce",
        "deadline",
        "dataHash",
        "caller",
    ]
    assert types["Forward"][3]["type"] == "uint32"
    assert list(message) == [entry["name"] for entry in types["Forward"]]
    assert domain["verifyingContract"] == prepared.domain.verifying_contract


def test_with_caller_signature_fails_without_caller_schema(prepared, sender):
    signed = sign_forward(sender, prepared)

    assert not verify_forward(signed, ForwardSchema.WITHOUT_CALLER)


def test_without_caller_signature_fails_with_caller_schema(prepared, sender):
    legacy = dataclasses.replace(prepared, schema=ForwardSchema.WITHOUT_CALLER)
    signed = sign_forward(sender, legacy)

    assert verify_forward(signed)
    assert not verify_forward(signed, ForwardSchema.WITH_CALLER)


def test_without_caller_schema_needs_caller_to_verify(builder_without_caller, sender):
    prepared = builder_without_caller.build(
        from_address=sender.address, to=TEST_TARGET, payload="0x01", nonce=1
    )
    signed = sign_forward(sender, prepared)

    assert verify_forward(signed)
    assert not verify_forward(signed, ForwardSchema.WITH_CALLER)


def test_signature_does_not_cover_other_principal(prepared, sender):
    signed = sign_forward(sender, prepared)
    other = Account.from_key(OTHER_KEY)
    forged = dataclasses.replace(
        signed,
        prepared=dataclasses.replace(
            prepared, forward=dataclasses.replace(prepared.forward, from_address=other.address)
        ),
    )

    assert not verify_forward(forged)


def test_signer_must_match_principal(prepared):
    with pytest.raises(SigningError, match="does not match"):
        sign_forward(Account.from_key(OTHER_KEY), prepared)


def test_signer_failure_is_wrapped(prepared, sender):
    class BrokenSigner:
        address = sender.address

        def sign_typed_data(self, domain_data, message_types, message_data):
            raise RuntimeError("hardware wallet unplugged")

    with pytest.raises(SigningError) as exc_info:
        sign_forward(BrokenSigner(), prepared)

    assert exc_info.value.stage == "sign"
    assert isinstance(exc_info.value.cause, RuntimeError)
    assert "unplugged" in str(exc_info.value)


def test_custom_signer_returning_bytes(prepared, sender):
    class RawSigner:
        address = sender.address

        def sign_typed_data(self, domain_data, message_types, message_data):
            return sender.sign_typed_data(domain_data, message_types, message_data).signature

    signed = sign_forward(RawSigner(), prepared)

    assert verify_forward(signed)
