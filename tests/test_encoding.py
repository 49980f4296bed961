"""
Tests for hub calldata encoding and payload helpers.
"""
import pytest
from eth_abi import decode as abi_decode
from web3 import Web3

from metarelay.core.encoding import (
    build_call_data,
    decode_execute,
    encode_execute,
    execute_selector,
    execute_signature,
    prepare_deploy_bytecode,
)
from metarelay.core.errors import EncodingError, InvalidArgument
from metarelay.core.forward import ForwardSchema
from metarelay.core.signing import sign_forward
from tests.conftest import STORAGE_ABI, TEST_HUB, TEST_TARGET


@pytest.fixture
def signed(prepared, sender):
    return sign_forward(sender, prepared)


def test_execute_signatures():
    assert execute_signature(ForwardSchema.WITH_CALLER) == (
        "execute((address,address,uint256,uint32,uint256,uint256,bytes32,address),bytes,bytes)"
    )
    assert execute_signature(ForwardSchema.WITHOUT_CALLER) == (
        "execute((address,address,uint256,uint32,uint256,uint256,bytes32),bytes,bytes)"
    )
    assert execute_selector(ForwardSchema.WITH_CALLER) != execute_selector(ForwardSchema.WITHOUT_CALLER)


def test_encoded_call_targets_hub(signed):
    encoded = encode_execute(signed, TEST_HUB)

    assert encoded.to == Web3.to_checksum_address(TEST_HUB)
    assert encoded.data[:4] == bytes(Web3.keccak(text=execute_signature(ForwardSchema.WITH_CALLER))[:4])
    assert encoded.data_hex.startswith("0x")
    assert encoded.value == signed.forward.value
    assert encoded.signed is signed


def test_encoded_call_preserves_field_order(signed):
    forward, payload, signature = decode_execute(encode_execute(signed, TEST_HUB).data, ForwardSchema.WITH_CALLER)

    assert forward == signed.forward.to_tuple(ForwardSchema.WITH_CALLER)
    assert forward[3] == signed.forward.space
    assert forward[7] == signed.forward.caller
    assert payload == signed.payload
    assert signature == signed.signature


def test_payload_is_carried_unchanged(signed):
    _, payload, _ = decode_execute(encode_execute(signed, TEST_HUB).data_hex, ForwardSchema.WITH_CALLER)

    assert Web3.keccak(payload) == signed.forward.data_hash
    assert abi_decode(["uint256"], payload[4:]) == (42,)


def test_explicit_value_overrides_forward_value(signed):
    assert encode_execute(signed, TEST_HUB, value=0).value == 0
    assert encode_execute(signed, TEST_HUB, value=7).value == 7


def test_without_caller_encoding(builder_without_caller, sender):
    prepared = builder_without_caller.build(from_address=sender.address, to=TEST_TARGET, payload="0x01", nonce=3)
    encoded = encode_execute(sign_forward(sender, prepared), TEST_HUB)
    forward, _, _ = decode_execute(encoded.data, ForwardSchema.WITHOUT_CALLER)

    assert encoded.data[:4] == execute_selector(ForwardSchema.WITHOUT_CALLER)
    assert len(forward) == 7


def test_decode_rejects_other_selector(signed):
    encoded = encode_execute(signed, TEST_HUB)

    with pytest.raises(EncodingError, match="selector"):
        decode_execute(encoded.data, ForwardSchema.WITHOUT_CALLER)


def test_build_call_data():
    data = build_call_data(STORAGE_ABI, "store", [42])

    assert data[:4] == bytes(Web3.keccak(text="store(uint256)")[:4])
    assert data[4:] == (42).to_bytes(32, "big")


def test_build_call_data_unknown_function():
    with pytest.raises(EncodingError, match="transfer"):
        build_call_data(STORAGE_ABI, "transfer", [1])


class TestDeployBytecode:
    def test_without_constructor_args(self):
        assert prepare_deploy_bytecode("0x6080") == b"\x60\x80"

    def test_constructor_args_are_appended(self):
        code = prepare_deploy_bytecode("0x6080", ["uint256", "address"], [5, Web3.to_checksum_address(TEST_TARGET)])

        assert code[:2] == b"\x60\x80"
        assert len(code) == 2 + 64
        value, address = abi_decode(["uint256", "address"], code[2:])
        assert (value, Web3.to_checksum_address(address)) == (5, Web3.to_checksum_address(TEST_TARGET))

    def test_length_mismatch(self):
        with pytest.raises(InvalidArgument, match="length mismatch"):
            prepare_deploy_bytecode("0x6080", ["uint256"], [])

    def test_empty_bytecode(self):
        with pytest.raises(InvalidArgument, match="required"):
            prepare_deploy_bytecode("0x")
