"""
Pytest fixtures for the metarelay tests.
"""
import time
from unittest.mock import MagicMock

import pytest
from eth_abi import encode as abi_encode
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import TransactionNotFound

from metarelay.core.encoding import build_call_data
from metarelay.core.forward import ForwardBuilder, ForwardSchema, NonceRegistry
from metarelay.core.relayer import MetaTxRelayer
from metarelay.core.submitter import GasPolicy, RelaySubmitter

# Constants for testing
TEST_CHAIN_ID = 1337
TEST_HUB = "0x" + "ab" * 20
TEST_TARGET = "0x" + "cd" * 20
SENDER_KEY = "0x" + "11" * 32
RELAYER_KEY = "0x" + "22" * 32
OTHER_KEY = "0x" + "33" * 32
START_COUNTER = 5

STORAGE_ABI = [
    {
        "inputs": [{"internalType": "uint256", "name": "num", "type": "uint256"}],
        "name": "store",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "retrieve",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]

DEPLOY_TOPIC = Web3.keccak(text="ContractDeployed(address,address,bytes32)")


# ─────────────────────────────────────────────────────────────────────────
#  FAST POLLING FOR TESTS
# ─────────────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _fast_sleep(monkeypatch):
    monkeypatch.setattr(time, "sleep", lambda *_a, **_kw: None)


def make_log(topics, data, address=TEST_HUB, log_index=0):
    """Build a receipt log entry the way a node returns it."""
    return {
        "address": Web3.to_checksum_address(address),
        "topics": [HexBytes(topic) for topic in topics],
        "data": HexBytes(data),
        "logIndex": log_index,
        "transactionIndex": 0,
        "transactionHash": HexBytes(b"\x01" * 32),
        "blockHash": HexBytes(b"\x02" * 32),
        "blockNumber": 10,
    }


def make_deploy_log(signer, deployed, data_hash, log_index=0):
    """Log entry of the hub's ContractDeployed event."""
    signer_topic = b"\x00" * 12 + bytes.fromhex(signer[2:])
    data = abi_encode(["address", "bytes32"], [Web3.to_checksum_address(deployed), data_hash])
    return make_log([DEPLOY_TOPIC, signer_topic], data, log_index=log_index)


def make_contract(address=None, abi=None):
    """Hub double: read-only functions are mocks, event decoding is real."""
    real = Web3().eth.contract(address=address, abi=abi)
    contract = MagicMock()
    contract.address = address
    contract.events = real.events
    contract.functions.isCallerAllowed.return_value.call.return_value = True
    contract.functions.isNonceUsed.return_value.call.return_value = False
    return contract


class FakeEth:
    """In-memory stand-in for ``web3.eth`` that tracks the relayer counter."""

    def __init__(self):
        self.chain_id = TEST_CHAIN_ID
        self.gas_price = 0
        self.max_priority_fee = 0
        self.pending_count = START_COUNTER
        self.mined_count = START_COUNTER
        self.auto_mine = True
        self.receipts = {}
        self.sent = []
        self.estimate_gas = MagicMock(return_value=100_000)
        self.call = MagicMock(return_value=b"")
        self.get_code = MagicMock(return_value=b"\x60\x80")
        self.contract = MagicMock(side_effect=make_contract)

    def get_transaction_count(self, address, block_identifier="latest"):
        return self.pending_count if block_identifier == "pending" else self.mined_count

    def send_raw_transaction(self, raw):
        tx_hash = Web3.keccak(raw)
        self.sent.append(Web3.to_hex(tx_hash))
        self.pending_count += 1
        if self.auto_mine:
            self.mine(Web3.to_hex(tx_hash))
        return tx_hash

    def mine(self, tx_hash, status=1, logs=None):
        self.receipts[tx_hash] = {
            "transactionHash": HexBytes(tx_hash),
            "blockNumber": 100 + len(self.receipts),
            "gasUsed": 85_000,
            "status": status,
            "logs": logs or [],
        }
        self.mined_count += 1

    def get_transaction_receipt(self, tx_hash):
        if tx_hash in self.receipts:
            return self.receipts[tx_hash]
        raise TransactionNotFound(f"Transaction with hash: {tx_hash} not found")


class RecordingAccount:
    """Relayer account that remembers every transaction dict it signs."""

    def __init__(self, key):
        self._account = Account.from_key(key)
        self.address = self._account.address
        self.signed = []

    def sign_transaction(self, tx):
        self.signed.append(dict(tx))
        return self._account.sign_transaction(tx)


@pytest.fixture
def fake_eth():
    return FakeEth()


@pytest.fixture
def mock_w3(fake_eth):
    """Web3 double backed by ``FakeEth``."""
    w3 = MagicMock(spec=Web3)
    w3.eth = fake_eth
    w3.is_connected.return_value = True
    return w3


@pytest.fixture
def sender():
    return Account.from_key(SENDER_KEY)


@pytest.fixture
def relayer_account():
    return RecordingAccount(RELAYER_KEY)


@pytest.fixture
def builder(mock_w3):
    return ForwardBuilder(mock_w3, TEST_HUB, registry=NonceRegistry())


@pytest.fixture
def builder_without_caller(mock_w3):
    return ForwardBuilder(mock_w3, TEST_HUB, schema=ForwardSchema.WITHOUT_CALLER)


@pytest.fixture
def submitter(mock_w3, relayer_account):
    return RelaySubmitter(mock_w3, relayer_account, TEST_HUB, gas_policy=GasPolicy(gas_price=0))


@pytest.fixture
def relayer(builder, submitter, sender):
    return MetaTxRelayer(builder, submitter, sender)


@pytest.fixture
def prepared(builder, sender, relayer_account):
    """A forward calling store(42) on the test target."""
    return builder.build(
        from_address=sender.address,
        to=TEST_TARGET,
        payload=build_call_data(STORAGE_ABI, "store", [42]),
        nonce=7,
        caller=relayer_account.address,
    )
