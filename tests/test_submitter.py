"""
Tests for relayer-side submission: allowlist, gas, counter ownership and confirmation.
"""
import threading

import pytest
import requests
from web3.exceptions import ContractLogicError

from metarelay.core.encoding import encode_execute
from metarelay.core.errors import (
    CallerNotAllowed,
    EstimationError,
    InvalidArgument,
    SubmissionError,
    UnconfirmedTimeout,
)
from metarelay.core.outcome import SubmissionState
from metarelay.core.signing import sign_forward
from metarelay.core.submitter import FeeParameters, GasPolicy, RelaySubmitter, ReplacementPolicy
from metarelay.core.utils import call_with_retries
from tests.conftest import START_COUNTER, TEST_HUB, TEST_TARGET


@pytest.fixture
def encoded(prepared, sender):
    return encode_execute(sign_forward(sender, prepared), TEST_HUB)


def _encoded_with_nonce(builder, sender, relayer_account, nonce):
    prepared = builder.build(
        from_address=sender.address,
        to=TEST_TARGET,
        payload="0x6057361d",
        nonce=nonce,
        caller=relayer_account.address,
    )
    return encode_execute(sign_forward(sender, prepared), TEST_HUB)


class TestAllowlist:
    def test_not_allowed_short_circuits(self, submitter, encoded, fake_eth):
        submitter.hub.functions.isCallerAllowed.return_value.call.return_value = False

        with pytest.raises(CallerNotAllowed) as exc_info:
            submitter.submit(encoded)

        assert exc_info.value.caller == encoded.signed.forward.caller
        assert exc_info.value.stage == "allowlist"
        fake_eth.estimate_gas.assert_not_called()
        assert fake_eth.sent == []

    def test_check_can_be_disabled(self, mock_w3, relayer_account, encoded):
        submitter = RelaySubmitter(
            mock_w3, relayer_account, TEST_HUB, gas_policy=GasPolicy(gas_price=0), check_allowlist=False
        )
        submitter.hub.functions.isCallerAllowed.return_value.call.return_value = False

        submitted = submitter.submit(encoded)

        assert submitted.tx_nonce == START_COUNTER

    def test_is_nonce_used_queries_hub(self, submitter, sender):
        submitter.hub.functions.isNonceUsed.return_value.call.return_value = True

        assert submitter.is_nonce_used(sender.address, 3, 99)
        submitter.hub.functions.isNonceUsed.assert_called_with(sender.address, 3, 99)


class TestGas:
    def test_estimate_applies_buffer(self, submitter, encoded, fake_eth):
        fake_eth.estimate_gas.return_value = 100_000

        assert submitter.estimate_gas(encoded) == 110_000
        params = fake_eth.estimate_gas.call_args[0][0]
        assert params["from"] == submitter.address
        assert params["data"] == encoded.data_hex

    def test_revert_becomes_estimation_error(self, submitter, encoded, fake_eth):
        fake_eth.estimate_gas.side_effect = ContractLogicError("execution reverted: Expired")

        with pytest.raises(EstimationError) as exc_info:
            submitter.submit(encoded)

        assert "Expired" in exc_info.value.revert_reason
        assert not exc_info.value.retryable
        assert fake_eth.sent == []

    def test_explicit_gas_limit_skips_estimate(self, submitter, encoded, relayer_account, fake_eth):
        submitter.submit(encoded, gas_limit=250_000)

        fake_eth.estimate_gas.assert_not_called()
        assert relayer_account.signed[-1]["gas"] == 250_000

    def test_legacy_fee_policy(self, submitter, encoded, relayer_account):
        submitter.submit(encoded)

        tx = relayer_account.signed[-1]
        assert tx["gasPrice"] == 0
        assert "maxFeePerGas" not in tx

    def test_dynamic_fees_from_node(self, mock_w3, relayer_account, fake_eth):
        fake_eth.gas_price = 30
        fake_eth.max_priority_fee = 2
        submitter = RelaySubmitter(mock_w3, relayer_account, TEST_HUB)

        assert submitter.resolve_fees() == FeeParameters(max_fee_per_gas=32, max_priority_fee_per_gas=2)

    def test_fee_bump_rounds_up(self):
        assert FeeParameters(gas_price=101).bumped(10) == FeeParameters(gas_price=112)
        assert FeeParameters(max_fee_per_gas=10, max_priority_fee_per_gas=1).bumped(0) == FeeParameters(
            max_fee_per_gas=10, max_priority_fee_per_gas=1
        )


class TestCounter:
    def test_sequential_submissions_use_consecutive_counters(self, submitter, builder, sender, relayer_account):
        first = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 1))
        second = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 2))

        assert (first.tx_nonce, second.tx_nonce) == (START_COUNTER, START_COUNTER + 1)
        assert first.tx_hash != second.tx_hash

    def test_concurrent_submissions_never_share_a_counter(self, submitter, builder, sender, relayer_account):
        calls = [_encoded_with_nonce(builder, sender, relayer_account, nonce) for nonce in range(8)]
        results = []
        lock = threading.Lock()

        def worker(call):
            submitted = submitter.submit(call, gas_limit=100_000)
            with lock:
                results.append(submitted.tx_nonce)

        threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert sorted(results) == list(range(START_COUNTER, START_COUNTER + 8))

    def test_rejected_send_resyncs_counter(self, submitter, encoded, fake_eth, monkeypatch):
        original = fake_eth.send_raw_transaction

        def reject(raw):
            raise ValueError("nonce too low")

        monkeypatch.setattr(fake_eth, "send_raw_transaction", reject)
        with pytest.raises(SubmissionError) as exc_info:
            submitter.submit(encoded)
        assert exc_info.value.retryable
        assert submitter.counter._next is None

        fake_eth.pending_count = START_COUNTER + 3
        monkeypatch.setattr(fake_eth, "send_raw_transaction", original)
        submitted = submitter.submit(encoded)

        assert submitted.tx_nonce == START_COUNTER + 3

    def test_explicit_counter(self, submitter, encoded):
        submitted = submitter.submit(encoded, tx_nonce=START_COUNTER + 10)

        assert submitted.tx_nonce == START_COUNTER + 10


class TestReplacement:
    def test_replacement_reuses_counter(self, submitter, builder, sender, relayer_account, fake_eth):
        fake_eth.auto_mine = False
        first = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 1))
        second = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 2), replace=first)

        assert second.tx_nonce == first.tx_nonce
        assert second.replaces == first.tx_hash
        assert second.tx_hash != first.tx_hash

    def test_replacement_applies_fee_bump(self, mock_w3, relayer_account, builder, sender, fake_eth):
        fake_eth.auto_mine = False
        submitter = RelaySubmitter(
            mock_w3,
            relayer_account,
            TEST_HUB,
            gas_policy=GasPolicy(gas_price=100),
            replacement=ReplacementPolicy(fee_bump_percent=10),
        )
        first = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 1))
        second = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 2), replace=first)

        assert second.fees.gas_price == 110
        assert relayer_account.signed[-1]["gasPrice"] == 110

    def test_replacement_counter_must_match(self, submitter, builder, sender, relayer_account):
        first = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 1))

        with pytest.raises(InvalidArgument):
            submitter.submit(
                _encoded_with_nonce(builder, sender, relayer_account, 2),
                replace=first,
                tx_nonce=first.tx_nonce + 1,
            )

    def test_superseded_transaction_is_detected(self, submitter, builder, sender, relayer_account, fake_eth):
        fake_eth.auto_mine = False
        first = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 1))
        second = submitter.submit(_encoded_with_nonce(builder, sender, relayer_account, 2), replace=first)
        fake_eth.mine(second.tx_hash)

        assert submitter.wait(first).status is SubmissionState.SUPERSEDED
        assert submitter.wait(second).status is SubmissionState.CONFIRMED
        assert submitter.receipt_or_none(first.tx_hash) is None


class TestConfirmation:
    def test_confirmed(self, submitter, encoded):
        outcome = submitter.relay(encoded)

        assert outcome.success
        assert outcome.status is SubmissionState.CONFIRMED
        assert outcome.tx_nonce == START_COUNTER
        assert outcome.block_number is not None
        assert outcome.signed is encoded.signed

    def test_reverted(self, submitter, encoded, fake_eth):
        fake_eth.auto_mine = False
        submitted = submitter.submit(encoded)
        fake_eth.mine(submitted.tx_hash, status=0)

        outcome = submitter.wait(submitted)

        assert outcome.status is SubmissionState.REVERTED
        assert not outcome.success

    def test_timeout(self, submitter, encoded, fake_eth):
        fake_eth.auto_mine = False
        submitted = submitter.submit(encoded)

        with pytest.raises(UnconfirmedTimeout) as exc_info:
            submitter.wait(submitted, timeout=0)

        assert exc_info.value.tx_hash == submitted.tx_hash
        assert exc_info.value.tx_nonce == submitted.tx_nonce
        assert exc_info.value.retryable


class TestRetries:
    def test_transient_errors_are_retried(self):
        attempts = []

        def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise requests.exceptions.ConnectionError("connection reset")
            return 1337

        assert call_with_retries(flaky, attempts=3) == 1337
        assert len(attempts) == 3

    def test_gives_up_after_attempts(self):
        def down():
            raise requests.exceptions.Timeout("read timed out")

        with pytest.raises(requests.exceptions.Timeout):
            call_with_retries(down, attempts=2)

    def test_other_errors_are_not_retried(self):
        attempts = []

        def broken():
            attempts.append(1)
            raise ValueError("bad request")

        with pytest.raises(ValueError):
            call_with_retries(broken)
        assert len(attempts) == 1
