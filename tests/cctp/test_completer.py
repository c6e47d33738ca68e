"""Transfer completion state machine.

Covers the two-sided idempotency check: before submitting, and again after a
failed submission.
"""

import logging

import pytest

from cctp_relay.completer import TransferOutcomeKind
from cctp_relay.constants import MESSAGE_TRANSMITTER_V2
from cctp_relay.errors import AttestationTimeout, SubmissionFailure, UnsupportedDomain
from cctp_relay.watcher import BridgeSpeed, BurnEvent
from tests.cctp.fakes import BASE_DOMAIN, BURN_TX_HASH, RECEIVE_TX_HASH, FakeResponse, FakeSubmitter, complete_response, pending_response


def test_ethereum_to_base_confirmed_after_two_polls(make_completer, sleep):
    """Pending once, then complete: confirmed after exactly 2 polls."""
    completer, session, submitter = make_completer(
        [
            pending_response(),
            complete_response(nonce="123", attestation="0xAA"),
        ]
    )

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.confirmed
    assert outcome.burn_tx_hash == BURN_TX_HASH
    assert outcome.receipt_tx_hash == RECEIVE_TX_HASH
    assert outcome.block_number == 1234
    assert outcome.is_success
    assert outcome.record.attempts == 2
    assert len(session.calls) == 2
    assert sleep.calls == [2.0]

    assert session.calls[0][0].endswith(f"/v2/messages/0?transactionHash={BURN_TX_HASH}")
    assert submitter.calls == [(MESSAGE_TRANSMITTER_V2, bytes.fromhex("0102"), bytes.fromhex("aa"))]


def test_already_used_nonce_short_circuits(make_completer, oracle):
    """usedNonces(123) == 1 before the fetch: no submission at all."""
    oracle.used.add("123")
    completer, session, submitter = make_completer([complete_response(nonce="123")])

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.already_finalized
    assert outcome.receipt_tx_hash is None
    assert outcome.is_success
    assert submitter.calls == []


def test_complete_is_idempotent(make_completer, oracle):
    """Second call sees the nonce the first call used and submits nothing."""
    completer, session, submitter = make_completer([complete_response(nonce="123")])
    submitter.nonce = "123"

    first = completer.complete(BURN_TX_HASH)
    second = completer.complete(BURN_TX_HASH)

    assert first.kind == TransferOutcomeKind.confirmed
    assert second.kind == TransferOutcomeKind.already_finalized
    assert len(submitter.calls) == 1


def test_repeated_runs_after_finalization(make_completer, oracle):
    """Finalised by someone else: every run reports already finalised, none submits."""
    oracle.used.add("123")
    completer, session, submitter = make_completer([complete_response(nonce="123")])

    outcomes = [completer.complete(BURN_TX_HASH) for _ in range(2)]

    assert [o.kind for o in outcomes] == [TransferOutcomeKind.already_finalized] * 2
    assert submitter.calls == []


def test_lost_race_is_already_finalized(make_completer, oracle):
    """Revert, then the nonce shows as used: a lost race, not a failure."""
    submitter = FakeSubmitter(oracle, failure=SubmissionFailure("receiveMessage simulation reverted: Nonce already used"), mark_used_on_failure=True)
    submitter.nonce = "123"
    completer, session, submitter = make_completer([complete_response(nonce="123")], submitter=submitter)

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.already_finalized
    assert len(submitter.calls) == 1
    # Pre-check during fetch plus the post-failure re-check
    assert oracle.calls == [(BASE_DOMAIN, "123"), (BASE_DOMAIN, "123")]


def test_revert_with_unused_nonce_fails(make_completer, oracle):
    """Revert and the nonce is still free: fail with the submission error."""
    failure = SubmissionFailure("receiveMessage simulation reverted: Invalid attestation")
    submitter = FakeSubmitter(oracle, failure=failure)
    completer, session, submitter = make_completer([complete_response(nonce="123")], submitter=submitter)

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.failed
    assert outcome.reason == "receiveMessage simulation reverted: Invalid attestation"
    assert outcome.error is failure
    assert not outcome.is_success
    assert len(oracle.calls) == 2


def test_attestation_timeout_fails(make_completer, sleep):
    """No attestation within max attempts is a failed outcome, not an exception."""
    completer, session, submitter = make_completer([pending_response()], max_attempts=3)

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.failed
    assert isinstance(outcome.error, AttestationTimeout)
    assert outcome.error.attempts == 3
    assert "after 3 attempts" in outcome.reason
    assert len(session.calls) == 3
    assert sleep.calls == [2.0, 2.0]
    assert submitter.calls == []


def test_unsupported_destination_fails_without_submitting(make_completer):
    """HyperEVM (domain 19) has no known transmitter."""
    completer, session, submitter = make_completer([complete_response()], destination_domain=19)

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.failed
    assert isinstance(outcome.error, UnsupportedDomain)
    assert outcome.error.domain == 19
    assert submitter.calls == []


def test_bare_tx_hash(make_completer):
    completer, session, submitter = make_completer([complete_response()])

    outcome = completer.complete(BURN_TX_HASH[2:].upper())

    assert outcome.burn_tx_hash == BURN_TX_HASH
    assert outcome.kind == TransferOutcomeKind.confirmed


def _burn_event(destination_domain: int) -> BurnEvent:
    return BurnEvent(
        token="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        destination_domain=destination_domain,
        receiver="0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266",
        amount=1_000_000,
        nonce=5,
        speed=BridgeSpeed.standard,
        source_tx_hash=BURN_TX_HASH,
        block_number=100,
        log_index=0,
    )


def test_complete_burn_event(make_completer):
    completer, session, submitter = make_completer([complete_response()])

    outcome = completer.complete_burn_event(_burn_event(BASE_DOMAIN))

    assert outcome.kind == TransferOutcomeKind.confirmed
    assert len(submitter.calls) == 1


def test_burn_event_for_other_domain_is_skipped(make_completer, caplog):
    """Burns towards another destination never touch Iris or the chain, and are not logged as errors."""
    completer, session, submitter = make_completer([complete_response()])

    with caplog.at_level(logging.INFO, logger="cctp_relay.completer"):
        outcome = completer.complete_burn_event(_burn_event(3))

    assert outcome.kind == TransferOutcomeKind.failed
    assert outcome.is_skipped
    assert "Arbitrum" in outcome.reason
    assert session.calls == []
    assert submitter.calls == []
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]


def test_real_failure_is_not_skipped(make_completer):
    completer, session, submitter = make_completer([complete_response()], destination_domain=19)

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.failed
    assert not outcome.is_skipped


@pytest.mark.parametrize(
    "payload",
    [
        {"messages": ["garbage"]},
        {"messages": {"status": "complete"}},
        {"messages": [{"status": "complete", "attestation": "0xAA", "message": "0x0102", "eventNonce": "123", "decodedMessage": "garbage"}]},
    ],
)
def test_malformed_iris_payload_does_not_escape(make_completer, payload):
    """Garbled Iris responses are retried or tolerated, never raised out of complete()."""
    completer, session, submitter = make_completer([FakeResponse(200, payload), complete_response()])

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.confirmed
    assert len(submitter.calls) == 1


class ExplodingSubmitter:
    """Raises something other than SubmissionFailure."""

    def __init__(self, oracle, mark_used: str | None = None):
        self.oracle = oracle
        self.mark_used = mark_used
        self.calls = []

    def submit(self, transmitter: str, message: bytes, attestation: bytes):
        self.calls.append((transmitter, message, attestation))
        if self.mark_used:
            self.oracle.used.add(self.mark_used)
        raise RuntimeError("signer exploded")


def test_unexpected_submitter_error_fails(make_completer, oracle):
    """Any submission error becomes a failed outcome after the nonce re-check."""
    completer, session, submitter = make_completer([complete_response(nonce="123")], submitter=ExplodingSubmitter(oracle))

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.failed
    assert outcome.reason == "signer exploded"
    assert isinstance(outcome.error, RuntimeError)
    assert oracle.calls == [(BASE_DOMAIN, "123"), (BASE_DOMAIN, "123")]


def test_unexpected_submitter_error_with_used_nonce(make_completer, oracle):
    """The re-check also covers non-SubmissionFailure errors."""
    completer, session, submitter = make_completer([complete_response(nonce="123")], submitter=ExplodingSubmitter(oracle, mark_used="123"))

    outcome = completer.complete(BURN_TX_HASH)

    assert outcome.kind == TransferOutcomeKind.already_finalized


def test_outcome_description(make_completer):
    """Terminal outcomes report burn hash, kind and destination tx."""
    completer, session, submitter = make_completer([complete_response()])

    outcome = completer.complete(BURN_TX_HASH)

    description = outcome.describe()
    assert BURN_TX_HASH in description
    assert "confirmed" in description
    assert RECEIVE_TX_HASH in description
