"""Shared fixtures for the CCTP relayer tests."""

import pytest

from cctp_relay.attestation import AttestationClient
from cctp_relay.completer import TransferCompleter
from cctp_relay.domain import DEFAULT_DOMAIN_REGISTRY
from tests.cctp.fakes import BASE_DOMAIN, ETHEREUM_DOMAIN, FakeOracle, FakeSession, FakeSubmitter, SleepRecorder


@pytest.fixture()
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture()
def make_completer(oracle, sleep):
    """Build a completer for Ethereum -> Base around canned Iris responses."""

    def _make(responses: list, submitter: FakeSubmitter | None = None, max_attempts: int = 5, destination_domain: int = BASE_DOMAIN):
        session = FakeSession(responses)
        client = AttestationClient(
            session,
            api_base_url="https://iris.example",
            oracle=oracle,
            destination_domain=destination_domain,
            sleep=sleep,
        )
        submitter = submitter or FakeSubmitter(oracle)
        completer = TransferCompleter(
            attestation_client=client,
            oracle=oracle,
            submitter=submitter,
            registry=DEFAULT_DOMAIN_REGISTRY,
            source_domain=ETHEREUM_DOMAIN,
            destination_domain=destination_domain,
            poll_interval=2.0,
            max_attempts=max_attempts,
            request_timeout=10.0,
        )
        return completer, session, submitter

    return _make
