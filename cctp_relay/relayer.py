"""Wire the relayer components from a :class:`~cctp_relay.config.RelayConfig`.

Example::

    from cctp_relay.config import load_config
    from cctp_relay.relayer import create_relayer

    relayer = create_relayer(load_config())
    outcome = relayer.complete_transfer("0x...")
"""

import logging
import signal

import requests
from web3 import Web3

from cctp_relay.attestation import AttestationClient
from cctp_relay.completer import TransferCompleter, TransferOutcome
from cctp_relay.config import RelayConfig
from cctp_relay.domain import DEFAULT_DOMAIN_REGISTRY, DomainRegistry
from cctp_relay.nonce import IdempotencyOracle
from cctp_relay.submission import ReceiveMessageSubmitter
from cctp_relay.utils import get_url_domain
from cctp_relay.watcher import BurnEventWatcher

logger = logging.getLogger(__name__)


class CCTPRelayer:
    """One source chain, one destination chain, one relay account."""

    def __init__(
        self,
        config: RelayConfig,
        completer: TransferCompleter,
        source_web3: Web3,
        submitter: ReceiveMessageSubmitter | None = None,
    ):
        self.config = config
        self.completer = completer
        self.source_web3 = source_web3
        self.submitter = submitter
        self.watcher: BurnEventWatcher | None = None

    def complete_transfer(self, burn_tx_hash: str) -> TransferOutcome:
        return self.completer.complete(burn_tx_hash)

    def watch_and_relay(self, bridge_address: str, install_signal_handlers: bool = True):
        """Relay every burn on ``bridge_address`` until SIGINT or SIGTERM."""
        self.watcher = BurnEventWatcher(
            self.source_web3,
            poll_interval=self.config.poll_interval,
            max_workers=self.config.max_workers,
            confirmations=self.config.confirmations,
        )

        if install_signal_handlers:

            def _handle_signal(signum, frame):
                logger.info("Received signal %d, stopping relayer", signum)
                self.watcher.stop()

            signal.signal(signal.SIGINT, _handle_signal)
            signal.signal(signal.SIGTERM, _handle_signal)

        logger.info("Relayer is running. Press Ctrl+C to stop.")
        self.watcher.watch(bridge_address, self.completer.complete_burn_event)

    def close(self):
        if self.submitter is not None:
            self.submitter.close()


def create_web3(rpc_url: str, timeout: float = 30.0) -> Web3:
    logger.info("Connecting to %s", get_url_domain(rpc_url))
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))


def create_relayer(config: RelayConfig, registry: DomainRegistry = DEFAULT_DOMAIN_REGISTRY) -> CCTPRelayer:
    """Build all components. Opens no connections until first use."""
    source_web3 = create_web3(config.source_rpc_url, timeout=config.request_timeout)
    dest_web3 = create_web3(config.dest_rpc_url, timeout=config.request_timeout)

    oracle = IdempotencyOracle(dest_web3, registry)
    attestation_client = AttestationClient(
        session_factory=requests.Session,
        api_base_url=config.iris_api_url,
        oracle=oracle,
        destination_domain=config.dest_domain,
    )
    submitter = ReceiveMessageSubmitter(dest_web3, config.get_account())

    completer = TransferCompleter(
        attestation_client=attestation_client,
        oracle=oracle,
        submitter=submitter,
        registry=registry,
        source_domain=config.source_domain,
        destination_domain=config.dest_domain,
        poll_interval=config.poll_interval,
        max_attempts=config.max_retries,
        request_timeout=config.request_timeout,
    )

    logger.info(
        "CCTP relayer %s -> %s, relay account %s, Iris %s",
        registry.domain_name(config.source_domain),
        registry.domain_name(config.dest_domain),
        submitter.address,
        config.iris_api_url,
    )

    return CCTPRelayer(config, completer, source_web3, submitter)
