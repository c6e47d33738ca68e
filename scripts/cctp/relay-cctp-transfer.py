"""Complete CCTP V2 transfers on a destination chain.

Either finishes one burn transaction, or watches a bridge contract and relays
every ``Bridge`` event until interrupted with Ctrl+C.

Environment variables
---------------------
- ``SOURCE_CHAIN_ID``, ``DEST_CHAIN_ID``: EVM chain IDs, e.g. ``1`` and ``8453``.
- ``SOURCE_RPC_URL``, ``DEST_RPC_URL``: JSON-RPC endpoints.
- ``PRIVATE_KEY``: relay account paying gas on the destination chain.
- ``TX_HASH``: burn transaction to complete, or
- ``WATCH_ADDRESS``: bridge contract to watch.
- ``POLL_INTERVAL``, ``MAX_RETRIES``, ``REQUEST_TIMEOUT``: attestation polling (default 5s, 60, 30s).
- ``TESTNET``: ``true`` to use the Iris sandbox.
- ``MAX_WORKERS``, ``CONFIRMATIONS``: watcher tuning.
- ``LOG_LEVEL``: Logging level (default: ``info``).

Usage::

    SOURCE_CHAIN_ID=1 DEST_CHAIN_ID=8453 TX_HASH=0x... \\
        poetry run python scripts/cctp/relay-cctp-transfer.py

    # Watch
    SOURCE_CHAIN_ID=1 DEST_CHAIN_ID=8453 WATCH_ADDRESS=0x... \\
        poetry run python scripts/cctp/relay-cctp-transfer.py
"""

import logging
import os
import sys

from tabulate import tabulate

from cctp_relay.completer import TransferOutcome, TransferOutcomeKind
from cctp_relay.config import load_config
from cctp_relay.errors import ConfigurationError
from cctp_relay.relayer import create_relayer
from cctp_relay.utils import setup_console_logging

logger = logging.getLogger(__name__)


def print_outcome(outcome: TransferOutcome):
    rows = [
        ["Burn tx", outcome.burn_tx_hash],
        ["Outcome", outcome.kind.value],
    ]
    if outcome.record is not None:
        rows.append(["Nonce", outcome.record.protocol_nonce])
        rows.append(["Attestation polls", outcome.record.attempts])
        if outcome.record.decoded_body is not None:
            rows.append(["Amount", outcome.record.decoded_body.amount])
            rows.append(["Recipient", outcome.record.decoded_body.mint_recipient])
    if outcome.receipt_tx_hash:
        rows.append(["Destination tx", outcome.receipt_tx_hash])
        rows.append(["Block", outcome.block_number])
    if outcome.reason:
        rows.append(["Reason", outcome.reason])
    print(tabulate(rows, tablefmt="simple"))


def main() -> int:
    log_level = os.environ.get("LOG_LEVEL", "info")
    setup_console_logging(default_log_level=log_level)

    try:
        config = load_config()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    relayer = create_relayer(config)
    try:
        if config.tx_hash:
            outcome = relayer.complete_transfer(config.tx_hash)
            print_outcome(outcome)
            return 0 if outcome.kind != TransferOutcomeKind.failed else 1

        relayer.watch_and_relay(config.watch_address)
        return 0
    finally:
        relayer.close()


if __name__ == "__main__":
    sys.exit(main())
