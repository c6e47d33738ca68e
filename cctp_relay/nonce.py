"""Check whether a CCTP message has already been received on the destination chain.

``MessageTransmitterV2.usedNonces(bytes32)`` returns non-zero once a message
nonce has been consumed by ``receiveMessage()``. The relayer reads it

- before submitting, to skip transactions that are guaranteed to revert
- after a failed submission, to tell a lost race apart from a real failure

A wrong ``False`` only costs a redundant, safely rejected submission, so read
errors are logged and reported as "not finalised".
"""

import logging

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from cctp_relay.constants import MESSAGE_TRANSMITTER_V2_ABI
from cctp_relay.domain import DomainRegistry

logger = logging.getLogger(__name__)


def nonce_to_bytes32(nonce: str | int | bytes) -> bytes:
    """Convert an Iris ``eventNonce`` to the ``bytes32`` key of ``usedNonces``.

    CCTP V2 nonces are 32-byte hex strings. Older or test payloads carry a
    decimal integer, which is encoded big-endian.

    :raise ValueError:
        Nonce is not hex, not an integer, or longer than 32 bytes.
    """
    if isinstance(nonce, (bytes, bytearray)):
        raw = bytes(nonce)
    elif isinstance(nonce, int):
        raw = nonce.to_bytes(32, "big")
    elif nonce.startswith(("0x", "0X")):
        raw = bytes.fromhex(nonce[2:].rjust(64, "0"))
    else:
        raw = int(nonce).to_bytes(32, "big")

    if len(raw) > 32:
        raise ValueError(f"Nonce does not fit bytes32: {nonce!r}")
    return raw.rjust(32, b"\x00")


class IdempotencyOracle:
    """Read ``usedNonces`` on the destination chain's transmitter."""

    def __init__(self, web3: Web3, registry: DomainRegistry):
        self.web3 = web3
        self.registry = registry

    def is_finalized(self, domain: int, protocol_nonce: str | int | bytes) -> bool:
        """Has a message with this nonce already been received.

        :param domain:
            CCTP domain of the destination chain this oracle's ``web3`` is connected to.

        :param protocol_nonce:
            ``eventNonce`` from Iris. Not the bridge contract's own event nonce.

        :return:
            ``True`` if finalised. ``False`` when not, when the domain is unsupported,
            or when the read fails.
        """
        transmitter = self.registry.transmitter_for(domain)
        if transmitter is None:
            logger.warning(
                "No MessageTransmitterV2 known for %s, cannot check nonce %s, assuming not received",
                self.registry.domain_name(domain),
                protocol_nonce,
            )
            return False

        try:
            nonce_key = nonce_to_bytes32(protocol_nonce)
            contract = self.web3.eth.contract(
                address=Web3.to_checksum_address(transmitter),
                abi=MESSAGE_TRANSMITTER_V2_ABI,
            )
            used = contract.functions.usedNonces(nonce_key).call()
        except (Web3Exception, requests.RequestException, ValueError, OverflowError, TimeoutError) as e:
            logger.warning(
                "Failed to read usedNonces(%s) on %s at %s: %s",
                protocol_nonce,
                self.registry.domain_name(domain),
                transmitter,
                e,
            )
            return False

        logger.debug("usedNonces(%s) on %s returned %s", protocol_nonce, self.registry.domain_name(domain), used)
        return int(used) != 0
