"""Circle CCTP V2 attestation service client.

Poll Circle's Iris API for the signed attestation of a burn, needed to call
``receiveMessage()`` on the destination chain.

The attestation goes through these Iris API statuses:

- **404**: transaction not yet indexed by Circle
- **pending_confirmations**: burn detected, waiting for block finality
- **complete**: attestation signed and ready

Polling uses a fixed interval and is bounded by the number of attempts, not by
wall-clock time. Every HTTP request has its own timeout, so a single hung
request cannot stall the relayer. Transport and parse errors are expected while
polling: they are logged and the poll is retried.

Example::

    import requests

    from cctp_relay.attestation import AttestationClient
    from cctp_relay.constants import IRIS_API_BASE_URL

    client = AttestationClient(requests.Session(), api_base_url=IRIS_API_BASE_URL)
    record = client.fetch(
        source_domain=0,
        tx_hash="0x...",
        poll_interval=5.0,
        max_attempts=60,
        request_timeout=30.0,
    )
    # record.message and record.attestation go to receiveMessage()
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

import requests

from cctp_relay.constants import (
    ATTESTATION_PENDING,
    ATTESTATION_STATUS_COMPLETE,
    CCTP_DOMAIN_NAMES,
    CCTP_EXPLORER_BASE_URL,
    DOMAIN_TO_EXPLORER_CHAIN,
    IRIS_API_BASE_URL,
    IRIS_API_SANDBOX_URL,
)
from cctp_relay.errors import AttestationTimeout
from cctp_relay.nonce import IdempotencyOracle
from cctp_relay.utils import hex_to_bytes, normalise_tx_hash

logger = logging.getLogger(__name__)

#: HTTP 404 status code indicating resource not found
HTTP_NOT_FOUND = 404

#: Phase reported before Iris has indexed the burn
PHASE_WAITING_FOR_INDEXING = "waiting_for_indexing"

#: Progress callback: ``(iris_status, attempt)``
PhaseCallback = Callable[[str, int], None]


def get_iris_api_url(testnet: bool) -> str:
    """Pick the production or sandbox Iris host."""
    return IRIS_API_SANDBOX_URL if testnet else IRIS_API_BASE_URL


def cctp_explorer_url(source_domain: int, transaction_hash: str) -> str | None:
    """Build a Range CCTP explorer URL for a burn transaction, or None if unknown chain."""
    chain = DOMAIN_TO_EXPLORER_CHAIN.get(source_domain)
    if chain is None:
        return None
    return f"{CCTP_EXPLORER_BASE_URL}?id={chain}/{transaction_hash}"


@dataclass(slots=True, frozen=True)
class DecodedMessageBody:
    """Parts of Iris ``decodedMessage.decodedMessageBody`` the relayer reports."""

    #: Burned amount in raw token units
    amount: int | None

    #: Recipient of the mint on the destination chain
    mint_recipient: str | None


@dataclass(slots=True)
class AttestationRecord:
    """A complete Iris attestation for one burn transaction.

    Created per completion attempt and never persisted.
    """

    #: The CCTP message bytes to relay to the destination chain
    message: bytes

    #: The signed attestation bytes from Circle's Iris service
    attestation: bytes

    #: Iris ``eventNonce``, the key of ``usedNonces`` on the destination.
    #: Distinct from the nonce in the bridge contract's ``Bridge`` event.
    protocol_nonce: str

    #: Status from Iris API (always ``"complete"`` for a returned record)
    status: str

    #: Burn transaction hash on the source chain
    transaction_hash: str

    #: Amount and recipient, if Iris decoded the message
    decoded_body: DecodedMessageBody | None = None

    #: Destination already consumed this nonce when the attestation was fetched
    already_finalized: bool = False

    #: Number of polls it took to get the attestation
    attempts: int = 0


def _parse_decoded_body(msg: dict) -> DecodedMessageBody | None:
    decoded = msg.get("decodedMessage")
    body = decoded.get("decodedMessageBody") if isinstance(decoded, dict) else None
    if not isinstance(body, dict) or not body:
        return None

    amount = body.get("amount")
    try:
        amount = int(amount) if amount is not None else None
    except (TypeError, ValueError):
        amount = None

    return DecodedMessageBody(amount=amount, mint_recipient=body.get("mintRecipient"))


def _is_complete(msg: dict) -> bool:
    attestation_hex = msg.get("attestation")
    return msg.get("status") == ATTESTATION_STATUS_COMPLETE and bool(attestation_hex) and attestation_hex != ATTESTATION_PENDING


class AttestationClient:
    """Poll Iris for burn attestations.

    Stateless per call, so one client can be shared across watcher threads.
    :class:`requests.Session` is not guaranteed thread-safe: pass
    ``session_factory`` and each thread gets its own session.

    :param session:
        HTTP session used for all requests. For single-threaded use.

    :param api_base_url:
        Iris API base URL. Use :func:`get_iris_api_url` to pick mainnet or sandbox.

    :param oracle:
        Destination-chain nonce lookup used to flag records that were already received.
        When ``None``, records are never flagged.

    :param destination_domain:
        CCTP domain the oracle checks.

    :param sleep:
        Sleep function between polls. Tests replace it.

    :param session_factory:
        Creates one session per calling thread, e.g. ``requests.Session``.
        Give either this or ``session``.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        api_base_url: str = IRIS_API_BASE_URL,
        oracle: IdempotencyOracle | None = None,
        destination_domain: int | None = None,
        sleep: Callable[[float], None] = time.sleep,
        session_factory: Callable[[], requests.Session] | None = None,
    ):
        assert (session is None) != (session_factory is None), "Give either session or session_factory"
        assert oracle is None or destination_domain is not None, "destination_domain is needed with oracle"
        self._session = session
        self._session_factory = session_factory
        self._local = threading.local()
        self.api_base_url = api_base_url.rstrip("/")
        self.oracle = oracle
        self.destination_domain = destination_domain
        self.sleep = sleep

    @property
    def session(self) -> requests.Session:
        """Session for the calling thread."""
        if self._session_factory is None:
            return self._session
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._local.session = self._session_factory()
        return session

    def __repr__(self) -> str:
        return f"<AttestationClient api_base_url={self.api_base_url!r} destination_domain={self.destination_domain}>"

    def get_messages_url(self, source_domain: int, tx_hash: str) -> str:
        return f"{self.api_base_url}/v2/messages/{source_domain}?transactionHash={tx_hash}"

    def poll_once(self, source_domain: int, tx_hash: str, request_timeout: float) -> dict | None:
        """One Iris query.

        :return:
            First entry of the ``messages`` array, or ``None`` if Iris has nothing yet.

        :raise requests.RequestException:
            Transport error, timeout or non-404 HTTP error.

        :raise ValueError:
            Response body is not JSON.
        """
        url = self.get_messages_url(source_domain, normalise_tx_hash(tx_hash))
        response = self.session.get(url, timeout=request_timeout)

        # Iris API returns 404 when the transaction is not yet indexed
        if response.status_code == HTTP_NOT_FOUND:
            return None

        response.raise_for_status()

        data = response.json()
        messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(messages, list) or not messages or not isinstance(messages[0], dict):
            return None
        return messages[0]

    def fetch(
        self,
        source_domain: int,
        tx_hash: str,
        poll_interval: float = 5.0,
        max_attempts: int = 60,
        request_timeout: float = 30.0,
        on_phase_change: PhaseCallback | None = None,
    ) -> AttestationRecord:
        """Poll until the attestation is complete or the attempts run out.

        :param source_domain:
            CCTP domain ID of the source chain (e.g. 0 for Ethereum).

        :param tx_hash:
            Burn transaction hash on the source chain. ``0x`` prefix is added if missing.

        :param poll_interval:
            Seconds to sleep after each unsuccessful attempt.

        :param max_attempts:
            Number of queries before giving up.

        :param request_timeout:
            Timeout in seconds for each HTTP request.

        :param on_phase_change:
            Optional callback invoked on every poll attempt with
            ``(status, attempt)``, where *status* is ``"waiting_for_indexing"``,
            the Iris status string, or ``"complete"``.

        :return:
            Complete :class:`AttestationRecord`.

        :raise AttestationTimeout:
            No complete attestation after ``max_attempts`` queries.
        """
        assert max_attempts > 0, f"max_attempts must be positive, got {max_attempts}"

        tx_hash = normalise_tx_hash(tx_hash)
        domain_name = CCTP_DOMAIN_NAMES.get(source_domain, f"domain-{source_domain}")
        explorer_url = cctp_explorer_url(source_domain, tx_hash)
        explorer_suffix = f"\n  Explorer: {explorer_url}" if explorer_url else ""

        logger.info(
            "Waiting for CCTP attestation on %s: tx=%s\n  Iris API: %s%s",
            domain_name,
            tx_hash,
            self.get_messages_url(source_domain, tx_hash),
            explorer_suffix,
        )

        started = time.monotonic()

        for attempt in range(1, max_attempts + 1):
            # First attempt at INFO so the user sees the poll started
            log_level = logging.INFO if attempt == 1 else logging.DEBUG
            logger.log(
                log_level,
                "Polling CCTP attestation: %s (domain %s), tx=%s, attempt=%d/%d",
                domain_name,
                source_domain,
                tx_hash,
                attempt,
                max_attempts,
            )

            try:
                msg = self.poll_once(source_domain, tx_hash, request_timeout)
            except (requests.RequestException, ValueError) as e:
                logger.warning("Error fetching attestation for tx %s (attempt %d/%d): %s", tx_hash, attempt, max_attempts, e)
                msg = None

            if msg is None:
                phase = PHASE_WAITING_FOR_INDEXING
            elif _is_complete(msg):
                try:
                    record = self._build_record(msg, tx_hash, attempt)
                except ValueError as e:
                    # Garbled hex fields, treat as not ready
                    logger.warning("Malformed attestation payload for tx %s: %s", tx_hash, e)
                    phase = msg.get("status", "")
                else:
                    if on_phase_change is not None:
                        on_phase_change(ATTESTATION_STATUS_COMPLETE, attempt)
                    logger.info(
                        "Attestation complete for %s after %d attempts (%.1fs): tx=%s, nonce=%s",
                        domain_name,
                        attempt,
                        time.monotonic() - started,
                        tx_hash,
                        record.protocol_nonce,
                    )
                    return self._decorate(record)
            else:
                phase = msg.get("status") or "unknown"

            if on_phase_change is not None:
                on_phase_change(phase, attempt)

            logger.debug("Attestation status for %s: %s (waiting for 'complete')", domain_name, phase)

            if attempt < max_attempts:
                self.sleep(poll_interval)

        raise AttestationTimeout(source_domain, tx_hash, max_attempts)

    def _build_record(self, msg: dict, tx_hash: str, attempt: int) -> AttestationRecord:
        return AttestationRecord(
            message=hex_to_bytes(msg.get("message")),
            attestation=hex_to_bytes(msg["attestation"]),
            protocol_nonce=str(msg.get("eventNonce", "")),
            status=msg["status"],
            transaction_hash=tx_hash,
            decoded_body=_parse_decoded_body(msg),
            attempts=attempt,
        )

    def _decorate(self, record: AttestationRecord) -> AttestationRecord:
        """Flag the record if the destination already consumed its nonce."""
        if self.oracle is None or not record.protocol_nonce:
            return record
        record.already_finalized = self.oracle.is_finalized(self.destination_domain, record.protocol_nonce)
        return record
