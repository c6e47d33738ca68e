"""Complete a single CCTP transfer: attest, check, receive.

Each transfer runs through this state machine::

    start -> fetching_attestation -> already_finalized_pre
                                  -> ready_to_submit -> submitting -> confirmed
                                                                   -> already_finalized_post
                                                                   -> failed

The destination's ``usedNonces`` is checked twice: when the attestation is
fetched, and again if the submission fails. This lets several relayers, or
repeated manual runs, race on the same transfer without double-submitting and
without reporting a lost race as an error. No lock is held across transfers.

Per-transfer errors never escape :meth:`TransferCompleter.complete`; they are
returned as a :class:`TransferOutcome` with kind ``failed``.
"""

import enum
import logging
from dataclasses import dataclass
from typing import Protocol

from web3.types import TxReceipt

from cctp_relay.attestation import AttestationClient, AttestationRecord
from cctp_relay.domain import DomainRegistry
from cctp_relay.errors import AttestationTimeout, SubmissionFailure, UnsupportedDomain
from cctp_relay.nonce import IdempotencyOracle
from cctp_relay.utils import normalise_tx_hash
from cctp_relay.watcher import BurnEvent

logger = logging.getLogger(__name__)

#: Reason prefix for burns addressed to another destination domain
SKIPPED_REASON_PREFIX = "Skipped: "


class TransferState(enum.Enum):
    """Where a transfer is in the completion pipeline."""

    start = "start"
    fetching_attestation = "fetching_attestation"
    already_finalized_pre = "already_finalized_pre"
    ready_to_submit = "ready_to_submit"
    submitting = "submitting"
    confirmed = "confirmed"
    already_finalized_post = "already_finalized_post"
    failed = "failed"


class TransferOutcomeKind(enum.Enum):
    """Terminal result of a completion attempt."""

    #: We minted on the destination chain
    confirmed = "confirmed"

    #: Someone, possibly an earlier run of ours, already minted
    already_finalized = "already_finalized"

    #: Could not complete; see the reason
    failed = "failed"


@dataclass(slots=True, frozen=True)
class TransferOutcome:
    """Result of :meth:`TransferCompleter.complete`."""

    kind: TransferOutcomeKind

    #: Burn transaction hash on the source chain
    burn_tx_hash: str

    #: ``receiveMessage`` transaction hash, for confirmed outcomes
    receipt_tx_hash: str | None = None

    #: Destination block number, for confirmed outcomes
    block_number: int | None = None

    #: Human-readable failure reason
    reason: str | None = None

    #: The exception behind a failed outcome
    error: Exception | None = None

    #: Attestation used, if one was fetched
    record: AttestationRecord | None = None

    @property
    def is_success(self) -> bool:
        """Transfer is done on the destination, by us or by someone else."""
        return self.kind != TransferOutcomeKind.failed

    @property
    def is_skipped(self) -> bool:
        """Burn was for another destination domain and never attempted."""
        return self.kind == TransferOutcomeKind.failed and (self.reason or "").startswith(SKIPPED_REASON_PREFIX)

    def describe(self) -> str:
        if self.kind == TransferOutcomeKind.confirmed:
            return f"{self.burn_tx_hash}: confirmed, destination tx {self.receipt_tx_hash} in block {self.block_number}"
        elif self.kind == TransferOutcomeKind.already_finalized:
            return f"{self.burn_tx_hash}: already finalized on destination"
        return f"{self.burn_tx_hash}: failed, {self.reason}"


class MessageSubmitter(Protocol):
    """What :class:`TransferCompleter` needs from the submission sink."""

    def submit(self, transmitter: str, message: bytes, attestation: bytes) -> TxReceipt: ...


class TransferCompleter:
    """Drive transfers from one source domain into one destination domain.

    :param attestation_client:
        Iris client. Its oracle performs the pre-submission check.

    :param oracle:
        Destination nonce lookup for the post-failure check.

    :param submitter:
        Sends ``receiveMessage`` and waits for the receipt,
        see :class:`cctp_relay.submission.ReceiveMessageSubmitter`.
    """

    def __init__(
        self,
        attestation_client: AttestationClient,
        oracle: IdempotencyOracle,
        submitter: MessageSubmitter,
        registry: DomainRegistry,
        source_domain: int,
        destination_domain: int,
        poll_interval: float = 5.0,
        max_attempts: int = 60,
        request_timeout: float = 30.0,
    ):
        self.attestation_client = attestation_client
        self.oracle = oracle
        self.submitter = submitter
        self.registry = registry
        self.source_domain = source_domain
        self.destination_domain = destination_domain
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.request_timeout = request_timeout

    def __repr__(self) -> str:
        return f"<TransferCompleter {self.registry.domain_name(self.source_domain)} -> {self.registry.domain_name(self.destination_domain)}>"

    def _enter(self, burn_tx_hash: str, state: TransferState):
        logger.debug("Transfer %s: %s", burn_tx_hash, state.value)

    def _finish(self, outcome: TransferOutcome, state: TransferState) -> TransferOutcome:
        self._enter(outcome.burn_tx_hash, state)
        if outcome.kind == TransferOutcomeKind.failed:
            logger.error("CCTP transfer %s", outcome.describe())
        else:
            logger.info("CCTP transfer %s", outcome.describe())
        return outcome

    def complete(self, burn_tx_hash: str) -> TransferOutcome:
        """Finalise the transfer started by a burn transaction.

        Safe to call repeatedly for the same burn.

        :param burn_tx_hash:
            Burn transaction on the source chain.

        :return:
            Terminal outcome. Never raises for per-transfer failures.
        """
        burn_tx_hash = normalise_tx_hash(burn_tx_hash)
        self._enter(burn_tx_hash, TransferState.start)

        logger.info(
            "Completing CCTP transfer %s: %s -> %s",
            burn_tx_hash,
            self.registry.domain_name(self.source_domain),
            self.registry.domain_name(self.destination_domain),
        )

        self._enter(burn_tx_hash, TransferState.fetching_attestation)
        try:
            record = self.attestation_client.fetch(
                source_domain=self.source_domain,
                tx_hash=burn_tx_hash,
                poll_interval=self.poll_interval,
                max_attempts=self.max_attempts,
                request_timeout=self.request_timeout,
            )
        except AttestationTimeout as e:
            return self._finish(
                TransferOutcome(TransferOutcomeKind.failed, burn_tx_hash, reason=str(e), error=e),
                TransferState.failed,
            )

        if record.decoded_body is not None:
            logger.info(
                "Attestation for %s: nonce=%s amount=%s recipient=%s",
                burn_tx_hash,
                record.protocol_nonce,
                record.decoded_body.amount,
                record.decoded_body.mint_recipient,
            )

        if record.already_finalized:
            return self._finish(
                TransferOutcome(TransferOutcomeKind.already_finalized, burn_tx_hash, record=record),
                TransferState.already_finalized_pre,
            )

        transmitter = self.registry.transmitter_for(self.destination_domain)
        if transmitter is None:
            e = UnsupportedDomain(self.destination_domain)
            return self._finish(
                TransferOutcome(TransferOutcomeKind.failed, burn_tx_hash, reason=str(e), error=e, record=record),
                TransferState.failed,
            )

        self._enter(burn_tx_hash, TransferState.ready_to_submit)
        self._enter(burn_tx_hash, TransferState.submitting)
        try:
            receipt = self.submitter.submit(transmitter, record.message, record.attestation)
        except SubmissionFailure as e:
            return self._submission_failed(burn_tx_hash, record, e, e.reason)
        except Exception as e:
            # Signer or queue errors, or a custom submitter; still a per-transfer failure
            logger.warning("Unexpected error submitting %s", burn_tx_hash, exc_info=True)
            return self._submission_failed(burn_tx_hash, record, e, str(e) or e.__class__.__name__)

        return self._finish(
            TransferOutcome(
                TransferOutcomeKind.confirmed,
                burn_tx_hash,
                receipt_tx_hash=normalise_tx_hash(receipt["transactionHash"]),
                block_number=receipt["blockNumber"],
                record=record,
            ),
            TransferState.confirmed,
        )

    def _submission_failed(self, burn_tx_hash: str, record: AttestationRecord, e: Exception, reason: str) -> TransferOutcome:
        # Lost a race against another relayer, or an earlier attempt landed
        if self.oracle.is_finalized(self.destination_domain, record.protocol_nonce):
            logger.info("Submission for %s failed but nonce %s is used: %s", burn_tx_hash, record.protocol_nonce, e)
            return self._finish(
                TransferOutcome(TransferOutcomeKind.already_finalized, burn_tx_hash, record=record),
                TransferState.already_finalized_post,
            )
        return self._finish(
            TransferOutcome(TransferOutcomeKind.failed, burn_tx_hash, reason=reason, error=e, record=record),
            TransferState.failed,
        )

    def complete_burn_event(self, event: BurnEvent) -> TransferOutcome:
        """Complete a transfer observed by :class:`~cctp_relay.watcher.BurnEventWatcher`.

        Burns towards other domains are not ours to relay. They come back as
        ``failed`` with a reason starting with :data:`SKIPPED_REASON_PREFIX`
        and are logged at INFO, not as errors.
        """
        burn_tx_hash = normalise_tx_hash(event.source_tx_hash)
        if event.destination_domain != self.destination_domain:
            reason = (
                f"{SKIPPED_REASON_PREFIX}burn targets {self.registry.domain_name(event.destination_domain)}, "
                f"this relayer serves {self.registry.domain_name(self.destination_domain)}"
            )
            logger.info("CCTP transfer %s: %s", burn_tx_hash, reason)
            return TransferOutcome(TransferOutcomeKind.failed, burn_tx_hash, reason=reason)
        return self.complete(burn_tx_hash)
