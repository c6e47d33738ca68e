"""Relayer exceptions.

- :class:`ConfigurationError` is the only class that aborts the process
- Everything else is contained per transfer and reported as a
  :class:`~cctp_relay.completer.TransferOutcome`
"""


class CCTPRelayError(Exception):
    """Base class for relayer errors."""


class ConfigurationError(CCTPRelayError, ValueError):
    """Missing or malformed configuration.

    Raised before any network activity. Never retried.
    """


class UnknownChain(ConfigurationError):
    """EVM chain ID is not in the domain table."""

    def __init__(self, chain_id: int):
        self.chain_id = chain_id
        super().__init__(f"Unknown chain ID: {chain_id}")


class AttestationTimeout(CCTPRelayError, TimeoutError):
    """Iris did not produce a complete attestation within the allowed attempts."""

    def __init__(self, source_domain: int, transaction_hash: str, attempts: int):
        self.source_domain = source_domain
        self.transaction_hash = transaction_hash
        self.attempts = attempts
        super().__init__(f"CCTP attestation not ready after {attempts} attempts for tx {transaction_hash} on domain {source_domain}")


class UnsupportedDomain(CCTPRelayError):
    """Destination domain has no known ``MessageTransmitterV2`` deployment."""

    def __init__(self, domain: int):
        self.domain = domain
        super().__init__(f"No MessageTransmitterV2 address known for domain {domain}")


class SubmissionFailure(CCTPRelayError):
    """``receiveMessage()`` reverted or could not be broadcast."""

    def __init__(self, reason: str, tx_hash: str | None = None):
        self.reason = reason
        self.tx_hash = tx_hash
        message = reason if tx_hash is None else f"{reason} (tx {tx_hash})"
        super().__init__(message)
