"""Relayer configuration from environment variables.

Everything is validated before any network connection is opened. Bad values
raise :class:`~cctp_relay.errors.ConfigurationError`.

Environment variables
---------------------
- ``SOURCE_CHAIN_ID``, ``DEST_CHAIN_ID``: EVM chain IDs (required)
- ``SOURCE_RPC_URL``, ``DEST_RPC_URL``: JSON-RPC endpoints (required)
- ``PRIVATE_KEY``: relay account key, ``0x`` prefix optional (required)
- ``TX_HASH``: complete this burn once, or
- ``WATCH_ADDRESS``: watch this bridge contract until interrupted
- ``POLL_INTERVAL``: seconds between attestation polls (default 5)
- ``MAX_RETRIES``: attestation polls before giving up (default 60)
- ``REQUEST_TIMEOUT``: seconds per Iris request (default 30)
- ``TESTNET``: ``true`` to use the Iris sandbox
- ``MAX_WORKERS``: transfers relayed in parallel when watching (default 4)
- ``CONFIRMATIONS``: blocks to stay behind the source head when watching (default 0)
"""

import os
import re
from dataclasses import dataclass, field
from typing import Mapping

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from eth_utils import ValidationError
from web3 import Web3

from cctp_relay.attestation import get_iris_api_url
from cctp_relay.domain import DEFAULT_DOMAIN_REGISTRY, DomainRegistry
from cctp_relay.errors import ConfigurationError
from cctp_relay.utils import is_valid_tx_hash, normalise_tx_hash

#: Default seconds between attestation polls
DEFAULT_POLL_INTERVAL = 5.0

#: Default number of attestation polls
DEFAULT_MAX_RETRIES = 60

#: Default timeout for a single Iris request
DEFAULT_REQUEST_TIMEOUT = 30.0

#: Default watcher parallelism
DEFAULT_MAX_WORKERS = 4

_PRIVATE_KEY_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """Validated relayer settings."""

    source_chain_id: int
    dest_chain_id: int
    source_domain: int
    dest_domain: int
    source_rpc_url: str
    dest_rpc_url: str
    private_key: str = field(repr=False)
    poll_interval: float = DEFAULT_POLL_INTERVAL
    max_retries: int = DEFAULT_MAX_RETRIES
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    testnet: bool = False
    tx_hash: str | None = None
    watch_address: HexAddress | None = None
    max_workers: int = DEFAULT_MAX_WORKERS
    confirmations: int = 0

    @property
    def iris_api_url(self) -> str:
        return get_iris_api_url(self.testnet)

    def get_account(self) -> LocalAccount:
        return Account.from_key(self.private_key)


def _require(environ: Mapping[str, str], name: str) -> str:
    value = environ.get(name, "").strip()
    if not value:
        raise ConfigurationError(f"{name} environment variable is required")
    return value


def _int(environ: Mapping[str, str], name: str, default: int | None = None, minimum: int = 0) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        if default is None:
            raise ConfigurationError(f"{name} environment variable is required")
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < minimum:
        raise ConfigurationError(f"{name} must be at least {minimum}, got {value}")
    return value


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _bool(environ: Mapping[str, str], name: str) -> bool:
    raw = environ.get(name, "").strip().lower()
    if raw in ("", "false", "0", "no"):
        return False
    if raw in ("true", "1", "yes"):
        return True
    raise ConfigurationError(f"{name} must be true or false, got {raw!r}")


def _private_key(raw: str) -> str:
    if not raw.startswith("0x"):
        raw = f"0x{raw}"
    if not _PRIVATE_KEY_RE.match(raw):
        raise ConfigurationError("PRIVATE_KEY must be 32 bytes of hex")
    try:
        Account.from_key(raw)
    except (ValueError, ValidationError) as e:
        raise ConfigurationError("PRIVATE_KEY is not a valid private key") from e
    return raw


def load_config(
    environ: Mapping[str, str] | None = None,
    registry: DomainRegistry = DEFAULT_DOMAIN_REGISTRY,
) -> RelayConfig:
    """Read and validate relayer settings.

    :param environ:
        Variables to read. Defaults to :data:`os.environ`.

    :raise ConfigurationError:
        Missing or malformed value, or a chain ID outside the domain table.
    """
    if environ is None:
        environ = os.environ

    source_chain_id = _int(environ, "SOURCE_CHAIN_ID", minimum=1)
    dest_chain_id = _int(environ, "DEST_CHAIN_ID", minimum=1)

    # UnknownChain is a ConfigurationError
    source_domain = registry.domain_for_chain(source_chain_id)
    dest_domain = registry.domain_for_chain(dest_chain_id)

    tx_hash = environ.get("TX_HASH", "").strip() or None
    watch_address = environ.get("WATCH_ADDRESS", "").strip() or None

    if tx_hash and watch_address:
        raise ConfigurationError("Give either TX_HASH or WATCH_ADDRESS, not both")
    if not tx_hash and not watch_address:
        raise ConfigurationError("TX_HASH or WATCH_ADDRESS environment variable is required")

    if tx_hash:
        if not is_valid_tx_hash(tx_hash):
            raise ConfigurationError(f"TX_HASH is not a 32-byte hex transaction hash: {tx_hash!r}")
        tx_hash = normalise_tx_hash(tx_hash)

    if watch_address:
        if not Web3.is_address(watch_address):
            raise ConfigurationError(f"WATCH_ADDRESS is not an address: {watch_address!r}")
        watch_address = Web3.to_checksum_address(watch_address)

    return RelayConfig(
        source_chain_id=source_chain_id,
        dest_chain_id=dest_chain_id,
        source_domain=source_domain,
        dest_domain=dest_domain,
        source_rpc_url=_require(environ, "SOURCE_RPC_URL"),
        dest_rpc_url=_require(environ, "DEST_RPC_URL"),
        private_key=_private_key(_require(environ, "PRIVATE_KEY")),
        poll_interval=_float(environ, "POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
        max_retries=_int(environ, "MAX_RETRIES", DEFAULT_MAX_RETRIES, minimum=1),
        request_timeout=_float(environ, "REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
        testnet=_bool(environ, "TESTNET"),
        tx_hash=tx_hash,
        watch_address=watch_address,
        max_workers=_int(environ, "MAX_WORKERS", DEFAULT_MAX_WORKERS, minimum=1),
        confirmations=_int(environ, "CONFIRMATIONS", 0),
    )
