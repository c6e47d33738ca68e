"""Bunch of small helpers shared by the relayer modules."""

import logging
import os
import re
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from hexbytes import HexBytes

logger = logging.getLogger(__name__)

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")


def normalise_tx_hash(tx_hash: str | bytes) -> str:
    """Return a lowercase ``0x``-prefixed transaction hash.

    Iris requires the ``0x`` prefix. Accepts raw bytes as returned by web3.
    """
    if isinstance(tx_hash, (bytes, bytearray)):
        return "0x" + bytes(tx_hash).hex()
    if not tx_hash.startswith("0x"):
        tx_hash = f"0x{tx_hash}"
    return tx_hash.lower()


def is_valid_tx_hash(tx_hash: str) -> bool:
    """Is this a 32-byte hex transaction hash (prefix optional)."""
    return bool(_TX_HASH_RE.match(normalise_tx_hash(tx_hash)))


def hex_to_bytes(value: str | bytes | None) -> bytes:
    """Decode an Iris hex field, tolerating missing ``0x`` and empty values."""
    if not value:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if value in ("0x", "0X"):
        return b""
    return bytes(HexBytes(value))


def get_url_domain(url: str) -> str:
    """Redact URL so that only domain is displayed.

    Some RPC services e.g. infura use path as an API key.
    """
    parsed = urlparse(url)
    if parsed.port in (80, 443, None):
        return parsed.hostname
    else:
        return f"{parsed.hostname}:{parsed.port}"


def setup_console_logging(
    default_log_level="warning",
    simplified_logging=False,
    log_file: Path | None = None,
    std_out_log_level: Optional[int] = None,
) -> logging.Logger:
    """Set up coloured log output.

    - ``LOG_LEVEL`` environment variable overrides ``default_log_level``
    - Thread names are part of the format, as watched transfers complete in worker threads
    - Tune down some noisy dependency library logging

    :param log_file:
        Output both console and this log file.
        The file always gets ``INFO`` or lower.

    :return:
        Root logger
    """

    level = os.environ.get("LOG_LEVEL", default_log_level).upper()
    numeric_level = getattr(logging, level, None)
    assert numeric_level, f"No level: {level}"

    if not std_out_log_level:
        std_out_log_level = numeric_level

    if simplified_logging:
        fmt = "%(message)s"
        date_fmt = "%H:%M:%S"
    else:
        fmt = "%(asctime)s %(name)-32s [%(threadName)s] %(message)s"
        date_fmt = "%Y-%m-%d %H:%M:%S"

    try:
        # Optional dependency, see the console extra
        import coloredlogs

        coloredlogs.install(level=std_out_log_level, fmt=fmt, datefmt=date_fmt)
    except ImportError:
        # non-ANSI e.g. Docker
        logging.basicConfig(level=std_out_log_level, format=fmt, datefmt=date_fmt)

    if log_file:
        assert isinstance(log_file, Path), f"log_file must be a Path, got {type(log_file)}"
        log_file.parent.mkdir(parents=True, exist_ok=True)

        min_level = min(logging.INFO, numeric_level)
        file_handler = logging.FileHandler(log_file, mode="a", encoding="utf-8")
        file_handler.setLevel(min_level)
        file_handler.setFormatter(logging.Formatter(fmt, date_fmt))

        root = logging.getLogger()
        root.setLevel(min_level)
        root.addHandler(file_handler)

    # Mute noise
    logging.getLogger("web3.providers.HTTPProvider").setLevel(logging.WARNING)
    logging.getLogger("web3.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("web3.manager.RequestManager").setLevel(logging.WARNING)
    logging.getLogger("urllib3.connectionpool").setLevel(logging.WARNING)
    return logging.getLogger()
