"""Watch a bridge contract for burns and relay them.

The bridge contract emits::

    event Bridge(address indexed token, uint32 indexed destinationDomain, address indexed receiver,
                 uint256 amount, uint64 nonce, uint8 speed)

after burning USDC through CCTP. :class:`BurnEventWatcher` polls ``eth_getLogs``
for new ``Bridge`` events, decodes them to :class:`BurnEvent` and hands each one
to a callback on a bounded thread pool.

- A failing event is logged and does not stop the watcher
- :meth:`BurnEventWatcher.stop` is the cancellation token: no new events are
  dispatched, in-flight transfers are allowed to finish, as a submitted
  transaction cannot be aborted
- The number of queued events is capped, so bursts do not grow memory unbounded

Example::

    watcher = BurnEventWatcher(source_web3, poll_interval=5.0, max_workers=4)
    signal.signal(signal.SIGINT, lambda *args: watcher.stop())
    watcher.watch(bridge_address, completer.complete_burn_event)
"""

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import requests
from eth_abi.exceptions import DecodingError
from eth_typing import HexAddress
from web3 import Web3
from web3.exceptions import Web3Exception

from cctp_relay.constants import BRIDGE_EVENT_ABI, BRIDGE_EVENT_SIGNATURE
from cctp_relay.utils import normalise_tx_hash

if TYPE_CHECKING:
    from cctp_relay.completer import TransferOutcome

logger = logging.getLogger(__name__)

#: Errors from a failed ``eth_getLogs`` or block number poll
_POLL_ERRORS = (Web3Exception, requests.RequestException, ValueError, TimeoutError)

#: Errors from decoding a single log
_DECODE_ERRORS = (Web3Exception, DecodingError, KeyError, ValueError, TypeError)

#: topic0 of the ``Bridge`` event
BRIDGE_EVENT_TOPIC = Web3.to_hex(Web3.keccak(text=BRIDGE_EVENT_SIGNATURE))


class BridgeSpeed(enum.IntEnum):
    """CCTP V2 transfer speed chosen at burn time."""

    #: Fast transfer, attested at soft finality for a fee
    fast = 0

    #: Standard transfer, attested at hard finality
    standard = 1


@dataclass(frozen=True, slots=True)
class BurnEvent:
    """A decoded ``Bridge`` event."""

    #: Burned token on the source chain
    token: HexAddress

    #: CCTP domain the transfer goes to
    destination_domain: int

    #: Mint recipient on the destination chain
    receiver: HexAddress

    #: Raw token amount (uint256)
    amount: int

    #: Bridge contract's own counter (uint64).
    #: Not the Iris ``eventNonce`` checked by ``usedNonces``.
    nonce: int

    speed: BridgeSpeed

    #: Burn transaction hash, the key for the Iris lookup
    source_tx_hash: str

    block_number: int

    log_index: int


#: Callback receiving each burn
BurnEventCallback = Callable[[BurnEvent], "TransferOutcome"]


def decode_bridge_log(web3: Web3, log: dict) -> BurnEvent:
    """Decode a raw ``Bridge`` log.

    :raise ValueError:
        Unknown speed value.
    """
    contract = web3.eth.contract(abi=BRIDGE_EVENT_ABI)
    decoded = contract.events.Bridge().process_log(log)
    args = decoded["args"]
    return BurnEvent(
        token=args["token"],
        destination_domain=args["destinationDomain"],
        receiver=args["receiver"],
        amount=args["amount"],
        nonce=args["nonce"],
        speed=BridgeSpeed(args["speed"]),
        source_tx_hash=normalise_tx_hash(decoded["transactionHash"]),
        block_number=decoded["blockNumber"],
        log_index=decoded["logIndex"],
    )


class BurnEventWatcher:
    """Poll a source chain for ``Bridge`` events.

    :param web3:
        Web3 connected to the source chain.

    :param poll_interval:
        Seconds between log polls once caught up with the chain head.

    :param max_workers:
        Transfers completed in parallel.

    :param max_pending:
        Events dispatched but not yet finished. The watcher stops reading new
        logs while the cap is reached. Defaults to ``4 * max_workers``.

    :param confirmations:
        Stay this many blocks behind the head.

    :param max_block_range:
        Largest ``eth_getLogs`` range. Many RPC providers reject large ranges.

    :param start_block:
        First block to scan. Defaults to the current head at the first poll.
    """

    def __init__(
        self,
        web3: Web3,
        poll_interval: float = 5.0,
        max_workers: int = 4,
        max_pending: int | None = None,
        confirmations: int = 0,
        max_block_range: int = 2000,
        start_block: int | None = None,
    ):
        assert max_workers > 0, f"max_workers must be positive, got {max_workers}"
        assert max_block_range > 0, f"max_block_range must be positive, got {max_block_range}"
        self.web3 = web3
        self.poll_interval = poll_interval
        self.max_workers = max_workers
        self.max_pending = max_pending or max_workers * 4
        self.confirmations = confirmations
        self.max_block_range = max_block_range
        self.next_block = start_block
        self.caught_up = False
        self._stop_event = threading.Event()
        self._slots = threading.BoundedSemaphore(self.max_pending)
        self._in_flight = 0
        self._in_flight_lock = threading.Lock()

    def __repr__(self) -> str:
        return f"<BurnEventWatcher next_block={self.next_block} in_flight={self.in_flight} stopped={self.is_stopped}>"

    @property
    def is_stopped(self) -> bool:
        return self._stop_event.is_set()

    @property
    def in_flight(self) -> int:
        with self._in_flight_lock:
            return self._in_flight

    def stop(self):
        """Request cancellation. Safe to call from a signal handler or any thread."""
        if not self._stop_event.is_set():
            logger.info("Stop requested for Bridge event watcher")
        self._stop_event.set()

    def poll_once(self, bridge_address: HexAddress | str) -> list[BurnEvent]:
        """Fetch ``Bridge`` events from the next unscanned block range.

        Logs that fail to decode are logged and skipped.

        :return:
            Newly seen events, in chain order.

        :raise web3.exceptions.Web3Exception:
            RPC failure. The block range is retried on the next poll.
        """
        head = self.web3.eth.block_number - self.confirmations
        if self.next_block is None:
            self.next_block = max(head, 0)

        from_block = self.next_block
        if from_block > head:
            self.caught_up = True
            return []

        to_block = min(head, from_block + self.max_block_range - 1)

        logs = self.web3.eth.get_logs(
            {
                "address": Web3.to_checksum_address(bridge_address),
                "topics": [BRIDGE_EVENT_TOPIC],
                "fromBlock": from_block,
                "toBlock": to_block,
            }
        )

        events = []
        for log in logs:
            try:
                events.append(decode_bridge_log(self.web3, log))
            except _DECODE_ERRORS as e:
                logger.warning("Could not decode Bridge log %s: %s", log.get("transactionHash"), e)

        self.next_block = to_block + 1
        self.caught_up = to_block >= head
        logger.debug("Scanned blocks %d - %d, %d Bridge events", from_block, to_block, len(events))
        return events

    def _acquire_slot(self) -> bool:
        while not self._stop_event.is_set():
            if self._slots.acquire(timeout=0.5):
                return True
        return False

    def _dispatch(self, event: BurnEvent, on_event: BurnEventCallback):
        try:
            logger.info(
                "Bridge event: tx=%s token=%s destination=%d receiver=%s amount=%d nonce=%d speed=%s",
                event.source_tx_hash,
                event.token,
                event.destination_domain,
                event.receiver,
                event.amount,
                event.nonce,
                event.speed.name,
            )
            on_event(event)
        except Exception:
            # One bad event must not take down the watcher
            logger.exception("Error processing Bridge event %s", event.source_tx_hash)
        finally:
            with self._in_flight_lock:
                self._in_flight -= 1
            self._slots.release()

    def watch(self, bridge_address: HexAddress | str, on_event: BurnEventCallback):
        """Relay ``Bridge`` events until :meth:`stop` is called.

        Blocks the calling thread. Returns only after cancellation, once
        in-flight transfers have finished.

        :param bridge_address:
            Bridge contract on the source chain.

        :param on_event:
            Called in a worker thread for every event,
            usually :meth:`~cctp_relay.completer.TransferCompleter.complete_burn_event`.
        """
        bridge_address = Web3.to_checksum_address(bridge_address)
        logger.info("Watching for Bridge events on %s, %d workers", bridge_address, self.max_workers)

        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="cctp-relay")
        try:
            while not self._stop_event.is_set():
                try:
                    events = self.poll_once(bridge_address)
                except _POLL_ERRORS as e:
                    logger.warning("Polling Bridge events failed, retrying in %.1fs: %s", self.poll_interval, e)
                    self._stop_event.wait(self.poll_interval)
                    continue

                for idx, event in enumerate(events):
                    if not self._acquire_slot():
                        logger.warning("Watcher stopped, %d Bridge events not dispatched", len(events) - idx)
                        break
                    with self._in_flight_lock:
                        self._in_flight += 1
                    executor.submit(self._dispatch, event, on_event)

                if self.caught_up:
                    self._stop_event.wait(self.poll_interval)
        finally:
            logger.info("Bridge event watcher stopping, waiting for %d in-flight transfers", self.in_flight)
            executor.shutdown(wait=True)
            logger.info("Bridge event watcher stopped")
