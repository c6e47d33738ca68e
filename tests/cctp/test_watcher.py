"""Bridge event polling and dispatch."""

import threading

import pytest
from eth_abi import encode
from hexbytes import HexBytes
from web3 import Web3
from web3.exceptions import Web3Exception

from cctp_relay.watcher import BRIDGE_EVENT_TOPIC, BridgeSpeed, BurnEventWatcher, decode_bridge_log
from tests.cctp.fakes import BASE_DOMAIN, BURN_TX_HASH

BRIDGE_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"

USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"

RECEIVER = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"


def _address_topic(address: str) -> HexBytes:
    return HexBytes(b"\x00" * 12 + bytes.fromhex(address[2:]))


def make_bridge_log(
    tx_hash: str = BURN_TX_HASH,
    destination_domain: int = BASE_DOMAIN,
    amount: int = 1_000_000,
    nonce: int = 7,
    speed: int = 1,
    block_number: int = 100,
    log_index: int = 0,
) -> dict:
    """Raw ``eth_getLogs`` entry for a ``Bridge`` event."""
    return {
        "address": BRIDGE_ADDRESS,
        "topics": [
            HexBytes(BRIDGE_EVENT_TOPIC),
            _address_topic(USDC),
            HexBytes(destination_domain.to_bytes(32, "big")),
            _address_topic(RECEIVER),
        ],
        "data": HexBytes(encode(["uint256", "uint64", "uint8"], [amount, nonce, speed])),
        "blockNumber": block_number,
        "blockHash": HexBytes("0x" + "11" * 32),
        "transactionHash": HexBytes(tx_hash),
        "transactionIndex": 0,
        "logIndex": log_index,
        "removed": False,
    }


class FakeEth:
    """Chain head and logs under test control, real ABI decoding."""

    def __init__(self, block_number: int, logs_by_block: dict[int, list[dict]] | None = None):
        self._decoder = Web3(Web3.HTTPProvider("http://localhost:8545"))
        self.block_number = block_number
        self.logs_by_block = logs_by_block or {}
        self.get_logs_calls: list[dict] = []
        self.get_logs_errors: list[Exception] = []

    def contract(self, *args, **kwargs):
        return self._decoder.eth.contract(*args, **kwargs)

    def get_logs(self, filter_params: dict) -> list[dict]:
        self.get_logs_calls.append(filter_params)
        if self.get_logs_errors:
            raise self.get_logs_errors.pop(0)
        return [log for block, logs in sorted(self.logs_by_block.items()) if filter_params["fromBlock"] <= block <= filter_params["toBlock"] for log in logs]


class FakeWeb3:
    def __init__(self, eth: FakeEth):
        self.eth = eth


def test_decode_bridge_log():
    web3 = FakeWeb3(FakeEth(100))
    event = decode_bridge_log(web3, make_bridge_log(amount=25_000_000, nonce=42, speed=0))

    assert event.token == USDC
    assert event.destination_domain == BASE_DOMAIN
    assert event.receiver == RECEIVER
    assert event.amount == 25_000_000
    assert event.nonce == 42
    assert event.speed == BridgeSpeed.fast
    assert event.source_tx_hash == BURN_TX_HASH
    assert event.block_number == 100
    assert event.log_index == 0


def test_decode_unknown_speed():
    web3 = FakeWeb3(FakeEth(100))
    with pytest.raises(ValueError):
        decode_bridge_log(web3, make_bridge_log(speed=9))


def test_poll_starts_at_head():
    """Without a start block, history is not replayed."""
    eth = FakeEth(500, {100: [make_bridge_log(block_number=100)]})
    watcher = BurnEventWatcher(FakeWeb3(eth))

    assert watcher.poll_once(BRIDGE_ADDRESS) == []
    assert eth.get_logs_calls[0]["fromBlock"] == 500
    assert eth.get_logs_calls[0]["toBlock"] == 500
    assert eth.get_logs_calls[0]["topics"] == [BRIDGE_EVENT_TOPIC]
    assert watcher.next_block == 501
    assert watcher.caught_up


def test_poll_ranges_and_confirmations():
    """Block ranges are capped, contiguous and stay behind the head."""
    eth = FakeEth(
        1010,
        {
            100: [make_bridge_log(block_number=100)],
            1005: [make_bridge_log(tx_hash="0x" + "ef" * 32, block_number=1005)],
        },
    )
    watcher = BurnEventWatcher(FakeWeb3(eth), confirmations=10, max_block_range=500, start_block=100)

    first = watcher.poll_once(BRIDGE_ADDRESS)
    assert [e.block_number for e in first] == [100]
    assert not watcher.caught_up

    # Head is 1010 - 10 confirmations, so block 1005 is not scanned yet
    assert watcher.poll_once(BRIDGE_ADDRESS) == []
    assert watcher.caught_up

    ranges = [(c["fromBlock"], c["toBlock"]) for c in eth.get_logs_calls]
    assert ranges == [(100, 599), (600, 1000)]

    # Nothing new until the chain moves
    assert watcher.poll_once(BRIDGE_ADDRESS) == []
    assert len(eth.get_logs_calls) == 2

    eth.block_number = 1015
    events = watcher.poll_once(BRIDGE_ADDRESS)
    assert [e.source_tx_hash for e in events] == ["0x" + "ef" * 32]


def test_undecodable_log_is_skipped():
    bad = make_bridge_log(log_index=0)
    bad["data"] = HexBytes("0x1234")
    eth = FakeEth(100, {100: [bad, make_bridge_log(log_index=1)]})
    watcher = BurnEventWatcher(FakeWeb3(eth), start_block=100)

    events = watcher.poll_once(BRIDGE_ADDRESS)

    assert [e.log_index for e in events] == [1]
    assert watcher.next_block == 101


def test_failed_poll_is_retried():
    """The block range is not skipped when eth_getLogs fails."""
    eth = FakeEth(100, {100: [make_bridge_log()]})
    eth.get_logs_errors.append(Web3Exception("upstream timeout"))
    watcher = BurnEventWatcher(FakeWeb3(eth), start_block=100)

    with pytest.raises(Web3Exception):
        watcher.poll_once(BRIDGE_ADDRESS)
    assert watcher.next_block == 100

    assert len(watcher.poll_once(BRIDGE_ADDRESS)) == 1


def test_watch_survives_failing_event():
    """A failing callback is logged, later events still run, stop() ends the loop."""
    eth = FakeEth(
        100,
        {
            100: [
                make_bridge_log(tx_hash="0x" + "01" * 32, log_index=0),
                make_bridge_log(tx_hash="0x" + "02" * 32, log_index=1),
            ]
        },
    )
    eth.get_logs_errors.append(Web3Exception("rate limited"))
    watcher = BurnEventWatcher(FakeWeb3(eth), poll_interval=0.01, max_workers=1, start_block=100)
    seen = []

    def on_event(event):
        seen.append(event.source_tx_hash)
        if len(seen) == 1:
            raise RuntimeError("boom")
        watcher.stop()

    safety = threading.Timer(10, watcher.stop)
    safety.start()
    try:
        watcher.watch(BRIDGE_ADDRESS, on_event)
    finally:
        safety.cancel()

    assert seen == ["0x" + "01" * 32, "0x" + "02" * 32]
    assert watcher.is_stopped
    assert watcher.in_flight == 0
    # First poll failed and was retried
    assert len(eth.get_logs_calls) >= 2


def test_stop_before_watch():
    eth = FakeEth(100)
    watcher = BurnEventWatcher(FakeWeb3(eth))
    watcher.stop()

    watcher.watch(BRIDGE_ADDRESS, lambda event: None)

    assert eth.get_logs_calls == []
