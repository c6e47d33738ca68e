"""Send ``receiveMessage()`` transactions from the relay account.

The relay account has one transaction nonce sequence per destination chain.
Concurrent transfers must not race on it, so nonce allocation, signing and
broadcasting for one account go through a single-worker queue. Waiting for the
receipt happens outside the queue, so slow blocks do not hold up other transfers.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import requests
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes
from web3 import Web3
from web3.contract.contract import ContractFunction
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.types import TxReceipt

from cctp_relay.constants import MESSAGE_TRANSMITTER_V2_ABI
from cctp_relay.errors import SubmissionFailure
from cctp_relay.utils import normalise_tx_hash

logger = logging.getLogger(__name__)

#: Errors web3 and its HTTP provider raise for RPC, transport and encoding failures
_SEND_ERRORS = (Web3Exception, requests.RequestException, ValueError, TimeoutError)


def _get_revert_reason(e: Exception) -> str:
    message = getattr(e, "message", None) or str(e)
    return message or e.__class__.__name__


class ReceiveMessageSubmitter:
    """Finalise CCTP messages on one destination chain.

    :param web3:
        Web3 connected to the destination chain.

    :param account:
        Relay account paying for gas. Anyone can relay a CCTP message.

    :param gas:
        Fixed gas limit. When ``None``, gas is estimated per transaction.

    :param receipt_timeout:
        Seconds to wait for block inclusion.
    """

    def __init__(
        self,
        web3: Web3,
        account: LocalAccount,
        gas: int | None = None,
        receipt_timeout: float = 120.0,
    ):
        self.web3 = web3
        self.account = account
        self.gas = gas
        self.receipt_timeout = receipt_timeout
        self._queue = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cctp-submit")
        self._nonce_lock = threading.Lock()
        self._current_nonce: int | None = None

    def __repr__(self) -> str:
        return f"<ReceiveMessageSubmitter account={self.account.address} nonce={self._current_nonce}>"

    @property
    def address(self) -> str:
        return self.account.address

    def sync_nonce(self):
        """Read the next nonce from the chain, including pending transactions."""
        with self._nonce_lock:
            self._current_nonce = self.web3.eth.get_transaction_count(self.account.address, "pending")
            logger.info("Relay account %s nonce synced to %d", self.account.address, self._current_nonce)

    def allocate_nonce(self) -> int:
        with self._nonce_lock:
            if self._current_nonce is None:
                self._current_nonce = self.web3.eth.get_transaction_count(self.account.address, "pending")
            nonce = self._current_nonce
            self._current_nonce += 1
            return nonce

    def reset_nonce(self):
        """Forget the cached nonce so the next send re-reads it from the chain."""
        with self._nonce_lock:
            self._current_nonce = None

    def prepare_receive_message(self, transmitter: str, message: bytes, attestation: bytes) -> ContractFunction:
        contract = self.web3.eth.contract(address=Web3.to_checksum_address(transmitter), abi=MESSAGE_TRANSMITTER_V2_ABI)
        return contract.functions.receiveMessage(message, attestation)

    def submit(self, transmitter: str, message: bytes, attestation: bytes) -> TxReceipt:
        """Broadcast ``receiveMessage(message, attestation)`` and wait for inclusion.

        :param transmitter:
            ``MessageTransmitterV2`` address on the destination chain.

        :return:
            Successful transaction receipt.

        :raise SubmissionFailure:
            Simulation revert, broadcast error, receipt timeout or reverted receipt.
        """
        func = self.prepare_receive_message(transmitter, message, attestation)

        # Surface revert reasons before spending gas
        try:
            func.call({"from": self.account.address})
        except ContractLogicError as e:
            raise SubmissionFailure(f"receiveMessage simulation reverted: {_get_revert_reason(e)}") from e
        except _SEND_ERRORS as e:
            raise SubmissionFailure(f"receiveMessage simulation failed: {e}") from e

        tx_hash = self._queue.submit(self._sign_and_send, func).result()
        tx_hash_hex = normalise_tx_hash(tx_hash)
        logger.info("receiveMessage submitted from %s: %s", self.account.address, tx_hash_hex)

        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except TimeExhausted as e:
            # The transaction may be dropped, re-read the nonce so later sends do not queue behind a gap
            self.reset_nonce()
            raise SubmissionFailure(f"receiveMessage not included within {self.receipt_timeout}s", tx_hash=tx_hash_hex) from e
        except _SEND_ERRORS as e:
            raise SubmissionFailure(f"Could not fetch receipt: {e}", tx_hash=tx_hash_hex) from e

        if receipt["status"] != 1:
            raise SubmissionFailure("receiveMessage reverted on chain", tx_hash=tx_hash_hex)

        logger.info("receiveMessage confirmed in block %d: %s", receipt["blockNumber"], tx_hash_hex)
        return receipt

    def _sign_and_send(self, func: ContractFunction) -> HexBytes:
        """Runs on the submission queue thread."""
        try:
            nonce = self.allocate_nonce()
            tx_params = {
                "from": self.account.address,
                "chainId": self.web3.eth.chain_id,
                "nonce": nonce,
            }
            if self.gas is not None:
                tx_params["gas"] = self.gas
            tx = func.build_transaction(tx_params)
            signed = self.account.sign_transaction(tx)
            return self.web3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            self.reset_nonce()
            raise SubmissionFailure(f"receiveMessage reverted: {_get_revert_reason(e)}") from e
        except _SEND_ERRORS as e:
            # The nonce may or may not have been consumed
            self.reset_nonce()
            raise SubmissionFailure(f"receiveMessage broadcast failed: {e}") from e

    def close(self):
        self._queue.shutdown(wait=True)
