"""
Relayer gateway: the single funded identity that pays gas for charges.

The relayer's account nonce is shared by every subscription, so nonce
assignment, fee estimation and broadcast run on one dedicated worker
thread. Receipt confirmation happens on the caller's thread so a slow
block does not hold up other subscriptions' submissions.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Optional, Protocol

from eth_account import Account
from eth_utils import to_checksum_address

from .errors import RelayerTransientError, TransactionRevertedError
from .transfer import ChargeCall

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Receipt:
    tx_hash: str
    status: int
    block_number: Optional[int] = None
    gas_used: Optional[int] = None
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(frozen=True)
class Submission:
    tx_hash: str
    nonce: int
    gas_limit: int


class ChainClient(Protocol):
    def pending_nonce(self, address: str) -> int: ...

    def gas_price(self) -> int: ...

    def estimate_gas(self, tx: dict) -> int:
        """Raise TransactionRevertedError if the call would revert."""
        ...

    def send_raw_transaction(self, raw: bytes) -> str: ...

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]: ...

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[Receipt]: ...

    def call(self, to: str, data: bytes) -> bytes: ...


class RelayerGateway:
    """Serialized submit/await API over one signing identity."""

    def __init__(
        self,
        chain: ChainClient,
        private_key: str,
        chain_id: int,
        *,
        gas_buffer: float = 1.2,
        receipt_timeout_seconds: float = 120.0,
    ):
        self.chain = chain
        self.chain_id = chain_id
        self.gas_buffer = gas_buffer
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self._account = Account.from_key(private_key)
        self._worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix="pullpay-relayer")
        # Owned by the worker thread only.
        self._next_nonce: Optional[int] = None

    @property
    def address(self) -> str:
        return self._account.address

    def submit(
        self,
        call: ChargeCall,
        on_submitted: Optional[Callable[[str], None]] = None,
    ) -> Receipt:
        """
        Broadcast ``call`` and wait for its receipt.

        ``on_submitted`` runs with the tx hash as soon as the transaction
        is broadcast, before confirmation, so callers can persist it.
        Raises TransactionRevertedError or RelayerTransientError.
        """
        submission = self._worker.submit(self._broadcast, call).result()
        if on_submitted is not None:
            on_submitted(submission.tx_hash)

        receipt = self.chain.wait_for_receipt(submission.tx_hash, self.receipt_timeout_seconds)
        if receipt is None:
            raise RelayerTransientError(
                f"No receipt for {submission.tx_hash} within {self.receipt_timeout_seconds}s",
                retry_after=self.receipt_timeout_seconds,
            )
        if not receipt.succeeded:
            raise TransactionRevertedError(receipt.revert_reason or "execution reverted", receipt.tx_hash)
        logger.info(
            "Charge %s confirmed in block %s (tx %s)",
            call.label,
            receipt.block_number,
            receipt.tx_hash,
        )
        return receipt

    def transaction_status(self, tx_hash: str) -> Optional[Receipt]:
        return self.chain.get_receipt(tx_hash)

    def shutdown(self) -> None:
        self._worker.shutdown(wait=True)

    def _broadcast(self, call: ChargeCall) -> Submission:
        data = call.encode()
        try:
            estimate = self.chain.estimate_gas(
                {"from": self._account.address, "to": call.to, "data": "0x" + data.hex(), "value": 0}
            )
            gas_limit = int(math.ceil(estimate * self.gas_buffer))
            gas_price = self.chain.gas_price()
            if self._next_nonce is None:
                self._next_nonce = self.chain.pending_nonce(self._account.address)
            nonce = self._next_nonce
            signed = Account.sign_transaction(
                {
                    "to": to_checksum_address(call.to),
                    "data": data,
                    "value": 0,
                    "gas": gas_limit,
                    "gasPrice": gas_price,
                    "nonce": nonce,
                    "chainId": self.chain_id,
                },
                self._account.key,
            )
            tx_hash = self.chain.send_raw_transaction(signed.raw_transaction)
        except TransactionRevertedError:
            raise
        except Exception:
            # Broadcast state unknown; re-read the pending nonce next time.
            self._next_nonce = None
            raise
        self._next_nonce = nonce + 1
        logger.info("Submitted %s nonce=%d gas=%d tx=%s", call.label, nonce, gas_limit, tx_hash)
        return Submission(tx_hash=tx_hash, nonce=nonce, gas_limit=gas_limit)
