"""
JSON-RPC chain client over httpx.

Every failure except an execution revert is reported as
RelayerTransientError; reverts carry the decoded reason string.
"""

from __future__ import annotations

import itertools
import logging
import time
from typing import Any, Callable, Optional

import httpx
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from .errors import RelayerTransientError, TransactionRevertedError
from .relayer import Receipt
from .rpc_auth import RpcJwtAuth

logger = logging.getLogger(__name__)

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")


def decode_revert_data(data: Any) -> Optional[str]:
    """Decode ``Error(string)`` revert data; None for anything else."""
    if not isinstance(data, str) or not data.startswith("0x"):
        return None
    try:
        raw = bytes.fromhex(data[2:])
    except ValueError:
        return None
    if raw[:4] != ERROR_STRING_SELECTOR:
        return None
    try:
        (reason,) = abi_decode(["string"], raw[4:])
    except DecodingError:
        logger.debug("Undecodable revert payload %s", data[:74])
        return None
    return reason


class JsonRpcChainClient:
    def __init__(
        self,
        url: str,
        *,
        auth: Optional[RpcJwtAuth] = None,
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 2.0,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.auth = auth
        self.poll_interval_seconds = poll_interval_seconds
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._sleep = sleep
        self._clock = clock
        self._ids = itertools.count(1)

    def _rpc(self, method: str, params: list) -> Any:
        headers = self.auth.headers("POST", self.url) if self.auth else {}
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._client.post(self.url, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise RelayerTransientError(f"{method}: RPC unreachable: {e}") from e

        if response.status_code >= 400:
            raise RelayerTransientError(
                f"{method}: RPC returned HTTP {response.status_code}",
                retry_after=5.0 if response.status_code == 429 else 1.0,
            )
        try:
            payload = response.json()
        except ValueError as e:
            raise RelayerTransientError(f"{method}: RPC returned non-JSON body") from e

        error = payload.get("error")
        if error:
            message = str(error.get("message", "unknown error"))
            if error.get("code") == 3 or "revert" in message.lower():
                reason = decode_revert_data(error.get("data")) or message
                raise TransactionRevertedError(reason)
            raise RelayerTransientError(f"{method}: {message}")
        return payload.get("result")

    def pending_nonce(self, address: str) -> int:
        return int(self._rpc("eth_getTransactionCount", [address, "pending"]), 16)

    def gas_price(self) -> int:
        return int(self._rpc("eth_gasPrice", []), 16)

    def estimate_gas(self, tx: dict) -> int:
        params = {
            "from": tx["from"],
            "to": tx["to"],
            "data": tx["data"],
            "value": hex(int(tx.get("value", 0))),
        }
        return int(self._rpc("eth_estimateGas", [params]), 16)

    def send_raw_transaction(self, raw: bytes) -> str:
        return self._rpc("eth_sendRawTransaction", ["0x" + bytes(raw).hex()])

    def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        result = self._rpc("eth_getTransactionReceipt", [tx_hash])
        if not result:
            return None
        return Receipt(
            tx_hash=result.get("transactionHash", tx_hash),
            status=int(result.get("status", "0x0"), 16),
            block_number=int(result["blockNumber"], 16) if result.get("blockNumber") else None,
            gas_used=int(result["gasUsed"], 16) if result.get("gasUsed") else None,
            revert_reason=decode_revert_data(result.get("revertReason")),
        )

    def wait_for_receipt(self, tx_hash: str, timeout: float) -> Optional[Receipt]:
        deadline = self._clock() + timeout
        while True:
            try:
                receipt = self.get_receipt(tx_hash)
            except RelayerTransientError as e:
                logger.warning("Receipt poll for %s failed: %s", tx_hash, e)
                receipt = None
            if receipt is not None:
                return receipt
            if self._clock() >= deadline:
                return None
            self._sleep(self.poll_interval_seconds)

    def call(self, to: str, data: bytes) -> bytes:
        result = self._rpc("eth_call", [{"to": to, "data": "0x" + bytes(data).hex()}, "latest"])
        return bytes.fromhex((result or "0x")[2:])
