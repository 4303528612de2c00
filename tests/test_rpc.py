"""Tests for the JSON-RPC chain client."""

import json

import httpx
import pytest
from eth_abi import encode as abi_encode

from pullpay.errors import RelayerTransientError, TransactionRevertedError
from pullpay.rpc import ERROR_STRING_SELECTOR, JsonRpcChainClient, decode_revert_data


def _revert_data(reason: str) -> str:
    return "0x" + (ERROR_STRING_SELECTOR + abi_encode(["string"], [reason])).hex()


def _client(handler, **kwargs):
    return JsonRpcChainClient(
        "https://rpc.example",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
        sleep=lambda _: None,
        **kwargs,
    )


def _result(value):
    def handler(request):
        body = json.loads(request.content)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": value})

    return handler


class TestJsonRpcChainClient:
    def test_hex_quantities_decoded(self):
        calls = []

        def handler(request):
            body = json.loads(request.content)
            calls.append(body["method"])
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": "0x2a"})

        client = _client(handler)

        assert client.pending_nonce("0x" + "11" * 20) == 42
        assert client.gas_price() == 42
        assert calls == ["eth_getTransactionCount", "eth_gasPrice"]

    def test_send_raw_transaction_hex_encodes(self):
        seen = {}

        def handler(request):
            body = json.loads(request.content)
            seen["params"] = body["params"]
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": "0xhash"})

        assert _client(handler).send_raw_transaction(b"\x01\x02") == "0xhash"
        assert seen["params"] == ["0x0102"]

    def test_estimate_revert_decoded(self):
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": body["id"],
                    "error": {"code": 3, "message": "execution reverted", "data": _revert_data("Permit expired")},
                },
            )

        with pytest.raises(TransactionRevertedError) as exc:
            _client(handler).estimate_gas({"from": "0x" + "11" * 20, "to": "0x" + "22" * 20, "data": "0x"})
        assert exc.value.reason == "Permit expired"

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(503),
            httpx.Response(429),
            httpx.Response(200, text="<html>"),
            httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32000, "message": "nonce too low"}}),
        ],
    )
    def test_transport_and_node_errors_are_transient(self, response):
        with pytest.raises(RelayerTransientError):
            _client(lambda request: response).gas_price()

    def test_unreachable_node_is_transient(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(RelayerTransientError, match="unreachable"):
            _client(handler).gas_price()

    def test_receipt_parsed(self):
        receipt = _client(
            _result({"transactionHash": "0xabc", "status": "0x1", "blockNumber": "0x10", "gasUsed": "0x5208"})
        ).get_receipt("0xabc")

        assert receipt.succeeded
        assert receipt.block_number == 16
        assert receipt.gas_used == 21000

    def test_wait_for_receipt_polls_until_mined(self):
        responses = [None, None, {"transactionHash": "0xabc", "status": "0x0", "blockNumber": "0x11"}]

        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": responses.pop(0)})

        receipt = _client(handler).wait_for_receipt("0xabc", timeout=60)

        assert receipt is not None
        assert not receipt.succeeded
        assert responses == []

    def test_wait_for_receipt_times_out(self):
        ticks = iter(range(0, 1000, 10))
        client = _client(_result(None), clock=lambda: next(ticks))

        assert client.wait_for_receipt("0xabc", timeout=25) is None

    def test_call_returns_bytes(self):
        assert _client(_result("0x" + "77" * 32)).call("0x" + "aa" * 20, b"\x01") == bytes.fromhex("77" * 32)

    def test_auth_headers_attached(self):
        seen = {}

        class StubAuth:
            def headers(self, method, url):
                return {"Authorization": f"Bearer {method} {url}"}

        def handler(request):
            seen["auth"] = request.headers.get("authorization")
            body = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": "0x1"})

        _client(handler, auth=StubAuth()).gas_price()
        assert seen["auth"] == "Bearer POST https://rpc.example"


class TestDecodeRevertData:
    def test_error_string(self):
        assert decode_revert_data(_revert_data("unknown root")) == "unknown root"

    @pytest.mark.parametrize("data", [None, "", "0x", "0xdeadbeef", "not hex", 42])
    def test_other_payloads(self, data):
        assert decode_revert_data(data) is None
