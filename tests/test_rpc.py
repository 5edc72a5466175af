"""Tests for the ledger JSON-RPC client (mocked transport)."""

import base64
import json

import httpx
import pytest
from solders.hash import Hash
from solders.keypair import Keypair

from tributary.config import RpcConfig
from tributary.errors import (
    ConfirmationTimeoutError,
    NetworkError,
    RetryableError,
    RpcError,
    SubmissionError,
)
from tributary.rpc import LedgerRpcClient


def _client(handler, **config_kwargs):
    config = RpcConfig(url="http://rpc.test", retry_delay=0, poll_interval=0, **config_kwargs)
    return LedgerRpcClient(config, http=httpx.Client(transport=httpx.MockTransport(handler)))


def _result(request, result):
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


def _account_json(data: bytes, owner) -> dict:
    return {
        "data": [base64.b64encode(data).decode(), "base64"],
        "owner": str(owner),
        "lamports": 10,
        "executable": False,
    }


class TestTransport:
    def test_retries_connect_errors_then_succeeds(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("refused")
            return _result(request, {"value": None})

        assert _client(handler).get_account_info(Keypair().pubkey()) is None
        assert len(calls) == 3

    def test_dropped_connection_is_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.RemoteProtocolError("Server disconnected without sending a response.")
            return _result(request, {"value": None})

        assert _client(handler).get_account_info(Keypair().pubkey()) is None
        assert len(calls) == 2

    def test_read_error_surfaces_as_network_error(self):
        def handler(request):
            raise httpx.ReadError("server disconnected")

        with pytest.raises(NetworkError, match="Transport error: server disconnected"):
            _client(handler, max_retries=1).get_latest_blockhash()

    def test_non_transport_request_error_is_wrapped(self):
        calls = []

        def handler(request):
            calls.append(1)
            raise httpx.TooManyRedirects("loop", request=request)

        with pytest.raises(NetworkError, match="loop"):
            _client(handler, max_retries=2).get_latest_blockhash()
        assert len(calls) == 1

    def test_gives_up_after_max_retries(self):
        def handler(request):
            raise httpx.ReadTimeout("slow")

        with pytest.raises(NetworkError, match="failed after 2 attempts"):
            _client(handler, max_retries=1).get_latest_blockhash()

    def test_unavailable_node_is_retryable(self):
        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "3"})

        with pytest.raises(RetryableError) as exc:
            _client(handler, max_retries=1).get_latest_blockhash()
        assert exc.value.retry_after == 3.0

    def test_other_http_status_not_retried(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(500, text="boom")

        with pytest.raises(NetworkError, match="unexpected status 500"):
            _client(handler).get_latest_blockhash()
        assert len(calls) == 1

    def test_json_rpc_error(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "bad params"}})

        with pytest.raises(RpcError, match="bad params") as exc:
            _client(handler).get_latest_blockhash()
        assert exc.value.code == -32602


class TestAccounts:
    def test_get_account_info_decodes_base64(self):
        owner = Keypair().pubkey()

        def handler(request):
            body = json.loads(request.content)
            assert body["method"] == "getAccountInfo"
            assert body["params"][1]["encoding"] == "base64"
            return _result(request, {"value": _account_json(b"\x01\x02", owner)})

        info = _client(handler).get_account_info(Keypair().pubkey())
        assert info.data == b"\x01\x02"
        assert info.owner == owner

    def test_get_program_accounts_filters(self):
        program, owner, address = Keypair().pubkey(), Keypair().pubkey(), Keypair().pubkey()
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return _result(request, [{"pubkey": str(address), "account": _account_json(b"abc", owner)}])

        results = _client(handler).get_program_accounts(program, data_size=586, memcmp=[(8, bytes(owner))])
        filters = seen["params"][1]["filters"]
        assert filters[0] == {"dataSize": 586}
        assert filters[1]["memcmp"] == {
            "offset": 8,
            "bytes": base64.b64encode(bytes(owner)).decode(),
            "encoding": "base64",
        }
        assert results[0][0] == address
        assert results[0][1].data == b"abc"


class TestTransactions:
    def test_simulate_reports_error_and_logs(self):
        def handler(request):
            body = json.loads(request.content)
            assert body["params"][1]["sigVerify"] is False
            return _result(request, {"value": {"err": {"InstructionError": [0, "Custom"]}, "logs": ["log 1"]}})

        result = _client(handler).simulate_transaction(b"raw")
        assert not result.success
        assert result.logs == ["log 1"]

    def test_preflight_failure_becomes_submission_error(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "jsonrpc": "2.0",
                    "id": 1,
                    "error": {
                        "code": -32002,
                        "message": "Transaction simulation failed",
                        "data": {"err": "AccountNotFound", "logs": ["x"]},
                    },
                },
            )

        with pytest.raises(SubmissionError) as exc:
            _client(handler).send_raw_transaction(b"raw")
        assert exc.value.details == "AccountNotFound"
        assert exc.value.logs == ["x"]

    def test_confirm_waits_for_commitment(self):
        statuses = iter([
            {"value": [None]},
            {"value": [{"err": None, "confirmationStatus": "processed"}]},
            {"value": [{"err": None, "confirmationStatus": "confirmed"}]},
        ])
        calls = []

        def handler(request):
            calls.append(1)
            return _result(request, next(statuses))

        _client(handler).confirm_transaction("sig")
        assert len(calls) == 3

    def test_confirm_raises_on_ledger_error(self):
        def handler(request):
            return _result(request, {"value": [{"err": {"InstructionError": [1, {"Custom": 6001}]}}]})

        with pytest.raises(SubmissionError, match="failed on-ledger"):
            _client(handler).confirm_transaction("sig")

    def test_confirm_timeout(self):
        def handler(request):
            return _result(request, {"value": [None]})

        with pytest.raises(ConfirmationTimeoutError):
            _client(handler, confirm_timeout_seconds=0).confirm_transaction("sig")

    def test_sign_transaction_uses_latest_blockhash(self):
        blockhash = Hash.new_unique()

        def handler(request):
            return _result(request, {"value": {"blockhash": str(blockhash), "lastValidBlockHeight": 5}})

        signer = Keypair()
        tx = _client(handler).sign_transaction([], [signer])
        assert tx.message.recent_blockhash == blockhash
        assert tx.message.account_keys[0] == signer.pubkey()

        with pytest.raises(ValueError, match="At least one signer"):
            _client(handler).sign_transaction([], [])
