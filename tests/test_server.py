import json
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

from web3track.structs import Address, Hash, Transaction
from web3track.testutil.server import (
    EthClient,
    GethServer,
    RPCCallError,
    infura_endpoint,
    is_circle_ci,
    method_sig,
)


class _Handler(BaseHTTPRequestHandler):
    def do_POST(self):
        length = int(self.headers.get("Content-Length", 0))
        body = json.loads(self.rfile.read(length))
        self.server.requests.append(body)
        data = json.dumps(self.server.replies[body["method"]]).encode()
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def log_message(self, *args):
        pass


@pytest.fixture
def rpc():
    server = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
    server.requests = []
    server.replies = {}
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


def _client(rpc):
    host, port = rpc.server_address
    return EthClient(f"http://{host}:{port}")


def test_call_returns_result(rpc):
    accounts = [str(Address(b"\x01" * 20))]
    rpc.replies["eth_accounts"] = {"id": 0, "result": accounts}
    assert _client(rpc).call("eth_accounts") == accounts
    assert rpc.requests[0]["method"] == "eth_accounts"
    assert rpc.requests[0]["params"] is None


def test_call_error(rpc):
    rpc.replies["eth_call"] = {"id": 0, "error": {"code": -32000, "message": "boom"}}
    with pytest.raises(RPCCallError, match="boom") as info:
        _client(rpc).call("eth_call", {}, "latest")
    assert info.value.code == -32000


def test_call_null_result(rpc):
    rpc.replies["eth_getTransactionReceipt"] = {"id": 0, "result": None}
    assert _client(rpc).call("eth_getTransactionReceipt", "0x01") is None


def test_call_params(rpc):
    rpc.replies["eth_call"] = {"id": 0, "result": "0x"}
    _client(rpc).call("eth_call", {"to": "0x02"}, "latest")
    assert rpc.requests[0]["params"] == [{"to": "0x02"}, "latest"]


def test_call_encodes_transaction_and_hash(rpc):
    rpc.replies["eth_sendTransaction"] = {"id": 0, "result": "0xab"}
    sender = Address(b"\x01" * 20)
    txn = Transaction(from_=sender, to="0x02", input=b"\x12\x34", value=10, gas=21000)
    topic = Hash(b"\x07" * 32)
    assert _client(rpc).call("eth_sendTransaction", txn, topic) == "0xab"
    params = rpc.requests[0]["params"]
    assert params[0]["from"] == str(sender)
    assert params[0]["to"] == "0x02"
    assert bytes.fromhex(params[0]["data"][2:]) == b"\x12\x34"
    assert int(params[0]["value"], 16) == 10
    assert int(params[0]["gas"], 16) == 21000
    assert "gasPrice" not in params[0]
    assert params[1] == str(topic)


def test_default_url():
    assert EthClient().url == "http://127.0.0.1:8545"


def test_method_sig_known_value():
    assert method_sig("totalSupply") == bytes.fromhex("18160ddd")


def test_method_sig_shape():
    assert len(method_sig("setA1")) == 4
    assert method_sig("setA1") != method_sig("setB1")


def test_is_circle_ci(monkeypatch):
    monkeypatch.setenv("CIRCLECI", "true")
    assert is_circle_ci() is True
    monkeypatch.setenv("CIRCLECI", "false")
    assert is_circle_ci() is False


def test_infura_endpoint(monkeypatch):
    monkeypatch.setenv("INFURA_URL", "https://node.example.com/v3/placeholder")
    assert infura_endpoint() == "https://node.example.com/v3/placeholder"


def test_infura_endpoint_unset(monkeypatch):
    monkeypatch.delenv("INFURA_URL", raising=False)
    with pytest.raises(RuntimeError):
        infura_endpoint()


def test_server_without_geth(monkeypatch, tmp_path):
    monkeypatch.setenv("PATH", str(tmp_path))
    with pytest.raises(RuntimeError, match="geth version failed"):
        GethServer(None)