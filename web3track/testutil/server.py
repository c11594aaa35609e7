"""A local development node for tests and a minimal JSON-RPC client."""

from __future__ import annotations

import dataclasses
import json
import os
import random
import shutil
import socket
import subprocess
import tempfile
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

import requests
from Crypto.Hash import keccak

from web3track.structs import (
    Address,
    Hash,
    Receipt,
    Transaction,
    parse_address,
    receipt_from_json,
)

DEFAULT_GAS_PRICE = 1879048192  # 0x70000000
DEFAULT_GAS_LIMIT = 5242880  # 0x500000

DUMMY_ADDR = "0x015f68893a39b3ba0681584387670ff8b00f4db2"
DEFAULT_URL = "http://127.0.0.1:8545"


def is_circle_ci() -> bool:
    """Return True when running inside CircleCI."""
    return os.environ.get("CIRCLECI") == "true"


def method_sig(name: str) -> bytes:
    """Return the 4-byte selector of a function that takes no arguments."""
    return keccak.new(digest_bits=256, data=(name + "()").encode()).digest()[:4]


def infura_endpoint() -> str:
    """Return the Infura URL from the INFURA_URL environment variable."""
    url = os.environ.get("INFURA_URL", "")
    if not url:
        raise RuntimeError("Infura url not set")
    return url


def _open_port() -> str:
    while True:
        port = random.randrange(12000, 15000)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("", port))
            except OSError:
                continue
        return str(port)


class RPCCallError(Exception):
    """An error object returned by a JSON-RPC endpoint."""

    def __init__(self, message: str, code: int = 0, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


def _transaction_params(txn: Transaction) -> dict[str, Any]:
    params: dict[str, Any] = {"from": str(txn.from_)}
    if txn.to:
        params["to"] = txn.to
    if txn.input:
        params["data"] = "0x" + bytes(txn.input).hex()
    if txn.gas:
        params["gas"] = hex(txn.gas)
    if txn.gas_price:
        params["gasPrice"] = hex(txn.gas_price)
    if txn.value is not None:
        params["value"] = hex(txn.value)
    return params


def _jsonable(value: Any) -> Any:
    if isinstance(value, Transaction):
        return _transaction_params(value)
    if isinstance(value, (Hash, Address)):
        return str(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


class EthClient:
    """A bare JSON-RPC client over HTTP."""

    def __init__(self, url: str = "") -> None:
        self.url = url or DEFAULT_URL

    def call(self, method: str, *args: Any) -> Any:
        """Call ``method`` and return its result, or None when the result is null."""
        request = {"id": 0, "method": method, "params": list(args) if args else None}
        body = json.dumps(request, default=_jsonable)
        resp = requests.post(
            self.url, data=body, headers={"Content-Type": "application/json"}
        )
        try:
            reply = resp.json()
        finally:
            resp.close()
        error = reply.get("error")
        if error:
            raise RPCCallError(error.get("message", ""), error.get("code", 0), error.get("data"))
        return reply.get("result")


@dataclass
class ServerConfig:
    """Where the node keeps its data and which ports it listens on."""

    data_dir: str
    http_port: str
    ws_port: str


class GethServer:
    """A geth node running in development mode."""

    def __init__(self, callback: Optional[Callable[[ServerConfig], None]] = None) -> None:
        path = "geth"
        try:
            subprocess.run(
                [path, "version"],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=True,
            )
        except (OSError, subprocess.CalledProcessError) as exc:
            raise RuntimeError(f"geth version failed: {exc}") from exc

        data_dir = tempfile.mkdtemp(prefix="geth-")
        self.config = ServerConfig(data_dir=data_dir, http_port=_open_port(), ws_port=_open_port())
        if callback is not None:
            callback(self.config)

        args = [
            "--dev",
            "--datadir", os.path.join(data_dir, "data"),
            "--ipcpath", os.path.join(data_dir, "geth.ipc"),
            "--rpc", "--rpcport", self.config.http_port,
            "--ws", "--wsport", self.config.ws_port,
        ]
        self._process = subprocess.Popen(
            [path, *args], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL
        )
        try:
            while not self._http_endpoint_ready():
                if self._process.poll() is not None:
                    raise RuntimeError("geth exited before its endpoint was ready")
                time.sleep(0.05)
            self._client = EthClient(self.http_addr())
            self._accounts = [parse_address(a) for a in self._client.call("eth_accounts") or []]
        except BaseException:
            self.close()
            raise

    def _http_endpoint_ready(self) -> bool:
        try:
            requests.post(self.http_addr(), headers={"Content-Type": "application/json"}).close()
        except requests.RequestException:
            return False
        return True

    def account(self, index: int) -> Address:
        return self._accounts[index]

    def ipc_path(self) -> str:
        return os.path.join(self.config.data_dir, "geth.ipc")

    def ws_addr(self) -> str:
        return "ws://localhost:" + self.config.ws_port

    def http_addr(self) -> str:
        return "http://localhost:" + self.config.http_port

    def process_block(self) -> Receipt:
        """Send a small transfer so that a new block is mined."""
        return self.send_txn(Transaction(from_=self.account(0), to=DUMMY_ADDR, value=10))

    def call(self, msg: Mapping[str, Any]) -> str:
        """Run eth_call against the latest block; ``from`` defaults to account 0."""
        payload = dict(msg)
        if not payload.get("from"):
            payload["from"] = str(self.account(0))
        result = self._client.call("eth_call", payload, "latest")
        if result is None:
            raise RPCCallError("not found")
        return result

    def txn_to(self, address: Address, method: str) -> Receipt:
        """Send a transaction calling ``method()`` on ``address``."""
        return self.send_txn(Transaction(to=str(address), input=method_sig(method)))

    def send_txn(self, txn: Transaction) -> Receipt:
        """Send a transaction and wait for its receipt."""
        txn = dataclasses.replace(
            txn,
            from_=txn.from_ if txn.from_ != Address() else self.account(0),
            gas_price=txn.gas_price or DEFAULT_GAS_PRICE,
            gas=txn.gas or DEFAULT_GAS_LIMIT,
        )
        tx_hash = self._client.call("eth_sendTransaction", txn)
        if tx_hash is None:
            raise RPCCallError("not found")

        count = 0
        while True:
            result = self._client.call("eth_getTransactionReceipt", tx_hash)
            if result is not None:
                return receipt_from_json(result)
            if count > 100:
                raise TimeoutError("timeout")
            time.sleep(0.05)
            count += 1

    def close(self) -> None:
        """Stop the node and remove its data directory."""
        try:
            process = getattr(self, "_process", None)
            if process is not None and process.poll() is None:
                process.kill()
                process.wait()
        finally:
            shutil.rmtree(self.config.data_dir, ignore_errors=True)

    def __enter__(self) -> "GethServer":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def multi_addr(
    callback: Optional[Callable[[ServerConfig], None]],
    func: Callable[[GethServer, str], None],
) -> None:
    """Run ``func`` against the node's HTTP, websocket and IPC endpoints."""
    with GethServer(callback) as server:
        func(server, server.http_addr())
        func(server, server.ws_addr())
        func(server, server.ipc_path())