"""Chain data types and their JSON-RPC encodings."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

LATEST = -1
PENDING = -2
EARLIEST = -3

_HEX_BYTES_RE = re.compile(r"(?:[0-9a-fA-F]{2})*")
_HEX_UINT_RE = re.compile(r"[0-9a-fA-F]+")
_HEX_INT_RE = re.compile(r"[+-]?[0-9a-fA-F]+")
_MAX_UINT64 = 2**64 - 1

JSONInput = Union[str, bytes, bytearray, Mapping[str, Any]]


class DecodeError(ValueError):
    """Raised when a JSON-RPC value cannot be decoded."""


def _strip_prefix(text: str, message: Optional[str] = None) -> str:
    text = text.strip('"')
    if not text.startswith("0x"):
        raise DecodeError(message or "0x prefix not found")
    return text[2:]


def _decode_hex_bytes(digits: str) -> bytes:
    if not _HEX_BYTES_RE.fullmatch(digits):
        raise DecodeError(f"invalid hex string {digits!r}")
    return bytes.fromhex(digits)


class _FixedBytes(bytes):
    """An immutable byte string of a fixed length, shown as 0x-prefixed hex."""

    size = 0

    def __new__(cls, value: Union[bytes, bytearray, memoryview] = b""):
        if isinstance(value, int):
            raise TypeError(f"{cls.__name__} takes bytes, not int")
        raw = bytes(value) or bytes(cls.size)
        if len(raw) != cls.size:
            raise ValueError(f"{cls.__name__} must be {cls.size} bytes, got {len(raw)}")
        return super().__new__(cls, raw)

    @classmethod
    def from_hex(cls, text: Union[str, bytes]):
        """Decode a 0x-prefixed hex string of exactly the right length."""
        if isinstance(text, (bytes, bytearray)):
            text = bytes(text).decode()
        raw = _decode_hex_bytes(_strip_prefix(text))
        if len(raw) != cls.size:
            raise DecodeError(f"length {len(raw)} is not correct, expected {cls.size}")
        return cls(raw)

    def __str__(self) -> str:
        return "0x" + self.hex()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r})"


class Hash(_FixedBytes):
    """A 32-byte hash."""

    size = 32


class Address(_FixedBytes):
    """A 20-byte account address."""

    size = 20


def parse_hash(text: Union[str, bytes]) -> Hash:
    """Parse a 0x-prefixed 32-byte hash."""
    return Hash.from_hex(text)


def parse_address(text: Union[str, bytes]) -> Address:
    """Parse a 0x-prefixed 20-byte address."""
    return Address.from_hex(text)


@dataclass
class Transaction:
    hash: Hash = field(default_factory=Hash)
    from_: Address = field(default_factory=Address)
    to: Optional[str] = None
    input: bytes = b""
    gas_price: int = 0
    gas: int = 0
    value: Optional[int] = None


@dataclass
class Block:
    hash: Hash = field(default_factory=Hash)
    parent_hash: Hash = field(default_factory=Hash)
    sha3_uncles: Hash = field(default_factory=Hash)
    transactions_root: Hash = field(default_factory=Hash)
    state_root: Hash = field(default_factory=Hash)
    receipts_root: Hash = field(default_factory=Hash)
    miner: Address = field(default_factory=Address)
    number: int = 0
    gas_limit: int = 0
    gas_used: int = 0
    timestamp: int = 0
    difficulty: Optional[int] = None
    extra_data: bytes = b""
    transactions_hashes: list[Hash] = field(default_factory=list)
    transactions: list[Transaction] = field(default_factory=list)
    uncles: list[Hash] = field(default_factory=list)


@dataclass
class Log:
    removed: bool = False
    log_index: int = 0
    transaction_index: int = 0
    transaction_hash: Hash = field(default_factory=Hash)
    block_hash: Hash = field(default_factory=Hash)
    block_number: int = 0
    address: Address = field(default_factory=Address)
    topics: list[Hash] = field(default_factory=list)
    data: bytes = b""


@dataclass
class Receipt:
    transaction_hash: Hash = field(default_factory=Hash)
    transaction_index: int = 0
    contract_address: Address = field(default_factory=Address)
    block_hash: Hash = field(default_factory=Hash)
    from_: Address = field(default_factory=Address)
    block_number: int = 0
    gas_used: int = 0
    cumulative_gas_used: int = 0
    logs_bloom: bytes = b""
    logs: list[Log] = field(default_factory=list)


@dataclass
class LogFilter:
    """Query parameters for eth_getLogs."""

    address: list[Address] = field(default_factory=list)
    topics: list[Optional[Hash]] = field(default_factory=list)
    block_hash: Optional[Hash] = None
    from_block: Optional[int] = None
    to_block: Optional[int] = None

    def set_from(self, number: int) -> None:
        self.from_block = number

    def set_to(self, number: int) -> None:
        self.to_block = number


# --- decoding -----------------------------------------------------------


def _load(data: JSONInput) -> Mapping[str, Any]:
    if isinstance(data, Mapping):
        return data
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).decode()
    try:
        obj = json.loads(data)
    except json.JSONDecodeError as exc:
        raise DecodeError(str(exc)) from exc
    if not isinstance(obj, Mapping):
        raise DecodeError("expected a JSON object")
    return obj


def _raw_text(obj: Mapping[str, Any], key: str) -> str:
    if key not in obj:
        raise DecodeError(f"field '{key}' not found")
    value = obj[key]
    return value if isinstance(value, str) else json.dumps(value)


def _prefixed_digits(obj: Mapping[str, Any], key: str) -> str:
    text = _raw_text(obj, key).strip('"')
    return _strip_prefix(text, f"field {text} does not have 0x prefix")


def _decode_uint(obj: Mapping[str, Any], key: str) -> int:
    digits = _prefixed_digits(obj, key)
    if not _HEX_UINT_RE.fullmatch(digits):
        raise DecodeError(f"field '{key}': invalid hex number {digits!r}")
    number = int(digits, 16)
    if number > _MAX_UINT64:
        raise DecodeError(f"field '{key}': value out of range")
    return number


def _decode_big_int(obj: Mapping[str, Any], key: str) -> int:
    digits = _prefixed_digits(obj, key)
    if not _HEX_INT_RE.fullmatch(digits):
        raise DecodeError("failed to decode big int")
    return int(digits, 16)


def _decode_bytes(obj: Mapping[str, Any], key: str, size: Optional[int] = None) -> bytes:
    text = _raw_text(obj, key).strip('"')
    raw = _decode_hex_bytes(_strip_prefix(text, f"field {text} does not have 0x prefix"))
    if size is not None and len(raw) != size:
        raise DecodeError(
            f"field {text} invalid length, expected {size} but found {len(raw)}"
        )
    return raw


def _decode_fixed(cls, obj: Mapping[str, Any], key: str):
    value = obj.get(key)
    if not isinstance(value, str) or not value:
        raise DecodeError(f"field '{key}' not found")
    return cls.from_hex(value)


def _decode_bool(obj: Mapping[str, Any], key: str) -> bool:
    if key not in obj:
        raise DecodeError(f"field '{key}' not found")
    value = obj[key]
    if value is True or value is False:
        return value
    raise DecodeError(
        f"field '{key}' with content '{json.dumps(value)}' cannot be decoded as bool"
    )


def _field_not_null(obj: Mapping[str, Any], key: str) -> bool:
    return obj.get(key) is not None


def _array(obj: Mapping[str, Any], key: str) -> list:
    value = obj.get(key)
    return value if isinstance(value, list) else []


def _hash_item(item: Any) -> Hash:
    return Hash.from_hex(item if isinstance(item, str) else "")


def _object_item(item: Any) -> Mapping[str, Any]:
    return item if isinstance(item, Mapping) else {}


def _transaction(obj: Mapping[str, Any]) -> Transaction:
    return Transaction(
        hash=_decode_fixed(Hash, obj, "hash"),
        from_=_decode_fixed(Address, obj, "from"),
        gas_price=_decode_uint(obj, "gasPrice"),
        gas=_decode_uint(obj, "gas"),
        input=_decode_bytes(obj, "input"),
        value=_decode_big_int(obj, "value"),
    )


def _log(obj: Mapping[str, Any]) -> Log:
    log = Log(
        removed=_decode_bool(obj, "removed"),
        log_index=_decode_uint(obj, "logIndex"),
        block_number=_decode_uint(obj, "blockNumber"),
        transaction_index=_decode_uint(obj, "transactionIndex"),
        transaction_hash=_decode_fixed(Hash, obj, "transactionHash"),
        block_hash=_decode_fixed(Hash, obj, "blockHash"),
        address=_decode_fixed(Address, obj, "address"),
        data=_decode_bytes(obj, "data"),
    )
    for topic in _array(obj, "topics"):
        if not isinstance(topic, str):
            raise DecodeError("topic is not a string")
        log.topics.append(Hash.from_hex(topic))
    return log


def block_from_json(data: JSONInput) -> Block:
    """Decode a block, with either transaction hashes or full transactions."""
    obj = _load(data)
    block = Block(
        hash=_decode_fixed(Hash, obj, "hash"),
        parent_hash=_decode_fixed(Hash, obj, "parentHash"),
        sha3_uncles=_decode_fixed(Hash, obj, "sha3Uncles"),
        transactions_root=_decode_fixed(Hash, obj, "transactionsRoot"),
        state_root=_decode_fixed(Hash, obj, "stateRoot"),
        receipts_root=_decode_fixed(Hash, obj, "receiptsRoot"),
        miner=_decode_fixed(Address, obj, "miner"),
        number=_decode_uint(obj, "number"),
        gas_limit=_decode_uint(obj, "gasLimit"),
        gas_used=_decode_uint(obj, "gasUsed"),
        timestamp=_decode_uint(obj, "timestamp"),
        difficulty=_decode_big_int(obj, "difficulty"),
        extra_data=_decode_bytes(obj, "extraData"),
    )
    elems = _array(obj, "transactions")
    if elems:
        if isinstance(elems[0], str):
            block.transactions_hashes = [_hash_item(e) for e in elems]
        else:
            block.transactions = [_transaction(_object_item(e)) for e in elems]
    block.uncles = [_hash_item(e) for e in _array(obj, "uncles")]
    return block


def transaction_from_json(data: JSONInput) -> Transaction:
    """Decode a transaction object."""
    return _transaction(_load(data))


def receipt_from_json(data: JSONInput) -> Receipt:
    """Decode a transaction receipt."""
    obj = _load(data)
    receipt = Receipt(from_=_decode_fixed(Address, obj, "from"))
    if _field_not_null(obj, "contractAddress"):
        receipt.contract_address = _decode_fixed(Address, obj, "contractAddress")
    receipt.transaction_hash = _decode_fixed(Hash, obj, "transactionHash")
    receipt.block_hash = _decode_fixed(Hash, obj, "blockHash")
    receipt.transaction_index = _decode_uint(obj, "transactionIndex")
    receipt.block_number = _decode_uint(obj, "blockNumber")
    receipt.gas_used = _decode_uint(obj, "gasUsed")
    receipt.cumulative_gas_used = _decode_uint(obj, "cumulativeGasUsed")
    receipt.logs_bloom = _decode_bytes(obj, "logsBloom", 256)
    receipt.logs = [_log(_object_item(e)) for e in _array(obj, "logs")]
    return receipt


def log_from_json(data: JSONInput) -> Log:
    """Decode a log entry."""
    return _log(_load(data))


# --- encoding -----------------------------------------------------------


def _hex_bytes(raw: bytes) -> str:
    return "0x" + bytes(raw).hex()


def _transaction_dict(txn: Transaction) -> dict[str, Any]:
    out: dict[str, Any] = {"hash": str(txn.hash), "from": str(txn.from_)}
    if txn.to is not None:
        out["to"] = txn.to
    out["gasPrice"] = hex(txn.gas_price)
    out["gas"] = hex(txn.gas)
    out["input"] = _hex_bytes(txn.input)
    if txn.value is not None:
        out["value"] = hex(txn.value)
    return out


def transaction_to_json(txn: Transaction) -> str:
    """Encode a transaction as a JSON object."""
    return json.dumps(_transaction_dict(txn))


def block_to_json(block: Block) -> str:
    """Encode a block as a JSON object that block_from_json reads back."""
    if block.transactions:
        transactions: list[Any] = [_transaction_dict(t) for t in block.transactions]
    else:
        transactions = [str(h) for h in block.transactions_hashes]
    return json.dumps(
        {
            "hash": str(block.hash),
            "parentHash": str(block.parent_hash),
            "sha3Uncles": str(block.sha3_uncles),
            "transactionsRoot": str(block.transactions_root),
            "stateRoot": str(block.state_root),
            "receiptsRoot": str(block.receipts_root),
            "miner": str(block.miner),
            "number": hex(block.number),
            "gasLimit": hex(block.gas_limit),
            "gasUsed": hex(block.gas_used),
            "timestamp": hex(block.timestamp),
            "difficulty": hex(block.difficulty or 0),
            "extraData": _hex_bytes(block.extra_data),
            "transactions": transactions,
            "uncles": [str(h) for h in block.uncles],
        }
    )


def log_to_json(log: Log) -> str:
    """Encode a log entry as a JSON object that log_from_json reads back."""
    return json.dumps(
        {
            "removed": log.removed,
            "logIndex": hex(log.log_index),
            "transactionIndex": hex(log.transaction_index),
            "transactionHash": str(log.transaction_hash),
            "blockHash": str(log.block_hash),
            "blockNumber": hex(log.block_number),
            "address": str(log.address),
            "data": _hex_bytes(log.data),
            "topics": [str(t) for t in log.topics],
        }
    )