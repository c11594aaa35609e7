"""A store backed by an SQL database reached through SQLAlchemy."""

from __future__ import annotations

import re
from typing import Iterable

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from web3track.store.base import Entry, Store
from web3track.structs import DecodeError, Hash, Log, parse_address, parse_hash

_KV_SCHEMA = "CREATE TABLE IF NOT EXISTS kv (key text unique, val text)"

_TABLE_NAME_RE = re.compile(r"[A-Za-z0-9_]+")


def _log_schema(table: str) -> str:
    return (
        f"CREATE TABLE IF NOT EXISTS {table} ("
        " indx numeric,"
        " tx_index numeric,"
        " tx_hash text,"
        " block_num numeric,"
        " block_hash text,"
        " address text,"
        " topics text,"
        " data text)"
    )


def _escape_like(prefix: str) -> str:
    return prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SQLEntry(Entry):
    """Logs of one filter, stored in a table of their own."""

    def __init__(self, engine: Engine, table: str) -> None:
        self._engine = engine
        self._table = table

    def last_index(self) -> int:
        with self._engine.connect() as conn:
            last = conn.execute(
                text(f"SELECT indx FROM {self._table} ORDER BY indx DESC LIMIT 1")
            ).scalar()
        return 0 if last is None else int(last) + 1

    def store_logs(self, logs: Iterable[Log]) -> None:
        start = self.last_index()
        query = text(
            f"INSERT INTO {self._table} "
            "(indx, tx_index, tx_hash, block_num, block_hash, address, data, topics) "
            "VALUES (:indx, :tx_index, :tx_hash, :block_num, :block_hash, :address, :data, :topics)"
        )
        rows = [
            {
                "indx": start + offset,
                "tx_index": log.transaction_index,
                "tx_hash": str(log.transaction_hash),
                "block_num": log.block_number,
                "block_hash": str(log.block_hash),
                "address": str(log.address),
                "data": "0x" + bytes(log.data).hex() if log.data else "",
                "topics": ",".join(str(topic) for topic in log.topics),
            }
            for offset, log in enumerate(logs)
        ]
        if not rows:
            return
        with self._engine.begin() as conn:
            conn.execute(query, rows)

    def remove_logs(self, index: int) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(f"DELETE FROM {self._table} WHERE indx >= :indx"), {"indx": index}
            )

    def get_log(self, index: int) -> Log:
        with self._engine.connect() as conn:
            row = conn.execute(
                text(
                    "SELECT tx_index, tx_hash, block_num, block_hash, address, topics, data "
                    f"FROM {self._table} WHERE indx = :indx"
                ),
                {"indx": index},
            ).first()
        if row is None:
            raise IndexError(f"no log at index {index}")
        tx_index, tx_hash, block_num, block_hash, address, topics, data = row

        log = Log(
            transaction_index=int(tx_index),
            transaction_hash=parse_hash(tx_hash),
            block_number=int(block_num),
            block_hash=parse_hash(block_hash),
            address=parse_address(address),
        )
        log.topics = [parse_hash(item) for item in topics.split(",")] if topics else []
        if data:
            if not data.startswith("0x"):
                raise DecodeError("0x prefix not found in data")
            try:
                log.data = bytes.fromhex(data[2:])
            except ValueError as exc:
                raise DecodeError(str(exc)) from exc
        return log


class SQLStore(Store):
    """Key-value pairs in a ``kv`` table and one ``logs_<name>`` table per entry."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        with self._engine.begin() as conn:
            conn.execute(text(_KV_SCHEMA))

    def get(self, key: str) -> str:
        with self._engine.connect() as conn:
            value = conn.execute(
                text("SELECT val FROM kv WHERE key = :key"), {"key": key}
            ).scalar()
        return "" if value is None else value

    def list_prefix(self, prefix: str) -> list[str]:
        with self._engine.connect() as conn:
            rows = conn.execute(
                text("SELECT val FROM kv WHERE key LIKE :pattern ESCAPE '\\'"),
                {"pattern": _escape_like(prefix) + "%"},
            )
            return [value for (value,) in rows]

    def set(self, key: str, value: str) -> None:
        with self._engine.begin() as conn:
            conn.execute(
                text(
                    "INSERT INTO kv (key, val) VALUES (:key, :val) "
                    "ON CONFLICT (key) DO UPDATE SET val = excluded.val"
                ),
                {"key": key, "val": value},
            )

    def close(self) -> None:
        self._engine.dispose()

    def get_entry(self, name: str) -> SQLEntry:
        if not _TABLE_NAME_RE.fullmatch(name):
            raise ValueError(f"invalid entry name {name!r}")
        table = "logs_" + name
        with self._engine.begin() as conn:
            conn.execute(text(_log_schema(table)))
        return SQLEntry(self._engine, table)


def new_postgresql_store(endpoint: str) -> SQLStore:
    """Open a store on the database at ``endpoint``."""
    return SQLStore(create_engine(endpoint))