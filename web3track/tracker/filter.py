"""Log filters, tracker configuration and the events a filter emits."""

from __future__ import annotations

import enum
import hashlib
import json
import queue
import re
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

from web3track.store.base import Entry
from web3track.structs import (
    Address,
    Block,
    DecodeError,
    Hash,
    Log,
    LogFilter,
    block_from_json,
    block_to_json,
    parse_address,
    parse_hash,
)

DB_GENESIS = "genesis"
DB_CHAIN_ID = "chainID"
DB_LAST_BLOCK = "lastBlock"
DB_FILTER = "filter"

DEFAULT_MAX_BLOCK_BACKLOG = 10
DEFAULT_BATCH_SIZE = 100

_MAX_UINT64 = 2**64 - 1
_DEC_RE = re.compile(r"[0-9]+")
_HEX_RE = re.compile(r"[0-9a-fA-F]+")


@dataclass
class FilterConfig:
    """Which logs a filter follows: by emitting address and by topic."""

    address: list[Address] = field(default_factory=list)
    topics: list[Optional[Hash]] = field(default_factory=list)
    async_: bool = False
    _hash: str = field(default="", init=False, repr=False, compare=False)

    def hash(self) -> str:
        """Return a hex digest identifying the addresses and topics."""
        if not self._hash:
            digest = hashlib.sha256()
            for address in self.address:
                digest.update(str(address).encode())
            for topic in self.topics:
                digest.update(b"empty" if topic is None else str(topic).encode())
            self._hash = digest.hexdigest()
        return self._hash

    def filter_search(self) -> LogFilter:
        """Return a log query for this filter's addresses and topics."""
        return LogFilter(address=list(self.address), topics=list(self.topics))

    def to_json(self) -> str:
        """Encode the configuration for storage."""
        return json.dumps(
            {
                "address": [str(a) for a in self.address] or None,
                "topics": [None if t is None else str(t) for t in self.topics] or None,
                "Async": self.async_,
            }
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> "FilterConfig":
        """Decode a configuration written by ``to_json``."""
        try:
            obj = json.loads(text)
        except json.JSONDecodeError as exc:
            raise DecodeError(str(exc)) from exc
        if not isinstance(obj, dict):
            raise DecodeError("expected a JSON object")
        return cls(
            address=[parse_address(a) for a in obj.get("address") or []],
            topics=[None if t is None else parse_hash(t) for t in obj.get("topics") or []],
            async_=bool(obj.get("Async", False)),
        )


class EventType(enum.IntEnum):
    ADD = 0
    DEL = 1


@dataclass
class Event:
    """Logs added to and removed from the chain."""

    type: EventType = EventType.ADD
    added: list[Log] = field(default_factory=list)
    removed: list[Log] = field(default_factory=list)


@dataclass
class BlockEvent:
    """Blocks added to and removed from the tracked head."""

    type: EventType = EventType.ADD
    added: list[Block] = field(default_factory=list)
    removed: list[Block] = field(default_factory=list)


@dataclass
class Config:
    """Tracker settings."""

    batch_size: int = DEFAULT_BATCH_SIZE
    max_block_backlog: int = DEFAULT_MAX_BLOCK_BACKLOG
    etherscan_fast_track: bool = False
    etherscan_api_key: str = ""


def default_config() -> Config:
    """Return the default tracker configuration."""
    return Config()


def parse_uint64_or_hex(text: str) -> int:
    """Parse an unsigned 64-bit number, in hex when prefixed with 0x."""
    digits, pattern, base = text, _DEC_RE, 10
    if text.startswith("0x"):
        digits, pattern, base = text[2:], _HEX_RE, 16
    if not pattern.fullmatch(digits):
        raise ValueError(f"invalid number {text!r}")
    number = int(digits, base)
    if number > _MAX_UINT64:
        raise ValueError(f"number {text!r} out of range")
    return number


class Filter:
    """A filter registered on a tracker, with the queues it reports through.

    ``event_queue`` receives :class:`Event` objects, ``done_queue`` a signal
    when the first sync finishes and ``sync_queue`` the block reached by each
    bulk sync batch.
    """

    def __init__(
        self,
        config: FilterConfig,
        entry: Entry,
        tracker: Any,
        event_queue: Optional["queue.Queue[Event]"] = None,
    ) -> None:
        self.config = config
        self.entry = entry
        self.tracker = tracker
        self.event_queue: "queue.Queue[Event]" = (
            event_queue if event_queue is not None else queue.Queue(maxsize=1)
        )
        self.done_queue: "queue.Queue[None]" = queue.Queue(maxsize=1)
        self.sync_queue: "queue.Queue[int]" = queue.Queue(maxsize=1)
        self._synced = threading.Event()

    def _last_block_key(self) -> str:
        return f"{DB_LAST_BLOCK}_{self.config.hash()}"

    def last_block(self) -> Optional[Block]:
        """Return the last block processed for this filter, or None."""
        raw = self.tracker.store.get(self._last_block_key())
        if not raw:
            return None
        try:
            data = bytes.fromhex(raw)
        except ValueError as exc:
            raise DecodeError(str(exc)) from exc
        return block_from_json(data)

    def store_last_block(self, block: Block) -> None:
        """Record ``block`` as the last block processed."""
        self.tracker.store.set(self._last_block_key(), block_to_json(block).encode().hex())

    def emit_event(self, event: Optional[Event]) -> None:
        """Hand an event to the reader; asynchronous filters drop it when full."""
        if event is None:
            return
        if self.config.async_:
            try:
                self.event_queue.put_nowait(event)
            except queue.Full:
                pass
        else:
            self.event_queue.put(event)

    def emit_logs(self, event_type: EventType, logs: list[Log]) -> None:
        """Emit ``logs`` as added or removed."""
        event = Event()
        if event_type == EventType.ADD:
            event.added = logs
        elif event_type == EventType.DEL:
            event.removed = logs
        self.emit_event(event)

    def sync(self, stop: threading.Event) -> None:
        """Sync the filter up to the tracker's head."""
        self.tracker.sync(stop, self)

    def sync_async(self, stop: threading.Event) -> None:
        """Sync the filter in the background."""
        self.tracker.sync_async(stop, self)

    def mark_synced(self) -> None:
        """Record that the filter reached the head and signal any waiter."""
        self._synced.set()
        try:
            self.done_queue.put_nowait(None)
        except queue.Full:
            pass

    def is_synced(self) -> bool:
        return self._synced.is_set()

    def wait(self) -> None:
        """Block until the filter has synced."""
        if not self.is_synced():
            self.done_queue.get()

    def wait_duration(self, seconds: float) -> None:
        """Block until the filter has synced, raising TimeoutError after ``seconds``."""
        if self.is_synced():
            return
        try:
            self.done_queue.get(timeout=seconds)
        except queue.Empty:
            raise TimeoutError("timeout") from None