"""The log tracker: follows the chain head and keeps filter entries in sync."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Optional, Protocol

from web3track.store.base import Store
from web3track.structs import LATEST, Block, Hash, Log, LogFilter
from web3track.tracker.block_tracker import BlockTracker, JSONBlockTracker
from web3track.tracker.filter import (
    DB_CHAIN_ID,
    DB_FILTER,
    DB_GENESIS,
    DEFAULT_BATCH_SIZE,
    DEFAULT_MAX_BLOCK_BACKLOG,
    BlockEvent,
    Config,
    Event,
    EventType,
    Filter,
    FilterConfig,
    parse_uint64_or_hex,
)

import queue

_TOO_MUCH_DATA = "query returned more than 10000 results"
_MAX_UINT64 = 2**64 - 1
_GET_LOGS_RETRIES = 5
_GET_LOGS_RETRY_DELAY = 0.5


class RPCError(Exception):
    """An error object returned by a JSON-RPC provider."""

    def __init__(self, message: str, code: int = 0, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.data = data


class Provider(Protocol):
    """The chain queries the tracker needs."""

    def block_number(self) -> int: ...

    def get_block_by_hash(self, hash: Hash, full: bool) -> Block: ...

    def get_block_by_number(self, number: int, full: bool) -> Block: ...

    def get_logs(self, filter: LogFilter) -> list[Log]: ...

    def chain_id(self) -> int: ...


def _too_much_data_requested(exc: Exception) -> bool:
    return isinstance(exc, RPCError) and exc.message == _TOO_MUCH_DATA


class Tracker:
    """Tracks contract logs for a set of filters, following reorgs.

    ``etherscan`` may be set to an object with ``query(module, action, params)``
    returning a list of log dicts; it is used to skip ahead when
    ``config.etherscan_fast_track`` is enabled.
    """

    def __init__(self, provider: Any, config: Config) -> None:
        if config.batch_size == 0:
            config.batch_size = DEFAULT_BATCH_SIZE
        if config.max_block_backlog == 0:
            config.max_block_backlog = DEFAULT_MAX_BLOCK_BACKLOG
        self.provider = provider
        self.config = config
        self.store: Optional[Store] = None
        self.logger = logging.getLogger(__name__)
        self.blocks: list[Block] = []
        self.filters: list[Filter] = []
        self.block_tracker: Optional[BlockTracker] = None
        self.block_queue: "queue.Queue[BlockEvent]" = queue.Queue(maxsize=1)
        self.ready = threading.Event()
        self.etherscan: Any = None
        self._blocks_lock = threading.RLock()
        self._filter_lock = threading.Lock()
        self._presync_lock = threading.Lock()
        self._presync_done = False

    def set_logger(self, logger: logging.Logger) -> None:
        self.logger = logger

    def set_store(self, store: Store) -> None:
        self.store = store

    def new_filter(self, config: Optional[FilterConfig]) -> Filter:
        """Register a filter, recording its configuration in the store."""
        if config is None:
            config = FilterConfig()
        entry = self.store.get_entry(config.hash())
        flt = Filter(config, entry, self)
        key = f"{DB_FILTER}_{config.hash()}"
        if not self.store.get(key):
            self.store.set(key, config.to_json().encode().hex())
        with self._filter_lock:
            self.filters.append(flt)
        return flt

    # --- checks and setup ---------------------------------------------------

    def pre_sync_check(self) -> None:
        """Check once that the store belongs to the provider's chain."""
        with self._presync_lock:
            if self._presync_done:
                return
            self._presync_done = True
            self._pre_sync_check_impl()

    def _pre_sync_check_impl(self) -> None:
        genesis_block = self.provider.get_block_by_number(0, False)
        chain_id = str(self.provider.chain_id())
        genesis = self.store.get(DB_GENESIS)
        stored_chain_id = self.store.get(DB_CHAIN_ID)
        if genesis:
            if genesis != str(genesis_block.hash) or stored_chain_id != chain_id:
                raise RuntimeError("bad genesis")
        else:
            self.store.set(DB_GENESIS, str(genesis_block.hash))
            self.store.set(DB_CHAIN_ID, chain_id)

    def populate_blocks(self) -> list[Block]:
        """Return up to max_block_backlog blocks ending at the head, oldest first."""
        block = self.provider.get_block_by_number(LATEST, False)
        if block.number == 0:
            return []
        blocks: list[Block] = []
        for _ in range(self.config.max_block_backlog):
            blocks.append(block)
            if block.number == 0:
                break
            block = self.provider.get_block_by_hash(block.parent_hash, False)
        blocks.reverse()
        return blocks

    def start(self, stop: threading.Event) -> None:
        """Load the head blocks and start following new ones until ``stop`` is set."""
        if self.block_tracker is None:
            self.block_tracker = JSONBlockTracker(self.logger, self.provider)
        self.pre_sync_check()
        self.blocks = self.populate_blocks()
        self.ready.set()
        self.block_tracker.track(stop, self.handle_reconcile)

    # --- syncing --------------------------------------------------------------

    def sync(self, stop: threading.Event, filter: Filter) -> None:
        """Sync ``filter`` up to the head."""
        self._sync_impl(stop, filter)
        filter.mark_synced()

    def sync_async(self, stop: threading.Event, filter: Filter) -> None:
        """Sync ``filter`` in a background thread."""

        def run() -> None:
            try:
                self.sync(stop, filter)
            except Exception as exc:  # noqa: BLE001 - reported through the logger
                self.logger.error("filter sync failed: %s", exc)

        threading.Thread(target=run, name="tracker-sync", daemon=True).start()

    def _find_ancestor(self, block: Block, pivot: Block) -> int:
        for _ in range(self.config.max_block_backlog):
            if block.number != pivot.number:
                raise RuntimeError("block numbers do not match")
            if block.hash == pivot.hash:
                return block.number
            block = self.provider.get_block_by_hash(block.parent_hash, False)
            pivot = self.provider.get_block_by_hash(pivot.parent_hash, False)
        raise RuntimeError(
            f"the reorg is bigger than maxBlockBacklog {self.config.max_block_backlog}"
        )

    def _sync_batch(self, stop: threading.Event, filter: Filter, start: int, end: int) -> None:
        query = filter.config.filter_search()
        batch_size = self.config.batch_size
        additive = int(batch_size * 0.10)
        i = start
        while True:
            dst = min(end, i + batch_size)
            query.set_from(i)
            query.set_to(dst)
            try:
                logs = self.provider.get_logs(query)
            except Exception as exc:
                if _too_much_data_requested(exc) and batch_size > 0:
                    batch_size //= 2
                    continue
                raise

            try:
                filter.sync_queue.put_nowait(dst)
            except queue.Full:
                pass

            filter.entry.store_logs(logs)
            filter.emit_logs(EventType.ADD, logs)

            block = self.provider.get_block_by_number(dst, False)
            filter.store_last_block(block)

            if stop.is_set():
                raise InterruptedError("sync cancelled")

            i += batch_size + 1
            if batch_size < self.config.batch_size:
                batch_size = min(self.config.batch_size, batch_size + additive)
            if i > end:
                return

    def _fast_track(self, config: FilterConfig) -> Optional[Block]:
        if not config.address or not self.config.etherscan_fast_track:
            return None
        if self.etherscan is None:
            return None

        def first_block(address) -> int:
            params = {"address": str(address), "fromBlock": "0", "toBlock": "latest"}
            out = self.etherscan.query("logs", "getLogs", params) or []
            if not out:
                return 0
            number = out[0].get("blockNumber")
            if not isinstance(number, str):
                raise RuntimeError("failed to cast blocknumber")
            return parse_uint64_or_hex(number)

        min_block = min((first_block(a) for a in config.address), default=_MAX_UINT64)
        return self.provider.get_block_by_number(max(min_block - 1, 0), False)

    def _sync_impl(self, stop: threading.Event, filter: Filter) -> None:
        self.pre_sync_check()
        backlog = self.config.max_block_backlog

        self._blocks_lock.acquire()
        held = True
        try:
            if not self.blocks:
                return
            target = self.blocks[-1]
            target_num = target.number

            last = filter.last_block()
            if last is None:
                try:
                    last = self._fast_track(filter.config)
                except Exception as exc:
                    raise RuntimeError(f"failed to fasttrack: {exc}") from exc
                if last is not None:
                    filter.store_last_block(last)
            elif last.hash == target.hash:
                return

            origin = 0
            if last is not None:
                if last.number > target_num:
                    raise RuntimeError("store is more advanced than the chain")
                pivot = self.provider.get_block_by_number(last.number, False)
                origin = last.number if last.number == target_num else last.number + 1
                if pivot.hash != last.hash:
                    ancestor = self._find_ancestor(last, pivot)
                    origin = ancestor + 1
                    removed = self._remove_logs(filter, ancestor + 1, None)
                    filter.emit_logs(EventType.DEL, removed)

            if target_num - origin + 1 > backlog:
                while True:
                    if origin > target_num:
                        raise RuntimeError(f"from ({origin}) higher than to ({target_num})")
                    if target_num - origin + 1 <= backlog:
                        break
                    self._blocks_lock.release()
                    held = False
                    limit = target_num - backlog
                    self._sync_batch(stop, filter, origin, limit)
                    origin = limit + 1
                    self._blocks_lock.acquire()
                    held = True
                    target_num = self.blocks[-1].number

            start = len(self.blocks) - 1 - (target_num - origin)
            if start < 0:
                raise RuntimeError("not enough blocks in the backlog to sync")
            event = self._do_filter(filter, self.blocks[start:], [])
            filter.emit_event(event)
        finally:
            if held:
                self._blocks_lock.release()

    # --- reconciliation ---------------------------------------------------------

    def add_block(self, block: Block) -> None:
        """Append ``block`` to the head, dropping the oldest beyond the backlog."""
        with self._blocks_lock:
            if len(self.blocks) == self.config.max_block_backlog:
                self.blocks = self.blocks[1:]
            if self.blocks:
                last_num = self.blocks[-1].number
                if last_num + 1 != block.number:
                    raise RuntimeError(f"bad number sequence. {last_num} and {block.number}")
            self.blocks.append(block)

    def _block_index(self, hash: Hash) -> int:
        return next((i for i, b in enumerate(self.blocks) if b.hash == hash), -1)

    def _remove_logs(self, filter: Filter, number: int, hash: Optional[Hash]) -> list[Log]:
        index = filter.entry.last_index()
        if index == 0:
            return []
        removed: list[Log] = []
        while True:
            elem = index - 1
            log = filter.entry.get_log(elem)
            if log.block_number == number and hash is not None and log.block_hash != hash:
                break
            if log.block_number < number:
                break
            removed.append(log)
            index = elem
            if elem == 0:
                break
        filter.entry.remove_logs(index)
        return removed

    def _reconcile_impl(self, block: Block) -> tuple[list[Block], int]:
        if self._block_index(block.hash) != -1:
            return [], -1
        if not self.blocks:
            return [block], -1
        if self.blocks[-1].hash == block.parent_hash:
            return [block], -1
        index = self._block_index(block.parent_hash)
        if index != -1:
            return [block], index

        added = [block]
        count = 0
        while True:
            if count > self.config.max_block_backlog:
                raise RuntimeError("Cannot reconcile more than max backlog values")
            count += 1
            try:
                parent = self.provider.get_block_by_hash(block.parent_hash, False)
            except Exception as exc:
                raise RuntimeError(f"Parent with hash {block.parent_hash} not found") from exc
            added.append(parent)
            index = self._block_index(parent.parent_hash)
            if index != -1:
                break
            block = parent
        added.reverse()
        return added, index

    def _handle_block_event(self, block: Block) -> Optional[BlockEvent]:
        with self._blocks_lock:
            blocks, index = self._reconcile_impl(block)
            if not blocks:
                return None
            event = BlockEvent()
            if index != -1:
                event.removed = self.blocks[index + 1:]
                self.blocks = self.blocks[: index + 1]
            for b in blocks:
                event.added.append(b)
                self.add_block(b)
            return event

    def _do_filter(self, filter: Filter, added: list[Block], removed: list[Block]) -> Event:
        event = Event()
        if removed:
            pivot = removed[0]
            logs = self._remove_logs(filter, pivot.number, pivot.hash)
            event.removed.extend(reversed(logs))

        for block in added:
            query = filter.config.filter_search()
            query.block_hash = block.hash
            for attempt in range(_GET_LOGS_RETRIES):
                try:
                    logs = self.provider.get_logs(query)
                    break
                except Exception:
                    if attempt == _GET_LOGS_RETRIES - 1:
                        raise
                    time.sleep(_GET_LOGS_RETRY_DELAY)
            filter.entry.store_logs(logs)
            event.added.extend(logs)

        if added:
            filter.store_last_block(added[-1])
        return event

    def handle_reconcile(self, block: Block) -> None:
        """Fold a new head block into the tracked chain and update synced filters."""
        event = self._handle_block_event(block)
        if event is None:
            return
        try:
            self.block_queue.put_nowait(event)
        except queue.Full:
            pass
        with self._filter_lock:
            for flt in self.filters:
                if flt.is_synced():
                    flt.emit_event(self._do_filter(flt, event.added, event.removed))

    def get_saved_filters(self) -> list[FilterConfig]:
        """Return the filter configurations recorded in the store."""
        return [
            FilterConfig.from_json(bytes.fromhex(item))
            for item in self.store.list_prefix(DB_FILTER)
        ]