# web3track

Follow the head of an Ethereum chain, collect the contract logs that match your
filters, undo them again when the chain reorganises, and keep what has been seen
in a store of your choice.

## Install

```
pip install web3track
pip install "web3track[test]"   # with pytest
```

## Contents

- `web3track.structs`: `Hash` (32 bytes) and `Address` (20 bytes), both `bytes`
  subclasses printed as `0x…` hex; the dataclasses `Block`, `Transaction`,
  `Receipt`, `Log` and `LogFilter`; `parse_hash`, `parse_address`; decoding
  from JSON-RPC objects (`block_from_json`, `transaction_from_json`,
  `receipt_from_json`, `log_from_json`) and encoding back (`block_to_json`,
  `transaction_to_json`, `log_to_json`). Malformed input raises `DecodeError`,
  a `ValueError`.
- `web3track.units`: `ether(value)` and `gwei(value)` turn a whole amount into
  wei. The amount must be an unsigned 64-bit integer; anything else raises
  `TypeError` or `ValueError`.
- `web3track.store.base`: the abstract `Store` (key-value strings plus named log
  entries, usable as a context manager) and `Entry` (an append-only list of logs
  addressed by index).
- `web3track.store.inmem`: `InmemStore` and `InmemEntry`, kept in memory.
- `web3track.store.filedb`: `FileStore(path)`, kept in one SQLite file.
- `web3track.store.sql`: `SQLStore(engine)` on any SQLAlchemy engine, with one
  `kv` table and a `logs_<name>` table per entry; `new_postgresql_store(endpoint)`
  builds the engine from a database URL.
- `web3track.tracker.filter`: `FilterConfig`, `Filter`, `Config` and
  `default_config()`, `Event`, `BlockEvent`, `EventType`, `parse_uint64_or_hex`.
- `web3track.tracker.block_tracker`: `JSONBlockTracker`, which polls the provider
  for the latest block every `poll_interval` seconds (5 by default), and
  `SubscriptionBlockTracker`, which reads `newHeads` from a subscribing client.
- `web3track.tracker.tracker`: `Tracker` and `RPCError`.
- `web3track.testutil.contract`: `Contract`, `Event` and `new_event`, which build
  the source text of a small test contract and compute event signatures.
- `web3track.testutil.server`: `GethServer`, which starts a `geth --dev` node in a
  temporary directory, a bare JSON-RPC client `EthClient`, `method_sig`,
  `multi_addr`, `is_circle_ci` and `infura_endpoint`.

## Tracking logs

A provider is any object with `block_number()`, `get_block_by_hash(hash, full)`,
`get_block_by_number(number, full)`, `get_logs(log_filter)` and `chain_id()`,
returning the types in `web3track.structs`. `get_block_by_number` is called with
`web3track.structs.LATEST` for the head. A provider signals an oversized log
query by raising `RPCError("query returned more than 10000 results")`; the
tracker then halves its batch size and retries.

```python
import threading

from web3track.store.inmem import InmemStore
from web3track.tracker.filter import FilterConfig, default_config
from web3track.tracker.tracker import Tracker

stop = threading.Event()

tracker = Tracker(provider, default_config())
tracker.set_store(InmemStore())
tracker.start(stop)

log_filter = tracker.new_filter(FilterConfig(address=[contract_address], async_=True))
log_filter.sync(stop)

for log in log_filter.entry.logs():
    print(log.block_number, log.data.hex())

# later heads arrive on log_filter.event_queue as Event(added=..., removed=...)
# and block changes on tracker.block_queue as BlockEvent objects
stop.set()
```

Each filter reports through three queues: `event_queue` (`Event` objects),
`done_queue` (a signal when its first sync is done) and `sync_queue` (the block
reached by each bulk batch). A filter with `async_=False` waits for its reader
when `event_queue` is full; one with `async_=True` drops the event instead.
`Filter.sync_async(stop)` runs the sync in a background thread; `wait()` and
`wait_duration(seconds)` block until it finishes, the latter raising
`TimeoutError`.

The tracker keeps the last `max_block_backlog` blocks (10 by default) in
`tracker.blocks`. Filters far behind the head are first brought up with
`eth_getLogs` queries of `batch_size` blocks (100 by default). When a new head
does not extend the chain the tracker walks back to the known parent, removes the
logs of the dropped blocks and emits them as `removed`, then adds the new ones.

The store remembers the chain's genesis hash and chain id, refusing a provider on
another chain ("bad genesis"), and each filter's last processed block, so a new
tracker on the same store resumes where the last one stopped.
`Tracker.get_saved_filters()` returns every filter configuration registered.

## Stores

```python
from web3track.store.filedb import FileStore

with FileStore("tracker.db") as store:
    entry = store.get_entry("my-filter")
    entry.store_logs(logs)
    print(entry.last_index())   # one past the last stored index
    entry.remove_logs(0)        # drop everything from index 0 on
```

`new_postgresql_store` needs a PostgreSQL driver for SQLAlchemy installed
separately; `SQLStore` also works with an SQLite engine.

## What is not included

- No JSON-RPC provider for the tracker: you supply the object with the methods
  listed above. `EthClient` only posts single calls and returns raw results.
- No websocket subscription client: `SubscriptionBlockTracker` needs a client
  with `subscription_enabled()` and `subscribe(method, callback)`.
- No Etherscan client: fast tracking with `Config.etherscan_fast_track` only
  happens when you set `tracker.etherscan` to an object with
  `query(module, action, params)`.
- No contract compiler or deployment: `Contract.render()` returns source text only.
- No command-line program.

## Tests

```
pytest
```

`GethServer` needs a `geth` executable on the `PATH`.