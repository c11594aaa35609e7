import threading

import pytest

from web3track.store.inmem import InmemStore
from web3track.structs import LATEST, Address, Block, Log, parse_hash
from web3track.tracker.filter import FilterConfig, default_config
from web3track.tracker.tracker import RPCError, Tracker


def encode_hash(text):
    return parse_hash("0x" + "0" * (64 - len(text)) + text)


def decode_data(text):
    if text.startswith("0x"):
        text = text[2:]
    if len(text) % 2:
        text += "0"
    return bytes.fromhex(text)


class MockBlock:
    def __init__(self, number):
        self.hash_str = str(number)
        self.num = number
        self.parent = str(number - 1)
        self.extra = ""
        self.log_data = []

    def with_extra(self, data):
        self.extra = data
        return self

    def log(self, data):
        self.log_data.append(data)
        return self

    def with_num(self, number):
        self.num = number
        return self

    def with_parent(self, number):
        self.parent = str(number)
        self.num = number + 1
        return self

    def hash(self):
        return encode_hash(self.extra + self.hash_str)

    def get_logs(self):
        return [
            Log(data=decode_data(d), block_number=self.num, block_hash=self.hash())
            for d in self.log_data
        ]

    def block(self):
        b = Block(hash=self.hash(), number=self.num)
        if self.num:
            b.parent_hash = encode_hash(self.parent)
        return b


def mock(number):
    return MockBlock(number)


def create(mocks, first, last, callback=lambda b: None):
    for i in range(first, last):
        b = mock(i)
        callback(b)
        mocks.append(b)


def list_logs(mocks):
    return [log for b in mocks for log in b.get_logs()]


def list_blocks(mocks):
    return [b.block() for b in mocks]


def block_keys(blocks):
    return [(b.hash, b.parent_hash, b.number) for b in blocks]


class MockClient:
    def __init__(self):
        self.lock = threading.Lock()
        self.num = 0
        self.block_num = {}
        self.blocks = {}
        self.logs = {}
        self.chain = 1337

    def chain_id(self):
        return self.chain

    def add_scenario(self, mocks):
        with self.lock:
            for b in mocks:
                block = Block(hash=b.hash(), number=b.num)
                if b.num:
                    parent = self.block_num.get(b.num - 1)
                    block.parent_hash = (
                        self.blocks[parent].hash if parent else encode_hash(str(b.num - 1))
                    )
                self.num = max(self.num, block.number)
                self.blocks[block.hash] = block
                self.block_num[block.number] = block.hash
                self.logs.pop(block.hash, None)
                self.add_logs(b.get_logs())

    def add_logs(self, logs):
        for log in logs:
            self.logs.setdefault(log.block_hash, []).append(log)

    def block_number(self):
        return self.num

    def get_block_by_hash(self, hash, full):
        with self.lock:
            if hash not in self.blocks:
                raise LookupError(f"hash {hash} not found")
            return self.blocks[hash]

    def _by_number(self, number):
        if number not in self.block_num:
            raise LookupError(f"number {number} not found")
        return self.blocks[self.block_num[number]]

    def get_block_by_number(self, number, full):
        with self.lock:
            if number == LATEST:
                return self._by_number(self.num)
            if number < 0:
                raise ValueError("query not supported")
            return self._by_number(number)

    def get_logs(self, flt):
        with self.lock:
            if flt.block_hash is not None:
                return list(self.logs.get(flt.block_hash, []))
            start, end = flt.from_block, flt.to_block
            if start > end:
                raise ValueError("from higher than to")
            if end > len(self.blocks):
                raise ValueError("out of bounds")
            out = []
            for i in range(start, end + 1):
                out.extend(self.logs.get(self._by_number(i).hash, []))
            return out


class LimitedClient(MockClient):
    def __init__(self, limit):
        super().__init__()
        self.limit = limit

    def get_logs(self, flt):
        if flt.block_hash is None:
            if flt.from_block > flt.to_block:
                raise ValueError("from higher than to")
            if flt.to_block - flt.from_block > self.limit:
                raise RPCError("query returned more than 10000 results")
        return super().get_logs(flt)


def small_batch_config():
    config = default_config()
    config.batch_size = 10
    return config


def make_tracker(client, store, config=None):
    tracker = Tracker(client, config or small_batch_config())
    tracker.set_store(store)
    return tracker


def test_preflight():
    store = InmemStore()
    chain = []
    create(chain, 0, 100)
    client = MockClient()
    client.add_scenario(chain)
    make_tracker(client, store).pre_sync_check()
    assert store.get("chainID") == "1337"

    forked = []
    create(forked, 0, 100, lambda b: b.with_extra("1"))
    client.add_scenario(forked)
    with pytest.raises(RuntimeError, match="bad genesis"):
        make_tracker(client, store).pre_sync_check()

    client.add_scenario(chain)
    client.chain = 1
    with pytest.raises(RuntimeError, match="bad genesis"):
        make_tracker(client, store).pre_sync_check()


def test_populate_blocks():
    chain = []
    create(chain, 0, 15)
    client = MockClient()
    client.add_scenario(chain)
    blocks = make_tracker(client, InmemStore()).populate_blocks()
    assert block_keys(blocks) == block_keys(list_blocks(chain)[5:])

    short = []
    create(short, 0, 5)
    client = MockClient()
    client.add_scenario(short)
    blocks = make_tracker(client, InmemStore()).populate_blocks()
    assert block_keys(blocks) == block_keys(list_blocks(short))


@pytest.mark.parametrize("steps", [[(0, 100, False), (0, 100, True), (100, 105, False), (105, 150, False)]])
def test_syncer_restarts(steps):
    store = InmemStore()
    client = MockClient()
    chain = []
    stop = threading.Event()
    try:
        for first, last, void in steps:
            if not void:
                create(chain, first, last, lambda b: b.log("0x1") if b.num % 5 == 0 else None)
                client.add_scenario(chain)
            tracker = make_tracker(client, store)
            tracker.start(stop)
            flt = tracker.new_filter(FilterConfig(async_=True))
            flt.sync_async(stop)
            flt.wait_duration(2)
            assert tracker.blocks[0].number == last - 10
            assert tracker.blocks[9].number == last - 1
            assert flt.entry.logs() == list_logs(chain)
    finally:
        stop.set()


@pytest.mark.parametrize("ini_len,fork_num,end_len", [(50, 45, 55), (50, 45, 100)])
def test_syncer_reconcile(ini_len, fork_num, end_len):
    stop = threading.Event()
    original = []
    create(original, 0, ini_len, lambda b: b.log("0x01"))
    client = MockClient()
    client.add_scenario(original)
    store = InmemStore()

    tracker0 = make_tracker(client, store)
    tracker0.start(stop)
    f0 = tracker0.new_filter(FilterConfig(async_=True))
    f0.sync_async(stop)
    f0.wait_duration(2)

    def fork(b):
        if b.num < fork_num:
            b.log("0x01")
        else:
            b.log("0x02" if b.num == fork_num else "0x03")
            b.with_extra("123")

    forked = []
    create(forked, 0, end_len, fork)
    client1 = MockClient()
    client1.add_scenario(original)
    client1.add_scenario(forked)

    tracker1 = make_tracker(client1, store)
    tracker1.start(stop)
    f1 = tracker1.new_filter(FilterConfig(async_=True))
    f1.sync_async(stop)
    f1.wait_duration(2)
    stop.set()

    logs = f1.entry.logs()
    assert logs == list_logs(forked)
    assert all(log.data[0] == 0x1 for log in logs[:fork_num])
    assert logs[fork_num].data[0] == 0x2
    assert all(log.data[0] == 0x3 for log in logs[fork_num + 1:end_len])


RECONCILE_CASES = [
    (
        "empty history",
        [],
        [],
        lambda: mock(1).log("0x1"),
        ([mock(1).log("0x1")], []),
        [mock(1).log("0x1")],
    ),
    ("repeated header", [], [mock(1)], lambda: mock(1), None, [mock(1)]),
    (
        "new head",
        [],
        [mock(1)],
        lambda: mock(2),
        ([mock(2)], []),
        [mock(1), mock(2)],
    ),
    (
        "multi roll back",
        [],
        [mock(1), mock(2), mock(3).log("0x3"), mock(4).log("0x4")],
        lambda: mock(0x30).with_parent(2).log("0x30"),
        ([mock(0x30).with_parent(2).log("0x30")], [mock(3).log("0x3"), mock(4).log("0x4")]),
        [mock(1), mock(2), mock(0x30).with_parent(2).log("0x30")],
    ),
    (
        "backfills missing blocks",
        [mock(3), mock(4).log("0x2")],
        [mock(1).log("0x1"), mock(2)],
        lambda: mock(5).log("0x3"),
        ([mock(3), mock(4).log("0x2"), mock(5).log("0x3")], []),
        [mock(1).log("0x1"), mock(2), mock(3), mock(4).log("0x2"), mock(5).log("0x3")],
    ),
    (
        "rolls back and backfills",
        [mock(0x30).with_parent(2).with_num(3).log("0x5"), mock(0x40).with_parent(0x30).with_num(4)],
        [mock(1), mock(2).log("0x3"), mock(3).log("0x2"), mock(4).log("0x1")],
        lambda: mock(0x50).with_parent(0x40).with_num(5),
        (
            [
                mock(0x30).with_parent(2).with_num(3).log("0x5"),
                mock(0x40).with_parent(0x30).with_num(4),
                mock(0x50).with_parent(0x40).with_num(5),
            ],
            [mock(3).log("0x2"), mock(4).log("0x1")],
        ),
        [
            mock(1),
            mock(2).log("0x3"),
            mock(0x30).with_parent(2).with_num(3).log("0x5"),
            mock(0x40).with_parent(0x30).with_num(4),
            mock(0x50).with_parent(0x40).with_num(5),
        ],
    ),
]


@pytest.mark.parametrize(
    "name,scenario,history,make_block,expected_event,expected",
    RECONCILE_CASES,
    ids=[c[0] for c in RECONCILE_CASES],
)
def test_reconcile(name, scenario, history, make_block, expected_event, expected):
    client = MockClient()
    client.add_scenario(scenario)
    reconcile = make_block()
    client.add_logs(reconcile.get_logs())

    tracker = make_tracker(client, InmemStore(), default_config())
    flt = tracker.new_filter(None)
    flt.mark_synced()

    for b in list_blocks(history):
        tracker.add_block(b)
    for b in history:
        flt.entry.store_logs(b.get_logs())

    tracker.handle_reconcile(reconcile.block())

    if expected_event is not None:
        added, removed = expected_event
        event = flt.event_queue.get(timeout=1)
        assert event.added == list_logs(added)
        assert event.removed == list_logs(removed)
        block_event = tracker.block_queue.get(timeout=1)
        assert block_keys(block_event.added) == block_keys(list_blocks(added))
        assert block_keys(block_event.removed) == block_keys(list_blocks(removed))
    else:
        assert flt.event_queue.empty()

    assert flt.entry.logs() == list_logs(expected)
    assert block_keys(tracker.blocks) == block_keys(list_blocks(expected))


def test_too_much_data_requested():
    count = 0
    chain = []

    def add_logs(b):
        nonlocal count
        for _ in range(2 if b.num % 2 == 0 else 5):
            count += 1
            b.log("0x1")

    create(chain, 0, 100, add_logs)
    client = LimitedClient(3)
    client.add_scenario(chain)

    config = default_config()
    config.batch_size = 11
    tracker = make_tracker(client, InmemStore(), config)
    stop = threading.Event()
    tracker.start(stop)
    flt = tracker.new_filter(FilterConfig(async_=True))
    flt.sync(stop)
    stop.set()
    assert len(flt.entry.logs()) == count
    assert flt.is_synced()


def test_add_block_rejects_gap():
    tracker = make_tracker(MockClient(), InmemStore())
    tracker.add_block(mock(1).block())
    with pytest.raises(RuntimeError, match="bad number sequence"):
        tracker.add_block(mock(3).block())


def test_saved_filters_round_trip():
    tracker = make_tracker(MockClient(), InmemStore())
    config = FilterConfig(address=[Address(b"\x01" * 20)], topics=[None, encode_hash("1")])
    tracker.new_filter(config)
    assert tracker.get_saved_filters() == [config]


def test_store_ahead_of_chain_fails():
    chain = []
    create(chain, 0, 30)
    client = MockClient()
    client.add_scenario(chain)
    store = InmemStore()
    tracker = make_tracker(client, store)
    stop = threading.Event()
    tracker.start(stop)
    flt = tracker.new_filter(None)
    flt.store_last_block(Block(hash=encode_hash("999"), number=500))
    with pytest.raises(RuntimeError, match="more advanced"):
        tracker.sync(stop, flt)
    stop.set()