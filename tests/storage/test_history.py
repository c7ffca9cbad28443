# tests/storage/test_history.py
from dataclasses import dataclass
from typing import Any

import pytest

from market_alerts.exceptions import StorageError
from market_alerts.storage.history import HistoryStore, build_fingerprint
from market_alerts.storage.kv import MemoryKeyValueStore
from market_alerts.storage.models import HistoryRecord

HOUR = 60 * 60 * 1000
KEY = "telegram:test_history"


@dataclass
class SignalRecord(HistoryRecord):
    symbol: str = ""
    value: float = 0.0


class Clock:
    def __init__(self, now: int = 10 * HOUR):
        self.now = now

    def __call__(self) -> int:
        return self.now


class BrokenStorage:
    def __init__(self, fail_read: bool = True, fail_write: bool = True):
        self.fail_read = fail_read
        self.fail_write = fail_write
        self.data: dict[str, Any] = {}

    async def get_item(self, key: str) -> Any:
        if self.fail_read:
            raise StorageError("read failed")
        return self.data.get(key)

    async def set_item(self, key: str, value: Any) -> None:
        if self.fail_write:
            raise StorageError("write failed")
        self.data[key] = value


def fingerprint(record: SignalRecord) -> str:
    return build_fingerprint([record.symbol, record.value])


def make_store(storage, clock: Clock, retention_ms: int = 2 * HOUR, fp=fingerprint) -> HistoryStore[SignalRecord]:
    return HistoryStore(storage, KEY, SignalRecord, retention_ms, fp, now=clock)


def test_build_fingerprint():
    assert build_fingerprint(["BTCUSDT", 1700000000000, 1.23]) == "BTCUSDT_1700000000000_1.23"
    assert build_fingerprint(["a", None, "b"]) == "a__b"


async def test_load_prunes_expired_records():
    storage = MemoryKeyValueStore()
    clock = Clock()
    await storage.set_item(
        KEY,
        [
            {"notified_at": clock.now - 3 * HOUR, "symbol": "OLD", "value": 1},
            {"notified_at": clock.now - 2 * HOUR, "symbol": "EDGE", "value": 1},
            {"notified_at": clock.now - HOUR, "symbol": "LIVE", "value": 1},
        ],
    )
    store = make_store(storage, clock)

    await store.load()

    assert [r.symbol for r in store.get_all()] == ["LIVE"]


async def test_prune_after_time_passes():
    clock = Clock()
    store = make_store(MemoryKeyValueStore(), clock)
    await store.load()
    store.add_records([SignalRecord(notified_at=clock.now, symbol="BTCUSDT", value=1)])

    clock.now += 2 * HOUR + 1
    removed = store.prune()

    assert removed == 1
    assert store.get_all() == []


async def test_load_is_idempotent():
    storage = MemoryKeyValueStore()
    clock = Clock()
    store = make_store(storage, clock)
    await store.load()
    store.add_records([SignalRecord(notified_at=clock.now, symbol="BTCUSDT", value=1)])

    await storage.set_item(KEY, [])
    await store.load()

    assert len(store) == 1


async def test_load_tolerates_missing_and_malformed_values():
    storage = MemoryKeyValueStore()
    clock = Clock()
    await storage.set_item(
        KEY,
        [
            "garbage",
            {"symbol": "NO_TIME"},
            {"notified_at": "yesterday", "symbol": "BAD_TIME"},
            {"notified_at": clock.now, "symbol": "GOOD", "value": 2},
        ],
    )
    store = make_store(storage, clock)
    await store.load()
    assert [r.symbol for r in store.get_all()] == ["GOOD"]

    await storage.set_item(KEY, {"not": "a list"})
    other = make_store(storage, clock)
    await other.load()
    assert other.get_all() == []


async def test_read_failure_is_treated_as_empty():
    store = make_store(BrokenStorage(fail_read=True, fail_write=False), Clock())

    await store.load()

    assert store.loaded
    assert store.get_all() == []


async def test_get_all_before_load_raises():
    store = make_store(MemoryKeyValueStore(), Clock())
    with pytest.raises(RuntimeError, match="not loaded"):
        store.get_all()


async def test_filter_new_is_idempotent():
    clock = Clock()
    store = make_store(MemoryKeyValueStore(), clock)
    inputs = [("BTCUSDT", 1.0), ("ETHUSDT", 2.0)]

    def to_record(item):
        return SignalRecord(notified_at=clock.now, symbol=item[0], value=item[1])

    first = await store.filter_new(inputs, to_record)
    second = await store.filter_new(inputs, to_record)

    assert first.new_inputs == inputs
    assert len(first.new_records) == 2
    assert second.new_inputs == []
    assert second.duplicate_inputs == inputs


async def test_filter_new_dedupes_within_batch_first_wins():
    clock = Clock()
    store = make_store(MemoryKeyValueStore(), clock)
    inputs = [("BTCUSDT", 1.0, "first"), ("BTCUSDT", 1.0, "second")]

    result = await store.filter_new(
        inputs, lambda i: SignalRecord(notified_at=clock.now, symbol=i[0], value=i[1])
    )

    assert [i[2] for i in result.new_inputs] == ["first"]
    assert [i[2] for i in result.duplicate_inputs] == ["second"]


async def test_failing_fingerprint_treats_record_as_new():
    clock = Clock()

    def fragile(record: SignalRecord) -> str:
        if record.symbol == "BROKEN":
            raise ValueError("cannot fingerprint")
        return record.symbol

    store = make_store(MemoryKeyValueStore(), clock, fp=fragile)
    inputs = ["BROKEN", "BROKEN", "BTCUSDT"]

    result = await store.filter_new(inputs, lambda s: SignalRecord(notified_at=clock.now, symbol=s))

    assert result.new_inputs == inputs
    assert len(store) == 1


async def test_add_records_last_write_wins():
    clock = Clock()
    store = make_store(MemoryKeyValueStore(), clock, fp=lambda r: r.symbol)
    await store.load()

    store.add_records([SignalRecord(notified_at=1, symbol="BTCUSDT", value=1)])
    store.add_records([SignalRecord(notified_at=clock.now, symbol="BTCUSDT", value=2)])

    assert [r.value for r in store.get_all()] == [2]
    assert store.has(SignalRecord(symbol="BTCUSDT"))


async def test_discard_only_removes_same_record():
    clock = Clock()
    store = make_store(MemoryKeyValueStore(), clock, fp=lambda r: r.symbol)
    await store.load()
    kept = SignalRecord(notified_at=clock.now, symbol="BTCUSDT", value=1)
    store.add_records([kept])

    assert store.discard([SignalRecord(notified_at=clock.now, symbol="BTCUSDT", value=1)]) == 0
    assert store.discard([kept]) == 1
    assert len(store) == 0


async def test_persist_round_trip():
    storage = MemoryKeyValueStore()
    clock = Clock()
    store = make_store(storage, clock)
    await store.filter_new(
        ["BTCUSDT", "ETHUSDT"], lambda s: SignalRecord(notified_at=clock.now, symbol=s, value=1)
    )

    written = await store.persist()

    reloaded = make_store(storage, clock)
    await reloaded.load()
    assert written == 2
    assert sorted(r.symbol for r in reloaded.get_all()) == ["BTCUSDT", "ETHUSDT"]
    assert all(isinstance(r, SignalRecord) for r in reloaded.get_all())


async def test_persist_merges_concurrent_remote_records():
    storage = MemoryKeyValueStore()
    clock = Clock()
    ours = make_store(storage, clock)
    theirs = make_store(storage, clock)
    await ours.load()
    await theirs.load()

    theirs.add_records([SignalRecord(notified_at=clock.now, symbol="ETHUSDT", value=1)])
    await theirs.persist()
    ours.add_records([SignalRecord(notified_at=clock.now, symbol="BTCUSDT", value=1)])
    await ours.persist()

    stored = await storage.get_item(KEY)
    assert sorted(r["symbol"] for r in stored) == ["BTCUSDT", "ETHUSDT"]


async def test_persist_does_not_merge_expired_remote_records():
    storage = MemoryKeyValueStore()
    clock = Clock()
    store = make_store(storage, clock)
    await store.load()
    await storage.set_item(KEY, [{"notified_at": clock.now - 3 * HOUR, "symbol": "OLD", "value": 1}])

    await store.persist()

    assert await storage.get_item(KEY) == []


async def test_persist_write_failure_propagates():
    store = make_store(BrokenStorage(fail_read=False, fail_write=True), Clock())
    await store.load()

    with pytest.raises(StorageError, match="write failed"):
        await store.persist()


async def test_clear_all():
    storage = MemoryKeyValueStore()
    clock = Clock()
    store = make_store(storage, clock)
    await store.filter_new(["BTCUSDT"], lambda s: SignalRecord(notified_at=clock.now, symbol=s))

    await store.clear_all()

    assert store.get_all() == []
    assert await storage.get_item(KEY) == []
