import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from nats.js.errors import KeyNotFoundError, NoKeysError

from charge_agent.infrastructure.store.nats_kv_store import (
    DEFAULT_BUCKET,
    KvDocumentSubscription,
    NatsKvDeviceStore,
    decode_document,
)


class FakeWatcher:
    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.stopped = False

    async def updates(self, timeout=5.0):
        return await asyncio.wait_for(self.queue.get(), timeout)

    async def stop(self):
        self.stopped = True


class BrokenWatcher(FakeWatcher):
    async def updates(self, timeout=5.0):
        raise ConnectionError("jetstream consumer gone")


class FakeKeyValue:
    def __init__(self, documents=None):
        self.entries = {
            key: json.dumps(value).encode("utf-8") for key, value in (documents or {}).items()
        }
        self.watchers = {}

    async def get(self, key):
        if key not in self.entries:
            raise KeyNotFoundError()
        return SimpleNamespace(key=key, value=self.entries[key])

    async def keys(self):
        if not self.entries:
            raise NoKeysError()
        return list(self.entries)

    async def put(self, key, value):
        self.entries[key] = value
        return 1

    async def watch(self, key):
        watcher = FakeWatcher()
        self.watchers[key] = watcher
        return watcher


def entry(key, data, operation=None):
    value = json.dumps(data).encode("utf-8") if data is not None else None
    return SimpleNamespace(key=key, value=value, operation=operation)


@pytest.fixture()
def kv():
    return FakeKeyValue(
        {
            "station-1": {"uid": "machine-a", "name": "North", "state": "AVAILABLE"},
            "station-2": {"uid": "machine-b", "name": "South", "state": "OFFLINE"},
        }
    )


@pytest.fixture()
def client(kv):
    return SimpleNamespace(
        connect=AsyncMock(),
        key_value=AsyncMock(return_value=kv),
        close=AsyncMock(),
    )


@pytest.fixture()
async def kv_store(client):
    store = NatsKvDeviceStore({"servers": ["nats://hub:4222"]}, client=client)
    await store.connect()
    return store


def test_decode_document_rejects_non_objects():
    with pytest.raises(ValueError):
        decode_document("station-1", b"[1, 2]")

    with pytest.raises(ValueError):
        decode_document("station-1", b"{not json")


def test_decode_document_empty_value_is_none():
    assert decode_document("station-1", b"") is None
    assert decode_document("station-1", None) is None


def test_bucket_defaults_and_is_not_passed_to_nats():
    store = NatsKvDeviceStore({"servers": ["nats://hub:4222"]})
    assert store.bucket == DEFAULT_BUCKET

    store = NatsKvDeviceStore({"servers": ["nats://hub:4222"], "bucket": "devices"})
    assert store.bucket == "devices"
    assert "bucket" not in store._client.options


async def test_connect_opens_the_bucket(kv_store, client):
    client.connect.assert_awaited_once()
    client.key_value.assert_awaited_once_with(DEFAULT_BUCKET)


async def test_get_missing_key_is_none(kv_store):
    assert await kv_store.get("nope") is None
    assert await kv_store.get("") is None


async def test_get_returns_document(kv_store):
    document = await kv_store.get("station-2")

    assert document.id == "station-2"
    assert document.data["name"] == "South"


async def test_query_by_uid_filters(kv_store):
    matches = await kv_store.query_by_uid("machine-a")

    assert [document.id for document in matches] == ["station-1"]


async def test_query_by_uid_skips_undecodable_documents(kv_store, kv):
    kv.entries["garbage"] = b"[]"

    matches = await kv_store.query_by_uid("machine-b")

    assert [document.id for document in matches] == ["station-2"]


async def test_query_by_uid_on_empty_bucket(client):
    client.key_value.return_value = FakeKeyValue()
    store = NatsKvDeviceStore({}, client=client)

    assert await store.query_by_uid("machine-a") == []


async def test_merge_keeps_unmentioned_fields(kv_store, kv):
    await kv_store.merge("station-1", {"state": "PENDING", "currentPower": 0})

    stored = json.loads(kv.entries["station-1"])
    assert stored == {
        "uid": "machine-a",
        "name": "North",
        "state": "PENDING",
        "currentPower": 0,
    }


async def test_merge_creates_missing_document(kv_store, kv):
    await kv_store.merge("station-9", {"uid": "machine-z"})

    assert json.loads(kv.entries["station-9"]) == {"uid": "machine-z"}


async def test_subscription_delivers_updates_and_skips_noise(kv_store, kv):
    received = []
    subscription = await kv_store.subscribe("station-1", received.append)
    watcher = kv.watchers["station-1"]

    await watcher.queue.put(entry("station-1", {"state": "AVAILABLE"}))
    await watcher.queue.put(None)
    await watcher.queue.put(entry("station-1", None, operation="DEL"))
    await watcher.queue.put(SimpleNamespace(key="station-1", value=b"[]", operation=None))
    await watcher.queue.put(entry("station-1", {"state": "PENDING"}))

    for _ in range(20):
        if len(received) == 2:
            break
        await asyncio.sleep(0.01)

    assert [document.data["state"] for document in received] == ["AVAILABLE", "PENDING"]
    assert all(document.id == "station-1" for document in received)

    await subscription.unsubscribe()
    assert watcher.stopped


async def test_subscription_survives_poll_timeouts():
    received = []
    watcher = FakeWatcher()
    rewatch = AsyncMock()
    subscription = KvDocumentSubscription(
        "station-1",
        watcher,
        received.append,
        rewatch=rewatch,
        poll_timeout=0.01,
    )
    subscription.start()

    await asyncio.sleep(0.05)
    await watcher.queue.put(entry("station-1", {"state": "CHARGING"}))
    await asyncio.sleep(0.05)

    assert [document.data["state"] for document in received] == ["CHARGING"]
    rewatch.assert_not_awaited()
    await subscription.unsubscribe()


async def test_close_stops_watchers_and_client(kv_store, kv, client):
    await kv_store.subscribe("station-1", lambda document: None)

    await kv_store.close()

    assert kv.watchers["station-1"].stopped
    client.close.assert_awaited_once()


async def test_failed_watcher_is_replaced(kv, caplog):
    received = []
    broken = BrokenWatcher()
    attempts = []

    async def rewatch():
        attempts.append(True)
        if len(attempts) == 1:
            raise ConnectionError("still reconnecting")
        return await kv.watch("station-1")

    subscription = KvDocumentSubscription(
        "station-1",
        broken,
        received.append,
        rewatch=rewatch,
        poll_timeout=0.01,
        retry_delay=0.01,
    )
    subscription.start()

    for _ in range(50):
        if "station-1" in kv.watchers:
            break
        await asyncio.sleep(0.01)

    replacement = kv.watchers["station-1"]
    await replacement.queue.put(entry("station-1", {"state": "STOP"}))
    for _ in range(20):
        if received:
            break
        await asyncio.sleep(0.01)

    assert broken.stopped
    assert len(attempts) == 2
    assert [document.data["state"] for document in received] == ["STOP"]
    assert "Watcher for device document station-1 failed" in caplog.text

    await subscription.unsubscribe()
    assert replacement.stopped
