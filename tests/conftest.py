"""
Shared fixtures for the charge agent test suite.

Provides:
- gpiozero MockFactory pins and a GPIOController wired to them
- An in-memory device store that echoes merges back to subscribers
- A controllable millisecond clock
- A device record cache under tmp_path
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from gpiozero.pins.mock import MockFactory

from charge_agent.application.reconciler import Reconciler
from charge_agent.domain.device.device_record import DeviceRecord, PowerMode
from charge_agent.domain.device.enums import BillingMode, DeviceState, PowerType
from charge_agent.domain.models.hardware_config import HardwareConfig
from charge_agent.infrastructure.gpio.gpio_controller import GPIOController
from charge_agent.infrastructure.storage.record_cache import DeviceRecordCache
from charge_agent.infrastructure.store.device_store import (
    DeviceDocument,
    DocumentHandler,
    DocumentSubscription,
    RemoteDeviceStore,
)

logging.getLogger("charge_agent").setLevel(logging.WARNING)

START_MS = 1_700_000_000_000
DEVICE_ID = "station-1"
MACHINE_UID = "machine-uid-1"
RELAY_PINS = {5: 17, 22: 27}
DETECTOR_PIN = 4


# ========================== Test doubles ===================================


class FakeClock:
    def __init__(self, now: int = START_MS):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class _InMemorySubscription(DocumentSubscription):
    def __init__(self, store: "InMemoryDeviceStore", doc_id: str, handler: DocumentHandler):
        self._store = store
        self._doc_id = doc_id
        self._handler = handler

    async def unsubscribe(self) -> None:
        self._store.subscribers.get(self._doc_id, []).remove(self._handler)


class InMemoryDeviceStore(RemoteDeviceStore):
    """Dict-backed store; merges are echoed to subscribers like a real push channel."""

    def __init__(self, documents: Optional[Dict[str, Dict[str, Any]]] = None):
        self.documents: Dict[str, Dict[str, Any]] = {
            key: dict(value) for key, value in (documents or {}).items()
        }
        self.subscribers: Dict[str, List[DocumentHandler]] = {}
        self.writes: List[tuple[str, Dict[str, Any]]] = []
        self.timeline: List[tuple] = []
        self.merge_error: Optional[Exception] = None
        self.get_error: Optional[Exception] = None
        self.closed = False

    async def connect(self) -> None:
        pass

    async def get(self, doc_id: str) -> Optional[DeviceDocument]:
        if self.get_error is not None:
            raise self.get_error
        data = self.documents.get(doc_id)
        if data is None:
            return None
        return DeviceDocument(id=doc_id, data=dict(data))

    async def query_by_uid(self, uid: str) -> List[DeviceDocument]:
        return [
            DeviceDocument(id=key, data=dict(data))
            for key, data in self.documents.items()
            if data.get("uid") == uid
        ]

    async def subscribe(self, doc_id: str, handler: DocumentHandler) -> DocumentSubscription:
        self.subscribers.setdefault(doc_id, []).append(handler)
        return _InMemorySubscription(self, doc_id, handler)

    async def merge(self, doc_id: str, fields: Dict[str, Any]) -> None:
        await asyncio.sleep(0)
        if self.merge_error is not None:
            raise self.merge_error
        self.writes.append((doc_id, dict(fields)))
        self.timeline.append(("merge", fields.get("state")))
        self.documents.setdefault(doc_id, {}).update(fields)
        self.push(doc_id)

    def backend_write(self, doc_id: str, fields: Dict[str, Any]) -> None:
        self.documents[doc_id].update(fields)
        self.push(doc_id)

    def push(self, doc_id: str) -> None:
        for handler in list(self.subscribers.get(doc_id, [])):
            handler(DeviceDocument(id=doc_id, data=dict(self.documents[doc_id])))

    def states_written(self) -> List[Optional[str]]:
        return [fields.get("state") for _, fields in self.writes]

    async def close(self) -> None:
        self.closed = True


# ========================== Fixtures =======================================


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def pin_factory():
    factory = MockFactory()
    yield factory
    factory.reset()


@pytest.fixture()
def hardware_config():
    return HardwareConfig(
        power_ports=[{"port": pin, "power": power} for power, pin in RELAY_PINS.items()],
        detector_port=DETECTOR_PIN,
        debounce_ms=0,
    )


@pytest.fixture()
def hardware(hardware_config, pin_factory):
    controller = GPIOController(hardware_config, pin_factory=pin_factory)
    controller.initialize_pins()
    yield controller
    controller.close()


def make_record(clock: FakeClock, **overrides) -> DeviceRecord:
    data = dict(
        id=DEVICE_ID,
        uid=MACHINE_UID,
        name="Station 1",
        message="",
        state=DeviceState.AVAILABLE,
        power_modes=[
            PowerMode(type=PowerType.AC, power=5, price=0.3, billing=BillingMode.TIME),
            PowerMode(type=PowerType.DC, power=50, price=0.5, billing=BillingMode.SESSION),
        ],
        created_at=START_MS - 86_400_000,
        updated_at=clock.now,
    )
    data.update(overrides)
    return DeviceRecord(**data)


@pytest.fixture()
def record(clock):
    return make_record(clock)


@pytest.fixture()
def store(record):
    return InMemoryDeviceStore({record.id: record.to_document()})


@pytest.fixture()
def cache(tmp_path):
    return DeviceRecordCache(tmp_path / "config.json")


@pytest.fixture()
def system_shutdown():
    shutdown = MagicMock()
    shutdown.invoke = AsyncMock(return_value=0)
    return shutdown


@pytest.fixture()
def reconciler(record, store, hardware, cache, system_shutdown, clock):
    return Reconciler(
        record,
        store,
        hardware,
        cache,
        system_shutdown=system_shutdown,
        clock=clock,
        shutdown_timeout=1.0,
    )


async def settle(reconciler: Reconciler, rounds: int = 5) -> None:
    """Let queued events, dispatched writes and echoes run to completion."""
    for _ in range(rounds):
        await asyncio.sleep(0.01)
        await reconciler.dispatcher.drain(timeout=1.0)
