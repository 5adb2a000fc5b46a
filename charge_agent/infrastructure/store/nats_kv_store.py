# charge_agent/infrastructure/store/nats_kv_store.py
import asyncio
import json
import logging
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional

from nats.js.errors import KeyNotFoundError, NoKeysError

from charge_agent.core.nats_client import NATSClient
from charge_agent.infrastructure.store.device_store import (
    DeviceDocument,
    DocumentHandler,
    DocumentSubscription,
    RemoteDeviceStore,
)

logger = logging.getLogger(__name__)

DEFAULT_BUCKET = "rechargeDevices"
DELETE_OPERATIONS = {"DEL", "PURGE"}


def decode_document(key: str, value: Optional[bytes]) -> Optional[DeviceDocument]:
    if not value:
        return None

    data = json.loads(value.decode("utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Document {key} is not a JSON object")

    return DeviceDocument(id=key, data=data)


class KvDocumentSubscription(DocumentSubscription):
    """Feeds every update of one key to ``handler``.

    A watcher that fails is stopped and replaced through ``rewatch``. The
    replacement replays the latest value of the key.
    """

    def __init__(
        self,
        key: str,
        watcher,
        handler: DocumentHandler,
        rewatch: Callable[[], Awaitable[Any]],
        poll_timeout: float = 5.0,
        retry_delay: float = 1.0,
    ):
        self.key = key
        self._watcher = watcher
        self._handler = handler
        self._rewatch = rewatch
        self._poll_timeout = poll_timeout
        self._retry_delay = retry_delay
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        logger.info("Watching device document: %s", self.key)

        while True:
            try:
                entry = await self._watcher.updates(timeout=self._poll_timeout)
            except asyncio.TimeoutError:
                continue
            except Exception:
                logger.exception("Watcher for device document %s failed", self.key)
                await self._replace_watcher()
                continue

            # None marks the end of the initial values.
            if entry is None:
                continue

            if entry.operation in DELETE_OPERATIONS:
                logger.warning("Device document %s was deleted remotely", self.key)
                continue

            try:
                document = decode_document(entry.key, entry.value)
            except ValueError:
                logger.exception("Ignoring undecodable update for %s", self.key)
                continue

            if document is not None:
                self._handler(document)

    async def _replace_watcher(self) -> None:
        await self._stop_watcher()

        while True:
            await asyncio.sleep(self._retry_delay)
            try:
                self._watcher = await self._rewatch()
            except Exception:
                logger.exception("Cannot re-watch device document %s", self.key)
                continue

            logger.info("Re-watching device document: %s", self.key)
            return

    async def _stop_watcher(self) -> None:
        try:
            await self._watcher.stop()
        except Exception:
            logger.exception("Failed to stop watcher for %s", self.key)

    async def unsubscribe(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self._stop_watcher()


class NatsKvDeviceStore(RemoteDeviceStore):
    """Device records kept as JSON documents in a JetStream key-value bucket."""

    def __init__(self, store_config: Dict[str, Any], client: Optional[NATSClient] = None):
        options = dict(store_config)
        self.bucket = options.pop("bucket", DEFAULT_BUCKET)
        self._client = client or NATSClient(options)
        self._kv = None
        self._subscriptions: List[KvDocumentSubscription] = []

    async def connect(self) -> None:
        await self._client.connect()
        self._kv = await self._client.key_value(self.bucket)

    async def _bucket(self):
        if self._kv is None:
            await self.connect()
        return self._kv

    async def get(self, doc_id: str) -> Optional[DeviceDocument]:
        if not doc_id:
            return None

        kv = await self._bucket()
        try:
            entry = await kv.get(doc_id)
        except KeyNotFoundError:
            return None

        return decode_document(doc_id, entry.value)

    async def query_by_uid(self, uid: str) -> List[DeviceDocument]:
        kv = await self._bucket()
        try:
            keys = await kv.keys()
        except NoKeysError:
            return []

        matches: List[DeviceDocument] = []
        for key in keys:
            try:
                document = await self.get(key)
            except ValueError:
                logger.warning("Skipping undecodable document %s during uid query", key)
                continue
            if document is not None and document.data.get("uid") == uid:
                matches.append(document)

        return matches

    async def subscribe(self, doc_id: str, handler: DocumentHandler) -> DocumentSubscription:
        kv = await self._bucket()
        watcher = await kv.watch(doc_id)

        subscription = KvDocumentSubscription(
            doc_id, watcher, handler, rewatch=partial(kv.watch, doc_id)
        )
        subscription.start()
        self._subscriptions.append(subscription)
        return subscription

    async def merge(self, doc_id: str, fields: Dict[str, Any]) -> None:
        kv = await self._bucket()

        current = await self.get(doc_id)
        data = dict(current.data) if current else {}
        data.update(fields)

        await kv.put(doc_id, json.dumps(data).encode("utf-8"))
        logger.debug("Merged fields into %s: %s", doc_id, sorted(fields))

    async def close(self) -> None:
        for subscription in self._subscriptions:
            await subscription.unsubscribe()
        self._subscriptions.clear()

        await self._client.close()
        self._kv = None
