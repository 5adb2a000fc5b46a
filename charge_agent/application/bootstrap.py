import logging
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from charge_agent.core.exceptions import (
    ChargeAgentError,
    DeviceNotRegistered,
    InvalidDeviceRecord,
    StoreUnavailable,
)
from charge_agent.domain.device.device_record import DeviceRecord
from charge_agent.infrastructure.store.device_store import DeviceDocument, RemoteDeviceStore

logger = logging.getLogger(__name__)


@dataclass
class BootstrapResult:
    record: DeviceRecord
    uid: str
    source: str
    claimed: bool = False


class Bootstrap:
    """Finds the remote record that belongs to this machine.

    The cached id is tried first. When it no longer resolves, the record is
    looked up by machine identity, which lets a unit recover its record after
    the local cache was wiped or the hardware was swapped.
    """

    SOURCE_CACHED_ID = "cached_id"
    SOURCE_UID_QUERY = "uid_query"

    def __init__(self, store: RemoteDeviceStore):
        self._store = store

    async def resolve(self, uid: str, cached: Optional[DeviceRecord]) -> BootstrapResult:
        cached_id = cached.id if cached is not None and cached.id else None

        try:
            document, source = await self._locate(uid, cached_id)
            record = self._to_record(document)

            claimed = False
            if not record.uid:
                logger.info("Claiming device record %s for uid=%s", record.id, uid)
                await self._store.merge(record.id, {"uid": uid})
                record = record.model_copy(update={"uid": uid})
                claimed = True
            elif record.uid != uid:
                logger.warning(
                    "Device record %s is claimed by uid=%s, this machine is uid=%s",
                    record.id,
                    record.uid,
                    uid,
                )
        except ChargeAgentError:
            raise
        except Exception as exc:
            raise StoreUnavailable(f"Device store request failed: {exc}") from exc

        logger.info(
            "Device record resolved | id=%s name=%s state=%s source=%s",
            record.id,
            record.name,
            record.state.value,
            source,
        )
        return BootstrapResult(record=record, uid=uid, source=source, claimed=claimed)

    async def _locate(self, uid: str, cached_id: Optional[str]) -> tuple[DeviceDocument, str]:
        if cached_id:
            document = await self._store.get(cached_id)
            if document is not None:
                return document, self.SOURCE_CACHED_ID
            logger.warning("Cached device id %s not found remotely; querying by uid", cached_id)

        matches = await self._store.query_by_uid(uid)
        if not matches:
            raise DeviceNotRegistered(uid, cached_id)

        if len(matches) > 1:
            logger.warning(
                "%s device records claim uid=%s; using %s",
                len(matches),
                uid,
                matches[0].id,
            )
        return matches[0], self.SOURCE_UID_QUERY

    @staticmethod
    def _to_record(document: DeviceDocument) -> DeviceRecord:
        try:
            return DeviceRecord.from_document(document.id, document.data)
        except ValidationError as exc:
            raise InvalidDeviceRecord(document.id, str(exc)) from exc
