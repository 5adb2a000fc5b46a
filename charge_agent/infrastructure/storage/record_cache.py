import asyncio
import errno
import json
import os
import tempfile
import threading
from pathlib import Path

from pydantic import ValidationError

from charge_agent.core.exceptions import InvalidCachePath, UnreadableCache
from charge_agent.core.logging_config import logger
from charge_agent.domain.device.device_record import DeviceRecord

# Filesystems (bind mounts, some FUSE and SD overlays) that refuse an atomic rename.
IN_PLACE_ERRNOS = {errno.EBUSY, errno.EXDEV, errno.EPERM}


class DeviceRecordCache:
    """Local JSON copy of the device record, used only for cold starts."""

    def __init__(self, path: Path | str):
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> DeviceRecord:
        if not self._path.exists():
            raise InvalidCachePath(self._path)

        logger.info(f"Loading device record cache: {self._path}")

        try:
            with self._path.open("r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as exc:
            raise UnreadableCache(self._path, str(exc)) from exc

        if not isinstance(raw, dict):
            raise UnreadableCache(self._path, "root must be an object")

        try:
            return DeviceRecord.model_validate(raw)
        except ValidationError as exc:
            raise UnreadableCache(self._path, str(exc)) from exc

    def save(self, record: DeviceRecord, *, degraded: bool = False) -> None:
        """Write the record to disk; concurrent callers are applied one at a time."""
        if degraded:
            record = record.offline_snapshot()

        payload = json.dumps(record.to_cache(), indent=2)
        with self._lock:
            self._store_payload(payload)

    async def save_async(self, record: DeviceRecord, *, degraded: bool = False) -> None:
        await asyncio.to_thread(self.save, record, degraded=degraded)

    def _store_payload(self, payload: str) -> None:
        # One staging file per save, in the cache directory.
        staged = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self._path.parent,
            prefix=f".{self._path.name}.",
            suffix=".tmp",
            delete=False,
        )
        staged_path = Path(staged.name)

        try:
            with staged:
                staged.write(payload)
                staged.flush()
                os.fsync(staged.fileno())

            try:
                os.replace(staged_path, self._path)
                logger.debug("Device record cache replaced: %s", self._path)
                return
            except OSError as exc:
                if exc.errno not in IN_PLACE_ERRNOS:
                    raise
                logger.warning(
                    "Cannot rename over %s (%s); rewriting device record cache in place",
                    self._path,
                    exc.strerror,
                )

            with self._path.open("w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
        finally:
            staged_path.unlink(missing_ok=True)
