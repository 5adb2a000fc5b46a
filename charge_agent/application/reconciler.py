# charge_agent/application/reconciler.py
import asyncio
import logging
from typing import Any, Dict, Optional

from charge_agent.core.clock import Clock, now_ms
from charge_agent.core.exceptions import CableWatchError
from charge_agent.core.gpio_monitor import CableMonitor
from charge_agent.core.heartbeat_service import HeartbeatService
from charge_agent.core.write_dispatcher import WriteDispatcher
from charge_agent.domain.device.device_record import DeviceRecord
from charge_agent.domain.device.enums import DeviceState
from charge_agent.domain.device.session_states import SessionStates
from charge_agent.domain.events.reconciler_events import (
    CableEdge,
    CableFault,
    ReconcilerEvent,
    RemoteChanged,
)
from charge_agent.infrastructure.gpio.gpio_controller import GPIOController
from charge_agent.infrastructure.storage.record_cache import DeviceRecordCache
from charge_agent.infrastructure.store.device_store import DocumentSubscription, RemoteDeviceStore
from charge_agent.infrastructure.system.shutdown import SystemShutdown
from charge_agent.interfaces.handlers.device_document_handler import DeviceDocumentHandler

logger = logging.getLogger(__name__)

MESSAGE_CONNECTED = "Connected"
MESSAGE_DISCONNECTED = "Disconnected"
MESSAGE_CHARGING = "Charging"
MESSAGE_POWER_UNAVAILABLE = "Power unavailable"
MESSAGE_OFFLINE = "Offline"
MESSAGE_DETECTOR_FAULT = "Cable detector failure"

DEFAULT_STALENESS_THRESHOLD_MS = 80_000


class Reconciler:
    """Keeps relays, the remote device record and the local cache consistent.

    The reconciler exclusively owns the in-memory record, the relay set and
    the store handle. Events are processed one at a time from a single queue,
    so handlers never interleave. Remote and cache writes are dispatched and
    not awaited, except for the shutdown write.
    """

    def __init__(
        self,
        record: DeviceRecord,
        store: RemoteDeviceStore,
        hardware: GPIOController,
        cache: DeviceRecordCache,
        *,
        system_shutdown: Optional[SystemShutdown] = None,
        dispatcher: Optional[WriteDispatcher] = None,
        session_states: Optional[SessionStates] = None,
        staleness_threshold_ms: int = DEFAULT_STALENESS_THRESHOLD_MS,
        heartbeat_interval: float = 60,
        detector_poll_interval: float = 0.5,
        shutdown_timeout: float = 10.0,
        clock: Clock = now_ms,
    ):
        self._record = record
        self._store = store
        self._hardware = hardware
        self._cache = cache
        self._system_shutdown = system_shutdown or SystemShutdown()
        self._clock = clock
        self._dispatcher = dispatcher or WriteDispatcher(clock=clock)
        self._session = session_states or SessionStates(
            awaiting=DeviceState.PENDING,
            charging=DeviceState.CHARGING,
        )
        self._staleness_threshold_ms = staleness_threshold_ms
        self._shutdown_timeout = shutdown_timeout

        self._events: asyncio.Queue[ReconcilerEvent] = asyncio.Queue()
        self._closing = False
        self._shutdown_started = False
        self._released = False
        self._run_task: Optional[asyncio.Task] = None
        self._subscription: Optional[DocumentSubscription] = None

        self.heartbeat = HeartbeatService(
            self.heartbeat_tick,
            lambda: self._record.state == DeviceState.OFFLINE,
            interval=heartbeat_interval,
        )
        self.cable_monitor = CableMonitor(
            hardware,
            on_edge=self.on_cable_edge,
            on_fault=self.on_cable_fault,
            interval=detector_poll_interval,
        )

    @property
    def record(self) -> DeviceRecord:
        return self._record

    @property
    def document_id(self) -> str:
        return self._record.id

    @property
    def dispatcher(self) -> WriteDispatcher:
        return self._dispatcher

    @property
    def run_task(self) -> Optional[asyncio.Task]:
        return self._run_task

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._run_task = asyncio.create_task(self.run())
        self._subscription = await self._store.subscribe(
            self.document_id,
            DeviceDocumentHandler(self.submit),
        )
        await self.cable_monitor.start()
        await self.heartbeat.start()
        logger.info("Reconciler started | device=%s", self.document_id)

    def submit(self, event: ReconcilerEvent) -> None:
        if self._closing:
            logger.debug("Reconciler closing; dropping event %s", event)
            return
        self._events.put_nowait(event)

    def on_cable_edge(self, connected: bool) -> None:
        self.submit(CableEdge(connected))

    def on_cable_fault(self, error: BaseException) -> None:
        self.submit(CableFault(error))

    async def run(self) -> None:
        while True:
            event = await self._events.get()
            try:
                await self.process(event)
            finally:
                self._events.task_done()

    async def process(self, event: ReconcilerEvent) -> None:
        match event:
            case RemoteChanged(record=record):
                self.handle_remote_change(record)

            case CableEdge(connected=connected):
                self.handle_cable_edge(connected)

            case CableFault(error=error):
                await self.handle_cable_fault(error)

            case _:
                logger.warning(f"Unknown reconciler event: {event}")

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def handle_remote_change(self, record: DeviceRecord) -> bool:
        changed = record.changed_fields(self._record)
        if not changed:
            logger.debug("Remote record unchanged; ignoring push")
            return False

        logger.info(
            "Remote record changed | fields=%s state=%s current_power=%s",
            changed,
            record.state.value,
            record.current_power,
        )
        self._record = record
        self._dispatcher.dispatch(
            "cache:remote-change",
            self._cache.save_async(record, degraded=True),
        )

        if record.state == DeviceState.STOP:
            logger.warning("STOP requested remotely; invoking OS shutdown")
            self._dispatcher.dispatch("system:shutdown", self._system_shutdown.invoke())
        elif (
            record.state == self._session.awaiting
            and record.current_power != 0
            and record.current_time_start == 0
        ):
            self._start_session(record)
        else:
            logger.info("Action unrequired | state=%s", record.state.value)

        return True

    def _start_session(self, record: DeviceRecord) -> None:
        power = record.current_power
        mode = record.find_power_mode(power)

        if mode is None or not self._hardware.has_relay(power):
            logger.warning(
                "Power unavailable | current_power=%s offered=%s relay=%s",
                power,
                mode is not None,
                self._hardware.has_relay(power),
            )
            self._reject_session()
            return

        if not self._hardware.energize(power):
            self._reject_session()
            return

        now = self._clock()
        logger.info("Charging session started | power=%s type=%s", power, mode.type.value)
        self._write_remote(
            "session:start",
            {
                "state": self._session.charging.value,
                "message": MESSAGE_CHARGING,
                "updatedAt": now,
                "currentTimeStart": now,
            },
        )

    def _reject_session(self) -> None:
        self._write_remote(
            "session:error",
            {
                "state": DeviceState.ERROR.value,
                "message": MESSAGE_POWER_UNAVAILABLE,
                "updatedAt": self._clock(),
                "currentPower": 0,
                "currentTimeStart": 0,
            },
        )

    def handle_cable_edge(self, connected: bool) -> None:
        now = self._clock()
        fresh = self._record.is_fresh(now, self._staleness_threshold_ms)

        if not connected:
            self._hardware.all_off()
            logger.info("Cable disconnected; all relays de-energized")
        else:
            logger.info("Cable connected")

        if not fresh:
            logger.warning(
                "Device record is stale (age=%sms); skipping remote write for cable %s",
                now - self._record.updated_at,
                "connect" if connected else "disconnect",
            )
            return

        if connected:
            self._write_remote(
                "cable:connected",
                {
                    "state": self._session.awaiting.value,
                    "message": MESSAGE_CONNECTED,
                    "updatedAt": now,
                    "currentPower": 0,
                    "currentTimeStart": 0,
                },
            )
        else:
            self._write_remote(
                "cable:disconnected",
                {
                    "state": DeviceState.AVAILABLE.value,
                    "message": MESSAGE_DISCONNECTED,
                    "updatedAt": now,
                    "currentPower": 0,
                    "currentTimeStart": 0,
                },
            )

    async def handle_cable_fault(self, error: BaseException) -> None:
        logger.error(f"Cable detector fault: {error}")
        self._hardware.all_off()

        try:
            await asyncio.wait_for(
                self._store.merge(
                    self.document_id,
                    {
                        "state": DeviceState.ERROR.value,
                        "message": MESSAGE_DETECTOR_FAULT,
                        "updatedAt": self._clock(),
                        "currentPower": 0,
                        "currentTimeStart": 0,
                    },
                ),
                self._shutdown_timeout,
            )
        except Exception as exc:
            self._dispatcher.report("cable:fault", exc)

        raise CableWatchError(f"Cable detector subscription failed: {error}") from error

    async def heartbeat_tick(self, armed_offline: bool) -> bool:
        now = self._clock()
        fields: Dict[str, Any] = {"updatedAt": now}
        if armed_offline:
            fields["state"] = DeviceState.AVAILABLE.value

        self._record = self._record.model_copy(update={"updated_at": now})

        try:
            await self._store.merge(self.document_id, fields)
        except Exception as exc:
            self._dispatcher.report("heartbeat", exc)
            return False

        logger.debug("Heartbeat sent | fields=%s", fields)
        return True

    def _write_remote(self, label: str, fields: Dict[str, Any]) -> asyncio.Task:
        logger.info("Remote write | label=%s fields=%s", label, fields)
        return self._dispatcher.dispatch(label, self._store.merge(self.document_id, fields))

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Mark the device offline, persist the confirmed record, release hardware.

        The OFFLINE write is awaited before the cache is rewritten and before
        any hardware line is released.
        """
        if self._shutdown_started:
            return
        self._shutdown_started = True
        self._closing = True

        logger.info("🛑 Shutdown sequence started | device=%s", self.document_id)

        await self.heartbeat.stop()
        await self.cable_monitor.stop()
        await self._stop_run_loop()
        await self._unsubscribe()

        await self._dispatcher.drain(self._shutdown_timeout)

        now = self._clock()
        offline_fields = {
            "state": DeviceState.OFFLINE.value,
            "message": MESSAGE_OFFLINE,
            "updatedAt": now,
            "currentPower": 0,
            "currentTimeStart": 0,
        }

        confirmed = False
        try:
            await asyncio.wait_for(
                self._store.merge(self.document_id, offline_fields),
                self._shutdown_timeout,
            )
            confirmed = True
        except Exception as exc:
            self._dispatcher.report("shutdown:offline", exc)

        await self._persist_final_snapshot(confirmed, now)
        await self.release()

        logger.info("Shutdown sequence completed")

    async def _persist_final_snapshot(self, confirmed: bool, now: int) -> None:
        snapshot: Optional[DeviceRecord] = None

        if confirmed:
            try:
                document = await asyncio.wait_for(
                    self._store.get(self.document_id),
                    self._shutdown_timeout,
                )
                if document is not None:
                    snapshot = DeviceRecord.from_document(document.id, document.data)
            except Exception as exc:
                self._dispatcher.report("shutdown:read-back", exc)

        if snapshot is None:
            logger.warning("Remote snapshot unavailable; caching local offline snapshot")
            snapshot = self._record.offline_snapshot().model_copy(
                update={"message": MESSAGE_OFFLINE, "updated_at": now}
            )

        self._record = snapshot

        try:
            await self._cache.save_async(snapshot)
        except Exception:
            logger.exception("Failed to persist final device record snapshot")

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._closing = True

        await self.heartbeat.stop()
        await self.cable_monitor.stop()
        await self._stop_run_loop()
        await self._unsubscribe()
        await self._dispatcher.cancel_all()
        self._hardware.close()

    async def _stop_run_loop(self) -> None:
        task = self._run_task
        if task is None or task.done() or task is asyncio.current_task():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _unsubscribe(self) -> None:
        if self._subscription is None:
            return
        try:
            await self._subscription.unsubscribe()
        except Exception:
            logger.exception("Failed to unsubscribe from device document")
        self._subscription = None
