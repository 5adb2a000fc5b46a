# charge_agent/main.py

import asyncio
import logging
import signal
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parent.parent))

from charge_agent.application.bootstrap import Bootstrap
from charge_agent.application.reconciler import Reconciler
from charge_agent.core.config import build_hardware_config, load_settings
from charge_agent.core.exceptions import CableWatchError, ChargeAgentError
from charge_agent.core.logging_config import setup_logging
from charge_agent.domain.device.session_states import SessionStates
from charge_agent.infrastructure.gpio.gpio_controller import GPIOController
from charge_agent.infrastructure.identity.machine_id import resolve_machine_uid
from charge_agent.infrastructure.storage.record_cache import DeviceRecordCache
from charge_agent.infrastructure.store.nats_kv_store import NatsKvDeviceStore
from charge_agent.infrastructure.system.shutdown import SystemShutdown

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(stop_event.set))


async def main() -> int:
    hardware = None
    store = None
    reconciler = None
    stop_waiter = None

    try:
        settings = load_settings()
        setup_logging(settings.LOG_DIR, settings.LOG_LEVEL)

        logger.info("Initialization Software")
        hardware_config = build_hardware_config(settings)
        cache = DeviceRecordCache(settings.config_path)
        cached = cache.load()
        uid = resolve_machine_uid(settings.MACHINE_UID)

        logger.info("Initialization Hardware")
        hardware = GPIOController(hardware_config)
        hardware.initialize_pins()

        store = NatsKvDeviceStore(settings.STORE_CONFIG)
        await store.connect()

        result = await Bootstrap(store).resolve(uid, cached)

        reconciler = Reconciler(
            result.record,
            store,
            hardware,
            cache,
            system_shutdown=SystemShutdown(settings.SHUTDOWN_COMMAND),
            session_states=SessionStates.for_naming(settings.STATE_NAMING),
            staleness_threshold_ms=settings.staleness_threshold_ms,
            heartbeat_interval=settings.HEARTBEAT_INTERVAL,
            shutdown_timeout=settings.SHUTDOWN_TIMEOUT,
        )

        stop_event = asyncio.Event()
        install_signal_handlers(stop_event)

        await reconciler.start()
        logger.info("🚀 Charge agent started | device=%s uid=%s", result.record.id, uid)

        stop_waiter = asyncio.create_task(stop_event.wait())
        done, _ = await asyncio.wait(
            {stop_waiter, reconciler.run_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if reconciler.run_task in done:
            # Re-raises the fault that ended the event loop.
            reconciler.run_task.result()

        await reconciler.shutdown()
        return 0

    except CableWatchError as exc:
        logger.error(f"💥 Cable watch ended the run: {exc.message}")
        return 1

    except ChargeAgentError as exc:
        logger.error(f"Fatal startup error: {exc.message}")
        return 1

    except Exception:
        logger.exception("Unhandled error in charge agent")
        return 1

    finally:
        if stop_waiter is not None:
            stop_waiter.cancel()

        if reconciler is not None:
            await reconciler.release()
        elif hardware is not None:
            hardware.close()

        if store is not None:
            await store.close()


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
