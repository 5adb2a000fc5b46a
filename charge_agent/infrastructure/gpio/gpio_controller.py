# charge_agent/infrastructure/gpio/gpio_controller.py
import asyncio
import logging
from typing import Callable, Dict, Optional

from gpiozero import DigitalInputDevice, DigitalOutputDevice
from gpiozero.exc import GPIOZeroError

from charge_agent.core.exceptions import InvalidHardwareSpecification
from charge_agent.domain.device.enums import EdgeMode
from charge_agent.domain.models.hardware_config import HardwareConfig

logging = logging.getLogger(__name__)

EdgeCallback = Callable[[bool], None]


class GPIOController:
    """Relay outputs keyed by power level plus the cable detector input."""

    def __init__(self, config: HardwareConfig, pin_factory=None):
        self.config = config
        self._pin_factory = pin_factory
        self.relays: Dict[int | float, DigitalOutputDevice] = {}
        self.detector: Optional[DigitalInputDevice] = None
        self._closed = False

    def initialize_pins(self):
        # rest_energized means the line idles HIGH, so the relay is active-low.
        active_high = not self.config.rest_energized

        try:
            for power, port in self.config.relay_map.items():
                relay = DigitalOutputDevice(
                    port,
                    active_high=active_high,
                    initial_value=False,
                    pin_factory=self._pin_factory,
                )
                self.relays[power] = relay
                logging.info(
                    f"GPIOController: init relay power={power} (pin {port}) "
                    f"to OFF (rest_energized={self.config.rest_energized})"
                )

            bounce_time = self.config.debounce_ms / 1000 if self.config.debounce_ms else None
            self.detector = DigitalInputDevice(
                self.config.detector_port,
                pull_up=False,
                bounce_time=bounce_time,
                pin_factory=self._pin_factory,
            )
            logging.info(
                f"GPIOController: detector on pin {self.config.detector_port} "
                f"(debounce={self.config.debounce_ms}ms, edges={self.config.detect_edges.value})"
            )
        except GPIOZeroError as exc:
            self.close()
            raise InvalidHardwareSpecification(f"Cannot reserve GPIO lines: {exc}") from exc

    def has_relay(self, power: int | float) -> bool:
        return power in self.relays

    def energize(self, power: int | float) -> bool:
        relay = self.relays.get(power)
        if relay is None:
            logging.error(f"No relay mapped for power={power}")
            return False

        try:
            relay.on()
        except GPIOZeroError:
            logging.exception(f"GPIO error energizing relay power={power}")
            return False

        logging.info(f"GPIOController: relay power={power} energized")
        return True

    def de_energize(self, power: int | float) -> bool:
        relay = self.relays.get(power)
        if relay is None:
            logging.error(f"No relay mapped for power={power}")
            return False

        try:
            relay.off()
        except GPIOZeroError:
            logging.exception(f"GPIO error de-energizing relay power={power}")
            return False
        return True

    def all_off(self) -> bool:
        ok = True
        for power in self.relays:
            ok = self.de_energize(power) and ok
        logging.info("GPIOController: all relays de-energized")
        return ok

    def is_energized(self, power: int | float) -> bool:
        relay = self.relays.get(power)
        return bool(relay is not None and relay.is_active)

    def read_detector(self) -> bool:
        if self.detector is None or self.detector.closed:
            raise GPIOZeroError("cable detector is not initialized")
        return bool(self.detector.is_active)

    def subscribe_edges(
        self,
        callback: EdgeCallback,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        """Deliver debounced detector edges to ``callback`` on the asyncio loop.

        gpiozero fires callbacks on its own thread; edges are handed over with
        ``call_soon_threadsafe``. ``True`` means the cable was connected.
        """
        if self.detector is None:
            raise GPIOZeroError("cable detector is not initialized")

        loop = loop or asyncio.get_running_loop()

        def emit(connected: bool) -> None:
            if loop.is_closed():
                return
            loop.call_soon_threadsafe(callback, connected)

        edges = self.config.detect_edges
        if edges in (EdgeMode.RISING, EdgeMode.BOTH):
            self.detector.when_activated = lambda: emit(True)
        if edges in (EdgeMode.FALLING, EdgeMode.BOTH):
            self.detector.when_deactivated = lambda: emit(False)

    def close(self):
        if self._closed:
            return

        self.all_off()

        for power, relay in self.relays.items():
            try:
                relay.close()
            except GPIOZeroError:
                logging.exception(f"Failed to release relay power={power}")

        if self.detector is not None:
            self.detector.when_activated = None
            self.detector.when_deactivated = None
            self.detector.close()

        self._closed = True
        logging.info("GPIOController: GPIO lines released")
