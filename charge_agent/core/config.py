from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsError

from charge_agent.core.exceptions import InvalidHardwareSpecification, MissingConfiguration
from charge_agent.domain.device.enums import EdgeMode, StateNaming
from charge_agent.domain.models.hardware_config import HardwareConfig


class Settings(BaseSettings):

    POWER_PORT: List[Dict[str, Any]] = Field(
        ..., description="Ordered list of {port, power} relay bindings"
    )
    DETECTOR_PORT: int = Field(..., description="GPIO pin of the cable detector")
    STORE_CONFIG: Dict[str, Any] = Field(
        ..., description="Connection options passed to the device store"
    )
    CONFIG_FILE: str = Field(..., description="Local cache of the device record")

    HEARTBEAT_INTERVAL: int = Field(60, ge=1)
    STALENESS_THRESHOLD: float = Field(80.0, gt=0)
    DETECTOR_DEBOUNCE_MS: int = Field(10, ge=0)
    RELAY_REST_ENERGIZED: bool = False
    DETECT_EDGES: EdgeMode = EdgeMode.BOTH
    STATE_NAMING: StateNaming = StateNaming.PENDING

    MACHINE_UID: Optional[str] = None
    SHUTDOWN_COMMAND: str = "shutdown now"
    SHUTDOWN_TIMEOUT: float = Field(10.0, gt=0)

    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def config_path(self) -> Path:
        return Path(self.CONFIG_FILE)

    @property
    def staleness_threshold_ms(self) -> int:
        return int(self.STALENESS_THRESHOLD * 1000)


def load_settings(**overrides) -> Settings:
    try:
        return Settings(**overrides)
    except SettingsError as exc:
        raise MissingConfiguration(f"Invalid environment variable: {exc}") from exc
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(part) for part in error["loc"]) for error in exc.errors()
        )
        raise MissingConfiguration(
            f"Missing or invalid environment variable: {fields}"
        ) from exc


def build_hardware_config(settings: Settings) -> HardwareConfig:
    try:
        return HardwareConfig(
            power_ports=settings.POWER_PORT,
            detector_port=settings.DETECTOR_PORT,
            rest_energized=settings.RELAY_REST_ENERGIZED,
            detect_edges=settings.DETECT_EDGES,
            debounce_ms=settings.DETECTOR_DEBOUNCE_MS,
        )
    except ValidationError as exc:
        raise InvalidHardwareSpecification(
            f"Invalid hardware specification: {exc}"
        ) from exc
