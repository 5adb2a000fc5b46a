from typing import List

from pydantic import BaseModel, field_validator, model_validator

from charge_agent.domain.device.enums import EdgeMode


class PowerPortSpec(BaseModel):
    port: int
    power: int | float

    @field_validator("port")
    @classmethod
    def validate_port(cls, value: int) -> int:
        if value < 0:
            raise ValueError("port must be >= 0")
        return value

    @field_validator("power")
    @classmethod
    def validate_power(cls, value: int | float) -> int | float:
        if value <= 0:
            raise ValueError("power must be > 0")
        return value


class HardwareConfig(BaseModel):
    power_ports: List[PowerPortSpec]
    detector_port: int
    rest_energized: bool = False
    detect_edges: EdgeMode = EdgeMode.BOTH
    debounce_ms: int = 10

    @field_validator("power_ports")
    @classmethod
    def dedupe_power_ports(cls, value: List[PowerPortSpec]) -> List[PowerPortSpec]:
        if not value:
            raise ValueError("at least one power port is required")

        seen_ports: set[int] = set()
        seen_powers: set[int | float] = set()
        deduped: List[PowerPortSpec] = []

        for spec in value:
            if spec.port in seen_ports:
                continue
            if spec.power in seen_powers:
                raise ValueError(
                    f"power level {spec.power} is mapped to more than one port"
                )
            seen_ports.add(spec.port)
            seen_powers.add(spec.power)
            deduped.append(spec)

        return deduped

    @field_validator("detector_port")
    @classmethod
    def validate_detector_port(cls, value: int) -> int:
        if value < 0:
            raise ValueError("detector_port must be >= 0")
        return value

    @field_validator("debounce_ms")
    @classmethod
    def validate_debounce(cls, value: int) -> int:
        if value < 0:
            raise ValueError("debounce_ms must be >= 0")
        return value

    @model_validator(mode="after")
    def validate_detector_not_relay(self):
        if any(spec.port == self.detector_port for spec in self.power_ports):
            raise ValueError(
                f"detector_port {self.detector_port} is also used as a power port"
            )
        return self

    @property
    def relay_map(self) -> dict[int | float, int]:
        return {spec.power: spec.port for spec in self.power_ports}
