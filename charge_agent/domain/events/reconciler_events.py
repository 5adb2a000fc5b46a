from dataclasses import dataclass
from typing import Union

from charge_agent.domain.device.device_record import DeviceRecord


@dataclass(frozen=True)
class RemoteChanged:
    record: DeviceRecord


@dataclass(frozen=True)
class CableEdge:
    connected: bool


@dataclass(frozen=True)
class CableFault:
    error: BaseException


ReconcilerEvent = Union[RemoteChanged, CableEdge, CableFault]
