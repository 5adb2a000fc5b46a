# charge_agent/domain/device/device_record.py
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from charge_agent.domain.device.enums import BillingMode, DeviceState, PowerType


class PowerMode(BaseModel):

    type: PowerType
    power: int | float
    price: float = 0
    billing: BillingMode = BillingMode.TIME


class Localisation(BaseModel):

    lat: float = 0
    lng: float = 0


class DeviceRecord(BaseModel):
    """Remotely authoritative description of this charging station.

    Field names are snake_case in Python and camelCase on the wire, matching
    the documents stored in the remote collection.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field("", validation_alias=AliasChoices("id", "linkedID"))
    uid: Optional[str] = None
    name: str = ""
    message: str = ""
    state: DeviceState = DeviceState.OFFLINE
    current_power: int | float = 0
    current_time_start: int = 0
    power_modes: List[PowerMode] = Field(
        default_factory=list,
        validation_alias=AliasChoices("powerModes", "powerMode", "power_modes"),
    )
    localisation: Localisation = Field(default_factory=Localisation)
    created_at: int = 0
    updated_at: int = 0

    @classmethod
    def from_document(cls, doc_id: str, data: Dict[str, Any]) -> "DeviceRecord":
        # The document key is the only trusted source of the id.
        body = {k: v for k, v in data.items() if k not in ("id", "linkedID")}
        body["id"] = doc_id
        return cls.model_validate(body)

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude={"id"})

    def to_cache(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    def changed_fields(self, other: "DeviceRecord") -> List[str]:
        return [
            name
            for name in type(self).model_fields
            if getattr(self, name) != getattr(other, name)
        ]

    def same_as(self, other: "DeviceRecord") -> bool:
        return not self.changed_fields(other)

    def find_power_mode(self, power: int | float) -> Optional[PowerMode]:
        for mode in self.power_modes:
            if mode.power == power:
                return mode
        return None

    def is_fresh(self, now_ms: int, threshold_ms: int) -> bool:
        return now_ms - self.updated_at < threshold_ms

    def offline_snapshot(self) -> "DeviceRecord":
        return self.model_copy(
            update={
                "state": DeviceState.OFFLINE,
                "current_power": 0,
                "current_time_start": 0,
            }
        )
