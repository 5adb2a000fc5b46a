from dataclasses import dataclass

from charge_agent.domain.device.enums import DeviceState, StateNaming


@dataclass(frozen=True)
class SessionStates:
    """States written while a cable is present, before and after energizing."""

    awaiting: DeviceState
    charging: DeviceState

    @classmethod
    def for_naming(cls, naming: StateNaming) -> "SessionStates":
        if naming == StateNaming.UNAVAILABLE:
            return cls(
                awaiting=DeviceState.UNAVAILABLE,
                charging=DeviceState.UNAVAILABLE,
            )
        return cls(awaiting=DeviceState.PENDING, charging=DeviceState.CHARGING)
