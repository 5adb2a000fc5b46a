from enum import Enum


class DeviceState(str, Enum):
    OFFLINE = "OFFLINE"
    AVAILABLE = "AVAILABLE"
    PENDING = "PENDING"
    CHARGING = "CHARGING"
    UNAVAILABLE = "UNAVAILABLE"
    STOP = "STOP"
    ERROR = "ERROR"


class PowerType(str, Enum):
    DC = "DC"
    AC = "AC"


class BillingMode(str, Enum):
    TIME = "time"
    SESSION = "session"


class StateNaming(str, Enum):
    PENDING = "pending"
    UNAVAILABLE = "unavailable"


class EdgeMode(str, Enum):
    RISING = "rising"
    FALLING = "falling"
    BOTH = "both"
