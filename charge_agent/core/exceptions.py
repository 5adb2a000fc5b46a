"""
Exception hierarchy for the charge agent.

Startup errors are fatal: the process logs them and exits before any
session logic runs. Runtime errors carry a ``recoverable`` flag so the
top-level handler can decide whether to keep the loop alive.
"""


class ChargeAgentError(Exception):
    """Base exception for all charge agent errors"""

    def __init__(self, message: str, recoverable: bool = False):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class MissingConfiguration(ChargeAgentError):
    """A required setting is absent or invalid"""


class InvalidHardwareSpecification(ChargeAgentError):
    """Power port or detector port specification cannot be used"""


class InvalidCachePath(ChargeAgentError):
    """The local record cache does not exist"""

    def __init__(self, path):
        self.path = path
        super().__init__(f"Invalid config path: {path}")


class UnreadableCache(ChargeAgentError):
    """The local record cache exists but cannot be parsed"""

    def __init__(self, path, reason: str):
        self.path = path
        super().__init__(f"Unreadable config file {path}: {reason}")


class DeviceNotRegistered(ChargeAgentError):
    """No remote record matches the cached id or this machine's uid"""

    def __init__(self, uid: str, cached_id: str | None = None):
        self.uid = uid
        self.cached_id = cached_id
        super().__init__(
            f"Device not registered into database (uid={uid}, cached_id={cached_id})"
        )


class StoreUnavailable(ChargeAgentError):
    """The remote device store cannot be reached"""


class CableWatchError(ChargeAgentError):
    """The cable detector subscription reported a fault"""


class InvalidDeviceRecord(ChargeAgentError):
    """The resolved remote document is not a valid device record"""

    def __init__(self, doc_id: str, reason: str):
        self.doc_id = doc_id
        super().__init__(f"Invalid device record {doc_id}: {reason}")
