import hashlib
from pathlib import Path
from typing import Iterable, Optional

from charge_agent.core.exceptions import MissingConfiguration
from charge_agent.core.logging_config import logging

logger = logging.getLogger(__name__)

MACHINE_ID_PATHS = (
    Path("/etc/machine-id"),
    Path("/var/lib/dbus/machine-id"),
)


def read_machine_id(paths: Iterable[Path] = MACHINE_ID_PATHS) -> Optional[str]:
    for path in paths:
        try:
            raw = path.read_text(encoding="utf-8").strip()
        except OSError:
            continue
        if raw:
            return raw
    return None


def resolve_machine_uid(
    override: Optional[str] = None,
    paths: Iterable[Path] = MACHINE_ID_PATHS,
) -> str:
    """Return this controller's identity: the override, else a hash of the OS machine id."""
    if override and override.strip():
        return override.strip()

    raw = read_machine_id(paths)
    if raw is None:
        raise MissingConfiguration(
            "Machine identity unavailable: set MACHINE_UID or provide /etc/machine-id"
        )

    uid = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    logger.info(f"Resolved machine identity: {uid}")
    return uid
