# charge_agent/interfaces/handlers/device_document_handler.py
import logging
from typing import Callable

from pydantic import ValidationError

from charge_agent.domain.device.device_record import DeviceRecord
from charge_agent.domain.events.reconciler_events import ReconcilerEvent, RemoteChanged
from charge_agent.infrastructure.store.device_store import DeviceDocument

logger = logging.getLogger(__name__)


class DeviceDocumentHandler:
    """Turns pushed store documents into RemoteChanged events."""

    def __init__(self, submit: Callable[[ReconcilerEvent], None]):
        self._submit = submit

    def __call__(self, document: DeviceDocument) -> None:
        try:
            record = DeviceRecord.from_document(document.id, document.data)
        except ValidationError:
            logger.error(f"Invalid device document received: {document.id} {document.data}")
            return

        self._submit(RemoteChanged(record))
