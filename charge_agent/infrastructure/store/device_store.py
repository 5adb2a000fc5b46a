from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional


@dataclass(frozen=True)
class DeviceDocument:
    id: str
    data: Dict[str, Any] = field(default_factory=dict)


DocumentHandler = Callable[[DeviceDocument], None]


class DocumentSubscription(ABC):

    @abstractmethod
    async def unsubscribe(self) -> None:
        ...


class RemoteDeviceStore(ABC):
    """Remote collection of device records keyed by document id.

    ``merge`` updates only the given fields and leaves the rest of the
    document untouched. ``subscribe`` delivers the full document on every
    change, including changes written by this process.
    """

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def get(self, doc_id: str) -> Optional[DeviceDocument]:
        ...

    @abstractmethod
    async def query_by_uid(self, uid: str) -> List[DeviceDocument]:
        ...

    @abstractmethod
    async def subscribe(
        self, doc_id: str, handler: DocumentHandler
    ) -> DocumentSubscription:
        ...

    @abstractmethod
    async def merge(self, doc_id: str, fields: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
