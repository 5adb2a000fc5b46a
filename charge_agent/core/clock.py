from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], int]


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)
