"""Injectable time source. Stores take a clock so expiry can be tested without sleeping."""

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
