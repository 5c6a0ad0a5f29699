"""
Per-key cooperative write locks.

Keys are raw key bytes of a keyed store. A key is "held" while a writer owns
it; other writers wait on a shared condition until it is released. Readers
never take these locks.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Generator, Optional, Set

from ..utils.exceptions import LockTimeoutError

LOCK_TIMEOUT_SECONDS: Optional[float] = None


class KeyLockRegistry:
    """Set of held keys guarded by one condition variable."""

    def __init__(self, name: str = "store"):
        self.name = name
        self._held: Set[bytes] = set()
        self._cond = threading.Condition()

    def acquire(self, key: bytes, timeout_seconds: Optional[float] = LOCK_TIMEOUT_SECONDS) -> None:
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        with self._cond:
            while key in self._held:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise LockTimeoutError(f"{self.name}:{key.hex()}", timeout_seconds)
                self._cond.wait(remaining)
            self._held.add(key)

    def release(self, key: bytes) -> None:
        with self._cond:
            self._held.discard(key)
            self._cond.notify_all()

    def is_held(self, key: bytes) -> bool:
        with self._cond:
            return key in self._held

    @contextmanager
    def hold(self, key: bytes, timeout_seconds: Optional[float] = LOCK_TIMEOUT_SECONDS) -> Generator[None, None, None]:
        """Acquire a key for the duration of a with-block."""
        self.acquire(key, timeout_seconds)
        try:
            yield
        finally:
            self.release(key)
