"""
Session store: opaque token -> (user id, absolute expiry, sliding timeout).

Tokens are random UUIDs. A session is valid while now < expiry; each
successful check may push the expiry to now + timeout.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel

from ..core.clock import Clock, utc_now
from ..utils.exceptions import DeserializeError, StoreError
from ..utils.logger import get_logger
from .keyed_store import KeyedStore

logger = get_logger(__name__)


class SessionRecord(BaseModel):
    user_id: UUID
    expiry: datetime
    timeout_seconds: float


class SessionStore:
    def __init__(self, path: Path, clock: Clock = utc_now):
        self.db: KeyedStore[UUID, SessionRecord] = KeyedStore(path, SessionRecord, name="sessions")
        self.clock = clock

    def create(self, user_id: UUID, timeout: timedelta) -> UUID:
        """Create a new session and return its token."""
        token = uuid4()
        record = SessionRecord(
            user_id=user_id,
            expiry=self.clock() + timeout,
            timeout_seconds=timeout.total_seconds(),
        )
        self.db.insert(token, record)
        return token

    def destroy(self, token: UUID) -> None:
        """Invalidate a session token (idempotent)."""
        self.db.remove_silent(token)

    def check(self, token: UUID, push_expiry: bool = True) -> Optional[UUID]:
        """Return the session's user id, or None if missing or expired."""
        try:
            record = self.db.fetch(token)
        except DeserializeError as e:
            logger.warning("Dropping unreadable session", error=str(e))
            self.db.remove_silent(token)
            return None
        if record is None:
            return None

        now = self.clock()
        if now >= record.expiry:
            self.db.remove_silent(token)
            return None

        if push_expiry:
            self._push_expiry(token, now)
        return record.user_id

    def _push_expiry(self, token: UUID, now: datetime) -> None:
        try:
            guard = self.db.write_lock(token)
            if guard is None:
                return
            with guard:
                record = guard.mutable()
                record.expiry = now + timedelta(seconds=record.timeout_seconds)
        except StoreError as e:
            logger.warning("Failed to extend session expiry", error=str(e))

    def sweep_expired(self) -> int:
        now = self.clock()
        removed = self.db.retain(False, lambda record: now < record.expiry)
        if removed:
            logger.info("Swept expired sessions", removed=removed)
        return removed

    def destroy_for_user(self, user_id: UUID) -> int:
        return self.db.retain(True, lambda record: record.user_id != user_id)
