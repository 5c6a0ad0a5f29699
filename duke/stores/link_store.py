"""
Link store: single-use, time-limited tokens emailed to users.

A link carries one intent: create an account with a preset role, or reset
the password of an existing user. Redemption runs check, act and consume
under the token's write lock, so a link succeeds at most once.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Literal, Optional, TypeVar, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from typing_extensions import Annotated

from ..core.clock import Clock, utc_now
from ..models.user import Role
from ..utils.exceptions import DeserializeError, NotFoundError
from ..utils.logger import get_logger
from .keyed_store import KeyedStore

logger = get_logger(__name__)

T = TypeVar("T")


class CreateUserIntent(BaseModel):
    kind: Literal["create_user"] = "create_user"
    role: Role


class ResetPasswordIntent(BaseModel):
    kind: Literal["reset_password"] = "reset_password"
    user_id: UUID


LinkIntent = Annotated[
    Union[CreateUserIntent, ResetPasswordIntent],
    Field(discriminator="kind"),
]


class LinkRecord(BaseModel):
    intent: LinkIntent
    expiry: datetime


class LinkStore:
    def __init__(self, path: Path, clock: Clock = utc_now):
        self.db: KeyedStore[UUID, LinkRecord] = KeyedStore(path, LinkRecord, name="links")
        self.clock = clock

    def create(self, intent: Union[CreateUserIntent, ResetPasswordIntent], ttl: timedelta) -> UUID:
        token = uuid4()
        self.db.insert(token, LinkRecord(intent=intent, expiry=self.clock() + ttl))
        logger.info("Link created", kind=intent.kind)
        return token

    def _validate(self, token: UUID, drop: Callable[[UUID], bool]):
        try:
            record = self.db.fetch(token)
        except DeserializeError as e:
            logger.warning("Dropping unreadable link", error=str(e))
            drop(token)
            return None
        if record is None:
            return None
        if self.clock() >= record.expiry:
            drop(token)
            return None
        return record.intent

    def fetch_and_validate(self, token: UUID) -> Optional[Union[CreateUserIntent, ResetPasswordIntent]]:
        """The link's intent, or None if it is missing or expired."""
        return self._validate(token, self.db.remove_silent)

    def consume(self, token: UUID) -> bool:
        """Remove the link. True only for the call that removed it."""
        return self.db.remove_silent(token)

    def redeem(self, token: UUID, action: Callable[[Union[CreateUserIntent, ResetPasswordIntent]], T]) -> T:
        """
        Run action with the link's intent and consume the link.

        Raises NotFoundError if the link is missing or expired. If action
        raises, the link is left in place.
        """
        with self.db.lock_key(token):
            intent = self._validate(token, self.db.remove_held)
            if intent is None:
                raise NotFoundError("Link has expired or was already used")
            result = action(intent)
            if not self.db.remove_held(token):
                logger.warning("Link vanished during redemption", kind=intent.kind)
        return result

    def sweep_expired(self) -> int:
        now = self.clock()
        removed = self.db.retain(False, lambda record: now < record.expiry)
        if removed:
            logger.info("Swept expired links", removed=removed)
        return removed
