"""
Credential store: email -> password record.

The email is the key, so uniqueness of logins is enforced by the store
itself. Generated passwords are flagged as defaults until the user changes
them; while flagged, an encrypted copy is kept so privileged viewers can
read it back.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, List, Optional
from uuid import UUID

from pydantic import BaseModel

from ..auth.crypto import SecretBox
from ..auth.passwords import hash_password, verify_password
from ..utils.exceptions import ConflictError, NoUserError, NotFoundError, WrongPasswordError
from ..utils.logger import get_logger
from .keyed_store import STR_KEYS, KeyedStore

logger = get_logger(__name__)


class CredentialRecord(BaseModel):
    user_id: UUID
    password_hash: str
    default_password: bool = False
    default_password_secret: Optional[str] = None


class CredentialStore:
    def __init__(self, path: Path, secret_box: Optional[SecretBox] = None):
        self.db: KeyedStore[str, CredentialRecord] = KeyedStore(
            path, CredentialRecord, key_codec=STR_KEYS, name="credentials"
        )
        self.secret_box = secret_box or SecretBox()

    def _record(self, user_id: UUID, password: str, default_password: bool) -> CredentialRecord:
        return CredentialRecord(
            user_id=user_id,
            password_hash=hash_password(password),
            default_password=default_password,
            default_password_secret=self.secret_box.encrypt(password) if default_password else None,
        )

    def authenticate(self, email: str, password: str) -> UUID:
        """Return the user id for valid credentials."""
        record = self.db.fetch(email)
        if record is None:
            raise NoUserError()
        if not verify_password(password, record.password_hash):
            raise WrongPasswordError()
        return record.user_id

    def add(self, email: str, password: str, user_id: UUID, default_password: bool = False) -> CredentialRecord:
        """Register a login. Raises ConflictError if the email is taken."""
        with self.db.lock_key(email):
            if self.db.contains_key(email):
                raise ConflictError("Email is already registered")
            record = self._record(user_id, password, default_password)
            self.db.insert(email, record)
        return record

    def change_password(self, email: str, new_password: str, default_password: bool = False) -> None:
        guard = self.db.write_lock(email)
        if guard is None:
            raise NotFoundError("No credentials for that email")
        with guard:
            user_id = guard.value.user_id
            guard.replace(self._record(user_id, new_password, default_password))

    def fetch(self, email: str) -> Optional[CredentialRecord]:
        return self.db.fetch(email)

    def default_password(self, email: str) -> Optional[str]:
        """The generated password, while the user has not changed it."""
        record = self.db.fetch(email)
        if record is None or not record.default_password or not record.default_password_secret:
            return None
        return self.secret_box.decrypt(record.default_password_secret)

    def remove(self, email: str) -> bool:
        return self.db.remove_silent(email)

    def find_by_user(self, user_id: UUID) -> List[str]:
        """Emails whose record points at user_id. Full scan."""
        return [email for email, record in self.db.items() if record.user_id == user_id]

    def retain(self, predicate: Callable[[CredentialRecord], bool]) -> int:
        return self.db.retain(True, predicate)
