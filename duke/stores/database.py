"""All keyed stores of one portal instance, opened under a single root."""

from pathlib import Path
from typing import Optional
from uuid import UUID

from ..auth.crypto import SecretBox
from ..core.clock import Clock, utc_now
from ..models.org import Organisation
from ..models.section import OutstandingEntry, Section
from ..models.user import User
from .credential_store import CredentialStore
from .keyed_store import KeyedStore
from .link_store import LinkStore
from .session_store import SessionStore


class Database:
    def __init__(self, root: Path, clock: Clock = utc_now, secret_box: Optional[SecretBox] = None):
        self.root = Path(root)
        self.clock = clock
        self.credentials = CredentialStore(self.root / "credentials", secret_box)
        self.users: KeyedStore[UUID, User] = KeyedStore(self.root / "users", User)
        self.orgs: KeyedStore[UUID, Organisation] = KeyedStore(self.root / "orgs", Organisation)
        self.sections: KeyedStore[UUID, Section] = KeyedStore(self.root / "sections", Section)
        self.outstanding: KeyedStore[UUID, OutstandingEntry] = KeyedStore(
            self.root / "outstanding", OutstandingEntry
        )
        self.sessions = SessionStore(self.root / "sessions", clock)
        self.links = LinkStore(self.root / "links", clock)
