from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Tuple

import pytest
from cryptography.fernet import Fernet

from duke.app import DukePortal
from duke.core.config import AuthSettings, NotificationSettings, ServerSettings, Settings, SmtpSettings
from duke.services.mail_service import Mailer

ROOT = Path(__file__).resolve().parent.parent

OWNER_EMAIL = "owner@example.com"
OWNER_PASSWORD = "owner-password"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingMailer(Mailer):
    """Mailer that keeps messages in memory instead of talking SMTP."""

    def __init__(self):
        super().__init__(SmtpSettings())
        self.sent: List[Tuple[str, str, str, str, str]] = []
        self.fail = False

    def init(self) -> None:
        pass

    def teardown(self) -> None:
        pass

    def send(self, recipient, subject, title, subtitle, body) -> bool:
        if self.fail:
            return False
        # Render the HTML part so template errors surface in tests
        self.build_message(recipient, subject, title, subtitle, body)
        self.sent.append((recipient, subject, title, subtitle, body))
        return True

    def to(self, recipient: str):
        return [m for m in self.sent if m[0] == recipient]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        fs_root=tmp_path / "data",
        catalogue_path=ROOT / "config" / "awards.yaml",
        server=ServerSettings(host="portal.test"),
        auth=AuthSettings(
            bcrypt_rounds=4,
            secret_key=Fernet.generate_key().decode("utf-8"),
            owner_email=OWNER_EMAIL,
            owner_password=OWNER_PASSWORD,
        ),
        notifications=NotificationSettings(enabled=False),
    )


@pytest.fixture
def portal(settings, mailer, clock) -> DukePortal:
    return DukePortal(settings, mailer=mailer, clock=clock).initialize()


@pytest.fixture
def db(portal):
    return portal.db


@pytest.fixture
def owner(portal):
    return portal.portal_service.login(OWNER_EMAIL, OWNER_PASSWORD).user


@pytest.fixture
def org(portal, owner):
    """Organisation "Acme" with 3 credits."""
    service = portal.portal_service
    created = service.create_org(owner, "Acme")
    return service.add_credits(owner, created.id, 3)


@pytest.fixture
def teacher(portal, owner, org):
    user, _ = portal.portal_service.add_teacher(owner, org.id, "t@x.y", "Tina", "Teach")
    return user


@pytest.fixture
def pupil(portal, owner, org):
    user, _ = portal.portal_service.add_pupil(owner, org.id, "p1@x.y", "Pat", "Pupil", "7B", 0)
    return user
