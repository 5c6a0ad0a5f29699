import pytest

from duke.core.config import NotificationSettings
from duke.services.notification_service import NotificationService


def reminders(mailer, email):
    return [m for m in mailer.to(email) if m[2] == "Unreviewed Sections"]


@pytest.fixture
def notifier(portal):
    return NotificationService(
        portal.db,
        portal.mailer,
        portal.reconciler,
        NotificationSettings(interval_seconds=3600, sleep_seconds=1),
    )


@pytest.fixture
def queued(portal, pupil):
    sections = portal.section_service
    for slot in (0, 1):
        section = sections.create_section(pupil, pupil.id, slot, 0)
        sections.set_state(pupil, section.id, "in_review")


def test_emails_teachers_with_notifications_on(portal, owner, org, teacher, queued, notifier, mailer):
    quiet, _ = portal.portal_service.add_teacher(owner, org.id, "t2@x.y", "Quinn", "Quiet")
    portal.portal_service.set_notifications(quiet, quiet.id, False)

    assert notifier.notify_reviewers() == 1

    [message] = reminders(mailer, "t@x.y")
    assert message[1] == "There are 2 new unreviewed sections"
    assert reminders(mailer, "t2@x.y") == []
    assert portal.db.orgs.fetch(org.id).last_notification is not None


def test_notifications_respect_interval(portal, teacher, queued, notifier, mailer, clock):
    assert notifier.notify_reviewers() == 1
    clock.advance(minutes=30)
    assert notifier.notify_reviewers() == 0
    clock.advance(minutes=30)
    assert notifier.notify_reviewers() == 1
    assert len(reminders(mailer, "t@x.y")) == 2


def test_nothing_sent_without_unreviewed_sections(portal, teacher, notifier, mailer):
    assert notifier.notify_reviewers() == 0
    assert reminders(mailer, "t@x.y") == []


def test_failed_send_is_not_counted(portal, teacher, queued, notifier, mailer):
    mailer.fail = True
    assert notifier.notify_reviewers() == 0


def test_tick_sweeps_expired_sessions(portal, db, notifier, clock, settings):
    ctx = portal.portal_service.login("owner@example.com", "owner-password")
    clock.advance(seconds=settings.auth.session_ttl_seconds + 1)

    notifier.tick()

    assert not db.sessions.db.contains_key(ctx.token)


def test_start_and_stop(notifier):
    notifier.start()
    notifier.start()
    notifier.stop()
    assert notifier._thread is None
