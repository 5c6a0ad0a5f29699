import threading

import pytest

from duke.models.user import PupilRole
from duke.utils.exceptions import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    UnauthenticatedError,
    UnauthorisedError,
    WrongPasswordError,
)

from conftest import OWNER_EMAIL, OWNER_PASSWORD


def test_owner_seeded_once(portal, db):
    owners = [u for u in db.users.values() if u.role.kind == "owner"]
    assert len(owners) == 1
    assert portal.portal_service.ensure_owner() is None
    assert len([u for u in db.users.values() if u.role.kind == "owner"]) == 1


def test_login_logout(portal):
    service = portal.portal_service
    ctx = service.login(OWNER_EMAIL, OWNER_PASSWORD)
    assert service.authenticate(str(ctx.token)).user.id == ctx.user.id

    service.logout(str(ctx.token))
    service.logout(str(ctx.token))
    with pytest.raises(UnauthenticatedError):
        service.authenticate(str(ctx.token))

    with pytest.raises(WrongPasswordError):
        service.login(OWNER_EMAIL, "not-the-password")
    with pytest.raises(UnauthenticatedError):
        service.authenticate("not-a-uuid")


def test_session_expires(portal, clock, settings):
    service = portal.portal_service
    ctx = service.login(OWNER_EMAIL, OWNER_PASSWORD)
    clock.advance(seconds=settings.auth.session_ttl_seconds)
    with pytest.raises(UnauthenticatedError):
        service.authenticate(str(ctx.token))


def test_add_pupil_scenario(portal, db, owner, org, mailer):
    user, password = portal.portal_service.add_pupil(owner, org.id, "p1@x.y", "Pat", "Pupil", "7B", 0)

    assert db.orgs.fetch(org.id).credits == 2
    assert user.id in db.orgs.fetch(org.id).pupils
    stored = db.users.fetch(user.id)
    assert isinstance(stored.role, PupilRole)
    assert stored.role.org_id == org.id
    assert stored.role.award_index == 0
    assert stored.role.sections == [None] * 6

    assert db.credentials.authenticate("p1@x.y", password) == user.id
    assert db.credentials.fetch("p1@x.y").default_password is True
    assert len(password) == 8 and password.isalnum()

    [message] = mailer.to("p1@x.y")
    assert password in message[3]
    assert "https://portal.test/user/change_password/" in message[3]


def test_pupil_without_credits_conflicts_and_leaves_org_unchanged(portal, db, owner, org):
    service = portal.portal_service
    for i in range(3):
        service.add_pupil(owner, org.id, f"p{i}@x.y", "Pat", f"Pupil{i}")
    before = db.orgs.fetch(org.id)
    assert before.credits == 0

    with pytest.raises(ConflictError):
        service.add_pupil(owner, org.id, "p9@x.y", "Pat", "Late")

    assert db.orgs.fetch(org.id) == before
    assert db.credentials.fetch("p9@x.y") is None


def test_duplicate_email_does_not_consume_credit(portal, db, owner, org, teacher):
    with pytest.raises(ConflictError):
        portal.portal_service.add_pupil(owner, org.id, "t@x.y", "Pat", "Dup")
    assert db.orgs.fetch(org.id).credits == 3
    assert len(list(db.users.values())) == 2


def test_invalid_names_rejected(portal, owner, org):
    with pytest.raises(InvalidInputError):
        portal.portal_service.add_pupil(owner, org.id, "p@x.y", "   ", "Pupil")
    with pytest.raises(InvalidInputError):
        portal.portal_service.add_pupil(owner, org.id, "not-an-email", "Pat", "Pupil")
    with pytest.raises(InvalidInputError):
        portal.portal_service.add_pupil(owner, org.id, "p@x.y", "Pat", "Pupil", award_index=9)


def test_capabilities_enforced(portal, owner, org, teacher, pupil):
    service = portal.portal_service
    with pytest.raises(UnauthorisedError):
        service.add_pupil(pupil, org.id, "p2@x.y", "Pat", "Two")
    with pytest.raises(UnauthorisedError):
        service.add_teacher(teacher, org.id, "t2@x.y", "Tom", "Two")
    with pytest.raises(UnauthorisedError):
        service.create_org(teacher, "Rogue")
    with pytest.raises(UnauthorisedError):
        service.add_admin(teacher, "a@x.y", "Ada", "Admin")

    # Teachers may add pupils to their own organisation
    user, _ = service.add_pupil(teacher, org.id, "p2@x.y", "Pat", "Two")
    assert user.org_id == org.id


def test_org_admin_invite_and_second_admin_conflict(portal, db, owner, org, mailer):
    service = portal.portal_service
    token = service.invite_org_admin(owner, org.id, "oa@x.y")
    [message] = mailer.to("oa@x.y")
    assert f"https://portal.test/user/create_account/{token}" in message[3]

    second = service.invite_org_admin(owner, org.id, "oa2@x.y")

    admin = service.redeem_create_account(str(token), "oa@x.y", "Olive", "Admin", "password1")
    assert admin.role.kind == "org_admin"
    assert db.orgs.fetch(org.id).admin == admin.id

    with pytest.raises(ConflictError):
        service.redeem_create_account(str(second), "oa2@x.y", "Oscar", "Admin", "password2")
    assert db.credentials.fetch("oa2@x.y") is None
    assert all(u.email != "oa2@x.y" for u in db.users.values())
    assert db.orgs.fetch(org.id).admin == admin.id

    with pytest.raises(ConflictError):
        service.invite_org_admin(owner, org.id, "oa3@x.y")


def test_create_account_link_is_single_use(portal, owner, org):
    service = portal.portal_service
    token = service.invite_org_admin(owner, org.id, "oa@x.y")
    service.redeem_create_account(str(token), "oa@x.y", "Olive", "Admin", "password1")
    with pytest.raises(NotFoundError):
        service.redeem_create_account(str(token), "oa9@x.y", "Olive", "Again", "password1")


def test_change_password_link(portal, db, owner, org, pupil, mailer):
    service = portal.portal_service
    link = mailer.to("p1@x.y")[0][3].split("/user/change_password/")[1].split('"')[0]

    with pytest.raises(InvalidInputError):
        service.redeem_change_password(link, "short")

    service.redeem_change_password(link, "new-password")
    assert service.login("p1@x.y", "new-password").user.id == pupil.id
    assert db.credentials.fetch("p1@x.y").default_password is False

    with pytest.raises(NotFoundError):
        service.redeem_change_password(link, "another-password")


def test_profile_shows_default_password_to_privileged_viewers(portal, owner, org):
    service = portal.portal_service
    user, password = service.add_pupil(owner, org.id, "p1@x.y", "Pat", "Pupil")

    assert service.get_profile(owner, user.id).default_password == password
    assert service.get_profile(user, user.id).default_password is None

    portal.db.credentials.change_password("p1@x.y", "chosen-password")
    assert service.get_profile(owner, user.id).default_password is None


def test_pupils_cannot_read_peer_profiles(portal, owner, org, teacher, pupil):
    service = portal.portal_service
    peer, password = service.add_pupil(owner, org.id, "p2@x.y", "Sam", "Pupil", "7B", 0)

    with pytest.raises(UnauthorisedError):
        service.get_profile(pupil, peer.id)
    assert service.get_profile(pupil, pupil.id).default_password is None

    assert service.get_profile(teacher, peer.id).default_password == password
    assert service.get_profile(owner, peer.id).default_password == password
    assert service.get_profile(owner, teacher.id).default_password is not None


def test_delete_pupil_refunds_credit(portal, db, owner, org, pupil):
    service = portal.portal_service
    ctx = service.login("p1@x.y", db.credentials.default_password("p1@x.y"))
    assert db.orgs.fetch(org.id).credits == 2

    service.delete_user(owner, pupil.id)

    assert db.orgs.fetch(org.id).credits == 3
    assert pupil.id not in db.orgs.fetch(org.id).pupils
    assert db.users.fetch(pupil.id) is None
    assert db.credentials.fetch("p1@x.y") is None
    with pytest.raises(UnauthenticatedError):
        service.authenticate(str(ctx.token))


def test_delete_user_rules(portal, owner, org, teacher, pupil):
    service = portal.portal_service
    with pytest.raises(UnauthorisedError):
        service.delete_user(pupil, teacher.id)
    with pytest.raises(UnauthorisedError):
        service.delete_user(owner, owner.id)
    service.delete_user(teacher, pupil.id)
    with pytest.raises(NotFoundError):
        service.delete_user(owner, pupil.id)


def test_delete_unreadable_user_scans_stores(portal, db, owner, org, pupil):
    db.users._file_for(pupil.id.bytes).write_text("{}", encoding="utf-8")

    listing = portal.portal_service.list_accounts(owner)
    assert listing.invalid == [pupil.id]

    portal.portal_service.delete_user(owner, pupil.id)

    assert not db.users.contains_key(pupil.id)
    assert db.credentials.fetch("p1@x.y") is None
    updated = db.orgs.fetch(org.id)
    assert pupil.id not in updated.pupils
    assert updated.credits == 3


def test_list_accounts_ordered_and_searchable(portal, owner, org, teacher, pupil):
    service = portal.portal_service
    admin, _ = service.add_admin(owner, "ad@x.y", "Ada", "Admin")

    listing = service.list_accounts(owner)
    assert [u.role.kind for u in listing.users] == ["owner", "admin", "teacher", "pupil"]
    assert listing.invalid == []

    assert [u.id for u in service.list_accounts(owner, "tina").users] == [teacher.id]
    assert [u.id for u in service.list_accounts(owner, "P1@X").users] == [pupil.id]

    with pytest.raises(UnauthorisedError):
        service.list_accounts(teacher)


def test_set_notifications(portal, owner, teacher, pupil):
    service = portal.portal_service
    assert service.set_notifications(teacher, teacher.id, False).notifications is False
    assert service.set_notifications(owner, teacher.id, True).notifications is True
    with pytest.raises(UnauthorisedError):
        service.set_notifications(pupil, teacher.id, False)


def test_delete_org_cascades(portal, db, owner, org, teacher, pupil):
    sections = portal.section_service
    section = sections.create_section(pupil, pupil.id, 0, 0)
    sections.set_state(pupil, section.id, "in_review")
    sections.set_state(teacher, section.id, "completed")
    sections.set_outstanding(teacher, section.id, True)
    portal.assets.section_dir(section.id).mkdir(parents=True, exist_ok=True)

    portal.portal_service.delete_org(owner, org.id)

    assert db.orgs.fetch(org.id) is None
    assert db.users.fetch(pupil.id) is None
    assert db.users.fetch(teacher.id) is None
    assert db.credentials.fetch("p1@x.y") is None
    assert db.credentials.fetch("t@x.y") is None
    assert db.sections.fetch(section.id) is None
    assert not portal.assets.section_dir(section.id).exists()
    assert list(db.outstanding.keys()) == []


def test_purge_requires_password(portal, db, owner, org, pupil):
    service = portal.portal_service
    with pytest.raises(UnauthorisedError):
        service.purge_data(owner, "wrong", delete_pupils=True)
    assert db.users.fetch(pupil.id) is not None

    result = service.purge_data(owner, OWNER_PASSWORD, delete_pupils=True, reset_credits=True)
    assert result.pupils_deleted == 1
    assert db.users.fetch(pupil.id) is None
    assert db.orgs.fetch(org.id).credits == 0

    result = service.purge_data(owner, OWNER_PASSWORD, delete_orgs=True)
    assert result.orgs_deleted == 1
    assert list(db.orgs.keys()) == []


def test_delete_org_is_not_undone_by_a_held_guard(portal, db, owner, org):
    service = portal.portal_service
    done = threading.Event()

    def delete():
        service.delete_org(owner, org.id)
        done.set()

    guard = db.orgs.write_lock(org.id)
    thread = threading.Thread(target=delete)
    thread.start()
    assert not done.wait(0.1)

    guard.mutable().credits += 1
    guard.release()
    thread.join(timeout=5)

    assert done.is_set()
    assert db.orgs.fetch(org.id) is None
