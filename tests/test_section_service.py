import io

import pytest

from duke.models.section import Completed, InReview, Rejected
from duke.services.section_service import SectionUpdate, Upload
from duke.utils.exceptions import ConflictError, InvalidInputError, NotFoundError, UnauthorisedError


def upload(name: str, data: bytes = b"data") -> Upload:
    return Upload(filename=name, stream=io.BytesIO(data))


def assert_unreviewed_consistent(db, org_id):
    """Org queue matches the set of its pupils' in-review sections."""
    org = db.orgs.fetch(org_id)
    expected = set()
    for pupil_id in org.pupils:
        for section_id in db.users.fetch(pupil_id).role.sections:
            if section_id is not None and db.sections.fetch(section_id).is_in_review:
                expected.add(section_id)
    assert len(org.unreviewed_sections) == len(set(org.unreviewed_sections))
    assert set(org.unreviewed_sections) == expected


def assert_outstanding_consistent(db):
    indexed = set(db.outstanding.keys())
    flagged = {s.id for s in db.sections.values() if s.outstanding}
    assert indexed == flagged
    for section_id in indexed:
        assert db.sections.fetch(section_id).is_completed


@pytest.fixture
def sections(portal):
    return portal.section_service


@pytest.fixture
def submitted(portal, db, sections, pupil, clock):
    """Slot 2, activity 1, one uploaded photo, submitted for review."""
    section = sections.create_section(pupil, pupil.id, 2, 1)
    sections.update_section(pupil, section.id, SectionUpdate(uploads=[upload("photo.jpg")]))
    return sections.set_state(pupil, section.id, "in_review")


def test_submit_queues_section(portal, db, org, pupil, submitted, clock, settings):
    assert isinstance(submitted.state, InReview)
    assert submitted.state.submitted_at == clock()
    assert db.users.fetch(pupil.id).role.sections[2] == submitted.id
    assert db.orgs.fetch(org.id).unreviewed_sections == [submitted.id]
    assert (settings.fs_root / "sections" / str(submitted.id) / "photo.jpg").is_file()
    assert_unreviewed_consistent(db, org.id)


def test_reject_and_resubmit(portal, db, sections, org, teacher, pupil, submitted, clock):
    rejected = sections.set_state(teacher, submitted.id, "rejected", "please add a second image")
    assert rejected.state == Rejected(feedback="please add a second image")
    assert db.orgs.fetch(org.id).unreviewed_sections == []

    sections.update_section(pupil, submitted.id, SectionUpdate(uploads=[upload("photo2.jpg")]))
    clock.advance(minutes=5)
    resubmitted = sections.set_state(pupil, submitted.id, "in_review")
    assert resubmitted.state == InReview(submitted_at=clock())
    assert db.orgs.fetch(org.id).unreviewed_sections == [submitted.id]
    assert_unreviewed_consistent(db, org.id)


def test_reject_requires_feedback(sections, teacher, submitted):
    with pytest.raises(InvalidInputError):
        sections.set_state(teacher, submitted.id, "rejected", "   ")
    assert sections.get_section(teacher, submitted.id).is_in_review


def test_approve_outstanding_and_reopen(portal, db, sections, org, teacher, submitted, clock):
    approved = sections.set_state(teacher, submitted.id, "completed")
    assert approved.state == Completed()
    assert db.orgs.fetch(org.id).unreviewed_sections == []

    sections.set_outstanding(teacher, submitted.id, True)
    assert list(db.outstanding.keys()) == [submitted.id]
    assert_outstanding_consistent(db)

    clock.advance(hours=1)
    reopened = sections.set_state(teacher, submitted.id, "in_review")
    assert reopened.state == InReview(submitted_at=clock())
    assert reopened.outstanding is False
    assert list(db.outstanding.keys()) == []
    assert db.orgs.fetch(org.id).unreviewed_sections == [submitted.id]
    assert_outstanding_consistent(db)


def test_pupil_restrictions(sections, teacher, pupil, submitted):
    with pytest.raises(UnauthorisedError):
        sections.set_state(pupil, submitted.id, "completed")

    sections.set_state(teacher, submitted.id, "completed")
    with pytest.raises(UnauthorisedError):
        sections.set_state(pupil, submitted.id, "in_progress")
    with pytest.raises(UnauthorisedError):
        sections.delete_section(pupil, submitted.id)
    with pytest.raises(UnauthorisedError):
        sections.update_section(pupil, submitted.id, SectionUpdate(plan="changed"))
    with pytest.raises(UnauthorisedError):
        sections.set_outstanding(pupil, submitted.id, True)

    section = sections.get_section(pupil, submitted.id)
    assert section.is_completed
    assert section.plan == ""


def test_pupil_can_retract(db, sections, org, pupil, submitted):
    retracted = sections.set_state(pupil, submitted.id, "in_progress")
    assert retracted.state.kind == "in_progress"
    assert db.orgs.fetch(org.id).unreviewed_sections == []


def test_invalid_transitions(sections, teacher, pupil):
    section = sections.create_section(pupil, pupil.id, 0, 0)
    with pytest.raises(InvalidInputError):
        sections.set_state(teacher, section.id, "completed")
    with pytest.raises(InvalidInputError):
        sections.set_state(teacher, section.id, "finished")
    # Re-setting the current state is a no-op
    assert sections.set_state(pupil, section.id, "in_progress").state.kind == "in_progress"


def test_outstanding_requires_completed(sections, teacher, submitted):
    with pytest.raises(InvalidInputError):
        sections.set_outstanding(teacher, submitted.id, True)


def test_create_section_validation(sections, owner, portal, org, teacher, pupil):
    sections.create_section(pupil, pupil.id, 0, 0)
    with pytest.raises(ConflictError):
        sections.create_section(pupil, pupil.id, 0, 1)
    with pytest.raises(InvalidInputError):
        sections.create_section(pupil, pupil.id, 6, 0)
    # First Aid has a single activity
    with pytest.raises(InvalidInputError):
        sections.create_section(pupil, pupil.id, 3, 1)
    with pytest.raises(InvalidInputError):
        sections.create_section(teacher, teacher.id, 1, 0)

    other, _ = portal.portal_service.add_pupil(owner, org.id, "p2@x.y", "Pam", "Other")
    with pytest.raises(UnauthorisedError):
        sections.create_section(other, pupil.id, 1, 0)

    # Reviewers may choose on a pupil's behalf
    assert sections.create_section(teacher, pupil.id, 1, 2).activity_index == 2


def test_delete_section_leaves_no_references(portal, db, sections, org, teacher, pupil, submitted):
    sections.set_state(teacher, submitted.id, "completed")
    sections.set_outstanding(teacher, submitted.id, True)
    sections.set_state(teacher, submitted.id, "in_review")

    sections.delete_section(teacher, submitted.id)

    assert db.sections.fetch(submitted.id) is None
    assert db.users.fetch(pupil.id).role.sections == [None] * 6
    assert submitted.id not in db.orgs.fetch(org.id).unreviewed_sections
    assert not db.outstanding.contains_key(submitted.id)
    assert not portal.assets.section_dir(submitted.id).exists()
    with pytest.raises(NotFoundError):
        sections.delete_section(teacher, submitted.id)


def test_pupil_deletes_in_progress_section(db, sections, pupil):
    section = sections.create_section(pupil, pupil.id, 2, 0)
    sections.delete_section(pupil, section.id)
    assert db.users.fetch(pupil.id).role.sections[2] is None


def test_upload_name_collisions(portal, sections, pupil):
    section = sections.create_section(pupil, pupil.id, 0, 0)
    for _ in range(3):
        sections.update_section(pupil, section.id, SectionUpdate(uploads=[upload("a.png")]))

    assert sections.list_assets(pupil, section.id) == ["a.png", "a0.png", "a1.png"]


def test_update_text_and_delete_files(sections, teacher, pupil):
    section = sections.create_section(pupil, pupil.id, 0, 0)
    update = SectionUpdate(plan="My plan", reflection="It went well", uploads=[upload("../../x.txt", b"hi")])
    updated, saved = sections.update_section(pupil, section.id, update)

    assert updated.plan == "My plan"
    assert updated.reflection == "It went well"
    assert saved == ["x.txt"]
    assert sections.asset_path(teacher, section.id, "x.txt").read_bytes() == b"hi"

    sections.update_section(pupil, section.id, SectionUpdate(delete_names=["x.txt"]))
    assert sections.list_assets(pupil, section.id) == []
    with pytest.raises(NotFoundError):
        sections.asset_path(pupil, section.id, "x.txt")


def test_other_pupils_cannot_read_sections(portal, owner, org, sections, pupil, submitted):
    other, _ = portal.portal_service.add_pupil(owner, org.id, "p2@x.y", "Pam", "Other")
    with pytest.raises(UnauthorisedError):
        sections.get_section(other, submitted.id)
    with pytest.raises(UnauthorisedError):
        sections.list_assets(other, submitted.id)


def test_pupil_sections_slots(sections, teacher, pupil):
    section = sections.create_section(pupil, pupil.id, 5, 3)
    slots = sections.pupil_sections(teacher, pupil.id)
    assert len(slots) == 6
    assert slots[5].id == section.id
    assert slots[:5] == [None] * 5
