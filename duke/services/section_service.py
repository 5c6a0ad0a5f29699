"""
Section lifecycle: activity selection, review state machine, evidence.

State machine (initial InProgress):

    in_progress --submit--> in_review
    in_review   --approve--> completed          reviewer only
    in_review   --reject--> rejected(feedback)  reviewer only
    in_review   --retract--> in_progress
    rejected    --resubmit--> in_review
    completed   --reopen--> in_review           reviewer only

Each section mutation runs under that section's write lock. Follow-up
writes to other records (the org's unreviewed queue, the outstanding index,
the pupil's slots, asset directories) are best effort: failures are logged
and later repaired by the reconcile sweep.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, List, Optional, Tuple
from uuid import UUID

from ..auth.permissions import can_review, is_global
from ..core.clock import Clock, utc_now
from ..models.catalogue import Catalogue
from ..models.section import (
    STATE_KINDS,
    Completed,
    InProgress,
    InReview,
    OutstandingEntry,
    Rejected,
    Section,
)
from ..models.user import SECTION_SLOTS, PupilRole, User, is_pupil
from ..stores.database import Database
from ..utils.exceptions import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    StoreError,
    UnauthorisedError,
)
from ..utils.logger import get_logger
from .asset_service import AssetService

logger = get_logger(__name__)

TRANSITIONS = {
    ("in_progress", "in_review"),
    ("in_review", "completed"),
    ("in_review", "rejected"),
    ("in_review", "in_progress"),
    ("rejected", "in_review"),
    ("completed", "in_review"),
}


def is_restricted(source: str, target: str) -> bool:
    """Transitions a pupil may not drive themselves."""
    if target == "completed" or source == "completed":
        return True
    # Resubmitting is the only way out of rejected a pupil has
    return source == "rejected" and target != "in_review"


@dataclass
class Upload:
    filename: str
    stream: BinaryIO


@dataclass
class SectionUpdate:
    plan: Optional[str] = None
    reflection: Optional[str] = None
    uploads: List[Upload] = field(default_factory=list)
    delete_names: List[str] = field(default_factory=list)


class SectionService:
    def __init__(self, db: Database, catalogue: Catalogue, assets: AssetService, clock: Clock = utc_now):
        self.db = db
        self.catalogue = catalogue
        self.assets = assets
        self.clock = clock

    # -- access --------------------------------------------------------

    def _fetch_user(self, user_id: UUID) -> Optional[User]:
        try:
            return self.db.users.fetch(user_id)
        except StoreError as e:
            logger.warning("Failed to read user", user_id=str(user_id), error=str(e))
            return None

    def _is_reviewer(self, actor: User, pupil: Optional[User]) -> bool:
        if pupil is None:
            # Orphan section: only global roles may act on it
            return is_global(actor.role)
        return can_review(actor, pupil)

    def _require_access(self, actor: User, section: Section) -> Tuple[Optional[User], bool]:
        """Return (pupil, actor_is_owner) or raise UnauthorisedError."""
        pupil = self._fetch_user(section.user_id)
        if actor.id == section.user_id:
            return pupil, True
        if self._is_reviewer(actor, pupil):
            return pupil, False
        raise UnauthorisedError("You cannot access this section")

    def get_section(self, actor: User, section_id: UUID) -> Section:
        section = self.db.sections.fetch(section_id)
        if section is None:
            raise NotFoundError("Section not found")
        self._require_access(actor, section)
        return section

    def pupil_sections(self, actor: User, pupil_id: UUID) -> List[Optional[Section]]:
        """The pupil's six slots, None where no activity has been chosen."""
        pupil = self.db.users.fetch(pupil_id)
        if pupil is None:
            raise NotFoundError("User not found")
        if not isinstance(pupil.role, PupilRole):
            raise InvalidInputError("Only pupils have sections", field="user_id")
        if actor.id != pupil.id and not can_review(actor, pupil):
            raise UnauthorisedError("You cannot view this pupil's sections")
        slots: List[Optional[Section]] = []
        for section_id in pupil.role.sections:
            section = None
            if section_id is not None:
                try:
                    section = self.db.sections.fetch(section_id)
                except StoreError as e:
                    logger.warning("Failed to read section", section_id=str(section_id), error=str(e))
            slots.append(section)
        return slots

    # -- create / delete ---------------------------------------------

    def create_section(self, actor: User, pupil_id: UUID, slot: int, activity_index: int) -> Section:
        """Choose an activity for one of the pupil's six slots."""
        pupil = self.db.users.fetch(pupil_id)
        if pupil is None:
            raise NotFoundError("User not found")
        if not isinstance(pupil.role, PupilRole):
            raise InvalidInputError("Only pupils have sections", field="user_id")
        if actor.id != pupil.id and not can_review(actor, pupil):
            raise UnauthorisedError("You cannot choose activities for this pupil")
        if not 0 <= slot < SECTION_SLOTS:
            raise InvalidInputError("Invalid section index", field="section_index")
        award_index = pupil.role.award_index
        if self.catalogue.activity(award_index, slot, activity_index) is None:
            raise InvalidInputError("Invalid activity", field="activity_index")

        guard = self.db.users.write_lock(pupil_id)
        if guard is None:
            raise NotFoundError("User not found")
        with guard:
            role = guard.value.role
            if role.sections[slot] is not None:
                raise ConflictError("An activity has already been chosen for this section")
            section = Section(
                section_index=slot,
                award_index=role.award_index,
                activity_index=activity_index,
                user_id=pupil_id,
            )
            self.db.sections.insert(section.id, section)
            guard.mutable().role.sections[slot] = section.id

        logger.info(
            "Section created",
            section_id=str(section.id),
            user_id=str(pupil_id),
            section_index=slot,
            activity_index=activity_index,
        )
        return section

    def delete_section(self, actor: User, section_id: UUID) -> None:
        section = self.db.sections.fetch(section_id)
        if section is None:
            raise NotFoundError("Section not found")
        pupil, is_owner = self._require_access(actor, section)
        if is_owner and section.is_completed and not self._is_reviewer(actor, pupil):
            raise UnauthorisedError("Completed sections can only be removed by a reviewer")

        if not self.db.sections.remove_silent(section_id):
            raise NotFoundError("Section not found")
        logger.info("Section deleted", section_id=str(section_id), user_id=str(section.user_id))

        self._clear_slot(section)
        if pupil is not None and pupil.org_id is not None:
            self._remove_unreviewed(pupil.org_id, section_id)
        self._set_outstanding_index(section_id, False)
        self.assets.remove_dir(section_id)

    def _clear_slot(self, section: Section) -> None:
        try:
            guard = self.db.users.write_lock(section.user_id)
            if guard is None:
                return
            with guard:
                role = guard.value.role
                if isinstance(role, PupilRole) and role.sections[section.section_index] == section.id:
                    guard.mutable().role.sections[section.section_index] = None
        except StoreError as e:
            logger.warning("Failed to clear pupil section slot", section_id=str(section.id), error=str(e))

    # -- cross-record follow-ups -------------------------------------

    def _remove_unreviewed(self, org_id: UUID, section_id: UUID) -> None:
        try:
            guard = self.db.orgs.write_lock(org_id)
            if guard is None:
                return
            with guard:
                if section_id in guard.value.unreviewed_sections:
                    guard.mutable().remove_unreviewed(section_id)
        except StoreError as e:
            logger.warning("Failed to update org unreviewed sections", org_id=str(org_id), error=str(e))

    def _add_unreviewed(self, org_id: UUID, section_id: UUID) -> None:
        try:
            guard = self.db.orgs.write_lock(org_id)
            if guard is None:
                return
            with guard:
                if section_id not in guard.value.unreviewed_sections:
                    guard.mutable().add_unreviewed(section_id)
        except StoreError as e:
            logger.warning("Failed to update org unreviewed sections", org_id=str(org_id), error=str(e))

    def _set_outstanding_index(self, section_id: UUID, outstanding: bool) -> None:
        try:
            if outstanding:
                if not self.db.outstanding.contains_key(section_id):
                    self.db.outstanding.insert(section_id, OutstandingEntry(marked_at=self.clock()))
            else:
                self.db.outstanding.remove_silent(section_id)
        except StoreError as e:
            logger.warning("Failed to update outstanding index", section_id=str(section_id), error=str(e))

    # -- state machine -------------------------------------------------

    def set_state(self, actor: User, section_id: UUID, target: str, feedback: Optional[str] = None) -> Section:
        if target not in STATE_KINDS:
            raise InvalidInputError("Bad status", field="state")

        guard = self.db.sections.write_lock(section_id)
        if guard is None:
            raise NotFoundError("Section not found")
        with guard:
            section = guard.value
            pupil, _ = self._require_access(actor, section)
            source = section.state.kind
            if source == target:
                return section
            if is_pupil(actor.role) and is_restricted(source, target):
                raise UnauthorisedError("Status change denied: unauthorised")
            if (source, target) not in TRANSITIONS:
                raise InvalidInputError(f"Cannot move a section from {source} to {target}", field="state")

            if target == "rejected":
                feedback = (feedback or "").strip()
                if not feedback:
                    raise InvalidInputError("Feedback is required to reject a section", field="feedback")
                new_state = Rejected(feedback=feedback)
            elif target == "in_review":
                new_state = InReview(submitted_at=self.clock())
            elif target == "completed":
                new_state = Completed()
            else:
                new_state = InProgress()

            section = guard.mutable()
            section.state = new_state
            if target != "completed":
                section.outstanding = False

        logger.info(
            "Section state changed",
            section_id=str(section_id),
            actor_id=str(actor.id),
            source=source,
            target=target,
        )

        org_id = pupil.org_id if pupil is not None else None
        if org_id is not None:
            if source == "in_review":
                self._remove_unreviewed(org_id, section_id)
            if target == "in_review":
                self._add_unreviewed(org_id, section_id)
        if target != "completed":
            self._set_outstanding_index(section_id, False)
        return section

    def set_outstanding(self, actor: User, section_id: UUID, outstanding: bool) -> Section:
        guard = self.db.sections.write_lock(section_id)
        if guard is None:
            raise NotFoundError("Section not found")
        with guard:
            pupil = self._fetch_user(guard.value.user_id)
            if not self._is_reviewer(actor, pupil):
                raise UnauthorisedError("Only reviewers can mark sections outstanding")
            if not guard.value.is_completed:
                raise InvalidInputError("Only completed sections can be outstanding", field="outstanding")
            if guard.value.outstanding != outstanding:
                guard.mutable().outstanding = outstanding
            section = guard.value

        self._set_outstanding_index(section_id, outstanding)
        logger.info("Section outstanding flag set", section_id=str(section_id), outstanding=outstanding)
        return section

    # -- content -------------------------------------------------------

    def update_section(self, actor: User, section_id: UUID, update: SectionUpdate) -> Tuple[Section, List[str]]:
        """Apply text edits, uploads and deletions. Returns the section and saved file names."""
        guard = self.db.sections.write_lock(section_id)
        if guard is None:
            raise NotFoundError("Section not found")
        saved: List[str] = []
        with guard:
            pupil, is_owner = self._require_access(actor, guard.value)
            if is_owner and guard.value.is_completed and not self._is_reviewer(actor, pupil):
                raise UnauthorisedError("Completed sections cannot be edited")

            if update.plan is not None and update.plan != guard.value.plan:
                guard.mutable().plan = update.plan
            if update.reflection is not None and update.reflection != guard.value.reflection:
                guard.mutable().reflection = update.reflection

            for name in update.delete_names:
                self.assets.delete(section_id, name)
            for upload in update.uploads:
                saved.append(self.assets.save(section_id, upload.filename, upload.stream))
            section = guard.value
        return section, saved

    def list_assets(self, actor: User, section_id: UUID) -> List[str]:
        self.get_section(actor, section_id)
        return self.assets.list_assets(section_id)

    def asset_path(self, actor: User, section_id: UUID, filename: str) -> Path:
        self.get_section(actor, section_id)
        path = self.assets.path(section_id, filename)
        if path is None:
            raise NotFoundError("File not found")
        return path
