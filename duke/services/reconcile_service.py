"""
Repair pass over the stores.

Follow-up writes after a section or user mutation are best effort, so the
derived data can drift: an org's unreviewed queue, the outstanding index,
pupil slots pointing at deleted sections, sections no pupil references,
asset directories with no section. This pass rebuilds all of them from the
section and user records.
"""

from dataclasses import dataclass
from typing import Dict, List, Set
from uuid import UUID

from ..models.section import OutstandingEntry, Section
from ..models.user import PupilRole
from ..stores.database import Database
from ..utils.exceptions import StoreError
from ..utils.logger import get_logger
from .asset_service import AssetService

logger = get_logger(__name__)


@dataclass
class ReconcileReport:
    orphan_sections: int = 0
    dangling_slots: int = 0
    orgs_repaired: int = 0
    outstanding_added: int = 0
    outstanding_removed: int = 0
    orphan_asset_dirs: int = 0

    @property
    def changed(self) -> bool:
        return any(vars(self).values())


class ReconcileService:
    def __init__(self, db: Database, assets: AssetService):
        self.db = db
        self.assets = assets

    def run(self) -> ReconcileReport:
        report = ReconcileReport()
        steps = (
            self._remove_orphan_sections,
            self._clear_dangling_slots,
            self._rebuild_unreviewed,
            self._rebuild_outstanding,
            self._remove_orphan_assets,
        )
        for step in steps:
            try:
                step(report)
            except StoreError as e:
                logger.error("Reconcile step failed", step=step.__name__, error=str(e))
        if report.changed:
            logger.info("Reconcile repaired stores", **vars(report))
        return report

    def _remove_section(self, section_id: UUID) -> None:
        self.db.sections.remove_silent(section_id)
        self.db.outstanding.remove_silent(section_id)
        self.assets.remove_dir(section_id)

    def _remove_orphan_sections(self, report: ReconcileReport) -> None:
        """Drop sections not referenced by their owner's matching slot."""
        for section_id, section in list(self.db.sections.items()):
            try:
                guard = self.db.users.write_lock(section.user_id)
            except StoreError:
                # Owner unreadable; leave it for an explicit delete
                continue
            if guard is None:
                self._remove_section(section_id)
                report.orphan_sections += 1
                continue
            with guard:
                role = guard.value.role
                referenced = (
                    isinstance(role, PupilRole)
                    and role.sections[section.section_index] == section_id
                )
                if not referenced:
                    self._remove_section(section_id)
                    report.orphan_sections += 1

    def _clear_dangling_slots(self, report: ReconcileReport) -> None:
        def clear(guard) -> None:
            role = guard.value.role
            if not isinstance(role, PupilRole):
                return
            for slot, section_id in enumerate(role.sections):
                if section_id is not None and not self.db.sections.contains_key(section_id):
                    guard.mutable().role.sections[slot] = None
                    report.dangling_slots += 1

        self.db.users.for_each_write(clear)

    def _in_review_for(self, pupil_ids: List[UUID]) -> List[UUID]:
        in_review = []
        for pupil_id in pupil_ids:
            try:
                pupil = self.db.users.fetch(pupil_id)
            except StoreError:
                continue
            if pupil is None or not isinstance(pupil.role, PupilRole):
                continue
            for section_id in pupil.role.sections:
                if section_id is None:
                    continue
                try:
                    section = self.db.sections.fetch(section_id)
                except StoreError:
                    continue
                if section is not None and section.is_in_review:
                    in_review.append(section_id)
        return in_review

    def _rebuild_unreviewed(self, report: ReconcileReport) -> None:
        def rebuild(guard) -> None:
            org = guard.value
            expected = self._in_review_for(org.pupils)
            expected_set = set(expected)
            if set(org.unreviewed_sections) == expected_set and len(org.unreviewed_sections) == len(expected_set):
                return
            # Keep queue order for entries that stay
            kept = [s for s in dict.fromkeys(org.unreviewed_sections) if s in expected_set]
            added = [s for s in expected if s not in set(kept)]
            guard.mutable().unreviewed_sections = kept + added
            report.orgs_repaired += 1

        self.db.orgs.for_each_write(rebuild)

    def _rebuild_outstanding(self, report: ReconcileReport) -> None:
        flagged: Dict[UUID, Section] = {
            section_id: section
            for section_id, section in self.db.sections.items()
            if section.outstanding
        }
        indexed: Set[UUID] = set(self.db.outstanding.keys())

        for section_id in indexed - set(flagged):
            self.db.outstanding.remove_silent(section_id)
            report.outstanding_removed += 1
        for section_id in set(flagged) - indexed:
            self.db.outstanding.insert(section_id, OutstandingEntry(marked_at=self.db.clock()))
            report.outstanding_added += 1

    def _remove_orphan_assets(self, report: ReconcileReport) -> None:
        for section_id in self.assets.section_ids():
            if not self.db.sections.contains_key(section_id):
                if self.assets.remove_dir(section_id):
                    report.orphan_asset_dirs += 1
