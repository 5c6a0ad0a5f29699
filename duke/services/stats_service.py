"""Per-award activity statistics, computed on demand from the user and section stores."""

from typing import List

from pydantic import BaseModel

from ..auth.permissions import can_view_stats
from ..models.catalogue import Catalogue
from ..models.user import PupilRole, User
from ..stores.database import Database
from ..utils.exceptions import NotFoundError, StoreError, UnauthorisedError
from ..utils.logger import get_logger

logger = get_logger(__name__)


class ActivityStats(BaseModel):
    name: str
    chosen: int = 0
    completed: int = 0


class SectionStats(BaseModel):
    name: str
    activities: List[ActivityStats]


class AwardStats(BaseModel):
    award_index: int
    name: str
    pupils: int = 0
    sections: List[SectionStats]


class StatsService:
    def __init__(self, db: Database, catalogue: Catalogue):
        self.db = db
        self.catalogue = catalogue

    def statistics(self, actor: User, award_index: int) -> AwardStats:
        if not can_view_stats(actor):
            raise UnauthorisedError("You cannot view statistics")
        award = self.catalogue.award(award_index)
        if award is None:
            raise NotFoundError("No such award")

        stats = AwardStats(
            award_index=award_index,
            name=award.name,
            sections=[
                SectionStats(
                    name=info.name,
                    activities=[ActivityStats(name=a.name) for a in info.activities],
                )
                for info in award.sections
            ],
        )

        for user in self.db.users.values():
            role = user.role
            if not isinstance(role, PupilRole) or role.award_index != award_index:
                continue
            stats.pupils += 1
            for slot, section_id in enumerate(role.sections):
                if section_id is None:
                    continue
                try:
                    section = self.db.sections.fetch(section_id)
                except StoreError as e:
                    logger.warning("Skipping unreadable section", section_id=str(section_id), error=str(e))
                    continue
                if section is None:
                    continue
                activities = stats.sections[slot].activities
                if not 0 <= section.activity_index < len(activities):
                    continue
                activities[section.activity_index].chosen += 1
                if section.is_completed:
                    activities[section.activity_index].completed += 1
        return stats
