"""Award catalogue: static award/section/activity definitions loaded at startup."""

from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..utils.exceptions import ConfigError
from .user import SECTION_SLOTS


class Activity(BaseModel):
    name: str
    subtitle: str = ""
    activity_url: str = ""


class SectionInfo(BaseModel):
    name: str
    subtitle: str = ""
    image_url: str = ""
    activities: List[Activity] = Field(min_length=1)


class Award(BaseModel):
    name: str
    short_name: str = ""
    image_url: str = ""
    sections: List[SectionInfo] = Field(min_length=SECTION_SLOTS, max_length=SECTION_SLOTS)


class Catalogue(BaseModel):
    awards: List[Award] = Field(default_factory=list)

    def award(self, award_index: int) -> Optional[Award]:
        if 0 <= award_index < len(self.awards):
            return self.awards[award_index]
        return None

    def has_award(self, award_index: int) -> bool:
        return self.award(award_index) is not None

    def activity(self, award_index: int, section_index: int, activity_index: int) -> Optional[Activity]:
        award = self.award(award_index)
        if award is None or not 0 <= section_index < len(award.sections):
            return None
        activities = award.sections[section_index].activities
        if 0 <= activity_index < len(activities):
            return activities[activity_index]
        return None


def load_catalogue(path: Path) -> Catalogue:
    """Load and validate the award catalogue YAML."""
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Award catalogue not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return Catalogue(**raw)
    except (yaml.YAMLError, ValidationError, TypeError) as e:
        raise ConfigError(f"Failed to load award catalogue from {path}: {e}")
