"""Organisation data model"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class Organisation(BaseModel):
    id: UUID = Field(default_factory=uuid4)
    name: str
    admin: Optional[UUID] = None
    teachers: List[UUID] = Field(default_factory=list)
    pupils: List[UUID] = Field(default_factory=list)
    unreviewed_sections: List[UUID] = Field(default_factory=list)
    credits: int = Field(default=0, ge=0)
    last_notification: Optional[datetime] = None

    def add_unreviewed(self, section_id: UUID) -> bool:
        """Queue a section for review once. Returns True if it was added."""
        if section_id in self.unreviewed_sections:
            return False
        self.unreviewed_sections.append(section_id)
        return True

    def remove_unreviewed(self, section_id: UUID) -> bool:
        before = len(self.unreviewed_sections)
        self.unreviewed_sections = [s for s in self.unreviewed_sections if s != section_id]
        return len(self.unreviewed_sections) != before

    def remove_member(self, user_id: UUID) -> bool:
        """Drop every back-reference to a user. Returns True if any existed."""
        changed = False
        if self.admin == user_id:
            self.admin = None
            changed = True
        if user_id in self.teachers:
            self.teachers = [t for t in self.teachers if t != user_id]
            changed = True
        if user_id in self.pupils:
            self.pupils = [p for p in self.pupils if p != user_id]
            changed = True
        return changed
