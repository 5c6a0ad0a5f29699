"""Section instance and state models"""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from typing_extensions import Annotated


class InProgress(BaseModel):
    kind: Literal["in_progress"] = "in_progress"


class Rejected(BaseModel):
    kind: Literal["rejected"] = "rejected"
    feedback: str


class InReview(BaseModel):
    kind: Literal["in_review"] = "in_review"
    submitted_at: datetime


class Completed(BaseModel):
    kind: Literal["completed"] = "completed"


SectionState = Annotated[
    Union[InProgress, Rejected, InReview, Completed],
    Field(discriminator="kind"),
]

STATE_KINDS = ("in_progress", "rejected", "in_review", "completed")

STATE_LABELS = {
    "in_progress": "In Progress",
    "rejected": "Rejected",
    "in_review": "In Review",
    "completed": "Completed",
}


class Section(BaseModel):
    """A pupil's instance of one slot of their award."""
    id: UUID = Field(default_factory=uuid4)
    section_index: int = Field(ge=0, le=5)
    award_index: int = Field(ge=0)
    activity_index: int = Field(ge=0)
    user_id: UUID
    plan: str = ""
    reflection: str = ""
    state: SectionState = Field(default_factory=InProgress)
    outstanding: bool = False

    @property
    def is_in_review(self) -> bool:
        return isinstance(self.state, InReview)

    @property
    def is_completed(self) -> bool:
        return isinstance(self.state, Completed)

    @property
    def state_label(self) -> str:
        return STATE_LABELS[self.state.kind]


class OutstandingEntry(BaseModel):
    """Value stored in the outstanding index; the key carries the section id."""
    marked_at: datetime
