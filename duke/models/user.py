"""User and role data models"""

from __future__ import annotations

from typing import List, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field
from typing_extensions import Annotated

SECTION_SLOTS = 6

UserId = UUID
OrgId = UUID
SectionId = UUID


class OwnerRole(BaseModel):
    kind: Literal["owner"] = "owner"


class AdminRole(BaseModel):
    kind: Literal["admin"] = "admin"


class OrgAdminRole(BaseModel):
    kind: Literal["org_admin"] = "org_admin"
    org_id: OrgId


class TeacherRole(BaseModel):
    kind: Literal["teacher"] = "teacher"
    org_id: OrgId


def _empty_slots() -> List[Optional[SectionId]]:
    return [None] * SECTION_SLOTS


class PupilRole(BaseModel):
    kind: Literal["pupil"] = "pupil"
    org_id: OrgId
    class_label: str = ""
    award_index: int = Field(ge=0)
    sections: List[Optional[SectionId]] = Field(
        default_factory=_empty_slots, min_length=SECTION_SLOTS, max_length=SECTION_SLOTS
    )


Role = Annotated[
    Union[OwnerRole, AdminRole, OrgAdminRole, TeacherRole, PupilRole],
    Field(discriminator="kind"),
]

ROLE_TITLES = {
    "owner": "Owner",
    "admin": "Global Administrator",
    "org_admin": "Organisation Administrator",
    "teacher": "Teacher",
    "pupil": "Pupil",
}


def role_org_id(role: Role) -> Optional[OrgId]:
    """The organisation a role is scoped to, if any."""
    return getattr(role, "org_id", None)


def is_pupil(role: Role) -> bool:
    return isinstance(role, PupilRole)


class User(BaseModel):
    """A portal account. The role is fixed for the life of the user."""
    id: UserId = Field(default_factory=uuid4)
    email: str
    forename: str
    surname: str
    notifications: bool = True
    role: Role

    @property
    def name(self) -> str:
        return f"{self.forename} {self.surname}"

    @property
    def org_id(self) -> Optional[OrgId]:
        return role_org_id(self.role)

    @property
    def role_title(self) -> str:
        return ROLE_TITLES[self.role.kind]
