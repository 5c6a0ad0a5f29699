"""API response models for the portal"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel

from duke.models.section import Section
from duke.models.user import User


class UserPublic(BaseModel):
    id: str
    email: str
    forename: str
    surname: str
    role: str
    role_title: str
    org_id: Optional[str] = None
    notifications: bool
    class_label: Optional[str] = None
    award_index: Optional[int] = None


class SectionPublic(BaseModel):
    id: str
    user_id: str
    section_index: int
    award_index: int
    activity_index: int
    state: str
    state_label: str
    feedback: Optional[str] = None
    submitted_at: Optional[datetime] = None
    plan: str
    reflection: str
    outstanding: bool


class OrgPublic(BaseModel):
    id: str
    name: str
    credits: int
    has_admin: bool
    teachers: int
    pupils: int
    unreviewed: int


class OrgDetail(OrgPublic):
    admin: Optional[UserPublic] = None
    teacher_accounts: List[UserPublic]
    pupil_accounts: List[UserPublic]


class CreatedAccount(BaseModel):
    user: UserPublic
    password: str


def user_to_public(user: User) -> UserPublic:
    role = user.role
    return UserPublic(
        id=str(user.id),
        email=user.email,
        forename=user.forename,
        surname=user.surname,
        role=role.kind,
        role_title=user.role_title,
        org_id=str(user.org_id) if user.org_id else None,
        notifications=user.notifications,
        class_label=getattr(role, "class_label", None),
        award_index=getattr(role, "award_index", None),
    )


def section_to_public(section: Section) -> SectionPublic:
    return SectionPublic(
        id=str(section.id),
        user_id=str(section.user_id),
        section_index=section.section_index,
        award_index=section.award_index,
        activity_index=section.activity_index,
        state=section.state.kind,
        state_label=section.state_label,
        feedback=getattr(section.state, "feedback", None),
        submitted_at=getattr(section.state, "submitted_at", None),
        plan=section.plan,
        reflection=section.reflection,
        outstanding=section.outstanding,
    )
