"""Organisation routes: listing, credits, members and reviewer queues."""

from typing import Any, Dict, List
from uuid import UUID

from fastapi import APIRouter, Depends, Form, status

from duke.app import DukePortal
from duke.models.user import User

from .auth_deps import get_current_user, get_portal
from .models import CreatedAccount, OrgDetail, OrgPublic, SectionPublic, section_to_public, user_to_public

router = APIRouter(tags=["orgs"])


@router.get("/orgs", response_model=List[OrgPublic])
def list_orgs(
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> List[OrgPublic]:
    service = portal.portal_service
    return [OrgPublic(**service.org_summary(org)) for org in service.list_orgs(current_user)]


@router.post("/orgs", response_model=OrgPublic, status_code=status.HTTP_201_CREATED)
def create_org(
    name: str = Form(...),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> OrgPublic:
    service = portal.portal_service
    return OrgPublic(**service.org_summary(service.create_org(current_user, name)))


@router.get("/org/{org_id}", response_model=OrgDetail)
def get_org(
    org_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> OrgDetail:
    service = portal.portal_service
    org = service.get_org(current_user, org_id)
    members = service.org_members(current_user, org_id)
    return OrgDetail(
        **service.org_summary(org),
        admin=user_to_public(members.admin) if members.admin else None,
        teacher_accounts=[user_to_public(u) for u in members.teachers],
        pupil_accounts=[user_to_public(u) for u in members.pupils],
    )


@router.delete("/org/{org_id}")
def delete_org(
    org_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, str]:
    portal.portal_service.delete_org(current_user, org_id)
    return {"status": "success"}


@router.post("/org/{org_id}/credits", response_model=OrgPublic)
def add_credits(
    org_id: UUID,
    credits: int = Form(...),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> OrgPublic:
    service = portal.portal_service
    return OrgPublic(**service.org_summary(service.add_credits(current_user, org_id, credits)))


@router.post("/org/{org_id}/pupils", response_model=CreatedAccount, status_code=status.HTTP_201_CREATED)
def add_pupil(
    org_id: UUID,
    email: str = Form(...),
    forename: str = Form(...),
    surname: str = Form(...),
    class_label: str = Form(""),
    award: int = Form(0),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> CreatedAccount:
    user, password = portal.portal_service.add_pupil(
        current_user, org_id, email, forename, surname, class_label, award
    )
    return CreatedAccount(user=user_to_public(user), password=password)


@router.post("/org/{org_id}/teachers", response_model=CreatedAccount, status_code=status.HTTP_201_CREATED)
def add_teacher(
    org_id: UUID,
    email: str = Form(...),
    forename: str = Form(...),
    surname: str = Form(...),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> CreatedAccount:
    user, password = portal.portal_service.add_teacher(current_user, org_id, email, forename, surname)
    return CreatedAccount(user=user_to_public(user), password=password)


@router.post("/org/{org_id}/assign_admin")
def assign_admin(
    org_id: UUID,
    email: str = Form(...),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, Any]:
    """Email a single-use link that creates the organisation's admin account."""
    portal.portal_service.invite_org_admin(current_user, org_id, email)
    return {"status": "sent", "email": email}


@router.get("/org/{org_id}/unreviewed", response_model=List[SectionPublic])
def list_unreviewed(
    org_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> List[SectionPublic]:
    sections = portal.portal_service.list_unreviewed(current_user, org_id)
    return [section_to_public(s) for s in sections]
