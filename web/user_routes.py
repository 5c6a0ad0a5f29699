"""Account routes: listing, profiles, deletion and notification settings."""

from typing import Any, Dict, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Form, status

from duke.app import DukePortal
from duke.models.user import User

from .auth_deps import get_current_user, get_portal
from .models import CreatedAccount, UserPublic, user_to_public

router = APIRouter(tags=["users"])


@router.get("/accounts")
def list_accounts(
    q: Optional[str] = None,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, Any]:
    """Accounts ordered by role, plus ids of records that could not be read."""
    listing = portal.portal_service.list_accounts(current_user, q)
    return {
        "users": [user_to_public(u).model_dump() for u in listing.users],
        "invalid": [str(user_id) for user_id in listing.invalid],
    }


@router.post("/accounts/admins", response_model=CreatedAccount, status_code=status.HTTP_201_CREATED)
def add_admin(
    email: str = Form(...),
    forename: str = Form(...),
    surname: str = Form(...),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> CreatedAccount:
    user, password = portal.portal_service.add_admin(current_user, email, forename, surname)
    return CreatedAccount(user=user_to_public(user), password=password)


@router.get("/user/{user_id}")
def get_profile(
    user_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, Any]:
    profile = portal.portal_service.get_profile(current_user, user_id)
    return {
        "user": user_to_public(profile.user).model_dump(),
        "default_password": profile.default_password,
    }


@router.delete("/user/{user_id}")
def delete_user(
    user_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, str]:
    portal.portal_service.delete_user(current_user, user_id)
    return {"status": "success"}


@router.post("/user/{user_id}/notifications", response_model=UserPublic)
def set_notifications(
    user_id: UUID,
    enabled: bool = Form(...),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> UserPublic:
    return user_to_public(portal.portal_service.set_notifications(current_user, user_id, enabled))


@router.post("/user/{user_id}/password_reset", status_code=status.HTTP_202_ACCEPTED)
def send_password_reset(
    user_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, str]:
    portal.portal_service.send_password_reset(current_user, user_id)
    return {"status": "sent"}
