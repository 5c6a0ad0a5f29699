"""
Login, logout and the emailed link flows.

The session token travels in the "Auth" cookie; clients can also send it
as a Bearer token.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, Form, Request, Response, status
from fastapi.responses import JSONResponse

from duke.app import DukePortal
from duke.core.config import AUTH_COOKIE
from duke.models.user import ROLE_TITLES, User
from duke.stores.link_store import CreateUserIntent

from .auth_deps import get_current_user, get_portal, get_session_token
from .models import UserPublic, user_to_public

router = APIRouter(tags=["auth"])


def _set_session_cookie(response: Response, token: str, portal: DukePortal) -> None:
    """Attach the session token as an http-only cookie."""
    response.set_cookie(
        key=AUTH_COOKIE,
        value=token,
        max_age=portal.settings.auth.session_ttl_seconds,
        httponly=True,
        secure=portal.settings.server.secure_cookies,
        samesite="lax",
    )


@router.post("/login")
def login(
    email: str = Form(...),
    password: str = Form(...),
    portal: DukePortal = Depends(get_portal),
) -> Any:
    """
    Log in with email and password.

    Response:
        {"token": "<session token>", "user": {...}}
    """
    ctx = portal.portal_service.login(email, password)
    response = JSONResponse(
        content={"token": str(ctx.token), "user": user_to_public(ctx.user).model_dump(mode="json")}
    )
    _set_session_cookie(response, str(ctx.token), portal)
    return response


@router.post("/logout")
def logout(request: Request, portal: DukePortal = Depends(get_portal)) -> Any:
    """Log out the current session (idempotent)."""
    portal.portal_service.logout(get_session_token(request))
    response = JSONResponse({"status": "success"})
    response.delete_cookie(AUTH_COOKIE)
    return response


@router.get("/me", response_model=UserPublic)
def me(current_user: User = Depends(get_current_user)) -> UserPublic:
    return user_to_public(current_user)


@router.get("/user/create_account/{token}")
def describe_create_account(token: str, portal: DukePortal = Depends(get_portal)) -> Dict[str, Any]:
    intent = portal.portal_service.describe_link(token)
    if not isinstance(intent, CreateUserIntent):
        return {"kind": intent.kind}
    org_id = getattr(intent.role, "org_id", None)
    return {
        "kind": intent.kind,
        "role": intent.role.kind,
        "role_title": ROLE_TITLES[intent.role.kind],
        "org_id": str(org_id) if org_id else None,
    }


@router.post("/user/create_account/{token}", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
def create_account(
    token: str,
    email: str = Form(...),
    forename: str = Form(...),
    surname: str = Form(...),
    password: str = Form(...),
    portal: DukePortal = Depends(get_portal),
) -> UserPublic:
    user = portal.portal_service.redeem_create_account(token, email, forename, surname, password)
    return user_to_public(user)


@router.get("/user/change_password/{token}")
def describe_change_password(token: str, portal: DukePortal = Depends(get_portal)) -> Dict[str, str]:
    intent = portal.portal_service.describe_link(token)
    return {"kind": intent.kind}


@router.post("/user/change_password/{token}")
def change_password(
    token: str,
    password: str = Form(...),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, str]:
    portal.portal_service.redeem_change_password(token, password)
    return {"status": "success"}
