"""
FastAPI dependencies for authentication and service access.
"""

from typing import Optional

from fastapi import Depends, Request

from duke.app import DukePortal
from duke.core.config import AUTH_COOKIE
from duke.models.user import User
from duke.services.portal_service import AuthContext


def get_portal(request: Request) -> DukePortal:
    return request.app.state.portal


def get_session_token(request: Request) -> Optional[str]:
    """Extract session token from request (cookie or Authorization header)"""
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]
    return request.cookies.get(AUTH_COOKIE)


def get_auth_context(request: Request, portal: DukePortal = Depends(get_portal)) -> AuthContext:
    """Resolve the session; raises UnauthenticatedError (401) when it is missing or expired."""
    return portal.portal_service.authenticate(get_session_token(request))


def get_current_user(ctx: AuthContext = Depends(get_auth_context)) -> User:
    return ctx.user
