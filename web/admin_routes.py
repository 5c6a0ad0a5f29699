"""Global views and maintenance: awards, statistics, outstanding, purge, reconcile."""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Form

from duke.app import DukePortal
from duke.auth.permissions import is_global
from duke.models.user import User
from duke.services.stats_service import AwardStats
from duke.utils.exceptions import UnauthorisedError

from .auth_deps import get_current_user, get_portal
from .models import SectionPublic, section_to_public

router = APIRouter(tags=["admin"])


@router.get("/awards")
def list_awards(
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, Any]:
    return portal.catalogue.model_dump()


@router.get("/achievements", response_model=List[SectionPublic])
def outstanding_achievements(
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> List[SectionPublic]:
    return [section_to_public(s) for s in portal.portal_service.list_outstanding(current_user)]


@router.get("/stats/{award_index}", response_model=AwardStats)
def award_stats(
    award_index: int,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> AwardStats:
    return portal.stats_service.statistics(current_user, award_index)


@router.post("/admin/purge")
def purge_data(
    password: str = Form(...),
    delete_pupils: bool = Form(False),
    delete_orgs: bool = Form(False),
    reset_credits: bool = Form(False),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, int]:
    result = portal.portal_service.purge_data(
        current_user,
        password,
        delete_pupils=delete_pupils,
        delete_orgs=delete_orgs,
        reset_credits=reset_credits,
    )
    return vars(result)


@router.post("/admin/reconcile")
def reconcile(
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, int]:
    if not is_global(current_user.role):
        raise UnauthorisedError("You cannot run maintenance")
    return vars(portal.reconciler.run())
