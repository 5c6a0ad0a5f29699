"""
Section routes: activity selection, review state, evidence uploads.

Uploads are multipart: "plan" and "reflection" replace the texts, each
"files" part is stored as evidence, each "delete" value names a file to
remove.
"""

from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, UploadFile, status
from fastapi.responses import FileResponse

from duke.app import DukePortal
from duke.models.user import User
from duke.services.section_service import SectionUpdate, Upload

from .auth_deps import get_current_user, get_portal
from .models import SectionPublic, section_to_public

router = APIRouter(tags=["sections"])


@router.get("/user/{user_id}/sections")
def pupil_sections(
    user_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> List[Optional[Dict[str, Any]]]:
    slots = portal.section_service.pupil_sections(current_user, user_id)
    return [section_to_public(s).model_dump(mode="json") if s else None for s in slots]


@router.post("/user/{user_id}/sections", response_model=SectionPublic, status_code=status.HTTP_201_CREATED)
def create_section(
    user_id: UUID,
    section_index: int = Form(...),
    activity_index: int = Form(...),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> SectionPublic:
    section = portal.section_service.create_section(current_user, user_id, section_index, activity_index)
    return section_to_public(section)


@router.get("/section/{section_id}", response_model=SectionPublic)
def get_section(
    section_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> SectionPublic:
    return section_to_public(portal.section_service.get_section(current_user, section_id))


@router.post("/section/{section_id}")
def update_section(
    section_id: UUID,
    plan: Optional[str] = Form(None),
    reflection: Optional[str] = Form(None),
    delete: Optional[List[str]] = Form(None),
    files: Optional[List[UploadFile]] = File(None),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, Any]:
    update = SectionUpdate(
        plan=plan,
        reflection=reflection,
        delete_names=delete or [],
        uploads=[Upload(filename=f.filename or "", stream=f.file) for f in files or []],
    )
    section, saved = portal.section_service.update_section(current_user, section_id, update)
    return {
        "section": section_to_public(section).model_dump(mode="json"),
        "saved": saved,
        "files": portal.assets.list_assets(section_id),
    }


@router.delete("/section/{section_id}")
def delete_section(
    section_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> Dict[str, str]:
    portal.section_service.delete_section(current_user, section_id)
    return {"status": "success"}


@router.post("/section/{section_id}/state", response_model=SectionPublic)
def set_state(
    section_id: UUID,
    state: str = Form(...),
    feedback: Optional[str] = Form(None),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> SectionPublic:
    section = portal.section_service.set_state(current_user, section_id, state, feedback)
    return section_to_public(section)


@router.post("/section/{section_id}/outstanding", response_model=SectionPublic)
def set_outstanding(
    section_id: UUID,
    outstanding: bool = Form(...),
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> SectionPublic:
    section = portal.section_service.set_outstanding(current_user, section_id, outstanding)
    return section_to_public(section)


@router.get("/section/{section_id}/files")
def list_files(
    section_id: UUID,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> List[str]:
    return portal.section_service.list_assets(current_user, section_id)


@router.get("/section/{section_id}/files/{filename}")
def get_file(
    section_id: UUID,
    filename: str,
    current_user: User = Depends(get_current_user),
    portal: DukePortal = Depends(get_portal),
) -> FileResponse:
    path = portal.section_service.asset_path(current_user, section_id, filename)
    return FileResponse(path, filename=path.name)
