"""FastAPI application for the Senior Duke portal"""

import os
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from duke.app import DukePortal
from duke.core.config import APP_NAME, load_settings
from duke.utils.exceptions import (
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PortalError,
    UnauthenticatedError,
    UnauthorisedError,
)
from duke.utils.logger import get_logger, setup_logger

from .admin_routes import router as admin_router
from .auth_routes import router as auth_router
from .org_routes import router as org_router
from .section_routes import router as section_router
from .user_routes import router as user_router

logger = get_logger(__name__)

ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UnauthenticatedError, status.HTTP_401_UNAUTHORIZED),
    (UnauthorisedError, status.HTTP_403_FORBIDDEN),
    (ConflictError, status.HTTP_409_CONFLICT),
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
)


def status_for(exc: PortalError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
    code = status_for(exc)
    if code >= 500:
        logger.error("Request failed", path=request.url.path, error=str(exc), error_type=type(exc).__name__)
        detail = "Internal server error"
    else:
        detail = str(exc)
    content = {"detail": detail}
    field = getattr(exc, "field", None)
    if field:
        content["field"] = field
    return JSONResponse(status_code=code, content=content)


def create_app(portal: Optional[DukePortal] = None) -> FastAPI:
    """
    Build the API app.

    With no portal given, settings are loaded and the portal (including its
    background loop) is started on startup.
    """
    app = FastAPI(
        title=f"{APP_NAME} Portal",
        description="Award progress tracking for pupils, teachers and organisations",
        version="1.0.0",
    )
    app.state.portal = portal

    app.add_exception_handler(PortalError, portal_error_handler)

    app.include_router(auth_router)
    app.include_router(org_router)
    app.include_router(user_router)
    app.include_router(section_router)
    app.include_router(admin_router)

    @app.on_event("startup")
    def startup_event():
        if app.state.portal is not None:
            return
        settings = load_settings()
        setup_logger(
            log_level=settings.logging.level,
            log_format=settings.logging.format,
            file_path=settings.logging.file_path,
            max_bytes=settings.logging.max_bytes,
            backup_count=settings.logging.backup_count,
        )
        started = DukePortal(settings).initialize()
        if os.getenv("DUKE_DISABLE_BACKGROUND", "").strip().lower() not in ("1", "true", "yes"):
            started.start_background()
        app.state.portal = started
        logger.info("Portal startup completed")

    @app.on_event("shutdown")
    def shutdown_event():
        logger.info("Shutdown event triggered - stopping services")
        if app.state.portal is not None:
            app.state.portal.shutdown()

    return app


app = create_app()
