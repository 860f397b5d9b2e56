"""Projects API router."""

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from tokenshare.auth.dependencies import get_current_user, require_role
from tokenshare.core.database import get_db
from tokenshare.models.enums import UserRole
from tokenshare.modules.projects import service
from tokenshare.modules.projects.schemas import ProjectCreate, ProjectResponse
from tokenshare.schemas.auth import CurrentUser

logger = structlog.get_logger()

router = APIRouter(prefix="/projects", tags=["projects"])


@router.post("", response_model=ProjectResponse, status_code=status.HTTP_201_CREATED)
async def create_project(
    body: ProjectCreate,
    current_user: CurrentUser = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Open a new token sale."""
    project = await service.create_project(db, current_user.user_id, body)
    await db.commit()
    return ProjectResponse.model_validate(project)


@router.get("/{project_id}", response_model=ProjectResponse)
async def get_project(
    project_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    project = await service.get_project(db, project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return ProjectResponse.model_validate(project)


@router.post("/{project_id}/cancel", response_model=ProjectResponse)
async def cancel_project(
    project_id: uuid.UUID,
    current_user: CurrentUser = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
) -> ProjectResponse:
    """Cancel an active project; it accepts no further purchases or distributions."""
    project = await service.cancel_project(db, project_id, current_user.user_id)
    await db.commit()
    return ProjectResponse.model_validate(project)
