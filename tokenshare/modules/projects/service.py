"""Projects service — creation, lookup, row locking and administrative cancel."""

import uuid
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenshare.core.errors import ContentionError, NotProjectOwner, ProjectNotActive, ProjectNotFound
from tokenshare.models.distributions import ProfitDistribution
from tokenshare.models.enums import DistributionStatus, ProjectStatus
from tokenshare.models.projects import Project
from tokenshare.modules.projects.schemas import ProjectCreate

logger = structlog.get_logger()


async def create_project(
    db: AsyncSession,
    admin_id: uuid.UUID,
    body: ProjectCreate,
) -> Project:
    """Create an active project with its whole token supply available."""
    project = Project(
        name=body.name,
        description=body.description,
        total_tokens=body.total_tokens,
        available_tokens=body.total_tokens,
        token_price=body.token_price,
        initial_capital=body.initial_capital,
        status=ProjectStatus.ACTIVE,
        admin_id=admin_id,
    )
    db.add(project)
    await db.flush()
    await db.refresh(project)
    logger.info("project.created", project_id=str(project.id), total_tokens=project.total_tokens)
    return project


async def get_project(db: AsyncSession, project_id: uuid.UUID) -> Project | None:
    stmt = select(Project).where(Project.id == project_id).execution_options(populate_existing=True)
    return (await db.execute(stmt)).scalar_one_or_none()


async def lock_project(db: AsyncSession, project_id: uuid.UUID) -> Project | None:
    """Load a project holding its row lock until the current transaction ends.

    populate_existing makes sure a copy cached in the session is overwritten
    with the row as seen under the lock.
    """
    stmt = (
        select(Project)
        .where(Project.id == project_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await db.execute(stmt)).scalar_one_or_none()


async def cancel_project(
    db: AsyncSession,
    project_id: uuid.UUID,
    admin_id: uuid.UUID,
) -> Project:
    """Administratively move an active project to cancelled."""
    project = await lock_project(db, project_id)
    if project is None:
        raise ProjectNotFound("Project not found", project_id=str(project_id))
    if project.admin_id != admin_id:
        raise NotProjectOwner("Only the project's admin can cancel it")
    if project.status != ProjectStatus.ACTIVE:
        raise ProjectNotActive(
            f"Project is {project.status.value} and cannot be cancelled",
            status=project.status.value,
        )

    in_flight = (
        await db.execute(
            select(ProfitDistribution.id).where(
                ProfitDistribution.project_id == project_id,
                ProfitDistribution.status == DistributionStatus.PENDING,
                ProfitDistribution.lease_expires_at > datetime.now(timezone.utc),
            )
        )
    ).scalar_one_or_none()
    if in_flight is not None:
        raise ContentionError("A profit distribution is in progress for this project")

    project.status = ProjectStatus.CANCELLED
    await db.flush()
    await db.refresh(project)
    logger.info("project.cancelled", project_id=str(project_id), admin_id=str(admin_id))
    return project
