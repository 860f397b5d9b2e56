"""Readiness gate — may a project's profit be distributed now, and if not, why not.

Checks run in a fixed order and the first failure wins:

  1. project exists
  2. project is not completed
  3. project is not cancelled
  4. every token is sold (no partial liquidation)
  5. at least one holder has an active holding

The distribution service re-runs the same gate under the project row lock.
"""

import uuid

from sqlalchemy import distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tokenshare.models.enums import HoldingStatus, ProjectStatus
from tokenshare.models.projects import Project
from tokenshare.models.tokens import Holding
from tokenshare.modules.distributions.schemas import ReadinessResult


def evaluate_readiness(project: Project | None, holder_count: int) -> ReadinessResult:
    """Pure decision over an already-loaded project and its active holder count."""
    if project is None:
        return ReadinessResult(
            ready=False,
            reason="Project not found",
            reason_code="not_found",
            project_exists=False,
            tokens_sold=0,
            total_tokens=0,
            available_tokens=0,
        )

    counts = {
        "project_exists": True,
        "tokens_sold": project.total_tokens - project.available_tokens,
        "total_tokens": project.total_tokens,
        "available_tokens": project.available_tokens,
    }

    if project.status == ProjectStatus.COMPLETED:
        return ReadinessResult(
            ready=False, reason="Project is already completed", reason_code="completed", **counts
        )
    if project.status == ProjectStatus.CANCELLED:
        return ReadinessResult(
            ready=False, reason="Project is cancelled", reason_code="cancelled", **counts
        )
    if project.available_tokens > 0:
        return ReadinessResult(
            ready=False,
            reason=(
                "Cannot distribute profit until all tokens are sold. "
                f"Currently {counts['tokens_sold']}/{project.total_tokens} tokens sold. "
                f"Remaining: {project.available_tokens} tokens."
            ),
            reason_code="not_sold_out",
            **counts,
        )
    if holder_count == 0:
        return ReadinessResult(
            ready=False,
            reason="No active token holders found for this project",
            reason_code="no_holders",
            holder_count=0,
            **counts,
        )
    return ReadinessResult(
        ready=True,
        reason="Project is ready for profit distribution",
        reason_code="ready",
        holder_count=holder_count,
        **counts,
    )


async def count_active_holders(db: AsyncSession, project_id: uuid.UUID) -> int:
    stmt = select(func.count(distinct(Holding.user_id))).where(
        Holding.project_id == project_id,
        Holding.status == HoldingStatus.ACTIVE,
    )
    return int((await db.execute(stmt)).scalar_one())


async def check_readiness(db: AsyncSession, project_id: uuid.UUID) -> ReadinessResult:
    """Read-only readiness check for callers deciding whether to distribute."""
    stmt = select(Project).where(Project.id == project_id).execution_options(populate_existing=True)
    project = (await db.execute(stmt)).scalar_one_or_none()
    holder_count = await count_active_holders(db, project_id) if project is not None else 0
    return evaluate_readiness(project, holder_count)
