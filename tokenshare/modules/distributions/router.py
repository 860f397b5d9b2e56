"""Profit distribution API router."""

import uuid

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tokenshare.auth.dependencies import get_current_user, require_role
from tokenshare.core.database import get_db
from tokenshare.models.enums import UserRole
from tokenshare.modules.distributions import service
from tokenshare.modules.distributions.readiness import check_readiness
from tokenshare.modules.distributions.schemas import (
    DistributeRequest,
    DistributionResponse,
    DistributionResult,
    ReadinessResult,
    UserProfitCreditResponse,
)
from tokenshare.schemas.auth import CurrentUser
from tokenshare.services.ledger import LedgerAdapter, get_ledger

logger = structlog.get_logger()

router = APIRouter(prefix="/profits", tags=["profits"])


@router.get("/readiness/{project_id}", response_model=ReadinessResult)
async def get_readiness(
    project_id: uuid.UUID,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ReadinessResult:
    return await check_readiness(db, project_id)


@router.post("/distribute", response_model=DistributionResult)
async def distribute_profit(
    body: DistributeRequest,
    current_user: CurrentUser = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerAdapter = Depends(get_ledger),
) -> DistributionResult:
    """Split realized profit between the admin and every holder, then close the project.

    Errors carry ``retryable``; a retryable failure leaves the project active
    and the same request may simply be sent again.
    """
    return await service.distribute(db, ledger, body.project_id, body.new_profit, current_user.user_id)


@router.get("/history/{project_id}", response_model=list[DistributionResponse])
async def get_history(
    project_id: uuid.UUID,
    current_user: CurrentUser = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
) -> list[DistributionResponse]:
    distributions = await service.get_distribution_history(db, project_id)
    return [DistributionResponse.model_validate(d) for d in distributions]


@router.get("/mine", response_model=list[UserProfitCreditResponse])
async def list_my_credits(
    project_id: uuid.UUID | None = None,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[UserProfitCreditResponse]:
    credits = await service.get_user_credits(db, current_user.user_id, project_id)
    return [UserProfitCreditResponse.model_validate(c) for c in credits]
