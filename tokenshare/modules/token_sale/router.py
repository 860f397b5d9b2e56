"""Token sale API router."""

import uuid

import structlog
from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from tokenshare.auth.dependencies import get_current_user, require_role
from tokenshare.core.database import get_db
from tokenshare.models.enums import UserRole
from tokenshare.modules.token_sale import service
from tokenshare.modules.token_sale.schemas import HoldingResponse, PurchaseRequest, PurchaseResult
from tokenshare.schemas.auth import CurrentUser
from tokenshare.services.ledger import LedgerAdapter, get_ledger

logger = structlog.get_logger()

router = APIRouter(prefix="/tokens", tags=["tokens"])


@router.post("/purchase", response_model=PurchaseResult, status_code=status.HTTP_201_CREATED)
async def purchase_tokens(
    body: PurchaseRequest,
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    ledger: LedgerAdapter = Depends(get_ledger),
) -> PurchaseResult:
    """Buy tokens of an active project.

    A 201 means the sale is final; ``ledger_status`` tells whether the audit
    record was confirmed or is queued for retry.
    """
    return await service.purchase(db, ledger, body.project_id, current_user.user_id, body.amount)


@router.get("/mine", response_model=list[HoldingResponse])
async def list_my_tokens(
    current_user: CurrentUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> list[HoldingResponse]:
    holdings = await service.list_user_holdings(db, current_user.user_id)
    return [HoldingResponse.model_validate(h) for h in holdings]


@router.get("/project/{project_id}", response_model=list[HoldingResponse])
async def list_project_tokens(
    project_id: uuid.UUID,
    current_user: CurrentUser = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db),
) -> list[HoldingResponse]:
    holdings = await service.list_project_holdings(db, project_id)
    return [HoldingResponse.model_validate(h) for h in holdings]
