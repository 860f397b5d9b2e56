"""Profit distribution schemas."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from tokenshare.models.enums import DistributionStatus, ProjectStatus


class ReadinessResult(BaseModel):
    ready: bool
    reason: str
    reason_code: str        # not_found, completed, cancelled, not_sold_out, no_holders, ready
    project_exists: bool
    tokens_sold: int
    total_tokens: int
    available_tokens: int
    holder_count: int | None = None


class HolderPosition(BaseModel):
    """Active tokens of one holder, summed over all their holdings."""

    user_id: uuid.UUID
    tokens: int


class HolderCredit(BaseModel):
    user_id: uuid.UUID
    token_amount: int
    profit_amount: Decimal


class DistributionPlan(BaseModel):
    total_profit: Decimal
    admin_share: Decimal
    user_share: Decimal
    profit_per_token: Decimal
    total_user_tokens: int
    credits: list[HolderCredit]

    @property
    def holder_count(self) -> int:
        return len(self.credits)


class DistributeRequest(BaseModel):
    project_id: uuid.UUID
    new_profit: Decimal     # validated by the service so the typed error surfaces


class DistributionResult(BaseModel):
    distribution_id: uuid.UUID
    project_id: uuid.UUID
    initial_capital: Decimal
    total_profit: Decimal
    admin_share: Decimal
    user_share: Decimal
    profit_per_token: Decimal
    total_user_tokens: int
    holder_count: int
    credits: list[HolderCredit]
    ledger_tx_hash: str
    project_status: ProjectStatus
    distributed_at: datetime


class DistributionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    total_profit: Decimal
    admin_share: Decimal
    user_share: Decimal
    profit_per_token: Decimal
    total_user_tokens: int
    holder_count: int
    status: DistributionStatus
    ledger_tx_hash: str | None
    attempts: int
    last_error: str | None
    created_at: datetime
    completed_at: datetime | None


class UserProfitCreditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    distribution_id: uuid.UUID
    project_id: uuid.UUID
    user_id: uuid.UUID
    token_amount: int
    profit_amount: Decimal
    created_at: datetime


class ConsistencyIssue(BaseModel):
    kind: str               # credits_missing, credits_mismatch, orphan_credits, project_without_distribution, supply_mismatch
    project_id: uuid.UUID
    distribution_id: uuid.UUID | None = None
    detail: str
