"""Projects schemas."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from tokenshare.models.base import MONEY_LIMIT, TOKEN_AMOUNT_MAX
from tokenshare.models.enums import ProjectStatus


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str = ""
    total_tokens: int = Field(gt=0, le=TOKEN_AMOUNT_MAX)
    token_price: Decimal = Field(gt=0, lt=MONEY_LIMIT, decimal_places=4)
    initial_capital: Decimal = Field(ge=0, lt=MONEY_LIMIT, decimal_places=4)


class ProjectResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    description: str
    total_tokens: int
    available_tokens: int
    tokens_sold: int
    token_price: Decimal
    initial_capital: Decimal
    status: ProjectStatus
    admin_id: uuid.UUID
    created_at: datetime
    updated_at: datetime
