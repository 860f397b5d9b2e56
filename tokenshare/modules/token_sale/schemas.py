"""Token sale schemas."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from tokenshare.models.enums import HoldingStatus, LedgerSyncStatus


class PurchaseRequest(BaseModel):
    project_id: uuid.UUID
    amount: int             # validated by the service so the typed error surfaces


class PurchaseResult(BaseModel):
    token_id: uuid.UUID     # the Holding created by this purchase
    transaction_id: uuid.UUID
    project_id: uuid.UUID
    amount: int
    price_per_token: Decimal
    total_value: Decimal
    ledger_status: LedgerSyncStatus   # confirmed, or failed and queued for retry
    ledger_tx_hash: str | None = None
    ledger_error: str | None = None


class HoldingResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    project_id: uuid.UUID
    user_id: uuid.UUID
    amount: int
    price_per_token: Decimal
    total_value: Decimal
    status: HoldingStatus
    ledger_status: LedgerSyncStatus
    ledger_tx_hash: str | None
    created_at: datetime


class LedgerRetrySummary(BaseModel):
    attempted: int
    confirmed: int
    failed: int
