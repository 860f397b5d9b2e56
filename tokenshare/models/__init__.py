"""SQLAlchemy models package — import all models so Base.metadata is populated."""

from tokenshare.models.base import BaseModel, ModelMixin, TimestampedModel
from tokenshare.models.distributions import ProfitDistribution, UserProfitCredit
from tokenshare.models.enums import (
    DistributionStatus,
    HoldingStatus,
    LedgerSyncStatus,
    ProjectStatus,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from tokenshare.models.projects import Project
from tokenshare.models.tokens import Holding, TokenTransaction

__all__ = [
    # Base
    "BaseModel",
    "ModelMixin",
    "TimestampedModel",
    # Enums
    "DistributionStatus",
    "HoldingStatus",
    "LedgerSyncStatus",
    "ProjectStatus",
    "TransactionStatus",
    "TransactionType",
    "UserRole",
    # Projects & tokens
    "Project",
    "Holding",
    "TokenTransaction",
    # Profit distribution
    "ProfitDistribution",
    "UserProfitCredit",
]
