"""Profit distribution models: one distribution per project, one credit per holder."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tokenshare.models.base import BaseModel, TimestampedModel, enum_column
from tokenshare.models.enums import DistributionStatus

# At most one live (non-superseded) distribution per project
_LIVE_DISTRIBUTION = text("status <> 'superseded'")


class ProfitDistribution(BaseModel):
    """A single profit-sharing event for a project.

    Created ``pending`` before the external ledger is called, flipped to
    ``completed`` together with the holder credits and the project status.
    ``attempt_token`` and ``lease_expires_at`` fence the in-flight ledger call:
    only the attempt holding an unexpired lease may complete the record.
    """

    __tablename__ = "profit_distributions"
    __table_args__ = (
        Index(
            "uq_profit_distributions_live_project",
            "project_id",
            unique=True,
            postgresql_where=_LIVE_DISTRIBUTION,
            sqlite_where=_LIVE_DISTRIBUTION,
        ),
        Index("ix_profit_distributions_status", "status"),
    )

    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
    )
    total_profit: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    admin_share: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    user_share: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)
    profit_per_token: Mapped[Decimal] = mapped_column(Numeric(38, 18), nullable=False)
    total_user_tokens: Mapped[int] = mapped_column(Integer, nullable=False)
    holder_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[DistributionStatus] = mapped_column(
        enum_column(DistributionStatus), nullable=False, default=DistributionStatus.PENDING
    )
    ledger_tx_hash: Mapped[str | None] = mapped_column(String(66))
    initiated_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    attempt_token: Mapped[uuid.UUID | None] = mapped_column(Uuid)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(String(1000))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Relationships
    credits: Mapped[list["UserProfitCredit"]] = relationship(back_populates="distribution")

    def __repr__(self) -> str:
        return (
            f"<ProfitDistribution(id={self.id}, project_id={self.project_id}, "
            f"status={self.status.value})>"
        )


class UserProfitCredit(TimestampedModel):
    """Profit credited to one holder by one completed distribution."""

    __tablename__ = "user_profit_credits"
    __table_args__ = (
        UniqueConstraint("distribution_id", "user_id", name="uq_user_profit_credits_holder"),
        Index("ix_user_profit_credits_user_id", "user_id"),
        Index("ix_user_profit_credits_project_id", "project_id"),
    )

    distribution_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("profit_distributions.id", ondelete="RESTRICT"),
        nullable=False,
    )
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="RESTRICT"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    token_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    profit_amount: Mapped[Decimal] = mapped_column(Numeric(19, 4), nullable=False)

    # Relationships
    distribution: Mapped["ProfitDistribution"] = relationship(back_populates="credits")
